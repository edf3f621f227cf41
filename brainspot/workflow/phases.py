"""Workflow enums and fixed phase identifiers.

Phases themselves are data (see the protocol config); only the terminal
phase id is known to code, because ``complete`` is always reachable.
"""

from __future__ import annotations

from enum import StrEnum

COMPLETE_PHASE = "complete"
CONSENT_FIELD = "consent_given"
NEXT_ACTION_FIELD = "next_action"


class SessionStatus(StrEnum):
    """Session lifecycle flag, orthogonal to the current phase."""

    ACTIVE = "active"
    COMPLETED = "completed"


class TransitionType(StrEnum):
    """Class of an edge in the transition table."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    CONDITIONAL = "conditional"


class TransitionTrigger(StrEnum):
    """Who caused a committed phase change."""

    AI_OUTPUT = "ai_output"
    USER_ACTION = "user_action"
    SYSTEM = "system"


class MessageRole(StrEnum):
    PATIENT = "patient"
    COACH = "coach"
    SYSTEM = "system"


class MessageType(StrEnum):
    CONVERSATION = "conversation"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


def is_terminal_phase(phase: str) -> bool:
    """Return True if *phase* is the protocol's terminal phase."""
    return phase == COMPLETE_PHASE
