"""Assemble the coach request for one turn from engine output and history."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from brainspot.agents.coach_client import CoachRequest
from brainspot.agents.skills.coach_skills import (
    build_coach_dynamic_state,
    build_coach_static_instructions,
)
from brainspot.agents.tools import build_coach_tools
from brainspot.config import settings
from brainspot.models.session import Message, Session
from brainspot.services.session_service import SessionService
from brainspot.workflow.errors import NotFoundError
from brainspot.workflow.phases import MessageRole

_ROLE_TO_INPUT_ROLE = {
    MessageRole.PATIENT: "user",
    MessageRole.COACH: "assistant",
    MessageRole.SYSTEM: "developer",
}


@dataclass(frozen=True, slots=True)
class TurnContext:
    phase_id: str
    guidance: str
    missing_fields: tuple[str, ...]
    request: CoachRequest


class TurnContextBuilder(Protocol):
    async def build(self, *, service: SessionService, session: Session) -> TurnContext: ...


def message_to_input_item(message: Message) -> dict[str, Any]:
    role = _ROLE_TO_INPUT_ROLE.get(MessageRole(message.role), "user")
    return {"role": role, "content": message.content}


class PhaseContextBuilder:
    """Default builder: skill file, guidance, collected values, legal edges, recent history."""

    def __init__(self, *, history_messages: int | None = None) -> None:
        self.history_messages = (
            settings.context_history_messages if history_messages is None else history_messages
        )

    async def build(self, *, service: SessionService, session: Session) -> TurnContext:
        engine = service.engine_for(session.id)
        phase_id = session.current_phase
        phase = await service.store.get_phase(phase_id)
        if phase is None:
            raise NotFoundError("phase", phase_id)

        guidance = await engine.get_phase_guidance(phase_id)
        missing = await engine.get_missing_fields(phase_id)
        transitions = await engine.list_transitions(phase_id)
        fields = await service.store.list_fields(phase_id)
        collected = await service.get_collected_values(session.id)
        history = await service.list_recent_messages(session.id, self.history_messages)

        instructions = build_coach_static_instructions(
            phase_id=phase_id,
            phase_name=phase.display_name,
            phase_description=await engine.get_phase_description(phase_id),
        )
        state_block = build_coach_dynamic_state(
            phase_id=phase_id,
            missing_fields=missing,
            collected_fields=collected,
            transitions=transitions,
            guidance=guidance,
        )
        input_items = [message_to_input_item(message) for message in history]
        input_items.append({"role": "developer", "content": state_block})

        return TurnContext(
            phase_id=phase_id,
            guidance=guidance,
            missing_fields=tuple(missing),
            request=CoachRequest(
                instructions=instructions,
                input_items=input_items,
                tools=build_coach_tools(fields, transitions),
            ),
        )
