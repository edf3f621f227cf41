"""Function-tool definitions offered to the coach model and argument parsing."""

from __future__ import annotations

import json
from collections.abc import Sequence
from copy import deepcopy
from typing import Any

from brainspot.workflow.store import PhaseTransitionRecord, RequirementRecord

COLLECT_TOOL_NAME = "collect_structured_data"
TRANSITION_TOOL_NAME = "therapy_session_transition"
KNOWN_TOOL_NAMES = frozenset({COLLECT_TOOL_NAME, TRANSITION_TOOL_NAME})


def _field_property(requirement: RequirementRecord) -> dict[str, Any]:
    prop: dict[str, Any] = deepcopy(requirement.schema) if requirement.schema else {}
    if requirement.description and "description" not in prop:
        prop["description"] = requirement.description
    return prop


def build_collect_tool(fields: Sequence[RequirementRecord]) -> dict[str, Any]:
    """``collect_structured_data`` with the current phase's fields spelled out."""
    properties = {item.name: _field_property(item) for item in fields}
    return {
        "type": "function",
        "name": COLLECT_TOOL_NAME,
        "description": (
            "Collect and store data as defined by the current phase requirements. "
            "Only collect data that has been explicitly provided in the conversation."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "data": {
                    "type": "object",
                    "description": "Key-value pairs of data collected based on phase requirements",
                    "properties": properties,
                    "additionalProperties": True,
                },
            },
            "required": ["data"],
            "additionalProperties": False,
        },
    }


def build_transition_tool(transitions: Sequence[PhaseTransitionRecord]) -> dict[str, Any]:
    targets = sorted({item.to_phase for item in transitions})
    target_hint = ", ".join(targets) if targets else "complete"
    return {
        "type": "function",
        "name": TRANSITION_TOOL_NAME,
        "description": (
            "Move the session to another phase once the current phase requirements are met. "
            f"Legal targets from here: {target_hint}. Use 'next' for the default next phase."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "target_phase": {
                    "type": "string",
                    "description": "Phase id, phase position number, or 'next'",
                },
                "reason": {
                    "type": "string",
                    "description": "Short therapeutic rationale for the transition",
                },
            },
            "required": ["target_phase", "reason"],
            "additionalProperties": False,
        },
    }


def build_coach_tools(
    fields: Sequence[RequirementRecord],
    transitions: Sequence[PhaseTransitionRecord],
) -> list[dict[str, Any]]:
    return [build_collect_tool(fields), build_transition_tool(transitions)]


def parse_tool_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode a tool call's arguments. Raises ``ValueError`` on malformed JSON."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    text = raw.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"tool arguments are not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("tool arguments must be a JSON object")
    return parsed
