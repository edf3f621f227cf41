"""Coach prompt builder: static instructions + dynamic session state."""

from __future__ import annotations

import json
from collections.abc import Sequence
from functools import lru_cache
from pathlib import Path

from brainspot.workflow.store import PhaseTransitionRecord

_SKILLS_DIR = Path(__file__).parent
_COACH_SKILLS_MD = _SKILLS_DIR / "coach" / "skills.md"


@lru_cache(maxsize=2)
def _load_md(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _render_template(template: str, values: dict[str, str]) -> str:
    output = template
    for key, value in values.items():
        output = output.replace(f"{{{{{key}}}}}", value)
    return output


def build_coach_static_instructions(
    *,
    phase_id: str,
    phase_name: str,
    phase_description: str,
) -> str:
    """Return coach instructions for one phase from the markdown template."""
    return _render_template(
        _load_md(_COACH_SKILLS_MD),
        {
            "PHASE_ID": phase_id,
            "PHASE_NAME": phase_name or phase_id,
            "PHASE_DESCRIPTION": phase_description or phase_id,
        },
    )


def _format_transition(item: PhaseTransitionRecord) -> str:
    line = f"- {item.to_phase} ({item.transition_type}, priority {item.priority})"
    if item.description:
        line += f": {item.description}"
    if item.condition_parameters:
        params = json.dumps(item.condition_parameters, ensure_ascii=False, sort_keys=True)
        line += f" condition_parameters={params}"
    return line


def build_coach_dynamic_state(
    *,
    phase_id: str,
    missing_fields: Sequence[str],
    collected_fields: dict[str, str] | None = None,
    transitions: Sequence[PhaseTransitionRecord] = (),
    guidance: str = "",
) -> str:
    """Return the ``[SESSION STATE]`` and ``[PHASE GUIDANCE]`` blocks for one turn."""
    missing_str = ", ".join(missing_fields) if missing_fields else "none - all collected"

    collected_str = "none"
    if collected_fields:
        parts = [f"{key}={value}" for key, value in collected_fields.items() if value]
        if parts:
            collected_str = ", ".join(parts)

    transitions_str = "\n".join(_format_transition(item) for item in transitions) or "- complete"

    return (
        "[SESSION STATE]\n"
        f"- current_phase: {phase_id}\n"
        f"- already_collected: {collected_str}\n"
        f"- still_missing: {missing_str}\n"
        f"- next_missing_field: {missing_fields[0] if missing_fields else 'none'}\n"
        "- legal_transitions:\n"
        f"{transitions_str}\n"
        "[/SESSION STATE]\n\n"
        "[PHASE GUIDANCE]\n"
        f"{guidance.strip()}\n"
        "[/PHASE GUIDANCE]\n"
    )
