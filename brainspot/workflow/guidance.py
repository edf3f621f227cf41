"""Render the readiness report the coach sees for the current phase.

The turn count shown here is session-wide (``total_messages // 2``),
while the gate in :meth:`PhaseWorkflowEngine.validate_minimum_turns`
counts only messages since the phase started. The two can disagree
after a transition or a loop-back; both behaviors are intentional.
"""

from __future__ import annotations

from collections.abc import Sequence

from brainspot.workflow.phases import CONSENT_FIELD

ALL_MET_HEADER = "✅ ALL REQUIREMENTS MET - Ready to transition!\n"
ALL_MET_HINT = "Use therapy_session_transition() when therapeutically appropriate.\n"
UNMET_HEADER = "⚠️ TRANSITION REQUIREMENTS:\n\n"
DATA_MISSING_HEADER = "❌ DATA REQUIREMENTS:\n"
DATA_COMPLETE = "✅ DATA REQUIREMENTS: Complete\n\n"
TURNS_COMPLETE = "✅ MINIMUM TURNS: Complete\n\n"
COLLECT_REMINDER = (
    "\n🔧 IMPORTANT: Only call collect_structured_data() AFTER patient provides "
    "the required information.\n\n"
)


def field_directive(field_name: str) -> str:
    if field_name == CONSENT_FIELD:
        return (
            f"- {CONSENT_FIELD}: ASK patient for consent and WAIT for their explicit "
            "agreement before calling collect_structured_data\n"
        )
    return (
        f"- {field_name}: WAIT for patient to provide this information, "
        "then use collect_structured_data\n"
    )


def render_phase_guidance(
    *,
    missing_fields: Sequence[str],
    minimum_turns: int,
    total_messages: int,
) -> str:
    """Build the guidance text from already-fetched store state.

    Pure: the same inputs always give the same string.
    """
    current_turns = total_messages // 2
    turns_needed = minimum_turns - current_turns
    turns_ok = turns_needed <= 0

    parts: list[str] = []
    if not missing_fields and turns_ok:
        parts.append(ALL_MET_HEADER)
        parts.append(ALL_MET_HINT)
    else:
        parts.append(UNMET_HEADER)
        if missing_fields:
            parts.append(DATA_MISSING_HEADER)
            parts.extend(field_directive(name) for name in missing_fields)
            parts.append(COLLECT_REMINDER)
        else:
            parts.append(DATA_COMPLETE)

        if not turns_ok:
            parts.append(
                f"❌ MINIMUM TURNS: Need {turns_needed} more turns "
                f"({current_turns}/{minimum_turns})\n\n"
            )
        else:
            parts.append(TURNS_COMPLETE)

    parts.append(f"📊 Current: {current_turns} turns, {total_messages} messages")
    return "".join(parts)
