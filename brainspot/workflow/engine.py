"""Phase workflow engine: readiness gates, transition legality, completion.

The engine is bound to one session and keeps no state between calls.
Every operation re-reads the injected :class:`PhaseStore`, so an engine
can be rebuilt at any point of a resumed conversation.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from brainspot.models.base import utc_now
from brainspot.observability.metrics import NullWorkflowMetrics, WorkflowMetrics
from brainspot.util.logger import log_phase, logger
from brainspot.workflow.errors import (
    InsufficientTurnsError,
    MissingDataError,
    NotFoundError,
    PhaseRequirementError,
    RequirementsNotMetError,
    WrongPhaseError,
)
from brainspot.workflow.guidance import render_phase_guidance
from brainspot.workflow.phases import COMPLETE_PHASE, SessionStatus
from brainspot.workflow.store import (
    PhaseRecord,
    PhaseStore,
    PhaseTransitionRecord,
    SessionRecord,
)


@dataclass(frozen=True, slots=True)
class PhaseReadiness:
    """Both readiness checks evaluated together, without raising."""

    phase: str
    missing_fields: tuple[str, ...]
    minimum_turns: int
    required_messages: int
    messages_in_phase: int

    @property
    def data_ok(self) -> bool:
        return not self.missing_fields

    @property
    def turns_ok(self) -> bool:
        return self.messages_in_phase >= self.required_messages

    @property
    def ready(self) -> bool:
        return self.data_ok and self.turns_ok


class PhaseWorkflowEngine:
    """Data-driven state machine for one session."""

    def __init__(
        self,
        session_id: UUID,
        store: PhaseStore,
        *,
        metrics: WorkflowMetrics | None = None,
    ) -> None:
        self.session_id = session_id
        self.store = store
        self.metrics: WorkflowMetrics = metrics or NullWorkflowMetrics()

    async def _require_session(self) -> SessionRecord:
        session = await self.store.get_session(self.session_id)
        if session is None:
            raise NotFoundError("session", str(self.session_id))
        return session

    async def _require_phase(self, phase_id: str) -> PhaseRecord:
        phase = await self.store.get_phase(phase_id)
        if phase is None:
            raise NotFoundError("phase", phase_id)
        return phase

    async def get_missing_fields(self, phase: str) -> list[str]:
        """Required fields of *phase* with no non-blank value, in sort order."""
        await self._require_session()
        return await self._missing_fields(phase)

    async def _missing_fields(self, phase: str) -> list[str]:
        missing: list[str] = []
        for requirement in await self.store.list_required_fields(phase):
            value = await self.store.get_field_value(self.session_id, requirement.name)
            if value is None or not value.strip():
                missing.append(requirement.name)
        return missing

    async def validate_data_requirements(self, phase: str) -> None:
        requirements = await self.store.list_required_fields(phase)
        if not requirements:
            self.metrics.record_validation(phase, "data", True)
            return

        await self._require_session()
        missing = await self._missing_fields(phase)
        self.metrics.record_validation(phase, "data", not missing)
        if missing:
            raise MissingDataError(phase, missing)

    async def _count_phase_messages(self, phase: str) -> tuple[PhaseRecord, int]:
        phase_row = await self._require_phase(phase)
        session = await self._require_session()
        count = await self.store.count_messages_since(self.session_id, session.phase_start_time)
        return phase_row, count

    async def validate_minimum_turns(self, phase: str) -> None:
        """Require ``minimum_turns * 2`` messages since the phase was entered."""
        phase_row, actual = await self._count_phase_messages(phase)
        required = phase_row.minimum_turns * 2
        passed = actual >= required
        self.metrics.record_validation(phase, "turns", passed)
        if not passed:
            raise InsufficientTurnsError(
                phase,
                minimum_turns=phase_row.minimum_turns,
                required_messages=required,
                actual_messages=actual,
            )

    async def validate_phase_requirements(self, phase: str) -> None:
        """Gate for leaving *phase*. Data is checked first; the first failure wins."""
        await self.validate_data_requirements(phase)
        await self.validate_minimum_turns(phase)

    async def evaluate_readiness(self, phase: str) -> PhaseReadiness:
        missing = await self.get_missing_fields(phase)
        phase_row, actual = await self._count_phase_messages(phase)
        return PhaseReadiness(
            phase=phase,
            missing_fields=tuple(missing),
            minimum_turns=phase_row.minimum_turns,
            required_messages=phase_row.minimum_turns * 2,
            messages_in_phase=actual,
        )

    async def is_valid_transition(self, from_phase: str, to_phase: str) -> bool:
        """Edge lookup only; readiness is a separate question."""
        if to_phase == COMPLETE_PHASE:
            allowed = True
        else:
            allowed = await self.store.get_transition(from_phase, to_phase) is not None
        self.metrics.record_transition(from_phase, to_phase, allowed)
        return allowed

    async def list_transitions(self, from_phase: str) -> list[PhaseTransitionRecord]:
        return await self.store.list_transitions_from(from_phase)

    async def get_phase_guidance(self, phase: str) -> str:
        missing = await self.get_missing_fields(phase)
        phase_row = await self._require_phase(phase)
        total_messages = await self.store.count_messages(self.session_id)
        return render_phase_guidance(
            missing_fields=missing,
            minimum_turns=phase_row.minimum_turns,
            total_messages=total_messages,
        )

    async def get_phase_description(self, phase_id: str) -> str:
        phase = await self.store.get_phase(phase_id)
        if phase is None:
            return phase_id
        return phase.description

    async def complete_session(self) -> None:
        """Mark the session completed once the ``complete`` phase is satisfied.

        Calling it again on a completed session is a no-op.
        """
        session = await self._require_session()
        if session.status == SessionStatus.COMPLETED:
            logger.debug("Session %s already completed; skipping.", self.session_id)
            return

        if session.current_phase != COMPLETE_PHASE:
            self.metrics.record_completion(False)
            raise WrongPhaseError(session.current_phase, COMPLETE_PHASE)

        try:
            await self.validate_phase_requirements(COMPLETE_PHASE)
        except PhaseRequirementError as exc:
            self.metrics.record_completion(False)
            raise RequirementsNotMetError(COMPLETE_PHASE, exc) from exc

        await self.store.update_session_status(
            self.session_id,
            SessionStatus.COMPLETED,
            utc_now(),
        )
        self.metrics.record_completion(True)
        log_phase("session completed", str(self.session_id))

