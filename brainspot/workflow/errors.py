"""Typed conditions raised by the phase workflow engine."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for every engine condition."""


class NotFoundError(WorkflowError):
    """A session or phase row does not exist. Never retryable."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class StoreError(WorkflowError):
    """Infrastructure failure while talking to the store.

    Kept apart from the validation conditions so an outage is never read
    as "the patient has not answered yet".
    """

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"store operation '{operation}' failed: {detail}")


class PhaseRequirementError(WorkflowError):
    """The current phase is not ready to be exited."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        super().__init__(message)


class MissingDataError(PhaseRequirementError):
    def __init__(self, phase: str, missing_fields: list[str]) -> None:
        self.missing_fields = list(missing_fields)
        super().__init__(
            phase,
            f"missing required data for phase {phase}: {', '.join(self.missing_fields)}",
        )


class InsufficientTurnsError(PhaseRequirementError):
    def __init__(
        self,
        phase: str,
        *,
        minimum_turns: int,
        required_messages: int,
        actual_messages: int,
    ) -> None:
        self.minimum_turns = minimum_turns
        self.required_messages = required_messages
        self.actual_messages = actual_messages
        super().__init__(
            phase,
            f"minimum {minimum_turns} turns required ({required_messages} messages), "
            f"currently have {actual_messages} messages",
        )


class WrongPhaseError(WorkflowError):
    def __init__(self, current_phase: str, expected_phase: str) -> None:
        self.current_phase = current_phase
        self.expected_phase = expected_phase
        super().__init__(
            f"cannot complete session: not in {expected_phase} phase (currently in {current_phase})",
        )


class RequirementsNotMetError(WorkflowError):
    """Completion rejected because the terminal phase is not ready."""

    def __init__(self, phase: str, cause: PhaseRequirementError) -> None:
        self.phase = phase
        self.cause = cause
        super().__init__(f"cannot complete session: requirements not met: {cause}")


class InvalidTransitionError(WorkflowError):
    def __init__(self, from_phase: str, to_phase: str) -> None:
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(f"invalid transition from {from_phase} to {to_phase}")


class CoachModelError(WorkflowError):
    """The coach LLM call failed. Raised by model clients, handled by the orchestrator."""

    def __init__(self, message: str, *, category: str = "unknown", retryable: bool = False) -> None:
        self.category = category
        self.retryable = retryable
        super().__init__(message)
