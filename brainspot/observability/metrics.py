"""Workflow metric sinks injected into the phase engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from brainspot.util.logger import log_phase, logger


class WorkflowMetrics(Protocol):
    """Counters the engine reports to. Implementations must not raise."""

    def record_validation(self, phase: str, check: str, passed: bool) -> None: ...

    def record_transition(self, from_phase: str, to_phase: str, allowed: bool) -> None: ...

    def record_completion(self, succeeded: bool) -> None: ...


class NullWorkflowMetrics:
    """Default sink: drops everything."""

    def record_validation(self, phase: str, check: str, passed: bool) -> None:
        return None

    def record_transition(self, from_phase: str, to_phase: str, allowed: bool) -> None:
        return None

    def record_completion(self, succeeded: bool) -> None:
        return None


class LoggingWorkflowMetrics:
    """Write every metric event to the application log."""

    def record_validation(self, phase: str, check: str, passed: bool) -> None:
        logger.debug("workflow.validation phase=%s check=%s passed=%s", phase, check, passed)

    def record_transition(self, from_phase: str, to_phase: str, allowed: bool) -> None:
        if allowed:
            log_phase("transition allowed", f"{from_phase} -> {to_phase}")
        else:
            logger.info("workflow.transition rejected %s -> %s", from_phase, to_phase)

    def record_completion(self, succeeded: bool) -> None:
        logger.info("workflow.completion succeeded=%s", succeeded)


@dataclass(slots=True)
class CountingWorkflowMetrics:
    """In-memory tallies, handy for diagnostics and tests."""

    validations: dict[tuple[str, str, bool], int] = field(default_factory=dict)
    transitions: dict[tuple[str, str, bool], int] = field(default_factory=dict)
    completions: dict[bool, int] = field(default_factory=dict)

    def record_validation(self, phase: str, check: str, passed: bool) -> None:
        key = (phase, check, passed)
        self.validations[key] = self.validations.get(key, 0) + 1

    def record_transition(self, from_phase: str, to_phase: str, allowed: bool) -> None:
        key = (from_phase, to_phase, allowed)
        self.transitions[key] = self.transitions.get(key, 0) + 1

    def record_completion(self, succeeded: bool) -> None:
        self.completions[succeeded] = self.completions.get(succeeded, 0) + 1
