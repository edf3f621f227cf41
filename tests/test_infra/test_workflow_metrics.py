from __future__ import annotations

import logging

import pytest

from brainspot.observability.metrics import (
    CountingWorkflowMetrics,
    LoggingWorkflowMetrics,
    NullWorkflowMetrics,
)
from brainspot.util.logger import logger


def test_counting_metrics_tallies_events() -> None:
    metrics = CountingWorkflowMetrics()

    metrics.record_validation("setup", "data", False)
    metrics.record_validation("setup", "data", False)
    metrics.record_transition("setup", "focused_mindfulness", True)
    metrics.record_completion(True)

    assert metrics.validations == {("setup", "data", False): 2}
    assert metrics.transitions == {("setup", "focused_mindfulness", True): 1}
    assert metrics.completions == {True: 1}


def test_null_metrics_accepts_everything() -> None:
    metrics = NullWorkflowMetrics()

    metrics.record_validation("setup", "turns", True)
    metrics.record_transition("setup", "complete", True)
    metrics.record_completion(False)


def test_logging_metrics_writes_rejections(
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(logger, "propagate", True)
    with caplog.at_level(logging.INFO, logger=logger.name):
        LoggingWorkflowMetrics().record_transition("status_check", "pre_session", False)

    assert "workflow.transition rejected status_check -> pre_session" in caplog.text
