from __future__ import annotations

from datetime import UTC, datetime

from brainspot.observability.llm_usage import (
    LLM_USAGE_KEY,
    merge_session_llm_usage,
    normalize_llm_usage,
    read_session_llm_usage_totals,
)


def test_normalize_llm_usage_accepts_prompt_completion_shape() -> None:
    assert normalize_llm_usage({"prompt_tokens": 123, "completion_tokens": 45}) == {
        "input_tokens": 123,
        "output_tokens": 45,
        "total_tokens": 168,
    }


def test_normalize_llm_usage_rejects_empty_payloads() -> None:
    assert normalize_llm_usage(None) is None
    assert normalize_llm_usage({}) is None
    assert normalize_llm_usage({"input_tokens": "n/a"}) is None


def test_merge_session_llm_usage_accumulates_totals_and_by_model() -> None:
    metadata: dict[str, object] = {"source": "web"}

    first = merge_session_llm_usage(
        metadata,
        {"input_tokens": 100, "output_tokens": 40},
        model="gpt-4.1-mini",
        response_id="resp_1",
        at=datetime(2026, 3, 1, 10, 0, tzinfo=UTC),
    )
    second = merge_session_llm_usage(
        first,
        {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
        model="gpt-4.1",
        response_id="resp_2",
        at=datetime(2026, 3, 1, 10, 1, tzinfo=UTC),
    )

    assert metadata == {"source": "web"}
    usage = second[LLM_USAGE_KEY]
    assert usage["totals"] == {
        "turn_count": 2,
        "input_tokens": 110,
        "output_tokens": 45,
        "total_tokens": 155,
    }
    assert usage["by_model"]["gpt-4.1-mini"]["total_tokens"] == 140
    assert usage["by_model"]["gpt-4.1"]["turn_count"] == 1
    assert usage["last_turn"] == {
        "model": "gpt-4.1",
        "response_id": "resp_2",
        "input_tokens": 10,
        "output_tokens": 5,
        "total_tokens": 15,
        "at": "2026-03-01T10:01:00Z",
    }
    assert second["source"] == "web"
    assert read_session_llm_usage_totals(second) == usage["totals"]


def test_merge_without_usage_leaves_metadata_alone() -> None:
    merged = merge_session_llm_usage({"source": "web"}, None, model="gpt-4.1")

    assert merged == {"source": "web"}
    assert read_session_llm_usage_totals(merged) is None
