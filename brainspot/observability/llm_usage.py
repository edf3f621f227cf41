"""Token accounting for coach turns, kept in ``Session.metadata_``.

Layout under ``metadata["llm_usage"]``::

    {"version": 1,
     "totals": {turn_count, input_tokens, output_tokens, total_tokens},
     "by_model": {<model>: {...same counters...}},
     "last_turn": {model, response_id, input/output/total_tokens, at}}
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

LLM_USAGE_KEY = "llm_usage"
_VERSION = 1
_COUNTERS = ("turn_count", "input_tokens", "output_tokens", "total_tokens")


def _count(value: Any) -> int:
    """Coerce a reported count to a non-negative int; junk becomes 0."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, int | float):
        return max(int(value), 0)
    return 0


def _counters(raw: Any) -> dict[str, int]:
    source = raw if isinstance(raw, Mapping) else {}
    return {name: _count(source.get(name)) for name in _COUNTERS}


def _mapping(raw: Any) -> dict[str, Any]:
    return dict(raw) if isinstance(raw, Mapping) else {}


def normalize_llm_usage(raw_usage: Mapping[str, Any] | None) -> dict[str, int] | None:
    """Accept Responses (``input_tokens``) or chat (``prompt_tokens``) usage.

    ``None`` when nothing was counted.
    """
    if not isinstance(raw_usage, Mapping):
        return None
    tokens_in = _count(raw_usage.get("input_tokens", raw_usage.get("prompt_tokens")))
    tokens_out = _count(raw_usage.get("output_tokens", raw_usage.get("completion_tokens")))
    tokens_total = _count(raw_usage.get("total_tokens")) or tokens_in + tokens_out
    if not (tokens_in or tokens_out or tokens_total):
        return None
    return {"input_tokens": tokens_in, "output_tokens": tokens_out, "total_tokens": tokens_total}


def merge_session_llm_usage(
    metadata: Mapping[str, Any] | None,
    raw_usage: Mapping[str, Any] | None,
    *,
    model: str | None,
    response_id: str | None = None,
    at: datetime | None = None,
) -> dict[str, Any]:
    """Fold one turn into a copy of ``metadata``; the input is not mutated."""
    merged = dict(metadata or {})
    turn = normalize_llm_usage(raw_usage)
    if turn is None:
        return merged

    model_name = (model or "").strip() or "unknown"
    usage = _mapping(merged.get(LLM_USAGE_KEY))
    by_model = _mapping(usage.get("by_model"))
    totals = _counters(usage.get("totals"))
    per_model = _counters(by_model.get(model_name))

    for counters in (totals, per_model):
        counters["turn_count"] += 1
        for name, amount in turn.items():
            counters[name] += amount

    moment = (at or datetime.now(UTC)).astimezone(UTC)
    by_model[model_name] = per_model
    usage.update(
        version=_VERSION,
        totals=totals,
        by_model=by_model,
        last_turn={
            "model": model_name,
            "response_id": (response_id or "").strip(),
            **turn,
            "at": moment.isoformat().replace("+00:00", "Z"),
        },
    )
    merged[LLM_USAGE_KEY] = usage
    return merged


def read_session_llm_usage_totals(metadata: Mapping[str, Any] | None) -> dict[str, int] | None:
    if not isinstance(metadata, Mapping):
        return None
    usage = metadata.get(LLM_USAGE_KEY)
    if not isinstance(usage, Mapping) or not isinstance(usage.get("totals"), Mapping):
        return None
    return _counters(usage["totals"])
