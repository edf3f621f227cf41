from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from openai import APIConnectionError, BadRequestError

from brainspot.agents.coach_client import (
    CoachRequest,
    OpenAICoachClient,
    ToolCall,
    function_call_output_item,
    parse_response_output,
)
from brainspot.workflow.errors import CoachModelError

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/responses")

_RESPONSE_PAYLOAD: dict[str, Any] = {
    "id": "resp_123",
    "model": "gpt-4.1-mini",
    "output": [
        {
            "type": "message",
            "role": "assistant",
            "content": [
                {"type": "output_text", "text": "Notice where you feel it. "},
                {"type": "output_text", "text": "Take your time."},
            ],
        },
        {
            "type": "function_call",
            "call_id": "call_9",
            "name": "collect_structured_data",
            "arguments": '{"data": {"body_location": "chest"}}',
        },
    ],
    "usage": {"input_tokens": 50, "output_tokens": 12, "total_tokens": 62},
}


class _FakeResponses:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeOpenAI:
    def __init__(self, outcomes: list[Any]) -> None:
        self.responses = _FakeResponses(outcomes)


def test_parse_response_output_reads_text_tools_and_usage() -> None:
    reply = parse_response_output(_RESPONSE_PAYLOAD)

    assert reply.text == "Notice where you feel it. Take your time."
    assert reply.tool_calls == (
        ToolCall(
            call_id="call_9",
            name="collect_structured_data",
            arguments='{"data": {"body_location": "chest"}}',
        ),
    )
    assert reply.usage == {"input_tokens": 50, "output_tokens": 12, "total_tokens": 62}
    assert reply.model == "gpt-4.1-mini"
    assert reply.response_id == "resp_123"


def test_parse_response_output_tolerates_empty_payload() -> None:
    reply = parse_response_output({})

    assert reply.text == ""
    assert reply.tool_calls == ()
    assert reply.usage is None
    assert reply.response_id is None


@pytest.mark.asyncio
async def test_client_sends_tools_and_previous_response_id() -> None:
    fake = _FakeOpenAI([_RESPONSE_PAYLOAD])
    client = OpenAICoachClient(client=fake, model="gpt-test", temperature=0.2)  # type: ignore[arg-type]

    reply = await client.respond(
        CoachRequest(
            instructions="be kind",
            input_items=[{"role": "user", "content": "hi"}],
            tools=[{"type": "function", "name": "collect_structured_data"}],
            previous_response_id="resp_prev",
        )
    )

    assert reply.response_id == "resp_123"
    [call] = fake.responses.calls
    assert call["model"] == "gpt-test"
    assert call["temperature"] == 0.2
    assert call["instructions"] == "be kind"
    assert call["previous_response_id"] == "resp_prev"
    assert call["tools"][0]["name"] == "collect_structured_data"


@pytest.mark.asyncio
async def test_client_retries_connection_errors() -> None:
    fake = _FakeOpenAI([APIConnectionError(request=_REQUEST), _RESPONSE_PAYLOAD])
    client = OpenAICoachClient(client=fake, model="gpt-test", max_attempts=2)  # type: ignore[arg-type]

    reply = await client.respond(CoachRequest(instructions="x"))

    assert reply.text.startswith("Notice")
    assert len(fake.responses.calls) == 2
    assert "tools" not in fake.responses.calls[0]


@pytest.mark.asyncio
async def test_client_raises_coach_model_error_for_client_errors() -> None:
    error = BadRequestError(
        "bad tool schema",
        response=httpx.Response(400, request=_REQUEST),
        body=None,
    )
    fake = _FakeOpenAI([error])
    client = OpenAICoachClient(client=fake, model="gpt-test", max_attempts=3)  # type: ignore[arg-type]

    with pytest.raises(CoachModelError) as exc_info:
        await client.respond(CoachRequest(instructions="x"))

    assert exc_info.value.category == "upstream_client_error"
    assert exc_info.value.retryable is False
    assert len(fake.responses.calls) == 1


def test_function_call_output_item_serializes_result() -> None:
    item = function_call_output_item(
        ToolCall(call_id="call_1", name="therapy_session_transition"),
        {"success": True, "new_phase": "setup"},
    )

    assert item["type"] == "function_call_output"
    assert item["call_id"] == "call_1"
    assert json.loads(item["output"]) == {"success": True, "new_phase": "setup"}
