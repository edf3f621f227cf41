"""Coach model client: one Responses API call per coach reply."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI

from brainspot.config import settings
from brainspot.util.logger import log_agent, logger
from brainspot.workflow.errors import CoachModelError


@dataclass(frozen=True, slots=True)
class ToolCall:
    call_id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class CoachReply:
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    usage: dict[str, Any] | None = None
    model: str = ""
    response_id: str | None = None


@dataclass(frozen=True, slots=True)
class CoachRequest:
    """Everything one model call needs, built by the turn context builder."""

    instructions: str
    input_items: list[dict[str, Any]] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)
    previous_response_id: str | None = None


class CoachModelClient(Protocol):
    """Protocol for the LLM behind the coach. Failures raise ``CoachModelError``."""

    async def respond(self, request: CoachRequest) -> CoachReply:
        """Return the coach's text and any tool calls."""


def _to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_to_jsonable(item) for item in value]
    if hasattr(value, "model_dump"):
        return _to_jsonable(value.model_dump(mode="json", exclude_none=True, warnings=False))
    return str(value)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, APIConnectionError | APITimeoutError):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    status_code = getattr(exc, "status_code", None)
    return isinstance(status_code, int) and (status_code == 429 or status_code >= 500)


def _classify_error(exc: Exception) -> str:
    if isinstance(exc, APIConnectionError | APITimeoutError | httpx.TransportError):
        return "network"
    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, APIError):
        if status_code == 429:
            return "upstream_rate_limit"
        if isinstance(status_code, int) and status_code >= 500:
            return "upstream_server_error"
        if isinstance(status_code, int) and status_code >= 400:
            return "upstream_client_error"
        return "upstream_api_error"
    return "unknown"


def parse_response_output(payload: dict[str, Any]) -> CoachReply:
    """Turn a Responses API payload (as a plain dict) into a :class:`CoachReply`."""
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "function_call":
            tool_calls.append(
                ToolCall(
                    call_id=str(item.get("call_id") or item.get("id") or ""),
                    name=str(item.get("name") or ""),
                    arguments=str(item.get("arguments") or ""),
                )
            )
        elif item_type == "message":
            for part in item.get("content") or []:
                if isinstance(part, dict) and part.get("type") == "output_text":
                    text_parts.append(str(part.get("text") or ""))

    usage = payload.get("usage")
    return CoachReply(
        text="".join(text_parts).strip(),
        tool_calls=tuple(tool_calls),
        usage=usage if isinstance(usage, dict) else None,
        model=str(payload.get("model") or ""),
        response_id=str(payload["id"]) if payload.get("id") else None,
    )


class OpenAICoachClient:
    """Call the OpenAI Responses API with function tools."""

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.openai_coach_model
        self.temperature = settings.coach_temperature if temperature is None else temperature
        self.max_attempts = max(1, max_attempts)

    def _build_kwargs(self, request: CoachRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "instructions": request.instructions,
            "input": request.input_items,
            "temperature": self.temperature,
        }
        if request.tools:
            kwargs["tools"] = request.tools
        if request.previous_response_id:
            kwargs["previous_response_id"] = request.previous_response_id
        return kwargs

    async def respond(self, request: CoachRequest) -> CoachReply:
        kwargs = self._build_kwargs(request)
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.responses.create(**kwargs)
            except (APIError, httpx.HTTPError) as exc:
                retryable = _is_retryable(exc)
                if retryable and attempt < self.max_attempts:
                    await asyncio.sleep(0.35 * attempt)
                    continue
                category = _classify_error(exc)
                logger.warning(
                    "Coach model call failed: model=%s attempt=%s category=%s error=%s",
                    self.model,
                    attempt,
                    category,
                    exc,
                )
                raise CoachModelError(
                    f"coach model call failed ({category}): {exc}",
                    category=category,
                    retryable=retryable,
                ) from exc

            reply = parse_response_output(_to_jsonable(response))
            log_agent(
                "coach reply",
                f"model={reply.model or self.model} tools={[call.name for call in reply.tool_calls]}",
            )
            return reply

        raise CoachModelError("coach model call exhausted retries", category="network", retryable=True)


def function_call_output_item(call: ToolCall, result: dict[str, Any]) -> dict[str, Any]:
    """Responses API input item carrying one tool result back to the model."""
    return {
        "type": "function_call_output",
        "call_id": call.call_id,
        "output": json.dumps(result, ensure_ascii=False, default=str),
    }

