"""Coach orchestrator: one patient turn in, one coach reply out.

Each turn:
1. Serializes on the session (in-process lock plus a row lock).
2. Persists the patient message.
3. Builds the coach request from engine guidance via a
   :class:`TurnContextBuilder`.
4. Calls the coach model and executes its tool calls against the
   session service and the phase workflow engine.
5. Persists the coach reply, tool-call records and token usage, then commits.

User-visible recovery from model failures lives here; the engine never
produces patient-facing text.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from brainspot.agents.coach_client import (
    CoachModelClient,
    CoachReply,
    CoachRequest,
    ToolCall,
    function_call_output_item,
)
from brainspot.agents.context_builder import PhaseContextBuilder, TurnContextBuilder
from brainspot.agents.session_locks import SessionTurnLocks
from brainspot.agents.tools import (
    COLLECT_TOOL_NAME,
    KNOWN_TOOL_NAMES,
    TRANSITION_TOOL_NAME,
    parse_tool_arguments,
)
from brainspot.config import settings
from brainspot.models.session import Message, Session
from brainspot.observability.llm_usage import merge_session_llm_usage
from brainspot.observability.metrics import WorkflowMetrics
from brainspot.observability.sentry_setup import capture_exception_with_context
from brainspot.services.session_service import SessionService
from brainspot.util.logger import log_agent, log_error
from brainspot.workflow.errors import (
    CoachModelError,
    InvalidTransitionError,
    NotFoundError,
    PhaseRequirementError,
    RequirementsNotMetError,
    StoreError,
    WorkflowError,
)
from brainspot.workflow.phases import (
    MessageRole,
    MessageType,
    SessionStatus,
    TransitionTrigger,
    is_terminal_phase,
)

APOLOGY_REPLY = (
    "I'm sorry, I lost my train of thought for a moment. "
    "Take a slow breath with me, and when you're ready, could you share that again?"
)
_MISSING_DATA_INSTRUCTIONS = (
    "Use collect_structured_data() to collect the missing data before attempting transition."
)
_TOOL_MESSAGE_TEXT = {
    COLLECT_TOOL_NAME: "Collecting therapeutic data",
    TRANSITION_TOOL_NAME: "Changing session phase",
}


@dataclass(frozen=True, slots=True)
class ToolOutcome:
    call_id: str
    name: str
    arguments: dict[str, Any]
    result: dict[str, Any]


@dataclass(frozen=True, slots=True)
class TurnResult:
    session_id: UUID
    reply: str
    phase_before: str
    phase_after: str
    status: str
    tool_results: tuple[ToolOutcome, ...] = ()
    model_error: bool = False

    @property
    def transitioned(self) -> bool:
        return self.phase_before != self.phase_after

    @property
    def completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED


class CoachOrchestrator:
    """Coordinates the coach model, the session service and the workflow engine."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        client: CoachModelClient,
        context_builder: TurnContextBuilder | None = None,
        locks: SessionTurnLocks | None = None,
        metrics: WorkflowMetrics | None = None,
        turn_timeout_seconds: float | None = None,
    ) -> None:
        self.db = db
        self.client = client
        self.context_builder: TurnContextBuilder = context_builder or PhaseContextBuilder()
        self.locks = locks or SessionTurnLocks()
        self.service = SessionService(db, metrics=metrics)
        self.turn_timeout_seconds = (
            settings.turn_timeout_seconds if turn_timeout_seconds is None else turn_timeout_seconds
        )

    async def start_session(self, metadata: dict[str, Any] | None = None) -> Session:
        session = await self.service.create_session(metadata)
        await self.db.commit()
        log_agent("session started", f"{session.id} phase={session.current_phase}")
        return session

    async def handle_turn(self, session_id: UUID, patient_message: str) -> TurnResult:
        """Run one turn; at most one turn per session is in flight at a time."""
        async with self.locks.hold(session_id):
            try:
                async with asyncio.timeout(self.turn_timeout_seconds):
                    return await self._run_turn(session_id, patient_message)
            except Exception:
                await self.db.rollback()
                raise

    async def _run_turn(self, session_id: UUID, patient_message: str) -> TurnResult:
        if await self.service.store.lock_session(session_id) is None:
            raise NotFoundError("session", str(session_id))
        session = await self.service.get_session(session_id)
        phase_before = session.current_phase

        text = patient_message.strip()
        if text:
            await self.service.record_message(session.id, MessageRole.PATIENT, text)

        context = await self.context_builder.build(service=self.service, session=session)
        try:
            reply = await self.client.respond(context.request)
        except CoachModelError as exc:
            return await self._recover_from_model_error(session, phase_before, exc)

        self._accumulate_usage(session, reply)
        if reply.text:
            await self.service.record_message(session.id, MessageRole.COACH, reply.text)

        outcomes: list[ToolOutcome] = []
        for call in reply.tool_calls:
            outcomes.append(await self._run_tool_call(session, call))

        reply_text = reply.text
        if not reply_text and outcomes:
            reply_text = await self._follow_up_reply(session, context.request, reply, outcomes)

        await self.db.commit()
        log_agent(
            "turn finished",
            f"{session.id}: {phase_before} -> {session.current_phase} tools={len(outcomes)}",
        )
        return TurnResult(
            session_id=session.id,
            reply=reply_text,
            phase_before=phase_before,
            phase_after=session.current_phase,
            status=session.status,
            tool_results=tuple(outcomes),
        )

    async def _recover_from_model_error(
        self,
        session: Session,
        phase_before: str,
        exc: CoachModelError,
    ) -> TurnResult:
        log_error(f"Coach model failed for session {session.id}", exc)
        capture_exception_with_context(
            exc,
            tags={"component": "coach_orchestrator", "phase": phase_before},
            extras={"session_id": str(session.id), "category": exc.category},
        )
        await self.service.record_message(
            session.id,
            MessageRole.COACH,
            APOLOGY_REPLY,
            metadata={"model_error": exc.category},
        )
        await self.db.commit()
        return TurnResult(
            session_id=session.id,
            reply=APOLOGY_REPLY,
            phase_before=phase_before,
            phase_after=session.current_phase,
            status=session.status,
            model_error=True,
        )

    async def _follow_up_reply(
        self,
        session: Session,
        request: CoachRequest,
        reply: CoachReply,
        outcomes: list[ToolOutcome],
    ) -> str:
        """Ask the model for spoken text when it answered with tool calls only."""
        calls = {call.call_id: call for call in reply.tool_calls}
        follow_up = CoachRequest(
            instructions=request.instructions,
            input_items=[
                function_call_output_item(calls[item.call_id], item.result)
                for item in outcomes
                if item.call_id in calls
            ],
            previous_response_id=reply.response_id,
        )
        try:
            second = await self.client.respond(follow_up)
        except CoachModelError as exc:
            log_error(f"Coach follow-up failed for session {session.id}", exc)
            capture_exception_with_context(
                exc,
                tags={"component": "coach_orchestrator", "stage": "follow_up"},
                extras={"session_id": str(session.id), "category": exc.category},
            )
            second = CoachReply(text=APOLOGY_REPLY)

        self._accumulate_usage(session, second)
        if second.text:
            await self.service.record_message(session.id, MessageRole.COACH, second.text)
        return second.text

    def _accumulate_usage(self, session: Session, reply: CoachReply) -> None:
        session.metadata_ = merge_session_llm_usage(
            session.metadata_,
            reply.usage,
            model=reply.model,
            response_id=reply.response_id,
        )

    async def _run_tool_call(self, session: Session, call: ToolCall) -> ToolOutcome:
        record = await self.service.record_message(
            session.id,
            MessageRole.COACH,
            _TOOL_MESSAGE_TEXT.get(call.name, f"Called {call.name}"),
            message_type=MessageType.TOOL_CALL,
            metadata={"tool_name": call.name, "call_id": call.call_id, "status": "executing"},
        )

        arguments: dict[str, Any] = {}
        try:
            arguments = parse_tool_arguments(call.arguments)
            result = await self._dispatch_tool(session, call.name, arguments)
        except StoreError:
            raise
        except (WorkflowError, ValueError) as exc:
            result = {"success": False, "error": str(exc)}

        self._finish_tool_message(record, arguments, result)
        await self.db.flush()
        log_agent("tool executed", f"{call.name} success={result.get('success')}")
        return ToolOutcome(call_id=call.call_id, name=call.name, arguments=arguments, result=result)

    @staticmethod
    def _finish_tool_message(
        record: Message,
        arguments: dict[str, Any],
        result: dict[str, Any],
    ) -> None:
        metadata = dict(record.metadata_ or {})
        metadata.update(
            {
                "arguments": arguments,
                "status": "completed",
                "success": bool(result.get("success")),
                "tool_result": result,
            }
        )
        record.metadata_ = metadata

    async def _dispatch_tool(
        self,
        session: Session,
        name: str,
        arguments: dict[str, Any],
    ) -> dict[str, Any]:
        if name == COLLECT_TOOL_NAME:
            return await self._collect_structured_data(session, arguments)
        if name == TRANSITION_TOOL_NAME:
            return await self._therapy_session_transition(session, arguments)
        return {
            "success": False,
            "error": f"Unknown tool '{name}'. Available tools: {', '.join(sorted(KNOWN_TOOL_NAMES))}",
        }

    async def _not_ready_payload(self, session: Session, exc: PhaseRequirementError) -> dict[str, Any]:
        engine = self.service.engine_for(session.id)
        readiness = await engine.evaluate_readiness(session.current_phase)
        return {
            "success": False,
            "error": f"phase requirements not met: {exc}",
            "guidance": await engine.get_phase_guidance(session.current_phase),
            "missing_fields": list(readiness.missing_fields),
            "turns": {
                "minimum_turns": readiness.minimum_turns,
                "required_messages": readiness.required_messages,
                "messages_in_phase": readiness.messages_in_phase,
                "complete": readiness.turns_ok,
            },
            "instructions": _MISSING_DATA_INSTRUCTIONS,
        }

    async def _complete(self, session: Session) -> dict[str, Any]:
        engine = self.service.engine_for(session.id)
        try:
            await engine.complete_session()
        except RequirementsNotMetError as exc:
            return await self._not_ready_payload(session, exc.cause)
        return {
            "success": True,
            "status": session.status,
            "message": "Session completed successfully",
        }

    async def _collect_structured_data(
        self,
        session: Session,
        arguments: dict[str, Any],
    ) -> dict[str, Any]:
        data = arguments.get("data")
        if not isinstance(data, dict):
            return {"success": False, "error": "'data' must be an object of field values"}

        collected = await self.service.collect_field_values(session.id, data)
        payload: dict[str, Any] = {"success": bool(collected.stored), **collected.to_payload()}

        engine = self.service.engine_for(session.id)
        phase = session.current_phase
        try:
            await engine.validate_phase_requirements(phase)
        except PhaseRequirementError as exc:
            payload["ready_to_transition"] = False
            payload["not_ready_reason"] = str(exc)
            return payload
        payload["ready_to_transition"] = True

        if is_terminal_phase(phase):
            payload["completion"] = await self._complete(session)
            return payload

        target = await self.service.next_phase_for(session)
        if target is None:
            return payload
        try:
            change = await self.service.transition_phase(
                session.id,
                target,
                trigger=TransitionTrigger.AI_OUTPUT,
                reason="requirements met",
            )
        except InvalidTransitionError as exc:
            payload["transition_error"] = str(exc)
            return payload
        payload["transition"] = {"from_phase": change.from_phase, "to_phase": change.to_phase}
        return payload

    async def _therapy_session_transition(
        self,
        session: Session,
        arguments: dict[str, Any],
    ) -> dict[str, Any]:
        target_raw = str(arguments.get("target_phase") or "").strip()
        reason = str(arguments.get("reason") or "").strip()
        if not target_raw:
            return {"success": False, "error": "'target_phase' is required"}

        target = await self.service.resolve_target_phase(session, target_raw)
        if target is None:
            if is_terminal_phase(session.current_phase):
                return await self._complete(session)
            return {"success": False, "error": f"no phase follows {session.current_phase}"}

        try:
            change = await self.service.transition_phase(
                session.id,
                target,
                trigger=TransitionTrigger.AI_OUTPUT,
                reason=reason,
            )
        except PhaseRequirementError as exc:
            return await self._not_ready_payload(session, exc)
        return {
            "success": True,
            "new_phase": change.to_phase,
            "message": f"Transitioned to {change.to_phase}",
        }
