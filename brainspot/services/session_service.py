"""Session writes owned by the coach layer: sessions, messages, field values, phase changes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from jsonschema import Draft202012Validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brainspot.models.base import utc_now
from brainspot.models.phase import Phase, PhaseDataRequirement
from brainspot.models.phase_transition_event import PhaseTransitionEvent
from brainspot.models.session import Message, Session, SessionFieldValue
from brainspot.observability.metrics import WorkflowMetrics
from brainspot.util.logger import log_db, log_phase, logger
from brainspot.workflow.engine import PhaseWorkflowEngine
from brainspot.workflow.errors import InvalidTransitionError, NotFoundError
from brainspot.workflow.phases import (
    NEXT_ACTION_FIELD,
    MessageRole,
    MessageType,
    SessionStatus,
    TransitionTrigger,
    TransitionType,
)
from brainspot.workflow.store import SqlAlchemyPhaseStore

NEXT_PHASE_TARGET = "next"


@dataclass(frozen=True, slots=True)
class CollectResult:
    """Outcome of one ``collect_structured_data`` call."""

    phase: str
    stored: tuple[str, ...]
    satisfied: tuple[str, ...]
    extra: tuple[str, ...]
    missing: tuple[str, ...]
    rejected: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "stored_fields": list(self.stored),
            "requirements_satisfied": list(self.satisfied),
            "extra_data_stored": list(self.extra),
            "missing_requirements": list(self.missing),
            "rejected_fields": dict(self.rejected),
        }


@dataclass(frozen=True, slots=True)
class PhaseChange:
    from_phase: str
    to_phase: str
    trigger: str
    reason: str = ""


def normalize_field_value(value: Any) -> tuple[str, str]:
    """Return ``(text, field_type)`` for storage.

    Strings are trimmed; numbers, booleans and objects are JSON-encoded.
    ``None`` becomes an empty string, which reads as "not populated".
    """
    if isinstance(value, bool):
        return json.dumps(value), "boolean"
    if isinstance(value, int | float):
        return json.dumps(value), "number"
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False, sort_keys=True), "object"
    if value is None:
        return "", "string"
    return str(value).strip(), "string"


def _schema_errors(value: Any, schema: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(schema)
    return [error.message for error in validator.iter_errors(value)]


def coerce_for_schema(value: Any, schema: dict[str, Any] | None) -> tuple[Any, str | None]:
    """Validate *value* against *schema*, accepting JSON text for non-string types.

    Models often send ``"7"`` for an integer field; if the raw value fails
    but its JSON decoding passes, the decoded value is kept.
    """
    if not schema:
        return value, None
    errors = _schema_errors(value, schema)
    if not errors:
        return value, None
    if isinstance(value, str) and schema.get("type") not in (None, "string"):
        try:
            decoded = json.loads(value.strip())
        except ValueError:
            decoded = None
        if decoded is not None and not _schema_errors(decoded, schema):
            return decoded, None
    return value, errors[0]


class SessionService:
    """Store writes for one request scope, sharing the caller's ``AsyncSession``.

    Every write is flushed so the engine, which reads through the same
    session, sees it immediately. Commits are left to the caller.
    """

    def __init__(self, db: AsyncSession, *, metrics: WorkflowMetrics | None = None) -> None:
        self.db = db
        self.store = SqlAlchemyPhaseStore(db)
        self.metrics = metrics

    def engine_for(self, session_id: UUID) -> PhaseWorkflowEngine:
        return PhaseWorkflowEngine(session_id, self.store, metrics=self.metrics)

    async def get_session(self, session_id: UUID) -> Session:
        session = await self.db.get(Session, session_id)
        if session is None:
            raise NotFoundError("session", str(session_id))
        return session

    async def create_session(self, metadata: dict[str, Any] | None = None) -> Session:
        """Start a session in the lowest-position phase."""
        phases = await self.store.list_phases()
        if not phases:
            raise NotFoundError("phase", "initial phase (protocol not loaded)")

        now = utc_now()
        session = Session(
            current_phase=phases[0].id,
            status=SessionStatus.ACTIVE,
            phase_start_time=now,
            phase_transition_count=0,
            last_activity_at=now,
            metadata_=dict(metadata or {}),
        )
        self.db.add(session)
        await self.db.flush()
        log_db("session created", f"{session.id} phase={session.current_phase}")
        return session

    async def record_message(
        self,
        session_id: UUID,
        role: str,
        content: str,
        message_type: str = MessageType.CONVERSATION,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        session = await self.get_session(session_id)
        now = utc_now()
        message = Message(
            session_id=session.id,
            role=MessageRole(role),
            content=content,
            message_type=MessageType(message_type),
            phase=session.current_phase,
            metadata_=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        session.last_activity_at = now
        self.db.add(message)
        await self.db.flush()
        return message

    async def list_recent_messages(self, session_id: UUID, limit: int) -> list[Message]:
        """Most recent conversation messages, oldest first."""
        if limit <= 0:
            return []
        stmt = (
            select(Message)
            .where(
                Message.session_id == session_id,
                Message.message_type == MessageType.CONVERSATION,
            )
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        rows = list((await self.db.scalars(stmt)).all())
        rows.reverse()
        return rows

    async def _declared_fields(self) -> dict[str, PhaseDataRequirement]:
        rows = (await self.db.scalars(select(PhaseDataRequirement))).all()
        return {row.name: row for row in rows}

    async def collect_field_values(self, session_id: UUID, data: dict[str, Any]) -> CollectResult:
        """Upsert collected values tagged with the session's current phase."""
        session = await self.get_session(session_id)
        phase_id = session.current_phase
        declared = await self._declared_fields()
        required_here = [
            row.name for row in declared.values() if row.phase_id == phase_id and row.required
        ]

        stored: list[str] = []
        satisfied: list[str] = []
        extra: list[str] = []
        rejected: dict[str, str] = {}
        for key, raw_value in data.items():
            name = str(key).strip()
            if not name:
                continue
            requirement = declared.get(name)
            value, error = coerce_for_schema(
                raw_value,
                requirement.field_schema if requirement is not None else None,
            )
            if error is not None:
                rejected[name] = error
                continue

            text, field_type = normalize_field_value(value)
            existing = await self.db.scalar(
                select(SessionFieldValue).where(
                    SessionFieldValue.session_id == session.id,
                    SessionFieldValue.field_name == name,
                )
            )
            if existing is None:
                self.db.add(
                    SessionFieldValue(
                        session_id=session.id,
                        phase_id=phase_id,
                        field_name=name,
                        field_value=text,
                        field_type=field_type,
                    )
                )
            else:
                existing.phase_id = phase_id
                existing.field_value = text
                existing.field_type = field_type
                existing.updated_at = utc_now()

            stored.append(name)
            if name in required_here:
                satisfied.append(name)
            else:
                extra.append(name)

        session.last_activity_at = utc_now()
        await self.db.flush()
        missing = await self.engine_for(session.id).get_missing_fields(phase_id)
        if rejected:
            logger.info("Rejected field values for session %s: %s", session.id, rejected)
        log_db(
            "fields collected",
            f"session={session.id} phase={phase_id} stored={stored} missing={missing}",
        )
        return CollectResult(
            phase=phase_id,
            stored=tuple(stored),
            satisfied=tuple(satisfied),
            extra=tuple(extra),
            missing=tuple(missing),
            rejected=rejected,
        )

    async def get_collected_values(self, session_id: UUID) -> dict[str, str]:
        return await self.store.get_field_values(session_id)

    async def next_phase_for(self, session: Session) -> str | None:
        """Auto-advance target: ``next_action`` edge, best required edge, then position + 1."""
        engine = self.engine_for(session.id)
        current = session.current_phase
        transitions = await engine.list_transitions(current)

        declares_next_action = any(
            item.name == NEXT_ACTION_FIELD
            for item in await self.store.list_fields(current)
        )
        if declares_next_action:
            chosen = (await self.store.get_field_value(session.id, NEXT_ACTION_FIELD) or "").strip()
            if chosen and await engine.is_valid_transition(current, chosen):
                return chosen

        for transition in transitions:
            if transition.transition_type == TransitionType.REQUIRED:
                return transition.to_phase

        phase = await self.store.get_phase(current)
        if phase is None:
            raise NotFoundError("phase", current)
        following = await self.db.scalar(select(Phase).where(Phase.position == phase.position + 1))
        return following.id if following is not None else None

    async def resolve_target_phase(self, session: Session, target: str) -> str | None:
        """Map ``"next"``, a position number, or a phase id to a phase id.

        Returns ``None`` only for ``"next"`` when nothing follows the
        current phase.
        """
        cleaned = target.strip()
        if cleaned.lower() == NEXT_PHASE_TARGET:
            return await self.next_phase_for(session)
        if cleaned.isdigit() and int(cleaned) > 0:
            phase = await self.db.scalar(select(Phase).where(Phase.position == int(cleaned)))
            if phase is None:
                raise NotFoundError("phase", f"position {cleaned}")
            return phase.id
        return cleaned

    async def transition_phase(
        self,
        session_id: UUID,
        to_phase: str,
        *,
        trigger: str = TransitionTrigger.AI_OUTPUT,
        reason: str = "",
    ) -> PhaseChange:
        """Move the session along a legal edge once its current phase is ready.

        Raises ``InvalidTransitionError`` for an edge missing from the table
        and lets ``MissingDataError``/``InsufficientTurnsError`` propagate.
        """
        session = await self.get_session(session_id)
        engine = self.engine_for(session.id)
        from_phase = session.current_phase

        if not await engine.is_valid_transition(from_phase, to_phase):
            raise InvalidTransitionError(from_phase, to_phase)
        if await self.store.get_phase(to_phase) is None:
            raise NotFoundError("phase", to_phase)
        await engine.validate_phase_requirements(from_phase)

        now = utc_now()
        session.current_phase = to_phase
        session.phase_start_time = now
        session.phase_transition_count += 1
        session.last_activity_at = now
        self.db.add(
            PhaseTransitionEvent(
                session_id=session.id,
                from_phase=from_phase,
                to_phase=to_phase,
                trigger=TransitionTrigger(trigger),
                metadata_={"reason": reason} if reason else {},
            )
        )
        await self.db.flush()
        log_phase("transitioned", f"{session.id}: {from_phase} -> {to_phase} ({reason or trigger})")
        return PhaseChange(
            from_phase=from_phase,
            to_phase=to_phase,
            trigger=str(trigger),
            reason=reason,
        )
