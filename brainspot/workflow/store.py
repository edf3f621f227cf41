"""Store contract consumed by the phase workflow engine.

The engine only reads through :class:`PhaseStore`; the single write it
performs is :meth:`PhaseStore.update_session_status`. Everything else a
turn writes (messages, field values, phase changes) goes through the
session service on the same ``AsyncSession``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from brainspot.models.phase import Phase, PhaseDataRequirement, PhaseTransition
from brainspot.models.session import Message, Session, SessionFieldValue
from brainspot.workflow.errors import StoreError
from brainspot.workflow.phases import SessionStatus


def normalize_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class SessionRecord:
    id: UUID
    current_phase: str
    status: str
    phase_start_time: datetime
    phase_transition_count: int = 0
    completed_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PhaseRecord:
    id: str
    display_name: str
    description: str
    position: int
    minimum_turns: int
    recommended_duration_seconds: int = 60


@dataclass(frozen=True, slots=True)
class RequirementRecord:
    phase_id: str
    name: str
    required: bool
    schema: dict[str, Any] | None = None
    description: str = ""
    sort_order: int = 0


@dataclass(frozen=True, slots=True)
class PhaseTransitionRecord:
    """One legal edge; ``condition_parameters`` is opaque to the engine."""

    id: str
    from_phase: str
    to_phase: str
    transition_type: str
    priority: int = 0
    condition_type: str | None = None
    description: str = ""
    condition_parameters: dict[str, Any] = field(default_factory=dict)


class PhaseStore(Protocol):
    """Lookups the engine needs. Implementations raise ``StoreError`` on I/O failure."""

    async def get_session(self, session_id: UUID) -> SessionRecord | None: ...

    async def get_phase(self, phase_id: str) -> PhaseRecord | None: ...

    async def list_required_fields(self, phase_id: str) -> list[RequirementRecord]: ...

    async def count_messages_since(self, session_id: UUID, since: datetime) -> int: ...

    async def count_messages(self, session_id: UUID) -> int: ...

    async def get_field_value(self, session_id: UUID, field_name: str) -> str | None: ...

    async def get_transition(
        self,
        from_phase: str,
        to_phase: str,
    ) -> PhaseTransitionRecord | None: ...

    async def list_transitions_from(self, phase_id: str) -> list[PhaseTransitionRecord]: ...

    async def update_session_status(
        self,
        session_id: UUID,
        status: str,
        updated_at: datetime,
    ) -> None: ...


def session_to_record(session: Session) -> SessionRecord:
    return SessionRecord(
        id=session.id,
        current_phase=session.current_phase,
        status=session.status,
        phase_start_time=normalize_utc(session.phase_start_time),
        phase_transition_count=session.phase_transition_count,
        completed_at=normalize_utc(session.completed_at) if session.completed_at else None,
    )


def phase_to_record(phase: Phase) -> PhaseRecord:
    return PhaseRecord(
        id=phase.id,
        display_name=phase.display_name,
        description=phase.description,
        position=phase.position,
        minimum_turns=phase.minimum_turns,
        recommended_duration_seconds=phase.recommended_duration_seconds,
    )


def transition_to_record(row: PhaseTransition) -> PhaseTransitionRecord:
    return PhaseTransitionRecord(
        id=row.id,
        from_phase=row.from_phase,
        to_phase=row.to_phase,
        transition_type=row.transition_type,
        priority=row.priority,
        condition_type=row.condition_type,
        description=row.description,
        condition_parameters=dict(row.condition_parameters or {}),
    )


class SqlAlchemyPhaseStore:
    """:class:`PhaseStore` backed by an ``AsyncSession``.

    Writes are flushed, never committed; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_session(self, session_id: UUID) -> SessionRecord | None:
        try:
            session = await self.db.get(Session, session_id)
        except SQLAlchemyError as exc:
            raise StoreError("session", str(exc)) from exc
        return session_to_record(session) if session is not None else None

    async def lock_session(self, session_id: UUID) -> SessionRecord | None:
        """Take a row lock on the session for the rest of the transaction.

        ``FOR UPDATE`` is dropped by the SQLite dialect, so this is a plain
        read in tests.
        """
        stmt = (
            select(Session)
            .where(Session.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            session = await self.db.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreError("lock_session", str(exc)) from exc
        return session_to_record(session) if session is not None else None

    async def get_phase(self, phase_id: str) -> PhaseRecord | None:
        try:
            phase = await self.db.get(Phase, phase_id)
        except SQLAlchemyError as exc:
            raise StoreError("phase", str(exc)) from exc
        return phase_to_record(phase) if phase is not None else None

    async def list_phases(self) -> list[PhaseRecord]:
        try:
            rows = (await self.db.scalars(select(Phase).order_by(Phase.position))).all()
        except SQLAlchemyError as exc:
            raise StoreError("phases", str(exc)) from exc
        return [phase_to_record(row) for row in rows]

    async def list_required_fields(self, phase_id: str) -> list[RequirementRecord]:
        return [item for item in await self.list_fields(phase_id) if item.required]

    async def list_fields(self, phase_id: str) -> list[RequirementRecord]:
        stmt = (
            select(PhaseDataRequirement)
            .where(PhaseDataRequirement.phase_id == phase_id)
            .order_by(PhaseDataRequirement.sort_order, PhaseDataRequirement.name)
        )
        try:
            rows = (await self.db.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError("requirements", str(exc)) from exc
        return [
            RequirementRecord(
                phase_id=row.phase_id,
                name=row.name,
                required=row.required,
                schema=row.field_schema,
                description=row.description,
                sort_order=row.sort_order,
            )
            for row in rows
        ]

    async def count_messages_since(self, session_id: UUID, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(Message)
            .where(Message.session_id == session_id, Message.created_at >= since)
        )
        try:
            count = await self.db.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreError("count_messages_since", str(exc)) from exc
        return int(count or 0)

    async def count_messages(self, session_id: UUID) -> int:
        stmt = select(func.count()).select_from(Message).where(Message.session_id == session_id)
        try:
            count = await self.db.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreError("count_messages", str(exc)) from exc
        return int(count or 0)

    async def get_field_value(self, session_id: UUID, field_name: str) -> str | None:
        stmt = select(SessionFieldValue.field_value).where(
            SessionFieldValue.session_id == session_id,
            SessionFieldValue.field_name == field_name,
        )
        try:
            return await self.db.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreError("field", str(exc)) from exc

    async def get_field_values(self, session_id: UUID) -> dict[str, str]:
        stmt = (
            select(SessionFieldValue.field_name, SessionFieldValue.field_value)
            .where(SessionFieldValue.session_id == session_id)
            .order_by(SessionFieldValue.created_at)
        )
        try:
            rows = (await self.db.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError("fields", str(exc)) from exc
        return {name: value for name, value in rows}

    async def get_transition(
        self,
        from_phase: str,
        to_phase: str,
    ) -> PhaseTransitionRecord | None:
        stmt = select(PhaseTransition).where(
            PhaseTransition.from_phase == from_phase,
            PhaseTransition.to_phase == to_phase,
        )
        try:
            row = await self.db.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreError("transition", str(exc)) from exc
        return transition_to_record(row) if row is not None else None

    async def list_transitions_from(self, phase_id: str) -> list[PhaseTransitionRecord]:
        stmt = (
            select(PhaseTransition)
            .where(PhaseTransition.from_phase == phase_id)
            .order_by(PhaseTransition.priority.desc(), PhaseTransition.to_phase)
        )
        try:
            rows = (await self.db.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError("transitions", str(exc)) from exc
        return [transition_to_record(row) for row in rows]

    async def update_session_status(
        self,
        session_id: UUID,
        status: str,
        updated_at: datetime,
    ) -> None:
        try:
            session = await self.db.get(Session, session_id)
            if session is None:
                raise StoreError("update_session_status", f"session {session_id} vanished")
            session.status = status
            session.updated_at = updated_at
            if status == SessionStatus.COMPLETED:
                session.completed_at = updated_at
            await self.db.flush()
        except SQLAlchemyError as exc:
            raise StoreError("update_session_status", str(exc)) from exc
