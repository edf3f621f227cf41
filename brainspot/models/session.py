"""Session, message and collected-field models for multi-phase conversation state."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from brainspot.models.base import Base, JSONType, UUIDPrimaryKeyMixin, utc_now

if TYPE_CHECKING:
    from brainspot.models.phase_transition_event import PhaseTransitionEvent


class Session(UUIDPrimaryKeyMixin, Base):
    """Patient session that walks the protocol phases until ``complete``."""

    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'completed')",
            name="ck_sessions_status",
        ),
        Index("ix_sessions_status_updated", "status", "updated_at"),
    )

    current_phase: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    phase_start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    phase_transition_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    messages: Mapped[list[Message]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )
    field_values: Mapped[list[SessionFieldValue]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
    )
    phase_transitions: Mapped[list[PhaseTransitionEvent]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
    )


class Message(UUIDPrimaryKeyMixin, Base):
    """Conversation message persisted by session."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "role IN ('patient', 'coach', 'system')",
            name="ck_messages_role",
        ),
        CheckConstraint(
            "message_type IN ('conversation', 'tool_call', 'tool_result')",
            name="ck_messages_message_type",
        ),
        Index("ix_messages_session_created", "session_id", "created_at"),
    )

    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(20), nullable=False, default="conversation")
    phase: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    session: Mapped[Session] = relationship(back_populates="messages")


class SessionFieldValue(UUIDPrimaryKeyMixin, Base):
    """One collected protocol field, upserted per (session, field name)."""

    __tablename__ = "session_field_values"
    __table_args__ = (
        UniqueConstraint("session_id", "field_name", name="uq_session_field_values_session_field"),
        CheckConstraint(
            "field_type IN ('string', 'number', 'boolean', 'object')",
            name="ck_session_field_values_type",
        ),
    )

    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phase_id: Mapped[str] = mapped_column(String(64), nullable=False)
    field_name: Mapped[str] = mapped_column(String(120), nullable=False)
    field_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    field_type: Mapped[str] = mapped_column(String(20), nullable=False, default="string")

    session: Mapped[Session] = relationship(back_populates="field_values")
