"""Phase transition audit model."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from brainspot.models.base import Base, JSONType, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from brainspot.models.session import Session


class PhaseTransitionEvent(UUIDPrimaryKeyMixin, Base):
    """Track committed phase changes for session orchestration."""

    __tablename__ = "phase_transition_events"
    __table_args__ = (
        CheckConstraint(
            "trigger IN ('ai_output', 'user_action', 'system')",
            name="ck_phase_transition_events_trigger",
        ),
        Index("ix_phase_transition_events_session_created", "session_id", "created_at"),
    )

    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_phase: Mapped[str] = mapped_column(String(64), nullable=False)
    to_phase: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    session: Mapped[Session] = relationship(back_populates="phase_transitions")
