"""Protocol configuration models: phases, data requirements, transition table."""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from brainspot.models.base import Base, JSONType


class Phase(Base):
    """One stage of the protocol with its minimum dwell (in turns)."""

    __tablename__ = "phases"
    __table_args__ = (
        CheckConstraint("minimum_turns >= 0", name="ck_phases_minimum_turns"),
        UniqueConstraint("position", name="uq_phases_position"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    minimum_turns: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    recommended_duration_seconds: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=60,
    )

    requirements: Mapped[list[PhaseDataRequirement]] = relationship(
        back_populates="phase",
        cascade="all, delete-orphan",
        order_by="PhaseDataRequirement.sort_order",
    )


class PhaseDataRequirement(Base):
    """A field the session must populate before leaving a phase."""

    __tablename__ = "phase_data_requirements"
    __table_args__ = (
        UniqueConstraint("phase_id", "name", name="uq_phase_data_requirements_phase_name"),
        Index("ix_phase_data_requirements_phase_required", "phase_id", "required"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phase_id: Mapped[str] = mapped_column(
        ForeignKey("phases.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    field_schema: Mapped[dict[str, Any] | None] = mapped_column("schema", JSONType, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    phase: Mapped[Phase] = relationship(back_populates="requirements")


class PhaseTransition(Base):
    """Directed edge of the transition table.

    ``condition_parameters`` is an open key/value map read only by the
    coach layer; the engine checks edge existence and nothing else.
    """

    __tablename__ = "phase_transitions"
    __table_args__ = (
        CheckConstraint(
            "transition_type IN ('required', 'optional', 'conditional')",
            name="ck_phase_transitions_type",
        ),
        UniqueConstraint("from_phase", "to_phase", name="uq_phase_transitions_from_to"),
        Index("ix_phase_transitions_from_priority", "from_phase", "priority"),
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    from_phase: Mapped[str] = mapped_column(
        ForeignKey("phases.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_phase: Mapped[str] = mapped_column(
        ForeignKey("phases.id", ondelete="CASCADE"),
        nullable=False,
    )
    transition_type: Mapped[str] = mapped_column(String(20), nullable=False, default="required")
    condition_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    condition_parameters: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
