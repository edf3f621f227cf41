"""Protocol configuration: phases, data requirements and the transition table.

A protocol is one JSON document. It is validated here, then upserted into
the store by :func:`load_protocol`; the engine only ever reads the rows.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brainspot.config import settings
from brainspot.models.phase import Phase, PhaseDataRequirement, PhaseTransition
from brainspot.util.logger import log_db, logger
from brainspot.workflow.phases import COMPLETE_PHASE

_PHASE_ID_PATTERN = r"^[a-z][a-z0-9_]*$"


class RequirementConfig(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    required: bool = False
    description: str = ""
    field_schema: dict[str, Any] | None = Field(default=None, alias="schema")

    model_config = {"populate_by_name": True}

    @field_validator("field_schema")
    @classmethod
    def validate_field_schema(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        if value is None:
            return None
        try:
            Draft202012Validator.check_schema(value)
        except SchemaError as exc:
            raise ValueError(f"invalid JSON Schema: {exc.message}") from exc
        return value


class PhaseConfig(BaseModel):
    id: str = Field(pattern=_PHASE_ID_PATTERN, max_length=64)
    display_name: str = Field(min_length=1, max_length=120)
    description: str = ""
    position: int = Field(ge=1)
    minimum_turns: int = Field(default=1, ge=0)
    recommended_duration_seconds: int = Field(default=60, ge=0)
    requirements: list[RequirementConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_requirements(self) -> PhaseConfig:
        names = [item.name for item in self.requirements]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"phase {self.id} declares duplicate requirements: {duplicates}")
        return self


class TransitionConfig(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    from_phase: str
    to_phase: str
    transition_type: Literal["required", "optional", "conditional"] = "required"
    condition_type: str | None = None
    priority: int = 0
    description: str = ""
    condition_parameters: dict[str, Any] = Field(default_factory=dict)


class ProtocolConfig(BaseModel):
    name: str = "brainspotting"
    version: int = 1
    phases: list[PhaseConfig] = Field(min_length=1)
    transitions: list[TransitionConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_graph(self) -> ProtocolConfig:
        phase_ids = [phase.id for phase in self.phases]
        if len(set(phase_ids)) != len(phase_ids):
            raise ValueError("phase ids must be unique")
        positions = [phase.position for phase in self.phases]
        if len(set(positions)) != len(positions):
            raise ValueError("phase positions must be unique")
        if COMPLETE_PHASE not in phase_ids:
            raise ValueError(f"protocol must define a '{COMPLETE_PHASE}' phase")

        # Collected values are keyed by field name for the whole session.
        field_owner: dict[str, str] = {}
        for phase in self.phases:
            for requirement in phase.requirements:
                owner = field_owner.setdefault(requirement.name, phase.id)
                if owner != phase.id:
                    raise ValueError(
                        f"field {requirement.name} is declared by both {owner} and {phase.id}"
                    )

        known = set(phase_ids)
        seen_pairs: set[tuple[str, str]] = set()
        seen_ids: set[str] = set()
        for transition in self.transitions:
            for endpoint in (transition.from_phase, transition.to_phase):
                if endpoint not in known:
                    raise ValueError(f"transition {transition.id} references unknown phase {endpoint}")
            pair = (transition.from_phase, transition.to_phase)
            if pair in seen_pairs:
                raise ValueError(f"duplicate transition {pair[0]} -> {pair[1]}")
            if transition.id in seen_ids:
                raise ValueError(f"duplicate transition id {transition.id}")
            seen_pairs.add(pair)
            seen_ids.add(transition.id)
        return self


@dataclass(frozen=True, slots=True)
class ProtocolLoadResult:
    phases: int
    requirements: int
    transitions: int
    removed: int


def requirement_row_id(phase_id: str, name: str) -> str:
    return f"{phase_id}.{name}"


def read_protocol_file(path: Path | str | None = None) -> ProtocolConfig:
    """Parse and validate a protocol document (default: the packaged one)."""
    resolved = Path(path) if path is not None else settings.protocol_config_path
    raw = json.loads(resolved.read_text(encoding="utf-8"))
    return ProtocolConfig.model_validate(raw)


async def _park_phase_positions(db: AsyncSession, config: ProtocolConfig) -> None:
    """Move stored phases onto free positions so the new ordering can land.

    Positions are unique, so a reordered document would collide with rows
    not yet rewritten. Stored phases absent from the document are placed
    after the last declared position.
    """
    stored = (await db.scalars(select(Phase).order_by(Phase.position))).all()
    if not stored:
        return
    for offset, phase in enumerate(stored, start=1):
        phase.position = -offset
    await db.flush()

    declared = {phase_config.id for phase_config in config.phases}
    next_free = max(phase_config.position for phase_config in config.phases)
    for phase in stored:
        if phase.id not in declared:
            next_free += 1
            phase.position = next_free


async def _prune_stale_rows(db: AsyncSession, config: ProtocolConfig) -> int:
    """Delete rows the document no longer declares; returns how many went.

    A transition whose id survives but whose endpoints changed is deleted
    too (and re-inserted by the caller) without counting as removed.
    """
    wanted_requirements = {
        requirement_row_id(phase_config.id, requirement_config.name)
        for phase_config in config.phases
        for requirement_config in phase_config.requirements
    }
    wanted_edges = {
        item.id: (item.from_phase, item.to_phase) for item in config.transitions
    }

    removed = 0
    for row in (await db.scalars(select(PhaseDataRequirement))).all():
        if row.id not in wanted_requirements:
            await db.delete(row)
            removed += 1
    for row in (await db.scalars(select(PhaseTransition))).all():
        edge = wanted_edges.get(row.id)
        if edge is None:
            await db.delete(row)
            removed += 1
        elif edge != (row.from_phase, row.to_phase):
            await db.delete(row)
    await db.flush()
    return removed


async def load_protocol(db: AsyncSession, config: ProtocolConfig) -> ProtocolLoadResult:
    """Upsert *config* into the store and commit.

    Rows are updated in place, so loading the same document twice is a
    no-op. Requirements and transitions no longer present in the document
    are removed before anything is written; phases are kept because
    sessions may still point at them.
    """
    removed = await _prune_stale_rows(db, config)
    await _park_phase_positions(db, config)

    for phase_config in config.phases:
        phase = await db.get(Phase, phase_config.id)
        if phase is None:
            phase = Phase(id=phase_config.id)
            db.add(phase)
        phase.display_name = phase_config.display_name
        phase.description = phase_config.description
        phase.position = phase_config.position
        phase.minimum_turns = phase_config.minimum_turns
        phase.recommended_duration_seconds = phase_config.recommended_duration_seconds
    await db.flush()

    requirement_count = 0
    for phase_config in config.phases:
        for sort_order, requirement_config in enumerate(phase_config.requirements):
            row_id = requirement_row_id(phase_config.id, requirement_config.name)
            requirement = await db.get(PhaseDataRequirement, row_id)
            if requirement is None:
                requirement = PhaseDataRequirement(id=row_id)
                db.add(requirement)
            requirement.phase_id = phase_config.id
            requirement.name = requirement_config.name
            requirement.required = requirement_config.required
            requirement.field_schema = requirement_config.field_schema
            requirement.description = requirement_config.description
            requirement.sort_order = sort_order
            requirement_count += 1

    for transition_config in config.transitions:
        transition = await db.get(PhaseTransition, transition_config.id)
        if transition is None:
            transition = PhaseTransition(id=transition_config.id)
            db.add(transition)
        transition.from_phase = transition_config.from_phase
        transition.to_phase = transition_config.to_phase
        transition.transition_type = transition_config.transition_type
        transition.condition_type = transition_config.condition_type
        transition.priority = transition_config.priority
        transition.description = transition_config.description
        transition.condition_parameters = dict(transition_config.condition_parameters)

    await db.commit()
    log_db(
        "protocol loaded",
        f"{config.name} v{config.version}: {len(config.phases)} phases, "
        f"{requirement_count} requirements, {len(config.transitions)} transitions",
    )
    if removed:
        logger.info("Removed %d stale protocol rows.", removed)
    return ProtocolLoadResult(
        phases=len(config.phases),
        requirements=requirement_count,
        transitions=len(config.transitions),
        removed=removed,
    )
