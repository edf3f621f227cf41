from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from brainspot.models.base import utc_now
from brainspot.models.phase import Phase, PhaseDataRequirement
from brainspot.models.session import Session, SessionFieldValue


async def _session(db: AsyncSession, **overrides: object) -> Session:
    now = utc_now()
    values: dict[str, object] = {
        "current_phase": "intake",
        "status": "active",
        "phase_start_time": now,
        "last_activity_at": now,
        "metadata_": {},
    }
    values.update(overrides)
    session = Session(**values)
    db.add(session)
    await db.flush()
    return session


@pytest.mark.asyncio
async def test_session_defaults(db_session: AsyncSession) -> None:
    session = await _session(db_session)

    assert session.id is not None
    assert session.phase_transition_count == 0
    assert session.completed_at is None
    assert session.created_at is not None


@pytest.mark.asyncio
async def test_session_status_is_constrained(db_session: AsyncSession) -> None:
    with pytest.raises(IntegrityError):
        await _session(db_session, status="paused")
    await db_session.rollback()


@pytest.mark.asyncio
async def test_field_value_is_unique_per_session_and_name(db_session: AsyncSession) -> None:
    session = await _session(db_session)
    for value in ("chest", "throat"):
        db_session.add(
            SessionFieldValue(
                session_id=session.id,
                phase_id="setup",
                field_name="body_location",
                field_value=value,
                field_type="string",
            )
        )

    with pytest.raises(IntegrityError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_requirement_schema_round_trips_as_json(db_session: AsyncSession) -> None:
    db_session.add(Phase(id="setup", display_name="Setup", position=4, minimum_turns=2))
    db_session.add(
        PhaseDataRequirement(
            id="setup.suds_level",
            phase_id="setup",
            name="suds_level",
            required=True,
            field_schema={"type": "integer", "minimum": 0, "maximum": 10},
        )
    )
    await db_session.commit()
    db_session.expunge_all()

    row = await db_session.scalar(
        select(PhaseDataRequirement).where(PhaseDataRequirement.name == "suds_level")
    )

    assert row is not None
    assert row.field_schema == {"type": "integer", "minimum": 0, "maximum": 10}
    assert row.sort_order == 0
    assert row.description == ""


@pytest.mark.asyncio
async def test_phase_minimum_turns_cannot_be_negative(db_session: AsyncSession) -> None:
    db_session.add(Phase(id="broken", display_name="Broken", position=1, minimum_turns=-1))

    with pytest.raises(IntegrityError):
        await db_session.flush()
    await db_session.rollback()
