from __future__ import annotations

from uuid import UUID

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from brainspot.models.phase_transition_event import PhaseTransitionEvent
from brainspot.models.session import SessionFieldValue
from brainspot.services.session_service import (
    SessionService,
    coerce_for_schema,
    normalize_field_value,
)
from brainspot.workflow.errors import (
    InsufficientTurnsError,
    InvalidTransitionError,
    MissingDataError,
    NotFoundError,
)
from brainspot.workflow.phases import MessageRole, MessageType, SessionStatus, TransitionTrigger


async def _field_row(db: AsyncSession, session_id: UUID, name: str) -> SessionFieldValue | None:
    return await db.scalar(
        select(SessionFieldValue).where(
            SessionFieldValue.session_id == session_id,
            SessionFieldValue.field_name == name,
        )
    )


def test_normalize_field_value_by_type() -> None:
    assert normalize_field_value("  left temple ") == ("left temple", "string")
    assert normalize_field_value(True) == ("true", "boolean")
    assert normalize_field_value(7) == ("7", "number")
    assert normalize_field_value({"b": 1, "a": 2}) == ('{"a": 2, "b": 1}', "object")
    assert normalize_field_value(None) == ("", "string")


def test_coerce_for_schema_decodes_json_for_non_string_types() -> None:
    schema = {"type": "integer", "minimum": 0, "maximum": 10}

    assert coerce_for_schema("7", schema) == (7, None)
    value, error = coerce_for_schema("42", schema)
    assert value == "42"
    assert error is not None
    assert coerce_for_schema("free text", {"type": "string"}) == ("free text", None)
    assert coerce_for_schema({"any": "thing"}, None) == ({"any": "thing"}, None)


@pytest.mark.asyncio
async def test_create_session_starts_in_first_phase(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)

    session = await service.create_session({"source": "test"})

    assert session.current_phase == "intake"
    assert session.status == SessionStatus.ACTIVE
    assert session.phase_transition_count == 0
    assert session.metadata_ == {"source": "test"}


@pytest.mark.asyncio
async def test_create_session_without_protocol_raises(db_session: AsyncSession) -> None:
    with pytest.raises(NotFoundError):
        await SessionService(db_session).create_session()


@pytest.mark.asyncio
async def test_get_session_unknown_id_raises(mini_db: AsyncSession) -> None:
    with pytest.raises(NotFoundError):
        await SessionService(mini_db).get_session(UUID(int=1))


@pytest.mark.asyncio
async def test_record_message_tags_current_phase(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    message = await service.record_message(session.id, MessageRole.PATIENT, "hi there")

    assert message.phase == "intake"
    assert message.message_type == MessageType.CONVERSATION
    assert session.last_activity_at >= session.phase_start_time


@pytest.mark.asyncio
async def test_list_recent_messages_skips_tool_calls(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()
    for index in range(3):
        await service.record_message(session.id, MessageRole.PATIENT, f"patient {index}")
    await service.record_message(
        session.id,
        MessageRole.COACH,
        "Collecting therapeutic data",
        message_type=MessageType.TOOL_CALL,
    )
    await service.record_message(session.id, MessageRole.COACH, "coach reply")

    recent = await service.list_recent_messages(session.id, 2)

    assert [item.content for item in recent] == ["patient 2", "coach reply"]
    assert await service.list_recent_messages(session.id, 0) == []


@pytest.mark.asyncio
async def test_collect_classifies_required_and_extra_fields(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    result = await service.collect_field_values(
        session.id,
        {"consent_given": True, "mood": "  hopeful  "},
    )

    assert result.phase == "intake"
    assert result.stored == ("consent_given", "mood")
    assert result.satisfied == ("consent_given",)
    assert result.extra == ("mood",)
    assert result.missing == ()
    assert result.rejected == {}

    mood = await _field_row(mini_db, session.id, "mood")
    assert mood is not None
    assert mood.field_value == "hopeful"
    assert mood.phase_id == "intake"
    consent = await _field_row(mini_db, session.id, "consent_given")
    assert consent is not None
    assert (consent.field_value, consent.field_type) == ("true", "boolean")


@pytest.mark.asyncio
async def test_collect_rejects_values_failing_schema(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    result = await service.collect_field_values(session.id, {"suds_level": 42})

    assert result.stored == ()
    assert "suds_level" in result.rejected
    assert await _field_row(mini_db, session.id, "suds_level") is None


@pytest.mark.asyncio
async def test_collect_accepts_numeric_text_for_integer_field(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    result = await service.collect_field_values(session.id, {"suds_level": "7"})

    assert result.stored == ("suds_level",)
    row = await _field_row(mini_db, session.id, "suds_level")
    assert row is not None
    assert (row.field_value, row.field_type) == ("7", "number")


@pytest.mark.asyncio
async def test_collect_upserts_existing_value(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    await service.collect_field_values(session.id, {"body_location": "chest"})
    await service.collect_field_values(session.id, {"body_location": "throat"})

    rows = (
        await mini_db.scalars(
            select(SessionFieldValue).where(SessionFieldValue.session_id == session.id)
        )
    ).all()
    assert [(row.field_name, row.field_value) for row in rows] == [("body_location", "throat")]
    assert await service.get_collected_values(session.id) == {"body_location": "throat"}


@pytest.mark.asyncio
async def test_transition_rejects_edge_missing_from_table(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.transition_phase(session.id, "status_check")
    assert exc_info.value.from_phase == "intake"
    assert session.current_phase == "intake"


@pytest.mark.asyncio
async def test_transition_requires_ready_phase(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    with pytest.raises(MissingDataError):
        await service.transition_phase(session.id, "setup")

    await service.collect_field_values(session.id, {"consent_given": True})
    with pytest.raises(InsufficientTurnsError):
        await service.transition_phase(session.id, "setup")
    assert session.phase_transition_count == 0


@pytest.mark.asyncio
async def test_transition_moves_session_and_records_event(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()
    started_at = session.phase_start_time
    await service.collect_field_values(session.id, {"consent_given": True})
    await service.record_message(session.id, MessageRole.PATIENT, "yes, I'm ready")
    await service.record_message(session.id, MessageRole.COACH, "Let's begin")

    change = await service.transition_phase(
        session.id,
        "setup",
        trigger=TransitionTrigger.USER_ACTION,
        reason="consent obtained",
    )

    assert (change.from_phase, change.to_phase) == ("intake", "setup")
    assert session.current_phase == "setup"
    assert session.phase_transition_count == 1
    assert session.phase_start_time > started_at

    event = await mini_db.scalar(
        select(PhaseTransitionEvent).where(PhaseTransitionEvent.session_id == session.id)
    )
    assert event is not None
    assert (event.from_phase, event.to_phase) == ("intake", "setup")
    assert event.trigger == TransitionTrigger.USER_ACTION
    assert event.metadata_ == {"reason": "consent obtained"}


@pytest.mark.asyncio
async def test_next_phase_follows_required_edge(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    assert await service.next_phase_for(session) == "setup"


@pytest.mark.asyncio
async def test_next_phase_prefers_chosen_next_action(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()
    session.current_phase = "status_check"
    await mini_db.flush()

    # No required edge out of status_check: fall back to the next position.
    assert await service.next_phase_for(session) == "micro_reprocessing"

    await service.collect_field_values(session.id, {"next_action": "complete"})
    assert await service.next_phase_for(session) == "complete"


@pytest.mark.asyncio
async def test_next_phase_ignores_stale_next_action_elsewhere(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()
    session.current_phase = "status_check"
    await mini_db.flush()
    await service.collect_field_values(session.id, {"next_action": "micro_reprocessing"})

    session.current_phase = "micro_reprocessing"
    await mini_db.flush()

    assert await service.next_phase_for(session) == "status_check"


@pytest.mark.asyncio
async def test_next_phase_is_none_after_last_position(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()
    session.current_phase = "complete"
    await mini_db.flush()

    assert await service.next_phase_for(session) is None


@pytest.mark.asyncio
async def test_resolve_target_phase_variants(mini_db: AsyncSession) -> None:
    service = SessionService(mini_db)
    session = await service.create_session()

    assert await service.resolve_target_phase(session, "next") == "setup"
    assert await service.resolve_target_phase(session, " NEXT ") == "setup"
    assert await service.resolve_target_phase(session, "3") == "status_check"
    assert await service.resolve_target_phase(session, "setup") == "setup"
    with pytest.raises(NotFoundError):
        await service.resolve_target_phase(session, "99")
