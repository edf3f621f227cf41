from __future__ import annotations

import sys
from copy import deepcopy
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from brainspot.config import settings  # noqa: E402
from brainspot.models import database as db_module  # noqa: E402
from brainspot.workflow.protocol import (  # noqa: E402
    ProtocolConfig,
    load_protocol,
    read_protocol_file,
)

# A five-phase protocol small enough to reason about in tests.
MINI_PROTOCOL: dict[str, Any] = {
    "name": "mini",
    "version": 1,
    "phases": [
        {
            "id": "intake",
            "display_name": "Intake",
            "description": "Greet the patient and obtain consent",
            "position": 1,
            "minimum_turns": 1,
            "requirements": [
                {"name": "consent_given", "required": True, "schema": {"type": "boolean"}},
            ],
        },
        {
            "id": "setup",
            "display_name": "Setup",
            "description": "Find the brainspot",
            "position": 2,
            "minimum_turns": 0,
            "requirements": [
                {
                    "name": "suds_level",
                    "required": True,
                    "schema": {"type": "integer", "minimum": 0, "maximum": 10},
                },
                {"name": "body_location", "required": True, "schema": {"type": "string"}},
                {"name": "eye_position", "required": True, "schema": {"type": "string"}},
                {"name": "setup_notes", "required": False},
            ],
        },
        {
            "id": "status_check",
            "display_name": "Status Check",
            "description": "Re-rate activation and choose the next step",
            "position": 3,
            "minimum_turns": 1,
            "requirements": [
                {
                    "name": "next_action",
                    "required": True,
                    "schema": {"type": "string", "enum": ["micro_reprocessing", "complete"]},
                },
            ],
        },
        {
            "id": "micro_reprocessing",
            "display_name": "Micro Reprocessing",
            "description": "Targeted intervention",
            "position": 4,
            "minimum_turns": 0,
            "requirements": [
                {"name": "technique_used", "required": False},
            ],
        },
        {
            "id": "complete",
            "display_name": "Complete",
            "description": "Close the session",
            "position": 5,
            "minimum_turns": 1,
            "requirements": [
                {"name": "final_suds", "required": True, "schema": {"type": "integer"}},
            ],
        },
    ],
    "transitions": [
        {
            "id": "intake_to_setup",
            "from_phase": "intake",
            "to_phase": "setup",
            "transition_type": "required",
            "priority": 100,
        },
        {
            "id": "setup_to_status",
            "from_phase": "setup",
            "to_phase": "status_check",
            "transition_type": "required",
            "priority": 100,
        },
        {
            "id": "status_to_micro",
            "from_phase": "status_check",
            "to_phase": "micro_reprocessing",
            "transition_type": "conditional",
            "condition_type": "activation_level",
            "priority": 90,
            "condition_parameters": {"min_activation": 6},
        },
        {
            "id": "micro_to_status",
            "from_phase": "micro_reprocessing",
            "to_phase": "status_check",
            "transition_type": "required",
            "priority": 100,
        },
    ],
}


def _use_in_memory_database() -> None:
    """Never let pytest touch a configured PostgreSQL database."""
    settings.database_url_override = "sqlite+aiosqlite://"


@pytest.fixture
def mini_protocol_data() -> dict[str, Any]:
    return deepcopy(MINI_PROTOCOL)


@pytest.fixture
def mini_protocol(mini_protocol_data: dict[str, Any]) -> ProtocolConfig:
    return ProtocolConfig.model_validate(mini_protocol_data)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    _use_in_memory_database()
    await db_module.close_database()
    await db_module.init_db(drop_existing=True)
    assert db_module.AsyncSessionLocal is not None
    async with db_module.AsyncSessionLocal() as session:
        yield session
    await db_module.close_database()


@pytest_asyncio.fixture
async def mini_db(db_session: AsyncSession, mini_protocol: ProtocolConfig) -> AsyncSession:
    await load_protocol(db_session, mini_protocol)
    return db_session


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    await load_protocol(db_session, read_protocol_file())
    return db_session
