from __future__ import annotations

import json
from pathlib import Path

import pytest

from brainspot.config import settings
from brainspot.scripts import seed_protocol


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(seed_protocol, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(seed_protocol, "init_sentry", lambda **kwargs: False)


def test_validate_only_accepts_packaged_protocol() -> None:
    assert seed_protocol.main(["--validate-only"]) == 0


def test_validate_only_rejects_broken_document(tmp_path: Path) -> None:
    broken = tmp_path / "protocol.json"
    broken.write_text(json.dumps({"name": "broken", "phases": []}), encoding="utf-8")

    assert seed_protocol.main(["--validate-only", "--config", str(broken)]) == 1


@pytest.mark.asyncio
async def test_seed_loads_protocol_into_fresh_schema(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "database_url_override", "sqlite+aiosqlite://")

    assert await seed_protocol.seed(None, drop_existing=True) == 0
