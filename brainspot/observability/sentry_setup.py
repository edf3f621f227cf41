"""Sentry wiring for the coach and the CLI.

Two kinds of data are scrubbed before an event leaves the process:
credentials, and anything a patient said or answered. Scrubbing is by key
name, so new payload shapes are covered as long as they use the same keys.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from copy import deepcopy
from typing import Any, Literal

import sentry_sdk

from brainspot.config import settings
from brainspot.util.logger import logger

SentrySource = Literal["orchestrator", "cli"]

REDACTED = "[REDACTED]"
_MAX_DEPTH = 8
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_CREDENTIAL_SUFFIXES = ("apikey", "token", "secret", "password")
_REDACTED_KEYS = frozenset(
    {
        "authorization",
        "cookie",
        # clinical payloads
        "content",
        "patientmessage",
        "fieldvalue",
        "fieldvalues",
        "collecteddata",
    }
)


def _redacts(key: object) -> bool:
    folded = _NON_ALNUM.sub("", str(key).lower())
    if not folded:
        return False
    return folded in _REDACTED_KEYS or folded.endswith(_CREDENTIAL_SUFFIXES)


def _scrub(value: Any, depth: int = 0) -> Any:
    if depth >= _MAX_DEPTH:
        return str(value)
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if _redacts(key) else _scrub(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, list | tuple):
        return [_scrub(item, depth + 1) for item in value]
    return value


def sentry_before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    """Return a scrubbed copy of ``event``; the original is left untouched."""
    del hint
    cleaned = deepcopy(event)

    request = cleaned.get("request")
    if isinstance(request, dict) and request.get("data") is not None:
        request["data"] = _scrub(request["data"])
    if isinstance(cleaned.get("extra"), dict):
        cleaned["extra"] = _scrub(cleaned["extra"])

    crumbs = cleaned.get("breadcrumbs")
    if isinstance(crumbs, dict) and isinstance(crumbs.get("values"), list):
        crumbs["values"] = [_scrub(crumb) for crumb in crumbs["values"]]
    return cleaned


def init_sentry(*, source: SentrySource) -> bool:
    """Start the SDK tagged with ``source``. Returns False when no DSN is set."""
    dsn = settings.sentry_dsn.strip()
    if not dsn:
        return False

    environment = settings.effective_sentry_env
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        before_send=sentry_before_send,
    )
    sentry_sdk.set_tag("source", source)
    logger.info("Sentry enabled (source=%s, env=%s)", source, environment)
    return True


def capture_exception_with_context(
    exc: BaseException,
    *,
    tags: Mapping[str, Any] | None = None,
    extras: Mapping[str, Any] | None = None,
) -> None:
    with sentry_sdk.new_scope() as scope:
        for key, value in (tags or {}).items():
            if value is not None:
                scope.set_tag(str(key), str(value))
        for key, value in (extras or {}).items():
            scope.set_extra(str(key), REDACTED if _redacts(key) else _scrub(value))
        sentry_sdk.capture_exception(exc)
