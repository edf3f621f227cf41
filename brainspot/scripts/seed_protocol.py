#!/usr/bin/env python3
"""Create the schema and load a protocol document into the database.

Usage:
    python -m brainspot.scripts.seed_protocol [--config PATH] [--drop-existing]
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from pydantic import ValidationError

from brainspot.config import settings
from brainspot.models import database as db_module
from brainspot.observability.sentry_setup import init_sentry
from brainspot.util.logger import configure_logging, log_error, log_success, logger
from brainspot.workflow.protocol import load_protocol, read_protocol_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Protocol JSON document (default: {settings.protocol_config_path})",
    )
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop and recreate every table before loading.",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate the document and exit without touching the database.",
    )
    return parser


async def seed(config_path: Path | None, *, drop_existing: bool) -> int:
    protocol = read_protocol_file(config_path)
    await db_module.init_db(drop_existing=drop_existing)
    assert db_module.AsyncSessionLocal is not None
    try:
        async with db_module.AsyncSessionLocal() as db:
            result = await load_protocol(db, protocol)
    finally:
        await db_module.close_database()
    log_success(
        f"Loaded protocol '{protocol.name}' v{protocol.version}: "
        f"{result.phases} phases, {result.requirements} requirements, "
        f"{result.transitions} transitions"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level, show_sql=settings.sqlalchemy_echo)
    init_sentry(source="cli")

    if args.validate_only:
        try:
            protocol = read_protocol_file(args.config)
        except (OSError, ValueError, ValidationError) as exc:
            log_error(f"Protocol document is invalid: {exc}")
            return 1
        logger.info(
            "Protocol '%s' is valid: %d phases, %d transitions.",
            protocol.name,
            len(protocol.phases),
            len(protocol.transitions),
        )
        return 0

    return asyncio.run(seed(args.config, drop_existing=args.drop_existing))


if __name__ == "__main__":
    raise SystemExit(main())
