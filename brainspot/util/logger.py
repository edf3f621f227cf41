"""Rich console logging plus a rotating plain-text session log.

Engine decisions, coach activity and store operations share one logger
(``brainspot``). Console output is styled with rich; the same records go to
``<LOG_DIR>/brainspot.log`` with markup stripped, rotated at 10 MB with
five backups.
"""

from __future__ import annotations

import logging
import logging.handlers
import re

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from brainspot.config import settings

APP_LOGGER_NAME = "brainspot"
_LOG_FILE_NAME = "brainspot.log"
_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 5

console = Console(
    theme=Theme(
        {
            "agent": "bold yellow",
            "phase": "bold magenta",
            "db": "bold blue",
            "success": "bold green",
            "error": "bold red",
        }
    )
)

# Style tags emitted by the helpers below. Bracketed content such as
# ``[SESSION STATE]`` is left alone.
_MARKUP_TAG_RE = re.compile(r"\[/?(?:agent|phase|db|success|error|bold|dim)\]", re.IGNORECASE)


class _PlainFileFormatter(logging.Formatter):
    """Drop rich markup so the file log reads as plain text."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        plain = logging.makeLogRecord(record.__dict__)
        plain.msg = _MARKUP_TAG_RE.sub("", record.getMessage())
        plain.args = None
        return super().format(plain)


def _build_console_handler() -> logging.Handler:
    handler = RichHandler(
        console=console,
        show_path=False,
        log_time_format="%m/%d/%y %H:%M:%S",
        rich_tracebacks=True,
        markup=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _build_file_handler() -> logging.Handler:
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        filename=log_dir / _LOG_FILE_NAME,
        maxBytes=_LOG_FILE_MAX_BYTES,
        backupCount=_LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    handler.setFormatter(
        _PlainFileFormatter(
            fmt="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler.setLevel(logging.DEBUG)
    return handler


_handlers: list[logging.Handler] = []


def _shared_handlers() -> list[logging.Handler]:
    if not _handlers:
        _handlers.append(_build_console_handler())
        _handlers.append(_build_file_handler())
    return _handlers


def _attach(target: logging.Logger, level: int) -> None:
    target.handlers.clear()
    for handler in _shared_handlers():
        target.addHandler(handler)
    target.setLevel(level)


def setup_logger(name: str = APP_LOGGER_NAME, level: int = logging.INFO) -> logging.Logger:
    """Return the named logger, wiring the shared handlers on first use."""
    app_logger = logging.getLogger(name)
    app_logger.setLevel(level)
    if app_logger.handlers:
        return app_logger
    _attach(app_logger, level)
    app_logger.propagate = False
    return app_logger


def configure_sqlalchemy_logging(show_sql: bool = False) -> None:
    """Route SQLAlchemy through the shared handlers; SQL text only when asked."""
    level = logging.INFO if show_sql else logging.WARNING
    for name in ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"):
        sqlalchemy_logger = logging.getLogger(name)
        _attach(sqlalchemy_logger, level)
        sqlalchemy_logger.propagate = False


def configure_logging(level: str = "INFO", show_sql: bool = False) -> logging.Logger:
    """Configure root, app and SQLAlchemy loggers for a process entry point."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    _attach(logging.getLogger(), log_level)
    configure_sqlalchemy_logging(show_sql=show_sql)
    return setup_logger(level=log_level)


logger = setup_logger()


def log_agent(action: str, detail: str = "") -> None:
    """Coach and orchestrator activity."""
    logger.info(f"[agent]{action}[/agent] {detail}".rstrip())


def log_phase(action: str, detail: str = "") -> None:
    """Workflow engine decisions."""
    logger.info(f"[phase]{action}[/phase] {detail}".rstrip())


def log_db(operation: str, detail: str = "") -> None:
    logger.debug(f"[db]{operation}[/db] {detail}".rstrip())


def log_success(message: str) -> None:
    logger.info(f"[success]✅ {message}[/success]")


def log_error(message: str, exc: BaseException | None = None) -> None:
    logger.error(f"[error]{message}[/error]", exc_info=exc)
