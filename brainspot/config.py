"""Application configuration loaded from .env via Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).resolve().parent
_DEFAULT_PROTOCOL_PATH = _PACKAGE_DIR / "workflow" / "assets" / "brainspotting_protocol.json"
_DEFAULT_LOG_DIR = _PACKAGE_DIR.parent / "logs"


class Settings(BaseSettings):
    """Runtime settings for the workflow engine, store and coach."""

    app_name: str = Field(default="Brainspot Navigator", alias="APP_NAME")
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: Path = Field(default=_DEFAULT_LOG_DIR, alias="LOG_DIR")

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_coach_model: str = Field(default="gpt-4.1-mini", alias="OPENAI_COACH_MODEL")
    coach_temperature: float = Field(default=0.7, alias="COACH_TEMPERATURE")
    context_history_messages: int = Field(default=20, alias="CONTEXT_HISTORY_MESSAGES")
    turn_timeout_seconds: float = Field(default=60.0, alias="TURN_TIMEOUT_SECONDS")
    protocol_config_path: Path = Field(
        default=_DEFAULT_PROTOCOL_PATH,
        alias="PROTOCOL_CONFIG_PATH",
    )

    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_user: str = Field(default="postgres", alias="POSTGRES_USER")
    postgres_password: str = Field(default="postgres", alias="POSTGRES_PASSWORD")
    postgres_db: str = Field(default="brainspot", alias="POSTGRES_DB")
    postgres_pool_size: int = Field(default=10, alias="POSTGRES_POOL_SIZE")
    postgres_max_overflow: int = Field(default=20, alias="POSTGRES_MAX_OVERFLOW")
    database_url_override: str | None = Field(default=None, alias="DATABASE_URL")
    sqlalchemy_echo: bool = Field(default=False, alias="SQLALCHEMY_ECHO")

    sentry_dsn: str = Field(default="", alias="SENTRY_DSN")
    sentry_env: str = Field(default="", alias="SENTRY_ENV")
    sentry_traces_sample_rate: float = Field(default=0.0, alias="SENTRY_TRACES_SAMPLE_RATE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("context_history_messages")
    @classmethod
    def _validate_history_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CONTEXT_HISTORY_MESSAGES must be >= 0")
        return value

    @property
    def database_url(self) -> str:
        if isinstance(self.database_url_override, str) and self.database_url_override.strip():
            return self.database_url_override.strip()
        user = quote_plus(self.postgres_user)
        password = quote_plus(self.postgres_password)
        return (
            f"postgresql+asyncpg://{user}:{password}@"
            f"{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def effective_sentry_env(self) -> str:
        explicit = self.sentry_env.strip()
        if explicit:
            return explicit
        return self.app_env.strip().lower() or "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
