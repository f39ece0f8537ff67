"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from keyword_notifier.models import Source

STACKOVERFLOW_API = "https://api.stackexchange.com/2.3"
TWITTER_API = "https://api.twitter.com/2"


@dataclass(frozen=True)
class SourceConfig:
    """Per-source fetch settings. Immutable for the lifetime of the process."""

    source: Source
    enabled: bool = True
    query: str = ""
    interval_seconds: int = 60
    batch_limit: int = 100
    endpoint: str = ""
    api_key: str | None = None
    timeout_seconds: float = 30.0
    # Settings that could not be parsed; the source fails when its loop starts.
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class Config:
    """Application configuration. All values sourced from environment variables."""

    # Required
    database_path: str

    # Optional: Sources
    stackoverflow: SourceConfig = SourceConfig(Source.STACKOVERFLOW, endpoint=STACKOVERFLOW_API)
    twitter: SourceConfig = SourceConfig(Source.TWITTER, endpoint=TWITTER_API)

    # Optional: Backoff
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 900.0
    backoff_jitter: float = 0.1

    # Optional: Dedup
    dedup_retention_days: int = 90

    # Optional: Alerts
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None

    # Optional: Application
    log_level: str = "INFO"
    log_format: str = "json"
    app_env: str = "production"

    @property
    def sources(self) -> tuple[SourceConfig, ...]:
        return (self.stackoverflow, self.twitter)

    @property
    def alerts_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


_REQUIRED_VARS = [
    "DATABASE_PATH",
]

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_number(name: str, raw: str, convert, default, errors: list[str]):
    """Convert ``raw`` or note the problem in ``errors`` and return ``default``."""
    try:
        return convert(raw.strip())
    except ValueError:
        errors.append(f"{name}={raw!r} is not a valid {convert.__name__}")
        return default


def _source_config(
    source: Source,
    prefix: str,
    endpoint: str,
    *,
    keyword: str,
    key_var: str,
) -> SourceConfig:
    errors: list[str] = []

    def number(name: str, shared: str, default, convert=int):
        # Per-source variable first, then the shared one.
        for var in (f"{prefix}_{name}", shared):
            raw = os.environ.get(var)
            if raw is not None and raw.strip():
                return _parse_number(var, raw, convert, default, errors)
        return default

    return SourceConfig(
        source=source,
        enabled=_env_bool(f"{prefix}_ENABLED", True),
        query=os.environ.get(f"{prefix}_QUERY", keyword),
        interval_seconds=number("INTERVAL_SEC", "INTERVAL_IN_SEC", 60),
        batch_limit=number("BATCH_LIMIT", "BATCH_LIMIT", 100),
        endpoint=os.environ.get(f"{prefix}_ENDPOINT", endpoint),
        api_key=os.environ.get(key_var) or None,
        timeout_seconds=number("TIMEOUT_SECONDS", "HTTP_TIMEOUT_SECONDS", 30.0, convert=float),
        errors=tuple(errors),
    )


def load_config(env_path: str | Path | None = None) -> Config:
    """Load configuration from environment variables.

    Loads a .env file if present (for local development), then validates
    that all required variables are set. Raises ValueError listing any
    missing variables.

    Per-source credentials and queries are not required here: a source
    with missing settings fails on its own when its loop starts, leaving
    the other sources running.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [var for var in _REQUIRED_VARS if not os.environ.get(var)]
    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    keyword = os.environ.get("KEYWORD", "")

    return Config(
        # Required
        database_path=os.environ["DATABASE_PATH"],
        # Optional: Sources
        stackoverflow=_source_config(
            Source.STACKOVERFLOW, "STACKOVERFLOW", STACKOVERFLOW_API,
            keyword=keyword, key_var="STACKOVERFLOW_API_KEY",
        ),
        twitter=_source_config(
            Source.TWITTER, "TWITTER", TWITTER_API,
            keyword=keyword, key_var="TWITTER_API_BEARER",
        ),
        # Optional: Backoff
        backoff_base_seconds=float(os.environ.get("BACKOFF_BASE_SECONDS", "5")),
        backoff_max_seconds=float(os.environ.get("BACKOFF_MAX_SECONDS", "900")),
        backoff_jitter=float(os.environ.get("BACKOFF_JITTER", "0.1")),
        # Optional: Dedup
        dedup_retention_days=int(os.environ.get("DEDUP_RETENTION_DAYS", "90")),
        # Optional: Alerts
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN") or None,
        telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID") or None,
        # Optional: Application
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_format=os.environ.get("LOG_FORMAT", "json"),
        app_env=os.environ.get("APP_ENV", "production"),
    )
