"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating values and providing actionable error messages.

Exclusion rules are the one lenient exception: a malformed rule set never
fails configuration, it degrades to "no rules".
"""

import json
import os
from datetime import timedelta
from typing import Any, Literal, TypeVar

import dotenv
from loguru import logger
from pydantic import BaseModel, Field, field_validator

_T = TypeVar("_T", int, float)

DrainMode = Literal["batch", "head"]


def _get_optional_env(name: str) -> str | None:
    """Read an env var, treating empty values and placeholders as unset."""
    value = os.getenv(name, "").strip()
    if not value:
        return None
    if value.startswith("your_") and value.endswith("_here"):
        return None
    return value


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_rules(name: str) -> Any:
    """Read the exclusion rule set as JSON; malformed input means no rules."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return []
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"{name} is not valid JSON; ignoring exclusion rules")
        return []


class StreamApiConfig(BaseModel):
    """Credentials and transport settings for the remote record API."""

    api_key: str | None = Field(default=None, description="Site API key")
    site_uuid: str | None = Field(default=None, description="Site UUID registered with the API")
    base_url: str = Field(default="https://api.wp-stream.com", description="API base URL")
    timeout: float = Field(default=30.0, description="HTTP timeout per request (seconds)")

    @field_validator("base_url")
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and strip the trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"STREAM_API_URL must be an http(s) URL. Got: {v!r}")
        return v.rstrip("/")

    @property
    def is_connected(self) -> bool:
        """True when both the API key and the site UUID are configured."""
        return bool(self.api_key and self.site_uuid)


class BufferConfig(BaseModel):
    """Settings for the local retry buffer."""

    limit: int = Field(default=500, description="Records per persisted buffer page")
    schedule: str = Field(default="hourly", description="Named recurrence for buffer flushes")
    first_delay: float = Field(default=3600.0, description="Delay before the first flush (seconds)")
    drain: DrainMode = Field(default="batch", description="Records submitted per flush: a page or only the head")
    db_path: str | None = Field(default=None, description="DuckDB file for the buffer; in-memory when unset")

    @field_validator("limit")
    def validate_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"STREAM_BUFFER_LIMIT must be > 0. Got: {v}")
        return v

    @field_validator("first_delay")
    def validate_first_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"STREAM_BUFFER_FIRST_DELAY must be >= 0. Got: {v}")
        return v

    @property
    def first_delay_timedelta(self) -> timedelta:
        return timedelta(seconds=self.first_delay)


class Config(BaseModel):
    """Top-level application configuration."""

    api: StreamApiConfig = Field(default_factory=StreamApiConfig, description="Record API configuration")
    buffer: BufferConfig = Field(default_factory=BufferConfig, description="Retry buffer configuration")
    exclude_rules: Any = Field(default_factory=list, description="Exclusion rule set (list or column settings)")
    dev_debug: bool = Field(default=False, description="Development mode (verbose logging)")


def load_config() -> Config:
    """Load application configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages for malformed values.
    - Missing API credentials are allowed; the client then reports itself as
      not connected and records accumulate in the buffer.
    """
    dotenv.load_dotenv()

    api = StreamApiConfig(
        api_key=_get_optional_env("STREAM_API_KEY"),
        site_uuid=_get_optional_env("STREAM_SITE_UUID"),
        base_url=_get_optional_env("STREAM_API_URL") or "https://api.wp-stream.com",
        timeout=_get_env_number("STREAM_API_TIMEOUT", 30.0, float),
    )
    drain = _get_optional_env("STREAM_BUFFER_DRAIN") or "batch"
    if drain not in {"batch", "head"}:
        raise ValueError(f"STREAM_BUFFER_DRAIN must be 'batch' or 'head'. Got: {drain!r}")
    buffer = BufferConfig(
        limit=_get_env_number("STREAM_BUFFER_LIMIT", 500, int),
        schedule=_get_optional_env("STREAM_BUFFER_SCHEDULE") or "hourly",
        first_delay=_get_env_number("STREAM_BUFFER_FIRST_DELAY", 3600.0, float),
        drain=drain,  # type: ignore[arg-type]
        db_path=_get_optional_env("STREAM_DB_PATH"),
    )
    return Config(
        api=api,
        buffer=buffer,
        exclude_rules=_get_env_rules("STREAM_EXCLUDE_RULES"),
        dev_debug=_get_env_bool("STREAM_DEV_DEBUG", False),
    )
