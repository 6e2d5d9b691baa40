"""Activity record models.

Records are designed to be:
- Immutable once built (a record is either delivered or buffered, never edited).
- Losslessly serializable, so a buffered record round-trips through storage.
- Explicit about metadata: a fixed author schema plus one open map for
  connector-specific fields.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Visibility = Literal["publish", "private"]

RECORD_TYPE: Literal["stream"] = "stream"


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


def iso_8601_extended(dt: datetime | None = None) -> str:
    """Format a timestamp with millisecond precision, e.g. `2024-01-02T03:04:05.678+0000`."""
    dt = dt or utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return f"{dt:%Y-%m-%dT%H:%M:%S}.{dt.microsecond // 1000:03d}{dt:%z}"


def validate_ip(value: Any) -> str | None:
    """Return `value` as a normalized IP address string, or None if it is not one."""
    if value is None or value == "":
        return None
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        return None


def drop_none(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of `data` without null-valued entries (top level only)."""
    return {k: v for k, v in data.items() if v is not None}


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class Actor(_Model):
    """The user responsible for an event. Id 0 is the anonymous actor."""

    id: int = 0
    email: str = ""
    display_name: str = ""
    login: str = ""
    roles: tuple[str, ...] = ()

    @property
    def role(self) -> str | None:
        """First assigned role, the only one considered for records and rules."""
        return self.roles[0] if self.roles else None


ANONYMOUS = Actor()


class AuthorMeta(_Model):
    """Description of the actor captured alongside each record.

    Connector-specific keys beyond the fields below are kept as-is.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    user_email: str | None = None
    display_name: str | None = None
    user_login: str | None = None
    user_role_label: str | None = None
    agent: str | None = None

    # Only set when the event was logged from a command-line process.
    system_user_id: int | None = None
    system_user_name: str | None = None


class StreamMeta(_Model):
    """Record metadata: the author block plus connector-specific fields."""

    author_meta: AuthorMeta | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Flatten into the API shape, dropping null-valued entries."""
        data = drop_none(dict(self.extra))
        if self.author_meta is not None:
            data["author_meta"] = self.author_meta.model_dump(exclude_none=True)
        return data


class Record(_Model):
    """A normalized activity record ready for delivery or buffering."""

    object_id: int = 0
    site_id: int = 1
    blog_id: int = 1
    author: int = 0
    author_role: str | None = None
    created: str = Field(default_factory=iso_8601_extended)
    visibility: Visibility = "publish"
    type: Literal["stream"] = RECORD_TYPE
    summary: str = ""
    connector: str
    context: str
    action: str
    stream_meta: StreamMeta = Field(default_factory=StreamMeta)
    ip: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the record API (`stream_meta` flattened)."""
        data = self.model_dump(mode="json", exclude={"stream_meta"})
        data["stream_meta"] = self.stream_meta.to_payload()
        return data


class SiteContext(_Model):
    """Where the event happened: network and blog identity."""

    multisite: bool = False
    network_id: int = 1
    blog_id: int = 1
    network_admin: bool = False

    @property
    def site_id(self) -> int:
        return self.network_id if self.multisite else 1

    @property
    def logged_blog_id(self) -> int:
        return 0 if self.network_admin else self.blog_id


class RequestContext(_Model):
    """Facts about the request (or process) that triggered the event."""

    remote_addr: str | None = None
    is_cli: bool = False
    is_cron: bool = False

    @property
    def ip(self) -> str | None:
        return validate_ip(self.remote_addr)

    @property
    def agent(self) -> str:
        """Originating agent label: `cli`, `cron`, or empty for web requests."""
        if self.is_cli:
            return "cli"
        if self.is_cron:
            return "cron"
        return ""
