"""Record construction from raw events.

The builder resolves who did what and where, decides visibility through the
exclusion rules, and returns an immutable `Record`. It performs no I/O beyond
the host lookups behind `ActorDirectory`, and it never fails: anything it
cannot resolve falls back to anonymous/zero values.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError

from .exclusion import ExclusionRule, is_excluded
from .models import (
    ANONYMOUS,
    Actor,
    AuthorMeta,
    Record,
    RequestContext,
    SiteContext,
    StreamMeta,
    iso_8601_extended,
)

# printf conversions, positional or named; `%%` is a literal percent sign.
_CONVERSION = re.compile(r"%(?:\((?P<name>[^)]*)\))?[#0\- +]*(?:\*|\d+)?(?:\.(?:\*|\d+))?[diouxXeEfFgGcrsa%]")


class ActorDirectory(Protocol):
    """Host lookups for actors and role labels."""

    def current_actor_id(self) -> int:
        """Id of the actor of the current session (0 when anonymous)."""

    def get_actor(self, actor_id: int) -> Actor | None:
        """Return the actor with `actor_id`, or None if unknown."""

    def role_labels(self) -> Mapping[str, str]:
        """Map of role slug -> human-readable label for the current site."""


class InMemoryActorDirectory:
    """Directory backed by plain dicts, for tests and embedded hosts."""

    def __init__(
        self,
        actors: Iterable[Actor] = (),
        *,
        role_labels: Mapping[str, str] | None = None,
        current_actor_id: int = 0,
    ) -> None:
        self._actors = {a.id: a for a in actors}
        self._role_labels = dict(role_labels or {})
        self.session_actor_id = current_actor_id

    def current_actor_id(self) -> int:
        return self.session_actor_id

    def get_actor(self, actor_id: int) -> Actor | None:
        return self._actors.get(actor_id)

    def role_labels(self) -> Mapping[str, str]:
        return dict(self._role_labels)


def _system_user() -> tuple[int | None, str | None]:
    """OS user id/name of this process, where the platform has them."""
    getuid = getattr(os, "getuid", None)
    if getuid is None:
        return None, None
    uid = getuid()
    try:
        import pwd

        return uid, pwd.getpwuid(uid).pw_name
    except (ImportError, KeyError):
        return uid, None


def format_summary(message: str, args: Mapping[str, Any]) -> str:
    """Format a printf-style message with event arguments.

    Positional conversions consume argument values in order; named
    conversions (`%(key)s`) read the mapping. A mismatch returns the message
    unformatted.
    """
    conversions = [m for m in _CONVERSION.finditer(message) if not m.group(0).endswith("%")]
    try:
        if any(m.group("name") is not None for m in conversions):
            return message % dict(args)
        values = [v for k, v in args.items() if k != "author_meta"]
        return message % tuple(values[: len(conversions)])
    except (TypeError, ValueError, KeyError) as exc:
        logger.debug(f"Could not format summary {message!r}: {exc}")
        return message


class RecordBuilder:
    """Turns raw events into normalized records."""

    def __init__(
        self,
        *,
        actors: ActorDirectory,
        rules: Iterable[ExclusionRule] = (),
        site: SiteContext | None = None,
        request: Callable[[], RequestContext] | None = None,
        clock: Callable[[], str] = iso_8601_extended,
    ) -> None:
        """Create a builder.

        Args:
            actors: Host lookups for actors and role labels.
            rules: Ordered exclusion rules deciding record visibility.
            site: Network/blog identity stamped on every record.
            request: Returns the context of the request being handled.
            clock: Returns the `created` timestamp string.
        """
        self._actors = actors
        self._rules = list(rules)
        self._site = site or SiteContext()
        self._request = request or RequestContext
        self._clock = clock

    @property
    def rules(self) -> list[ExclusionRule]:
        return list(self._rules)

    def resolve_actor(self, actor_id: int | None) -> Actor:
        if actor_id is None:
            try:
                actor_id = self._actors.current_actor_id()
            except Exception:  # noqa: BLE001 - unresolvable session means anonymous
                logger.debug("Could not resolve session actor; logging as anonymous")
                return ANONYMOUS
        try:
            actor = self._actors.get_actor(actor_id)
        except Exception:  # noqa: BLE001 - unresolvable actor means anonymous
            actor = None
        # Unknown ids keep their id so the record still names who acted.
        return actor if actor is not None else Actor(id=int(actor_id or 0))

    def _role_label(self, actor: Actor) -> str | None:
        if actor.role is None:
            return None
        try:
            return self._actors.role_labels().get(actor.role)
        except Exception:  # noqa: BLE001 - labels are cosmetic
            return None

    def author_meta(self, actor: Actor, request: RequestContext) -> AuthorMeta:
        """Describe the actor, plus the OS user when logging from a command line."""
        display_name = actor.display_name
        if request.is_cli and not display_name:
            display_name = "WP-CLI"
        system_user_id, system_user_name = _system_user() if request.is_cli else (None, None)
        return AuthorMeta(
            user_email=actor.email,
            display_name=display_name,
            user_login=actor.login,
            user_role_label=self._role_label(actor),
            agent=request.agent,
            system_user_id=system_user_id,
            system_user_name=system_user_name,
        )

    def build(
        self,
        connector: str,
        message: str,
        args: Mapping[str, Any] | None,
        object_id: int | None,
        context: str,
        action: str,
        actor_id: int | None = None,
    ) -> Record:
        """Build a record for one event."""
        args = dict(args or {})
        request = self._request()
        actor = self.resolve_actor(actor_id)
        ip = request.ip

        excluded = is_excluded(connector, context, action, actor, ip, self._rules)

        supplied_meta = args.pop("author_meta", None)
        if isinstance(supplied_meta, AuthorMeta):
            author_meta = supplied_meta
        else:
            author_meta = self.author_meta(actor, request)
            if isinstance(supplied_meta, Mapping):
                try:
                    author_meta = AuthorMeta.model_validate(supplied_meta)
                except ValidationError as exc:
                    logger.warning(f"Ignoring invalid author_meta for {connector}/{action}: {exc}")

        extra = {k: v for k, v in args.items() if v is not None}

        return Record(
            object_id=int(object_id or 0),
            site_id=self._site.site_id,
            blog_id=self._site.logged_blog_id,
            author=actor.id,
            author_role=actor.role,
            created=self._clock(),
            visibility="private" if excluded else "publish",
            summary=format_summary(message, args),
            connector=connector,
            context=context,
            action=action,
            stream_meta=StreamMeta(author_meta=author_meta, extra=extra),
            ip=ip,
        )
