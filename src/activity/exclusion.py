"""Rule-based record exclusion.

A rule is a sparse matcher: every field it sets must equal the event's value
(AND within a rule); the first fully matching rule excludes the event (OR
across rules). Fields left empty are wildcards, and a rule with no fields set
matches nothing.

Rules come from configuration in one of two shapes:

- a list of mappings, e.g. `[{"connector": "posts", "author_or_role": "editor"}]`
- the column-oriented settings shape, where `exclude_row` enumerates rows and
  `author_or_role`, `connector`, `context`, `action`, `ip_address` are
  parallel lists (or index-keyed mappings).

Malformed input never raises; unusable rows are skipped.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict

from .models import Actor, validate_ip

_COLUMNS = ("author_or_role", "connector", "context", "action", "ip_address")


def _is_numeric(value: str) -> bool:
    try:
        return math.isfinite(float(value))
    except ValueError:
        return False


def _clean(value: Any) -> str | None:
    """Normalize a configured value: empty/absent means wildcard."""
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return None
    text = str(value).strip()
    return text or None


class ExclusionRule(BaseModel):
    """One sparse matcher. `None` fields are wildcards."""

    model_config = ConfigDict(frozen=True)

    connector: str | None = None
    context: str | None = None
    action: str | None = None
    ip_address: str | None = None
    author: int | None = None
    role: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ExclusionRule:
        """Build a rule from one configured row.

        `author_or_role` populates `author` when numeric and `role` otherwise.
        Explicit `author`/`role` keys are accepted too.
        """
        author_or_role = _clean(row.get("author_or_role"))
        author: int | None = None
        role = _clean(row.get("role"))
        if author_or_role is not None:
            if _is_numeric(author_or_role):
                author = int(float(author_or_role))
            else:
                role = author_or_role
        elif _clean(row.get("author")) is not None and _is_numeric(str(row["author"]).strip()):
            author = int(float(str(row["author"]).strip()))
        return cls(
            connector=_clean(row.get("connector")),
            context=_clean(row.get("context")),
            action=_clean(row.get("action")),
            ip_address=validate_ip(row.get("ip_address")) or _clean(row.get("ip_address")),
            author=author,
            role=role if author is None else None,
        )

    def fields(self) -> dict[str, str | int]:
        """Non-wildcard fields of this rule."""
        return self.model_dump(exclude_none=True)

    def matches(self, event: Mapping[str, Any]) -> bool:
        """True if every non-wildcard field equals the event's value."""
        fields = self.fields()
        if not fields:
            return False
        return all(event.get(key) == value for key, value in fields.items())


def _column_value(column: Any, key: Any) -> Any:
    if isinstance(column, Mapping):
        return column.get(key, column.get(str(key)))
    if isinstance(column, Sequence) and not isinstance(column, str):
        try:
            return column[int(key)]
        except (IndexError, TypeError, ValueError):
            return None
    return None


def _rows_from_columns(settings: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
    rows = settings.get("exclude_row")
    if isinstance(rows, Mapping):
        keys: Iterable[Any] = rows.keys()
    elif isinstance(rows, Sequence) and not isinstance(rows, str):
        keys = range(len(rows))
    else:
        return []
    return [{name: _column_value(settings.get(name), key) for name in _COLUMNS} for key in keys]


def parse_rules(settings: Any) -> list[ExclusionRule]:
    """Parse a configured rule set into ordered rules (never raises)."""
    if isinstance(settings, Mapping):
        raw_rows: Iterable[Any] = _rows_from_columns(settings)
    elif isinstance(settings, Sequence) and not isinstance(settings, str):
        raw_rows = settings
    else:
        return []

    rules: list[ExclusionRule] = []
    for row in raw_rows:
        if isinstance(row, ExclusionRule):
            rules.append(row)
        elif isinstance(row, Mapping):
            rules.append(ExclusionRule.from_row(row))
    return rules


def is_excluded(
    connector: str,
    context: str,
    action: str,
    actor: Actor | None,
    ip: str | None,
    rules: Iterable[ExclusionRule],
) -> bool:
    """Return True if any rule matches the event."""
    actor = actor or Actor()
    event = {
        "connector": connector,
        "context": context,
        "action": action,
        "author": actor.id,
        "role": actor.role,
        "ip_address": validate_ip(ip),
    }
    return any(rule.matches(event) for rule in rules)
