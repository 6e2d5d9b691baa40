"""Paged, persistent buffer of records awaiting delivery.

The buffer is stored as consecutive pages of at most `limit` records under
`<prefix>_0`, `<prefix>_1`, ... An empty buffer has no pages at all.

`load()` and `persist()` are the raw synchronous primitives. The async
`append()`, `peek()` and `remove_head()` operations serialize every
read-modify-write through one lock, so concurrent tasks in this process never
overwrite each other's changes. Processes sharing one storage file are not
coordinated.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence

from loguru import logger
from pydantic import ValidationError

from .models import Record
from .storage import KeyValueStore

LOG_BUFFER_KEY = "stream_log_buffer"
DEFAULT_LIMIT = 500


class BufferStorageError(RuntimeError):
    """The key-value store failed while reading or writing the buffer."""


class BufferStore:
    """Ordered record buffer persisted as fixed-size pages."""

    def __init__(self, store: KeyValueStore, *, limit: int = DEFAULT_LIMIT, key: str = LOG_BUFFER_KEY) -> None:
        if limit <= 0:
            raise ValueError(f"limit must be > 0. Got: {limit}")
        self._store = store
        self._limit = limit
        self._key = key
        self._lock = asyncio.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def page_key(self, index: int) -> str:
        return f"{self._key}_{index}"

    def _page_indexes(self) -> list[int]:
        """Indexes of the pages currently in storage, ascending."""
        prefix = f"{self._key}_"
        indexes = []
        for key in self._store.list_keys(prefix):
            suffix = key[len(prefix):]
            if suffix.isdigit():
                indexes.append(int(suffix))
        return sorted(indexes)

    def has_records(self) -> bool:
        """True if any page is in storage, without reading the pages."""
        try:
            return bool(self._page_indexes())
        except Exception as exc:  # noqa: BLE001 - any backend failure is a storage failure
            raise BufferStorageError(f"failed to list buffer pages: {exc}") from exc

    def load(self) -> list[Record]:
        """Read every page in index order and concatenate them."""
        try:
            records: list[Record] = []
            for index in self._page_indexes():
                page = self._store.get(self.page_key(index)) or []
                records.extend(Record.model_validate(item) for item in page)
            return records
        except ValidationError as exc:
            raise BufferStorageError(f"corrupt buffer page: {exc}") from exc
        except Exception as exc:  # noqa: BLE001 - any backend failure is a storage failure
            raise BufferStorageError(f"failed to load buffer: {exc}") from exc

    def persist(self, records: Sequence[Record]) -> None:
        """Write `records` as pages, then delete any page beyond the new page count.

        Pages are written before stale ones are deleted, so a failure part way
        through can leave records duplicated in the buffer but never drops one.
        """
        page_count = math.ceil(len(records) / self._limit)
        try:
            for index in range(page_count):
                chunk = records[index * self._limit : (index + 1) * self._limit]
                self._store.set(self.page_key(index), [r.model_dump(mode="json") for r in chunk])

            for index in self._page_indexes():
                if index >= page_count:
                    self._store.delete(self.page_key(index))
        except Exception as exc:  # noqa: BLE001 - any backend failure is a storage failure
            raise BufferStorageError(f"failed to persist buffer: {exc}") from exc

    async def append(self, record: Record) -> int:
        """Append one record to the tail. Returns the new buffer length."""
        async with self._lock:
            records = await asyncio.to_thread(self.load)
            records.append(record)
            await asyncio.to_thread(self.persist, records)
        logger.debug(f"Buffered record ({len(records)} pending)")
        return len(records)

    async def peek(self, count: int) -> list[Record]:
        """Return up to `count` records from the head without removing them."""
        async with self._lock:
            records = await asyncio.to_thread(self.load)
        return records[:count]

    async def remove_head(self, delivered: Sequence[Record]) -> int:
        """Remove `delivered` from the head of the buffer. Returns the remaining length.

        Only the longest prefix of the buffer equal to `delivered` is removed;
        appends only touch the tail, so in practice that is all of it.
        """
        async with self._lock:
            records = await asyncio.to_thread(self.load)
            matched = 0
            for expected, actual in zip(delivered, records):
                if expected != actual:
                    break
                matched += 1
            if matched < len(delivered):
                logger.warning(f"Buffer head changed during flush; removing {matched} of {len(delivered)} records")
            remaining = records[matched:]
            if matched:
                await asyncio.to_thread(self.persist, remaining)
        return len(remaining)

    async def size(self) -> int:
        async with self._lock:
            return len(await asyncio.to_thread(self.load))
