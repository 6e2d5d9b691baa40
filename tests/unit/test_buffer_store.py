from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from activity.buffer import BufferStorageError, BufferStore
from activity.models import AuthorMeta, Record, StreamMeta
from activity.storage import DuckDBKeyValueStore, InMemoryKeyValueStore


def _record(i: int) -> Record:
    return Record(
        object_id=i,
        author=1,
        created=f"2024-01-01T00:00:00.{i % 1000:03d}+0000",
        summary=f"event {i}",
        connector="posts",
        context="post",
        action="updated",
        stream_meta=StreamMeta(author_meta=AuthorMeta(user_login="admin"), extra={"n": i, "tags": ["a", "b"]}),
        ip="10.0.0.1",
    )


def _records(n: int) -> list[Record]:
    return [_record(i) for i in range(n)]


def _page_sizes(store: InMemoryKeyValueStore) -> dict[str, int]:
    return {k: len(v) for k, v in store.snapshot().items()}


def test_persist_1200_records_makes_three_pages() -> None:
    store = InMemoryKeyValueStore()
    buffer = BufferStore(store, limit=500)

    buffer.persist(_records(1200))

    assert _page_sizes(store) == {
        "stream_log_buffer_0": 500,
        "stream_log_buffer_1": 500,
        "stream_log_buffer_2": 200,
    }


def test_shrinking_deletes_stale_pages() -> None:
    store = InMemoryKeyValueStore()
    buffer = BufferStore(store, limit=500)
    buffer.persist(_records(1200))

    buffer.persist(_records(50))

    assert _page_sizes(store) == {"stream_log_buffer_0": 50}
    assert buffer.load() == _records(50)


def test_empty_buffer_has_no_pages() -> None:
    store = InMemoryKeyValueStore()
    buffer = BufferStore(store, limit=3)
    buffer.persist(_records(7))

    buffer.persist([])

    assert store.snapshot() == {}
    assert buffer.load() == []


@pytest.mark.parametrize("n", [0, 1, 3, 4, 10])
def test_round_trip_preserves_order(n: int) -> None:
    buffer = BufferStore(InMemoryKeyValueStore(), limit=3)
    records = _records(n)

    buffer.persist(records)
    assert buffer.load() == records

    buffer.persist(buffer.load())
    assert buffer.load() == records


def test_pages_load_in_numeric_not_lexical_order() -> None:
    buffer = BufferStore(InMemoryKeyValueStore(), limit=1)
    records = _records(12)

    buffer.persist(records)

    assert [r.object_id for r in buffer.load()] == list(range(12))


def test_persist_is_idempotent() -> None:
    store = InMemoryKeyValueStore()
    buffer = BufferStore(store, limit=4)

    buffer.persist(_records(9))
    first = store.snapshot()
    buffer.persist(_records(9))

    assert store.snapshot() == first


def test_unrelated_keys_are_left_alone() -> None:
    store = InMemoryKeyValueStore()
    store.set("stream_log_buffer_meta", {"keep": True})
    store.set("stream_settings", {"keep": True})
    buffer = BufferStore(store, limit=2)

    buffer.persist(_records(3))
    buffer.persist([])

    assert store.snapshot() == {"stream_log_buffer_meta": {"keep": True}, "stream_settings": {"keep": True}}


def test_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BufferStore(InMemoryKeyValueStore(), limit=0)


class _FailingStore(InMemoryKeyValueStore):
    def set(self, key: str, value: Any) -> None:
        raise OSError("disk full")


def test_storage_failures_are_wrapped() -> None:
    buffer = BufferStore(_FailingStore(), limit=2)
    with pytest.raises(BufferStorageError):
        buffer.persist(_records(1))


def test_failed_shrink_keeps_undelivered_records() -> None:
    store = InMemoryKeyValueStore()
    buffer = BufferStore(store, limit=2)
    records = _records(6)
    buffer.persist(records)

    def broken(*args: Any, **kwargs: Any) -> None:
        raise OSError("disk full")

    store.set = broken  # type: ignore[method-assign]
    with pytest.raises(BufferStorageError):
        buffer.persist(records[4:])

    assert buffer.load() == records


def test_failed_stale_page_delete_duplicates_instead_of_dropping() -> None:
    store = InMemoryKeyValueStore()
    buffer = BufferStore(store, limit=2)
    records = _records(6)
    buffer.persist(records)

    def broken(*args: Any, **kwargs: Any) -> None:
        raise OSError("disk full")

    store.delete = broken  # type: ignore[method-assign]
    with pytest.raises(BufferStorageError):
        buffer.persist(records[4:])

    # Page 0 holds the new head; the old tail pages are still there.
    assert buffer.load() == records[4:] + records[2:]


def test_corrupt_page_is_a_storage_error() -> None:
    store = InMemoryKeyValueStore()
    store.set("stream_log_buffer_0", [{"connector": "posts"}])
    with pytest.raises(BufferStorageError):
        BufferStore(store).load()


@pytest.mark.asyncio
async def test_append_peek_and_remove_head() -> None:
    buffer = BufferStore(InMemoryKeyValueStore(), limit=2)

    for record in _records(5):
        await buffer.append(record)

    assert await buffer.size() == 5
    head = await buffer.peek(2)
    assert head == _records(2)

    remaining = await buffer.remove_head(head)
    assert remaining == 3
    assert buffer.load() == _records(5)[2:]


@pytest.mark.asyncio
async def test_remove_head_only_removes_matching_prefix() -> None:
    buffer = BufferStore(InMemoryKeyValueStore(), limit=10)
    for record in _records(3):
        await buffer.append(record)

    remaining = await buffer.remove_head([_record(0), _record(42)])

    assert remaining == 2
    assert buffer.load() == _records(3)[1:]


@pytest.mark.asyncio
@pytest.mark.usefixtures("yielding_to_thread")
async def test_concurrent_appends_keep_every_record() -> None:
    buffer = BufferStore(InMemoryKeyValueStore(), limit=3)

    lengths = await asyncio.gather(*(buffer.append(r) for r in _records(20)))

    assert sorted(lengths) == list(range(1, 21))
    assert sorted(r.object_id for r in buffer.load()) == list(range(20))


@pytest.mark.asyncio
@pytest.mark.usefixtures("yielding_to_thread")
async def test_append_racing_remove_head_survives() -> None:
    buffer = BufferStore(InMemoryKeyValueStore(), limit=2)
    for record in _records(3):
        await buffer.append(record)
    late = _record(99)

    head = await buffer.peek(3)
    remaining, _ = await asyncio.gather(buffer.remove_head(head), buffer.append(late))

    assert buffer.load() == [late]
    assert remaining in (0, 1)


def test_duckdb_store_round_trip(tmp_path: Path) -> None:
    store = DuckDBKeyValueStore(path=tmp_path / "stream.duckdb")
    try:
        buffer = BufferStore(store, limit=500)
        buffer.persist(_records(1200))
        assert store.list_keys("stream_log_buffer_") == {
            "stream_log_buffer_0",
            "stream_log_buffer_1",
            "stream_log_buffer_2",
        }

        buffer.persist(_records(50))
        assert store.list_keys("stream_log_buffer_") == {"stream_log_buffer_0"}
        assert buffer.load() == _records(50)
    finally:
        store.close()


def test_duckdb_store_persists_across_connections(tmp_path: Path) -> None:
    path = tmp_path / "stream.duckdb"
    store = DuckDBKeyValueStore(path=path)
    BufferStore(store, limit=2).persist(_records(3))
    store.close()

    reopened = DuckDBKeyValueStore(path=path)
    try:
        assert BufferStore(reopened, limit=2).load() == _records(3)
    finally:
        reopened.close()


def test_duckdb_prefix_is_literal(tmp_path: Path) -> None:
    store = DuckDBKeyValueStore(path=tmp_path / "kv.duckdb")
    try:
        store.set("a_b", 1)
        store.set("axb", 2)
        assert store.list_keys("a_") == {"a_b"}
        store.delete("a_b")
        assert store.get("a_b") is None
        assert store.get("axb") == 2
    finally:
        store.close()
