from __future__ import annotations

import asyncio

import pytest


@pytest.fixture(autouse=True)
def _no_threads_in_unit_tests(monkeypatch: pytest.MonkeyPatch):
    """Run `asyncio.to_thread` inline for unit tests.

    The buffer and the API client push blocking I/O to worker threads. In unit
    tests the backends are in-memory or faked, so running inline keeps the
    tests deterministic and avoids lingering threadpool workers.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001, D401
        return func(*args, **kwargs)

    monkeypatch.setattr("activity.buffer.asyncio.to_thread", _to_thread)
    monkeypatch.setattr("stream_api.client.asyncio.to_thread", _to_thread)
    yield


@pytest.fixture
def yielding_to_thread(monkeypatch: pytest.MonkeyPatch):
    """Like the inline stub, but yield to the loop around every storage call.

    Lets concurrent buffer operations interleave the way they do with real
    worker threads.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001
        await asyncio.sleep(0)
        result = func(*args, **kwargs)
        await asyncio.sleep(0)
        return result

    monkeypatch.setattr("activity.buffer.asyncio.to_thread", _to_thread)
    yield
