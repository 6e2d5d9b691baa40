"""Deferred task execution for the delivery pipeline.

Work is expressed as typed task payloads, each bound to a hook name:

- `InsertRecordTask`: one record to deliver (one-shot, due immediately).
- `CleanBufferTask`: a flush signal (recurring while the buffer is non-empty).

Handlers are registered per hook. Two schedulers are provided:

- `AsyncioTaskScheduler` drives itself with background asyncio tasks.
- `TriggeredTaskScheduler` only runs due tasks when the host calls
  `run_due()`, like a cron that is ticked by incoming requests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal, Protocol, TypeAlias

from loguru import logger
from pydantic import BaseModel, ConfigDict

from .models import Record, utc_now

INSERT_RECORD_HOOK = "stream_insert_record"
CLEAN_BUFFER_HOOK = "stream_clean_buffer"

RECURRENCES: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "twicedaily": timedelta(hours=12),
    "daily": timedelta(days=1),
}


def recurrence_interval(name: str, recurrences: dict[str, timedelta] | None = None) -> timedelta:
    """Resolve a named recurrence, raising `ValueError` for unknown names."""
    table = recurrences or RECURRENCES
    try:
        return table[name]
    except KeyError:
        raise ValueError(f"Unknown recurrence {name!r}. Expected one of: {sorted(table)}") from None


class _Task(BaseModel):
    model_config = ConfigDict(frozen=True)


class InsertRecordTask(_Task):
    hook: Literal["stream_insert_record"] = INSERT_RECORD_HOOK
    record: Record


class CleanBufferTask(_Task):
    hook: Literal["stream_clean_buffer"] = CLEAN_BUFFER_HOOK


Task: TypeAlias = InsertRecordTask | CleanBufferTask
TaskHandler = Callable[[Task], Awaitable[object]]
Clock = Callable[[], datetime]


class TaskScheduler(Protocol):
    def register(self, hook: str, handler: TaskHandler) -> None:
        """Bind `handler` to every task scheduled under `hook`."""

    def schedule_once(self, run_at: datetime, task: Task) -> None:
        """Run `task` once, no sooner than `run_at`."""

    def schedule_recurring(self, task: Task, *, interval: str, first_run: datetime) -> None:
        """Run `task` at `first_run` and then every named `interval`."""

    def cancel_recurring(self, hook: str) -> None:
        """Stop the recurring task for `hook` (no-op when none)."""

    def is_recurring_scheduled(self, hook: str) -> bool:
        """True if a recurring task for `hook` is active."""


async def _dispatch(handlers: dict[str, TaskHandler], task: Task) -> None:
    handler = handlers.get(task.hook)
    if handler is None:
        logger.warning(f"No handler registered for {task.hook}; dropping task")
        return
    try:
        await handler(task)
    except Exception:  # noqa: BLE001 - a failing task must not stop the scheduler
        logger.exception(f"Task {task.hook} failed")


class AsyncioTaskScheduler:
    """Scheduler backed by background asyncio tasks in the running loop."""

    def __init__(self, *, clock: Clock = utc_now, recurrences: dict[str, timedelta] | None = None) -> None:
        self._clock = clock
        self._recurrences = recurrences or RECURRENCES
        self._handlers: dict[str, TaskHandler] = {}
        self._once: set[asyncio.Task[None]] = set()
        self._recurring: dict[str, asyncio.Task[None]] = {}

    def register(self, hook: str, handler: TaskHandler) -> None:
        self._handlers[hook] = handler

    def _delay_until(self, run_at: datetime) -> float:
        return max(0.0, (run_at - self._clock()).total_seconds())

    def schedule_once(self, run_at: datetime, task: Task) -> None:
        async def _run() -> None:
            await asyncio.sleep(self._delay_until(run_at))
            await _dispatch(self._handlers, task)

        t = asyncio.get_running_loop().create_task(_run(), name=f"{task.hook}-once")
        self._once.add(t)
        t.add_done_callback(self._once.discard)

    def schedule_recurring(self, task: Task, *, interval: str, first_run: datetime) -> None:
        every = recurrence_interval(interval, self._recurrences).total_seconds()
        if self.is_recurring_scheduled(task.hook):
            return

        async def _run() -> None:
            await asyncio.sleep(self._delay_until(first_run))
            while self._recurring.get(task.hook) is asyncio.current_task():
                await _dispatch(self._handlers, task)
                if self._recurring.get(task.hook) is not asyncio.current_task():
                    return
                await asyncio.sleep(every)

        self._recurring[task.hook] = asyncio.get_running_loop().create_task(_run(), name=f"{task.hook}-recurring")
        logger.debug(f"Scheduled {task.hook} {interval}, first run at {first_run.isoformat()}")

    def cancel_recurring(self, hook: str) -> None:
        t = self._recurring.pop(hook, None)
        if t is None:
            return
        # A task cancelling itself just stops looping; see `_run`.
        if t is not asyncio.current_task():
            t.cancel()
        logger.debug(f"Cancelled recurring {hook}")

    def is_recurring_scheduled(self, hook: str) -> bool:
        t = self._recurring.get(hook)
        return t is not None and not t.done()

    async def aclose(self) -> None:
        """Cancel all pending work. Safe to call multiple times."""
        pending = [*self._once, *self._recurring.values()]
        self._recurring.clear()
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


@dataclass(order=True)
class _Entry:
    run_at: datetime
    seq: int
    task: Task = field(compare=False)
    every: timedelta | None = field(default=None, compare=False)


class TriggeredTaskScheduler:
    """Scheduler whose due tasks run only when `run_due()` is called.

    Recurring tasks reschedule themselves relative to their previous due time.
    """

    def __init__(self, *, clock: Clock = utc_now, recurrences: dict[str, timedelta] | None = None) -> None:
        self._clock = clock
        self._recurrences = recurrences or RECURRENCES
        self._handlers: dict[str, TaskHandler] = {}
        self._queue: list[_Entry] = []
        self._recurring: dict[str, _Entry] = {}
        self._seq = itertools.count()

    def register(self, hook: str, handler: TaskHandler) -> None:
        self._handlers[hook] = handler

    def schedule_once(self, run_at: datetime, task: Task) -> None:
        heapq.heappush(self._queue, _Entry(run_at, next(self._seq), task))

    def schedule_recurring(self, task: Task, *, interval: str, first_run: datetime) -> None:
        every = recurrence_interval(interval, self._recurrences)
        if self.is_recurring_scheduled(task.hook):
            return
        entry = _Entry(first_run, next(self._seq), task, every)
        self._recurring[task.hook] = entry
        heapq.heappush(self._queue, entry)
        logger.debug(f"Scheduled {task.hook} {interval}, first run at {first_run.isoformat()}")

    def cancel_recurring(self, hook: str) -> None:
        if self._recurring.pop(hook, None) is not None:
            logger.debug(f"Cancelled recurring {hook}")

    def is_recurring_scheduled(self, hook: str) -> bool:
        return hook in self._recurring

    def next_run(self, hook: str) -> datetime | None:
        """Due time of the recurring task for `hook`, if any."""
        entry = self._recurring.get(hook)
        return entry.run_at if entry is not None else None

    def pending(self) -> list[Task]:
        """Tasks still queued (cancelled recurring entries excluded), in due order."""
        return [e.task for e in sorted(self._queue) if self._is_live(e)]

    def _is_live(self, entry: _Entry) -> bool:
        return entry.every is None or self._recurring.get(entry.task.hook) is entry

    async def run_due(self) -> int:
        """Run every task due at the current clock time. Returns how many ran."""
        now = self._clock()
        ran = 0
        while self._queue and self._queue[0].run_at <= now:
            entry = heapq.heappop(self._queue)
            if not self._is_live(entry):
                continue
            await _dispatch(self._handlers, entry.task)
            ran += 1
            if entry.every is not None and self._recurring.get(entry.task.hook) is entry:
                # Missed runs are skipped, not replayed.
                next_at = entry.run_at + entry.every
                while next_at <= now:
                    next_at += entry.every
                nxt = _Entry(next_at, next(self._seq), entry.task, entry.every)
                self._recurring[entry.task.hook] = nxt
                heapq.heappush(self._queue, nxt)
        return ran
