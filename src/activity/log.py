"""Record delivery pipeline.

`StreamLog.log()` runs inline with the triggering event: it builds the record
and schedules a one-shot delivery, nothing more. The delivery task submits
the record to the API; on failure the record is appended to the persistent
buffer and a recurring flush is scheduled (at most one). Each flush submits
the head of the buffer and shrinks it on success; the flush cancels itself
once the buffer is empty.

Delivery is at-least-once: a record whose submission succeeded remotely but
looked failed locally will be sent again.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

from loguru import logger

from .buffer import BufferStorageError, BufferStore
from .builder import RecordBuilder
from .models import Record, utc_now
from .scheduler import (
    CLEAN_BUFFER_HOOK,
    INSERT_RECORD_HOOK,
    CleanBufferTask,
    InsertRecordTask,
    Task,
    TaskScheduler,
)

DrainMode = Literal["batch", "head"]


class RecordApi(Protocol):
    async def store(self, records: Sequence[Record]) -> Any | None:
        """Submit records; truthy result on success, falsy on any failure."""


@dataclass(frozen=True)
class RetryPolicy:
    """How buffered records are retried.

    - `schedule`: named recurrence of the flush task.
    - `first_delay`: wait between the first failure and the first flush.
    - `drain`: `batch` submits up to one buffer page per flush; `head` submits
      only the oldest record.
    """

    schedule: str = "hourly"
    first_delay: timedelta = field(default=timedelta(hours=1))
    drain: DrainMode = "batch"

    def batch_size(self, limit: int) -> int:
        return 1 if self.drain == "head" else limit


class RecordHandler(Protocol):
    def log(
        self,
        connector: str,
        message: str,
        args: Mapping[str, Any] | None,
        object_id: int | None,
        context: str,
        action: str,
        actor_id: int | None = None,
    ) -> Record | None:
        """Build a record for an event and schedule its delivery."""

    async def insert_record(self, record: Record) -> Any | None:
        """Deliver one record, buffering it on failure."""

    async def clean_buffer(self) -> int:
        """Deliver buffered records. Returns how many were delivered."""

    def resume(self) -> bool:
        """Schedule a flush for records left buffered by an earlier process."""


class StreamLog:
    """Default record handler: build, deliver, buffer, retry."""

    def __init__(
        self,
        *,
        builder: RecordBuilder,
        client: RecordApi,
        buffer: BufferStore,
        scheduler: TaskScheduler,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._builder = builder
        self._client = client
        self._buffer = buffer
        self._scheduler = scheduler
        self._policy = policy or RetryPolicy()
        self._clock = clock

        scheduler.register(INSERT_RECORD_HOOK, self._on_insert_record)
        scheduler.register(CLEAN_BUFFER_HOOK, self._on_clean_buffer)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def _on_insert_record(self, task: Task) -> None:
        if isinstance(task, InsertRecordTask):
            await self.insert_record(task.record)

    async def _on_clean_buffer(self, task: Task) -> None:
        await self.clean_buffer()

    def log(
        self,
        connector: str,
        message: str,
        args: Mapping[str, Any] | None,
        object_id: int | None,
        context: str,
        action: str,
        actor_id: int | None = None,
    ) -> Record | None:
        """Build a record and schedule it for immediate, non-blocking delivery.

        Never raises: logging must not break the action being logged.
        """
        try:
            record = self._builder.build(connector, message, args, object_id, context, action, actor_id)
            self._scheduler.schedule_once(self._clock(), InsertRecordTask(record=record))
        except Exception:  # noqa: BLE001 - never fail the caller
            logger.exception(f"Failed to log {connector}/{context}/{action} event")
            return None
        return record

    async def _submit(self, records: Sequence[Record]) -> Any | None:
        try:
            return await self._client.store(records)
        except Exception as exc:  # noqa: BLE001 - a raising client counts as a failed delivery
            logger.warning(f"Record API raised {type(exc).__name__}: {exc}")
            return None

    async def insert_record(self, record: Record) -> Any | None:
        """Send one record to the API; buffer it and schedule a flush on failure.

        Returns the API result on success, None on failure.
        """
        result = await self._submit([record])
        if result:
            return result

        try:
            pending = await self._buffer.append(record)
        except BufferStorageError:
            logger.exception("Delivery failed and the record could not be buffered")
            return None

        logger.warning(f"Delivery failed; {pending} record(s) buffered for retry")
        self._ensure_flush_scheduled()
        return None

    def _ensure_flush_scheduled(self) -> None:
        if self._scheduler.is_recurring_scheduled(CLEAN_BUFFER_HOOK):
            return
        self._scheduler.schedule_recurring(
            CleanBufferTask(),
            interval=self._policy.schedule,
            first_run=self._clock() + self._policy.first_delay,
        )

    def resume(self) -> bool:
        """Re-arm the recurring flush if the buffer already holds records.

        Scheduler state lives in memory, so records persisted by an earlier
        process would otherwise wait for the next failed delivery. Returns True
        when a flush is scheduled afterwards.
        """
        try:
            pending = self._buffer.has_records()
        except BufferStorageError:
            logger.exception("Could not inspect the record buffer at startup")
            return False
        if pending:
            logger.info("Records left buffered by a previous run; scheduling a flush")
            self._ensure_flush_scheduled()
        return self._scheduler.is_recurring_scheduled(CLEAN_BUFFER_HOOK)

    async def clean_buffer(self) -> int:
        """Submit the head of the buffer and shrink it on success.

        Cancels the recurring flush once the buffer is empty. Returns the
        number of records delivered.
        """
        try:
            head = await self._buffer.peek(self._policy.batch_size(self._buffer.limit))
        except BufferStorageError:
            logger.exception("Could not read the record buffer")
            return 0

        if not head:
            self._scheduler.cancel_recurring(CLEAN_BUFFER_HOOK)
            return 0

        if not await self._submit(head):
            logger.warning(f"Flush failed; will retry {self._policy.schedule}")
            return 0

        try:
            remaining = await self._buffer.remove_head(head)
        except BufferStorageError:
            logger.exception("Records were delivered but the buffer could not be updated")
            return len(head)

        if remaining == 0:
            self._scheduler.cancel_recurring(CLEAN_BUFFER_HOOK)
            logger.success("Record buffer drained")
        else:
            logger.info(f"Flushed {len(head)} record(s); {remaining} still buffered")
        return len(head)
