"""Process-wide wiring for the delivery pipeline.

A `StreamContext` is built once at process start and handed to whatever
needs to log records. It owns the storage, buffer, scheduler, API client and
record handler; nothing in the pipeline reaches for module-level state.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from config import Config
from stream_api import StreamApiClient

from .buffer import BufferStore
from .builder import ActorDirectory, RecordBuilder
from .exclusion import parse_rules
from .log import RecordApi, RecordHandler, RetryPolicy, StreamLog
from .models import RequestContext, SiteContext
from .scheduler import AsyncioTaskScheduler, TaskScheduler
from .storage import DuckDBKeyValueStore, InMemoryKeyValueStore, KeyValueStore

HandlerFactory = Callable[..., RecordHandler]


def configure_logging(*, dev_debug: bool = False) -> None:
    """Route loguru output to stderr at INFO, or DEBUG in development mode."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if dev_debug else "INFO")


@dataclass
class StreamContext:
    config: Config
    store: KeyValueStore
    buffer: BufferStore
    scheduler: TaskScheduler
    client: RecordApi
    builder: RecordBuilder
    handler: RecordHandler

    def close(self) -> None:
        self.store.close()


def build_context(
    config: Config,
    *,
    actors: ActorDirectory,
    site: SiteContext | None = None,
    request: Callable[[], RequestContext] | None = None,
    store: KeyValueStore | None = None,
    scheduler: TaskScheduler | None = None,
    client: RecordApi | None = None,
    handler_factory: HandlerFactory = StreamLog,
) -> StreamContext:
    """Construct every pipeline component from configuration.

    Collaborators may be injected; otherwise the buffer lives in DuckDB at
    `config.buffer.db_path` (in memory when unset), tasks run on the asyncio
    loop, and records go to the configured API.

    Records already buffered in `store` get a recurring flush right away. With
    the asyncio scheduler that needs a running event loop.
    """
    if store is None:
        if config.buffer.db_path:
            store = DuckDBKeyValueStore(path=config.buffer.db_path)
        else:
            logger.warning("STREAM_DB_PATH not set; buffered records will not survive a restart")
            store = InMemoryKeyValueStore()

    buffer = BufferStore(store, limit=config.buffer.limit)
    scheduler = scheduler or AsyncioTaskScheduler()
    client = client or StreamApiClient(config.api)
    builder = RecordBuilder(actors=actors, rules=parse_rules(config.exclude_rules), site=site, request=request)
    policy = RetryPolicy(
        schedule=config.buffer.schedule,
        first_delay=config.buffer.first_delay_timedelta,
        drain=config.buffer.drain,
    )
    handler = handler_factory(builder=builder, client=client, buffer=buffer, scheduler=scheduler, policy=policy)
    handler.resume()

    return StreamContext(
        config=config,
        store=store,
        buffer=buffer,
        scheduler=scheduler,
        client=client,
        builder=builder,
        handler=handler,
    )
