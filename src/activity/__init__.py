"""Activity record pipeline.

This package turns host events into normalized records and ships them to the
record API:
- Building records and deciding their visibility from exclusion rules.
- Attempting delivery off the request path via scheduled tasks.
- Buffering failed deliveries in paged persistent storage and retrying them
  on a recurring schedule until the buffer is empty.
"""

from .buffer import BufferStorageError, BufferStore
from .builder import ActorDirectory, InMemoryActorDirectory, RecordBuilder
from .context import StreamContext, build_context, configure_logging
from .exclusion import ExclusionRule, is_excluded, parse_rules
from .log import RecordHandler, RetryPolicy, StreamLog
from .models import Actor, AuthorMeta, Record, RequestContext, SiteContext, StreamMeta
from .scheduler import AsyncioTaskScheduler, TriggeredTaskScheduler
from .storage import DuckDBKeyValueStore, InMemoryKeyValueStore, KeyValueStore

__all__ = [
    "Actor",
    "ActorDirectory",
    "AsyncioTaskScheduler",
    "AuthorMeta",
    "BufferStorageError",
    "BufferStore",
    "DuckDBKeyValueStore",
    "ExclusionRule",
    "InMemoryActorDirectory",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "Record",
    "RecordBuilder",
    "RecordHandler",
    "RequestContext",
    "RetryPolicy",
    "SiteContext",
    "StreamContext",
    "StreamLog",
    "StreamMeta",
    "TriggeredTaskScheduler",
    "build_context",
    "configure_logging",
    "is_excluded",
    "parse_rules",
]
