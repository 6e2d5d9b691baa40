"""Demo entrypoint wiring together the record pipeline.

This module intentionally contains a small, end-to-end "smoke test" that:

- Loads configuration from environment.
- Builds the pipeline context (DuckDB buffer when `STREAM_DB_PATH` is set).
- Logs a couple of events and waits for their delivery attempts.

It is **not** intended to be production orchestration logic; it is a convenient
manual integration harness for checking credentials and the retry buffer.
"""

from __future__ import annotations

import asyncio
import os

from loguru import logger

from activity import (
    Actor,
    AsyncioTaskScheduler,
    InMemoryActorDirectory,
    RequestContext,
    build_context,
    configure_logging,
)
from config import load_config


async def run_demo() -> None:
    """Log two demo events and report the buffer state afterwards."""
    cfg = load_config()
    configure_logging(dev_debug=cfg.dev_debug)

    actors = InMemoryActorDirectory(
        [Actor(id=1, email="admin@example.com", display_name="Admin", login="admin", roles=("administrator",))],
        role_labels={"administrator": "Administrator"},
        current_actor_id=1,
    )
    scheduler = AsyncioTaskScheduler()
    ctx = build_context(
        cfg,
        actors=actors,
        scheduler=scheduler,
        request=lambda: RequestContext(remote_addr=os.getenv("DEMO_REMOTE_ADDR", "127.0.0.1"), is_cli=True),
    )
    if not ctx.client.is_connected():  # type: ignore[attr-defined]
        logger.warning("STREAM_API_KEY / STREAM_SITE_UUID not set; records will be buffered")

    try:
        ctx.handler.log("posts", '"%s" post updated', {"post_title": "Hello world"}, 1, "post", "updated")
        ctx.handler.log("users", "%s logged in", {"display_name": "Admin"}, 1, "sessions", "login")

        # Let the one-shot delivery tasks run.
        await asyncio.sleep(float(os.getenv("DEMO_WAIT_S", "2.0")))
        logger.info(f"{await ctx.buffer.size()} record(s) buffered")
    finally:
        await scheduler.aclose()
        ctx.close()


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
