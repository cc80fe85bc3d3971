"""Attempt ingestion worker: consumes raw attempt records from a Redis Stream.

Each stream entry carries one raw attempt, either as a JSON string in a
``data`` field or as flat fields. Entries are normalized, appended to the
durable store, announced on the change feed and acknowledged. Malformed
entries are logged and acknowledged so they are not redelivered; entries
that hit a store outage stay pending and are retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any

import redis.asyncio as aioredis

from prepstate.config import Settings, get_settings
from prepstate.database import close_db, create_tables, init_db
from prepstate.errors import DurableStoreUnavailable, MalformedEvent
from prepstate.events.normalizer import normalize
from prepstate.log_setup import setup_logging
from prepstate.store.base import TABLE_ATTEMPT_EVENTS, ChangeFeed, DurableStore
from prepstate.store.redis_feed import RedisChangeFeed
from prepstate.store.sql import SqlAlchemyStore

logger = logging.getLogger(__name__)


def decode_entry(raw_data: dict[str, Any]) -> dict[str, Any]:
    """Stream entry fields -> raw attempt mapping."""
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return dict(raw_data)
        if isinstance(data, dict):
            return data
    return dict(raw_data)


class AttemptIngestWorker:
    """Reads the attempt stream through a consumer group."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        store: DurableStore,
        settings: Settings,
        feed: ChangeFeed | None = None,
    ) -> None:
        self.redis = redis_client
        self.store = store
        self.feed = feed
        self.stream = settings.attempt_stream
        self.group = settings.consumer_group
        self.consumer = settings.consumer_name
        self._running = False
        self.stats = {"ingested": 0, "duplicates": 0, "malformed": 0, "deferred": 0}

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def process_message(self, msg_id: str, raw_data: dict[str, Any]) -> bool:
        """Handle one entry. Returns True if it was acknowledged."""
        record = decode_entry(raw_data)
        user_id = record.get("user_id") or record.get("userId")
        try:
            if not user_id:
                raise MalformedEvent("user_id is missing", record)
            event = normalize(record)
        except MalformedEvent as e:
            self.stats["malformed"] += 1
            logger.warning("Dropping malformed attempt %s: %s", msg_id, e.reason)
            await self.redis.xack(self.stream, self.group, msg_id)
            return True

        user_id = str(user_id)
        try:
            inserted = await self.store.append_events(user_id, [event])
        except DurableStoreUnavailable as e:
            self.stats["deferred"] += 1
            logger.warning("Store unavailable, leaving %s pending: %s", msg_id, e)
            return False

        if inserted:
            self.stats["ingested"] += 1
            if self.feed is not None:
                await self.feed.publish_change(user_id, TABLE_ATTEMPT_EVENTS, {"event_key": event.event_key})
        else:
            self.stats["duplicates"] += 1

        await self.redis.xack(self.stream, self.group, msg_id)
        return True

    async def read_batch(self, stream_id: str = ">", block: int | None = 5000) -> int:
        """Read and process one batch. ``stream_id="0"`` re-reads this consumer's pending entries."""
        events = await self.redis.xreadgroup(
            groupname=self.group,
            consumername=self.consumer,
            streams={self.stream: stream_id},
            count=100,
            block=block,
        )
        processed = 0
        for _stream_name, messages in events or []:
            for msg_id, raw_data in messages:
                try:
                    if await self.process_message(msg_id, raw_data):
                        processed += 1
                except Exception:
                    logger.exception("Failed to process %s from %s", msg_id, self.stream)
        return processed

    async def run(self) -> None:
        """Consume until stopped. Pending entries are retried first."""
        await self.ensure_group()
        self._running = True
        logger.info("Attempt ingest worker started on %s (%s/%s)", self.stream, self.group, self.consumer)

        while self._running:
            try:
                await self.read_batch("0", block=None)
                await self.read_batch(">")
            except aioredis.ResponseError as e:
                logger.error("XREADGROUP error: %s", e)
                await asyncio.sleep(1)

        logger.info("Attempt ingest worker stopped: %s", self.stats)

    async def stop(self) -> None:
        self._running = False


async def main() -> None:
    """Entry point for the ingestion worker."""
    settings = get_settings()
    setup_logging(settings)

    session_factory = await init_db(settings)
    await create_tables()
    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    store = SqlAlchemyStore(session_factory)
    worker = AttemptIngestWorker(redis_client, store, settings, feed=RedisChangeFeed(redis_client))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.run()
    finally:
        await redis_client.aclose()
        await close_db()


def run_main() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_main()
