"""Change notifications over Redis pub/sub.

Channel per table and user: ``changes:{table}:{user_id}``. Messages are
JSON objects ``{"user_id": ..., "table": ..., "payload": {...}}``.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

import redis.asyncio as aioredis
import structlog

from prepstate.store.base import ALL_TABLES, ChangeFeed, ChangeNotification

logger = structlog.get_logger()

CHANNEL_PREFIX = "changes"


def change_channel(table: str, user_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{table}:{user_id}"


def parse_channel(channel: str) -> tuple[str, str] | None:
    """``changes:{table}:{user_id}`` -> (table, user_id)."""
    parts = channel.split(":", 2)
    if len(parts) != 3 or parts[0] != CHANNEL_PREFIX:
        return None
    return parts[1], parts[2]


class RedisChangeFeed(ChangeFeed):
    """Publishes and subscribes to per-user change channels."""

    def __init__(self, redis_client: aioredis.Redis, poll_timeout: float = 1.0) -> None:
        self.redis = redis_client
        self.poll_timeout = poll_timeout

    async def subscribe_changes(
        self, user_id: str, tables: Iterable[str] = ALL_TABLES
    ) -> AsyncIterator[ChangeNotification]:
        channels = [change_channel(t, user_id) for t in tables]
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(*channels)
        logger.debug("change_feed_subscribed", user_id=user_id, channels=channels)

        try:
            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout,
                )
                if message is None:
                    continue

                channel = message.get("channel", "")
                if isinstance(channel, bytes):
                    channel = channel.decode()
                parsed = parse_channel(channel)
                if parsed is None:
                    continue

                try:
                    data = message.get("data", b"")
                    if isinstance(data, bytes):
                        data = data.decode()
                    body = json.loads(data) if data else {}
                except (json.JSONDecodeError, UnicodeDecodeError):
                    logger.warning("change_feed_invalid_message", channel=channel)
                    continue

                table, channel_user = parsed
                yield ChangeNotification(
                    user_id=channel_user,
                    table=table,
                    payload=body.get("payload") if isinstance(body, dict) else None,
                )
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            logger.debug("change_feed_unsubscribed", user_id=user_id)

    async def publish_change(
        self, user_id: str, table: str, payload: dict[str, Any] | None = None
    ) -> None:
        message = json.dumps({"user_id": user_id, "table": table, "payload": payload or {}})
        await self.redis.publish(change_channel(table, user_id), message)
