from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient


def build_redis(url: str | None) -> "RedisClient | None":
    """Return a Redis client when a URL is configured; the caller owns its lifecycle."""
    cleaned = (url or "").strip()
    if not cleaned:
        return None
    return Redis.from_url(cleaned, encoding="utf-8", decode_responses=True)


async def close_redis(client: "RedisClient | None") -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("Failed to close Redis client")
