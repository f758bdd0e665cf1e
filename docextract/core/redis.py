"""
Redis pub/sub for document status notifications OR silent no-op.
Controlled by FF_USE_REDIS flag.

Channels:
    tenant:{tenant_id}                 — document list views
    document:{tenant_id}:{document_id} — a single document's detail view
"""

import json
import logging
from typing import Any, Sequence

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

_redis_client = None


def tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def document_channel(tenant_id: str, document_id: str) -> str:
    return f"document:{tenant_id}:{document_id}"


def encode_event(event_type: str, data: Any = None) -> str:
    return json.dumps({"type": event_type, "data": data}, default=str)


async def _get_redis():
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis

        settings = get_settings()
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _redis_client


async def publish(channels: Sequence[str], event_type: str, data: Any = None) -> None:
    """
    Publish one event to every channel in a single round trip.
    If Redis is disabled, this is a no-op.
    """
    if not get_flags().use_redis or not channels:
        return

    payload = encode_event(event_type, data)
    try:
        client = await _get_redis()
        async with client.pipeline(transaction=False) as pipe:
            for channel in channels:
                pipe.publish(channel, payload)
            await pipe.execute()
    except Exception as e:
        # Notification failure never affects an extraction run
        logger.warning("Redis publish failed (%s → %s): %s", event_type, ", ".join(channels), e)


async def close_redis() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
