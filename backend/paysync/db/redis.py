"""Redis clients for realtime alert fan-out"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import redis
import redis.asyncio as aioredis

from paysync.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None
_async_client = None


def get_redis_client():
    """Get or create the sync Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Get or create the async Redis client (lazy initialization)

    Recreates the client when it is bound to a different event loop, which
    happens when tests run each case on a fresh loop.
    """
    global _async_client

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client


def tenant_alert_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:alerts"


ADMIN_ALERT_CHANNEL = "platform:alerts"


async def publish(channel: str, message: Dict[str, Any]) -> int:
    """Publish a JSON message and return the number of subscribers that received it"""
    client = get_async_redis_client()
    if client is None:
        raise RuntimeError("Async Redis client requires a running event loop")
    return await client.publish(channel, json.dumps(message, default=str))


def ping() -> bool:
    """Check Redis connectivity (used by the health endpoint and startup)"""
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False


# OAuth state TTL (10 minutes)
OAUTH_STATE_TTL = 10 * 60


def set_oauth_state(state: str, tenant_id: str) -> None:
    """Remember which tenant started an OAuth authorization"""
    get_redis_client().setex(f"oauth_state:{state}", OAUTH_STATE_TTL, tenant_id)


def pop_oauth_state(state: str) -> Optional[str]:
    """Consume an OAuth state; returns the tenant id or None when unknown or expired"""
    key = f"oauth_state:{state}"
    client = get_redis_client()
    tenant_id = client.get(key)
    if tenant_id is not None:
        client.delete(key)
    return tenant_id
