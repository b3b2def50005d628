import asyncio
import json
import logging
import ssl
from typing import Any, Dict, Optional

from redis.asyncio import Redis

from .config import settings

_logger = logging.getLogger(__name__)

_redis: Optional[Redis] = None
_lock = asyncio.Lock()


def _connection_kwargs() -> Dict[str, Any]:
    conn_kwargs: Dict[str, Any] = {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_PORT,
        "username": settings.REDIS_USERNAME or None,
        "password": settings.REDIS_PASSWORD or None,
        "db": settings.REDIS_DB,
        "decode_responses": True,
    }
    if settings.REDIS_SSL:
        # relax cert verification for local/dev
        conn_kwargs.update({"ssl": True, "ssl_cert_reqs": ssl.CERT_NONE})
    return conn_kwargs


async def get_redis() -> Redis:
    global _redis
    if _redis is None:
        async with _lock:
            if _redis is None:
                client = Redis(**_connection_kwargs())
                try:
                    await client.ping()
                except Exception as e:
                    _logger.error("Failed to connect to Redis: %s", str(e))
                    await client.aclose()
                    raise
                _logger.info(
                    "Connected to Redis at %s:%s (SSL=%s)",
                    settings.REDIS_HOST,
                    settings.REDIS_PORT,
                    settings.REDIS_SSL,
                )
                _redis = client
    return _redis


async def publish_json(channel: str, payload: Dict[str, Any]) -> int:
    r = await get_redis()
    return await r.publish(channel, json.dumps(payload))


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        try:
            await _redis.aclose()
        finally:
            _redis = None
