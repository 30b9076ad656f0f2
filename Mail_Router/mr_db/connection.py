import logging
from typing import Optional

import redis
import redis.asyncio

from Mail_Router.mr_shared import errors
from Mail_Router.mr_shared.types import HealthStatus

logger = logging.getLogger("mr_db.connection")

client: Optional[redis.asyncio.Redis] = None


async def create_client(url: str, socket_timeout: float = 5) -> redis.asyncio.Redis:
    global client
    if client is not None:
        return client

    r = redis.asyncio.Redis.from_url(
        url,
        decode_responses=False,
        socket_connect_timeout=socket_timeout,
        socket_timeout=socket_timeout,
    )
    try:
        await r.ping()
    except redis.exceptions.ConnectionError:
        await r.aclose()
        raise errors.StoreUnavailableError(f"Cannot connect to Redis at {url}")

    client = r
    logger.info("kv_connected url=%s", url)
    return client


def get_client() -> redis.asyncio.Redis:
    if client is None:
        raise errors.StoreUnavailableError("Client not initialized. Call create_client() first.")
    return client


def set_client(r: Optional[redis.asyncio.Redis]) -> None:
    """Install an already-built client (tests inject a fake here)."""
    global client
    client = r


async def close_client() -> None:
    global client
    if client is None:
        return
    try:
        await client.aclose()
    finally:
        client = None


async def health_check(r: Optional[redis.asyncio.Redis] = None) -> HealthStatus:
    r = r if r is not None else client
    if r is None:
        return HealthStatus(kv_connected=False, key_count=0, uptime_seconds=0.0)

    try:
        connected = bool(await r.ping())
        key_count = await r.dbsize()
    except redis.exceptions.ConnectionError:
        return HealthStatus(kv_connected=False, key_count=0, uptime_seconds=0.0)

    try:
        info = await r.info("server")
    except redis.exceptions.RedisError:
        info = {}

    return HealthStatus(
        kv_connected=connected,
        key_count=key_count,
        uptime_seconds=float(info.get("uptime_in_seconds", 0)),
    )
