import os
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from kb_chat.exception.custom_exception import TransientServiceError
from kb_chat.logger import GLOBAL_LOGGER as log

REDIS_URL = os.getenv("REDIS_URL")
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))

KNOWLEDGE_BASE_PREFIX = "knowledge_base:"
CHAT_SESSION_PREFIX = "chat_session:"
COURSE_CHAT_PREFIX = "course_chat:"


def knowledge_base_key(token: str) -> str:
    return f"{KNOWLEDGE_BASE_PREFIX}{token}"


def chat_session_key(token: str) -> str:
    return f"{CHAT_SESSION_PREFIX}{token}"


def course_chat_key(token: str) -> str:
    return f"{COURSE_CHAT_PREFIX}{token}"


def create_redis_client() -> redis.Redis:
    """Build the asyncio Redis client from REDIS_URL or REDIS_HOST/PORT/DB."""
    if REDIS_URL:
        return redis.Redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        db=REDIS_DB,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
    )


class SessionStore:
    """
    Key-value store with per-key TTL. The only shared mutable resource of the
    system: knowledge-base records, chat sessions and counters all live here
    as strings.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            log.warning("Redis ping failed | error=%s", str(e))
            return False

    async def close(self) -> None:
        await self.client.aclose()

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self.client.setex(key, ttl, value)
        else:
            await self.client.set(key, value)
        log.debug("Stored key | key=%s | ttl=%s", key, ttl)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> int:
        return await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, seconds))

    async def keys(self, pattern: str) -> List[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server
        return [key async for key in self.client.scan_iter(match=pattern)]

    async def increment(self, key: str, ttl: Optional[int] = None) -> int:
        value = await self.client.incr(key)
        if ttl and value == 1:
            # first hit opens the window
            await self.client.expire(key, ttl)
        return value

    def lock(self, key: str, timeout: float, blocking_timeout: float):
        """
        Distributed lock used to serialize read-modify-write of one key.
        Usage: ``async with store.lock(...)``; failing to acquire raises
        TransientServiceError.
        """
        return _StoreLock(self.client, f"lock:{key}", timeout, blocking_timeout)


class _StoreLock:
    def __init__(self, client, name: str, timeout: float, blocking_timeout: float):
        self._lock = client.lock(
            name, timeout=timeout, blocking_timeout=blocking_timeout
        )
        self.name = name

    async def __aenter__(self):
        try:
            acquired = await self._lock.acquire()
        except LockError as e:
            raise TransientServiceError(f"Could not acquire {self.name}", e) from e
        if not acquired:
            raise TransientServiceError(f"Timed out waiting for {self.name}")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            await self._lock.release()
        except LockError as e:
            # lock expired while held; the next writer already owns the key
            log.warning("Lock release failed | lock=%s | error=%s", self.name, str(e))
        return False
