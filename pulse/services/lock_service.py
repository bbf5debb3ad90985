"""
pulse.services.lock_service — Redis-backed Distributed Lock
============================================================

Cross-process mutual exclusion for the handful of operations that mutate
global singleton state (which contest is ACTIVE, whether a contest has
been paid out).  Per-engagement awards never take a lock.

Each lock is one Redis key ``lock:{name}`` whose value is the holder's
token and whose PX expiry bounds how long a crashed holder can block
everyone else.  Release and extend are Lua scripts so the token
comparison and the mutation happen in one atomic step on the server.

Usage::

    lock = DistributedLock(create_redis_client())

    with lock.hold("contest:lifecycle"):
        ...                                   # raises LockNotAcquiredError

    token = lock.acquire("contest:lifecycle", ttl_ms=5_000)
    if token:
        try:
            ...
        finally:
            lock.release("contest:lifecycle", token)
"""

from __future__ import annotations

import logging
import os
import secrets
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

import redis

from pulse.constants import (
    DEFAULT_LOCK_MAX_RETRIES,
    DEFAULT_LOCK_RETRY_DELAY,
    DEFAULT_LOCK_TTL_MS,
    LOCK_PREFIX,
)
from pulse.errors import LockNotAcquiredError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def create_redis_client(url: str | None = None) -> redis.Redis:
    """Build a Redis client from ``REDIS_URL`` with bounded socket timeouts."""
    url = url or os.getenv("REDIS_URL")
    if not url:
        raise RuntimeError(
            "REDIS_URL is not set.  "
            "Copy .env.example → .env and set a valid Redis URL."
        )
    client = redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
    logger.info("Redis client created → %s", client.connection_pool.connection_kwargs.get("host"))
    return client


def _new_token() -> str:
    return f"{os.getpid()}-{int(time.time() * 1000)}-{secrets.token_hex(8)}"


class DistributedLock:
    """Named, TTL-bounded mutex shared by every process using the same Redis."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
        max_retries: int = DEFAULT_LOCK_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._ttl_ms = ttl_ms
        self._retry_delay = retry_delay
        self._max_retries = max_retries
        self._sleep = sleep
        self._release = client.register_script(_RELEASE_SCRIPT)
        self._extend = client.register_script(_EXTEND_SCRIPT)

    @staticmethod
    def _key(name: str) -> str:
        return f"{LOCK_PREFIX}{name}"

    # -- Core primitives ----------------------------------------------------
    def acquire(
        self,
        key: str,
        ttl_ms: int | None = None,
        retry_delay: float | None = None,
        max_retries: int | None = None,
    ) -> str | None:
        """Try ``SET NX PX`` up to ``max_retries + 1`` times.

        Returns the ownership token, or ``None`` once the retry budget is
        spent.  A Redis error on the last attempt propagates.
        """
        ttl_ms = self._ttl_ms if ttl_ms is None else ttl_ms
        retry_delay = self._retry_delay if retry_delay is None else retry_delay
        max_retries = self._max_retries if max_retries is None else max_retries
        token = _new_token()

        for attempt in range(max_retries + 1):
            try:
                if self._client.set(self._key(key), token, nx=True, px=ttl_ms):
                    logger.debug("Lock %s acquired (attempt %d)", key, attempt + 1)
                    return token
            except redis.RedisError:
                if attempt == max_retries:
                    raise
                logger.warning("Redis error acquiring lock %s (attempt %d)", key, attempt + 1)
            if attempt < max_retries:
                self._sleep(retry_delay)

        logger.info("Lock %s not acquired after %d attempts", key, max_retries + 1)
        return None

    def release(self, key: str, token: str) -> bool:
        """Delete the lock only if *token* still owns it."""
        released = bool(self._release(keys=[self._key(key)], args=[token]))
        if not released:
            logger.warning("Lock %s was not held by token %s at release", key, token)
        return released

    def extend(self, key: str, token: str, additional_ttl_ms: int) -> bool:
        """Reset the lock's expiry to *additional_ttl_ms* if *token* still owns it."""
        return bool(self._extend(keys=[self._key(key)], args=[token, additional_ttl_ms]))

    def force_release(self, key: str) -> bool:
        """Unconditional delete.  Operator cleanup only."""
        deleted = bool(self._client.delete(self._key(key)))
        logger.warning("Lock %s force-released (existed=%s)", key, deleted)
        return deleted

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def get_holder(self, key: str) -> str | None:
        return self._client.get(self._key(key))

    # -- Scoped helpers -----------------------------------------------------
    @contextmanager
    def hold(
        self,
        key: str,
        ttl_ms: int | None = None,
        retry_delay: float | None = None,
        max_retries: int | None = None,
    ) -> Iterator[str]:
        """Hold *key* for the duration of the block; always release on exit."""
        token = self.acquire(key, ttl_ms, retry_delay, max_retries)
        if token is None:
            raise LockNotAcquiredError(
                f"Could not acquire lock {key!r}; another operation is in progress",
                context={"key": key},
            )
        try:
            yield token
        finally:
            self.release(key, token)

    def with_lock(self, key: str, fn: Callable[[], T], **opts) -> T:
        with self.hold(key, **opts):
            return fn()
