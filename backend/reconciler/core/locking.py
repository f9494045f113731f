"""Distributed payment locks using Redis.

Serializes money-moving operations (fund, transfer, refund) per bounty across
workers. The lock value is a random token so a worker can only release a lock
it still holds; the TTL frees locks left behind by crashed workers.
"""

import asyncio
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog

from reconciler.core.config import get_settings
from reconciler.core.exceptions import PaymentLockError
from reconciler.db.redis import get_redis

logger = structlog.get_logger(__name__)


class PaymentLock:
    """Manages per-bounty payment locks in Redis."""

    LOCK_PREFIX = "bounty:payment-lock:"
    MAX_RETRIES = 3
    RETRY_DELAY = 0.1

    def __init__(self, redis_client: redis.Redis | None = None, ttl: int | None = None):
        self._redis = redis_client
        self.ttl = ttl or get_settings().payment_lock_ttl_seconds

    def _get_redis(self) -> redis.Redis:
        return self._redis if self._redis is not None else get_redis()

    def _lock_key(self, bounty_id: str) -> str:
        return f"{self.LOCK_PREFIX}{bounty_id}"

    async def acquire(self, bounty_id: str) -> str | None:
        """Try to take the lock, retrying briefly.

        Returns:
            The lock token if acquired, None if another operation holds it
        """
        r = self._get_redis()
        key = self._lock_key(bounty_id)
        token = secrets.token_hex(16)

        for attempt in range(self.MAX_RETRIES):
            if await r.set(key, token, nx=True, ex=self.ttl):
                return token
            if attempt < self.MAX_RETRIES - 1:
                await asyncio.sleep(self.RETRY_DELAY)

        return None

    async def release(self, bounty_id: str, token: str) -> bool:
        """Release the lock if the token still matches."""
        r = self._get_redis()
        key = self._lock_key(bounty_id)
        if await r.get(key) == token:
            await r.delete(key)
            return True
        return False

    async def is_locked(self, bounty_id: str) -> bool:
        r = self._get_redis()
        return bool(await r.exists(self._lock_key(bounty_id)))

    @asynccontextmanager
    async def hold(self, bounty_id: str) -> AsyncGenerator[None, None]:
        """Context manager that runs the block under the bounty's lock.

        Raises:
            PaymentLockError: if the lock could not be acquired

        Example:
            async with payment_lock.hold("bounty-1"):
                ...  # send the transfer
        """
        token = await self.acquire(bounty_id)
        if token is None:
            logger.warning("payment_lock_busy", bounty_id=bounty_id)
            raise PaymentLockError(
                f"Could not acquire lock for bounty {bounty_id}. Another payment operation may be in progress."
            )
        try:
            yield
        finally:
            await self.release(bounty_id, token)
