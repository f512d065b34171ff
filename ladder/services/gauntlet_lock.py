"""
Per-gauntlet serialization for ladder mutations.

Every write to a gauntlet's positions and progressions runs inside
``GauntletLockManager.hold(gauntlet_id)``. Inside one process an
``asyncio.Lock`` per gauntlet does the job; with Redis locking enabled the
same key is also held in Redis (SET NX with expiry) so several processes
sharing one database serialize too. Different gauntlets never contend.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional

from ladder.config import Config
from ladder.constants import LockConstants
from ladder.utils.exceptions import ConcurrencyConflictError
from ladder.utils.logger import setup_logger
from ladder.utils.redis_utils import RedisUtils

logger = setup_logger(__name__)


class GauntletLockManager:
    """Exclusive scoped locks keyed by gauntlet id."""

    def __init__(self, redis_client=None, timeout: float = None, expiry: int = None):
        self.redis_client = redis_client
        self.timeout = timeout if timeout is not None else Config.LOCK_TIMEOUT_SECONDS
        self.expiry = expiry if expiry is not None else Config.LOCK_EXPIRY_SECONDS
        self._locks: Dict[int, asyncio.Lock] = {}

    @classmethod
    async def from_config(cls) -> 'GauntletLockManager':
        """Build a manager, connecting to Redis when REDIS_LOCKING is on"""
        redis_client = None
        if Config.REDIS_LOCKING:
            redis_client = await RedisUtils.create_redis_client()
            if redis_client is None:
                logger.warning("Redis locking requested but unavailable. Falling back to in-process locks only.")
        return cls(redis_client=redis_client)

    def _local_lock(self, gauntlet_id: int) -> asyncio.Lock:
        lock = self._locks.get(gauntlet_id)
        if lock is None:
            lock = self._locks.setdefault(gauntlet_id, asyncio.Lock())
        return lock

    def is_locked(self, gauntlet_id: int) -> bool:
        lock = self._locks.get(gauntlet_id)
        return lock is not None and lock.locked()

    def discard(self, gauntlet_id: int) -> None:
        """Forget the lock of a deleted gauntlet; a held lock is kept for its holder"""
        lock = self._locks.get(gauntlet_id)
        if lock is not None and not lock.locked():
            del self._locks[gauntlet_id]

    @asynccontextmanager
    async def hold(self, gauntlet_id: int):
        """
        Hold the gauntlet exclusively for the duration of the block.

        Raises:
            ConcurrencyConflictError: If the lock is not obtained within timeout
        """
        local_lock = self._local_lock(gauntlet_id)
        try:
            await asyncio.wait_for(local_lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ConcurrencyConflictError(gauntlet_id, f"timed out after {self.timeout}s waiting for ladder lock")

        token = None
        try:
            if self.redis_client is not None:
                token = await self._acquire_redis(gauntlet_id)
            yield
        finally:
            if token is not None:
                await self._release_redis(gauntlet_id, token)
            local_lock.release()

    async def _acquire_redis(self, gauntlet_id: int) -> str:
        key = f"{LockConstants.REDIS_LOCK_PREFIX}{gauntlet_id}"
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.timeout

        while True:
            acquired = await self.redis_client.set(key, token, nx=True, ex=self.expiry)
            if acquired:
                logger.debug(f"Acquired Redis lock {key}")
                return token
            if time.monotonic() >= deadline:
                raise ConcurrencyConflictError(gauntlet_id, f"Redis lock {key} held elsewhere")
            await asyncio.sleep(Config.LOCK_POLL_INTERVAL)

    async def _release_redis(self, gauntlet_id: int, token: str) -> None:
        key = f"{LockConstants.REDIS_LOCK_PREFIX}{gauntlet_id}"
        current = await self.redis_client.get(key)
        if isinstance(current, bytes):
            current = current.decode()
        if current == token:
            await self.redis_client.delete(key)
        else:
            # Expired and possibly taken by another holder; leave it alone
            logger.warning(f"Redis lock {key} expired before release")

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
