"""
Per-auction locks

Fallback serialization for stores without conditional writes. The engine only
takes these when ``store.supports_conditional_update`` is False.

- ``LocalAuctionLock``: one ``threading.Lock`` per auction id, single process
- ``RedisAuctionLock``: SET NX PX with an owner token, works across processes
"""
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple

import redis

from auction_house.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock could not be acquired within the retry budget"""


class LocalAuctionLock:
    """
    In-process lock keyed by auction id

    Entries are reference counted and dropped once no thread holds or waits
    on them.
    """

    def __init__(self, timeout: float = 3.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def _checkout(self, auction_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(auction_id)
            if lock is None:
                lock = self._locks[auction_id] = threading.Lock()
            self._users[auction_id] = self._users.get(auction_id, 0) + 1
            return lock

    def _checkin(self, auction_id: str) -> None:
        with self._guard:
            self._users[auction_id] -= 1
            if self._users[auction_id] == 0:
                del self._users[auction_id]
                del self._locks[auction_id]

    @contextmanager
    def lock(self, auction_id: str) -> Iterator[int]:
        lock = self._checkout(auction_id)
        try:
            if not lock.acquire(timeout=self.timeout):
                raise LockTimeoutError(f"Could not acquire lock for auction {auction_id}")
            try:
                yield 0
            finally:
                lock.release()
        finally:
            self._checkin(auction_id)


class RedisAuctionLock:
    """Distributed lock with retry tracking"""

    # Delete the key only if we still own it
    UNLOCK_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        lock_expire_ms: int = 3000,
        retry_delay: float = 0.005,
        max_retries: int = 10,
    ):
        self.redis = redis_client
        self.lock_expire_ms = lock_expire_ms
        self.retry_delay = retry_delay
        self.max_retries = max_retries

    def acquire(self, auction_id: str) -> Tuple[str, str, int]:
        """
        Try to acquire lock with retry

        Returns: (lock_key, request_id, retry_count)
        Raises: LockTimeoutError if can't acquire,
                StoreUnavailableError if Redis can't be reached
        """
        lock_key = f"auction:lock:{auction_id}"
        request_id = str(uuid.uuid4())

        for attempt in range(self.max_retries):
            try:
                acquired = self.redis.set(lock_key, request_id, nx=True, px=self.lock_expire_ms)
            except redis.RedisError as e:
                logger.error(f"❌ Lock service error for auction {auction_id}: {e}")
                raise StoreUnavailableError("Lock service unavailable", auction_id) from e
            if acquired:
                return lock_key, request_id, attempt

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay)

        raise LockTimeoutError(f"Could not acquire lock for auction {auction_id}")

    def release(self, lock_key: str, request_id: str) -> None:
        """Release lock only if we own it"""
        try:
            self.redis.eval(self.UNLOCK_SCRIPT, 1, lock_key, request_id)
        except redis.RedisError as e:
            # The key expires on its own after lock_expire_ms
            logger.warning(f"⚠️  Error releasing lock {lock_key}: {e}")

    @contextmanager
    def lock(self, auction_id: str) -> Iterator[int]:
        """
        Usage:
            with lock_manager.lock(auction_id) as retry_count:
                process_bid()
        """
        lock_key, request_id, retry_count = self.acquire(auction_id)
        if retry_count > 0:
            logger.debug(f"🔒 Lock for auction {auction_id} acquired after {retry_count} retries")
        try:
            yield retry_count
        finally:
            self.release(lock_key, request_id)
