"""
Per-auction lock tests
"""
import threading
from unittest.mock import MagicMock

import pytest
import redis

from auction_house.core.exceptions import StoreUnavailableError
from auction_house.infrastructure.lock import LocalAuctionLock, LockTimeoutError, RedisAuctionLock


class TestLocalAuctionLock:

    def test_serializes_same_auction(self):
        lock = LocalAuctionLock()
        counter = {"value": 0}

        def increment():
            for _ in range(200):
                with lock.lock("a1"):
                    current = counter["value"]
                    counter["value"] = current + 1

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["value"] == 800

    def test_distinct_auctions_are_independent(self):
        lock = LocalAuctionLock(timeout=0.05)
        with lock.lock("a1"):
            with lock.lock("a2"):
                pass

    def test_timeout(self):
        lock = LocalAuctionLock(timeout=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with lock.lock("a1"):
                held.set()
                release.wait(1)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(1)
        try:
            with pytest.raises(LockTimeoutError):
                with lock.lock("a1"):
                    pass
        finally:
            release.set()
            thread.join()

        assert lock._locks == {}

    def test_entries_dropped_when_released(self):
        lock = LocalAuctionLock()
        with lock.lock("a1"):
            with lock.lock("a2"):
                assert set(lock._locks) == {"a1", "a2"}
            assert set(lock._locks) == {"a1"}

        assert lock._locks == {}
        assert lock._users == {}


class TestRedisAuctionLock:

    def test_acquire_and_release(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RedisAuctionLock(client)

        with lock.lock("a1") as retries:
            assert retries == 0

        key, token = client.set.call_args.args
        assert key == "auction:lock:a1"
        assert client.set.call_args.kwargs == {"nx": True, "px": 3000}
        client.eval.assert_called_once_with(RedisAuctionLock.UNLOCK_SCRIPT, 1, key, token)

    def test_retries_until_acquired(self):
        client = MagicMock()
        client.set.side_effect = [None, None, True]
        lock = RedisAuctionLock(client, retry_delay=0)

        with lock.lock("a1") as retries:
            assert retries == 2

    def test_gives_up(self):
        client = MagicMock()
        client.set.return_value = None
        lock = RedisAuctionLock(client, retry_delay=0, max_retries=3)

        with pytest.raises(LockTimeoutError):
            with lock.lock("a1"):
                pass

        assert client.set.call_count == 3
        client.eval.assert_not_called()

    def test_released_when_body_raises(self):
        client = MagicMock()
        client.set.return_value = True
        lock = RedisAuctionLock(client)

        with pytest.raises(RuntimeError):
            with lock.lock("a1"):
                raise RuntimeError("boom")

        client.eval.assert_called_once()

    def test_redis_outage_is_store_unavailable(self):
        client = MagicMock()
        client.set.side_effect = redis.ConnectionError("connection refused")
        lock = RedisAuctionLock(client, retry_delay=0)

        with pytest.raises(StoreUnavailableError) as exc:
            with lock.lock("a1"):
                pass

        assert exc.value.retryable
        assert exc.value.status_code == 503
        assert client.set.call_count == 1
        client.eval.assert_not_called()
