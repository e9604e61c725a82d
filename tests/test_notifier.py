"""
Notifier and expiry worker tests
"""
import asyncio
import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from auction_house.core.exceptions import StoreUnavailableError
from auction_house.core.retry import RetryConfig
from auction_house.infrastructure.memory_store import InMemoryAuctionStore
from auction_house.infrastructure.pubsub import (
    AuctionNotifier,
    ConnectionManager,
    auction_closed_event,
    new_bid_event,
)
from auction_house.schemas.auction import AuctionStatus
from auction_house.services.auction_engine import AuctionEngine
from auction_house.services.expiry_worker import ExpiryWorker
from tests.conftest import START, no_sleep


def fake_socket():
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_json = AsyncMock()
    return websocket


# ============================================================================
# EVENTS
# ============================================================================
def test_event_payloads(engine, make_auction):
    auction = make_auction()
    bid = engine.place_bid(auction.id, "alice", Decimal("105"))
    updated = engine.get_auction(auction.id)

    event = new_bid_event(bid, updated)
    assert event["type"] == "NEW_BID"
    assert event["bid"]["bidder_id"] == "alice"
    assert Decimal(event["current_bid"]) == Decimal("105")
    assert event["bid_count"] == 1
    json.dumps(event)

    closed = engine.close_auction(auction.id)
    event = auction_closed_event(closed)
    assert event == {
        "type": "AUCTION_CLOSED",
        "auction_id": auction.id,
        "status": "ended",
        "winning_bidder_id": "alice",
        "final_bid": str(closed.current_bid),
        "bid_count": 1,
    }


# ============================================================================
# CONNECTION MANAGER
# ============================================================================
class TestConnectionManager:

    @pytest.mark.asyncio
    async def test_broadcast_to_watchers_of_one_auction(self):
        manager = ConnectionManager()
        watcher, other = fake_socket(), fake_socket()
        await manager.connect(watcher, "a1")
        await manager.connect(other, "a2")

        delivered = await manager.broadcast("a1", {"type": "NEW_BID"})

        assert delivered == 1
        watcher.send_json.assert_awaited_once_with({"type": "NEW_BID"})
        other.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dead_socket_dropped(self):
        manager = ConnectionManager()
        alive, dead = fake_socket(), fake_socket()
        dead.send_json.side_effect = RuntimeError("closed")
        await manager.connect(alive, "a1")
        await manager.connect(dead, "a1")

        await manager.broadcast("a1", {"type": "NEW_BID"})

        assert manager.get_viewer_count("a1") == 1

    @pytest.mark.asyncio
    async def test_last_disconnect_removes_auction(self):
        manager = ConnectionManager()
        websocket = fake_socket()
        await manager.connect(websocket, "a1")

        assert manager.disconnect(websocket, "a1") is True
        assert manager.active_connections == {}
        assert manager.disconnect(websocket, "a1") is False


# ============================================================================
# NOTIFIER
# ============================================================================
class TestAuctionNotifier:

    @pytest.mark.asyncio
    async def test_local_publish(self):
        notifier = AuctionNotifier()
        await notifier.connect()
        websocket = fake_socket()
        await notifier.add_connection(websocket, "a1")

        await notifier.publish("a1", {"type": "NEW_BID"})

        assert not notifier.is_distributed
        websocket.send_json.assert_awaited_once_with({"type": "NEW_BID"})
        assert notifier.get_stats()["messages_published"] == 1

    @pytest.mark.asyncio
    async def test_redis_publish(self):
        notifier = AuctionNotifier()
        notifier.redis = MagicMock()
        notifier.redis.publish = AsyncMock(return_value=2)

        await notifier.publish("a1", {"type": "NEW_BID"})

        notifier.redis.publish.assert_awaited_once_with("auction:a1", json.dumps({"type": "NEW_BID"}))

    @pytest.mark.asyncio
    async def test_redis_failure_falls_back_to_local(self):
        notifier = AuctionNotifier()
        notifier.pubsub = MagicMock()
        notifier.pubsub.subscribe = AsyncMock()
        notifier.redis = MagicMock()
        notifier.redis.publish = AsyncMock(side_effect=RedisConnectionError("down"))
        websocket = fake_socket()
        await notifier.add_connection(websocket, "a1")

        await notifier.publish("a1", {"type": "NEW_BID"})

        notifier.pubsub.subscribe.assert_awaited_once_with("auction:a1")
        websocket.send_json.assert_awaited_once_with({"type": "NEW_BID"})

    @pytest.mark.asyncio
    async def test_relays_redis_message(self):
        notifier = AuctionNotifier()
        websocket = fake_socket()
        await notifier.connections.connect(websocket, "a1")

        await notifier.handle_message({"type": "subscribe", "channel": "auction:a1", "data": 1})
        await notifier.handle_message({
            "type": "message",
            "channel": "auction:a1",
            "data": json.dumps({"type": "AUCTION_CLOSED"}),
        })

        websocket.send_json.assert_awaited_once_with({"type": "AUCTION_CLOSED"})
        assert notifier.messages_received == 1

    @pytest.mark.asyncio
    async def test_unsubscribes_after_last_watcher(self):
        notifier = AuctionNotifier()
        notifier.redis = MagicMock()
        notifier.pubsub = MagicMock()
        notifier.pubsub.subscribe = AsyncMock()
        notifier.pubsub.unsubscribe = AsyncMock()
        first, second = fake_socket(), fake_socket()

        await notifier.add_connection(first, "a1")
        await notifier.add_connection(second, "a1")
        await notifier.remove_connection(first, "a1")
        notifier.pubsub.unsubscribe.assert_not_awaited()
        await notifier.remove_connection(second, "a1")

        notifier.pubsub.subscribe.assert_awaited_once_with("auction:a1")
        notifier.pubsub.unsubscribe.assert_awaited_once_with("auction:a1")
        assert notifier.subscriptions == set()


# ============================================================================
# EXPIRY WORKER
# ============================================================================
class TestExpiryWorker:

    @pytest.mark.asyncio
    async def test_run_once_closes_and_announces(self, clock):
        engine = AuctionEngine(InMemoryAuctionStore(), clock=clock, sleep=no_sleep)
        auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(minutes=1))
        engine.place_bid(auction.id, "alice", Decimal("105"))
        notifier = AuctionNotifier()
        websocket = fake_socket()
        await notifier.add_connection(websocket, auction.id)
        worker = ExpiryWorker(engine, notifier=notifier)

        clock.advance(minutes=2)
        report = await worker.run_once()

        assert report.closed == [auction.id]
        message = websocket.send_json.await_args.args[0]
        assert message["type"] == "AUCTION_CLOSED"
        assert message["winning_bidder_id"] == "alice"

    @pytest.mark.asyncio
    async def test_run_once_retries_store_outage(self, clock):
        class FlakyStore(InMemoryAuctionStore):
            failures = 2

            def list_expired_active_auctions(self, now):
                if self.failures:
                    self.failures -= 1
                    raise StoreUnavailableError()
                return super().list_expired_active_auctions(now)

        engine = AuctionEngine(FlakyStore(), clock=clock, sleep=no_sleep)
        auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(minutes=1))
        worker = ExpiryWorker(engine, retry_config=RetryConfig(max_retries=3, initial_delay=0.0, jitter=False))

        clock.advance(minutes=2)
        report = await worker.run_once()

        assert report.closed == [auction.id]
        assert engine.store.get_auction(auction.id).status == AuctionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        engine = AuctionEngine(InMemoryAuctionStore(), clock=clock, sleep=no_sleep)
        auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(minutes=1))
        clock.advance(minutes=2)
        worker = ExpiryWorker(engine, interval_seconds=0.01)

        await worker.start()
        await worker.start()
        for _ in range(100):
            if engine.store.get_auction(auction.id).is_closed:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert not worker.running
        assert worker.task is None
        assert engine.store.get_auction(auction.id).status == AuctionStatus.CANCELLED
