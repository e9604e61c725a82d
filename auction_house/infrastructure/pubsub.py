"""
Auction event notifier

Broadcasts NEW_BID and AUCTION_CLOSED events to WebSocket clients watching an
auction.

Without Redis, events go straight to the sockets connected to this process.
With Redis, events are PUBLISHed on ``auction:{auction_id}`` and every server
subscribed to that channel relays them to its own sockets:

    API / expiry worker ──PUBLISH auction:{id}──▶ Redis ──▶ server 1 ─▶ sockets
                                                       └──▶ server 2 ─▶ sockets
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError
from fastapi import WebSocket

from auction_house.schemas.auction import AuctionRecord, BidRecord

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "auction:"


def new_bid_event(bid: BidRecord, auction: Optional[AuctionRecord] = None) -> Dict[str, Any]:
    event = {
        "type": "NEW_BID",
        "auction_id": bid.auction_id,
        "bid": bid.model_dump(mode="json"),
    }
    if auction is not None:
        event["current_bid"] = str(auction.current_bid)
        event["bid_count"] = auction.bid_count
    return event


def auction_closed_event(auction: AuctionRecord) -> Dict[str, Any]:
    return {
        "type": "AUCTION_CLOSED",
        "auction_id": auction.id,
        "status": auction.status.value,
        "winning_bidder_id": auction.winning_bidder_id,
        "final_bid": str(auction.current_bid),
        "bid_count": auction.bid_count,
    }


class ConnectionManager:
    """WebSocket connections on this server, grouped by auction"""

    def __init__(self):
        # auction_id -> set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, auction_id: str) -> None:
        await websocket.accept()
        self.active_connections.setdefault(auction_id, set()).add(websocket)
        logger.info(
            f"🔌 Client connected to auction {auction_id} "
            f"(viewers: {self.get_viewer_count(auction_id)})",
            extra={"auction_id": auction_id},
        )

    def disconnect(self, websocket: WebSocket, auction_id: str) -> bool:
        """Remove a client; True when it was the auction's last one"""
        connections = self.active_connections.get(auction_id)
        if connections is None:
            return False
        connections.discard(websocket)
        logger.info(f"🔌 Client disconnected from auction {auction_id}", extra={"auction_id": auction_id})
        if not connections:
            del self.active_connections[auction_id]
            return True
        return False

    async def broadcast(self, auction_id: str, message: dict) -> int:
        """Send to every client watching this auction, dropping dead sockets"""
        connections = self.active_connections.get(auction_id)
        if not connections:
            return 0

        disconnected = set()
        delivered = 0
        for websocket in connections.copy():
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"⚠️  Error sending to client on auction {auction_id}: {e}")
                disconnected.add(websocket)

        for websocket in disconnected:
            self.disconnect(websocket, auction_id)
        return delivered

    async def send_personal_message(self, websocket: WebSocket, message: dict) -> None:
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning(f"⚠️  Error sending personal message: {e}")

    def get_viewer_count(self, auction_id: str) -> int:
        return len(self.active_connections.get(auction_id, ()))

    def total_connections(self) -> int:
        return sum(len(conns) for conns in self.active_connections.values())


class AuctionNotifier:
    """
    Event fan-out for auction watchers

    Usage:
        notifier = AuctionNotifier(redis_url="redis://localhost:6379")
        await notifier.connect()
        await notifier.publish(auction_id, new_bid_event(bid, auction))
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.connections = ConnectionManager()

        self.redis = None           # client for PUBLISH
        self.pubsub = None          # subscription connection
        self._listener: Optional[asyncio.Task] = None
        self.subscriptions: Set[str] = set()

        self.messages_published = 0
        self.messages_received = 0

    @property
    def is_distributed(self) -> bool:
        return self.redis is not None

    async def connect(self) -> None:
        """Open the Redis publish and subscribe connections"""
        if self.redis_url is None:
            return
        logger.info("🔌 [PubSub] Connecting to Redis...")
        self.redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        self.pubsub = self.redis.pubsub()
        self._listener = asyncio.create_task(self._listen_loop())
        logger.info("✅ [PubSub] Connected to Redis")

    async def disconnect(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self.pubsub is not None:
            await self.pubsub.aclose()
            self.pubsub = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        self.subscriptions.clear()
        logger.info("🔌 [PubSub] Disconnected")

    @staticmethod
    def _channel_name(auction_id: str) -> str:
        return f"{CHANNEL_PREFIX}{auction_id}"

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------
    async def add_connection(self, websocket: WebSocket, auction_id: str) -> None:
        await self.connections.connect(websocket, auction_id)
        if self.is_distributed:
            channel = self._channel_name(auction_id)
            if channel not in self.subscriptions:
                await self.pubsub.subscribe(channel)
                self.subscriptions.add(channel)
                logger.info(f"📡 [PubSub] Subscribed to {channel}")

    async def remove_connection(self, websocket: WebSocket, auction_id: str) -> None:
        last = self.connections.disconnect(websocket, auction_id)
        channel = self._channel_name(auction_id)
        if last and self.is_distributed and channel in self.subscriptions:
            await self.pubsub.unsubscribe(channel)
            self.subscriptions.discard(channel)
            logger.info(f"📡 [PubSub] Unsubscribed from {channel}")

    async def send_personal_message(self, websocket: WebSocket, message: dict) -> None:
        await self.connections.send_personal_message(websocket, message)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def publish(self, auction_id: str, message: dict) -> None:
        """
        Publish an event for an auction

        Never raises: a failed notification must not fail the bid or close
        that produced it.
        """
        self.messages_published += 1
        if not self.is_distributed:
            await self.connections.broadcast(auction_id, message)
            return

        channel = self._channel_name(auction_id)
        try:
            receivers = await self.redis.publish(channel, json.dumps(message))
            logger.debug(f"📢 [PubSub] Published {message.get('type')} to {channel} ({receivers} subscribers)")
        except RedisError as e:
            logger.error(f"❌ [PubSub] Publish to {channel} failed, delivering locally: {e}")
            await self.connections.broadcast(auction_id, message)

    async def handle_message(self, message: dict) -> None:
        """Relay one Redis Pub/Sub message to local sockets"""
        if message.get("type") != "message":
            return
        channel = message["channel"]
        if not channel.startswith(CHANNEL_PREFIX):
            return
        auction_id = channel[len(CHANNEL_PREFIX):]
        self.messages_received += 1
        await self.connections.broadcast(auction_id, json.loads(message["data"]))

    async def _listen_loop(self) -> None:
        logger.info("👂 [PubSub] Listen loop started")
        while True:
            if not self.subscriptions:
                await asyncio.sleep(0.1)
                continue
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is not None:
                    await self.handle_message(message)
            except asyncio.CancelledError:
                raise
            except (RedisError, ValueError) as e:
                logger.error(f"❌ [PubSub] Error processing message: {e}")
                await asyncio.sleep(1.0)

    def get_stats(self) -> dict:
        return {
            "distributed": self.is_distributed,
            "subscriptions": len(self.subscriptions),
            "messages_published": self.messages_published,
            "messages_received": self.messages_received,
            "active_auctions": len(self.connections.active_connections),
            "total_connections": self.connections.total_connections(),
        }
