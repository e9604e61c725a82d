"""
FastAPI Dependencies

Process-wide engine, notifier and worker, built lazily from settings.
"""
import logging
from typing import Optional

import redis

from auction_house.core.config import Settings, get_settings
from auction_house.infrastructure.database import get_engine
from auction_house.infrastructure.lock import LocalAuctionLock, RedisAuctionLock
from auction_house.infrastructure.memory_store import InMemoryAuctionStore
from auction_house.infrastructure.pubsub import AuctionNotifier
from auction_house.infrastructure.sql_store import SqlAuctionStore
from auction_house.infrastructure.store import AuctionStore
from auction_house.services.auction_engine import AuctionEngine
from auction_house.services.expiry_worker import ExpiryWorker

logger = logging.getLogger(__name__)

_engine: Optional[AuctionEngine] = None
_notifier: Optional[AuctionNotifier] = None
_worker: Optional[ExpiryWorker] = None


def build_store(settings: Settings) -> AuctionStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryAuctionStore()
    if settings.STORE_BACKEND == "sql":
        return SqlAuctionStore(get_engine())
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")


def build_lock(settings: Settings):
    if settings.LOCK_BACKEND == "redis":
        return RedisAuctionLock(
            redis.Redis.from_url(settings.REDIS_URL, decode_responses=True),
            lock_expire_ms=settings.LOCK_EXPIRE_MS,
            retry_delay=settings.LOCK_RETRY_DELAY,
            max_retries=settings.LOCK_MAX_RETRIES,
        )
    return LocalAuctionLock(timeout=settings.LOCK_EXPIRE_MS / 1000)


def get_auction_engine() -> AuctionEngine:
    """Get auction engine"""
    global _engine

    if _engine is None:
        settings = get_settings()
        store = build_store(settings)
        lock = None if store.supports_conditional_update else build_lock(settings)
        _engine = AuctionEngine.from_settings(store, settings, lock=lock)
        logger.info(f"✅ Auction engine ready (store: {settings.STORE_BACKEND})")

    return _engine


def get_notifier() -> AuctionNotifier:
    """Get auction event notifier"""
    global _notifier

    if _notifier is None:
        settings = get_settings()
        _notifier = AuctionNotifier(settings.REDIS_URL if settings.REDIS_ENABLED else None)

    return _notifier


def get_expiry_worker() -> ExpiryWorker:
    global _worker

    if _worker is None:
        settings = get_settings()
        _worker = ExpiryWorker(
            get_auction_engine(),
            notifier=get_notifier(),
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        )

    return _worker
