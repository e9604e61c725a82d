import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from auction_house.core.retry import RetryConfig
from auction_house.infrastructure.database import build_engine, init_db
from auction_house.infrastructure.memory_store import InMemoryAuctionStore
from auction_house.infrastructure.sql_store import SqlAuctionStore
from auction_house.services.auction_engine import AuctionEngine

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock"""

    def __init__(self, now: datetime = START):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class TickingClock(FixedClock):
    """Moves forward by ``step`` on every reading"""

    def __init__(self, now: datetime = START, step: timedelta = timedelta(milliseconds=1)):
        super().__init__(now)
        self.step = step

    def __call__(self) -> datetime:
        with self._lock:
            self.now = self.now + self.step
            return self.now


def no_sleep(_delay: float) -> None:
    pass


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def memory_store():
    return InMemoryAuctionStore()


@pytest.fixture
def sql_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'auctions.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine):
    return SqlAuctionStore(sql_engine)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Every engine test runs against both store implementations"""
    if request.param == "memory":
        return InMemoryAuctionStore()
    return request.getfixturevalue("sql_store")


@pytest.fixture
def engine(store, clock):
    return AuctionEngine(
        store,
        retry_config=RetryConfig(max_retries=5, initial_delay=0.0, max_delay=0.0, jitter=False),
        clock=clock,
        sleep=no_sleep,
    )


@pytest.fixture
def make_auction(engine, clock):
    """Factory for active auctions ending in an hour"""
    counter = {"n": 0}

    def _make(starting_price="100", reserve_price=None, seller_id="seller-1", minutes=60, currency=None):
        counter["n"] += 1
        return engine.create_auction(
            listing_id=f"listing-{counter['n']}",
            seller_id=seller_id,
            starting_price=Decimal(starting_price),
            reserve_price=Decimal(reserve_price) if reserve_price is not None else None,
            end_time=clock() + timedelta(minutes=minutes),
            currency=currency,
        )

    return _make
