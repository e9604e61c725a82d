"""
Concurrency Tests

Concurrent bidders against one auction must never lose an accepted bid from
the auction totals, and accepted bids must be strictly increasing in
placement order.
"""
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from auction_house.core.exceptions import AuctionError, BidTooLowError, ContentionError
from auction_house.core.retry import RetryConfig
from auction_house.infrastructure.memory_store import InMemoryAuctionStore
from auction_house.schemas.auction import AuctionStatus
from auction_house.services.auction_engine import AuctionEngine
from tests.conftest import START, TickingClock, no_sleep


def concurrent_engine(store, clock):
    return AuctionEngine(
        store,
        retry_config=RetryConfig(max_retries=25, initial_delay=0.001, max_delay=0.01),
        clock=clock,
    )


def assert_consistent(engine, auction_id):
    """Totals agree with the stored bids and bids strictly increase in
    both sequence and placement time"""
    auction = engine.store.get_auction(auction_id)
    bids = engine.list_bids(auction_id)

    assert auction.bid_count == len(bids)
    assert [b.sequence for b in bids] == list(range(1, len(bids) + 1))
    assert auction.current_bid >= auction.starting_price
    if bids:
        assert auction.current_bid == max(b.amount for b in bids)
    else:
        assert auction.current_bid == auction.starting_price

    previous = auction.starting_price
    for bid in bids:
        assert bid.amount >= engine.policy.minimum_amount(previous)
        previous = bid.amount

    by_time = sorted(bids, key=lambda b: b.placed_at)
    assert [b.id for b in by_time] == [b.id for b in bids]
    assert all(a.placed_at < b.placed_at for a, b in zip(by_time, by_time[1:]))
    assert all(a.amount < b.amount for a, b in zip(by_time, by_time[1:]))


# ============================================================================
# SCENARIO
# ============================================================================
@pytest.mark.parametrize("run", range(5))
def test_concurrent_110_and_115_after_105(store, clock, run):
    """Only 115 clears the 110.25 minimum, whichever arrives first"""
    engine = concurrent_engine(store, clock)
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))

    with pytest.raises(BidTooLowError):
        engine.place_bid(auction.id, "early", Decimal("60"))
    engine.place_bid(auction.id, "first", Decimal("105"))

    barrier = threading.Barrier(2)
    outcomes = {}

    def bid(bidder, amount):
        barrier.wait()
        try:
            engine.place_bid(auction.id, bidder, Decimal(amount))
            outcomes[bidder] = "accepted"
        except AuctionError as e:
            outcomes[bidder] = e.code

    with ThreadPoolExecutor(max_workers=2) as pool:
        list(pool.map(bid, ["bob", "carol"], ["110", "115"]))

    assert outcomes == {"bob": "bid_too_low", "carol": "accepted"}

    final = engine.get_auction(auction.id)
    assert final.bid_count == 2
    assert final.current_bid == Decimal("115")
    assert_consistent(engine, auction.id)


# ============================================================================
# NO LOST UPDATES
# ============================================================================
def test_bidding_war_memory_store(clock):
    engine = concurrent_engine(InMemoryAuctionStore(), clock)
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))
    accepted = []
    accepted_lock = threading.Lock()

    def bidder(name):
        rng = random.Random(name)
        for _ in range(15):
            current = engine.store.get_auction(auction.id).current_bid
            amount = engine.policy.minimum_amount(current) + Decimal(rng.randint(0, 300)) / 100
            try:
                bid = engine.place_bid(auction.id, name, amount)
            except (BidTooLowError, ContentionError):
                continue
            with accepted_lock:
                accepted.append(bid.id)

    with ThreadPoolExecutor(max_workers=12) as pool:
        list(pool.map(bidder, [f"bidder-{i}" for i in range(12)]))

    assert accepted
    stored_ids = {b.id for b in engine.list_bids(auction.id)}
    assert stored_ids == set(accepted)
    assert_consistent(engine, auction.id)


def test_bidding_war_sql_store(sql_store, clock):
    engine = concurrent_engine(sql_store, clock)
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))
    accepted = []
    accepted_lock = threading.Lock()

    def bidder(name):
        for _ in range(5):
            current = engine.store.get_auction(auction.id).current_bid
            try:
                bid = engine.place_bid(auction.id, name, engine.policy.minimum_amount(current))
            except AuctionError:
                continue
            with accepted_lock:
                accepted.append(bid.id)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(bidder, [f"bidder-{i}" for i in range(4)]))

    assert accepted
    assert {b.id for b in engine.list_bids(auction.id)} == set(accepted)
    assert_consistent(engine, auction.id)


def test_distinct_auctions_do_not_contend(clock):
    engine = concurrent_engine(InMemoryAuctionStore(), clock)
    auctions = [
        engine.create_auction(f"l{i}", "seller", Decimal("100"), START + timedelta(hours=1))
        for i in range(8)
    ]

    def bid_up(auction):
        amount = Decimal("100")
        for _ in range(10):
            amount = engine.policy.minimum_amount(amount)
            engine.place_bid(auction.id, "bidder", amount)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bid_up, auctions))

    for auction in auctions:
        assert engine.store.get_auction(auction.id).bid_count == 10
        assert_consistent(engine, auction.id)


def test_close_racing_with_bids(clock):
    engine = concurrent_engine(InMemoryAuctionStore(), clock)
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))
    start = threading.Event()

    def bidder(name):
        start.wait()
        for _ in range(10):
            current = engine.store.get_auction(auction.id).current_bid
            try:
                engine.place_bid(auction.id, name, engine.policy.minimum_amount(current))
            except AuctionError:
                continue

    def closer():
        start.wait()
        return engine.close_auction(auction.id)

    with ThreadPoolExecutor(max_workers=5) as pool:
        futures = [pool.submit(bidder, f"bidder-{i}") for i in range(4)]
        close_future = pool.submit(closer)
        start.set()
        for f in futures:
            f.result()
        closed = close_future.result()

    final = engine.store.get_auction(auction.id)
    bids = engine.list_bids(auction.id)

    assert final == closed
    assert_consistent(engine, auction.id)
    if bids:
        assert final.status == AuctionStatus.ENDED
        assert final.winning_bidder_id == bids[-1].bidder_id
        assert [b.is_winning for b in bids] == [False] * (len(bids) - 1) + [True]
    else:
        assert final.status == AuctionStatus.CANCELLED


# ============================================================================
# PLACEMENT ORDER
# ============================================================================
def test_retrying_loser_is_stamped_after_the_winner(store, clock, monkeypatch):
    """A bid validated before a rival commits is placed after it"""
    engine = AuctionEngine(
        store,
        retry_config=RetryConfig(max_retries=3, initial_delay=0.0, jitter=False),
        clock=clock,
        sleep=no_sleep,
    )
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))
    record_bid = store.record_bid
    rivals = []

    def rival_commits_first(bid, expected_current_bid):
        if bid.bidder_id == "slow" and not rivals:
            clock.advance(seconds=5)
            rivals.append(engine.place_bid(auction.id, "rival", Decimal("150")))
        return record_bid(bid, expected_current_bid)

    monkeypatch.setattr(store, "record_bid", rival_commits_first)

    slow = engine.place_bid(auction.id, "slow", Decimal("300"))

    rival = rivals[0]
    assert rival.placed_at == START + timedelta(seconds=5)
    assert slow.sequence == 2
    assert slow.placed_at > rival.placed_at
    assert_consistent(engine, auction.id)


def test_bidding_war_with_moving_clock():
    engine = concurrent_engine(InMemoryAuctionStore(), TickingClock())
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))

    def bidder(name):
        for _ in range(10):
            current = engine.store.get_auction(auction.id).current_bid
            try:
                engine.place_bid(auction.id, name, engine.policy.minimum_amount(current))
            except AuctionError:
                continue

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bidder, [f"bidder-{i}" for i in range(8)]))

    bids = engine.list_bids(auction.id)
    assert bids
    assert len({b.placed_at for b in bids}) == len(bids)
    assert_consistent(engine, auction.id)


# ============================================================================
# BOUNDED RETRY
# ============================================================================
class AlwaysLosingStore(InMemoryAuctionStore):
    """Every conditional write loses the race"""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    def record_bid(self, bid, expected_current_bid):
        self.attempts += 1
        return False


def test_contention_after_bounded_retries(clock):
    store = AlwaysLosingStore()
    engine = AuctionEngine(
        store,
        retry_config=RetryConfig(max_retries=3, initial_delay=0.0, jitter=False),
        clock=clock,
        sleep=no_sleep,
    )
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))

    with pytest.raises(ContentionError) as exc:
        engine.place_bid(auction.id, "alice", Decimal("105"))

    assert store.attempts == 4
    assert exc.value.attempts == 4
    assert exc.value.status_code == 409
    assert store.get_auction(auction.id).bid_count == 0


def test_backoff_between_attempts(clock):
    delays = []
    engine = AuctionEngine(
        AlwaysLosingStore(),
        retry_config=RetryConfig(max_retries=3, initial_delay=0.01, max_delay=1.0, jitter=False),
        clock=clock,
        sleep=delays.append,
    )
    auction = engine.create_auction("l1", "seller", Decimal("100"), START + timedelta(hours=1))

    with pytest.raises(ContentionError):
        engine.place_bid(auction.id, "alice", Decimal("105"))

    assert delays == [0.01, 0.02, 0.04]
