"""
Auction Engine - Business Logic

Handles:
- Bid placement with optimistic concurrency (compare-and-swap + bounded retry)
- Auction close and winner determination (reserve price, idempotent)
- Expiry sweep (continue-on-error, failures reported)
- Auction lifecycle: create, extend, re-price, cancel, complete
- Auction and bid queries
"""
import logging
import math
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterator, List, Optional, Tuple, Union

from auction_house.core.exceptions import (
    AuctionError,
    AuctionExpiredError,
    AuctionHasBidsError,
    AuctionNotActiveError,
    AuctionNotFoundError,
    ContentionError,
    InvalidAuctionError,
)
from auction_house.core.retry import RetryConfig
from auction_house.infrastructure.lock import LockTimeoutError
from auction_house.infrastructure.store import SORT_FIELDS, AuctionStore
from auction_house.schemas.auction import (
    AuctionPage,
    AuctionRecord,
    AuctionStatistics,
    AuctionStatus,
    BidRecord,
    SweepReport,
    utcnow,
)
from auction_house.services.bid_validator import CENT, DEFAULT_POLICY, BidIncrementPolicy, check_bid

logger = logging.getLogger(__name__)

Money = Union[Decimal, int, float, str]

REPRICE_WITH_BIDS = "Cannot change the reserve price once bids exist"


def to_money(value: Money) -> Decimal:
    """
    Coerce an amount to a whole number of cents

    Goes through ``str`` so floats never leak binary noise. Sub-cent amounts
    are rejected: stored prices have two decimal places, and a value the
    store would round no longer matches the row it was written to.
    """
    try:
        money = value if isinstance(value, Decimal) else Decimal(str(value))
        if not money.is_finite():
            raise InvalidOperation
        cents = money.quantize(CENT)
    except InvalidOperation as e:
        raise InvalidAuctionError(f"Invalid amount: {value!r}") from e
    if cents != money:
        raise InvalidAuctionError(f"Amount {value} has more than two decimal places")
    return cents


def select_winning_bid(bids: List[BidRecord]) -> Optional[BidRecord]:
    """Highest amount wins; ties go to the earliest placement"""
    if not bids:
        return None
    return min(bids, key=lambda b: (-b.amount, b.placed_at, b.sequence))


class AuctionEngine:
    """
    Auction state machine over an ``AuctionStore``

    Bids on the same auction are linearized through the store's conditional
    write: a bid commits only if the auction's current bid is still the one it
    was validated against. Losers re-read and re-validate, up to
    ``retry_config.max_retries`` times, then fail with ``ContentionError``.
    Bids on different auctions never contend.
    """

    def __init__(
        self,
        store: AuctionStore,
        policy: BidIncrementPolicy = DEFAULT_POLICY,
        retry_config: Optional[RetryConfig] = None,
        lock=None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        lazy_expiry: bool = True,
        max_extension_minutes: int = 24 * 60,
        ending_soon_minutes: int = 60,
        default_currency: str = "USD",
    ):
        self.store = store
        self.policy = policy
        self.retry_config = retry_config or RetryConfig(
            max_retries=5, initial_delay=0.005, max_delay=0.1
        )
        self.lock = lock
        self.clock = clock
        self.sleep = sleep
        self.lazy_expiry = lazy_expiry
        self.max_extension_minutes = max_extension_minutes
        self.ending_soon = timedelta(minutes=ending_soon_minutes)
        self.default_currency = default_currency

        if not store.supports_conditional_update and lock is None:
            raise ValueError("A lock provider is required for stores without conditional writes")

    @classmethod
    def from_settings(cls, store: AuctionStore, settings, lock=None) -> "AuctionEngine":
        return cls(
            store,
            policy=BidIncrementPolicy(
                rate=settings.MIN_INCREMENT_RATE,
                floor=settings.MIN_INCREMENT_FLOOR,
            ),
            retry_config=RetryConfig(
                max_retries=settings.BID_MAX_RETRIES,
                initial_delay=settings.BID_RETRY_BASE_DELAY,
                max_delay=settings.BID_RETRY_MAX_DELAY,
            ),
            lock=lock,
            lazy_expiry=settings.LAZY_EXPIRY,
            max_extension_minutes=settings.MAX_EXTENSION_MINUTES,
            ending_soon_minutes=settings.ENDING_SOON_MINUTES,
            default_currency=settings.DEFAULT_CURRENCY,
        )

    # ========================================================================
    # HELPERS
    # ========================================================================
    def current_time(self, now: Optional[datetime] = None) -> datetime:
        now = now or self.clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    def _load(self, auction_id: str) -> AuctionRecord:
        auction = self.store.get_auction(auction_id)
        if auction is None:
            raise AuctionNotFoundError(auction_id)
        return auction

    @contextmanager
    def _serialized(self, auction_id: str) -> Iterator[None]:
        """Per-auction critical section, only for stores without CAS"""
        if self.store.supports_conditional_update:
            yield
            return
        try:
            with self.lock.lock(auction_id):
                yield
        except LockTimeoutError as e:
            raise ContentionError(auction_id, 1) from e

    def _stamp(self, auction: AuctionRecord, now: Optional[datetime] = None) -> datetime:
        """
        Placement time for a bid validated against ``auction``

        Read on every attempt, so a bid that lost a race is stamped after the
        bid that beat it. Never earlier than the last accepted bid: the
        conditional write only succeeds if that bid is still the latest.
        """
        placed_at = self.current_time(now)
        if auction.last_bid_at is not None and placed_at <= auction.last_bid_at:
            placed_at = auction.last_bid_at + timedelta(microseconds=1)
        return placed_at

    def _backoff(self, attempt: int) -> None:
        if attempt < self.retry_config.max_retries:
            self.sleep(self.retry_config.get_delay(attempt))

    # ========================================================================
    # BIDDING
    # ========================================================================
    def place_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount: Money,
        now: Optional[datetime] = None,
        currency: Optional[str] = None,
    ) -> BidRecord:
        """
        Place a bid

        Flow (per attempt):
        1. Read the auction snapshot
        2. Validate against the snapshot
        3. Commit bid + new totals only if current_bid is unchanged

        Args:
            auction_id: Auction ID
            bidder_id: Authenticated bidder ID
            amount: Bid amount in the auction currency
            now: Placement instant (defaults to the engine clock), moved just
                past the last accepted bid if it is not later than that bid
            currency: Currency stated by the bidder, if any

        Returns:
            The accepted, persisted bid

        Raises:
            AuctionNotFoundError, AuctionNotActiveError, AuctionExpiredError,
            SelfBidNotAllowedError, CurrencyMismatchError, BidTooLowError,
            ContentionError, StoreUnavailableError
        """
        amount = to_money(amount)
        attempts = self.retry_config.max_retries + 1

        for attempt in range(attempts):
            with self._serialized(auction_id):
                auction = self._load(auction_id)
                placed_at = self._stamp(auction, now)
                try:
                    admission = check_bid(
                        auction, bidder_id, amount, placed_at, currency=currency, policy=self.policy
                    )
                except AuctionError as e:
                    logger.info(
                        f"❌ Bid rejected on auction {auction_id}: {e.message}",
                        extra={"auction_id": auction_id, "bidder_id": bidder_id, "attempt": attempt},
                    )
                    raise

                bid = BidRecord(
                    auction_id=auction_id,
                    bidder_id=bidder_id,
                    amount=admission.amount,
                    currency=auction.currency,
                    placed_at=placed_at,
                    sequence=auction.bid_count + 1,
                )

                if self.store.record_bid(bid, expected_current_bid=auction.current_bid):
                    logger.info(
                        f"💰 Bid accepted on auction {auction_id}: "
                        f"{admission.previous_bid} → {bid.amount} (#{bid.sequence})",
                        extra={
                            "auction_id": auction_id,
                            "bidder_id": bidder_id,
                            "bid_id": bid.id,
                            "attempt": attempt,
                        },
                    )
                    return bid

            logger.info(
                f"🔁 Lost bid race on auction {auction_id} at {auction.current_bid}, retrying",
                extra={"auction_id": auction_id, "bidder_id": bidder_id, "attempt": attempt},
            )
            self._backoff(attempt)

        logger.warning(
            f"⚠️  Giving up on bid for auction {auction_id} after {attempts} attempts",
            extra={"auction_id": auction_id, "bidder_id": bidder_id},
        )
        raise ContentionError(auction_id, attempts)

    def list_bids(self, auction_id: str) -> List[BidRecord]:
        """All accepted bids for an auction, in placement order"""
        self._load(auction_id)
        return self.store.list_bids(auction_id)

    def list_bidder_bids(self, bidder_id: str) -> List[BidRecord]:
        return self.store.list_bids_by_bidder(bidder_id)

    # ========================================================================
    # CLOSING
    # ========================================================================
    @staticmethod
    def decide_outcome(
        auction: AuctionRecord, bids: List[BidRecord]
    ) -> Tuple[AuctionStatus, Optional[BidRecord]]:
        """
        Final status and winning bid for an auction about to close

        - No bids: cancelled, no winner
        - Highest bid below reserve: ended, no winner
        - Otherwise: ended, highest bid wins
        """
        winner = select_winning_bid(bids)
        if winner is None:
            return AuctionStatus.CANCELLED, None
        if auction.reserve_price is not None and winner.amount < auction.reserve_price:
            return AuctionStatus.ENDED, None
        return AuctionStatus.ENDED, winner

    def close_auction(self, auction_id: str, now: Optional[datetime] = None) -> AuctionRecord:
        """
        Close an auction and determine the winner

        Idempotent: an auction that is already ended, cancelled or completed is
        returned unchanged. The status flip is conditional on the auction still
        being active with the bid count that was read, so a bid that lands
        mid-close forces a re-read instead of being left out of the result.

        Raises:
            AuctionNotFoundError, AuctionNotActiveError (draft auctions),
            ContentionError, StoreUnavailableError
        """
        now = self.current_time(now)
        attempts = self.retry_config.max_retries + 1

        for attempt in range(attempts):
            with self._serialized(auction_id):
                auction = self._load(auction_id)

                if auction.is_closed:
                    return auction

                if auction.status != AuctionStatus.ACTIVE:
                    raise AuctionNotActiveError(auction_id, auction.status.value)

                bids = self.store.list_bids(auction_id)

                if len(bids) == auction.bid_count:
                    status, winner = self.decide_outcome(auction, bids)
                    if self.store.finalize_close(auction_id, status, winner, auction.bid_count):
                        closed = self._load(auction_id)
                        self._log_close(closed, winner, now)
                        return closed

            logger.info(
                f"🔁 Auction {auction_id} changed while closing, retrying",
                extra={"auction_id": auction_id, "attempt": attempt},
            )
            self._backoff(attempt)

        raise ContentionError(auction_id, attempts)

    def _log_close(self, auction: AuctionRecord, winner: Optional[BidRecord], now: datetime) -> None:
        if auction.status == AuctionStatus.CANCELLED:
            logger.info(
                f"🚫 Auction {auction.id} closed with no bids → cancelled",
                extra={"auction_id": auction.id},
            )
        elif winner is None:
            logger.info(
                f"⏰ Auction {auction.id} ended, reserve {auction.reserve_price} not met "
                f"(high bid {auction.current_bid})",
                extra={"auction_id": auction.id},
            )
        else:
            logger.info(
                f"🏆 Auction {auction.id} ended, winner {winner.bidder_id} at {winner.amount}",
                extra={"auction_id": auction.id, "bidder_id": winner.bidder_id, "bid_id": winner.id},
            )

    def sweep_expired(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Close every active auction whose end time has passed

        Each auction is closed independently; a failure is logged, recorded in
        the report and the sweep moves on.
        """
        now = self.current_time(now)
        report = SweepReport()

        expired = self.store.list_expired_active_auctions(now)
        for auction in expired:
            try:
                self.close_auction(auction.id, now)
                report.closed.append(auction.id)
            except AuctionError as e:
                report.failures[auction.id] = e.message
                logger.error(
                    f"❌ Failed to close auction {auction.id}: {e.message}",
                    extra={"auction_id": auction.id},
                )
            except Exception as e:
                report.failures[auction.id] = f"{e.__class__.__name__}: {e}"
                logger.exception(
                    f"❌ Unexpected error closing auction {auction.id}",
                    extra={"auction_id": auction.id},
                )

        if expired:
            logger.info(
                f"⏰ Sweep closed {len(report.closed)} auctions, {report.failed_count} failures"
            )
        return report

    # ========================================================================
    # LIFECYCLE
    # ========================================================================
    def create_auction(
        self,
        listing_id: str,
        seller_id: str,
        starting_price: Money,
        end_time: datetime,
        reserve_price: Optional[Money] = None,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuctionRecord:
        """
        Create an active auction for a listing

        Business rules:
        - Starting price must be positive
        - Reserve price, if set, must be >= starting price
        - End time must be in the future
        - One auction per listing
        """
        now = self.current_time(now)
        starting_price = to_money(starting_price)
        reserve = to_money(reserve_price) if reserve_price is not None else None
        end_time = self.current_time(end_time)

        if starting_price <= 0:
            raise InvalidAuctionError("Starting price must be positive")
        if reserve is not None and reserve < starting_price:
            raise InvalidAuctionError("Reserve price cannot be below starting price")
        if end_time <= now:
            raise InvalidAuctionError("End time must be in the future")

        record = AuctionRecord(
            listing_id=listing_id,
            seller_id=seller_id,
            currency=(currency or self.default_currency).upper(),
            starting_price=starting_price,
            reserve_price=reserve,
            current_bid=starting_price,
            bid_count=0,
            status=AuctionStatus.ACTIVE,
            end_time=end_time,
            created_at=now,
            updated_at=now,
        )

        try:
            auction = self.store.create_auction(record)
        except ValueError as e:
            raise InvalidAuctionError(str(e)) from e

        logger.info(
            f"✅ Created auction {auction.id} for listing {listing_id}, "
            f"starting at {starting_price} {auction.currency}",
            extra={"auction_id": auction.id},
        )
        return auction

    def extend_auction(
        self, auction_id: str, additional_minutes: int, now: Optional[datetime] = None
    ) -> AuctionRecord:
        """Push back the end time of an active, unexpired auction"""
        now = self.current_time(now)
        if additional_minutes <= 0:
            raise InvalidAuctionError("Extension must be a positive number of minutes")
        if additional_minutes > self.max_extension_minutes:
            raise InvalidAuctionError(
                f"Cannot extend auction by more than {self.max_extension_minutes} minutes"
            )

        auction = self._load(auction_id)
        if auction.status != AuctionStatus.ACTIVE:
            raise AuctionNotActiveError(auction_id, auction.status.value)
        if now >= auction.end_time:
            raise AuctionExpiredError(auction_id)

        new_end_time = auction.end_time + timedelta(minutes=additional_minutes)
        if not self.store.update_end_time(auction_id, new_end_time):
            raise AuctionNotActiveError(auction_id, self._load(auction_id).status.value)

        logger.info(
            f"⏳ Extended auction {auction_id} by {additional_minutes} minutes",
            extra={"auction_id": auction_id},
        )
        return self._load(auction_id)

    def update_reserve_price(
        self, auction_id: str, reserve_price: Optional[Money], now: Optional[datetime] = None
    ) -> AuctionRecord:
        """
        Change or remove the reserve of an auction nobody has bid on yet

        Business rules:
        - Auction must be active and not past its end time
        - No bids placed (bidders committed against the old reserve)
        - Reserve cannot be below the starting price
        """
        now = self.current_time(now)
        reserve = to_money(reserve_price) if reserve_price is not None else None

        auction = self._load(auction_id)
        if reserve is not None and reserve < auction.starting_price:
            raise InvalidAuctionError("Reserve price cannot be below starting price", auction_id)
        if auction.status != AuctionStatus.ACTIVE:
            raise AuctionNotActiveError(auction_id, auction.status.value)
        if now >= auction.end_time:
            raise AuctionExpiredError(auction_id)
        if auction.bid_count > 0:
            raise AuctionHasBidsError(auction_id, REPRICE_WITH_BIDS)

        if not self.store.update_reserve_price(auction_id, reserve):
            current = self._load(auction_id)
            if current.bid_count > 0:
                raise AuctionHasBidsError(auction_id, REPRICE_WITH_BIDS)
            raise AuctionNotActiveError(auction_id, current.status.value)

        logger.info(
            f"🏷️  Reserve for auction {auction_id} set to {reserve}",
            extra={"auction_id": auction_id},
        )
        return self._load(auction_id)

    def cancel_auction(self, auction_id: str, reason: Optional[str] = None) -> AuctionRecord:
        """
        Cancel an auction

        Business rules:
        - Can only cancel active auctions
        - Cannot cancel if bids exist
        """
        auction = self._load(auction_id)
        if auction.status != AuctionStatus.ACTIVE:
            raise AuctionNotActiveError(auction_id, auction.status.value)
        if auction.bid_count > 0:
            raise AuctionHasBidsError(auction_id)

        if not self.store.set_auction_status(
            auction_id,
            AuctionStatus.CANCELLED,
            expected_status=AuctionStatus.ACTIVE,
            expected_bid_count=0,
            cancel_reason=reason,
        ):
            current = self._load(auction_id)
            if current.bid_count > 0:
                raise AuctionHasBidsError(auction_id)
            raise AuctionNotActiveError(auction_id, current.status.value)

        logger.info(f"🚫 Cancelled auction {auction_id}", extra={"auction_id": auction_id})
        return self._load(auction_id)

    def complete_auction(self, auction_id: str) -> AuctionRecord:
        """Mark an ended auction with a winner as settled"""
        auction = self._load(auction_id)
        if auction.status == AuctionStatus.COMPLETED:
            return auction
        if auction.status != AuctionStatus.ENDED:
            raise AuctionNotActiveError(auction_id, auction.status.value)
        if auction.winning_bidder_id is None:
            raise InvalidAuctionError("Auction ended without a winner", auction_id)

        if not self.store.set_auction_status(
            auction_id, AuctionStatus.COMPLETED, expected_status=AuctionStatus.ENDED
        ):
            return self._load(auction_id)

        logger.info(f"✅ Auction {auction_id} completed", extra={"auction_id": auction_id})
        return self._load(auction_id)

    # ========================================================================
    # QUERIES
    # ========================================================================
    def get_auction(self, auction_id: str, now: Optional[datetime] = None) -> AuctionRecord:
        """
        Get auction by ID

        Also closes it first if it is past its end time and lazy expiry is on.
        """
        now = self.current_time(now)
        auction = self._load(auction_id)
        if self.lazy_expiry and auction.status == AuctionStatus.ACTIVE and auction.end_time <= now:
            return self.close_auction(auction_id, now)
        return auction

    def get_auction_by_listing(self, listing_id: str, now: Optional[datetime] = None) -> AuctionRecord:
        auction = self.store.get_auction_by_listing(listing_id)
        if auction is None:
            raise AuctionNotFoundError(listing_id, message="Auction not found for this listing")
        return self.get_auction(auction.id, now)

    def list_auctions(
        self,
        status: Optional[AuctionStatus] = None,
        seller_id: Optional[str] = None,
        min_price: Optional[Money] = None,
        max_price: Optional[Money] = None,
        ending_soon: bool = False,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> AuctionPage:
        """
        List auctions with filtering, sorting and pagination

        ``ending_soon`` restricts to active auctions ending within the
        ending-soon window.
        """
        now = self.current_time(now)
        if sort_by not in SORT_FIELDS:
            raise InvalidAuctionError(f"Cannot sort by {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise InvalidAuctionError("Sort order must be 'asc' or 'desc'")
        page = max(page, 1)
        limit = max(limit, 1)

        end_after = end_before = None
        if ending_soon:
            status = AuctionStatus.ACTIVE
            end_after = now
            end_before = now + self.ending_soon

        auctions, total = self.store.query_auctions(
            status=status,
            seller_id=seller_id,
            min_price=to_money(min_price) if min_price is not None else None,
            max_price=to_money(max_price) if max_price is not None else None,
            end_after=end_after,
            end_before=end_before,
            sort_by=sort_by,
            descending=sort_order == "desc",
            offset=(page - 1) * limit,
            limit=limit,
        )

        return AuctionPage(
            auctions=auctions,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit),
        )

    def list_active_auctions(self, now: Optional[datetime] = None) -> List[AuctionRecord]:
        """Active auctions not yet past their end time, soonest ending first"""
        now = self.current_time(now)
        auctions, _ = self.store.query_auctions(
            status=AuctionStatus.ACTIVE,
            end_after=now,
            sort_by="end_time",
            descending=False,
        )
        return [a for a in auctions if a.end_time > now]

    def list_bidder_auctions(self, bidder_id: str) -> List[AuctionRecord]:
        """Auctions a user has bid on"""
        auction_ids = list({bid.auction_id for bid in self.store.list_bids_by_bidder(bidder_id)})
        if not auction_ids:
            return []
        auctions, _ = self.store.query_auctions(
            auction_ids=auction_ids, sort_by="end_time", descending=False
        )
        return auctions

    def get_statistics(self) -> AuctionStatistics:
        """Totals per status, bid volume and settled value"""
        counts = self.store.count_by_status()
        total = sum(counts.values())
        total_bids = self.store.total_bid_count()

        total_value = Decimal("0")
        for status in (AuctionStatus.ENDED, AuctionStatus.COMPLETED):
            auctions, _ = self.store.query_auctions(status=status)
            total_value += sum(
                (a.current_bid for a in auctions if a.winning_bidder_id is not None),
                Decimal("0"),
            )

        return AuctionStatistics(
            total=total,
            active=counts[AuctionStatus.ACTIVE],
            ended=counts[AuctionStatus.ENDED],
            cancelled=counts[AuctionStatus.CANCELLED],
            completed=counts[AuctionStatus.COMPLETED],
            total_bids=total_bids,
            total_value=total_value,
            average_bids_per_auction=round(total_bids / total, 2) if total else 0.0,
        )
