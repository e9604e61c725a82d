"""
Auction Store interface

The engine is written entirely against ``AuctionStore`` so the backing store is
swappable. Concrete stores must make ``conditional_update_bid_state`` and
``set_auction_status`` atomic. ``record_bid`` and ``finalize_close`` have
default implementations built from the primitive operations; stores that can
run them in a single transaction should override them.
"""
import abc
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from auction_house.schemas.auction import AuctionRecord, AuctionStatus, BidRecord

# Sort fields accepted by query_auctions
SORT_FIELDS = ("created_at", "end_time", "current_bid", "bid_count")


class AuctionStore(abc.ABC):
    """Read/write access to auction and bid rows"""

    # False means the engine has to serialize writers itself (see lock.py)
    supports_conditional_update = True

    # ------------------------------------------------------------------
    # Core operations used by the engine
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def get_auction(self, auction_id: str) -> Optional[AuctionRecord]:
        ...

    @abc.abstractmethod
    def conditional_update_bid_state(
        self,
        auction_id: str,
        expected_current_bid: Decimal,
        new_current_bid: Decimal,
        new_bid_count: int,
        placed_at: Optional[datetime] = None,
    ) -> bool:
        """Update price, count and last bid time only if the auction is still
        active and its stored current bid equals ``expected_current_bid``."""

    @abc.abstractmethod
    def insert_bid(self, bid: BidRecord) -> None:
        ...

    @abc.abstractmethod
    def list_bids(self, auction_id: str) -> List[BidRecord]:
        """Bids for one auction in acceptance order"""

    @abc.abstractmethod
    def mark_bid_winning(self, bid_id: str) -> None:
        ...

    @abc.abstractmethod
    def set_auction_status(
        self,
        auction_id: str,
        status: AuctionStatus,
        winning_bidder_id: Optional[str] = None,
        expected_status: Optional[AuctionStatus] = None,
        expected_bid_count: Optional[int] = None,
        cancel_reason: Optional[str] = None,
    ) -> bool:
        """Set status (and winner). Returns False when an expectation does not hold."""

    @abc.abstractmethod
    def list_expired_active_auctions(self, now: datetime) -> List[AuctionRecord]:
        ...

    # ------------------------------------------------------------------
    # Composite operations
    # ------------------------------------------------------------------
    def record_bid(self, bid: BidRecord, expected_current_bid: Decimal) -> bool:
        """Commit an accepted bid together with the auction totals"""
        if not self.conditional_update_bid_state(
            bid.auction_id, expected_current_bid, bid.amount, bid.sequence,
            placed_at=bid.placed_at,
        ):
            return False
        self.insert_bid(bid)
        return True

    def finalize_close(
        self,
        auction_id: str,
        status: AuctionStatus,
        winning_bid: Optional[BidRecord],
        expected_bid_count: int,
    ) -> bool:
        """Move an active auction to its closed status and flag the winner"""
        if not self.set_auction_status(
            auction_id,
            status,
            winning_bidder_id=winning_bid.bidder_id if winning_bid else None,
            expected_status=AuctionStatus.ACTIVE,
            expected_bid_count=expected_bid_count,
        ):
            return False
        if winning_bid is not None:
            self.mark_bid_winning(winning_bid.id)
        return True

    # ------------------------------------------------------------------
    # Auction management and queries
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def create_auction(self, auction: AuctionRecord) -> AuctionRecord:
        ...

    @abc.abstractmethod
    def get_auction_by_listing(self, listing_id: str) -> Optional[AuctionRecord]:
        ...

    @abc.abstractmethod
    def query_auctions(
        self,
        status: Optional[AuctionStatus] = None,
        seller_id: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        end_after: Optional[datetime] = None,
        end_before: Optional[datetime] = None,
        auction_ids: Optional[List[str]] = None,
        sort_by: str = "created_at",
        descending: bool = True,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[AuctionRecord], int]:
        """Filtered, sorted page of auctions plus the unpaginated total"""

    @abc.abstractmethod
    def list_bids_by_bidder(self, bidder_id: str) -> List[BidRecord]:
        """Bids placed by one user, newest first"""

    @abc.abstractmethod
    def update_end_time(
        self,
        auction_id: str,
        new_end_time: datetime,
        expected_status: AuctionStatus = AuctionStatus.ACTIVE,
    ) -> bool:
        ...

    @abc.abstractmethod
    def update_reserve_price(self, auction_id: str, reserve_price: Optional[Decimal]) -> bool:
        """Set the reserve only while the auction is active with no bids"""

    @abc.abstractmethod
    def count_by_status(self) -> Dict[AuctionStatus, int]:
        ...

    @abc.abstractmethod
    def total_bid_count(self) -> int:
        ...

    def ping(self) -> bool:
        """Health check"""
        return True
