"""
In-memory Auction Store

Dict-backed store for tests and single-process deployments. A single lock
guards every read and write, which is what makes the conditional operations
atomic. Records are copied on the way in and out so callers never share
mutable state with the store.
"""
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from auction_house.infrastructure.store import SORT_FIELDS, AuctionStore
from auction_house.schemas.auction import AuctionRecord, AuctionStatus, BidRecord, utcnow


class InMemoryAuctionStore(AuctionStore):
    """Thread-safe dict-backed store"""

    def __init__(self):
        self._lock = threading.Lock()
        self._auctions: Dict[str, AuctionRecord] = {}
        self._bids: Dict[str, BidRecord] = {}
        # auction_id -> bid ids in acceptance order
        self._bids_by_auction: Dict[str, List[str]] = {}

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------
    def get_auction(self, auction_id: str) -> Optional[AuctionRecord]:
        with self._lock:
            auction = self._auctions.get(auction_id)
            return auction.model_copy() if auction else None

    def conditional_update_bid_state(
        self,
        auction_id: str,
        expected_current_bid: Decimal,
        new_current_bid: Decimal,
        new_bid_count: int,
        placed_at: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            return self._apply_bid_state(
                auction_id, expected_current_bid, new_current_bid, new_bid_count, placed_at
            )

    def insert_bid(self, bid: BidRecord) -> None:
        with self._lock:
            self._insert_bid(bid)

    def record_bid(self, bid: BidRecord, expected_current_bid: Decimal) -> bool:
        with self._lock:
            if not self._apply_bid_state(
                bid.auction_id, expected_current_bid, bid.amount, bid.sequence, bid.placed_at
            ):
                return False
            self._insert_bid(bid)
            return True

    def list_bids(self, auction_id: str) -> List[BidRecord]:
        with self._lock:
            return [
                self._bids[bid_id].model_copy()
                for bid_id in self._bids_by_auction.get(auction_id, [])
            ]

    def mark_bid_winning(self, bid_id: str) -> None:
        with self._lock:
            self._mark_winning(bid_id)

    def set_auction_status(
        self,
        auction_id: str,
        status: AuctionStatus,
        winning_bidder_id: Optional[str] = None,
        expected_status: Optional[AuctionStatus] = None,
        expected_bid_count: Optional[int] = None,
        cancel_reason: Optional[str] = None,
    ) -> bool:
        with self._lock:
            return self._apply_status(
                auction_id, status, winning_bidder_id,
                expected_status, expected_bid_count, cancel_reason,
            )

    def finalize_close(
        self,
        auction_id: str,
        status: AuctionStatus,
        winning_bid: Optional[BidRecord],
        expected_bid_count: int,
    ) -> bool:
        with self._lock:
            if not self._apply_status(
                auction_id,
                status,
                winning_bid.bidder_id if winning_bid else None,
                AuctionStatus.ACTIVE,
                expected_bid_count,
                None,
            ):
                return False
            if winning_bid is not None:
                self._mark_winning(winning_bid.id)
            return True

    def list_expired_active_auctions(self, now: datetime) -> List[AuctionRecord]:
        with self._lock:
            expired = [
                auction.model_copy()
                for auction in self._auctions.values()
                if auction.status == AuctionStatus.ACTIVE and auction.end_time <= now
            ]
        return sorted(expired, key=lambda a: a.end_time)

    # ------------------------------------------------------------------
    # Auction management and queries
    # ------------------------------------------------------------------
    def create_auction(self, auction: AuctionRecord) -> AuctionRecord:
        with self._lock:
            if auction.id in self._auctions:
                raise ValueError(f"Auction {auction.id} already exists")
            if any(a.listing_id == auction.listing_id for a in self._auctions.values()):
                raise ValueError(f"Auction for listing {auction.listing_id} already exists")
            self._auctions[auction.id] = auction.model_copy()
            self._bids_by_auction[auction.id] = []
        return auction.model_copy()

    def get_auction_by_listing(self, listing_id: str) -> Optional[AuctionRecord]:
        with self._lock:
            for auction in self._auctions.values():
                if auction.listing_id == listing_id:
                    return auction.model_copy()
        return None

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
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by}")

        with self._lock:
            auctions = [auction.model_copy() for auction in self._auctions.values()]

        if status is not None:
            auctions = [a for a in auctions if a.status == status]
        if seller_id is not None:
            auctions = [a for a in auctions if a.seller_id == seller_id]
        if min_price is not None:
            auctions = [a for a in auctions if a.current_bid >= min_price]
        if max_price is not None:
            auctions = [a for a in auctions if a.current_bid <= max_price]
        if end_after is not None:
            auctions = [a for a in auctions if a.end_time >= end_after]
        if end_before is not None:
            auctions = [a for a in auctions if a.end_time <= end_before]
        if auction_ids is not None:
            wanted = set(auction_ids)
            auctions = [a for a in auctions if a.id in wanted]

        auctions.sort(key=lambda a: (getattr(a, sort_by), a.id), reverse=descending)
        total = len(auctions)
        end = offset + limit if limit is not None else None
        return auctions[offset:end], total

    def list_bids_by_bidder(self, bidder_id: str) -> List[BidRecord]:
        with self._lock:
            bids = [bid.model_copy() for bid in self._bids.values() if bid.bidder_id == bidder_id]
        return sorted(bids, key=lambda b: (b.placed_at, b.sequence), reverse=True)

    def update_end_time(
        self,
        auction_id: str,
        new_end_time: datetime,
        expected_status: AuctionStatus = AuctionStatus.ACTIVE,
    ) -> bool:
        with self._lock:
            auction = self._auctions.get(auction_id)
            if auction is None or auction.status != expected_status:
                return False
            auction.end_time = new_end_time
            auction.updated_at = utcnow()
            return True

    def update_reserve_price(self, auction_id: str, reserve_price: Optional[Decimal]) -> bool:
        with self._lock:
            auction = self._auctions.get(auction_id)
            if auction is None or auction.status != AuctionStatus.ACTIVE or auction.bid_count != 0:
                return False
            auction.reserve_price = reserve_price
            auction.updated_at = utcnow()
            return True

    def count_by_status(self) -> Dict[AuctionStatus, int]:
        counts = {status: 0 for status in AuctionStatus}
        with self._lock:
            for auction in self._auctions.values():
                counts[auction.status] += 1
        return counts

    def total_bid_count(self) -> int:
        with self._lock:
            return len(self._bids)

    # ------------------------------------------------------------------
    # Helpers (caller holds the lock)
    # ------------------------------------------------------------------
    def _apply_bid_state(
        self, auction_id, expected_current_bid, new_current_bid, new_bid_count, placed_at=None
    ) -> bool:
        auction = self._auctions.get(auction_id)
        if auction is None:
            return False
        if auction.status != AuctionStatus.ACTIVE or auction.current_bid != expected_current_bid:
            return False
        auction.current_bid = new_current_bid
        auction.bid_count = new_bid_count
        if placed_at is not None:
            auction.last_bid_at = placed_at
        auction.updated_at = utcnow()
        return True

    def _insert_bid(self, bid: BidRecord) -> None:
        if bid.id in self._bids:
            raise ValueError(f"Bid {bid.id} already exists")
        self._bids[bid.id] = bid.model_copy()
        self._bids_by_auction.setdefault(bid.auction_id, []).append(bid.id)

    def _mark_winning(self, bid_id: str) -> None:
        bid = self._bids.get(bid_id)
        if bid is None:
            raise KeyError(f"Bid {bid_id} not found")
        bid.is_winning = True

    def _apply_status(
        self, auction_id, status, winning_bidder_id, expected_status, expected_bid_count, cancel_reason
    ) -> bool:
        auction = self._auctions.get(auction_id)
        if auction is None:
            return False
        if expected_status is not None and auction.status != expected_status:
            return False
        if expected_bid_count is not None and auction.bid_count != expected_bid_count:
            return False
        auction.status = status
        if winning_bidder_id is not None:
            auction.winning_bidder_id = winning_bidder_id
        if cancel_reason is not None:
            auction.cancel_reason = cancel_reason
        auction.updated_at = utcnow()
        return True
