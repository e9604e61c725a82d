"""Pydantic records for auctions and bids

These are the snapshots the engine works with. Every store implementation
returns them, whatever it uses for persistence underneath.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class AuctionStatus(str, Enum):
    """Auction status enum"""
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


CLOSED_STATUSES = frozenset({AuctionStatus.ENDED, AuctionStatus.CANCELLED, AuctionStatus.COMPLETED})


class AuctionRecord(BaseModel):
    """Snapshot of one auction row"""
    id: str = Field(default_factory=new_id)
    listing_id: str
    seller_id: str
    currency: str = "USD"
    starting_price: Decimal
    reserve_price: Optional[Decimal] = None
    current_bid: Decimal
    bid_count: int = 0
    last_bid_at: Optional[datetime] = None
    status: AuctionStatus = AuctionStatus.ACTIVE
    end_time: datetime
    winning_bidder_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES


class BidRecord(BaseModel):
    """One accepted bid"""
    id: str = Field(default_factory=new_id)
    auction_id: str
    bidder_id: str
    amount: Decimal
    currency: str = "USD"
    placed_at: datetime = Field(default_factory=utcnow)
    sequence: int
    is_winning: bool = False


class SweepReport(BaseModel):
    """Outcome of one expiry sweep"""
    closed: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)

    @property
    def failed_count(self) -> int:
        return len(self.failures)


class AuctionPage(BaseModel):
    """One page of an auction listing"""
    auctions: List[AuctionRecord]
    total: int
    page: int
    limit: int
    total_pages: int


class AuctionStatistics(BaseModel):
    total: int
    active: int
    ended: int
    cancelled: int
    completed: int
    total_bids: int
    total_value: Decimal
    average_bids_per_auction: float
