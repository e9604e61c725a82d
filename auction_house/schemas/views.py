"""
API views of auctions and bids

Adds the derived, time-dependent fields clients display (time remaining,
ending soon, bid status) on top of the stored records.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from auction_house.schemas.auction import AuctionRecord, AuctionStatus, BidRecord


class BidStatus(str, Enum):
    WINNING = "winning"
    LEADING = "leading"
    OUTBID = "outbid"


class AuctionView(AuctionRecord):
    """Auction record plus time remaining"""
    time_remaining_ms: int = 0
    minutes_remaining: int = 0
    hours_remaining: int = 0
    days_remaining: int = 0
    ending_soon: bool = False
    is_expired: bool = False

    @classmethod
    def build(
        cls,
        auction: AuctionRecord,
        now: datetime,
        ending_soon_window: timedelta = timedelta(hours=1),
    ) -> "AuctionView":
        remaining = max(auction.end_time - now, timedelta(0))
        remaining_ms = int(remaining.total_seconds() * 1000)
        is_active = auction.status == AuctionStatus.ACTIVE

        return cls(
            **auction.model_dump(),
            time_remaining_ms=remaining_ms,
            minutes_remaining=remaining_ms // 60_000,
            hours_remaining=remaining_ms // 3_600_000,
            days_remaining=remaining_ms // 86_400_000,
            ending_soon=is_active and 0 < remaining_ms < ending_soon_window.total_seconds() * 1000,
            is_expired=is_active and remaining_ms == 0,
        )


class BidView(BidRecord):
    """Bid record plus its standing in the auction"""
    status: BidStatus = BidStatus.OUTBID

    @classmethod
    def build(cls, bid: BidRecord, auction: Optional[AuctionRecord] = None) -> "BidView":
        if bid.is_winning:
            status = BidStatus.WINNING
        elif (
            auction is not None
            and auction.status == AuctionStatus.ACTIVE
            and auction.bid_count == bid.sequence
        ):
            status = BidStatus.LEADING
        else:
            status = BidStatus.OUTBID
        return cls(**bid.model_dump(), status=status)


class AuctionDetail(BaseModel):
    auction: AuctionView
    bids: List[BidView]
    minimum_next_bid: Optional[Decimal] = None
