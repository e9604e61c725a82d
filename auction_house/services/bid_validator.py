"""
Bid Validator

Pure admission check for a proposed bid against an auction snapshot. No I/O;
the engine calls it on every attempt, including retries after a lost race.

Checks, in order, stopping at the first failure:
1. Auction is active
2. Auction has not reached its end time
3. Bidder is not the seller
4. Currency matches (when the caller states one)
5. Amount >= current bid + max(5% of current bid, 1.00)
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from typing import Optional

from auction_house.core.exceptions import (
    AuctionExpiredError,
    AuctionNotActiveError,
    BidTooLowError,
    CurrencyMismatchError,
    SelfBidNotAllowedError,
)
from auction_house.schemas.auction import AuctionRecord, AuctionStatus

CENT = Decimal("0.01")


@dataclass(frozen=True)
class BidIncrementPolicy:
    """Minimum increment: ``max(current_bid * rate, floor)``"""
    rate: Decimal = Decimal("0.05")
    floor: Decimal = Decimal("1.00")

    def min_increment(self, current_bid: Decimal) -> Decimal:
        return max(current_bid * self.rate, self.floor)

    def minimum_amount(self, current_bid: Decimal) -> Decimal:
        """Smallest acceptable next bid, rounded up to the cent"""
        return (current_bid + self.min_increment(current_bid)).quantize(CENT, rounding=ROUND_CEILING)


DEFAULT_POLICY = BidIncrementPolicy()


@dataclass(frozen=True)
class BidAdmission:
    """A bid that passed validation against one snapshot"""
    amount: Decimal
    minimum_amount: Decimal
    previous_bid: Decimal


def check_bid(
    auction: AuctionRecord,
    bidder_id: str,
    amount: Decimal,
    now: datetime,
    currency: Optional[str] = None,
    policy: BidIncrementPolicy = DEFAULT_POLICY,
) -> BidAdmission:
    """
    Validate a bid against an auction snapshot

    Args:
        auction: Current auction snapshot
        bidder_id: Authenticated bidder
        amount: Proposed amount, in the auction currency
        now: Placement instant
        currency: Currency the bidder stated, if any
        policy: Minimum increment policy

    Returns:
        BidAdmission carrying the accepted amount

    Raises:
        AuctionNotActiveError, AuctionExpiredError, SelfBidNotAllowedError,
        CurrencyMismatchError, BidTooLowError
    """
    if auction.status != AuctionStatus.ACTIVE:
        raise AuctionNotActiveError(auction.id, auction.status.value)

    if now >= auction.end_time:
        raise AuctionExpiredError(auction.id)

    if bidder_id == auction.seller_id:
        raise SelfBidNotAllowedError(auction.id)

    if currency is not None and currency.upper() != auction.currency:
        raise CurrencyMismatchError(auction.id, auction.currency, currency.upper())

    minimum = policy.minimum_amount(auction.current_bid)
    if amount < minimum:
        raise BidTooLowError(auction.id, minimum)

    return BidAdmission(amount=amount, minimum_amount=minimum, previous_bid=auction.current_bid)
