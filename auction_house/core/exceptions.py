"""
Auction error taxonomy

Every failure the engine reports is an ``AuctionError`` subclass with a stable
``code`` and an HTTP ``status_code`` used by the API layer. Only
``StoreUnavailableError`` is ``retryable``; the rest are permanent for the
given input.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class AuctionError(Exception):
    """Base exception for auction engine errors"""

    code = "auction_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, auction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.auction_id = auction_id

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.auction_id is not None:
            data["auction_id"] = self.auction_id
        return data


class AuctionNotFoundError(AuctionError):
    """Raised when an auction doesn't exist"""

    code = "auction_not_found"
    status_code = 404

    def __init__(self, auction_id: str, message: Optional[str] = None):
        super().__init__(message or f"Auction {auction_id} not found", auction_id)


class AuctionNotActiveError(AuctionError):
    """Raised when bidding or closing an auction that is not active"""

    code = "auction_not_active"
    status_code = 409

    def __init__(self, auction_id: str, status: str):
        super().__init__(f"Auction is {status}", auction_id)
        self.status = status


class AuctionExpiredError(AuctionError):
    """Raised when a bid arrives at or after the auction end time"""

    code = "auction_expired"
    status_code = 409

    def __init__(self, auction_id: str):
        super().__init__("Auction has ended", auction_id)


class SelfBidNotAllowedError(AuctionError):
    """Raised when the seller bids on their own auction"""

    code = "self_bid_not_allowed"
    status_code = 403

    def __init__(self, auction_id: str):
        super().__init__("You cannot bid on your own auction", auction_id)


class BidTooLowError(AuctionError):
    """Raised when a bid is below current bid plus minimum increment"""

    code = "bid_too_low"
    status_code = 400

    def __init__(self, auction_id: str, minimum_amount: Decimal):
        super().__init__(f"Bid must be at least {minimum_amount:.2f}", auction_id)
        self.minimum_amount = minimum_amount

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["minimum_amount"] = str(self.minimum_amount)
        return data


class CurrencyMismatchError(AuctionError):
    """Raised when a bid currency differs from the auction currency"""

    code = "currency_mismatch"
    status_code = 400

    def __init__(self, auction_id: str, expected: str, got: str):
        super().__init__(f"Auction is priced in {expected}, bid was in {got}", auction_id)
        self.expected = expected


class ContentionError(AuctionError):
    """Raised when conditional writes keep losing to concurrent bids"""

    code = "contention"
    status_code = 409

    def __init__(self, auction_id: str, attempts: int):
        super().__init__(
            f"Auction {auction_id} is receiving too many concurrent bids, gave up after {attempts} attempts",
            auction_id,
        )
        self.attempts = attempts


class StoreUnavailableError(AuctionError):
    """Raised when the backing store fails independently of business rules"""

    code = "store_unavailable"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "Auction store unavailable", auction_id: Optional[str] = None):
        super().__init__(message, auction_id)


class InvalidAuctionError(AuctionError):
    """Raised when auction parameters are invalid"""

    code = "invalid_auction"
    status_code = 400


class AuctionHasBidsError(AuctionError):
    """Raised when cancelling or re-pricing an auction that already has bids"""

    code = "auction_has_bids"
    status_code = 409

    def __init__(self, auction_id: str, message: Optional[str] = None):
        super().__init__(message or "Cannot cancel auction with existing bids", auction_id)
