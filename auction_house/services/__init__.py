"""
Business Logic Services
"""
from auction_house.services.auction_engine import AuctionEngine
from auction_house.services.bid_validator import BidIncrementPolicy, check_bid
from auction_house.services.expiry_worker import ExpiryWorker

__all__ = [
    "AuctionEngine",
    "BidIncrementPolicy",
    "ExpiryWorker",
    "check_bid",
]
