"""
Database Models
"""
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined
from auction_house.models.auction import Auction  # noqa: E402
from auction_house.models.bid import Bid  # noqa: E402

__all__ = ["Base", "Auction", "Bid"]
