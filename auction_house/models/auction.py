"""
Auction Model
"""
from datetime import timezone

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Integer, Numeric, String

from auction_house.models import Base
from auction_house.schemas.auction import AuctionRecord, AuctionStatus, new_id, utcnow


def as_utc(value):
    """SQLite drops tzinfo; stored instants are always UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Auction(Base):
    """Auction database model"""

    __tablename__ = "auctions"

    id = Column(String(32), primary_key=True, default=new_id)
    listing_id = Column(String(64), nullable=False, unique=True, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    currency = Column(String(3), nullable=False, default="USD")
    starting_price = Column(Numeric(12, 2), nullable=False)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    current_bid = Column(Numeric(12, 2), nullable=False)
    bid_count = Column(Integer, nullable=False, default=0)
    last_bid_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        SQLEnum(AuctionStatus, values_callable=lambda enum: [e.value for e in enum]),
        nullable=False,
        default=AuctionStatus.ACTIVE,
        index=True,
    )
    end_time = Column(DateTime(timezone=True), nullable=False, index=True)
    winning_bidder_id = Column(String(64), nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return (f"<Auction(id={self.id}, listing_id={self.listing_id}, "
                f"status='{self.status}', current_bid={self.current_bid})>")

    @classmethod
    def from_record(cls, record: AuctionRecord) -> "Auction":
        return cls(**record.model_dump())

    def to_record(self) -> AuctionRecord:
        return AuctionRecord(
            id=self.id,
            listing_id=self.listing_id,
            seller_id=self.seller_id,
            currency=self.currency,
            starting_price=self.starting_price,
            reserve_price=self.reserve_price,
            current_bid=self.current_bid,
            bid_count=self.bid_count,
            last_bid_at=as_utc(self.last_bid_at),
            status=self.status,
            end_time=as_utc(self.end_time),
            winning_bidder_id=self.winning_bidder_id,
            cancel_reason=self.cancel_reason,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )
