"""
Bid Model
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint

from auction_house.models import Base
from auction_house.models.auction import as_utc
from auction_house.schemas.auction import BidRecord, new_id, utcnow


class Bid(Base):
    """Bid database model"""

    __tablename__ = "bids"
    # One accepted bid per position; a second writer at the same price point fails here too
    __table_args__ = (
        UniqueConstraint("auction_id", "sequence", name="uq_bid_auction_sequence"),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    auction_id = Column(String(32), ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False, index=True)
    bidder_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    placed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    is_winning = Column(Boolean, nullable=False, default=False)

    @classmethod
    def from_record(cls, record: BidRecord) -> "Bid":
        return cls(**record.model_dump())

    def to_record(self) -> BidRecord:
        return BidRecord(
            id=self.id,
            auction_id=self.auction_id,
            bidder_id=self.bidder_id,
            amount=self.amount,
            currency=self.currency,
            placed_at=as_utc(self.placed_at),
            sequence=self.sequence,
            is_winning=self.is_winning,
        )
