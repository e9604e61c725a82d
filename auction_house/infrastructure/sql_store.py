"""
SQLAlchemy Auction Store

Conditional writes are single ``UPDATE ... WHERE`` statements, so concurrent
bidders are arbitrated by the database itself:

    UPDATE auctions
       SET current_bid = :new, bid_count = :count, last_bid_at = :placed_at
     WHERE id = :id AND current_bid = :expected AND status = 'active'

``record_bid`` and ``finalize_close`` run their statements inside one
transaction. Any ``SQLAlchemyError`` is re-raised as ``StoreUnavailableError``,
except integrity errors on the bid sequence which mean another writer got
there first and are reported as a lost race.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auction_house.core.exceptions import StoreUnavailableError
from auction_house.infrastructure.database import make_session_factory
from auction_house.infrastructure.store import SORT_FIELDS, AuctionStore
from auction_house.models import Auction, Bid
from auction_house.schemas.auction import AuctionRecord, AuctionStatus, BidRecord, utcnow

logger = logging.getLogger(__name__)


class SqlAuctionStore(AuctionStore):
    """Relational store backed by SQLAlchemy"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = make_session_factory(engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session scope: commit on success, rollback and translate on failure"""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Store error: {e}")
            raise StoreUnavailableError(f"Auction store unavailable: {e.__class__.__name__}") from e
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------
    def get_auction(self, auction_id: str) -> Optional[AuctionRecord]:
        with self._session() as db:
            auction = db.get(Auction, auction_id)
            return auction.to_record() if auction else None

    def conditional_update_bid_state(
        self,
        auction_id: str,
        expected_current_bid: Decimal,
        new_current_bid: Decimal,
        new_bid_count: int,
        placed_at: Optional[datetime] = None,
    ) -> bool:
        with self._session() as db:
            return self._update_bid_state(
                db, auction_id, expected_current_bid, new_current_bid, new_bid_count, placed_at
            )

    def insert_bid(self, bid: BidRecord) -> None:
        with self._session() as db:
            db.add(Bid.from_record(bid))

    def record_bid(self, bid: BidRecord, expected_current_bid: Decimal) -> bool:
        try:
            with self._session() as db:
                if not self._update_bid_state(
                    db, bid.auction_id, expected_current_bid, bid.amount, bid.sequence, bid.placed_at
                ):
                    db.rollback()
                    return False
                db.add(Bid.from_record(bid))
                db.flush()
        except IntegrityError:
            logger.info(
                f"🔁 Bid sequence {bid.sequence} already taken on auction {bid.auction_id}",
                extra={"auction_id": bid.auction_id},
            )
            return False
        return True

    def list_bids(self, auction_id: str) -> List[BidRecord]:
        with self._session() as db:
            bids = db.scalars(
                select(Bid).where(Bid.auction_id == auction_id).order_by(Bid.sequence.asc())
            ).all()
            return [bid.to_record() for bid in bids]

    def mark_bid_winning(self, bid_id: str) -> None:
        with self._session() as db:
            db.execute(update(Bid).where(Bid.id == bid_id).values(is_winning=True))

    def set_auction_status(
        self,
        auction_id: str,
        status: AuctionStatus,
        winning_bidder_id: Optional[str] = None,
        expected_status: Optional[AuctionStatus] = None,
        expected_bid_count: Optional[int] = None,
        cancel_reason: Optional[str] = None,
    ) -> bool:
        with self._session() as db:
            return self._update_status(
                db, auction_id, status, winning_bidder_id,
                expected_status, expected_bid_count, cancel_reason,
            )

    def finalize_close(
        self,
        auction_id: str,
        status: AuctionStatus,
        winning_bid: Optional[BidRecord],
        expected_bid_count: int,
    ) -> bool:
        with self._session() as db:
            if not self._update_status(
                db,
                auction_id,
                status,
                winning_bid.bidder_id if winning_bid else None,
                AuctionStatus.ACTIVE,
                expected_bid_count,
                None,
            ):
                db.rollback()
                return False
            if winning_bid is not None:
                db.execute(update(Bid).where(Bid.id == winning_bid.id).values(is_winning=True))
            return True

    def list_expired_active_auctions(self, now: datetime) -> List[AuctionRecord]:
        with self._session() as db:
            auctions = db.scalars(
                select(Auction)
                .where(Auction.status == AuctionStatus.ACTIVE, Auction.end_time <= now)
                .order_by(Auction.end_time.asc())
            ).all()
            return [auction.to_record() for auction in auctions]

    # ------------------------------------------------------------------
    # Auction management and queries
    # ------------------------------------------------------------------
    def create_auction(self, auction: AuctionRecord) -> AuctionRecord:
        try:
            with self._session() as db:
                row = Auction.from_record(auction)
                db.add(row)
                db.flush()
                return row.to_record()
        except IntegrityError as e:
            raise ValueError(f"Auction for listing {auction.listing_id} already exists") from e

    def get_auction_by_listing(self, listing_id: str) -> Optional[AuctionRecord]:
        with self._session() as db:
            auction = db.scalars(select(Auction).where(Auction.listing_id == listing_id)).first()
            return auction.to_record() if auction else None

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

        conditions = []
        if status is not None:
            conditions.append(Auction.status == status)
        if seller_id is not None:
            conditions.append(Auction.seller_id == seller_id)
        if min_price is not None:
            conditions.append(Auction.current_bid >= min_price)
        if max_price is not None:
            conditions.append(Auction.current_bid <= max_price)
        if end_after is not None:
            conditions.append(Auction.end_time >= end_after)
        if end_before is not None:
            conditions.append(Auction.end_time <= end_before)
        if auction_ids is not None:
            conditions.append(Auction.id.in_(auction_ids))

        column = getattr(Auction, sort_by)
        order = column.desc() if descending else column.asc()
        tiebreak = Auction.id.desc() if descending else Auction.id.asc()

        with self._session() as db:
            total = db.scalar(select(func.count(Auction.id)).where(*conditions))
            query = select(Auction).where(*conditions).order_by(order, tiebreak).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            auctions = db.scalars(query).all()
            return [auction.to_record() for auction in auctions], total or 0

    def list_bids_by_bidder(self, bidder_id: str) -> List[BidRecord]:
        with self._session() as db:
            bids = db.scalars(
                select(Bid)
                .where(Bid.bidder_id == bidder_id)
                .order_by(Bid.placed_at.desc(), Bid.sequence.desc())
            ).all()
            return [bid.to_record() for bid in bids]

    def update_end_time(
        self,
        auction_id: str,
        new_end_time: datetime,
        expected_status: AuctionStatus = AuctionStatus.ACTIVE,
    ) -> bool:
        with self._session() as db:
            result = db.execute(
                update(Auction)
                .where(Auction.id == auction_id, Auction.status == expected_status)
                .values(end_time=new_end_time, updated_at=utcnow())
            )
            return result.rowcount == 1

    def update_reserve_price(self, auction_id: str, reserve_price: Optional[Decimal]) -> bool:
        with self._session() as db:
            result = db.execute(
                update(Auction)
                .where(
                    Auction.id == auction_id,
                    Auction.status == AuctionStatus.ACTIVE,
                    Auction.bid_count == 0,
                )
                .values(reserve_price=reserve_price, updated_at=utcnow())
            )
            return result.rowcount == 1

    def count_by_status(self) -> Dict[AuctionStatus, int]:
        counts = {status: 0 for status in AuctionStatus}
        with self._session() as db:
            rows = db.execute(
                select(Auction.status, func.count(Auction.id)).group_by(Auction.status)
            ).all()
        for status, count in rows:
            counts[AuctionStatus(status)] = count
        return counts

    def total_bid_count(self) -> int:
        with self._session() as db:
            return db.scalar(select(func.count(Bid.id))) or 0

    def ping(self) -> bool:
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
            return True
        except StoreUnavailableError:
            return False

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------
    @staticmethod
    def _update_bid_state(
        db: Session, auction_id, expected_current_bid, new_current_bid, new_bid_count, placed_at=None
    ) -> bool:
        values = {"current_bid": new_current_bid, "bid_count": new_bid_count, "updated_at": utcnow()}
        if placed_at is not None:
            values["last_bid_at"] = placed_at
        result = db.execute(
            update(Auction)
            .where(
                Auction.id == auction_id,
                Auction.current_bid == expected_current_bid,
                Auction.status == AuctionStatus.ACTIVE,
            )
            .values(**values)
        )
        return result.rowcount == 1

    @staticmethod
    def _update_status(
        db: Session, auction_id, status, winning_bidder_id, expected_status, expected_bid_count, cancel_reason
    ) -> bool:
        query = update(Auction).where(Auction.id == auction_id)
        if expected_status is not None:
            query = query.where(Auction.status == expected_status)
        if expected_bid_count is not None:
            query = query.where(Auction.bid_count == expected_bid_count)

        values = {"status": status, "updated_at": utcnow()}
        if winning_bidder_id is not None:
            values["winning_bidder_id"] = winning_bidder_id
        if cancel_reason is not None:
            values["cancel_reason"] = cancel_reason

        result = db.execute(query.values(**values))
        return result.rowcount == 1
