"""
Bid API Routes

Per-bidder views: a user's bids and the auctions they have bid on.
"""
from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from auction_house.core.dependencies import get_auction_engine
from auction_house.schemas.auction import AuctionStatus
from auction_house.schemas.views import AuctionView, BidView
from auction_house.services.auction_engine import AuctionEngine

router = APIRouter(prefix="/bids", tags=["bids"])


def _bidder_bids(engine: AuctionEngine, bidder_id: str) -> list:
    bids = engine.list_bidder_bids(bidder_id)
    auctions = {a.id: a for a in engine.list_bidder_auctions(bidder_id)}
    return [BidView.build(bid, auctions.get(bid.auction_id)).model_dump(mode="json") for bid in bids]


def _bidder_auctions(engine: AuctionEngine, bidder_id: str) -> list:
    now = engine.current_time()
    results = []
    for auction in engine.list_bidder_auctions(bidder_id):
        leading = False
        if auction.status == AuctionStatus.ACTIVE:
            bids = engine.store.list_bids(auction.id)
            leading = bool(bids) and bids[-1].bidder_id == bidder_id
        results.append({
            **AuctionView.build(auction, now, engine.ending_soon).model_dump(mode="json"),
            "is_leading": leading,
            "is_winner": auction.winning_bidder_id == bidder_id,
        })
    return results


# ============================================================================
# ROUTES
# ============================================================================
@router.get("/users/{bidder_id}")
async def get_user_bids(bidder_id: str, engine: AuctionEngine = Depends(get_auction_engine)):
    """All bids by a user, newest first"""
    bids = await run_in_threadpool(_bidder_bids, engine, bidder_id)
    return {
        "bidder_id": bidder_id,
        "total": len(bids),
        "bids": bids,
    }


@router.get("/users/{bidder_id}/auctions")
async def get_user_auctions(bidder_id: str, engine: AuctionEngine = Depends(get_auction_engine)):
    """Auctions a user has bid on"""
    auctions = await run_in_threadpool(_bidder_auctions, engine, bidder_id)
    return {
        "bidder_id": bidder_id,
        "total": len(auctions),
        "auctions": auctions,
    }
