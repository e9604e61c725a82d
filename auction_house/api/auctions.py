"""
Auction API Routes

Handles:
- Creating and listing auctions
- Placing bids and reading bid history
- Closing, cancelling, extending, re-pricing and completing auctions

Engine calls are blocking (store I/O) and run in the threadpool. Typed
``AuctionError`` failures are rendered by the handler registered in main.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from auction_house.core.dependencies import get_auction_engine, get_notifier
from auction_house.infrastructure.pubsub import AuctionNotifier, auction_closed_event, new_bid_event
from auction_house.schemas.auction import AuctionRecord, AuctionStatus
from auction_house.schemas.views import AuctionDetail, AuctionView, BidView
from auction_house.services.auction_engine import AuctionEngine

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ============================================================================
# REQUEST MODELS
# ============================================================================
class CreateAuctionRequest(BaseModel):
    listing_id: str
    seller_id: str
    starting_price: Decimal = Field(..., decimal_places=2)
    reserve_price: Optional[Decimal] = Field(None, decimal_places=2)
    currency: Optional[str] = None
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None


class PlaceBidRequest(BaseModel):
    """Request model for placing bid"""
    bidder_id: str
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: Optional[str] = None


class CancelAuctionRequest(BaseModel):
    reason: Optional[str] = None


class ExtendAuctionRequest(BaseModel):
    additional_minutes: int


class UpdateReserveRequest(BaseModel):
    """``None`` removes the reserve"""
    reserve_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)


def _view(engine: AuctionEngine, auction: AuctionRecord) -> dict:
    return AuctionView.build(auction, engine.current_time(), engine.ending_soon).model_dump(mode="json")


# ============================================================================
# ROUTES
# ============================================================================
@router.post("", status_code=201)
async def create_auction(
    request: CreateAuctionRequest,
    engine: AuctionEngine = Depends(get_auction_engine),
):
    """Create a new auction"""
    if request.end_time is not None:
        end_time = request.end_time
    elif request.duration_minutes is not None:
        end_time = engine.current_time() + timedelta(minutes=request.duration_minutes)
    else:
        raise HTTPException(status_code=400, detail="Either end_time or duration_minutes is required")

    auction = await run_in_threadpool(
        engine.create_auction,
        listing_id=request.listing_id,
        seller_id=request.seller_id,
        starting_price=request.starting_price,
        end_time=end_time,
        reserve_price=request.reserve_price,
        currency=request.currency,
    )

    return {
        "success": True,
        "message": "Auction created successfully",
        "auction": _view(engine, auction),
    }


@router.get("")
async def list_auctions(
    status: Optional[AuctionStatus] = None,
    seller_id: Optional[str] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    ending_soon: bool = False,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: AuctionEngine = Depends(get_auction_engine),
):
    """List auctions with filters and pagination"""
    result = await run_in_threadpool(
        engine.list_auctions,
        status=status,
        seller_id=seller_id,
        min_price=min_price,
        max_price=max_price,
        ending_soon=ending_soon,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )

    return {
        "auctions": [_view(engine, a) for a in result.auctions],
        "pagination": {
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "total_pages": result.total_pages,
        },
    }


@router.get("/active")
async def list_active_auctions(engine: AuctionEngine = Depends(get_auction_engine)):
    """Active auctions, soonest ending first"""
    auctions = await run_in_threadpool(engine.list_active_auctions)
    return {
        "total": len(auctions),
        "auctions": [_view(engine, a) for a in auctions],
    }


@router.get("/statistics")
async def get_statistics(engine: AuctionEngine = Depends(get_auction_engine)):
    """Get auction statistics"""
    stats = await run_in_threadpool(engine.get_statistics)
    return stats.model_dump(mode="json")


@router.get("/listing/{listing_id}")
async def get_auction_by_listing(listing_id: str, engine: AuctionEngine = Depends(get_auction_engine)):
    auction = await run_in_threadpool(engine.get_auction_by_listing, listing_id)
    return {"auction": _view(engine, auction)}


@router.get("/{auction_id}")
async def get_auction(
    auction_id: str,
    engine: AuctionEngine = Depends(get_auction_engine),
    notifier: AuctionNotifier = Depends(get_notifier),
):
    """
    Get specific auction with its bid history

    Closes the auction first if it has expired and nobody swept it yet.
    """
    before = await run_in_threadpool(engine.store.get_auction, auction_id)
    auction = await run_in_threadpool(engine.get_auction, auction_id)
    bids = await run_in_threadpool(engine.list_bids, auction_id)

    if before is not None and not before.is_closed and auction.is_closed:
        await notifier.publish(auction_id, auction_closed_event(auction))

    minimum = None
    if auction.status == AuctionStatus.ACTIVE:
        minimum = engine.policy.minimum_amount(auction.current_bid)

    detail = AuctionDetail(
        auction=AuctionView.build(auction, engine.current_time(), engine.ending_soon),
        bids=[BidView.build(bid, auction) for bid in bids],
        minimum_next_bid=minimum,
    )
    return detail.model_dump(mode="json")


@router.post("/{auction_id}/bids", status_code=201)
async def place_bid(
    auction_id: str,
    request: PlaceBidRequest,
    engine: AuctionEngine = Depends(get_auction_engine),
    notifier: AuctionNotifier = Depends(get_notifier),
):
    """Place a bid"""
    bid = await run_in_threadpool(
        engine.place_bid,
        auction_id,
        request.bidder_id,
        request.amount,
        currency=request.currency,
    )
    auction = await run_in_threadpool(engine.store.get_auction, auction_id)

    await notifier.publish(auction_id, new_bid_event(bid, auction))

    return {
        "success": True,
        "message": "Bid placed successfully",
        "bid": BidView.build(bid, auction).model_dump(mode="json"),
        "auction": _view(engine, auction),
    }


@router.get("/{auction_id}/bids")
async def get_bid_history(auction_id: str, engine: AuctionEngine = Depends(get_auction_engine)):
    """Bids in placement order"""
    auction = await run_in_threadpool(engine.get_auction, auction_id)
    bids = await run_in_threadpool(engine.list_bids, auction_id)
    return {
        "auction_id": auction_id,
        "total": len(bids),
        "bids": [BidView.build(bid, auction).model_dump(mode="json") for bid in bids],
    }


@router.post("/{auction_id}/close")
async def close_auction(
    auction_id: str,
    engine: AuctionEngine = Depends(get_auction_engine),
    notifier: AuctionNotifier = Depends(get_notifier),
):
    """End an auction now and determine the winner"""
    auction = await run_in_threadpool(engine.close_auction, auction_id)
    await notifier.publish(auction_id, auction_closed_event(auction))
    return {
        "success": True,
        "message": f"Auction {auction.status.value}",
        "auction": _view(engine, auction),
    }


@router.post("/{auction_id}/cancel")
async def cancel_auction(
    auction_id: str,
    request: Optional[CancelAuctionRequest] = None,
    engine: AuctionEngine = Depends(get_auction_engine),
    notifier: AuctionNotifier = Depends(get_notifier),
):
    reason = request.reason if request else None
    auction = await run_in_threadpool(engine.cancel_auction, auction_id, reason)
    await notifier.publish(auction_id, auction_closed_event(auction))
    return {
        "success": True,
        "message": "Auction cancelled",
        "auction": _view(engine, auction),
    }


@router.post("/{auction_id}/extend")
async def extend_auction(
    auction_id: str,
    request: ExtendAuctionRequest,
    engine: AuctionEngine = Depends(get_auction_engine),
):
    auction = await run_in_threadpool(engine.extend_auction, auction_id, request.additional_minutes)
    return {
        "success": True,
        "message": f"Auction extended by {request.additional_minutes} minutes",
        "auction": _view(engine, auction),
    }


@router.post("/{auction_id}/reserve")
async def update_reserve_price(
    auction_id: str,
    request: UpdateReserveRequest,
    engine: AuctionEngine = Depends(get_auction_engine),
):
    """Change the reserve price before the first bid"""
    auction = await run_in_threadpool(engine.update_reserve_price, auction_id, request.reserve_price)
    return {
        "success": True,
        "message": "Reserve price updated",
        "auction": _view(engine, auction),
    }


@router.post("/{auction_id}/complete")
async def complete_auction(auction_id: str, engine: AuctionEngine = Depends(get_auction_engine)):
    """Mark an ended auction as settled"""
    auction = await run_in_threadpool(engine.complete_auction, auction_id)
    return {
        "success": True,
        "message": "Auction completed",
        "auction": _view(engine, auction),
    }
