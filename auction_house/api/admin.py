"""
Admin API Routes - Sweeping and Monitoring
"""
from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from auction_house.core.dependencies import get_auction_engine, get_expiry_worker, get_notifier
from auction_house.infrastructure.pubsub import AuctionNotifier
from auction_house.services.auction_engine import AuctionEngine
from auction_house.services.expiry_worker import ExpiryWorker

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep")
async def run_sweep(
    engine: AuctionEngine = Depends(get_auction_engine),
    worker: ExpiryWorker = Depends(get_expiry_worker),
):
    """Close expired auctions now"""
    report = await run_in_threadpool(engine.sweep_expired)
    await worker.announce(report)
    return {
        "success": report.failed_count == 0,
        "closed": report.closed,
        "failures": report.failures,
    }


@router.get("/pubsub-stats")
async def get_pubsub_stats(notifier: AuctionNotifier = Depends(get_notifier)):
    """Get Pub/Sub statistics"""
    return notifier.get_stats()


@router.get("/health")
async def health_check(
    engine: AuctionEngine = Depends(get_auction_engine),
    notifier: AuctionNotifier = Depends(get_notifier),
    worker: ExpiryWorker = Depends(get_expiry_worker),
):
    """System health check"""
    store_ok = await run_in_threadpool(engine.store.ping)

    return {
        "status": "healthy" if store_ok else "degraded",
        "components": {
            "store": "healthy" if store_ok else "unhealthy",
            "pubsub": "redis" if notifier.is_distributed else "local",
            "expiry_worker": "running" if worker.running else "stopped",
        },
    }
