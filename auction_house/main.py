"""
Main FastAPI Application
Marketplace auction engine: bids, closing, expiry sweeps and live updates
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auction_house.api import admin, auctions, bids, websockets
from auction_house.core.config import get_settings
from auction_house.core.dependencies import (
    get_auction_engine,
    get_expiry_worker,
    get_notifier,
)
from auction_house.core.exceptions import AuctionError
from auction_house.core.logging_config import setup_logging
from auction_house.infrastructure.database import init_db
from auction_house.services.auction_engine import AuctionEngine

settings = get_settings()
logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying a 503
STORE_RETRY_AFTER = "1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan events for startup and shutdown"""
    # Startup
    setup_logging()
    logger.info(f"🚀 Starting {settings.APP_NAME} v{settings.APP_VERSION}...")

    if settings.STORE_BACKEND == "sql":
        logger.info("📊 Initializing database...")
        init_db()

    get_auction_engine()

    notifier = get_notifier()
    if settings.REDIS_ENABLED:
        logger.info("📡 Connecting Pub/Sub...")
        await notifier.connect()

    worker = get_expiry_worker()
    if settings.SWEEP_ENABLED:
        logger.info("⏰ Starting expiry worker...")
        await worker.start()

    logger.info("✅ Startup complete")

    yield

    # Shutdown
    logger.info("🛑 Shutting down...")
    await worker.stop()
    await notifier.disconnect()
    logger.info("✅ Cleanup complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    description="Auction and bidding engine for a marketplace backend",
    lifespan=lifespan,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError):
    """Render typed engine errors"""
    headers = {"Retry-After": STORE_RETRY_AFTER} if exc.retryable else None
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"⚠️  {request.method} {request.url.path} rejected: {exc.code}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(auctions.router)
app.include_router(bids.router)
app.include_router(admin.router)
app.include_router(websockets.router)


# ============================================================================
# ROOT ENDPOINT
# ============================================================================
@app.get("/", tags=["root"])
async def root(engine: AuctionEngine = Depends(get_auction_engine)):
    """Server status and statistics"""
    stats = await run_in_threadpool(engine.get_statistics)

    return {
        "message": f"{settings.APP_NAME} v{settings.APP_VERSION}",
        "status": "running",
        "total_auctions": stats.total,
        "active_auctions": stats.active,
        "total_bids": stats.total_bids,
        "store": settings.STORE_BACKEND,
        "docs": "/docs",
        "websocket": "/ws/auctions/{auction_id}",
        "features": [
            "Optimistic concurrency bidding",
            "Reserve prices",
            "Automatic expiry sweep",
            "WebSocket Real-Time Updates",
        ],
    }
