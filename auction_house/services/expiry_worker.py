"""
Background worker for closing expired auctions
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from auction_house.core.exceptions import StoreUnavailableError
from auction_house.core.retry import RetryConfig, retry_sync
from auction_house.infrastructure.pubsub import AuctionNotifier, auction_closed_event
from auction_house.schemas.auction import SweepReport
from auction_house.services.auction_engine import AuctionEngine

logger = logging.getLogger(__name__)


class ExpiryWorker:
    """Periodically runs ``AuctionEngine.sweep_expired`` and announces closures"""

    def __init__(
        self,
        engine: AuctionEngine,
        notifier: Optional[AuctionNotifier] = None,
        interval_seconds: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.engine = engine
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self.retry_config = retry_config or RetryConfig(max_retries=3, initial_delay=0.5, max_delay=5.0)
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the background worker"""
        if self.running:
            logger.warning("⚠️  Expiry worker already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info(f"✅ Expiry worker started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the background worker"""
        if not self.running:
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("🛑 Expiry worker stopped")

    async def _run(self):
        """Main worker loop"""
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"❌ Error in expiry worker: {e}")
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """
        One sweep, off the event loop

        Store outages are retried with backoff before the sweep is given up
        until the next tick.
        """
        report = await asyncio.to_thread(
            retry_sync,
            self.engine.sweep_expired,
            now,
            config=self.retry_config,
            retry_on_exceptions=(StoreUnavailableError,),
        )

        if report.closed:
            logger.info(f"⏰ Closed {len(report.closed)} expired auctions")
        for auction_id, reason in report.failures.items():
            logger.warning(f"⚠️  Auction {auction_id} left open: {reason}", extra={"auction_id": auction_id})

        await self.announce(report)
        return report

    async def announce(self, report: SweepReport) -> None:
        """Send AUCTION_CLOSED to watchers of each closed auction"""
        if self.notifier is None:
            return
        for auction_id in report.closed:
            auction = await asyncio.to_thread(self.engine.store.get_auction, auction_id)
            if auction is not None:
                await self.notifier.publish(auction_id, auction_closed_event(auction))
