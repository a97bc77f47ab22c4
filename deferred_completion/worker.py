"""Change feed worker: drives the trigger processor from the change feed."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from deferred_completion.config import CompletionDefaults, settings
from deferred_completion.core.change_feed import ChangeFeed
from deferred_completion.core.completion_client import CompletionClient
from deferred_completion.core.processor import TriggerProcessor
from deferred_completion.core.record_store import RecordStore, StoreUnavailableError
from deferred_completion.database import SessionLocal, init_db

logger = logging.getLogger(__name__)


class FeedWorker:
    """Reads change-feed batches, hands them to the processor and acknowledges them.

    Also runs the record store's expiry purge every ``purge_interval`` seconds.

    Args:
        session_factory: Callable returning a new database session
        processor: Trigger processor handling each batch
        batch_size: Maximum events per batch
        poll_interval: Sleep after an empty read, in seconds
        purge_interval: Seconds between expiry purges (0 disables purging)
        sleep: Awaitable sleep function
        clock: Monotonic clock used to schedule purges
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: TriggerProcessor,
        batch_size: int = 10,
        poll_interval: float = 1.0,
        purge_interval: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.processor = processor
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.purge_interval = purge_interval
        self.sleep = sleep
        self.clock = clock
        self._last_purge: Optional[float] = None

    async def run_once(self) -> int:
        """Process one batch of the change feed.

        Returns:
            int: Number of events read
        """
        db = self.session_factory()
        try:
            feed = ChangeFeed(db)
            events = feed.read_batch(self.batch_size)
            if not events:
                return 0

            result = await self.processor.handle_batch(events)
            acknowledged = feed.acknowledge(events, result.batch_item_failures)
            logger.info(f"Processed {len(events)} change events, acknowledged {acknowledged}")
            return len(events)
        finally:
            db.close()

    def purge_if_due(self) -> int:
        """Purge expired records when the purge interval has elapsed."""
        if self.purge_interval <= 0:
            return 0
        now = self.clock()
        if self._last_purge is not None and now - self._last_purge < self.purge_interval:
            return 0

        self._last_purge = now
        db = self.session_factory()
        try:
            return RecordStore(db).purge_expired()
        finally:
            db.close()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Change feed worker started")
        while not stop_event.is_set():
            try:
                self.purge_if_due()
                processed = await self.run_once()
            except StoreUnavailableError as e:
                logger.error(f"Change feed worker could not reach the store: {e}")
                processed = 0
            except Exception as e:
                logger.exception(f"Unexpected error in change feed worker: {e}")
                processed = 0
            if processed == 0:
                await self.sleep(self.poll_interval)
        logger.info("Change feed worker stopped")


def build_worker() -> FeedWorker:
    """Build a worker from the process configuration."""
    defaults = CompletionDefaults.from_settings(settings)
    processor = TriggerProcessor(
        session_factory=SessionLocal,
        client=CompletionClient(),
        defaults=defaults,
    )
    return FeedWorker(
        session_factory=SessionLocal,
        processor=processor,
        batch_size=settings.feed_batch_size,
        poll_interval=settings.feed_poll_interval_seconds,
        purge_interval=settings.purge_interval_seconds,
    )


async def _serve() -> None:
    worker = build_worker()
    try:
        await worker.run()
    finally:
        await worker.processor.client.aclose()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.app_env == "development":
        init_db()
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
