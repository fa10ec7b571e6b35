"""Background loops driving the processor and the periodic sweeps."""

import asyncio
import math
from typing import Awaitable, Callable, List, Optional

from .campaigns import CampaignOrchestrator
from .logger import get_logger
from .processor import BatchProcessor
from .queue_service import QueueService


class Scheduler:
    """Run each periodic job in its own asyncio task.

    Jobs are plain coroutines; a loop invokes one, logs any error, then waits
    for its interval or a wake-up. ``run_now()`` wakes the processor tick
    loop. In ``test_mode`` the tick loop only runs when woken and the
    background sweeps are not started.
    """

    def __init__(
        self,
        processor: BatchProcessor,
        campaigns: Optional[CampaignOrchestrator],
        queue_service: QueueService,
        *,
        tick_interval: float = 60,
        retry_sweep_interval: float = 300,
        campaign_sweep_interval: float = 3600,
        retention_interval: float = 86400,
        retention_days: int = 30,
        test_mode: bool = False,
    ):
        self.processor = processor
        self.campaigns = campaigns
        self.queue_service = queue_service
        self.tick_interval = tick_interval
        self.retry_sweep_interval = retry_sweep_interval
        self.campaign_sweep_interval = campaign_sweep_interval
        self.retention_interval = retention_interval
        self.retention_days = retention_days
        self._test_mode = test_mode
        self.logger = get_logger("scheduler")

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start the background loops."""
        self._stop.clear()
        tick_wait = math.inf if self._test_mode else self.tick_interval
        self._tasks = [
            asyncio.create_task(
                self._job_loop("processor-tick", self.processor.run_tick, tick_wait, self._wake_event),
                name="processor-tick-loop",
            )
        ]
        if not self._test_mode:
            self._tasks.append(
                asyncio.create_task(
                    self._job_loop("retry-sweep", self.processor.run_retry_sweep, self.retry_sweep_interval),
                    name="retry-sweep-loop",
                )
            )
            if self.campaigns is not None:
                self._tasks.append(
                    asyncio.create_task(
                        self._job_loop(
                            "campaign-sweep",
                            self.campaigns.process_scheduled_campaigns,
                            self.campaign_sweep_interval,
                        ),
                        name="campaign-sweep-loop",
                    )
                )
            self._tasks.append(
                asyncio.create_task(
                    self._job_loop("retention-sweep", self._retention_sweep, self.retention_interval),
                    name="retention-sweep-loop",
                )
            )
        self.logger.info("Scheduler started with %d background tasks", len(self._tasks))

    async def stop(self) -> None:
        """Stop the background loops and wait for them to exit."""
        self._stop.set()
        self._wake_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Scheduler stopped")

    def run_now(self) -> None:
        """Wake the processor loop so it ticks without waiting for the interval."""
        self._wake_event.set()

    async def _retention_sweep(self) -> int:
        return await self.queue_service.cleanup_sent(self.retention_days)

    async def _job_loop(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
        wake_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.logger.debug("%s loop started", name)
        # A waiting-for-wake loop does not run before the first wake-up
        if math.isinf(interval):
            await self._wait(interval, wake_event)
        while not self._stop.is_set():
            try:
                outcome = await job()
                self.logger.debug("%s finished: %s", name, outcome)
            except Exception:
                self.logger.exception("Unhandled error in %s loop", name)
            await self._wait(interval, wake_event)
        self.logger.debug("%s loop exited", name)

    async def _wait(self, timeout: float, wake_event: Optional[asyncio.Event]) -> None:
        """Sleep ``timeout`` seconds, returning early on stop or wake-up.

        ``stop()`` sets the wake event too, so waiting on it covers both.
        """
        if self._stop.is_set():
            return
        event = wake_event or self._stop
        if math.isinf(timeout):
            await event.wait()
        else:
            try:
                async with asyncio.timeout(max(0.0, float(timeout))):
                    await event.wait()
            except TimeoutError:
                return
        if wake_event is not None and not self._stop.is_set():
            wake_event.clear()
