#!/usr/bin/env python3
"""
Interval scheduler for feed polling.

Triggers `FeedReader.fetch()` once on start and then on every interval
boundary until stopped. A tick is awaited before the next one is
considered, so boundaries that pass while a fetch is still running are
skipped rather than fired late or twice. Stopping cancels the trigger
only; a fetch already running is left to finish.
"""

import asyncio
from typing import Optional, Set

from config import get_logger
from telemetry import init_telemetry, trace_span
from utils import format_duration

logger = get_logger("scheduler")
init_telemetry("feedreader-scheduler")


class IntervalScheduler:
    """Recurring trigger for a FeedReader."""

    def __init__(self, reader, interval: float):
        """Initialize scheduler.

        Args:
            reader: Object with an async `fetch()` (normally a FeedReader)
            interval: Seconds between runs; 0 or less disables scheduling
        """
        self.reader = reader
        self.interval = interval
        self.runs = 0
        self.missed = 0
        self._task: Optional[asyncio.Task] = None
        self._fetches: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start polling. Must be called from a running event loop.

        Returns:
            False when the interval disables scheduling, True otherwise.
        """
        if self.interval <= 0:
            logger.info("Polling interval not set, scheduler disabled")
            return False
        if self.running:
            return True
        logger.info(f"🕐 Polling feeds every {format_duration(self.interval)}")
        self._task = asyncio.create_task(self._run())
        return True

    async def stop(self) -> None:
        """Cancel the recurring trigger, then wait for a fetch still in progress.

        The in-flight fetch is not cancelled, so it can finish and record its
        watermark before the reader is closed.
        """
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self._fetches:
            logger.info(f"⏳ Waiting for {len(self._fetches)} fetch(es) in progress")
            await asyncio.gather(*self._fetches, return_exceptions=True)
        logger.info("📶 Scheduler stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        tick = 0
        while True:
            fetch = asyncio.create_task(self._tick())
            self._fetches.add(fetch)
            fetch.add_done_callback(self._fetches.discard)
            # cancelling the loop leaves the fetch running
            await asyncio.shield(fetch)

            elapsed = loop.time() - started
            next_tick = int(elapsed // self.interval) + 1
            skipped = next_tick - tick - 1
            if skipped > 0:
                self.missed += skipped
                logger.warning(f"Fetch took {format_duration(elapsed - tick * self.interval)}, skipping {skipped} tick(s)")
            tick = next_tick
            await asyncio.sleep(max(0.0, started + tick * self.interval - loop.time()))

    @trace_span("scheduler.tick", tracer_name="scheduler")
    async def _tick(self) -> None:
        self.runs += 1
        try:
            await self.reader.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"💥 Scheduled fetch failed: {e}")
