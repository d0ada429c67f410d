#!/usr/bin/env python3
"""
Feed Reader entry point.

Hosts a FeedReader: registers the feeds from feeds.yaml, enables the task
queue when configured, and either fetches once or keeps polling on the
configured interval until interrupted.

Usage:
    python main.py fetch [ident]     # fetch all feeds (or one) and exit
    python main.py scheduled         # poll every `interval` seconds
    python main.py status            # show stored read watermarks
    python main.py reset <ident>     # forget the watermark of one feed
"""

import argparse
import asyncio
import sys
from typing import Optional

from config import config, get_logger
from fetcher import FeedReader, FetchStats
from scheduler import IntervalScheduler
from telemetry import init_telemetry, trace_span
from utils import format_timestamp, truncate_string

logger = get_logger("main")
init_telemetry("feedreader")


def log_item(item, ident: str) -> None:
    """Default handler: log each new item."""
    logger.info(f"📰 [{ident}] {truncate_string(item.title, 100) or item.guid} {item.link or ''}")


class FeedReaderApp:
    """Wires a FeedReader to configuration and the polling scheduler."""

    def __init__(self, reader: Optional[FeedReader] = None, interval: Optional[float] = None):
        self.reader = reader or FeedReader()
        self.scheduler = IntervalScheduler(
            self.reader, config.INTERVAL_SECONDS if interval is None else interval
        )
        self._loaded = False

    def load(self) -> None:
        """Register the feeds listed in configuration."""
        if self._loaded:
            return
        for ident, feed_cfg in config.FEED_SOURCES.items():
            options = {k: v for k, v in feed_cfg.items() if k != 'url'}
            self.reader.feed(ident, feed_cfg['url'], options)
        self._loaded = True
        logger.info(f"Registered {len(config.FEED_SOURCES)} configured feeds")

    async def start(self, schedule: bool = True) -> None:
        logger.info(f"⚙️ Configuration: {config.get_config_summary()}")
        self.load()
        await self.reader.initialize()
        if schedule:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.reader.close()


@trace_span("main.fetch_once", tracer_name="main")
async def run_once(ident: Optional[str] = None) -> bool:
    """Fetch once and wait for queued work to finish. Returns True when nothing failed."""
    app = FeedReaderApp()
    app.reader.process(log_item)
    await app.start(schedule=False)
    try:
        outcome = await app.reader.fetch(ident)
        if app.reader.queued:
            await app.reader.queue.join()
            return not app.reader.queue.failures
        if isinstance(outcome, dict):
            return not any(isinstance(result, Exception) for result in outcome.values())
        if isinstance(outcome, FetchStats):
            return outcome.items_failed == 0
        return outcome is not None
    except Exception as e:
        logger.error(f"❌ Fetch failed: {e}")
        return False
    finally:
        await app.stop()


async def run_scheduled() -> None:
    """Poll until cancelled."""
    app = FeedReaderApp()
    if app.scheduler.interval <= 0:
        logger.error("❌ No polling interval configured (set `interval` in feeds.yaml or FEEDREADER_INTERVAL)")
        return
    app.reader.process(log_item)
    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.stop()


async def show_status() -> None:
    reader = FeedReader(enable_queues=False, enable_read_tracking=True)
    await reader.initialize()
    try:
        records = await reader.db.execute('list_feed_reads')
    finally:
        await reader.close()

    urls = {feed_cfg['url']: ident for ident, feed_cfg in config.FEED_SOURCES.items()}
    print("\n📊 Feed Reader Status")
    print(f"📡 Configured feeds: {len(config.FEED_SOURCES)}")
    print(f"💾 Watermarks: {len(records)}")
    for record in records:
        ident = urls.get(record['url'], '?')
        print(f"   {ident:<20} last meta {format_timestamp(record['meta_date'])}  "
              f"updated {format_timestamp(record['updated_at'])}  {record['url']}")


async def reset_feed(ident: str) -> bool:
    app = FeedReaderApp(FeedReader(enable_queues=False, enable_read_tracking=True))
    app.load()
    try:
        removed = await app.reader.reset(ident)
    finally:
        await app.reader.close()
    logger.info(f"Watermark for {ident} {'removed' if removed else 'was not set'}")
    return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='RSS/Atom feed reader')
    parser.add_argument('mode', choices=['fetch', 'scheduled', 'status', 'reset'], help='Operation mode')
    parser.add_argument('ident', nargs='?', help='Feed identifier (fetch/reset)')
    args = parser.parse_args()

    try:
        if args.mode == 'fetch':
            success = asyncio.run(run_once(args.ident))
            sys.exit(0 if success else 1)
        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled())
        elif args.mode == 'status':
            asyncio.run(show_status())
        elif args.mode == 'reset':
            if not args.ident:
                parser.error("reset requires a feed identifier")
            asyncio.run(reset_feed(args.ident))
    except KeyboardInterrupt:
        logger.info("👋 Feed reader shutting down")
    except LookupError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
