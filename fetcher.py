#!/usr/bin/env python3
"""
Feed fetch orchestrator.

FeedReader holds the feed and handler registries and runs the
fetch -> parse -> filter -> dispatch pipeline for one or all feeds. Each
stage goes through a dispatcher, so the same code runs inline or as jobs
on the background task queue.

When read tracking is on, the watermark stored for a feed URL decides
which items are new: if the feed's own date has not moved past the last
read, nothing is dispatched; otherwise only items dated at or after the
last read go through. The watermark is rewritten once the whole body has
been parsed, whether or not any item survived.
"""

from asyncio import gather, TimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from time import time
from typing import Any, Dict, Optional, Union
import inspect

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from dispatch import InlineDispatcher, PipelineStage, QueueDispatcher
from errors import BadStatusError, FeedLookupError, HandlerError, TransportError
from feed_parser import FeedDocument, FeedItem, FeedMeta, FeedStream
from models import DatabaseQueue
from queues import WorkerQueue
from registry import FeedDescriptor, FeedRegistry, HandlerRegistry, ItemHandler
from telemetry import init_telemetry, trace_span
from utils import format_duration, truncate_string

logger = get_logger("fetcher")
init_telemetry("feedreader-fetcher")

HTTP_OK = 200
CHUNK_SIZE = 16 * 1024


@dataclass
class FetchState:
    """Per-fetch read-tracking state threaded through one feed's pipeline."""

    ident: Optional[str]
    url: str
    read_tracking: bool
    last_read: Optional[datetime] = None
    meta: Optional[FeedMeta] = None
    skip: bool = False

    def accept_meta(self, meta: FeedMeta) -> None:
        self.meta = meta
        self.skip = bool(
            self.read_tracking
            and self.last_read is not None
            and meta.date is not None
            and self.last_read >= meta.date
        )

    def wants(self, item: FeedItem) -> bool:
        if not self.read_tracking:
            return True
        if self.skip:
            return False
        if self.last_read is None:
            return True
        # Undated items cannot be shown to be newer than the watermark
        return item.date is not None and item.date >= self.last_read


@dataclass
class FetchStats:
    ident: Optional[str]
    url: str
    items_seen: int = 0
    items_dispatched: int = 0
    items_failed: int = 0
    skipped: bool = False


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class FeedReader:
    """Registers feeds and handlers and runs the fetch pipeline."""

    def __init__(
        self,
        db: Optional[DatabaseQueue] = None,
        session: Optional[ClientSession] = None,
        enable_queues: Optional[bool] = None,
        enable_read_tracking: Optional[bool] = None,
        queue: Optional[WorkerQueue] = None,
        user_agent: Optional[str] = None,
        http_timeout: Optional[int] = None,
    ) -> None:
        self.feeds = FeedRegistry()
        self.handlers = HandlerRegistry()
        self.db = db
        self._owns_db = db is None
        self.session = session
        self._owns_session = session is None
        self.read_tracking = config.ENABLE_READ_TRACKING if enable_read_tracking is None else enable_read_tracking
        self.user_agent = user_agent or config.USER_AGENT
        self.http_timeout = config.HTTP_TIMEOUT if http_timeout is None else http_timeout

        self.fetch_stage = PipelineStage("fetch", self._fetch)
        self.fetch_feed_stage = PipelineStage("fetch_feed", self._fetch_feed)
        self.process_item_stage = PipelineStage("process_item", self._process_item)

        self.queue: Optional[WorkerQueue] = None
        self._owns_queue = False
        self._initialized = False
        self.dispatcher: Union[InlineDispatcher, QueueDispatcher] = InlineDispatcher()
        if queue is not None or (config.ENABLE_QUEUES if enable_queues is None else enable_queues):
            self.enable_queues(queue)

    # Registration API
    def feed(self, ident: str, url: str, options: Optional[Dict[str, Any]] = None) -> FeedDescriptor:
        """Register (or replace) a feed under `ident`."""
        return self.feeds.register(ident, url, options)

    def unfeed(self, ident: str) -> None:
        """Forget a feed; no-op if it was never registered."""
        self.feeds.deregister(ident)

    def process(self, ident_or_handler, handler: Optional[ItemHandler] = None) -> None:
        """Register an item handler, for one feed or (without ident) for all of them.

        Handlers are called as `handler(item, ident)` and may be coroutines.
        """
        self.handlers.register(ident_or_handler, handler)

    def enable_queues(self, queue: Optional[WorkerQueue] = None) -> None:
        """Route every stage through the task queue from now on.

        Called after initialize(), an owned queue starts right away; a queue
        passed in is left for its owner to start.
        """
        if self.dispatcher.queued:
            return
        if queue is None:
            queue = WorkerQueue(concurrency=config.QUEUE_CONCURRENCY)
            self._owns_queue = True
        self.queue = queue
        self.dispatcher = QueueDispatcher(queue, [self.fetch_stage, self.fetch_feed_stage, self.process_item_stage])
        if self._initialized and self._owns_queue:
            queue.start_nowait()
        logger.info("Queue processing enabled")

    @property
    def queued(self) -> bool:
        return self.dispatcher.queued

    # Lifecycle
    async def initialize(self) -> None:
        """Open the HTTP session and start owned workers."""
        self._ensure_session()
        if self.read_tracking:
            await self._ensure_db()
        if self.queue is not None and self._owns_queue:
            await self.queue.start()
        self._initialized = True
        logger.info("FeedReader initialized")

    async def close(self) -> None:
        """Close connections and stop owned workers. In-flight fetches are not cancelled."""
        self._initialized = False
        if self.queue is not None and self._owns_queue:
            await self.queue.stop()
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
        if self.db is not None and self._owns_db:
            await self.db.stop()
            self.db = None
        logger.info("FeedReader closed")

    def _ensure_session(self) -> ClientSession:
        if self.session is None:
            timeout = ClientTimeout(total=self.http_timeout) if self.http_timeout else ClientTimeout(total=None)
            self.session = ClientSession(timeout=timeout)
        return self.session

    async def _ensure_db(self) -> DatabaseQueue:
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        if not self.db.running:
            await self.db.start()
        return self.db

    # Trigger API
    async def fetch(self, ident: Optional[str] = None) -> Any:
        """Fetch one feed, or every registered feed when `ident` is omitted.

        Inline, this resolves once the work is done: a single feed returns its
        FetchStats (or raises), all feeds return a mapping of ident to outcome.
        With queues enabled it resolves with the job id once the job is queued.
        """
        return await self.dispatcher.dispatch(self.fetch_stage, {'ident': ident})

    async def reset(self, ident: str) -> bool:
        """Drop the stored watermark of a registered feed."""
        descriptor = self.feeds.get(ident)
        if descriptor is None:
            raise FeedLookupError(ident)
        db = await self._ensure_db()
        removed = await db.execute('delete_feed_read', url=descriptor.url)
        return bool(removed)

    # Stages
    async def _fetch(self, payload: Dict[str, Any]) -> Any:
        ident = payload.get('ident')
        if ident is not None:
            descriptor = self.feeds.get(ident)
            if descriptor is None:
                logger.error(str(FeedLookupError(ident)))
                return None
            return await self.dispatcher.dispatch(self.fetch_feed_stage, descriptor.to_payload())

        descriptors = list(self.feeds.all().values())
        if not descriptors:
            logger.info("No feeds registered, nothing to fetch")
            return {}

        logger.info(f"Fetching {len(descriptors)} feeds")
        results = await gather(
            *(self.dispatcher.dispatch(self.fetch_feed_stage, d.to_payload()) for d in descriptors),
            return_exceptions=True,
        )
        outcomes: Dict[str, Any] = {}
        for descriptor, result in zip(descriptors, results):
            if isinstance(result, Exception):
                logger.error(f"Fetching feed {descriptor.ident} failed: {result}")
            elif isinstance(result, BaseException):
                raise result
            outcomes[descriptor.ident] = result
        return outcomes

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, payload: {
            "feed.ident": payload.get('ident'),
            "feed.url": payload.get('url'),
        },
    )
    async def _fetch_feed(self, payload: Dict[str, Any]) -> FetchStats:
        url = payload['url']
        ident = payload.get('ident')
        options = payload.get('options') or {}
        started = time()

        state = await self._create_state(url, ident)
        stream = FeedStream(url)

        logger.debug(f"Fetching feed {ident} from {url}")
        await self._download(url, options, stream)
        document = await stream.close()
        logger.debug(f"Finished parsing feed {ident} ({stream.size} bytes)")

        stats = await self._dispatch_items(state, document)

        if state.read_tracking:
            db = await self._ensure_db()
            await db.execute('save_feed_read', url=url, meta=state.meta.to_dict(), meta_date=state.meta.timestamp)

        logger.info(
            f"Feed {ident}: {stats.items_dispatched}/{stats.items_seen} items dispatched"
            f"{f', {stats.items_failed} failed' if stats.items_failed else ''}"
            f" in {format_duration(time() - started)}"
        )
        return stats

    async def _create_state(self, url: str, ident: Optional[str]) -> FetchState:
        state = FetchState(ident=ident, url=url, read_tracking=self.read_tracking)
        if not self.read_tracking:
            return state
        db = await self._ensure_db()
        record = await db.execute('get_feed_read', url=url)
        if record:
            state.last_read = _from_timestamp(record.get('meta_date')) or _from_timestamp(record.get('updated_at'))
        return state

    def _request_headers(self, options: Dict[str, Any]) -> Dict[str, str]:
        headers = {'User-Agent': self.user_agent, 'Accept': config.ACCEPT_HEADER}
        extra = options.get('headers')
        if isinstance(extra, dict):
            headers.update({str(k): str(v) for k, v in extra.items()})
        return headers

    async def _download(self, url: str, options: Dict[str, Any], stream: FeedStream) -> None:
        session = self._ensure_session()
        try:
            async with session.get(url, headers=self._request_headers(options)) as response:
                if response.status != HTTP_OK:
                    raise BadStatusError(url, response.status)
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    stream.write(chunk)
        except TimeoutError as e:
            raise TransportError(url, "timed out") from e
        except ClientError as e:
            raise TransportError(url, self._format_client_error(e)) from e

    def _format_client_error(self, error: ClientError) -> str:
        message = str(error).strip()
        return f"{type(error).__name__}: {message}" if message else type(error).__name__

    async def _dispatch_items(self, state: FetchState, document: FeedDocument) -> FetchStats:
        stats = FetchStats(ident=state.ident, url=state.url)
        state.accept_meta(document.meta)
        if state.skip:
            stats.skipped = True
            logger.debug(
                f"Skipping {state.url}, last read on {state.last_read.isoformat()} now {document.meta.date.isoformat()}"
            )

        for item in document.items():
            stats.items_seen += 1
            if not state.wants(item):
                continue
            stats.items_dispatched += 1
            try:
                await self.dispatcher.dispatch(self.process_item_stage, {'item': item, 'ident': state.ident})
            except HandlerError as e:
                stats.items_failed += 1
                logger.error(f"{e} ({truncate_string(item.title, 80)})")
        return stats

    async def _process_item(self, payload: Dict[str, Any]) -> None:
        item = payload['item']
        ident = payload.get('ident')
        for handler in self.handlers.handlers_for(ident):
            try:
                result = handler(item, ident)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                raise HandlerError(ident, getattr(item, 'guid', None), str(e) or type(e).__name__) from e
