#!/usr/bin/env python3
"""
Feed parsing adapter.

Wraps feedparser behind a small streaming contract: the fetcher writes the
response body into a FeedStream chunk by chunk, closes it, and gets back a
FeedDocument whose metadata is available before any item and whose items
are produced lazily, in document order, exactly once.
"""

from asyncio import get_running_loop
import io
from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from hashlib import md5
from typing import Any, Dict, Iterator, List, Optional

import feedparser
from feedparser.datetimes import _parse_date

from config import get_logger
from errors import ParseError

logger = get_logger("feed_parser")

FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': True,
}


@dataclass
class FeedMeta:
    """Feed-level metadata, emitted once per fetch."""

    title: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    date: Optional[datetime] = None
    version: Optional[str] = None

    @property
    def timestamp(self) -> Optional[int]:
        return int(self.date.timestamp()) if self.date else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'description': self.description,
            'link': self.link,
            'date': self.date.isoformat() if self.date else None,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FeedMeta":
        data = data or {}
        date = None
        if data.get('date'):
            try:
                date = _as_utc(datetime.fromisoformat(data['date']))
            except (TypeError, ValueError):
                logger.debug(f"Ignoring unreadable stored meta date {data['date']!r}")
        return cls(
            title=data.get('title'),
            description=data.get('description'),
            link=data.get('link'),
            date=date,
            version=data.get('version'),
        )


@dataclass
class FeedItem:
    """A single entry from a feed.

    `entry` is the raw feedparser entry for handlers that need fields not
    lifted onto the item.
    """

    guid: str
    date: Optional[datetime]
    title: Optional[str]
    link: Optional[str]
    summary: Optional[str]
    meta: FeedMeta
    entry: Any = field(default=None, repr=False, compare=False)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _get_value(entry, name: str) -> Any:
    """Read a feedparser field by key, tolerating plain dicts and missing keys."""
    if entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(name)
    return getattr(entry, name, None)


def to_datetime(value: Any) -> Optional[datetime]:
    """Convert assorted date representations into an aware UTC datetime."""
    if value in (None, ''):
        return None

    if isinstance(value, datetime):
        return _as_utc(value)

    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, (list, tuple)):
        # feedparser *_parsed values are UTC struct_time
        try:
            return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
        except (OverflowError, OSError, ValueError, TypeError):
            return None

    if isinstance(value, str):
        parsed = _parse_date(value)
        if parsed:
            return to_datetime(parsed)
        try:
            return _as_utc(parsedate_to_datetime(value))
        except (TypeError, ValueError, OverflowError):
            return None

    return None


def _first_date(source, fields: List[str]) -> Optional[datetime]:
    for name in fields:
        dt = to_datetime(_get_value(source, f"{name}_parsed")) or to_datetime(_get_value(source, name))
        if dt:
            return dt
    return None


def build_meta(feed_info, version: Optional[str]) -> FeedMeta:
    """Build FeedMeta from a feedparser `feed` mapping.

    The feed date is the newer of its published and updated stamps.
    """
    dates = [d for d in (_first_date(feed_info, ['published']), _first_date(feed_info, ['updated'])) if d]
    return FeedMeta(
        title=_get_value(feed_info, 'title'),
        description=_get_value(feed_info, 'subtitle') or _get_value(feed_info, 'description'),
        link=_get_value(feed_info, 'link'),
        date=max(dates) if dates else None,
        version=version or None,
    )


def get_guid(entry) -> str:
    """Extract or derive a stable GUID for an entry."""
    guid = _get_value(entry, 'id')
    if guid:
        return guid

    link = _get_value(entry, 'link')
    if link:
        return md5(link.encode()).hexdigest()

    title = _get_value(entry, 'title') or ''
    published = _get_value(entry, 'published') or ''
    return md5(f"{title}{published}".encode()).hexdigest()


def build_item(entry, meta: FeedMeta) -> FeedItem:
    return FeedItem(
        guid=get_guid(entry),
        date=_first_date(entry, ['published', 'updated', 'created']),
        title=_get_value(entry, 'title'),
        link=_get_value(entry, 'link'),
        summary=_get_value(entry, 'summary'),
        meta=meta,
        entry=entry,
    )


class FeedDocument:
    """Parsed feed: metadata up front, items produced once on demand."""

    def __init__(self, meta: FeedMeta, entries: List[Any]):
        self.meta = meta
        self._entries = entries
        self._consumed = False

    def __len__(self) -> int:
        return len(self._entries)

    def items(self) -> Iterator[FeedItem]:
        if self._consumed:
            raise RuntimeError("Feed items have already been consumed")
        self._consumed = True
        return self._iter_items()

    def _iter_items(self) -> Iterator[FeedItem]:
        entries, self._entries = self._entries, []
        for entry in entries:
            yield build_item(entry, self.meta)


class FeedStream:
    """Byte sink for one feed response.

    feedparser needs the full document, so chunks are buffered and parsing
    happens on close() in the default executor.
    """

    def __init__(self, url: str):
        self.url = url
        self._chunks: List[bytes] = []
        self._size = 0
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise ValueError(f"Feed stream for {self.url} is closed")
        if chunk:
            self._chunks.append(chunk)
            self._size += len(chunk)

    def _parse(self, content: bytes) -> FeedDocument:
        result = feedparser.parse(
            io.BytesIO(content),
            response_headers={'content-location': self.url},
            **FEEDPARSER_OPTIONS,
        )
        version = result.get('version')
        entries = result.get('entries') or []
        if result.get('bozo'):
            exc = result.get('bozo_exception')
            if not version and not entries:
                raise ParseError(self.url, str(exc) if exc else "unrecognised document")
            logger.warning(f"Feed parsing warning for {self.url}: {exc}")
        return FeedDocument(build_meta(result.get('feed', {}), version), entries)

    async def close(self) -> FeedDocument:
        """Finish the stream and parse it."""
        if self._closed:
            raise ValueError(f"Feed stream for {self.url} is already closed")
        self._closed = True
        content, self._chunks = b"".join(self._chunks), []
        return await get_running_loop().run_in_executor(None, self._parse, content)
