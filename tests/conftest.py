import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pytest
import pytest_asyncio

from models import DatabaseQueue

FIXTURES = Path(__file__).parent / "fixtures"


class FakeContent:
    def __init__(self, body: bytes, chunk_size: int = 512):
        self.body = body
        self.chunk_size = chunk_size

    async def iter_chunked(self, n: int):
        size = min(n, self.chunk_size)
        for i in range(0, len(self.body), size):
            yield self.body[i:i + size]


class FakeResponse:
    def __init__(self, status: int, body: bytes):
        self.status = status
        self.content = FakeContent(body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; routes map URL -> (status, body) or an exception."""

    def __init__(self, routes: Optional[Dict[str, Union[Tuple[int, bytes], Exception]]] = None):
        self.routes = routes or {}
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.closed = False

    def get(self, url, headers=None, **kwargs):
        self.requests.append((url, dict(headers or {})))
        route = self.routes.get(url, (404, b""))
        if isinstance(route, Exception):
            raise route
        status, body = route
        return FakeResponse(status, body)

    async def close(self):
        self.closed = True


def make_rss(items, last_build: Optional[str] = "Mon, 02 Mar 2026 12:00:00 GMT", description: str = "Test feed") -> bytes:
    """Build an RSS 2.0 document from (guid, pubDate) pairs."""
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<rss version="2.0"><channel>',
        '<title>Test</title>',
        '<link>https://example.com/</link>',
        f'<description>{description}</description>',
    ]
    if last_build:
        parts.append(f'<lastBuildDate>{last_build}</lastBuildDate>')
    for guid, pub_date in items:
        parts.append('<item>')
        parts.append(f'<title>{guid}</title>')
        parts.append(f'<link>https://example.com/{guid}</link>')
        parts.append(f'<guid isPermaLink="false">{guid}</guid>')
        if pub_date:
            parts.append(f'<pubDate>{pub_date}</pubDate>')
        parts.append('</item>')
    parts.append('</channel></rss>')
    return "\n".join(parts).encode("utf-8")


@pytest.fixture
def news_xml() -> bytes:
    return (FIXTURES / "news.xml").read_bytes()


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "feedreader.db"))
    await queue.start()
    yield queue
    await queue.stop()
