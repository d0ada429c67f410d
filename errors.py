#!/usr/bin/env python3
"""Error types raised by the feed reader pipeline."""

from typing import Optional


class FeedReaderError(Exception):
    """Base class for all feed reader failures."""


class TransportError(FeedReaderError):
    """Network or connection failure while requesting a feed."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Transport error fetching {url}: {message}")
        self.url = url


class BadStatusError(FeedReaderError):
    """The feed host answered with something other than HTTP 200."""

    def __init__(self, url: str, status: int):
        super().__init__(f"Bad status code {status} for {url}")
        self.url = url
        self.status = status


class ParseError(FeedReaderError):
    """The response body could not be parsed as RSS/Atom."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Could not parse feed {url}: {message}")
        self.url = url


class HandlerError(FeedReaderError):
    """A registered item handler raised.

    Attributes:
        ident: Feed identifier the item belonged to.
        guid: GUID of the item being processed, if known.
    """

    def __init__(self, ident: Optional[str], guid: Optional[str], message: str):
        super().__init__(f"Handler failed for item {guid} of feed {ident}: {message}")
        self.ident = ident
        self.guid = guid


class FeedLookupError(FeedReaderError, LookupError):
    """A fetch was requested for an ident that is not registered."""

    def __init__(self, ident: str):
        super().__init__(f"No feed registered as '{ident}'")
        self.ident = ident


__all__ = [
    "FeedReaderError",
    "TransportError",
    "BadStatusError",
    "ParseError",
    "HandlerError",
    "FeedLookupError",
]
