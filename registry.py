#!/usr/bin/env python3
"""In-memory registries for feeds and item handlers."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import get_logger

logger = get_logger("registry")

ItemHandler = Callable[[Any, str], Union[None, Awaitable[None]]]

# Key under which handlers for every feed are filed
WILDCARD = None


@dataclass
class FeedDescriptor:
    ident: str
    url: str
    options: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {'ident': self.ident, 'url': self.url, 'options': dict(self.options)}


class FeedRegistry:
    """Mapping of feed ident to descriptor. Re-registering an ident replaces it."""

    def __init__(self):
        self._feeds: Dict[str, FeedDescriptor] = {}

    def register(self, ident: str, url: str, options: Optional[Dict[str, Any]] = None) -> FeedDescriptor:
        descriptor = FeedDescriptor(ident=ident, url=url, options=dict(options or {}))
        if ident in self._feeds:
            logger.debug(f"Replacing feed {ident}: {self._feeds[ident].url} -> {url}")
        else:
            logger.debug(f"Registered feed {ident}: {url}")
        self._feeds[ident] = descriptor
        return descriptor

    def deregister(self, ident: str) -> None:
        if self._feeds.pop(ident, None) is not None:
            logger.debug(f"Removed feed {ident}")

    def get(self, ident: str) -> Optional[FeedDescriptor]:
        return self._feeds.get(ident)

    def all(self) -> Dict[str, FeedDescriptor]:
        return dict(self._feeds)

    def __contains__(self, ident: str) -> bool:
        return ident in self._feeds

    def __len__(self) -> int:
        return len(self._feeds)


class HandlerRegistry:
    """Ordered item handlers, keyed by feed ident or the wildcard key."""

    def __init__(self):
        self._handlers: Dict[Optional[str], List[ItemHandler]] = {}

    def register(self, ident_or_handler: Union[str, None, ItemHandler], handler: Optional[ItemHandler] = None) -> None:
        """Register a handler.

        `register(handler)` files it under the wildcard key and it sees items
        from every feed; `register(ident, handler)` restricts it to one feed.
        """
        if handler is None:
            if not callable(ident_or_handler):
                raise TypeError("A handler callable is required")
            ident, handler = WILDCARD, ident_or_handler
        else:
            ident = ident_or_handler
        if not callable(handler):
            raise TypeError(f"Handler for {ident!r} is not callable")
        self._handlers.setdefault(ident, []).append(handler)

    def handlers_for(self, ident: Optional[str]) -> List[ItemHandler]:
        """Wildcard handlers first, then the ones registered for `ident`."""
        handlers = list(self._handlers.get(WILDCARD, []))
        if ident is not WILDCARD:
            handlers.extend(self._handlers.get(ident, []))
        return handlers
