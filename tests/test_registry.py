import pytest

from registry import FeedRegistry, HandlerRegistry


def test_register_overwrites_same_ident():
    feeds = FeedRegistry()
    feeds.register("news", "http://example.com/a.xml")
    feeds.register("news", "http://example.com/b.xml", {"headers": {"X-Test": "1"}})

    descriptor = feeds.get("news")
    assert len(feeds) == 1
    assert descriptor.url == "http://example.com/b.xml"
    assert descriptor.options == {"headers": {"X-Test": "1"}}
    assert descriptor.to_payload() == {
        "ident": "news",
        "url": "http://example.com/b.xml",
        "options": {"headers": {"X-Test": "1"}},
    }


def test_deregister_is_noop_when_absent():
    feeds = FeedRegistry()
    feeds.register("news", "http://example.com/feed.xml")

    feeds.deregister("missing")
    feeds.deregister("news")

    assert feeds.get("news") is None
    assert "news" not in feeds
    assert feeds.all() == {}


def test_all_returns_a_copy():
    feeds = FeedRegistry()
    feeds.register("a", "http://example.com/a")
    snapshot = feeds.all()
    snapshot.pop("a")
    assert "a" in feeds


def test_handlers_for_puts_wildcard_first():
    handlers = HandlerRegistry()

    def specific(item, ident):
        pass

    def wildcard_one(item, ident):
        pass

    def wildcard_two(item, ident):
        pass

    handlers.register("news", specific)
    handlers.register(wildcard_one)
    handlers.register(None, wildcard_two)

    assert handlers.handlers_for("news") == [wildcard_one, wildcard_two, specific]
    assert handlers.handlers_for("other") == [wildcard_one, wildcard_two]


def test_handlers_for_unknown_ident_is_empty():
    assert HandlerRegistry().handlers_for("news") == []


def test_register_rejects_non_callables():
    handlers = HandlerRegistry()
    with pytest.raises(TypeError):
        handlers.register("news")
    with pytest.raises(TypeError):
        handlers.register("news", "not a function")
