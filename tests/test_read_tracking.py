from datetime import datetime, timezone

import pytest

from errors import ParseError
from fetcher import FeedReader, FetchState
from feed_parser import FeedItem, FeedMeta
from conftest import FakeSession, make_rss

FEED_URL = "http://example.com/feed.xml"
MAR_1_NOON = int(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp())
MAR_2_NOON = int(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc).timestamp())
MAR_3_NOON = int(datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc).timestamp())


def tracking_reader(db, body):
    reader = FeedReader(
        db=db,
        session=FakeSession({FEED_URL: (200, body)}),
        enable_queues=False,
        enable_read_tracking=True,
    )
    reader.feed("news", FEED_URL)
    seen = []
    reader.process(lambda item, ident: seen.append(item.guid))
    return reader, seen


@pytest.mark.asyncio
async def test_first_fetch_dispatches_everything_and_records_watermark(db, news_xml):
    reader, seen = tracking_reader(db, news_xml)

    stats = await reader.fetch("news")

    assert len(seen) == 20
    assert stats.skipped is False
    record = await db.execute('get_feed_read', url=FEED_URL)
    assert record["meta_date"] == MAR_2_NOON
    assert record["meta"]["description"] == "Google News"


@pytest.mark.asyncio
async def test_unchanged_feed_is_skipped_on_second_fetch(db, news_xml):
    reader, seen = tracking_reader(db, news_xml)
    await reader.fetch("news")
    seen.clear()

    stats = await reader.fetch("news")

    assert seen == []
    assert stats.skipped is True
    assert stats.items_seen == 20
    assert stats.items_dispatched == 0


@pytest.mark.asyncio
async def test_only_items_at_or_after_last_read_are_dispatched(db, news_xml):
    await db.execute('save_feed_read', url=FEED_URL, meta={"title": "old"}, meta_date=MAR_1_NOON)
    reader, seen = tracking_reader(db, news_xml)

    stats = await reader.fetch("news")

    # story-11 is published exactly at the watermark
    assert seen == [f"story-{i}" for i in range(1, 12)]
    assert stats.items_dispatched == 11
    record = await db.execute('get_feed_read', url=FEED_URL)
    assert record["meta_date"] == MAR_2_NOON


@pytest.mark.asyncio
async def test_older_feed_date_does_not_roll_watermark_back(db, news_xml):
    await db.execute('save_feed_read', url=FEED_URL, meta={"title": "newer"}, meta_date=MAR_3_NOON)
    reader, seen = tracking_reader(db, news_xml)

    stats = await reader.fetch("news")

    assert seen == []
    assert stats.skipped is True
    record = await db.execute('get_feed_read', url=FEED_URL)
    assert record["meta_date"] == MAR_3_NOON
    assert record["meta"]["description"] == "Google News"


@pytest.mark.asyncio
async def test_watermark_without_meta_date_falls_back_to_updated_at(db, news_xml):
    await db.execute('save_feed_read', url=FEED_URL, meta=None, meta_date=None)
    reader, seen = tracking_reader(db, news_xml)

    stats = await reader.fetch("news")

    # updated_at is "now", which is later than the fixture's channel date
    assert stats.skipped is True
    assert seen == []


@pytest.mark.asyncio
async def test_undated_items_are_dropped_once_a_watermark_exists(db):
    body = make_rss(
        [("dated", "Mon, 02 Mar 2026 10:00:00 GMT"), ("undated", None)],
        last_build="Mon, 02 Mar 2026 12:00:00 GMT",
    )
    await db.execute('save_feed_read', url=FEED_URL, meta=None, meta_date=MAR_1_NOON)
    reader, seen = tracking_reader(db, body)

    await reader.fetch("news")

    assert seen == ["dated"]


@pytest.mark.asyncio
async def test_watermark_is_written_even_when_handlers_fail(db, news_xml):
    reader = FeedReader(
        db=db,
        session=FakeSession({FEED_URL: (200, news_xml)}),
        enable_queues=False,
        enable_read_tracking=True,
    )
    reader.feed("news", FEED_URL)

    def always_fails(item, ident):
        raise RuntimeError("handler down")

    reader.process(always_fails)

    stats = await reader.fetch("news")

    assert stats.items_failed == 20
    record = await db.execute('get_feed_read', url=FEED_URL)
    assert record["meta_date"] == MAR_2_NOON


@pytest.mark.asyncio
async def test_parse_failure_leaves_watermark_untouched(db):
    reader, _ = tracking_reader(db, b"not a feed at all")

    with pytest.raises(ParseError):
        await reader.fetch("news")

    assert await db.execute('get_feed_read', url=FEED_URL) is None


@pytest.mark.asyncio
async def test_tracking_disabled_never_touches_the_database(news_xml):
    reader = FeedReader(
        session=FakeSession({FEED_URL: (200, news_xml)}),
        enable_queues=False,
        enable_read_tracking=False,
    )
    reader.feed("news", FEED_URL)

    await reader.fetch("news")
    await reader.fetch("news")

    assert reader.db is None


@pytest.mark.asyncio
async def test_reset_forgets_watermark(db, news_xml):
    reader, seen = tracking_reader(db, news_xml)
    await reader.fetch("news")

    assert await reader.reset("news") is True
    assert await reader.reset("news") is False

    seen.clear()
    await reader.fetch("news")
    assert len(seen) == 20


@pytest.mark.asyncio
async def test_reset_unknown_feed_raises(db):
    reader, _ = tracking_reader(db, b"")
    with pytest.raises(LookupError):
        await reader.reset("missing")


def test_fetch_state_without_feed_date_filters_by_item_date():
    last_read = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    state = FetchState(ident="news", url=FEED_URL, read_tracking=True, last_read=last_read)
    meta = FeedMeta()
    state.accept_meta(meta)

    older = FeedItem("a", datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc), None, None, None, meta)
    newer = FeedItem("b", datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc), None, None, None, meta)

    assert state.skip is False
    assert not state.wants(older)
    assert state.wants(newer)
