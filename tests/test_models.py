import asyncio

import pytest

from config import config
from models import DatabaseQueue

URL = "http://example.com/feed.xml"


@pytest.mark.asyncio
async def test_save_and_get_feed_read(db):
    assert await db.execute('get_feed_read', url=URL) is None

    await db.execute('save_feed_read', url=URL, meta={"title": "News"}, meta_date=100)
    record = await db.execute('get_feed_read', url=URL)

    assert record["url"] == URL
    assert record["meta"] == {"title": "News"}
    assert record["meta_date"] == 100
    assert record["created_at"] <= record["updated_at"]


@pytest.mark.asyncio
async def test_meta_date_only_moves_forward(db):
    await db.execute('save_feed_read', url=URL, meta={"v": 1}, meta_date=200)
    await db.execute('save_feed_read', url=URL, meta={"v": 2}, meta_date=100)

    record = await db.execute('get_feed_read', url=URL)
    assert record["meta_date"] == 200
    assert record["meta"] == {"v": 2}

    await db.execute('save_feed_read', url=URL, meta={"v": 3}, meta_date=None)
    assert (await db.execute('get_feed_read', url=URL))["meta_date"] == 200

    await db.execute('save_feed_read', url=URL, meta={"v": 4}, meta_date=300)
    assert (await db.execute('get_feed_read', url=URL))["meta_date"] == 300


@pytest.mark.asyncio
async def test_null_meta_date_is_filled_later(db):
    await db.execute('save_feed_read', url=URL, meta=None, meta_date=None)
    await db.execute('save_feed_read', url=URL, meta=None, meta_date=50)
    assert (await db.execute('get_feed_read', url=URL))["meta_date"] == 50


@pytest.mark.asyncio
async def test_list_and_delete(db):
    await db.execute('save_feed_read', url="http://a/", meta=None, meta_date=1)
    await db.execute('save_feed_read', url="http://b/", meta=None, meta_date=2)

    records = await db.execute('list_feed_reads')
    assert {r["url"] for r in records} == {"http://a/", "http://b/"}

    assert await db.execute('delete_feed_read', url="http://a/") == 1
    assert await db.execute('delete_feed_read', url="http://a/") == 0
    assert [r["url"] for r in await db.execute('list_feed_reads')] == ["http://b/"]


@pytest.mark.asyncio
async def test_private_and_unknown_operations_are_rejected(db):
    with pytest.raises(RuntimeError):
        await db.execute('_row_to_feed_read', row=None)
    with pytest.raises(RuntimeError):
        await db.execute('drop_everything')


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "idle.db"))
    with pytest.raises(RuntimeError):
        await queue.execute('list_feed_reads')


@pytest.mark.asyncio
async def test_watermarks_survive_restart(tmp_path):
    path = str(tmp_path / "persist.db")
    first = DatabaseQueue(path)
    await first.start()
    await first.execute('save_feed_read', url=URL, meta={"title": "x"}, meta_date=42)
    await first.stop()

    second = DatabaseQueue(path)
    await second.start()
    try:
        assert (await second.execute('get_feed_read', url=URL))["meta_date"] == 42
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_schema_failure_does_not_leave_callers_waiting(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "SCHEMA_FILE_PATH", str(tmp_path / "missing.sql"))
    queue = DatabaseQueue(str(tmp_path / "broken.db"))
    await queue.start()

    with pytest.raises(RuntimeError):
        await asyncio.wait_for(queue.execute('list_feed_reads'), timeout=2)

    assert not queue.running
    assert queue.conn is None
