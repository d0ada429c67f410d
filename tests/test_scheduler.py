import asyncio

import pytest

from scheduler import IntervalScheduler


class CountingReader:
    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.calls = 0

    async def fetch(self, ident=None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("feed down")


@pytest.mark.asyncio
async def test_zero_interval_disables_scheduling():
    scheduler = IntervalScheduler(CountingReader(), 0)
    assert scheduler.start() is False
    assert not scheduler.running


@pytest.mark.asyncio
async def test_fires_immediately_then_on_interval():
    reader = CountingReader()
    scheduler = IntervalScheduler(reader, 0.05)

    assert scheduler.start() is True
    await asyncio.sleep(0.01)
    assert reader.calls == 1

    await asyncio.sleep(0.12)
    await scheduler.stop()

    assert 2 <= reader.calls <= 4
    assert scheduler.runs == reader.calls
    assert not scheduler.running


@pytest.mark.asyncio
async def test_slow_fetch_skips_missed_ticks():
    reader = CountingReader(delay=0.12)
    scheduler = IntervalScheduler(reader, 0.05)

    scheduler.start()
    await asyncio.sleep(0.2)
    await scheduler.stop()

    # never more than one fetch in flight, late boundaries dropped
    assert reader.calls <= 2
    assert scheduler.missed >= 1


@pytest.mark.asyncio
async def test_failing_fetch_keeps_schedule_alive():
    reader = CountingReader(fail=True)
    scheduler = IntervalScheduler(reader, 0.03)

    scheduler.start()
    await asyncio.sleep(0.08)
    assert scheduler.running
    await scheduler.stop()

    assert reader.calls >= 2


@pytest.mark.asyncio
async def test_stop_without_start_is_noop():
    await IntervalScheduler(CountingReader(), 10).stop()


@pytest.mark.asyncio
async def test_stop_lets_running_fetch_finish():
    class SlowReader:
        def __init__(self):
            self.started = 0
            self.finished = 0

        async def fetch(self, ident=None):
            self.started += 1
            await asyncio.sleep(0.1)
            self.finished += 1

    reader = SlowReader()
    scheduler = IntervalScheduler(reader, 10)

    scheduler.start()
    await asyncio.sleep(0.02)
    assert reader.started == 1

    await scheduler.stop()

    assert reader.finished == 1
    assert not scheduler.running

    await asyncio.sleep(0.05)
    assert reader.started == 1
