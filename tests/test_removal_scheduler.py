"""Tests for DeferredRemovalScheduler."""

import asyncio

import pytest

from removal_scheduler import DeferredRemovalScheduler

GRACE = 0.05


class Recorder:
    """Expiry callback that records the line ids it was called with."""

    def __init__(self, result=True):
        self.calls = []
        self.result = result

    def __call__(self, line_id):
        self.calls.append(line_id)
        return self.result


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def scheduler(recorder):
    return DeferredRemovalScheduler(recorder, grace_period_seconds=GRACE, cart_id="cart_test")


def test_negative_grace_period_rejected():
    with pytest.raises(ValueError):
        DeferredRemovalScheduler(grace_period_seconds=-1)


def test_arm_outside_event_loop_raises(scheduler):
    with pytest.raises(RuntimeError):
        scheduler.arm("line_1")


def test_cancel_with_nothing_pending_is_noop(scheduler):
    assert scheduler.cancel("line_1") is False
    assert scheduler.cancel_all() == 0


@pytest.mark.asyncio
async def test_timer_fires_after_grace(scheduler, recorder):
    scheduler.arm("line_1")
    assert scheduler.is_pending("line_1")

    await asyncio.sleep(GRACE * 3)

    assert recorder.calls == ["line_1"]
    assert not scheduler.is_pending("line_1")
    assert scheduler.pending_count() == 0


@pytest.mark.asyncio
async def test_timer_does_not_fire_early(scheduler, recorder):
    scheduler.arm("line_1", grace_duration=GRACE * 10)

    await asyncio.sleep(GRACE)

    assert recorder.calls == []
    assert scheduler.is_pending("line_1")
    await scheduler.drain()


@pytest.mark.asyncio
async def test_rearm_replaces_instead_of_stacking(scheduler, recorder):
    first = scheduler.arm("line_1")
    second = scheduler.arm("line_1")

    assert first is not second
    assert scheduler.pending_count() == 1

    await asyncio.sleep(0)
    assert first.task.done()

    await asyncio.sleep(GRACE * 3)

    assert recorder.calls == ["line_1"]


@pytest.mark.asyncio
async def test_rearm_restarts_the_grace_window(scheduler, recorder):
    scheduler.arm("line_1", grace_duration=0.2)
    await asyncio.sleep(0.12)
    scheduler.arm("line_1", grace_duration=0.2)
    await asyncio.sleep(0.12)

    # The first timer would have fired by now
    assert recorder.calls == []

    await asyncio.sleep(0.2)
    assert recorder.calls == ["line_1"]


@pytest.mark.asyncio
async def test_cancel_prevents_fire(scheduler, recorder):
    scheduler.arm("line_1")

    assert scheduler.cancel("line_1") is True
    assert scheduler.cancel("line_1") is False

    await asyncio.sleep(GRACE * 3)
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_cancel_all(scheduler, recorder):
    for line_id in ("line_1", "line_2", "line_3"):
        scheduler.arm(line_id)

    assert scheduler.cancel_all() == 3

    await asyncio.sleep(GRACE * 3)
    assert recorder.calls == []
    assert scheduler.get_stats()["pending"] == []


@pytest.mark.asyncio
async def test_timers_are_independent_per_line(scheduler, recorder):
    scheduler.arm("line_1")
    scheduler.arm("line_2")
    scheduler.cancel("line_1")

    await asyncio.sleep(GRACE * 3)

    assert recorder.calls == ["line_2"]


@pytest.mark.asyncio
async def test_stale_entry_does_not_fire(scheduler, recorder):
    entry = scheduler.arm("line_1")
    scheduler.cancel("line_1")

    # Simulate a timer whose sleep finished just as it was cancelled
    scheduler._fire(entry)

    assert recorder.calls == []


@pytest.mark.asyncio
async def test_callback_error_is_contained(recorder):
    def explode(line_id):
        raise KeyError(line_id)

    scheduler = DeferredRemovalScheduler(explode, grace_period_seconds=GRACE)
    scheduler.arm("line_1")
    await asyncio.sleep(GRACE * 3)

    assert scheduler.pending_count() == 0

    # Scheduler is still usable after a failing callback
    scheduler.bind(recorder)
    scheduler.arm("line_2")
    await asyncio.sleep(GRACE * 3)

    assert recorder.calls == ["line_2"]


@pytest.mark.asyncio
async def test_unbound_scheduler_skips_fire():
    scheduler = DeferredRemovalScheduler(grace_period_seconds=GRACE)
    scheduler.arm("line_1")

    await asyncio.sleep(GRACE * 3)

    assert scheduler.pending_count() == 0


@pytest.mark.asyncio
async def test_drain_waits_for_cancelled_tasks(scheduler, recorder):
    entries = [scheduler.arm(f"line_{i}", grace_duration=10) for i in range(3)]

    await scheduler.drain()

    assert all(entry.task.done() for entry in entries)
    assert scheduler.pending_count() == 0
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_fire_at_reports_deadline(scheduler):
    loop = asyncio.get_running_loop()
    before = loop.time()

    scheduler.arm("line_1")

    assert scheduler.fire_at("line_1") >= before + GRACE
    assert scheduler.fire_at("line_2") is None
    await scheduler.drain()
