import asyncio
import logging

import pytest

from soulspace.scheduler import LoopScheduler, VirtualScheduler


def test_virtual_scheduler_fires_in_time_then_insertion_order() -> None:
    scheduler = VirtualScheduler()
    fired: list[str] = []
    scheduler.call_later(2.0, lambda: fired.append("late"))
    scheduler.call_later(1.0, lambda: fired.append("first"))
    scheduler.call_later(1.0, lambda: fired.append("second"))

    assert scheduler.advance(1.5) == 2
    assert fired == ["first", "second"]
    assert scheduler.time() == 1.5
    scheduler.advance(1.0)
    assert fired == ["first", "second", "late"]


def test_cancelled_timers_never_fire() -> None:
    scheduler = VirtualScheduler()
    fired: list[int] = []
    handle = scheduler.call_later(0.5, lambda: fired.append(1))
    handle.cancel()
    assert handle.cancelled()
    assert scheduler.next_deadline() is None
    scheduler.advance(1.0)
    assert fired == []


def test_callbacks_can_schedule_within_the_same_advance() -> None:
    scheduler = VirtualScheduler()
    fired: list[float] = []

    def _tick() -> None:
        fired.append(scheduler.time())
        if len(fired) < 3:
            scheduler.call_later(0.3, _tick)

    scheduler.call_later(0.0, _tick)
    scheduler.advance(1.0)
    assert fired == pytest.approx([0.0, 0.3, 0.6])


def test_failing_callback_is_logged_and_clock_keeps_going(caplog: pytest.LogCaptureFixture) -> None:
    scheduler = VirtualScheduler()
    fired: list[str] = []

    def _broken() -> None:
        raise RuntimeError("broken timer")

    scheduler.call_later(0.1, _broken)
    scheduler.call_later(0.2, lambda: fired.append("ok"))
    with caplog.at_level(logging.ERROR, logger="soulspace.scheduler"):
        scheduler.advance(1.0)
    assert fired == ["ok"]
    assert "broken timer" in caplog.text


@pytest.mark.asyncio
async def test_loop_scheduler_uses_running_loop() -> None:
    scheduler = LoopScheduler()
    scheduler.bind()
    fired = asyncio.Event()
    scheduler.call_later(0.01, fired.set)
    await asyncio.wait_for(fired.wait(), timeout=1.0)
    assert scheduler.time() == pytest.approx(asyncio.get_running_loop().time(), abs=0.5)
