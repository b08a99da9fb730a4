import logging

import pytest

from soulspace.config import EngineConfig
from soulspace.device import OfflineOutput
from soulspace.graph import FADE_FLOOR, AudioGraph, Unit
from soulspace.registry import ActiveUnitRegistry, TimerRegistry
from soulspace.scheduler import VirtualScheduler


def _graph() -> AudioGraph:
    config = EngineConfig(sample_rate=8_000, block_size=128)
    graph = AudioGraph(OfflineOutput(), sample_rate=config.sample_rate, block_size=config.block_size)
    assert graph.activate() is not None
    return graph


def _tone(graph: AudioGraph, layer: str = "pad") -> Unit:
    osc = graph.oscillator("sine", 220.0)
    gain = graph.gain(0.5)
    osc.connect(gain)
    osc.start()
    return Unit(graph, layer, sources=(osc,), outputs=(gain,), envelopes=(gain.gain,))  # type: ignore[arg-type]


def test_fired_timer_removes_itself() -> None:
    scheduler = VirtualScheduler()
    timers = TimerRegistry(scheduler)
    fired: list[int] = []
    timers.schedule(0.5, lambda: fired.append(1), tag="bass_note")
    assert timers.count() == 1
    scheduler.advance(1.0)
    assert fired == [1]
    assert timers.count() == 0


def test_cancel_tagged_only_touches_that_tag() -> None:
    scheduler = VirtualScheduler()
    timers = TimerRegistry(scheduler)
    fired: list[str] = []
    for _ in range(3):
        timers.schedule(0.3, lambda: fired.append("arp"), tag="arpeggio_note")
    timers.schedule(0.3, lambda: fired.append("pad"), tag="pad_chord")

    assert timers.cancel_tagged("arpeggio_note") == 3
    assert timers.count("arpeggio_note") == 0
    scheduler.advance(1.0)
    assert fired == ["pad"]


def test_cancel_all_and_double_cancel() -> None:
    scheduler = VirtualScheduler()
    timers = TimerRegistry(scheduler)
    timer_id = timers.schedule(1.0, lambda: None)
    timers.schedule(2.0, lambda: None, tag="cleanup")
    assert timers.cancel_all() == 2
    assert timers.cancel(timer_id) is False
    assert len(timers) == 0
    assert scheduler.next_deadline() is None


def test_sweep_fades_and_forgets_only_matching_units() -> None:
    graph = _graph()
    units = ActiveUnitRegistry()
    pad = units.add(_tone(graph, "pad"))
    bass = units.add(_tone(graph, "bass"))

    assert units.sweep("pad", fade=0.1, stop_after=0.2) == 1
    assert units.units() == (bass,)
    assert pad.stop_time == pytest.approx(graph.current_time + 0.2)
    assert pad.envelopes[0].value_at(graph.current_time + 0.1) == pytest.approx(FADE_FLOOR)
    assert bass.stop_time == float("inf")


def test_sweep_survives_a_failing_unit(caplog: pytest.LogCaptureFixture) -> None:
    graph = _graph()
    units = ActiveUnitRegistry()
    good = units.add(_tone(graph, "heartbeat"))

    class _Broken:
        layer = "heartbeat"

        def fade_out(self, duration: float, *, stop_after: float, floor: float) -> None:
            raise RuntimeError("cannot fade")

    units.add(_Broken())  # type: ignore[arg-type]
    with caplog.at_level(logging.WARNING, logger="soulspace.registry"):
        assert units.sweep("heartbeat", fade=0.1, stop_after=0.2) == 2
    assert len(units) == 0
    assert good.stop_time < float("inf")
    assert "cannot fade" in caplog.text


def test_remove_is_idempotent() -> None:
    graph = _graph()
    units = ActiveUnitRegistry()
    unit = units.add(_tone(graph))
    assert units.remove(unit) is True
    assert units.remove(unit) is False
