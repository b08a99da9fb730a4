import math

import numpy as np
import pytest

from soulspace.device import OfflineOutput
from soulspace.errors import DeviceUnavailableError
from soulspace.graph import AnalysisTap, AudioGraph, AudioParam, Unit

SR = 8_000


def _graph(block_size: int = 256) -> tuple[AudioGraph, OfflineOutput]:
    output = OfflineOutput()
    graph = AudioGraph(output, sample_rate=SR, block_size=block_size, fft_size=1024)
    assert graph.activate() is graph.tap
    return graph, output


def _param(default: float = 0.0) -> AudioParam:
    return AudioParam(default, clock=lambda: 0.0)


class TestAudioParam:
    def test_linear_ramp_starts_from_previous_event(self) -> None:
        param = _param()
        param.set_value_at_time(0.0, 1.0)
        param.linear_ramp_to_value_at_time(1.0, 2.0)
        assert param.value_at(0.5) == 0.0
        assert param.value_at(1.5) == pytest.approx(0.5)
        assert param.value_at(3.0) == pytest.approx(1.0)

    def test_exponential_ramp_is_geometric(self) -> None:
        param = _param()
        param.set_value_at_time(1.0, 0.0)
        param.exponential_ramp_to_value_at_time(0.001, 1.0)
        assert param.value_at(0.5) == pytest.approx(math.sqrt(0.001))
        assert param.value_at(2.0) == pytest.approx(0.001)

    def test_exponential_ramp_rejects_zero(self) -> None:
        with pytest.raises(ValueError):
            _param().exponential_ramp_to_value_at_time(0.0, 1.0)

    def test_set_target_approaches_exponentially(self) -> None:
        param = _param()
        param.set_target_at_time(1.0, 0.0, 0.1)
        assert param.value_at(0.1) == pytest.approx(1 - math.exp(-1))
        assert param.value_at(2.0) == pytest.approx(1.0, abs=1e-6)

    def test_target_after_target_is_continuous(self) -> None:
        param = _param(0.7)
        param.set_target_at_time(0.0, 0.0, 0.015)
        before = param.value_at(0.05)
        param.set_target_at_time(1.0, 0.05, 0.015)
        assert param.value_at(0.05) == pytest.approx(before)

    def test_cancel_and_hold_freezes_mid_ramp(self) -> None:
        param = _param()
        param.set_value_at_time(0.0, 0.0)
        param.linear_ramp_to_value_at_time(1.0, 1.0)
        param.cancel_and_hold_at_time(0.25)
        assert param.value_at(0.25) == pytest.approx(0.25)
        assert param.value_at(5.0) == pytest.approx(0.25)

    def test_cancel_scheduled_values_drops_later_events(self) -> None:
        param = _param(0.5)
        param.set_value_at_time(0.2, 1.0)
        param.set_value_at_time(0.9, 2.0)
        param.cancel_scheduled_values(1.5)
        assert [event.value for event in param.events] == [0.2]

    def test_long_timelines_are_compacted_without_changing_the_value(self) -> None:
        now = [0.0]
        param = AudioParam(0.7, clock=lambda: now[0])
        for step in range(100):
            now[0] = step * 1.0
            param.set_target_at_time(0.5 if step % 2 else 0.9, now[0], 0.015)
        assert len(param.events) <= 33
        assert param.value_at(now[0] + 1.0) == pytest.approx(0.5, abs=1e-6)

    def test_vectorized_values_match_scalar(self) -> None:
        param = _param()
        param.set_value_at_time(0.0, 0.0)
        param.linear_ramp_to_value_at_time(0.15, 0.1)
        param.linear_ramp_to_value_at_time(0.075, 1.0)
        param.exponential_ramp_to_value_at_time(0.001, 6.0)
        times = np.linspace(0.0, 7.0, 57)
        expected = np.array([param.value_at(float(t)) for t in times])
        assert np.allclose(param.values(times), expected)


def test_sine_oscillator_has_expected_pitch() -> None:
    graph, output = _graph()
    osc = graph.oscillator("sine", 1000.0)
    gain = graph.gain(1.0)
    osc.connect(gain)
    osc.start(0.0)
    graph.add_unit(Unit(graph, "pad", sources=(osc,), outputs=(gain,), envelopes=(gain.gain,)))

    audio = np.concatenate([output.pull(256) for _ in range(SR // 256)])
    spectrum = np.abs(np.fft.rfft(audio))
    freqs = np.fft.rfftfreq(audio.size, 1 / SR)
    assert freqs[int(np.argmax(spectrum))] == pytest.approx(1000.0, abs=2.0)
    assert np.max(np.abs(audio)) <= 1.0 + 1e-6


@pytest.mark.parametrize("waveform", ["sine", "triangle", "square", "sawtooth"])
def test_every_waveform_stays_in_range(waveform: str) -> None:
    graph, output = _graph()
    osc = graph.oscillator(waveform, 220.0)  # type: ignore[arg-type]
    osc.start(0.0)
    graph.add_unit(Unit(graph, "pad", sources=(osc,), outputs=(osc,), envelopes=()))
    audio = output.pull(2048)
    assert np.max(np.abs(audio)) <= 1.0 + 1e-6
    assert np.max(np.abs(audio)) > 0.5


def test_lowpass_attenuates_high_frequencies() -> None:
    def _rms(cutoff: float | None) -> float:
        graph, output = _graph()
        osc = graph.oscillator("sine", 3000.0)
        osc.start(0.0)
        tail = osc if cutoff is None else osc.connect(graph.lowpass(cutoff, q=0.7))
        graph.add_unit(Unit(graph, "pad", sources=(osc,), outputs=(tail,), envelopes=()))
        audio = output.pull(4096)[1024:]
        return float(np.sqrt(np.mean(audio.astype(np.float64) ** 2)))

    assert _rms(200.0) < 0.05 * _rms(None)


def test_delay_shifts_signal() -> None:
    graph, output = _graph()
    impulse = np.zeros(SR)
    impulse[0] = 1.0
    source = graph.buffer_source(impulse)
    delay = graph.delay(0.5)
    source.connect(delay)
    source.start(0.0)
    graph.add_unit(Unit(graph, "melody", sources=(source,), outputs=(delay,), envelopes=()))
    audio = np.concatenate([output.pull(500) for _ in range(10)])
    assert int(np.argmax(audio)) == SR // 2


def test_stopped_units_are_dropped_after_their_tail() -> None:
    graph, output = _graph()
    osc = graph.oscillator("sine", 220.0)
    osc.start(0.0)
    osc.stop(0.1)
    graph.add_unit(Unit(graph, "arpeggio", sources=(osc,), outputs=(osc,), envelopes=(), tail=0.05))
    output.pull(800)
    assert graph.unit_count == 1
    output.pull(800)
    assert graph.unit_count == 0
    assert graph.current_time == pytest.approx(0.2)


def test_master_gain_scales_everything() -> None:
    graph, output = _graph()
    graph.master_gain.value = 0.0
    osc = graph.oscillator("square", 110.0)
    osc.start(0.0)
    graph.add_unit(Unit(graph, "pad", sources=(osc,), outputs=(osc,), envelopes=()))
    assert not np.any(output.pull(512))


def test_mute_ramp_never_steps() -> None:
    graph, output = _graph()
    graph.master_gain.value = 0.8
    output.pull(256)
    graph.ramp_master(0.0)
    now = graph.current_time
    values = graph.master_gain.values(now + np.arange(int(0.3 * SR)) / SR)
    assert values[0] == pytest.approx(0.8)
    assert values[-1] == 0.0
    assert np.max(np.abs(np.diff(values))) < 0.01


def test_suspended_output_keeps_the_clock() -> None:
    graph, output = _graph()
    output.pull(256)
    assert graph.suspend()
    assert not np.any(output.pull(256))
    assert graph.current_time == pytest.approx(256 / SR)
    graph.resume()
    assert graph.state == "running"


def test_unavailable_device_leaves_graph_uninitialized() -> None:
    class _Missing(OfflineOutput):
        def open(self, render, *, sample_rate, block_size):  # type: ignore[no-untyped-def]
            raise DeviceUnavailableError("no audio here")

    graph = AudioGraph(_Missing(), sample_rate=SR)
    assert graph.activate() is None
    assert not graph.initialized
    assert graph.state == "closed"
    assert graph.set_volume(0.5, muted=False) is False
    assert graph.ramp_master(0.0) is False
    assert graph.suspend() is False
    with pytest.raises(DeviceUnavailableError):
        graph.resume()


class TestAnalysisTap:
    def test_silence(self) -> None:
        tap = AnalysisTap(1024)
        spectrum = tap.frequency_data()
        assert spectrum.shape == (512,)
        assert spectrum.dtype == np.uint8
        assert not spectrum.any()
        waveform = tap.time_domain_data()
        assert waveform.shape == (1024,)
        assert set(waveform.tolist()) == {128}

    def test_tone_peaks_in_its_bin(self) -> None:
        tap = AnalysisTap(1024)
        t = np.arange(4096) / SR
        tone = 0.5 * np.sin(2 * np.pi * 1000.0 * t)
        tap.push(tone)
        for _ in range(20):
            spectrum = tap.frequency_data()
        assert int(np.argmax(spectrum)) == pytest.approx(1000.0 / (SR / 1024), abs=1)
        assert spectrum.max() == 255

    def test_short_pushes_roll_the_window(self) -> None:
        tap = AnalysisTap(1024)
        tap.push(np.ones(100))
        waveform = tap.time_domain_data()
        assert (waveform[-100:] == 255).all()
        assert (waveform[:-100] == 128).all()
