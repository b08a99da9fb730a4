"""Unit builders, one per layer.

Each builder wires a few nodes, schedules their envelopes relative to the
graph's current time, starts the sources and hands the unit to the graph.
Nothing here reschedules; that is the layers' job.
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache

import numpy as np
from scipy.signal import lfilter  # type: ignore[import]

from .graph import AudioGraph, AudioParam, FloatArray, ScheduledSource, Unit
from .schema import Waveform

PAD_DETUNE = 1.003
PAD_ATTACK = (0.08, 4.0)
PAD_PARTNER_ATTACK = (0.06, 4.5)
PAD_Q = 1.0

BASS_STOP = 7.0
BASS_DRIVE = 2.0

MELODY_STOP = 3.0
MELODY_ECHO_SECONDS = 0.5
MELODY_ECHO_GAIN = 0.4

TEXTURE_SECONDS = 4.0
TEXTURE_CUTOFF = 3000.0
TEXTURE_Q = 0.7
TEXTURE_LEVEL = 0.03

HEARTBEAT_PITCH = (90.0, 60.0)
HEARTBEAT_STOP = 0.3

ARPEGGIO_CUTOFF = 4000.0
ARPEGGIO_Q = 0.5
ARPEGGIO_PEAK = 0.1
ARPEGGIO_HOLD = 0.2
ARPEGGIO_NOTE = 0.25
ARPEGGIO_STOP = 0.35


@lru_cache(maxsize=8)
def distortion_curve(amount: float = BASS_DRIVE, samples: int = 44_100) -> FloatArray:
    """Soft-clipping transfer curve over [-1, 1]."""
    x = np.arange(samples, dtype=np.float64) * 2 / samples - 1
    degree = np.pi / 180
    curve = (3 + amount) * x * 20 * degree / (np.pi + amount * np.abs(x))
    curve.setflags(write=False)
    return curve


def noise_buffer(rng: np.random.Generator, sample_rate: int, seconds: float = TEXTURE_SECONDS) -> FloatArray:
    """Brown-ish noise: leaky-integrated white noise, scaled down."""
    white = rng.random(int(sample_rate * seconds)) * 2 - 1
    # y[n] = (0.97 * y[n-1] + 0.02 * w[n]) / 1.02
    brown = lfilter([0.02 / 1.02], [1.0, -0.97 / 1.02], white)
    return np.asarray(brown, dtype=np.float64) * 0.3


def pad_chord(
    graph: AudioGraph,
    chord: Sequence[float],
    *,
    waveform: Waveform,
    cutoff: float,
) -> Unit:
    with graph.lock:
        now = graph.current_time
        shared_filter = graph.lowpass(cutoff, q=PAD_Q)
        sources: list[ScheduledSource] = []
        envelopes: list[AudioParam] = []
        for frequency in chord:
            primary = graph.oscillator(waveform, frequency)
            partner = graph.oscillator("sine", frequency * PAD_DETUNE)
            for source, (peak, attack) in ((primary, PAD_ATTACK), (partner, PAD_PARTNER_ATTACK)):
                gain = graph.gain(0.0)
                source.connect(gain).connect(shared_filter)
                gain.gain.set_value_at_time(0.0, now)
                gain.gain.linear_ramp_to_value_at_time(peak, now + attack)
                source.start(now)
                sources.append(source)
                envelopes.append(gain.gain)
        unit = Unit(graph, "pad", sources=sources, outputs=(shared_filter,), envelopes=envelopes)
        return graph.add_unit(unit)


def bass_note(graph: AudioGraph, frequency: float) -> Unit:
    with graph.lock:
        now = graph.current_time
        root = graph.oscillator("sine", frequency)
        sub = graph.oscillator("sine", frequency / 2)
        root_gain = graph.gain(0.0)
        sub_gain = graph.gain(0.0)
        shaper = graph.waveshaper(distortion_curve())
        root.connect(root_gain).connect(shaper)
        sub.connect(sub_gain).connect(shaper)

        envelope = root_gain.gain
        envelope.set_value_at_time(0.0, now)
        envelope.linear_ramp_to_value_at_time(0.15, now + 0.1)
        envelope.linear_ramp_to_value_at_time(0.075, now + 1.0)
        envelope.exponential_ramp_to_value_at_time(0.001, now + 6.0)

        sub_envelope = sub_gain.gain
        sub_envelope.set_value_at_time(0.0, now)
        sub_envelope.linear_ramp_to_value_at_time(0.1, now + 0.15)
        sub_envelope.exponential_ramp_to_value_at_time(0.001, now + BASS_STOP)

        for source in (root, sub):
            source.start(now)
            source.stop(now + BASS_STOP)
        unit = Unit(
            graph,
            "bass",
            sources=(root, sub),
            outputs=(shaper,),
            envelopes=(envelope, sub_envelope),
        )
        return graph.add_unit(unit)


def melody_note(graph: AudioGraph, frequency: float) -> Unit:
    with graph.lock:
        now = graph.current_time
        osc = graph.oscillator("sine", frequency)
        gain = graph.gain(0.0)
        echo = graph.delay(MELODY_ECHO_SECONDS)
        echo_gain = graph.gain(MELODY_ECHO_GAIN)
        osc.connect(gain)
        gain.connect(echo).connect(echo_gain)

        envelope = gain.gain
        envelope.set_value_at_time(0.0, now)
        envelope.linear_ramp_to_value_at_time(0.18, now + 0.1)
        envelope.linear_ramp_to_value_at_time(0.099, now + 0.3)
        envelope.linear_ramp_to_value_at_time(0.001, now + MELODY_STOP)

        osc.start(now)
        osc.stop(now + MELODY_STOP)
        unit = Unit(
            graph,
            "melody",
            sources=(osc,),
            outputs=(gain, echo_gain),
            envelopes=(envelope,),
            tail=MELODY_ECHO_SECONDS + 0.05,
        )
        return graph.add_unit(unit)


def texture_loop(graph: AudioGraph, buffer: FloatArray) -> Unit:
    with graph.lock:
        now = graph.current_time
        source = graph.buffer_source(buffer, loop=True)
        lowpass = graph.lowpass(TEXTURE_CUTOFF, q=TEXTURE_Q)
        gain = graph.gain(TEXTURE_LEVEL)
        source.connect(lowpass).connect(gain)
        source.start(now)
        unit = Unit(graph, "texture", sources=(source,), outputs=(gain,), envelopes=(gain.gain,))
        return graph.add_unit(unit)


def heartbeat_pulse(graph: AudioGraph, offset: float) -> Unit:
    with graph.lock:
        start = graph.current_time + offset
        osc = graph.oscillator("triangle", HEARTBEAT_PITCH[1])
        gain = graph.gain(0.0)
        osc.connect(gain)

        high, low = HEARTBEAT_PITCH
        osc.frequency.set_value_at_time(high, start)
        osc.frequency.exponential_ramp_to_value_at_time(low, start + 0.05)

        envelope = gain.gain
        envelope.set_value_at_time(0.0, start)
        envelope.linear_ramp_to_value_at_time(0.15, start + 0.01)
        envelope.exponential_ramp_to_value_at_time(0.001, start + 0.2)

        osc.start(start)
        osc.stop(start + HEARTBEAT_STOP)
        unit = Unit(graph, "heartbeat", sources=(osc,), outputs=(gain,), envelopes=(envelope,))
        return graph.add_unit(unit)


def arpeggio_note(graph: AudioGraph, frequency: float) -> Unit:
    with graph.lock:
        now = graph.current_time
        osc = graph.oscillator("sine", frequency)
        lowpass = graph.lowpass(ARPEGGIO_CUTOFF, q=ARPEGGIO_Q)
        gain = graph.gain(0.0)
        osc.connect(lowpass).connect(gain)

        envelope = gain.gain
        envelope.set_value_at_time(0.0, now)
        envelope.linear_ramp_to_value_at_time(ARPEGGIO_PEAK, now + 0.02)
        envelope.set_value_at_time(ARPEGGIO_PEAK, now + ARPEGGIO_HOLD)
        envelope.linear_ramp_to_value_at_time(0.0001, now + ARPEGGIO_NOTE)

        osc.start(now)
        osc.stop(now + ARPEGGIO_STOP)
        unit = Unit(graph, "arpeggio", sources=(osc,), outputs=(gain,), envelopes=(envelope,))
        return graph.add_unit(unit)
