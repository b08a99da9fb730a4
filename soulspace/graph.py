"""
Mono render graph.

1. AudioParam: automation timelines (set / linear / exponential / target)
2. Nodes: oscillators, buffer sources, gain, lowpass, waveshaper, delay
3. Unit: one short-lived voice made of a few nodes
4. AudioGraph: master gain, analysis tap and the block render loop

Rendering is pull-based: the device asks for ``frames`` samples, every live
unit renders that block, the sum goes through the master gain and out.
"""

from __future__ import annotations

import bisect
import logging
import math
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Literal, TypeAlias

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter, sawtooth, square  # type: ignore[import]

from .config import BLOCK_SIZE, FFT_SIZE, SAMPLE_RATE
from .device import OutputDevice
from .errors import DeviceSuspendedError, DeviceUnavailableError
from .logging_utils import debug_enabled
from .schema import DeviceState, LayerKind, Waveform

_LOGGER = logging.getLogger("soulspace.graph")

FloatArray: TypeAlias = NDArray[np.float64]

# Time constant used when the master volume follows a new value.
VOLUME_TIME_CONSTANT = 0.015
MUTE_RAMP_SECONDS = 0.2
FADE_FLOOR = 0.0001

_COMPACT_AFTER = 32

# =============================================================================
# PART 1: AUTOMATION
# =============================================================================

EventKind = Literal["set", "linear", "exponential", "target"]
SegmentKind = Literal["hold", "linear", "exponential", "target"]


@dataclass(frozen=True, slots=True)
class AutomationEvent:
    kind: EventKind
    time: float
    value: float
    time_constant: float = 0.0


@dataclass(frozen=True, slots=True)
class _Segment:
    kind: SegmentKind
    start: float
    start_value: float
    end: float = math.inf
    end_value: float = 0.0
    time_constant: float = 0.0

    def evaluate(self, times: FloatArray) -> FloatArray:
        match self.kind:
            case "hold":
                return np.full(times.shape, self.start_value)
            case "linear":
                frac = np.clip((times - self.start) / (self.end - self.start), 0.0, 1.0)
                return self.start_value + (self.end_value - self.start_value) * frac
            case "exponential":
                # Undefined across zero or a sign change: hold until the end time.
                if self.start_value * self.end_value <= 0:
                    return np.full(times.shape, self.start_value)
                frac = np.clip((times - self.start) / (self.end - self.start), 0.0, 1.0)
                return self.start_value * (self.end_value / self.start_value) ** frac
            case _:
                if self.time_constant <= 0:
                    return np.full(times.shape, self.end_value)
                elapsed = np.maximum(times - self.start, 0.0)
                decay = np.exp(-elapsed / self.time_constant)
                return self.end_value + (self.start_value - self.end_value) * decay


class AudioParam:
    """A value that can be automated over graph time.

    Ramps start from the previous event's time and value. Every mutation
    happens under the graph lock so the render thread never sees a
    half-edited timeline.
    """

    def __init__(
        self,
        default: float,
        *,
        clock: Callable[[], float],
        lock: threading.RLock | None = None,
    ) -> None:
        self._default = float(default)
        self._clock = clock
        self._lock = lock or threading.RLock()
        self._events: list[AutomationEvent] = []
        self._segments: list[_Segment] | None = None
        self._starts: FloatArray | None = None

    @property
    def events(self) -> tuple[AutomationEvent, ...]:
        with self._lock:
            return tuple(self._events)

    @property
    def default_value(self) -> float:
        return self._default

    @property
    def value(self) -> float:
        return self.value_at(self._clock())

    @value.setter
    def value(self, value: float) -> None:
        with self._lock:
            self._default = float(value)
            if self._events:
                self.set_value_at_time(value, self._clock())
            else:
                self._invalidate()

    def set_value_at_time(self, value: float, when: float) -> AudioParam:
        return self._insert(AutomationEvent("set", float(when), float(value)))

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> AudioParam:
        return self._insert(AutomationEvent("linear", float(end_time), float(value)))

    def exponential_ramp_to_value_at_time(self, value: float, end_time: float) -> AudioParam:
        if value == 0:
            raise ValueError("Exponential ramps cannot target zero")
        return self._insert(AutomationEvent("exponential", float(end_time), float(value)))

    def set_target_at_time(self, target: float, start_time: float, time_constant: float) -> AudioParam:
        if time_constant < 0:
            raise ValueError("time_constant must be non-negative")
        return self._insert(
            AutomationEvent("target", float(start_time), float(target), float(time_constant))
        )

    def cancel_scheduled_values(self, cancel_time: float) -> AudioParam:
        with self._lock:
            self._events = [event for event in self._events if event.time < cancel_time]
            self._invalidate()
        return self

    def cancel_and_hold_at_time(self, when: float) -> AudioParam:
        """Freeze the param at whatever value it has at ``when``."""
        with self._lock:
            held = self.value_at(when)
            self.cancel_scheduled_values(when)
            return self.set_value_at_time(held, when)

    def value_at(self, when: float) -> float:
        return float(self.values(np.array([when], dtype=np.float64))[0])

    def values(self, times: FloatArray) -> FloatArray:
        with self._lock:
            segments, starts = self._timeline()
        if len(segments) == 1:
            return segments[0].evaluate(times)
        index = np.searchsorted(starts, times, side="right") - 1
        out = np.empty(times.shape, dtype=np.float64)
        for position in np.unique(index):
            mask = index == position
            out[mask] = segments[int(position)].evaluate(times[mask])
        return out

    def _insert(self, event: AutomationEvent) -> AudioParam:
        with self._lock:
            index = bisect.bisect_right([item.time for item in self._events], event.time)
            self._events.insert(index, event)
            self._invalidate()
            self._compact(self._clock())
        return self

    def _invalidate(self) -> None:
        self._segments = None
        self._starts = None

    def _timeline(self) -> tuple[list[_Segment], FloatArray]:
        if self._segments is None or self._starts is None:
            self._segments = self._build_segments()
            self._starts = np.array([segment.start for segment in self._segments])
        return self._segments, self._starts

    def _build_segments(self) -> list[_Segment]:
        segments = [_Segment("hold", -math.inf, self._default)]
        for event in self._events:
            current = segments[-1]
            if event.kind == "set":
                segments.append(_Segment("hold", event.time, event.value))
            elif event.kind == "target":
                start_value = float(current.evaluate(np.array([event.time]))[0])
                segments.append(
                    _Segment(
                        "target",
                        event.time,
                        start_value,
                        end_value=event.value,
                        time_constant=event.time_constant,
                    )
                )
            elif math.isinf(current.start) or event.time <= current.start:
                segments.append(_Segment("hold", max(event.time, current.start), event.value))
            else:
                segments[-1] = _Segment(
                    event.kind,
                    current.start,
                    current.start_value,
                    end=event.time,
                    end_value=event.value,
                )
                segments.append(_Segment("hold", event.time, event.value))
        return segments

    def _compact(self, now: float) -> None:
        # Long-lived params (the master gain) would otherwise grow forever.
        if len(self._events) <= _COMPACT_AFTER:
            return
        segments, starts = self._timeline()
        current = segments[int(np.searchsorted(starts, now, side="right")) - 1]
        if current.kind in ("linear", "exponential") or math.isinf(current.start):
            return
        future = [event for event in self._events if event.time > now]
        if future and future[0].kind in ("linear", "exponential"):
            return
        if current.kind == "target":
            self._events = [
                AutomationEvent("set", current.start, current.start_value),
                AutomationEvent("target", current.start, current.end_value, current.time_constant),
                *future,
            ]
        else:
            self._events = [AutomationEvent("set", now, current.start_value), *future]
        self._invalidate()


# =============================================================================
# PART 2: NODES
# =============================================================================


class _Block:
    __slots__ = ("index", "frames", "sample_rate", "start", "end", "times")

    def __init__(self, index: int, start_frame: int, frames: int, sample_rate: int) -> None:
        self.index = index
        self.frames = frames
        self.sample_rate = sample_rate
        self.start = start_frame / sample_rate
        self.end = (start_frame + frames) / sample_rate
        self.times = (start_frame + np.arange(frames, dtype=np.float64)) / sample_rate


class AudioNode:
    def __init__(self, graph: AudioGraph) -> None:
        self.graph = graph
        self._inputs: list[AudioNode] = []
        self._rendered_block = -1
        self._output: FloatArray | None = None

    def connect(self, destination: AudioNode) -> AudioNode:
        destination._inputs.append(self)
        return destination

    def output(self, block: _Block) -> FloatArray:
        # Stateful nodes (phase, filter memory, delay line) must run once per block.
        if self._output is None or self._rendered_block != block.index:
            self._output = self._process(block)
            self._rendered_block = block.index
        return self._output

    def _input_mix(self, block: _Block) -> FloatArray:
        total = np.zeros(block.frames, dtype=np.float64)
        for node in self._inputs:
            total += node.output(block)
        return total

    def _process(self, block: _Block) -> FloatArray:
        raise NotImplementedError


class ScheduledSource(AudioNode):
    """Node that only produces sound between its start and stop times."""

    def __init__(self, graph: AudioGraph) -> None:
        super().__init__(graph)
        self.start_time: float | None = None
        self.stop_time = math.inf

    def start(self, when: float | None = None) -> None:
        if self.start_time is not None:
            raise RuntimeError("Source already started")
        self.start_time = self.graph.current_time if when is None else float(when)

    def stop(self, when: float | None = None) -> None:
        if self.start_time is None:
            raise RuntimeError("Source stopped before it was started")
        # A later stop call replaces the earlier one.
        self.stop_time = self.graph.current_time if when is None else float(when)

    def _active(self, block: _Block) -> NDArray[np.bool_]:
        if self.start_time is None:
            return np.zeros(block.frames, dtype=bool)
        return (block.times >= self.start_time) & (block.times < self.stop_time)


def _triangle(phase: FloatArray) -> FloatArray:
    return sawtooth(phase + np.pi / 2, width=0.5)


def _sawtooth(phase: FloatArray) -> FloatArray:
    return sawtooth(phase + np.pi)


# Every shape starts at zero on a rising edge (square aside).
WAVE_SHAPES: Mapping[Waveform, Callable[[FloatArray], FloatArray]] = MappingProxyType(
    {
        "sine": np.sin,
        "triangle": _triangle,
        "square": square,
        "sawtooth": _sawtooth,
    }
)


class Oscillator(ScheduledSource):
    def __init__(self, graph: AudioGraph, waveform: Waveform, frequency: float) -> None:
        super().__init__(graph)
        if waveform not in WAVE_SHAPES:
            raise ValueError(f"Unknown waveform: {waveform}")
        self.waveform: Waveform = waveform
        self.frequency = graph.param(frequency)
        self._phase = 0.0

    def _process(self, block: _Block) -> FloatArray:
        active = self._active(block)
        if not active.any():
            return np.zeros(block.frames, dtype=np.float64)
        step = 2 * np.pi * self.frequency.values(block.times) / block.sample_rate * active
        phase = self._phase + np.cumsum(step) - step
        self._phase = float((phase[-1] + step[-1]) % (2 * np.pi))
        return WAVE_SHAPES[self.waveform](phase) * active


class BufferSource(ScheduledSource):
    def __init__(self, graph: AudioGraph, buffer: FloatArray, *, loop: bool = False) -> None:
        super().__init__(graph)
        self.buffer = np.asarray(buffer, dtype=np.float64)
        self.loop = loop
        self._position = 0

    def _process(self, block: _Block) -> FloatArray:
        out = np.zeros(block.frames, dtype=np.float64)
        active = self._active(block)
        count = int(active.sum())
        if count == 0 or self.buffer.size == 0:
            return out
        index = self._position + np.arange(count)
        if self.loop:
            out[active] = self.buffer[index % self.buffer.size]
        else:
            played = np.zeros(count, dtype=np.float64)
            inside = index < self.buffer.size
            played[inside] = self.buffer[index[inside]]
            out[active] = played
        self._position += count
        if self.loop:
            self._position %= self.buffer.size
        return out


class Gain(AudioNode):
    def __init__(self, graph: AudioGraph, value: float = 1.0) -> None:
        super().__init__(graph)
        self.gain = graph.param(value)

    def _process(self, block: _Block) -> FloatArray:
        return self._input_mix(block) * self.gain.values(block.times)


@lru_cache(maxsize=256)
def _lowpass_coefficients(
    cutoff: float, q: float, sample_rate: int
) -> tuple[tuple[float, float, float], tuple[float, float, float]]:
    """RBJ cookbook lowpass biquad, normalised so a0 == 1."""
    cutoff = min(max(cutoff, 10.0), 0.499 * sample_rate)
    w0 = 2 * math.pi * cutoff / sample_rate
    cos_w0 = math.cos(w0)
    alpha = math.sin(w0) / (2 * max(q, 1e-4))
    a0 = 1 + alpha
    b = ((1 - cos_w0) / 2 / a0, (1 - cos_w0) / a0, (1 - cos_w0) / 2 / a0)
    a = (1.0, -2 * cos_w0 / a0, (1 - alpha) / a0)
    return b, a


class BiquadLowpass(AudioNode):
    def __init__(self, graph: AudioGraph, frequency: float, q: float = 1.0) -> None:
        super().__init__(graph)
        self.frequency = float(frequency)
        self.q = float(q)
        self._b, self._a = _lowpass_coefficients(self.frequency, self.q, graph.sample_rate)
        self._state = np.zeros(2, dtype=np.float64)

    def _process(self, block: _Block) -> FloatArray:
        filtered, self._state = lfilter(self._b, self._a, self._input_mix(block), zi=self._state)
        return np.asarray(filtered, dtype=np.float64)


class WaveShaper(AudioNode):
    def __init__(self, graph: AudioGraph, curve: FloatArray) -> None:
        super().__init__(graph)
        self.curve = np.asarray(curve, dtype=np.float64)
        self._grid = np.linspace(-1.0, 1.0, self.curve.size)

    def _process(self, block: _Block) -> FloatArray:
        return np.interp(self._input_mix(block), self._grid, self.curve)


class Delay(AudioNode):
    def __init__(self, graph: AudioGraph, delay_time: float, *, max_delay: float = 1.0) -> None:
        super().__init__(graph)
        if not 0 <= delay_time <= max_delay:
            raise ValueError(f"delay_time must be within [0, {max_delay}]")
        self.delay_time = float(delay_time)
        self._delay_frames = int(round(delay_time * graph.sample_rate))
        self._history = np.zeros(self._delay_frames, dtype=np.float64)

    def _process(self, block: _Block) -> FloatArray:
        dry = self._input_mix(block)
        if self._delay_frames == 0:
            return dry
        line = np.concatenate((self._history, dry))
        self._history = line[-self._delay_frames :]
        return line[: block.frames]


# =============================================================================
# PART 3: UNITS
# =============================================================================


class Unit:
    """One synthesis instance: its sources, the nodes that reach the master
    bus, and the gain params that shape its loudness."""

    def __init__(
        self,
        graph: AudioGraph,
        layer: LayerKind,
        *,
        sources: Sequence[ScheduledSource],
        outputs: Sequence[AudioNode],
        envelopes: Sequence[AudioParam],
        tail: float = 0.05,
    ) -> None:
        if not sources:
            raise ValueError("A unit needs at least one source")
        self.graph = graph
        self.layer: LayerKind = layer
        self.sources = tuple(sources)
        self.outputs = tuple(outputs)
        self.envelopes = tuple(envelopes)
        self.tail = tail

    @property
    def stop_time(self) -> float:
        return max(source.stop_time for source in self.sources)

    def finished_at(self, when: float) -> bool:
        return when >= self.stop_time + self.tail

    def stop(self, when: float) -> None:
        for source in self.sources:
            source.stop(when)

    def fade_out(self, duration: float, *, stop_after: float, floor: float = FADE_FLOOR) -> None:
        with self.graph.lock:
            now = self.graph.current_time
            for envelope in self.envelopes:
                envelope.cancel_and_hold_at_time(now)
                envelope.linear_ramp_to_value_at_time(floor, now + duration)
            self.stop(now + stop_after)

    def render(self, block: _Block) -> FloatArray:
        total = np.zeros(block.frames, dtype=np.float64)
        for node in self.outputs:
            total += node.output(block)
        return total


# =============================================================================
# PART 4: GRAPH
# =============================================================================


class AnalysisTap:
    """Rolling spectrum and waveform view of the master output."""

    def __init__(
        self,
        fft_size: int = FFT_SIZE,
        *,
        smoothing: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ) -> None:
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._buffer = np.zeros(fft_size, dtype=np.float64)
        self._window = np.blackman(fft_size)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)
        self._lock = threading.Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, samples: FloatArray) -> None:
        samples = np.asarray(samples, dtype=np.float64)
        with self._lock:
            if samples.size >= self.fft_size:
                self._buffer = samples[-self.fft_size :].copy()
            else:
                self._buffer = np.concatenate((self._buffer[samples.size :], samples))

    def frequency_data(self) -> NDArray[np.uint8]:
        with self._lock:
            spectrum = np.abs(np.fft.rfft(self._buffer * self._window))[: self.frequency_bin_count]
            spectrum /= self.fft_size
            self._smoothed = self.smoothing * self._smoothed + (1 - self.smoothing) * spectrum
            smoothed = self._smoothed.copy()
        with np.errstate(divide="ignore"):
            decibels = 20 * np.log10(smoothed)
        span = self.max_decibels - self.min_decibels
        scaled = np.nan_to_num((decibels - self.min_decibels) / span * 255, neginf=0.0)
        return np.clip(scaled, 0, 255).astype(np.uint8)

    def time_domain_data(self) -> NDArray[np.uint8]:
        with self._lock:
            snapshot = self._buffer.copy()
        return np.clip(128 * (1 + snapshot), 0, 255).astype(np.uint8)


class AudioGraph:
    """Output device connection, master gain and the set of live units.

    The graph clock is device time: frames rendered divided by the sample
    rate. Control code and the device callback thread share ``lock``.
    """

    def __init__(
        self,
        device: OutputDevice,
        *,
        sample_rate: int = SAMPLE_RATE,
        block_size: int = BLOCK_SIZE,
        fft_size: int = FFT_SIZE,
    ) -> None:
        self._device = device
        self.sample_rate = sample_rate
        self.block_size = block_size
        self._lock = threading.RLock()
        self._frames = 0
        self._block_index = 0
        self._units: list[Unit] = []
        self._initialized = False
        self.master_gain = self.param(1.0)
        self.tap = AnalysisTap(fft_size)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames / self.sample_rate

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def state(self) -> DeviceState:
        if not self._initialized:
            return "closed"
        return self._device.state

    @property
    def unit_count(self) -> int:
        with self._lock:
            return len(self._units)

    def activate(self) -> AnalysisTap | None:
        if not self._initialized:
            try:
                self._device.open(
                    self.render, sample_rate=self.sample_rate, block_size=self.block_size
                )
            except DeviceUnavailableError as exc:
                _LOGGER.error("Audio output unavailable: %s", exc, exc_info=debug_enabled())
                return None
            self._initialized = True
            _LOGGER.info("Audio graph ready (%d Hz, %d-frame blocks)", self.sample_rate, self.block_size)
        if self._device.state == "suspended":
            try:
                self._device.resume()
            except DeviceSuspendedError as exc:
                _LOGGER.warning("Audio output still suspended: %s", exc)
        return self.tap

    def resume(self) -> None:
        if not self._initialized:
            raise DeviceUnavailableError("Audio graph is not initialized")
        self._device.resume()

    def suspend(self) -> bool:
        if not self._initialized:
            return False
        self._device.suspend()
        return True

    def close(self) -> None:
        if self._initialized:
            self._device.close()
        self._initialized = False

    def set_volume(self, volume: float, *, muted: bool) -> bool:
        if not self._initialized:
            return False
        if not muted:
            with self._lock:
                self.master_gain.set_target_at_time(volume, self.current_time, VOLUME_TIME_CONSTANT)
        return True

    def ramp_master(self, target: float, duration: float = MUTE_RAMP_SECONDS) -> bool:
        if not self._initialized:
            return False
        with self._lock:
            now = self.current_time
            self.master_gain.cancel_and_hold_at_time(now)
            self.master_gain.linear_ramp_to_value_at_time(target, now + duration)
        return True

    # Node factories ---------------------------------------------------------

    def param(self, default: float) -> AudioParam:
        return AudioParam(default, clock=lambda: self.current_time, lock=self._lock)

    def oscillator(self, waveform: Waveform, frequency: float) -> Oscillator:
        return Oscillator(self, waveform, frequency)

    def buffer_source(self, buffer: FloatArray, *, loop: bool = False) -> BufferSource:
        return BufferSource(self, buffer, loop=loop)

    def gain(self, value: float = 1.0) -> Gain:
        return Gain(self, value)

    def lowpass(self, frequency: float, q: float = 1.0) -> BiquadLowpass:
        return BiquadLowpass(self, frequency, q)

    def waveshaper(self, curve: FloatArray) -> WaveShaper:
        return WaveShaper(self, curve)

    def delay(self, delay_time: float, *, max_delay: float = 1.0) -> Delay:
        return Delay(self, delay_time, max_delay=max_delay)

    def add_unit(self, unit: Unit) -> Unit:
        with self._lock:
            self._units.append(unit)
        return unit

    # Render -----------------------------------------------------------------

    def render(self, frames: int) -> NDArray[np.float32]:
        with self._lock:
            block = _Block(self._block_index, self._frames, frames, self.sample_rate)
            mix = np.zeros(frames, dtype=np.float64)
            survivors: list[Unit] = []
            for unit in self._units:
                try:
                    mix += unit.render(block)
                except Exception as exc:
                    _LOGGER.warning(
                        "Dropping %s unit after render failure: %s",
                        unit.layer,
                        exc,
                        exc_info=debug_enabled(),
                    )
                    continue
                if not unit.finished_at(block.end):
                    survivors.append(unit)
            self._units = survivors
            out = mix * self.master_gain.values(block.times)
            self._frames += frames
            self._block_index += 1
        self.tap.push(out)
        return out.astype(np.float32)
