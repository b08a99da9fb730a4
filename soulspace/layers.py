"""Self-rescheduling generators.

A layer never loops or sleeps. Each emission synthesizes its unit(s),
registers them, and asks the timer registry to call it again later. Every
callback re-checks ``is_playing`` first, so a full stop only has to cancel
the registry and sweep the units.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import ClassVar

import numpy as np

from . import voices
from .chords import BASS_NOTES, PHRASES, Chord, ChordChange, ChordState, arpeggio_sequence
from .graph import AudioGraph, Unit
from .logging_utils import debug_enabled
from .params import ParameterStore, timbre_or_default
from .registry import ActiveUnitRegistry, TimerRegistry
from .schema import LayerKind, TimerTag

_LOGGER = logging.getLogger("soulspace.layers")

PAD_FADE = 4.0
PAD_JITTER = 0.2

BASS_FIRST_NOTE = 4.0
BASS_INTERVAL = (6.0, 8.0)

MELODY_FIRST_PHRASE = 8.0
MELODY_INTERVAL = (10.0, 15.0)
MELODY_NOTE_SPACING = (0.8, 1.0)

HEARTBEAT_PERIOD = 3.0
HEARTBEAT_OFFSETS = (0.0, 0.35)

ARPEGGIO_STEP = 0.3

OPTIONAL_FADE = 0.1
OPTIONAL_STOP = 0.2


@dataclass(frozen=True)
class LayerContext:
    """Shared state every layer reads from and registers into."""

    graph: AudioGraph
    params: ParameterStore
    chords: ChordState
    timers: TimerRegistry
    units: ActiveUnitRegistry
    rng: np.random.Generator
    is_playing: Callable[[], bool]


def _uniform(rng: np.random.Generator, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return low + float(rng.random()) * (high - low)


class Layer(ABC):
    kind: ClassVar[LayerKind]

    def __init__(self, context: LayerContext) -> None:
        self._ctx = context

    @property
    def playing(self) -> bool:
        return self._ctx.is_playing()

    @abstractmethod
    def start(self) -> None: ...

    def _synthesize(
        self,
        what: str,
        build: Callable[[], Unit],
        *,
        cleanup_after: float | None = None,
    ) -> Unit | None:
        """Build one unit; a failure is logged and never breaks the reschedule loop."""
        try:
            unit = build()
        except Exception as exc:
            _LOGGER.warning(
                "%s %s synthesis failed: %s", self.kind, what, exc, exc_info=debug_enabled()
            )
            return None
        self._ctx.units.add(unit)
        if cleanup_after is not None:
            self._after(cleanup_after, partial(self._forget, unit), tag="cleanup")
        return unit

    def _forget(self, unit: Unit) -> None:
        # Harmless after a full stop: the registry was already cleared.
        self._ctx.units.remove(unit)

    def _after(self, seconds: float, callback: Callable[[], None], *, tag: TimerTag) -> int:
        return self._ctx.timers.schedule(seconds, callback, tag=tag)


class PadLayer(Layer):
    """Slow chord pad; the clock every other harmonic layer follows."""

    kind = "pad"

    def start(self) -> None:
        self._ctx.chords.restart(self._ctx.rng)
        self._progress()

    def _progress(self) -> None:
        if not self.playing:
            return
        change = self._ctx.chords.advance()
        self._ctx.units.sweep("pad", fade=PAD_FADE, stop_after=PAD_FADE + 0.1)
        params = self._ctx.params
        self._synthesize(
            "chord",
            partial(
                voices.pad_chord,
                self._ctx.graph,
                change.current,
                waveform=timbre_or_default(params.oscillator_timbre),
                cutoff=params.filter_brightness_hz,
            ),
        )
        period = params.chord_period_ms / 1000
        self._after(period + float(self._ctx.rng.random()) * period * PAD_JITTER, self._progress, tag="pad_chord")
        if change.changed:
            _LOGGER.debug("Chord %d: %s", change.index, change.current)
            self._ctx.chords.publish(change)


class BassLayer(Layer):
    kind = "bass"

    def __init__(self, context: LayerContext) -> None:
        super().__init__(context)
        self._index = 0

    def start(self) -> None:
        self._index = int(self._ctx.rng.integers(len(BASS_NOTES)))
        self._after(BASS_FIRST_NOTE, self._play, tag="bass_note")

    def _play(self) -> None:
        if not self.playing:
            return
        frequency = BASS_NOTES[self._index]
        self._index = (self._index + 1) % len(BASS_NOTES)
        self._synthesize(
            "note",
            partial(voices.bass_note, self._ctx.graph, frequency),
            cleanup_after=voices.BASS_STOP + 0.1,
        )
        self._after(_uniform(self._ctx.rng, BASS_INTERVAL), self._play, tag="bass_note")


class MelodyLayer(Layer):
    kind = "melody"

    def __init__(self, context: LayerContext) -> None:
        super().__init__(context)
        self._phrase = 0

    def start(self) -> None:
        self._phrase = int(self._ctx.rng.integers(len(PHRASES)))
        self._after(MELODY_FIRST_PHRASE, self._play_phrase, tag="melody_phrase")

    def _play_phrase(self) -> None:
        if not self.playing:
            return
        phrase = PHRASES[self._phrase]
        self._phrase = (self._phrase + 1) % len(PHRASES)
        for position, frequency in enumerate(phrase):
            delay = position * _uniform(self._ctx.rng, MELODY_NOTE_SPACING)
            self._after(delay, partial(self._play_note, frequency), tag="melody_note")
        self._after(_uniform(self._ctx.rng, MELODY_INTERVAL), self._play_phrase, tag="melody_phrase")

    def _play_note(self, frequency: float) -> None:
        if not self.playing:
            return
        self._synthesize(
            "note",
            partial(voices.melody_note, self._ctx.graph, frequency),
            cleanup_after=voices.MELODY_STOP + 0.1,
        )


class TextureLayer(Layer):
    kind = "texture"

    def start(self) -> None:
        if self._ctx.units.count("texture"):
            return
        buffer = voices.noise_buffer(self._ctx.rng, self._ctx.graph.sample_rate)
        self._synthesize("loop", partial(voices.texture_loop, self._ctx.graph, buffer))


class HeartbeatLayer(Layer):
    kind = "heartbeat"

    @property
    def enabled(self) -> bool:
        return self._ctx.params.heartbeat_enabled

    def start(self) -> None:
        if not (self.playing and self.enabled):
            return
        if self._ctx.timers.count("heartbeat_beat"):
            return
        self._beat()

    def stop(self) -> None:
        self._ctx.timers.cancel_tagged("heartbeat_beat")
        self._ctx.units.sweep("heartbeat", fade=OPTIONAL_FADE, stop_after=OPTIONAL_STOP)

    def _beat(self) -> None:
        if not (self.playing and self.enabled):
            return
        for offset in HEARTBEAT_OFFSETS:
            self._synthesize(
                "pulse",
                partial(voices.heartbeat_pulse, self._ctx.graph, offset),
                cleanup_after=offset + 0.4,
            )
        self._after(HEARTBEAT_PERIOD, self._beat, tag="heartbeat_beat")


class ArpeggioLayer(Layer):
    """Arpeggiates whatever chord the pad is sounding.

    Subscribes to chord changes and restarts its sequence on the new notes
    as soon as the pad moves on.
    """

    kind = "arpeggio"

    def __init__(self, context: LayerContext) -> None:
        super().__init__(context)
        self._sequence: Chord = ()
        self._step = 0
        context.chords.subscribe(self._on_chord_change)

    @property
    def enabled(self) -> bool:
        return self._ctx.params.arpeggio_enabled

    @property
    def sequence(self) -> Chord:
        return self._sequence

    def start(self) -> None:
        if not (self.playing and self.enabled):
            return
        if self._ctx.timers.count("arpeggio_note"):
            return
        notes = arpeggio_sequence(self._ctx.chords.current_notes)
        if not notes:
            return
        self._sequence = notes
        self._step = 0
        self._play()

    def stop_sequence(self) -> None:
        self._ctx.timers.cancel_tagged("arpeggio_note")
        self._ctx.units.sweep("arpeggio", fade=OPTIONAL_FADE, stop_after=OPTIONAL_STOP)

    def _play(self) -> None:
        if not (self.playing and self.enabled) or not self._sequence:
            return
        frequency = self._sequence[self._step % len(self._sequence)]
        self._step += 1
        self._synthesize(
            "note",
            partial(voices.arpeggio_note, self._ctx.graph, frequency),
            cleanup_after=0.45,
        )
        self._after(ARPEGGIO_STEP, self._play, tag="arpeggio_note")

    def _on_chord_change(self, change: ChordChange) -> None:
        if not (change.changed and self.enabled and self.playing):
            return
        self.stop_sequence()
        self.start()
