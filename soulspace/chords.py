"""Harmonic material and the shared chord cursor.

Everything is in G minor. The pad walks ``CHORDS`` in order from a random
starting point; the bass walks the chord roots an octave down and the
melody cycles through four fixed phrases. The arpeggiator follows whatever
chord the pad is currently sounding by subscribing to ``ChordState``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np

_LOGGER = logging.getLogger("soulspace.chords")

Chord = tuple[float, ...]

# G3 .. F5 over the G natural minor scale (with the flat sixth)
NOTES: tuple[float, ...] = (
    196.00,
    233.08,
    261.63,
    293.66,
    311.13,
    349.23,
    392.00,
    415.30,
    466.16,
    523.25,
    587.33,
    622.25,
    698.46,
)

CHORDS: tuple[Chord, ...] = (
    (NOTES[0], NOTES[2], NOTES[6]),
    (NOTES[2], NOTES[5], NOTES[9]),
    (NOTES[4], NOTES[7], NOTES[11]),
    (NOTES[3], NOTES[8], NOTES[10]),
)

BASS_NOTES: tuple[float, ...] = (
    NOTES[0] / 2,
    NOTES[2] / 2,
    NOTES[4] / 2,
    NOTES[3] / 2,
)

PHRASES: tuple[tuple[float, ...], ...] = (
    (NOTES[6], NOTES[8], NOTES[9], NOTES[6]),
    (NOTES[9], NOTES[6], NOTES[5], NOTES[2]),
    (NOTES[5], NOTES[6], NOTES[8], NOTES[9], NOTES[8]),
    (NOTES[8], NOTES[6], NOTES[4], NOTES[3]),
)


def arpeggio_sequence(chord: Sequence[float]) -> Chord:
    """Chord tones in order followed by the second tone an octave up."""
    if not chord:
        return ()
    notes = tuple(chord)
    anchor = notes[1] if len(notes) > 1 else notes[0]
    return notes + (anchor * 2,)


@dataclass(frozen=True, slots=True)
class ChordChange:
    index: int
    previous: Chord
    current: Chord

    @property
    def changed(self) -> bool:
        return self.previous != self.current


ChordListener = Callable[[ChordChange], None]


class ChordState:
    """Chord-progression cursor plus the chord the pad is sounding.

    ``current_notes`` is always swapped for a whole new tuple, so a reader
    sees either the old chord or the new one.
    """

    def __init__(self, chords: Sequence[Chord] = CHORDS) -> None:
        if not chords:
            raise ValueError("ChordState needs at least one chord")
        self._chords = tuple(tuple(chord) for chord in chords)
        self._index = 0
        self._current: Chord = ()
        self._previous: Chord = ()
        self._listeners: list[ChordListener] = []

    @property
    def chord_index(self) -> int:
        return self._index

    @property
    def current_notes(self) -> Chord:
        return self._current

    @property
    def previous_notes(self) -> Chord:
        return self._previous

    def restart(self, rng: np.random.Generator) -> None:
        """Pick a random starting chord and treat it as already sounding."""
        self._index = int(rng.integers(len(self._chords)))
        self._current = self._chords[self._index]
        self._previous = self._current

    def advance(self) -> ChordChange:
        index = self._index
        incoming = self._chords[index]
        change = ChordChange(index=index, previous=self._current, current=incoming)
        self._previous, self._current = self._current, incoming
        self._index = (index + 1) % len(self._chords)
        return change

    def subscribe(self, listener: ChordListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, change: ChordChange) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                _LOGGER.warning("Chord listener %r failed: %s", listener, exc, exc_info=True)
