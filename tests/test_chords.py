import logging

import numpy as np
import pytest

from soulspace.chords import BASS_NOTES, CHORDS, ChordChange, ChordState, arpeggio_sequence


def test_bass_roots_are_pad_roots_an_octave_down() -> None:
    assert BASS_NOTES == tuple(chord[0] / 2 for chord in CHORDS)


def test_arpeggio_sequence_appends_second_tone_an_octave_up() -> None:
    assert arpeggio_sequence((100.0, 200.0, 300.0)) == (100.0, 200.0, 300.0, 400.0)
    assert arpeggio_sequence(()) == ()


def test_restart_primes_current_chord_so_first_advance_is_not_a_change() -> None:
    state = ChordState()
    state.restart(np.random.default_rng(3))
    start = state.chord_index
    assert state.current_notes == CHORDS[start]

    first = state.advance()
    assert not first.changed
    assert state.chord_index == (start + 1) % len(CHORDS)

    second = state.advance()
    assert second.changed
    assert second.previous == CHORDS[start]
    assert state.current_notes == CHORDS[(start + 1) % len(CHORDS)]
    assert state.previous_notes == CHORDS[start]


def test_cursor_wraps_around() -> None:
    state = ChordState()
    state.restart(np.random.default_rng(0))
    seen = [state.advance().index for _ in range(8)]
    assert seen[:4] == seen[4:]
    assert sorted(seen[:4]) == [0, 1, 2, 3]


def test_failing_listener_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    state = ChordState()
    received: list[ChordChange] = []

    def _broken(change: ChordChange) -> None:
        raise RuntimeError("boom")

    state.subscribe(_broken)
    state.subscribe(received.append)
    change = ChordChange(index=0, previous=CHORDS[3], current=CHORDS[0])
    with caplog.at_level(logging.WARNING, logger="soulspace.chords"):
        state.publish(change)
    assert received == [change]
    assert "boom" in caplog.text


def test_unsubscribe_stops_notifications() -> None:
    state = ChordState()
    received: list[ChordChange] = []
    unsubscribe = state.subscribe(received.append)
    unsubscribe()
    unsubscribe()
    state.publish(ChordChange(index=1, previous=(), current=CHORDS[1]))
    assert received == []


def test_empty_progression_is_rejected() -> None:
    with pytest.raises(ValueError):
        ChordState(chords=())
