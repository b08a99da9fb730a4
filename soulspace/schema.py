"""Shared label types for the soulspace engine.

Single source of truth for the literal vocabularies used by the parameter
store, the unit registry and the settings snapshot.
"""

from __future__ import annotations

from typing import Literal, get_args

Waveform = Literal["sine", "triangle", "square", "sawtooth"]
LayerKind = Literal["pad", "bass", "melody", "texture", "heartbeat", "arpeggio"]
TimerTag = Literal[
    "pad_chord",
    "bass_note",
    "melody_phrase",
    "melody_note",
    "heartbeat_beat",
    "arpeggio_note",
    "cleanup",
]
StartStatus = Literal["started", "already_playing", "resume_failed"]
DeviceState = Literal["closed", "suspended", "running"]

WAVEFORMS: tuple[Waveform, ...] = get_args(Waveform)
LAYER_KINDS: tuple[LayerKind, ...] = get_args(LayerKind)
