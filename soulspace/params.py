from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import cast

from .errors import InvalidParameterError
from .schema import WAVEFORMS, Waveform

_LOGGER = logging.getLogger("soulspace.params")

DEFAULT_TIMBRE: Waveform = "triangle"
DEFAULT_FILTER_HZ = 2000.0
DEFAULT_CHORD_PERIOD_MS = 12000.0
DEFAULT_VOLUME = 0.7

FILTER_RANGE_HZ = (100.0, 10000.0)
CHORD_PERIOD_RANGE_MS = (4000.0, 30000.0)
VOLUME_RANGE = (0.0, 1.0)


def clamp(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


def parse_number(value: object, *, name: str) -> float:
    """Interpret a control value as a finite float.

    Booleans are rejected even though they are ints; numeric strings are
    accepted so values typed into a text field or read from a store work.
    """
    if isinstance(value, bool):
        raise InvalidParameterError(f"{name} must be a number, got bool")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise InvalidParameterError(f"{name} must be a number, got {value!r}") from exc
    else:
        raise InvalidParameterError(f"{name} must be a number, got {type(value).__name__}")
    if not math.isfinite(number):
        raise InvalidParameterError(f"{name} must be finite, got {value!r}")
    return number


def parse_waveform(value: object) -> Waveform:
    if isinstance(value, str) and value in WAVEFORMS:
        return cast(Waveform, value)
    raise InvalidParameterError(f"Unknown oscillator timbre {value!r}; expected one of {WAVEFORMS}")


def timbre_or_default(value: str) -> Waveform:
    """Waveform to synthesize with, falling back to triangle for unknown names."""
    try:
        return parse_waveform(value)
    except InvalidParameterError:
        return DEFAULT_TIMBRE


@dataclass
class ParameterStore:
    """Live-tunable parameters and layer enable flags.

    Values are read when a unit is synthesized, so a change only affects the
    next emission of the layer that reads it.
    """

    oscillator_timbre: Waveform = DEFAULT_TIMBRE
    filter_brightness_hz: float = DEFAULT_FILTER_HZ
    chord_period_ms: float = DEFAULT_CHORD_PERIOD_MS
    volume: float = DEFAULT_VOLUME
    muted: bool = False
    heartbeat_enabled: bool = False
    arpeggio_enabled: bool = False

    def set_oscillator_timbre(self, value: object) -> bool:
        try:
            self.oscillator_timbre = parse_waveform(value)
        except InvalidParameterError as exc:
            _LOGGER.warning("Ignoring timbre change: %s", exc)
            return False
        return True

    def set_filter_brightness(self, value: object) -> float:
        try:
            hz = parse_number(value, name="filter brightness")
        except InvalidParameterError as exc:
            _LOGGER.warning("Ignoring filter change: %s", exc)
            return self.filter_brightness_hz
        self.filter_brightness_hz = clamp(hz, FILTER_RANGE_HZ)
        return self.filter_brightness_hz

    def set_chord_period(self, value: object) -> float:
        try:
            period = parse_number(value, name="chord period")
        except InvalidParameterError as exc:
            _LOGGER.warning("Ignoring chord period change: %s", exc)
            return self.chord_period_ms
        self.chord_period_ms = clamp(period, CHORD_PERIOD_RANGE_MS)
        return self.chord_period_ms

    def set_volume(self, value: object) -> float | None:
        """Clamp and store the master volume; ``None`` when the value is unusable."""
        try:
            volume = parse_number(value, name="volume")
        except InvalidParameterError as exc:
            _LOGGER.warning("Ignoring volume change: %s", exc)
            return None
        self.volume = clamp(volume, VOLUME_RANGE)
        return self.volume
