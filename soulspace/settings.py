"""Settings snapshot and its JSON codec.

The wire format keeps the camelCase keys the browser player stored in
localStorage, so presets saved there load here unchanged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import PersistenceError
from .schema import Waveform

_LOGGER = logging.getLogger("soulspace.settings")

_NUMBER_FIELDS = ("volume", "padFilterFreq", "chordSpeedMs")
_BOOL_FIELDS = ("isMuted", "heartbeatEnabled", "arpeggiatorEnabled")
_STRING_FIELDS = ("padOscType",)


class SettingsSnapshot(BaseModel):
    """Immutable view of every user-tunable setting."""

    volume: float
    is_muted: bool = Field(alias="isMuted")
    pad_osc_type: Waveform = Field(alias="padOscType")
    pad_filter_freq: float = Field(alias="padFilterFreq")
    chord_speed_ms: float = Field(alias="chordSpeedMs")
    heartbeat_enabled: bool = Field(alias="heartbeatEnabled")
    arpeggiator_enabled: bool = Field(alias="arpeggiatorEnabled")

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SettingsUpdate(BaseModel):
    """Partial settings read from outside; absent fields are left alone.

    ``pad_osc_type`` stays a plain string here so an unknown timbre reaches
    the setter, which logs and rejects it, instead of failing the whole load.
    """

    volume: float | None = None
    is_muted: bool | None = Field(default=None, alias="isMuted")
    pad_osc_type: str | None = Field(default=None, alias="padOscType")
    pad_filter_freq: float | None = Field(default=None, alias="padFilterFreq")
    chord_speed_ms: float | None = Field(default=None, alias="chordSpeedMs")
    heartbeat_enabled: bool | None = Field(default=None, alias="heartbeatEnabled")
    arpeggiator_enabled: bool | None = Field(default=None, alias="arpeggiatorEnabled")

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True, strict=True)


def _well_typed(key: str, value: object) -> bool:
    if key in _BOOL_FIELDS:
        return isinstance(value, bool)
    if key in _NUMBER_FIELDS:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if key in _STRING_FIELDS:
        return isinstance(value, str)
    return False


def coerce_update(raw: SettingsSnapshot | SettingsUpdate | Mapping[str, Any]) -> SettingsUpdate:
    """Keep only the fields whose JSON type is right; skip the rest."""
    if isinstance(raw, SettingsUpdate):
        return raw
    if isinstance(raw, SettingsSnapshot):
        return SettingsUpdate.model_validate(raw.to_wire())
    if not isinstance(raw, Mapping):
        raise PersistenceError(f"Settings must be a JSON object, got {type(raw).__name__}")
    kept: dict[str, Any] = {}
    for key, value in raw.items():
        if _well_typed(key, value):
            kept[key] = float(value) if key in _NUMBER_FIELDS else value
        else:
            _LOGGER.debug("Skipping settings field %r=%r", key, value)
    try:
        return SettingsUpdate.model_validate(kept)
    except ValidationError as exc:
        raise PersistenceError(f"Invalid settings: {exc}") from exc


def encode_snapshot(snapshot: SettingsSnapshot) -> str:
    return json.dumps(snapshot.to_wire())


def decode_settings(payload: str) -> SettingsUpdate:
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Settings are not valid JSON: {exc}") from exc
    return coerce_update(raw)
