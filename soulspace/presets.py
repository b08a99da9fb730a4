"""Key-value persistence for presets and the volume/mute preference."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Protocol

from .errors import InvalidParameterError, PersistenceError
from .params import parse_number
from .settings import SettingsSnapshot, SettingsUpdate, decode_settings, encode_snapshot

_LOGGER = logging.getLogger("soulspace.presets")

PRESET_PREFIX = "ambientPreset_"
VOLUME_KEY = "ambientVolume"
MUTED_KEY = "ambientMuted"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> Iterable[str]: ...


class MemoryStore:
    """Dict-backed store for tests and offline renders."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self._data))


class JsonFileStore:
    """String key-value store kept in one JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Could not read {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise PersistenceError(f"{self.path} does not hold a JSON object")
        self._data = {str(key): str(value) for key, value in raw.items()}
        return self._data

    def _save(self, data: dict[str, str]) -> None:
        """Write ``data`` and adopt it as the cache only once it is on disk."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceError(f"Could not write {self.path}: {exc}") from exc
        self._data = data

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = dict(self._load())
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = dict(self._load())
        if key in data:
            del data[key]
            self._save(data)

    def keys(self) -> Iterator[str]:
        return iter(list(self._load()))


def _clean_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise InvalidParameterError("Preset name must not be empty")
    return cleaned


class PresetStore:
    """Named settings snapshots plus the persisted volume and mute state."""

    def __init__(self, store: KeyValueStore, *, prefix: str = PRESET_PREFIX) -> None:
        self.store = store
        self.prefix = prefix

    def names(self) -> list[str]:
        return sorted(key[len(self.prefix) :] for key in self.store.keys() if key.startswith(self.prefix))

    def save(self, name: str, snapshot: SettingsSnapshot) -> str:
        cleaned = _clean_name(name)
        self.store.set(self.prefix + cleaned, encode_snapshot(snapshot))
        _LOGGER.info("Saved preset %r", cleaned)
        return cleaned

    def load(self, name: str) -> SettingsUpdate | None:
        payload = self.store.get(self.prefix + _clean_name(name))
        if payload is None:
            return None
        return decode_settings(payload)

    def delete(self, name: str) -> bool:
        key = self.prefix + _clean_name(name)
        if self.store.get(key) is None:
            return False
        self.store.delete(key)
        _LOGGER.info("Deleted preset %r", name.strip())
        return True

    def read_volume(self) -> float | None:
        raw = self.store.get(VOLUME_KEY)
        if raw is None:
            return None
        try:
            return parse_number(raw, name=VOLUME_KEY)
        except InvalidParameterError as exc:
            raise PersistenceError(f"Stored volume is malformed: {raw!r}") from exc

    def write_volume(self, volume: float) -> None:
        self.store.set(VOLUME_KEY, repr(float(volume)))

    def read_muted(self) -> bool:
        return self.store.get(MUTED_KEY) == "true"

    def write_muted(self, muted: bool) -> None:
        if muted:
            self.store.set(MUTED_KEY, "true")
        else:
            self.store.delete(MUTED_KEY)
