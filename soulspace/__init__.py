from __future__ import annotations

from .chords import BASS_NOTES, CHORDS, NOTES, PHRASES, ChordChange, ChordState
from .config import BLOCK_SIZE, FFT_SIZE, SAMPLE_RATE, EngineConfig
from .device import OfflineOutput, OutputDevice, SoundDeviceOutput
from .engine import AmbientEngine
from .errors import (
    DeviceSuspendedError,
    DeviceUnavailableError,
    InvalidParameterError,
    PersistenceError,
    SoulspaceError,
)
from .graph import AnalysisTap, AudioGraph, AudioParam, Unit
from .logging_utils import configure_logging as _configure_logging
from .params import ParameterStore
from .presets import JsonFileStore, KeyValueStore, MemoryStore, PresetStore
from .registry import ActiveUnitRegistry, TimerRegistry
from .render import OfflineSession, render_offline, write_wav
from .scheduler import LoopScheduler, Scheduler, VirtualScheduler
from .schema import LayerKind, StartStatus, Waveform
from .settings import SettingsSnapshot, SettingsUpdate

__all__ = [
    "BASS_NOTES",
    "BLOCK_SIZE",
    "CHORDS",
    "FFT_SIZE",
    "NOTES",
    "PHRASES",
    "SAMPLE_RATE",
    "ActiveUnitRegistry",
    "AmbientEngine",
    "AnalysisTap",
    "AudioGraph",
    "AudioParam",
    "ChordChange",
    "ChordState",
    "DeviceSuspendedError",
    "DeviceUnavailableError",
    "EngineConfig",
    "InvalidParameterError",
    "JsonFileStore",
    "KeyValueStore",
    "LayerKind",
    "LoopScheduler",
    "MemoryStore",
    "OfflineOutput",
    "OfflineSession",
    "OutputDevice",
    "ParameterStore",
    "PersistenceError",
    "PresetStore",
    "Scheduler",
    "SettingsSnapshot",
    "SettingsUpdate",
    "SoulspaceError",
    "SoundDeviceOutput",
    "StartStatus",
    "TimerRegistry",
    "Unit",
    "VirtualScheduler",
    "Waveform",
    "render_offline",
    "write_wav",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
