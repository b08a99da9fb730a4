from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

import numpy as np

from .chords import ChordState
from .config import EngineConfig
from .device import OutputDevice, SoundDeviceOutput
from .errors import DeviceSuspendedError, DeviceUnavailableError, InvalidParameterError, PersistenceError
from .graph import AnalysisTap, AudioGraph
from .layers import (
    ArpeggioLayer,
    BassLayer,
    HeartbeatLayer,
    LayerContext,
    MelodyLayer,
    PadLayer,
    TextureLayer,
)
from .params import VOLUME_RANGE, ParameterStore, clamp, parse_number
from .presets import JsonFileStore, KeyValueStore, PresetStore
from .registry import ActiveUnitRegistry, TimerRegistry
from .scheduler import LoopScheduler, Scheduler
from .schema import StartStatus, Waveform
from .settings import SettingsSnapshot, SettingsUpdate, coerce_update

_LOGGER = logging.getLogger("soulspace.engine")

STOP_FADE = 1.0
STOP_AFTER = 1.1


class AmbientEngine:
    """Generative ambient player.

    Owns the audio graph, the parameter store, the chord cursor and the six
    layers. All control methods are meant to be called from the thread that
    runs the scheduler (the asyncio loop in live use); only rendering happens
    on the device thread.
    """

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        store: KeyValueStore | None = None,
        device: OutputDevice | None = None,
        scheduler: Scheduler | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.presets = PresetStore(store if store is not None else JsonFileStore(self.config.store_path))
        self.params = ParameterStore()
        self.graph = AudioGraph(
            device or SoundDeviceOutput(self.config.device),
            sample_rate=self.config.sample_rate,
            block_size=self.config.block_size,
            fft_size=self.config.fft_size,
        )
        self.scheduler = scheduler or LoopScheduler()
        self.timers = TimerRegistry(self.scheduler)
        self.units = ActiveUnitRegistry()
        self.chords = ChordState()
        self._rng = rng or np.random.default_rng(self.config.seed)
        self._playing = False

        context = LayerContext(
            graph=self.graph,
            params=self.params,
            chords=self.chords,
            timers=self.timers,
            units=self.units,
            rng=self._rng,
            is_playing=lambda: self._playing,
        )
        self.pad = PadLayer(context)
        self.bass = BassLayer(context)
        self.melody = MelodyLayer(context)
        self.texture = TextureLayer(context)
        self.heartbeat = HeartbeatLayer(context)
        self.arpeggio = ArpeggioLayer(context)

    # Playback ---------------------------------------------------------------

    @property
    def is_playing(self) -> bool:
        return self._playing

    def activate(self) -> AnalysisTap | None:
        """Open the output on first use; later calls try to wake it up."""
        first = not self.graph.initialized
        tap = self.graph.activate()
        if tap is not None and first:
            self._restore_preferences()
        return tap

    async def start(self) -> StartStatus:
        if self._playing:
            return "already_playing"
        if isinstance(self.scheduler, LoopScheduler):
            self.scheduler.bind()
        if self.activate() is None:
            raise DeviceUnavailableError("Audio output is unavailable")
        if self.graph.state == "suspended":
            try:
                await asyncio.to_thread(self.graph.resume)
            except DeviceSuspendedError as exc:
                _LOGGER.warning("Could not resume audio output: %s", exc)
                return "resume_failed"

        self._playing = True
        self.graph.set_volume(self.params.volume, muted=self.params.muted)
        self.pad.start()
        self.bass.start()
        self.texture.start()
        self.melody.start()
        if self.params.heartbeat_enabled:
            self.heartbeat.start()
        if self.params.arpeggio_enabled:
            self.arpeggio.start()
        _LOGGER.info("Ambient playback started on chord %s", self.chords.current_notes)
        return "started"

    def stop(self) -> bool:
        if not self._playing:
            return False
        self._playing = False
        cancelled = self.timers.cancel_all()
        faded = self.units.sweep(None, fade=STOP_FADE, stop_after=STOP_AFTER)
        self.units.clear()
        _LOGGER.info("Ambient playback stopped (%d timers cancelled, %d units faded)", cancelled, faded)
        return True

    def suspend(self) -> bool:
        return self.graph.suspend()

    def resume(self) -> bool:
        try:
            self.graph.resume()
        except (DeviceSuspendedError, DeviceUnavailableError) as exc:
            _LOGGER.warning("Could not resume audio output: %s", exc)
            return False
        return True

    def close(self) -> None:
        self.stop()
        self.graph.close()

    # Parameters -------------------------------------------------------------

    def set_oscillator_timbre(self, value: object) -> bool:
        return self.params.set_oscillator_timbre(value)

    def set_filter_brightness(self, value: object) -> float:
        return self.params.set_filter_brightness(value)

    def set_chord_period(self, value: object) -> float:
        return self.params.set_chord_period(value)

    def set_volume(self, value: object) -> bool:
        if self.activate() is None:
            return False
        volume = self.params.set_volume(value)
        if volume is None:
            return False
        self.graph.set_volume(volume, muted=self.params.muted)
        self._persist("volume", lambda: self.presets.write_volume(volume))
        return True

    def set_volume_percent(self, percent: object) -> bool:
        try:
            value = parse_number(percent, name="volume percent")
        except InvalidParameterError as exc:
            _LOGGER.warning("Ignoring volume change: %s", exc)
            return False
        return self.set_volume(clamp(value, (0.0, 100.0)) / 100)

    def toggle_mute(self) -> bool | None:
        """Flip mute with a short ramp; ``None`` when there is no output."""
        if self.activate() is None:
            return None
        muted = not self.params.muted
        self.params.muted = muted
        self.graph.ramp_master(0.0 if muted else self.params.volume)
        self._persist("mute state", lambda: self.presets.write_muted(muted))
        return muted

    def toggle_heartbeat(self) -> bool:
        enabled = not self.params.heartbeat_enabled
        self.params.heartbeat_enabled = enabled
        if self._playing:
            if enabled:
                self.heartbeat.start()
            else:
                self.heartbeat.stop()
        return enabled

    def toggle_arpeggiator(self) -> bool:
        enabled = not self.params.arpeggio_enabled
        self.params.arpeggio_enabled = enabled
        if self._playing:
            if enabled:
                self.arpeggio.start()
            else:
                self.arpeggio.stop_sequence()
        return enabled

    def get_volume(self) -> float:
        if self.graph.initialized:
            return self.params.volume
        try:
            stored = self.presets.read_volume()
        except PersistenceError as exc:
            _LOGGER.warning("Ignoring stored volume: %s", exc)
            return self.params.volume
        return self.params.volume if stored is None else clamp(stored, VOLUME_RANGE)

    def get_mute_state(self) -> bool:
        if self.graph.initialized:
            return self.params.muted
        try:
            return self.presets.read_muted()
        except PersistenceError as exc:
            _LOGGER.warning("Ignoring stored mute state: %s", exc)
            return self.params.muted

    @property
    def oscillator_timbre(self) -> Waveform:
        return self.params.oscillator_timbre

    @property
    def filter_brightness_hz(self) -> float:
        return self.params.filter_brightness_hz

    @property
    def chord_period_ms(self) -> float:
        return self.params.chord_period_ms

    @property
    def heartbeat_enabled(self) -> bool:
        return self.params.heartbeat_enabled

    @property
    def arpeggio_enabled(self) -> bool:
        return self.params.arpeggio_enabled

    # Settings ---------------------------------------------------------------

    def get_settings(self) -> SettingsSnapshot:
        return SettingsSnapshot(
            volume=self.get_volume(),
            is_muted=self.get_mute_state(),
            pad_osc_type=self.params.oscillator_timbre,
            pad_filter_freq=self.params.filter_brightness_hz,
            chord_speed_ms=self.params.chord_period_ms,
            heartbeat_enabled=self.params.heartbeat_enabled,
            arpeggiator_enabled=self.params.arpeggio_enabled,
        )

    def apply_settings(
        self, settings: SettingsSnapshot | SettingsUpdate | Mapping[str, Any] | None
    ) -> None:
        """Apply a snapshot. Volume is always reapplied; mute and the two
        layer toggles only flip when they differ from the current state."""
        if settings is None:
            return
        update = coerce_update(settings)
        if update.volume is not None:
            self.set_volume(update.volume)
        if update.is_muted is not None:
            # Opening the output loads the stored mute state; compare against that.
            self.activate()
            if update.is_muted != self.params.muted:
                self.toggle_mute()
        if update.pad_osc_type is not None:
            self.set_oscillator_timbre(update.pad_osc_type)
        if update.pad_filter_freq is not None:
            self.set_filter_brightness(update.pad_filter_freq)
        if update.chord_speed_ms is not None:
            self.set_chord_period(update.chord_speed_ms)
        if update.heartbeat_enabled is not None and update.heartbeat_enabled != self.params.heartbeat_enabled:
            self.toggle_heartbeat()
        if (
            update.arpeggiator_enabled is not None
            and update.arpeggiator_enabled != self.params.arpeggio_enabled
        ):
            self.toggle_arpeggiator()

    # Presets ----------------------------------------------------------------

    def save_preset(self, name: str) -> str:
        return self.presets.save(name, self.get_settings())

    def load_preset(self, name: str) -> bool:
        update = self.presets.load(name)
        if update is None:
            _LOGGER.warning("No preset named %r", name)
            return False
        self.apply_settings(update)
        _LOGGER.info("Loaded preset %r", name)
        return True

    def delete_preset(self, name: str) -> bool:
        return self.presets.delete(name)

    def list_presets(self) -> list[str]:
        return self.presets.names()

    # Internals --------------------------------------------------------------

    def _restore_preferences(self) -> None:
        try:
            stored = self.presets.read_volume()
            muted = self.presets.read_muted()
        except PersistenceError as exc:
            _LOGGER.warning("Ignoring stored volume preference: %s", exc)
            stored, muted = None, self.params.muted
        if stored is not None:
            self.params.volume = clamp(stored, VOLUME_RANGE)
        self.params.muted = muted
        self.graph.master_gain.value = 0.0 if muted else self.params.volume

    def _persist(self, what: str, write: Callable[[], None]) -> None:
        try:
            write()
        except PersistenceError as exc:
            _LOGGER.warning("Could not persist %s: %s", what, exc)
