"""Offline rendering: drive the engine on a virtual clock and keep the samples."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray

from .config import EngineConfig
from .device import OfflineOutput
from .engine import AmbientEngine
from .errors import DeviceSuspendedError
from .presets import KeyValueStore, MemoryStore
from .scheduler import VirtualScheduler

_LOGGER = logging.getLogger("soulspace.render")

AudioArray = NDArray[np.float32]


def ensure_audio_contract(audio: NDArray[np.floating[Any]]) -> AudioArray:
    """Mono float32, peak-normalised only if it would clip."""
    mono: AudioArray = np.asarray(audio, dtype=np.float32).reshape(-1)
    if mono.size == 0:
        return mono
    peak = float(np.max(np.abs(mono)))
    if peak > 1.0:
        mono = mono / peak
    return mono


class OfflineSession:
    """An engine wired to a virtual scheduler and an offline sink.

    ``advance`` renders audio and fires due timers in lockstep, so layer
    callbacks see the same clock the samples were rendered against.
    """

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        store: KeyValueStore | None = None,
        seed: int | None = None,
    ) -> None:
        self.config = config or EngineConfig(seed=seed)
        self.scheduler = VirtualScheduler()
        self.output = OfflineOutput()
        self.engine = AmbientEngine(
            config=self.config,
            store=store if store is not None else MemoryStore(),
            device=self.output,
            scheduler=self.scheduler,
            rng=np.random.default_rng(seed if seed is not None else self.config.seed),
        )
        self._chunks: list[AudioArray] = []

    @property
    def now(self) -> float:
        return self.engine.graph.current_time

    def advance(self, seconds: float, *, keep: bool = True) -> AudioArray:
        graph = self.engine.graph
        if not graph.initialized:
            self.engine.activate()
        rendered: list[AudioArray] = []
        target = int(round((self.now + seconds) * graph.sample_rate))
        frame = int(round(self.now * graph.sample_rate))
        while frame < target:
            self.scheduler.advance_to(frame / graph.sample_rate)
            deadline = self.scheduler.next_deadline()
            stop_at = target
            if deadline is not None:
                stop_at = min(target, max(frame + 1, math.ceil(deadline * graph.sample_rate)))
            while frame < stop_at:
                frames = min(graph.block_size, stop_at - frame)
                rendered.append(self.output.pull(frames))
                frame += frames
        self.scheduler.advance_to(frame / graph.sample_rate)
        block = np.concatenate(rendered) if rendered else np.zeros(0, dtype=np.float32)
        if keep:
            self._chunks.append(block)
        return block

    def audio(self) -> AudioArray:
        if not self._chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self._chunks)


def render_offline(
    seconds: float,
    *,
    settings: Mapping[str, Any] | None = None,
    config: EngineConfig | None = None,
    seed: int | None = None,
    tail: float = 0.0,
) -> AudioArray:
    """Render ``seconds`` of the soundscape, optionally followed by a stop fade tail."""
    session = OfflineSession(config=config, seed=seed)
    session.engine.apply_settings(settings)
    status = asyncio.run(session.engine.start())
    if status == "resume_failed":
        raise DeviceSuspendedError("Offline output refused to resume")
    session.advance(seconds)
    if tail > 0:
        session.engine.stop()
        session.advance(tail)
    _LOGGER.info("Rendered %.1fs offline (%s)", seconds + max(tail, 0.0), status)
    return session.audio()


def write_wav(path: str | Path, audio: NDArray[np.floating[Any]], *, sample_rate: int) -> Path:
    target = Path(path)
    sf.write(target, ensure_audio_contract(audio), sample_rate)
    return target
