from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import numpy as np
from numpy.typing import NDArray

from .errors import DeviceSuspendedError, DeviceUnavailableError
from .schema import DeviceState

_LOGGER = logging.getLogger("soulspace.device")

RenderCallback = Callable[[int], NDArray[np.float32]]


class OutputDevice(Protocol):
    """Sink that pulls mono float32 blocks from a render callback."""

    @property
    def state(self) -> DeviceState: ...

    def open(self, render: RenderCallback, *, sample_rate: int, block_size: int) -> None: ...

    def resume(self) -> None: ...

    def suspend(self) -> None: ...

    def close(self) -> None: ...


def _load_sounddevice() -> Any | None:
    try:
        import sounddevice as sd_module  # type: ignore[import]
    except (ImportError, OSError) as exc:
        # OSError: the module imports but PortAudio itself is missing.
        _LOGGER.info("sounddevice not available: %s", exc, exc_info=True)
        return None
    return sd_module


class SoundDeviceOutput:
    """Live output through a ``sounddevice`` callback stream.

    The stream is opened stopped, the same way a browser audio context starts
    suspended, and only runs after ``resume``.
    """

    def __init__(self, device: int | str | None = None) -> None:
        self._device = device
        self._stream: Any | None = None
        self._render: RenderCallback | None = None
        self._state: DeviceState = "closed"

    @property
    def state(self) -> DeviceState:
        return self._state

    def open(self, render: RenderCallback, *, sample_rate: int, block_size: int) -> None:
        sd = _load_sounddevice()
        if sd is None:
            raise DeviceUnavailableError(
                "Live playback requires sounddevice and a working PortAudio install."
            )
        self._render = render
        try:
            self._stream = sd.OutputStream(
                samplerate=sample_rate,
                blocksize=block_size,
                channels=1,
                dtype="float32",
                device=self._device,
                callback=self._callback,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailableError(f"Could not open output device: {exc}") from exc
        self._state = "suspended"
        _LOGGER.debug("Opened output stream on device %r", self._device)

    def resume(self) -> None:
        if self._stream is None:
            raise DeviceUnavailableError("Output device is not open")
        if self._state == "running":
            return
        try:
            self._stream.start()
        except Exception as exc:
            raise DeviceSuspendedError(f"Output stream refused to start: {exc}") from exc
        self._state = "running"

    def suspend(self) -> None:
        if self._stream is None or self._state != "running":
            return
        self._stream.stop()
        self._state = "suspended"

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close(ignore_errors=True)
        self._stream = None
        self._state = "closed"

    def _callback(self, outdata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            _LOGGER.debug("Output stream status: %s", status)
        render = self._render
        if render is None:
            outdata.fill(0)
            return
        try:
            outdata[:, 0] = render(frames)
        except Exception as exc:
            # Raising here would abort the stream from PortAudio's thread.
            _LOGGER.error("Render callback failed: %s", exc, exc_info=True)
            outdata.fill(0)


class OfflineOutput:
    """In-process sink; blocks are pulled explicitly instead of by a device thread."""

    def __init__(self, *, start_suspended: bool = False) -> None:
        self._start_suspended = start_suspended
        self._render: RenderCallback | None = None
        self._state: DeviceState = "closed"
        self.sample_rate: int | None = None
        self.block_size: int | None = None

    @property
    def state(self) -> DeviceState:
        return self._state

    def open(self, render: RenderCallback, *, sample_rate: int, block_size: int) -> None:
        self._render = render
        self.sample_rate = sample_rate
        self.block_size = block_size
        self._state = "suspended" if self._start_suspended else "running"

    def resume(self) -> None:
        if self._render is None:
            raise DeviceUnavailableError("Offline output is not open")
        self._state = "running"

    def suspend(self) -> None:
        if self._state == "running":
            self._state = "suspended"

    def close(self) -> None:
        self._render = None
        self._state = "closed"

    def pull(self, frames: int) -> NDArray[np.float32]:
        """Render ``frames`` samples; a suspended sink yields silence and keeps its clock."""
        if self._render is None:
            raise DeviceUnavailableError("Offline output is not open")
        if self._state != "running":
            return np.zeros(frames, dtype=np.float32)
        return self._render(frames)
