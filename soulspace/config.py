from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidParameterError

_LOGGER = logging.getLogger("soulspace.config")

SAMPLE_RATE = 44_100
BLOCK_SIZE = 512
FFT_SIZE = 1024

_ENV_PREFIX = "SOULSPACE_"
_ENV_FIELDS: Mapping[str, str] = {
    "SAMPLE_RATE": "sample_rate",
    "BLOCK_SIZE": "block_size",
    "FFT_SIZE": "fft_size",
    "DEVICE": "device",
    "STORE": "store_path",
    "SEED": "seed",
}


def _default_store_path() -> Path:
    return Path.home() / ".config" / "soulspace" / "store.json"


class EngineConfig(BaseModel):
    """Process-level engine settings (not user-tunable while playing)."""

    sample_rate: int = Field(default=SAMPLE_RATE, ge=8_000, le=192_000)
    block_size: int = Field(default=BLOCK_SIZE, ge=64, le=8_192)
    fft_size: int = Field(default=FFT_SIZE, ge=32, le=32_768)
    device: int | str | None = None
    store_path: Path = Field(default_factory=_default_store_path)
    seed: int | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("fft_size")
    @classmethod
    def _power_of_two(cls, value: int) -> int:
        if value & (value - 1):
            raise ValueError("fft_size must be a power of two")
        return value

    @field_validator("device", mode="before")
    @classmethod
    def _device_index(cls, value: object) -> object:
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        return value or None

    @field_validator("store_path", mode="after")
    @classmethod
    def _expand_store(cls, value: Path) -> Path:
        return value.expanduser()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for suffix, field_name in _ENV_FIELDS.items():
            raw = env.get(f"{_ENV_PREFIX}{suffix}")
            if raw:
                values[field_name] = raw
        try:
            config = cls.model_validate(values)
        except ValidationError as exc:
            raise InvalidParameterError(f"Invalid soulspace environment: {exc}") from exc
        _LOGGER.debug("Engine config: %s", config)
        return config
