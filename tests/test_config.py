from pathlib import Path

import pytest
from pydantic import ValidationError

from soulspace.config import BLOCK_SIZE, SAMPLE_RATE, EngineConfig
from soulspace.errors import InvalidParameterError


def test_defaults() -> None:
    config = EngineConfig()
    assert config.sample_rate == SAMPLE_RATE
    assert config.block_size == BLOCK_SIZE
    assert config.fft_size == 1024
    assert config.device is None
    assert config.store_path.name == "store.json"


def test_from_env_reads_prefixed_variables(tmp_path: Path) -> None:
    config = EngineConfig.from_env(
        {
            "SOULSPACE_SAMPLE_RATE": "48000",
            "SOULSPACE_BLOCK_SIZE": "256",
            "SOULSPACE_DEVICE": "3",
            "SOULSPACE_STORE": str(tmp_path / "s.json"),
            "SOULSPACE_SEED": "42",
            "UNRELATED": "x",
        }
    )
    assert config.sample_rate == 48_000
    assert config.block_size == 256
    assert config.device == 3
    assert config.store_path == tmp_path / "s.json"
    assert config.seed == 42


def test_from_env_keeps_device_names() -> None:
    assert EngineConfig.from_env({"SOULSPACE_DEVICE": "pulse"}).device == "pulse"


@pytest.mark.parametrize(
    "environ",
    [
        {"SOULSPACE_SAMPLE_RATE": "loud"},
        {"SOULSPACE_SAMPLE_RATE": "100"},
        {"SOULSPACE_FFT_SIZE": "1000"},
    ],
)
def test_from_env_rejects_bad_values(environ: dict[str, str]) -> None:
    with pytest.raises(InvalidParameterError):
        EngineConfig.from_env(environ)


def test_config_is_frozen_and_strict() -> None:
    config = EngineConfig()
    with pytest.raises(ValidationError):
        config.sample_rate = 22_050  # type: ignore[misc]
    with pytest.raises(ValidationError):
        EngineConfig(channels=2)  # type: ignore[call-arg]
