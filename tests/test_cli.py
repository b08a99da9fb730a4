import json
from pathlib import Path

import pytest
import soundfile as sf

from soulspace.cli import build_parser, main
from soulspace.logging_utils import get_log_path
from soulspace.presets import VOLUME_KEY


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    store = tmp_path / "store.json"
    monkeypatch.setenv("SOULSPACE_STORE", str(store))
    monkeypatch.setenv("SOULSPACE_SAMPLE_RATE", "8000")
    monkeypatch.delenv("SOULSPACE_DEBUG", raising=False)
    return store


def test_parser_defaults() -> None:
    args = build_parser().parse_args(["render"])
    assert args.seconds == 60.0
    assert args.output == "soulspace.wav"
    assert args.heartbeat is False
    assert args.timbre is None


def test_parser_rejects_unknown_timbre() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["play", "--timbre", "banjo"])


def test_presets_lifecycle(env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["presets", "list"]) == 0
    assert "No presets saved." in capsys.readouterr().out

    assert main(["presets", "save", "dusk", "--timbre", "square", "--filter", "800", "--volume", "30", "--heartbeat"]) == 0
    assert "Saved preset 'dusk'" in capsys.readouterr().out

    stored = json.loads(env.read_text(encoding="utf-8"))
    assert VOLUME_KEY not in stored

    assert main(["presets", "list"]) == 0
    assert capsys.readouterr().out.split() == ["dusk"]

    assert main(["presets", "show", "dusk"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["padOscType"] == "square"
    assert shown["padFilterFreq"] == 800.0
    assert shown["volume"] == pytest.approx(0.3)
    assert shown["heartbeatEnabled"] is True

    assert main(["presets", "delete", "dusk"]) == 0
    assert main(["presets", "delete", "dusk"]) == 1
    assert main(["presets", "show", "dusk"]) == 1


def test_render_writes_a_wav(env: Path, tmp_path: Path) -> None:
    output = tmp_path / "out.wav"
    code = main(["render", "--seconds", "1", "--tail", "0", "--seed", "1", "--output", str(output), "--arpeggio"])
    assert code == 0
    info = sf.info(str(output))
    assert info.samplerate == 8000
    assert info.frames == 8000


def test_render_with_missing_preset_fails(env: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = tmp_path / "out.wav"
    assert main(["render", "--seconds", "1", "--preset", "ghost", "--output", str(output)]) == 1
    assert "ghost" in capsys.readouterr().err
    assert not output.exists()


def test_bad_environment_is_reported(env: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("SOULSPACE_SAMPLE_RATE", "12")
    assert main(["presets", "list"]) == 1
    assert "InvalidParameterError" in capsys.readouterr().err


def test_crash_report_names_the_store(env: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SOULSPACE_LOG_DIR", str(tmp_path / "logs"))
    assert main(["render", "--seconds", "1", "--preset", "ghost", "--output", str(tmp_path / "x.wav")]) == 1
    report = get_log_path().read_text(encoding="utf-8")
    assert "soulspace CLI failed: InvalidParameterError" in report
    assert "  command: render" in report
    assert f"  store: {env}" in report
