from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any

from rich.console import Console

from .config import EngineConfig
from .engine import STOP_AFTER, AmbientEngine
from .errors import InvalidParameterError
from .logging_utils import configure_logging, debug_enabled, log_exception
from .presets import JsonFileStore, MemoryStore, PresetStore
from .render import OfflineSession, render_offline, write_wav
from .schema import WAVEFORMS
from .spinner import Spinner, render_error

_LOGGER = logging.getLogger("soulspace.cli")
_CONSOLE = Console()


def _add_setting_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--preset", type=str, default=None, help="Load a saved preset first.")
    parser.add_argument("--volume", type=int, default=None, help="Master volume, 0-100.")
    parser.add_argument("--timbre", choices=WAVEFORMS, default=None, help="Pad oscillator shape.")
    parser.add_argument("--filter", type=float, default=None, help="Pad lowpass cutoff in Hz.")
    parser.add_argument("--chord-period", type=float, default=None, help="Chord length in ms.")
    parser.add_argument("--heartbeat", action="store_true", help="Enable the heartbeat pulse.")
    parser.add_argument("--arpeggio", action="store_true", help="Enable the arpeggiator.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="soulspace")
    sub = parser.add_subparsers(dest="command", required=True)

    play = sub.add_parser("play", help="Play the soundscape live.")
    play.add_argument("--seconds", type=float, default=None, help="Stop after this long.")
    _add_setting_flags(play)

    render = sub.add_parser("render", help="Render the soundscape to a wav file.")
    render.add_argument("--seconds", type=float, default=60.0)
    render.add_argument("--tail", type=float, default=STOP_AFTER, help="Fade-out after stopping.")
    render.add_argument("--output", type=str, default="soulspace.wav")
    render.add_argument("--seed", type=int, default=None)
    _add_setting_flags(render)

    presets = sub.add_parser("presets", help="Manage saved presets.")
    preset_sub = presets.add_subparsers(dest="preset_command", required=True)
    preset_sub.add_parser("list", help="List saved presets.")
    show = preset_sub.add_parser("show", help="Print a preset as JSON.")
    show.add_argument("name")
    save = preset_sub.add_parser("save", help="Save the given settings as a preset.")
    save.add_argument("name")
    _add_setting_flags(save)
    delete = preset_sub.add_parser("delete", help="Delete a preset.")
    delete.add_argument("name")
    return parser


def _flag_settings(args: argparse.Namespace) -> dict[str, Any]:
    settings: dict[str, Any] = {}
    if args.volume is not None:
        settings["volume"] = max(0, min(100, args.volume)) / 100
    if args.timbre is not None:
        settings["padOscType"] = args.timbre
    if args.filter is not None:
        settings["padFilterFreq"] = args.filter
    if args.chord_period is not None:
        settings["chordSpeedMs"] = args.chord_period
    if args.heartbeat:
        settings["heartbeatEnabled"] = True
    if args.arpeggio:
        settings["arpeggiatorEnabled"] = True
    return settings


def _requested_settings(args: argparse.Namespace, presets: PresetStore) -> dict[str, Any]:
    """Preset values first, then any explicit flags on top."""
    settings: dict[str, Any] = {}
    if args.preset:
        update = presets.load(args.preset)
        if update is None:
            raise InvalidParameterError(f"No preset named {args.preset!r}")
        settings.update(update.model_dump(by_alias=True, exclude_none=True))
    settings.update(_flag_settings(args))
    return settings


def _describe(engine: AmbientEngine) -> str:
    settings = engine.get_settings()
    extras = [
        name
        for name, enabled in (
            ("heartbeat", settings.heartbeat_enabled),
            ("arpeggio", settings.arpeggiator_enabled),
        )
        if enabled
    ]
    return (
        f"volume {settings.volume:.2f}{' (muted)' if settings.is_muted else ''}, "
        f"{settings.pad_osc_type} pad at {settings.pad_filter_freq:.0f} Hz, "
        f"chords every {settings.chord_speed_ms / 1000:.1f}s"
        + (f", {' + '.join(extras)}" if extras else "")
    )


async def _play(args: argparse.Namespace, config: EngineConfig) -> int:
    engine = AmbientEngine(config=config)
    try:
        engine.apply_settings(_requested_settings(args, engine.presets))
        status = await engine.start()
        if status == "resume_failed":
            _CONSOLE.print("[yellow]Audio output is suspended; try again.[/yellow]")
            return 1
        _CONSOLE.print(f"Playing: {_describe(engine)}. Ctrl-C to stop.")
        if args.seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(args.seconds)
        engine.stop()
        await asyncio.sleep(STOP_AFTER)
    finally:
        engine.close()
    return 0


def _render(args: argparse.Namespace, config: EngineConfig) -> int:
    settings = _requested_settings(args, PresetStore(JsonFileStore(config.store_path)))
    with Spinner(f"Rendering {args.seconds:.0f}s of ambience"):
        audio = render_offline(args.seconds, settings=settings, config=config, seed=args.seed, tail=args.tail)
    path = write_wav(args.output, audio, sample_rate=config.sample_rate)
    _CONSOLE.print(f"Wrote {len(audio) / config.sample_rate:.1f}s to {path} (sr={config.sample_rate})")
    return 0


def _presets(args: argparse.Namespace, config: EngineConfig) -> int:
    store = JsonFileStore(config.store_path)
    match args.preset_command:
        case "list":
            names = PresetStore(store).names()
            if not names:
                _CONSOLE.print("No presets saved.")
            for name in names:
                _CONSOLE.print(name)
            return 0
        case "show":
            update = PresetStore(store).load(args.name)
            if update is None:
                _CONSOLE.print(f"No preset named {args.name!r}")
                return 1
            _CONSOLE.print_json(json.dumps(update.model_dump(by_alias=True, exclude_none=True)))
            return 0
        case "save":
            # Work on a copy so the flags never touch the stored volume/mute preference.
            scratch = MemoryStore({key: store.get(key) or "" for key in store.keys()})
            session = OfflineSession(config=config, store=scratch)
            session.engine.apply_settings(_requested_settings(args, session.engine.presets))
            saved = PresetStore(store).save(args.name, session.engine.get_settings())
            _CONSOLE.print(f"Saved preset {saved!r}: {_describe(session.engine)}")
            return 0
        case "delete":
            if not PresetStore(store).delete(args.name):
                _CONSOLE.print(f"No preset named {args.name!r}")
                return 1
            _CONSOLE.print(f"Deleted preset {args.name!r}")
            return 0
    return 1


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    details: dict[str, object] = {}
    try:
        parser = build_parser()
        args: Any = parser.parse_args(argv)
        details["command"] = args.command
        config = EngineConfig.from_env()
        details.update(sample_rate=config.sample_rate, device=config.device, store=config.store_path)

        if args.command == "play":
            try:
                return asyncio.run(_play(args, config))
            except KeyboardInterrupt:
                _CONSOLE.print("Stopped.")
                return 0
        if args.command == "render":
            return _render(args, config)
        if args.command == "presets":
            return _presets(args, config)

        parser.print_help()
        return 1
    except Exception as exc:
        _LOGGER.warning("soulspace CLI failed: %s", exc, exc_info=debug_enabled())
        log_exception("soulspace CLI", exc, details=details)
        render_error("soulspace CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
