"""Logging setup shared by the engine, the CLI and the render path.

Everything logs under the ``soulspace`` logger tree. The console only shows
warnings unless ``SOULSPACE_DEBUG`` is set; the rotating file under
``SOULSPACE_LOG_DIR`` always gets the full debug stream.
"""

from __future__ import annotations

import logging
import os
import sys
import traceback
from collections.abc import Mapping
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LOGGER = logging.getLogger("soulspace.logging")
_ROOT_LOGGER = "soulspace"
_LOG_DIR_ENV = "SOULSPACE_LOG_DIR"
_DEBUG_ENV = "SOULSPACE_DEBUG"
_LOG_FILE = "soulspace.log"
_MAX_LOG_BYTES = 1_000_000
_LOG_BACKUPS = 2
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_configured = False


class _ComponentFormatter(logging.Formatter):
    """``[layers] message``: the component is the logger name minus the package."""

    _MARKS = {logging.WARNING: "!", logging.ERROR: "!!", logging.CRITICAL: "!!!"}

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.removeprefix(f"{_ROOT_LOGGER}.")
        mark = self._MARKS.get(record.levelno, "")
        line = f"[{component}]{mark} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def debug_enabled() -> bool:
    return bool(os.environ.get(_DEBUG_ENV))


def get_log_dir() -> Path:
    configured = os.environ.get(_LOG_DIR_ENV)
    if configured:
        return Path(configured).expanduser()
    cache_home = os.environ.get("XDG_CACHE_HOME")
    base = Path(cache_home).expanduser() if cache_home else Path.home() / ".cache"
    return base / "soulspace"


def get_log_path() -> Path:
    return get_log_dir() / _LOG_FILE


def configure_logging(*, force: bool = False) -> None:
    """Attach the console and file handlers once per process.

    The console handler is skipped when the host (pytest, an embedding app)
    already configured the root logger; records still propagate to it.
    """
    global _configured
    if _configured and not force:
        return

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if force or not logging.getLogger().handlers:
        console = logging.StreamHandler(stream=sys.__stderr__)
        console.setLevel(logging.DEBUG if debug_enabled() else logging.WARNING)
        console.setFormatter(_ComponentFormatter())
        logger.addHandler(console)

    path = get_log_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
        )
    except OSError as exc:
        _LOGGER.warning("File logging disabled (%s): %s", path, exc)
    else:
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATE_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = True
    _configured = True


def log_exception(
    context: str,
    exc: BaseException,
    *,
    details: Mapping[str, object] | None = None,
) -> Path | None:
    """Append a crash report to the log file and return its path.

    ``details`` (sample rate, store path, ...) go into the report header so a
    log file sent in with a bug report says which setup produced it.
    """
    path = get_log_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{datetime.now().isoformat()}] {context} failed: {type(exc).__name__}: {exc}\n")
            for key, value in (details or {}).items():
                handle.write(f"  {key}: {value}\n")
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=handle)
            handle.write("\n")
    except OSError as log_exc:
        _LOGGER.warning("Failed to write crash report to %s: %s", path, log_exc)
        return None
    return path
