"""Logging bootstrap for the talk-transcripts command line."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path


PACKAGE_LOGGER = "talk_transcripts"


@dataclass(frozen=True)
class LoggingRuntime:
    level_name: str
    level: int
    file_path: str


_RUNTIME: LoggingRuntime | None = None


def _parse_level(raw: str) -> tuple[str, int]:
    normalized = str(raw or "WARNING").strip().upper()
    level = getattr(logging, normalized, logging.WARNING)
    if not isinstance(level, int):
        level = logging.WARNING
    return str(logging.getLevelName(level)), level


def _default_log_path() -> str:
    log_dir = Path(
        os.environ.get("TALK_TRANSCRIPTS_LOG_DIR", os.path.expanduser("~/.local/state/talk-transcripts/logs"))
    )
    ts = datetime.now(timezone.utc).strftime("%Y%m%d")
    return str(log_dir / f"talk-transcripts-{ts}.log")


def _make_stream_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    # The terminal only gets warnings; the file keeps everything at the configured level.
    handler.setLevel(max(level, logging.WARNING))
    handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s %(message)s"))
    return handler


def _make_file_handler(level: int, file_path: str) -> logging.Handler:
    handler = RotatingFileHandler(
        file_path,
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    return handler


def configure() -> LoggingRuntime:
    """Attach stderr and rotating file handlers to the package logger.

    Repeated calls return the runtime from the first call.
    """
    global _RUNTIME
    if _RUNTIME is not None:
        return _RUNTIME

    level_name, level = _parse_level(os.environ.get("TALK_TRANSCRIPTS_LOG_LEVEL", "WARNING"))
    file_path = os.environ.get("TALK_TRANSCRIPTS_LOG_FILE") or _default_log_path()

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()
    logger.addHandler(_make_stream_handler(level))
    try:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_make_file_handler(level, file_path))
    except OSError as exc:
        logger.warning("file logging disabled, cannot open %s: %s", file_path, exc)
        file_path = ""

    logging.captureWarnings(True)

    _RUNTIME = LoggingRuntime(level_name=level_name, level=level, file_path=file_path)
    return _RUNTIME


def get_runtime() -> LoggingRuntime | None:
    return _RUNTIME
