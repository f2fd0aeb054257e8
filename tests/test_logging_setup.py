from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from talk_transcripts import logging_setup


@pytest.fixture
def fresh_logging(monkeypatch):
    logger = logging.getLogger(logging_setup.PACKAGE_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    monkeypatch.setattr(logging_setup, "_RUNTIME", None)
    for name in ("TALK_TRANSCRIPTS_LOG_LEVEL", "TALK_TRANSCRIPTS_LOG_FILE", "TALK_TRANSCRIPTS_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]
    logging.captureWarnings(False)


def test_configure_writes_debug_records_to_file(fresh_logging, monkeypatch, tmp_path: Path):
    log_file = tmp_path / "logs" / "run.log"
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_LEVEL", "debug")
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_FILE", str(log_file))

    runtime = logging_setup.configure()
    assert runtime.level_name == "DEBUG"
    assert runtime.file_path == str(log_file)
    assert logging_setup.get_runtime() is runtime

    stream, file_handler = fresh_logging.handlers
    assert stream.level == logging.WARNING
    assert isinstance(file_handler, RotatingFileHandler)
    assert file_handler.level == logging.DEBUG

    logging.getLogger("talk_transcripts.sessions").debug("parsed %d lines", 3)
    file_handler.flush()
    assert "DEBUG talk_transcripts.sessions parsed 3 lines" in log_file.read_text(encoding="utf-8")


def test_configure_is_idempotent(fresh_logging, monkeypatch, tmp_path: Path):
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_FILE", str(tmp_path / "a.log"))
    first = logging_setup.configure()
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_LEVEL", "DEBUG")
    assert logging_setup.configure() is first
    assert first.level == logging.WARNING
    assert len(fresh_logging.handlers) == 2


def test_unknown_level_falls_back_to_warning(fresh_logging, monkeypatch, tmp_path: Path):
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_LEVEL", "chatty")
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_DIR", str(tmp_path / "state"))

    runtime = logging_setup.configure()
    assert runtime.level == logging.WARNING
    assert Path(runtime.file_path).parent == tmp_path / "state"
    assert Path(runtime.file_path).name.startswith("talk-transcripts-")


def test_unwritable_log_file_keeps_stderr_logging(fresh_logging, monkeypatch, tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    monkeypatch.setenv("TALK_TRANSCRIPTS_LOG_FILE", str(blocker / "run.log"))

    runtime = logging_setup.configure()
    assert runtime.file_path == ""
    assert len(fresh_logging.handlers) == 1
