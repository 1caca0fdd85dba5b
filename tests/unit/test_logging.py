"""Unit tests for logging setup."""

from __future__ import annotations

import pytest
from loguru import logger

from fod_monitor.logging import attach_log_buffer, configure_logging, create_log_buffer


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.remove()


def test_file_sink_created(tmp_path):
    """A dated log file is written under the log directory."""
    configure_logging("DEBUG", str(tmp_path / "logs"))
    logger.info("hello file")
    logger.complete()

    files = list((tmp_path / "logs").glob("fod_*.log"))
    assert len(files) == 1
    assert "hello file" in files[0].read_text(encoding="utf-8")


def test_json_sink(tmp_path):
    """json_logs adds a serialized sink next to the text log."""
    configure_logging("INFO", str(tmp_path), json_logs=True)
    logger.info("structured")
    logger.complete()

    files = list(tmp_path.glob("fod_*.jsonl"))
    assert len(files) == 1
    assert '"structured"' in files[0].read_text(encoding="utf-8")


def test_env_level_override(monkeypatch, tmp_path):
    """FOD_MONITOR_LOG_LEVEL wins over the argument."""
    monkeypatch.setenv("FOD_MONITOR_LOG_LEVEL", "error")
    configure_logging("DEBUG", str(tmp_path))
    logger.warning("filtered out")
    logger.error("kept")
    logger.complete()

    text = next(tmp_path.glob("fod_*.log")).read_text(encoding="utf-8")
    assert "kept" in text
    assert "filtered out" not in text


def test_log_buffer_bounded():
    """The buffer keeps only the newest lines at or above its level."""
    configure_logging("DEBUG", None)
    buffer = create_log_buffer(max_lines=2)
    sink_id = attach_log_buffer(buffer, level="INFO")

    logger.debug("debug line")
    for i in range(3):
        logger.info("line {}", i)
    logger.remove(sink_id)
    logger.info("after detach")

    assert len(buffer) == 2
    assert buffer[0].endswith("line 1")
    assert buffer[1].endswith("line 2")
