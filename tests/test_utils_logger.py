"""Tests for the logging helpers."""

from __future__ import annotations

import io
import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from utils.logger import EncodingSafeStreamHandler, setup_logging


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _console_handler() -> EncodingSafeStreamHandler:
    return next(h for h in logging.getLogger().handlers if isinstance(h, EncodingSafeStreamHandler))


def test_setup_logging_attaches_handlers(tmp_path) -> None:
    setup_logging(log_level="debug", log_file="test_logging.log", max_bytes=1024, backup_count=1,
                  log_dir=tmp_path)

    root = logging.getLogger()
    assert any(isinstance(handler, RotatingFileHandler) for handler in root.handlers)
    assert _console_handler().stream is sys.stderr
    assert _console_handler().level == logging.DEBUG
    assert (tmp_path / "test_logging.log").exists()

    # Invalid log level should fall back to INFO without raising.
    setup_logging(log_level="invalid", log_file="test_logging.log", log_dir=tmp_path)
    assert _console_handler().level == logging.INFO
    assert len(root.handlers) == 2


def test_verbose_forces_debug(tmp_path) -> None:
    setup_logging(log_level="WARNING", verbose=True, log_dir=tmp_path)

    assert _console_handler().level == logging.DEBUG
    assert logging.getLogger("urllib3").level == logging.WARNING
    assert logging.getLogger("werkzeug").level == logging.WARNING


def test_encoding_safe_stream_handler_handles_unicode_errors() -> None:
    class _MockStream(io.StringIO):
        def write(self, __s: str) -> int:  # type: ignore[override]
            raise UnicodeEncodeError("ascii", "é", 0, 1, "invalid")

    handler = EncodingSafeStreamHandler(_MockStream())
    record = logging.LogRecord("test", logging.INFO, __file__, 0, "message", args=None, exc_info=None)

    # Should swallow error without raising.
    handler.emit(record)
