"""
Logging configuration for candlefill.

Updates: v0.1.1 - 2026-08-21 - Route console logging to stderr so tables stay clean on stdout.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional


class EncodingSafeStreamHandler(logging.StreamHandler):
    """Stream handler that tolerates consoles without full Unicode support."""

    def emit(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        stream = self.stream
        if stream is None:
            return

        msg = self.format(record)

        try:
            stream.write(msg + self.terminator)
        except UnicodeEncodeError:
            encoding = getattr(stream, "encoding", None) or "utf-8"
            safe_message = msg.encode(encoding, errors="replace").decode(encoding, errors="replace")
            try:
                stream.write(safe_message + self.terminator)
            except Exception:
                self.handleError(record)
                return
        except Exception:
            self.handleError(record)
            return

        self.flush()


def setup_logging(log_level: str = "INFO",
                  log_file: str = "candlefill.log",
                  max_bytes: int = 10 * 1024 * 1024,  # 10MB
                  backup_count: int = 5,
                  verbose: bool = False,
                  log_dir: Optional[Path] = None) -> None:
    """Setup logging for the CLI and daemon.

    ``verbose`` forces DEBUG on the console regardless of ``log_level``.
    """

    normalized_level = log_level.upper() if isinstance(log_level, str) else "INFO"
    if normalized_level not in logging._nameToLevel:
        normalized_level = "INFO"
    if verbose:
        normalized_level = "DEBUG"

    if log_dir is None:
        log_dir = Path(__file__).parent.parent / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    file_handler = RotatingFileHandler(
        log_dir / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler: logging.Handler = EncodingSafeStreamHandler(sys.stderr)
    console_handler.setLevel(logging._nameToLevel[normalized_level])
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # Set third-party loggers to WARNING to reduce noise
    for noisy in ('urllib3', 'requests', 'werkzeug'):
        logging.getLogger(noisy).setLevel(logging.WARNING)
