"""Logging setup for gateflow.

Records go to ``<data_root>/hook.log`` in the ``[timestamp] [logger] message``
format, optionally mirrored to stderr. Setting up logging never raises: a
workflow must keep running even when its log file cannot be opened.
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from gateflow.config import LoggingConfig

LOGGER_NAME = "gateflow"
_HANDLER_MARKER = "_gateflow_handler"


class HookLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, UTC).isoformat(
            timespec="milliseconds"
        )
        source = record.name.removeprefix(f"{LOGGER_NAME}.")
        line = f"[{timestamp}] [{source}] {record.getMessage()}"
        if record.levelno >= logging.WARNING:
            line = f"[{timestamp}] [{source}] {record.levelname}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(config: LoggingConfig, data_root: Path) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    level = getattr(logging, config.level.upper(), logging.INFO)
    logger.setLevel(level)

    # Re-configuring replaces our own handlers and leaves foreign ones alone.
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = HookLogFormatter()
    if config.file:
        log_path = Path(config.file)
        if not log_path.is_absolute():
            log_path = data_root / log_path
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
        except OSError as exc:
            logger.debug("Log file %s unavailable: %s", log_path, exc)
        else:
            setattr(file_handler, _HANDLER_MARKER, True)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    if config.stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        setattr(stream_handler, _HANDLER_MARKER, True)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    return logger
