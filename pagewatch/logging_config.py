"""Logging setup: readable console output plus JSON files for the check log."""

import logging
import sys
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from pagewatch.config import settings

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Records are keyed so a check can be followed by monitor_id across files
JSON_FORMAT = "%(levelname)s %(name)s %(message)s"
JSON_RENAMES = {"levelname": "level", "name": "logger"}

QUIET_LOGGERS = ("httpx", "apscheduler", "asyncio")


class MonitorJsonFormatter(jsonlogger.JsonFormatter):
    """Adds the emitting module and line to every JSON record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["source"] = f"{record.module}:{record.lineno}"


def json_formatter() -> MonitorJsonFormatter:
    return MonitorJsonFormatter(JSON_FORMAT, rename_fields=JSON_RENAMES, timestamp=True)


def _file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(json_formatter())
    return handler


def setup_logging(log_dir: Optional[str] = None) -> logging.Logger:
    """
    Route all logging through the root logger.

    Writes everything to ``<log_dir>/app.log`` and errors to
    ``<log_dir>/error.log`` as JSON lines; the console gets plain text.
    """
    logs = Path(log_dir or settings.log_dir)
    logs.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)
    root.addHandler(_file_handler(logs / "app.log", logging.DEBUG))
    root.addHandler(_file_handler(logs / "error.log", logging.ERROR))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class ContextAdapter(logging.LoggerAdapter):
    """Merges fixed context (monitor id, mode) into each record's extra."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextAdapter:
    """Logger for ``name`` that tags every record with ``context``."""
    return ContextAdapter(logging.getLogger(name), context)
