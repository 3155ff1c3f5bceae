"""
Logging setup for ShieldSync clients.

Two console formats:
  - **human** – coloured single line, for a terminal
  - **json**  – one JSON object per line, for log shippers

Files are always written as JSON.

Usage:
    from shieldsync_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="logs/shieldsync.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from shieldsync_core.config import LoggingConfig

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS = ("aiohttp.access",)


class _JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        wallet_id = getattr(record, "wallet_id", None)
        if wallet_id:
            entry["wallet_id"] = wallet_id
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured ``HH:MM:SS [LEVEL] logger: message``."""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        if self.colour:
            start, end = self.COLOURS.get(record.levelname, ""), self.RESET
        else:
            start = end = ""
        line = f"{start}{ts} [{record.levelname:<7}]{end} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Parameters
    ----------
    level : str
        DEBUG, INFO, WARNING, ERROR or CRITICAL.
    fmt : str
        ``"human"`` or ``"json"``.
    log_file : str, optional
        Also append JSON records to this file.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())
        root.addHandler(fh)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_config(cfg: LoggingConfig) -> None:
    setup_logging(level=cfg.level, fmt=cfg.format, log_file=cfg.file)
