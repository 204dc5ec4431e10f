"""Process-wide logging for scan runs.

The log file keeps DEBUG detail (per-series progress, skipped files) while the
console shows the requested level. Module loggers come from ``get_logger``.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme


LOG_FILE_NAME = "shelfscan.log"
QUIET_LOGGERS = ("watchdog", "sqlalchemy.engine", "rarfile")

_logging_initialized = False


def _default_log_dir() -> Path:
    # Mirrors config.DATA_DIR; config imports this module, so it cannot be imported here.
    env = os.environ.get("DATA_DIR")
    if env:
        return Path(env)
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[1]


def setup_logging(log_level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """Install the rotating log file and the rich console handler, once.

    Args:
        log_level: Console level name; unknown names fall back to INFO
        log_dir: Folder for shelfscan.log, normally the one holding config.ini
    """
    global _logging_initialized

    if _logging_initialized:
        return

    log_dir = log_dir or _default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    # Libraries scan on separate threads; the thread name tells their lines apart.
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)-8s - %(threadName)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    console_handler = RichHandler(
        console=Console(
            theme=Theme({"logging.level.info": "bold cyan", "logging.level.warning": "bold yellow"}),
            stderr=True,
        ),
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
