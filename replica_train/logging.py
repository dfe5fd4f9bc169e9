"""
Logging configuration for replica-train.

Features:
- Timestamped, level-tagged records on the console and optionally in a file
- Color-coded console output
- Optional worker rank tag so multi-process logs can be told apart
- `log_once` for configuration summaries that must not repeat per replica
"""

import logging
import sys
from pathlib import Path
from typing import Optional


class Colors:
    """ANSI color codes for different log levels."""
    GREY = '\033[90m'
    BLUE = '\033[94m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD_RED = '\033[91m\033[1m'
    RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    """Color-coded formatter for console output."""

    COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD_RED,
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record):
        if not self.use_colors or record.levelno not in self.COLORS:
            return super().format(record)
        # Color a copy so file handlers sharing the record see the plain level name.
        original = record.levelname
        record.levelname = f"{self.COLORS[record.levelno]}{original}{Colors.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class RankFilter(logging.Filter):
    """Attach the worker rank to every record as `%(rank)s`."""

    def __init__(self, rank: Optional[int]) -> None:
        super().__init__()
        self.rank = rank

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = "" if self.rank is None else f"[rank {self.rank}] "
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None,
    rank: Optional[int] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        use_colors: Enable color-coded console output
        log_format: Custom format string (default: timestamp + level + rank + module + message)
        rank: Worker rank to tag records with; None for single-process runs
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format is None:
        log_format = '%(asctime)s | %(levelname)-8s | %(rank)s%(name)s: %(message)s'
        date_format = '%Y-%m-%d %H:%M:%S'
    else:
        date_format = None

    rank_filter = RankFilter(rank)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColorFormatter(log_format, datefmt=date_format, use_colors=use_colors))
    console_handler.addFilter(rank_filter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        file_handler.addFilter(rank_filter)
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger for a module.

    Usage:
        from replica_train.logging import get_logger
        logger = get_logger(__name__)
    """
    return logging.getLogger(name)


_EMITTED_ONCE: set[tuple[str, int, str]] = set()


def log_once(logger: logging.Logger, level: int, msg: str, *args) -> bool:
    """
    Emit `msg` at `level` only the first time this (logger, level, msg) is seen.

    Every replica constructs the same controllers, so configuration summaries go
    through here to appear once per process. Returns True when the record was emitted.
    """
    key = (logger.name, level, msg % args if args else msg)
    if key in _EMITTED_ONCE:
        return False
    _EMITTED_ONCE.add(key)
    logger.log(level, msg, *args)
    return True
