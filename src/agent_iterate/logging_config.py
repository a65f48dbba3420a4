"""Logging setup for agent-iterate.

Console records go to stderr so they never interleave with agent output
echoed to stdout. An optional debug file captures everything, including the
agent argv and per-invocation timings logged at DEBUG.

Usage:
    >>> setup_logging("verbose", log_file=Path("debug.log"))
    >>> logger = logging.getLogger(__name__)
    >>> logger.info("Running iteration %d/%d", 3, 50)
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

_CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s:%(lineno)d: %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# console level per output verbosity; progress itself is printed by the reporter
_LEVEL_BY_VERBOSITY = {
    "quiet": logging.ERROR,
    "normal": logging.WARNING,
    "verbose": logging.DEBUG,
}

# loggers that chatter at INFO/DEBUG on every filesystem event
_NOISY_LOGGERS = ("watchdog", "watchdog.observers", "asyncio")


def console_level(verbosity: str) -> int:
    return _LEVEL_BY_VERBOSITY.get(verbosity, logging.WARNING)


def setup_logging(verbosity: str = "normal", log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the root logger for one CLI invocation.

    Args:
        verbosity: "quiet", "normal" or "verbose"; sets the console level
        log_file: Optional path that receives every record at DEBUG

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    level = console_level(verbosity)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(file_handler)
        root.setLevel(logging.DEBUG)
    else:
        root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
