"""Console output with verbosity levels.

quiet prints only results and errors, normal adds per-iteration progress,
verbose adds tool events and diagnostics.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Any, Optional

VERBOSITY_LEVELS = ("quiet", "normal", "verbose")


@dataclass
class OutputConfig:
    """Output configuration.

    Attributes:
        verbosity: Output level - "quiet", "normal", or "verbose"
    """

    verbosity: str = "normal"  # quiet|normal|verbose


_output_config: Optional[OutputConfig] = None


def get_output_config() -> OutputConfig:
    """Return the active output config, falling back to $AGENT_ITERATE_VERBOSITY."""
    if _output_config is not None:
        return _output_config

    verbosity = os.environ.get("AGENT_ITERATE_VERBOSITY", "normal")
    if verbosity not in VERBOSITY_LEVELS:
        verbosity = "normal"
    return OutputConfig(verbosity=verbosity)


def set_output_config(config: Optional[OutputConfig]) -> None:
    global _output_config
    _output_config = config


def print_output(
    message: str, level: str = "normal", file: Any = None, end: str = "\n"
) -> None:
    """Print a message if the current verbosity allows it.

    - "error": always printed, to stderr by default
    - "quiet": printed in every mode
    - "normal": printed in normal and verbose modes
    - "verbose": printed only in verbose mode
    """
    config = get_output_config()

    if level == "error":
        should_print = True
        if file is None:
            file = sys.stderr
    elif level == "quiet":
        should_print = True
    elif level == "verbose":
        should_print = config.verbosity == "verbose"
    else:
        should_print = config.verbosity in ("normal", "verbose")

    if should_print:
        if file is None:
            file = sys.stdout
        print(message, file=file, end=end, flush=True)
