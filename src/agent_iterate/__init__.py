"""agent-iterate: run a non-interactive AI agent against a workspace until it is done."""

from __future__ import annotations

__version__ = "0.4.0"
