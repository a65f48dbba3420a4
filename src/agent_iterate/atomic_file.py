"""Atomic writes for workspace metadata.

Write to a sibling temp file, then rename over the target. A concurrent
reader sees either the old or the new document, never a torn one.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write content to ``path`` atomically.

    Raises:
        OSError: If write or rename fails
    """
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        temp_path.write_text(content, encoding=encoding)
        temp_path.replace(path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


def atomic_write_json(path: Path, data: Dict[str, Any], indent: int = 2) -> None:
    """Serialize ``data`` and write it atomically.

    Raises:
        TypeError: If data is not JSON-serializable
        OSError: If write or rename fails
    """
    content = json.dumps(data, indent=indent, separators=(",", ": ")) + "\n"
    atomic_write_text(path, content)
