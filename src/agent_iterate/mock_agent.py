"""Stand-in agent CLI for dry runs.

Accepts the same flags the Claude builder emits, finds the status artifact
path in the prompt, and advances it by one item per call:

    python -m agent_iterate.mock_agent --print [--append-system-prompt TEXT] PROMPT

Nothing else in the workspace is touched.
"""

from __future__ import annotations

import argparse
import json
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .atomic_file import atomic_write_json
from .status import STATUS_FILENAME

DEFAULT_TOTAL = 3
_STATUS_PATH_RE = re.compile(r"write (\S*" + re.escape(STATUS_FILENAME) + r") as JSON")


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def find_status_path(prompt: str) -> Optional[Path]:
    match = _STATUS_PATH_RE.search(prompt)
    return Path(match.group(1)) if match else None


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, RecursionError):
        return {}
    return data if isinstance(data, dict) else {}


def advance_status(path: Path, total: int = DEFAULT_TOTAL) -> Dict[str, Any]:
    """Mark one more item done and rewrite the artifact."""
    previous = _read_json(path)
    progress = previous.get("progress") if isinstance(previous.get("progress"), dict) else {}
    total = int(progress.get("total", total) or total)
    completed = min(int(progress.get("completed", 0) or 0) + 1, total)
    status = {
        "complete": completed >= total,
        "progress": {"completed": completed, "total": total},
        "worked": True,
        "summary": f"Mock agent completed item {completed} of {total}",
        "lastUpdated": _now_iso(),
    }
    atomic_write_json(path, status)
    return status


def _stream_records(summary: str) -> List[Dict[str, Any]]:
    return [
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "id": "mock-1",
                        "name": "Write",
                        "input": {"file_path": STATUS_FILENAME},
                    }
                ]
            },
        },
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "mock-1", "content": "ok"}
                ]
            },
        },
        {"type": "result", "subtype": "success", "is_error": False, "result": summary},
    ]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mock-agent", add_help=True)
    p.add_argument("--version", action="store_true")
    p.add_argument("-p", "--print", dest="print_mode", action="store_true")
    p.add_argument("--append-system-prompt", default=None)
    p.add_argument("--output-format", default="text")
    p.add_argument("--verbose", action="store_true")
    p.add_argument("--dangerously-skip-permissions", action="store_true")
    p.add_argument("--total", type=int, default=DEFAULT_TOTAL)
    p.add_argument("--delay", type=float, default=0.0, help="Seconds to sleep before answering")
    p.add_argument("prompt", nargs="?", default="")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"mock-agent {__version__}")
        return 0

    prompt = args.prompt or ("" if sys.stdin.isatty() else sys.stdin.read())
    if not prompt.strip():
        print("mock-agent: no prompt given", file=sys.stderr)
        return 1

    if args.delay > 0:
        time.sleep(args.delay)

    status_path = find_status_path(prompt)
    if status_path is None:
        summary = "Mock agent found no status artifact path in the prompt"
    else:
        summary = advance_status(status_path, args.total)["summary"]

    if args.output_format == "stream-json":
        for record in _stream_records(summary):
            print(json.dumps(record), flush=True)
    else:
        print(summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
