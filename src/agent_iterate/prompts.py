"""Prompt text for each iteration.

Prompts are pure functions of their inputs. Each mode has a strategy that
renders the system prompt, the per-iteration prompt and the status-tracking
instructions appended to it; ``build_iteration_prompt`` joins the last two.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from string import Template
from typing import Dict, Optional

from .config import Mode
from .status import STATUS_FILENAME

_SYSTEM_TEMPLATE = Template(
    """You are running non-interactively as one iteration of an automated task loop.

Project root: $project_root
Workspace: $workspace_path

The task instructions live in $workspace_path/INSTRUCTIONS.md. Keep notes and
intermediate state inside the workspace so the next iteration can pick up
where you left off. Nobody will answer questions during this run; make
reasonable decisions and record them.
$mode_note"""
)

_LOOP_SYSTEM_NOTE = (
    "\nWork incrementally: finish a small, well-defined batch of items in this"
    " iteration, then stop. The loop will call you again."
)

_ITERATIVE_SYSTEM_NOTE = (
    "\nComplete as much of the remaining work as you can in this iteration."
    " The loop will call you again if anything is left."
)

_LOOP_ITERATION_TEMPLATE = Template(
    """# Iteration $iteration

Continue the task described below. Pick up the next pending items, complete
them, and update your progress tracking before you stop.

## Instructions

$instructions"""
)

_ITERATIVE_ITERATION_TEMPLATE = Template(
    """# Iteration $iteration

Work through the task described below, doing as much as possible in this
session. Review what previous iterations left behind before starting.

## Instructions

$instructions"""
)

_LOOP_STATUS_TEMPLATE = Template(
    """## Status tracking (required)

Before you finish, write $status_path as JSON:

```json
{
  "complete": false,
  "progress": {"completed": 3, "total": 10},
  "summary": "What was done this iteration",
  "lastUpdated": "2025-01-01T12:00:00Z"
}
```

- `progress.completed` / `progress.total`: items done so far and items overall.
- Set `"complete": true` only when every item is finished. Nothing else ends the loop.
- Optional: `phase` (string), `blockers` (list of strings)."""
)

_ITERATIVE_STATUS_TEMPLATE = Template(
    """## Status tracking (required)

Before you finish, write $status_path as JSON:

```json
{
  "complete": false,
  "worked": true,
  "summary": "What was done this iteration",
  "lastUpdated": "2025-01-01T12:00:00Z"
}
```

- `worked`: true if this iteration changed anything, false if there was nothing left you could do.
- Set `"complete": true` only when the whole task is finished. Nothing else ends the loop.
- Several consecutive iterations with `"worked": false` stop the loop early.
- Optional: `phase` (string), `blockers` (list of strings)."""
)


class ModePromptStrategy(ABC):
    mode: Mode

    @abstractmethod
    def system_note(self) -> str:
        """Mode-specific paragraph appended to the system prompt."""

    @abstractmethod
    def iteration_template(self) -> Template:
        """Template taking ``iteration`` and ``instructions``."""

    @abstractmethod
    def status_template(self) -> Template:
        """Template taking ``status_path``."""

    def system_prompt(self, workspace_path: Path, project_root: Optional[Path] = None) -> str:
        return _SYSTEM_TEMPLATE.substitute(
            workspace_path=str(workspace_path),
            project_root=str(project_root or Path.cwd()),
            mode_note=self.system_note(),
        )

    def iteration_prompt(self, instructions: str, iteration: int) -> str:
        return self.iteration_template().substitute(
            iteration=str(iteration), instructions=instructions.strip()
        )

    def status_instructions(self, workspace_path: Path) -> str:
        return self.status_template().substitute(
            status_path=str(workspace_path / STATUS_FILENAME)
        )


class LoopModeStrategy(ModePromptStrategy):
    mode = Mode.LOOP

    def system_note(self) -> str:
        return _LOOP_SYSTEM_NOTE

    def iteration_template(self) -> Template:
        return _LOOP_ITERATION_TEMPLATE

    def status_template(self) -> Template:
        return _LOOP_STATUS_TEMPLATE


class IterativeModeStrategy(ModePromptStrategy):
    mode = Mode.ITERATIVE

    def system_note(self) -> str:
        return _ITERATIVE_SYSTEM_NOTE

    def iteration_template(self) -> Template:
        return _ITERATIVE_ITERATION_TEMPLATE

    def status_template(self) -> Template:
        return _ITERATIVE_STATUS_TEMPLATE


_STRATEGIES: Dict[Mode, ModePromptStrategy] = {
    Mode.LOOP: LoopModeStrategy(),
    Mode.ITERATIVE: IterativeModeStrategy(),
}


def get_strategy(mode: Mode) -> ModePromptStrategy:
    strategy = _STRATEGIES.get(mode)
    if strategy is None:
        raise ValueError(f"Unknown execution mode: {mode}")
    return strategy


def build_system_prompt(
    mode: Mode, workspace_path: Path, project_root: Optional[Path] = None
) -> str:
    return get_strategy(mode).system_prompt(workspace_path, project_root)


def build_iteration_prompt(
    instructions: str,
    iteration: int,
    mode: Mode,
    workspace_path: Optional[Path] = None,
) -> str:
    """Iteration prompt, with status instructions appended when a workspace is given."""
    strategy = get_strategy(mode)
    base = strategy.iteration_prompt(instructions, iteration)
    if workspace_path is None:
        return base
    return f"{base}\n\n---\n\n{strategy.status_instructions(workspace_path)}"
