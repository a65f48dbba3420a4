from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from .errors import ConfigError

CONFIG_ENV_VAR = "AGENT_ITERATE_CONFIG"
DEFAULT_CONFIG_FILENAME = "agent-iterate.toml"
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"


class Mode(str, enum.Enum):
    """Execution mode, fixed when the workspace is created."""

    LOOP = "loop"
    ITERATIVE = "iterative"


class OutputMode(str, enum.Enum):
    """How the agent's stdout is consumed."""

    BUFFERED = "buffered"
    STREAMING = "streaming"


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class EngineConfig:
    mode: Mode = Mode.LOOP
    max_iterations: int = 50
    delay_seconds: int = 2
    stagnation_threshold: int = 2  # 0 = disabled, iterative mode only


@dataclass(frozen=True)
class AgentConfig:
    kind: str = "claude"  # claude|generic|<registered builder>
    command: str = "claude"
    args: List[str] = field(default_factory=list)
    skip_permissions: bool = True
    output_mode: OutputMode = OutputMode.BUFFERED
    shutdown_grace_seconds: float = 5.0

    def argv_prefix(self) -> List[str]:
        """Command plus configured args, with the bypass flag at most once."""
        args = [str(a) for a in self.args]
        if self.skip_permissions and SKIP_PERMISSIONS_FLAG not in args:
            args.append(SKIP_PERMISSIONS_FLAG)
        return [self.command, *args]


@dataclass(frozen=True)
class OutputSettings:
    verbosity: str = "normal"  # quiet|normal|verbose
    run_log: bool = True


@dataclass(frozen=True)
class WatchConfig:
    enabled: bool = True
    debounce_ms: int = 2000
    notify_only_meaningful: bool = True


@dataclass(frozen=True)
class Config:
    engine: EngineConfig = field(default_factory=EngineConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    output: OutputSettings = field(default_factory=OutputSettings)
    watch: WatchConfig = field(default_factory=WatchConfig)


# -------------------------
# Parsing helpers
# -------------------------


def _coerce_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    return default


def parse_mode(value: Any) -> Mode:
    try:
        return Mode(str(value).strip().lower())
    except ValueError:
        names = ", ".join(m.value for m in Mode)
        raise ConfigError(f"unknown mode {value!r} (expected one of: {names})")


def parse_output_mode(value: Any) -> OutputMode:
    raw = str(value).strip().lower()
    if raw in {"stream", "stream-json", "streaming-with-events"}:
        raw = OutputMode.STREAMING.value
    try:
        return OutputMode(raw)
    except ValueError:
        names = ", ".join(m.value for m in OutputMode)
        raise ConfigError(f"unknown output mode {value!r} (expected one of: {names})")


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: {e}") from e


def resolve_config_path(path: Optional[Path] = None) -> Optional[Path]:
    """Return the config file to read: explicit path, then $AGENT_ITERATE_CONFIG,
    then ./agent-iterate.toml. None when nothing exists."""

    if path is not None:
        return path
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env)
    candidate = Path.cwd() / DEFAULT_CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None


# -------------------------
# Public API
# -------------------------


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Build a Config from already-merged raw data, applying defaults."""

    engine_raw = data.get("engine", {}) or {}
    agent_raw = data.get("agent", {}) or {}
    output_raw = data.get("output", {}) or {}
    watch_raw = data.get("watch", {}) or {}

    defaults = EngineConfig()
    engine = EngineConfig(
        mode=parse_mode(engine_raw.get("mode", defaults.mode.value)),
        max_iterations=_coerce_int(engine_raw.get("max_iterations"), defaults.max_iterations),
        delay_seconds=_coerce_int(engine_raw.get("delay_seconds"), defaults.delay_seconds),
        stagnation_threshold=_coerce_int(
            engine_raw.get("stagnation_threshold"), defaults.stagnation_threshold
        ),
    )

    agent_defaults = AgentConfig()
    args_raw = agent_raw.get("args", agent_defaults.args)
    if not isinstance(args_raw, list):
        raise ConfigError("agent.args must be a list of strings")
    agent = AgentConfig(
        kind=str(agent_raw.get("kind", agent_defaults.kind)).strip().lower(),
        command=str(agent_raw.get("command", agent_defaults.command)),
        args=[str(a) for a in args_raw],
        skip_permissions=_coerce_bool(
            agent_raw.get("skip_permissions"), agent_defaults.skip_permissions
        ),
        output_mode=parse_output_mode(
            agent_raw.get("output_mode", agent_defaults.output_mode.value)
        ),
        shutdown_grace_seconds=_coerce_float(
            agent_raw.get("shutdown_grace_seconds"), agent_defaults.shutdown_grace_seconds
        ),
    )

    output = OutputSettings(
        verbosity=str(output_raw.get("verbosity", OutputSettings.verbosity)),
        run_log=_coerce_bool(output_raw.get("run_log"), OutputSettings.run_log),
    )

    watch = WatchConfig(
        enabled=_coerce_bool(watch_raw.get("enabled"), WatchConfig.enabled),
        debounce_ms=_coerce_int(watch_raw.get("debounce_ms"), WatchConfig.debounce_ms),
        notify_only_meaningful=_coerce_bool(
            watch_raw.get("notify_only_meaningful"), WatchConfig.notify_only_meaningful
        ),
    )

    cfg = Config(engine=engine, agent=agent, output=output, watch=watch)
    validate_config(cfg)
    return cfg


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from a single, already-merged TOML file.

    Resolution is deliberately flat: an explicit path, else
    $AGENT_ITERATE_CONFIG, else ./agent-iterate.toml. A missing file yields
    defaults; an explicit path that does not exist is an error.
    """

    resolved = resolve_config_path(path)
    if resolved is None:
        return Config()
    if not resolved.exists():
        raise ConfigError(f"config file not found: {resolved}")
    return config_from_dict(_load_toml(resolved))


def validate_config(cfg: Config) -> None:
    engine = cfg.engine
    if engine.max_iterations < 1:
        raise ConfigError(f"max_iterations must be >= 1 (got {engine.max_iterations})")
    if engine.delay_seconds < 0:
        raise ConfigError(f"delay_seconds must be >= 0 (got {engine.delay_seconds})")
    if engine.stagnation_threshold < 0:
        raise ConfigError(
            f"stagnation_threshold must be >= 0 (got {engine.stagnation_threshold})"
        )
    if not cfg.agent.command.strip():
        raise ConfigError("agent.command cannot be empty")
    if cfg.agent.shutdown_grace_seconds < 0:
        raise ConfigError("agent.shutdown_grace_seconds must be >= 0")
    if cfg.output.verbosity not in ("quiet", "normal", "verbose"):
        raise ConfigError(f"unknown verbosity {cfg.output.verbosity!r}")


def apply_overrides(cfg: Config, **overrides: Any) -> Config:
    """Return a copy of cfg with non-None engine/agent fields replaced.

    Keys are field names of EngineConfig or AgentConfig.
    """

    engine_fields = {k: v for k, v in overrides.items() if v is not None and hasattr(cfg.engine, k)}
    agent_fields = {
        k: v
        for k, v in overrides.items()
        if v is not None and k not in engine_fields and hasattr(cfg.agent, k)
    }
    unknown = set(overrides) - set(engine_fields) - set(agent_fields)
    unknown = {k for k in unknown if overrides[k] is not None}
    if unknown:
        raise ConfigError(f"unknown override(s): {', '.join(sorted(unknown))}")

    out = replace(
        cfg,
        engine=replace(cfg.engine, **engine_fields),
        agent=replace(cfg.agent, **agent_fields),
    )
    validate_config(out)
    return out
