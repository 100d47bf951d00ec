"""Configuration management.

Config is loaded explicitly by entry points:
    from swarm_conductor.config import load_config
    config = load_config()

Lookup order for the YAML file: explicit path, `CONDUCTOR_CONFIG_PATH`,
`./conductor.yml`. A missing file means defaults. A `.env` next to the
config (or `CONDUCTOR_ENV_PATH`) is loaded before `${VAR}` expansion.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from swarm_conductor.constants import NOTIFY_SOCKET_PATH
from swarm_conductor.core.errors import ConfigError, UnknownGateError
from swarm_conductor.core.models import GateType
from swarm_conductor.utils import deep_merge, expand_env_vars


@dataclass
class ProjectConfig:
    root: str
    trunk: str
    worktree_dir: str
    branch_prefix: str
    prepare_command: Optional[str] = None
    prepare_timeout: float = 600.0

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser().resolve()

    @property
    def worktrees_path(self) -> Path:
        path = Path(self.worktree_dir).expanduser()
        return path if path.is_absolute() else self.root_path / path


@dataclass
class StoreConfig:
    _configured_path: str

    @property
    def path(self) -> str:
        """Database path (env var wins, for tests and worker subprocesses)."""
        env_path = os.getenv("CONDUCTOR_STORE")
        if env_path:
            return env_path
        return self._configured_path


@dataclass
class SchedulerConfig:  # pylint: disable=too-many-instance-attributes  # Config classes naturally have many fields
    max_concurrency: int
    tick_interval: float
    worker_command: str
    work_prompt: str
    boot_delay: float
    max_reopens: int


@dataclass
class DetectorConfig:
    poll_interval: float
    push_grace: float
    stale_after: float
    stale_kill_after: float
    capture_lines: int
    awaiting_patterns: list[str] = field(default_factory=list)


@dataclass
class GatesConfig:
    timeout: float
    poll_interval: float
    command: str
    prompt: str
    timeouts: dict[GateType, float] = field(default_factory=dict)
    commands: dict[GateType, str] = field(default_factory=dict)

    def timeout_for(self, gate: GateType) -> float:
        return self.timeouts.get(gate, self.timeout)

    def command_for(self, gate: GateType) -> str:
        return self.commands.get(gate, self.command)


@dataclass
class MergeConfig:
    build_command: Optional[str]
    build_timeout: float
    skip_build_for_docs_only: bool


@dataclass
class NotificationsConfig:
    socket_path: str


@dataclass
class ConductorConfig:
    project: ProjectConfig
    store: StoreConfig
    scheduler: SchedulerConfig
    detector: DetectorConfig
    gates: GatesConfig
    merge: MergeConfig
    notifications: NotificationsConfig


# Default configuration values (single source of truth)
DEFAULT_CONFIG: dict[str, object] = {
    "project": {
        "root": ".",
        "trunk": "main",
        "worktree_dir": ".worktrees",
        "branch_prefix": "feature/",
        "prepare_command": None,
        "prepare_timeout": 600,
    },
    "store": {
        "path": "${PWD}/.conductor/backlog.db",
    },
    "scheduler": {
        "max_concurrency": 3,
        "tick_interval": 5,
        "worker_command": "claude --dangerously-skip-permissions",
        "work_prompt": (
            "Work on issue {issue_id}: {title}\n\n{notes}\n\n"
            "When finished, commit your changes, run `conductor close {issue_id} --summary \"...\"` "
            "and then `conductor notify {issue_id} --summary \"...\"`."
        ),
        "boot_delay": 4,
        "max_reopens": 3,
    },
    "detector": {
        "poll_interval": 30,
        "push_grace": 10,
        "stale_after": 900,
        "stale_kill_after": 900,
        "capture_lines": 200,
        "awaiting_patterns": [r"AskUserQuestion", r"Do you want to proceed\?"],
    },
    "gates": {
        "timeout": 300,
        "poll_interval": 5,
        "command": "claude --dangerously-skip-permissions",
        "prompt": (
            "Run /{skill} for issue {issue_id}.\n\n"
            "When finished, write the result JSON to {checkpoint_path} and exit.\n\n"
            'Format: {{"passed": bool, "summary": string, "issues": [{{"file", "line", "detail"}}]}}.'
        ),
        "timeouts": {},
        "commands": {},
    },
    "merge": {
        "build_command": None,
        "build_timeout": 900,
        "skip_build_for_docs_only": True,
    },
    "notifications": {
        "socket_path": NOTIFY_SOCKET_PATH,
    },
}


def _parse_per_gate(key: str, raw: object) -> dict[GateType, object]:
    """Parse a `gates.<key>` mapping whose keys are gate labels."""
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"gates.{key} must be a mapping keyed by gate type")
    parsed: dict[GateType, object] = {}
    for name, value in raw.items():
        try:
            parsed[GateType.parse(str(name))] = value
        except UnknownGateError as exc:
            raise ConfigError(f"gates.{key}: {exc}") from exc
    return parsed


def _optional_str(value: object) -> Optional[str]:
    return str(value) if value else None


def _build_config(raw: dict[str, object]) -> ConductorConfig:
    """Build typed config from raw dict with proper type conversion."""
    proj = raw["project"]
    store = raw["store"]
    sched = raw["scheduler"]
    det = raw["detector"]
    gates = raw["gates"]
    merge = raw["merge"]
    notif = raw["notifications"]

    max_concurrency = int(sched["max_concurrency"])  # type: ignore[index]
    if max_concurrency < 1:
        raise ConfigError(f"scheduler.max_concurrency must be >= 1, got {max_concurrency}")

    return ConductorConfig(
        project=ProjectConfig(
            root=str(proj["root"]),  # type: ignore[index]
            trunk=str(proj["trunk"]),  # type: ignore[index]
            worktree_dir=str(proj["worktree_dir"]),  # type: ignore[index]
            branch_prefix=str(proj["branch_prefix"]),  # type: ignore[index]
            prepare_command=_optional_str(proj["prepare_command"]),  # type: ignore[index]
            prepare_timeout=float(proj["prepare_timeout"]),  # type: ignore[index]
        ),
        store=StoreConfig(_configured_path=str(store["path"])),  # type: ignore[index]
        scheduler=SchedulerConfig(
            max_concurrency=max_concurrency,
            tick_interval=float(sched["tick_interval"]),  # type: ignore[index]
            worker_command=str(sched["worker_command"]),  # type: ignore[index]
            work_prompt=str(sched["work_prompt"]),  # type: ignore[index]
            boot_delay=float(sched["boot_delay"]),  # type: ignore[index]
            max_reopens=int(sched["max_reopens"]),  # type: ignore[index]
        ),
        detector=DetectorConfig(
            poll_interval=float(det["poll_interval"]),  # type: ignore[index]
            push_grace=float(det["push_grace"]),  # type: ignore[index]
            stale_after=float(det["stale_after"]),  # type: ignore[index]
            stale_kill_after=float(det["stale_kill_after"]),  # type: ignore[index]
            capture_lines=int(det["capture_lines"]),  # type: ignore[index]
            awaiting_patterns=[str(p) for p in det["awaiting_patterns"] or []],  # type: ignore[index]
        ),
        gates=GatesConfig(
            timeout=float(gates["timeout"]),  # type: ignore[index]
            poll_interval=float(gates["poll_interval"]),  # type: ignore[index]
            command=str(gates["command"]),  # type: ignore[index]
            prompt=str(gates["prompt"]),  # type: ignore[index]
            timeouts={
                gate: float(seconds)  # type: ignore[arg-type]
                for gate, seconds in _parse_per_gate("timeouts", gates["timeouts"]).items()  # type: ignore[index]
            },
            commands={
                gate: str(command)
                for gate, command in _parse_per_gate("commands", gates["commands"]).items()  # type: ignore[index]
            },
        ),
        merge=MergeConfig(
            build_command=_optional_str(merge["build_command"]),  # type: ignore[index]
            build_timeout=float(merge["build_timeout"]),  # type: ignore[index]
            skip_build_for_docs_only=bool(merge["skip_build_for_docs_only"]),  # type: ignore[index]
        ),
        notifications=NotificationsConfig(socket_path=str(notif["socket_path"])),  # type: ignore[index]
    )


def _resolve_config_path(path: str | Path | None) -> Path:
    if path is not None:
        return Path(path).expanduser()
    env_path = os.getenv("CONDUCTOR_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return Path.cwd() / "conductor.yml"


def load_config(path: str | Path | None = None) -> ConductorConfig:
    """Load, merge and type-check configuration.

    Args:
        path: Optional explicit YAML path.

    Returns:
        Typed configuration. Defaults apply when no file exists.

    Raises:
        ConfigError: If the file is not a mapping or holds invalid values.
    """
    config_path = _resolve_config_path(path)

    env_override = os.getenv("CONDUCTOR_ENV_PATH")
    dotenv_path = Path(env_override).expanduser() if env_override else config_path.parent / ".env"
    load_dotenv(dotenv_path)

    user_config: object = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
    if not isinstance(user_config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    os.environ.setdefault("PWD", str(Path.cwd()))
    merged = deep_merge(DEFAULT_CONFIG, user_config)  # type: ignore[arg-type]
    expanded = expand_env_vars(merged)
    try:
        return _build_config(expanded)  # type: ignore[arg-type]
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config {config_path}: {exc}") from exc
