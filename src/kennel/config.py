from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

FramingStrategy = Literal["template", "openai"]

DEFAULT_CONFIG_NAME = "kennel.toml"


@dataclass(slots=True)
class PoolConfig:
    capacity: int = 2
    kill_grace_seconds: float = 3.0


@dataclass(slots=True)
class TasksConfig:
    default_harness: str = "claude"
    default_timeout_ms: int = 300_000
    max_active_per_session: int = 1
    completion_grace_seconds: float = 5.0
    max_output_bytes: int = 1_048_576


@dataclass(slots=True)
class RetryConfig:
    max_spawn_retries: int = 2
    backoff_seconds: float = 0.5


@dataclass(slots=True)
class HarnessesConfig:
    claude: str = "claude"
    gemini: str = "gemini"
    codex: str = "codex"

    def binaries(self) -> dict[str, str]:
        return {"claude": self.claude, "gemini": self.gemini, "codex": self.codex}


@dataclass(slots=True)
class WorkspacesConfig:
    root: str = "workspaces"


@dataclass(slots=True)
class StateConfig:
    path: str = ".kennel/state"


@dataclass(slots=True)
class FramingConfig:
    strategy: FramingStrategy = "template"
    model: str = "gpt-4o-mini"
    max_tokens: int = 200
    temperature: float = 0.3


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class KennelConfig:
    pool: PoolConfig = field(default_factory=PoolConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    harnesses: HarnessesConfig = field(default_factory=HarnessesConfig)
    workspaces: WorkspacesConfig = field(default_factory=WorkspacesConfig)
    state: StateConfig = field(default_factory=StateConfig)
    framing: FramingConfig = field(default_factory=FramingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> KennelConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> KennelConfig:
        return cls(
            pool=PoolConfig(**data.get("pool", {})),
            tasks=TasksConfig(**data.get("tasks", {})),
            retry=RetryConfig(**data.get("retry", {})),
            harnesses=HarnessesConfig(**data.get("harnesses", {})),
            workspaces=WorkspacesConfig(**data.get("workspaces", {})),
            state=StateConfig(**data.get("state", {})),
            framing=FramingConfig(**data.get("framing", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "pool": {
                "capacity": self.pool.capacity,
                "kill_grace_seconds": self.pool.kill_grace_seconds,
            },
            "tasks": {
                "default_harness": self.tasks.default_harness,
                "default_timeout_ms": self.tasks.default_timeout_ms,
                "max_active_per_session": self.tasks.max_active_per_session,
                "completion_grace_seconds": self.tasks.completion_grace_seconds,
                "max_output_bytes": self.tasks.max_output_bytes,
            },
            "retry": {
                "max_spawn_retries": self.retry.max_spawn_retries,
                "backoff_seconds": self.retry.backoff_seconds,
            },
            "harnesses": self.harnesses.binaries(),
            "workspaces": {"root": self.workspaces.root},
            "state": {"path": self.state.path},
            "framing": {
                "strategy": self.framing.strategy,
                "model": self.framing.model,
                "max_tokens": self.framing.max_tokens,
                "temperature": self.framing.temperature,
            },
            "logging": {"level": self.logging.level},
        }

    def resolve_path(self, base_dir: Path, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        return path.resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: KennelConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "pool",
        "tasks",
        "retry",
        "harnesses",
        "workspaces",
        "state",
        "framing",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


ENV_OVERRIDES = {
    "KENNEL_POOL_CAPACITY": ("pool", "capacity", int),
    "KENNEL_DEFAULT_HARNESS": ("tasks", "default_harness", str),
    "KENNEL_WORKSPACES_ROOT": ("workspaces", "root", str),
    "KENNEL_LOG_LEVEL": ("logging", "level", str),
}


def apply_env_overrides(config: KennelConfig, environ: Mapping[str, str]) -> KennelConfig:
    for variable, (section, key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if raw is None or not raw.strip():
            continue
        try:
            value = cast(raw.strip())
        except ValueError as exc:
            raise ValueError(f"{variable} has an invalid value: {raw!r}") from exc
        setattr(getattr(config, section), key, value)
    return config


def load_config(path: Path) -> KennelConfig:
    if not path.exists():
        return KennelConfig.default()
    return KennelConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: KennelConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
