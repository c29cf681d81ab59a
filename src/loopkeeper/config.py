from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

EnvironmentBackendName = Literal["sprite", "local"]

ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "LOOPKEEPER_MAX_ITERATIONS": ("loop", "max_iterations", int),
    "LOOPKEEPER_MAX_DURATION_HOURS": ("loop", "max_duration_hours", float),
    "LOOPKEEPER_STUCK_THRESHOLD": ("loop", "stuck_threshold", int),
    "LOOPKEEPER_POLL_INTERVAL": ("loop", "poll_interval_seconds", float),
}


class ConfigError(RuntimeError):
    """Raised when configuration values cannot be loaded or are out of range."""


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 50
    max_duration_hours: float = 4.0
    # Lower values pause real stalls sooner but misfire on slow tasks.
    stuck_threshold: int = 3
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    max_turns: int = 200
    plan_max_turns: int = 100
    timeout_seconds: float = 3600.0


@dataclass(slots=True)
class SyncConfig:
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    max_consecutive_failures: int = 3


@dataclass(slots=True)
class EnvironmentConfig:
    backend: EnvironmentBackendName = "sprite"
    binary: str = "sprite"
    name_prefix: str = "loopkeeper"
    session_dir: str = "/var/local/loopkeeper/session"
    repo_dir: str = "/var/local/loopkeeper/repo"
    local_root: str = ""


@dataclass(slots=True)
class LoopkeeperConfig:
    loop: LoopConfig = field(default_factory=LoopConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)

    @classmethod
    def default(cls) -> LoopkeeperConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> LoopkeeperConfig:
        try:
            return cls(
                loop=LoopConfig(**data.get("loop", {})),
                agent=AgentConfig(**data.get("agent", {})),
                sync=SyncConfig(**data.get("sync", {})),
                environment=EnvironmentConfig(**data.get("environment", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "max_duration_hours": self.loop.max_duration_hours,
                "stuck_threshold": self.loop.stuck_threshold,
                "poll_interval_seconds": self.loop.poll_interval_seconds,
            },
            "agent": {
                "binary": self.agent.binary,
                "max_turns": self.agent.max_turns,
                "plan_max_turns": self.agent.plan_max_turns,
                "timeout_seconds": self.agent.timeout_seconds,
            },
            "sync": {
                "max_attempts": self.sync.max_attempts,
                "backoff_seconds": self.sync.backoff_seconds,
                "max_consecutive_failures": self.sync.max_consecutive_failures,
            },
            "environment": {
                "backend": self.environment.backend,
                "binary": self.environment.binary,
                "name_prefix": self.environment.name_prefix,
                "session_dir": self.environment.session_dir,
                "repo_dir": self.environment.repo_dir,
                "local_root": self.environment.local_root,
            },
        }

    def validate(self) -> None:
        if self.loop.max_iterations < 1:
            raise ConfigError("loop.max_iterations must be at least 1.")
        if self.loop.max_duration_hours <= 0:
            raise ConfigError("loop.max_duration_hours must be positive.")
        if self.loop.stuck_threshold < 1:
            raise ConfigError("loop.stuck_threshold must be at least 1.")
        if self.loop.poll_interval_seconds < 0:
            raise ConfigError("loop.poll_interval_seconds cannot be negative.")
        if self.sync.max_attempts < 1:
            raise ConfigError("sync.max_attempts must be at least 1.")
        if self.environment.backend not in {"sprite", "local"}:
            raise ConfigError(f"Unsupported environment backend: {self.environment.backend}")


def default_home() -> Path:
    configured = os.environ.get("LOOPKEEPER_HOME", "").strip()
    if configured:
        return Path(configured).expanduser().resolve()
    return (Path.home() / ".loopkeeper").resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LoopkeeperConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["loop", "agent", "sync", "environment"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def apply_env_overrides(
    config: LoopkeeperConfig, environ: Mapping[str, str] | None = None
) -> LoopkeeperConfig:
    source = os.environ if environ is None else environ
    for env_name, (section, key, caster) in ENV_OVERRIDES.items():
        raw = source.get(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = caster(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"{env_name} must be a number, got {raw!r}.") from exc
        setattr(getattr(config, section), key, value)
    return config


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> LoopkeeperConfig:
    if path.exists():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid config file {path}: {exc}") from exc
        config = LoopkeeperConfig.from_dict(data)
    else:
        config = LoopkeeperConfig.default()
    apply_env_overrides(config, environ)
    config.validate()
    return config


def save_config(path: Path, config: LoopkeeperConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
