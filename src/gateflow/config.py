from __future__ import annotations

import json
import os
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

StallAction = Literal["cancel", "abandon"]

CONFIG_FILENAME = "gateflow.toml"


def config_home() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "gateflow"


def default_config_path() -> Path:
    return config_home() / CONFIG_FILENAME


@dataclass(slots=True)
class PathsConfig:
    data_root: str = ""
    scratch_root: str = ""

    def resolved_data_root(self) -> Path:
        if self.data_root:
            return Path(self.data_root).expanduser().resolve()
        return (config_home() / "workflows").resolve()

    def resolved_scratch_root(self) -> Path:
        if self.scratch_root:
            return Path(self.scratch_root).expanduser().resolve()
        return Path(tempfile.gettempdir()).resolve()


@dataclass(slots=True)
class SwarmConfig:
    default_concurrency: int = 4
    provider_concurrency: dict[str, int] = field(default_factory=dict)
    stale_timeout_seconds: float = 180.0
    progress_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 3.0
    max_poll_interval_seconds: float = 15.0
    poll_backoff_factor: float = 1.5
    spawn_delay_seconds: float = 0.1
    await_timeout_seconds: float = 300.0
    stall_action: StallAction = "cancel"
    allow_sub_minimum: bool = False


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = "hook.log"
    stderr: bool = False


@dataclass(slots=True)
class ModeSettings:
    max_review_iterations: int = 3
    max_security_iterations: int = 2
    max_quality_gate_iterations: int = 3
    max_completion_guard_iterations: int = 3
    default_max_iterations: int = 3
    parallel_execution: bool = False
    test_required: bool = True


def _default_modes() -> dict[str, ModeSettings]:
    return {
        "eco": ModeSettings(
            max_review_iterations=2,
            max_security_iterations=1,
            max_quality_gate_iterations=2,
            max_completion_guard_iterations=2,
            default_max_iterations=2,
            test_required=False,
        ),
        "turbo": ModeSettings(
            max_review_iterations=1,
            max_security_iterations=1,
            max_quality_gate_iterations=1,
            max_completion_guard_iterations=1,
            default_max_iterations=1,
            parallel_execution=True,
            test_required=False,
        ),
        "standard": ModeSettings(),
        "thorough": ModeSettings(
            max_review_iterations=5,
            max_security_iterations=3,
            max_quality_gate_iterations=5,
            max_completion_guard_iterations=5,
            default_max_iterations=5,
        ),
        "swarm": ModeSettings(parallel_execution=True),
    }


@dataclass(slots=True)
class GateflowConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    modes: dict[str, ModeSettings] = field(default_factory=_default_modes)

    @classmethod
    def default(cls) -> GateflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> GateflowConfig:
        swarm_data = {
            key: value
            for key, value in data.get("swarm", {}).items()
            if not str(key).startswith("_comment")
        }
        provider_limits = swarm_data.pop("provider_concurrency", {}) or {}
        modes = _default_modes()
        for name, settings in data.get("modes", {}).items():
            base = modes.get(name, ModeSettings())
            merged = {**_mode_to_dict(base), **settings}
            modes[name] = ModeSettings(**merged)
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            swarm=SwarmConfig(
                **swarm_data,
                provider_concurrency={
                    str(provider): int(limit) for provider, limit in provider_limits.items()
                },
            ),
            logging=LoggingConfig(**data.get("logging", {})),
            modes=modes,
        )

    def mode_settings(self, mode: str) -> ModeSettings:
        return self.modes.get(mode) or ModeSettings()

    def to_dict(self) -> dict:
        return {
            "paths": {
                "data_root": self.paths.data_root,
                "scratch_root": self.paths.scratch_root,
            },
            "swarm": {
                "default_concurrency": self.swarm.default_concurrency,
                "stale_timeout_seconds": self.swarm.stale_timeout_seconds,
                "progress_timeout_seconds": self.swarm.progress_timeout_seconds,
                "poll_interval_seconds": self.swarm.poll_interval_seconds,
                "max_poll_interval_seconds": self.swarm.max_poll_interval_seconds,
                "poll_backoff_factor": self.swarm.poll_backoff_factor,
                "spawn_delay_seconds": self.swarm.spawn_delay_seconds,
                "await_timeout_seconds": self.swarm.await_timeout_seconds,
                "stall_action": self.swarm.stall_action,
                "allow_sub_minimum": self.swarm.allow_sub_minimum,
                "provider_concurrency": dict(self.swarm.provider_concurrency),
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
                "stderr": self.logging.stderr,
            },
            "modes": {name: _mode_to_dict(settings) for name, settings in self.modes.items()},
        }


def _mode_to_dict(settings: ModeSettings) -> dict[str, Any]:
    return {
        "max_review_iterations": settings.max_review_iterations,
        "max_security_iterations": settings.max_security_iterations,
        "max_quality_gate_iterations": settings.max_quality_gate_iterations,
        "max_completion_guard_iterations": settings.max_completion_guard_iterations,
        "default_max_iterations": settings.default_max_iterations,
        "parallel_execution": settings.parallel_execution,
        "test_required": settings.test_required,
    }


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


def _toml_key(key: str) -> str:
    if key and all(ch.isalnum() or ch in "_-" for ch in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def _dump_table(lines: list[str], header: str, table: dict[str, Any]) -> None:
    lines.append(f"[{header}]")
    nested: list[tuple[str, dict[str, Any]]] = []
    for key, value in table.items():
        if isinstance(value, dict):
            nested.append((key, value))
            continue
        lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
    lines.append("")
    for key, value in nested:
        _dump_table(lines, f"{header}.{_toml_key(key)}", value)


def dumps_toml(config: GateflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("paths", "swarm", "logging"):
        _dump_table(lines, section, data[section])
    for name, settings in data["modes"].items():
        _dump_table(lines, f"modes.{_toml_key(name)}", settings)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path | None = None) -> GateflowConfig:
    config_path = path or default_config_path()
    if not config_path.exists():
        return GateflowConfig.default()
    return GateflowConfig.from_dict(tomllib.loads(config_path.read_text(encoding="utf-8")))


def save_config(path: Path, config: GateflowConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
