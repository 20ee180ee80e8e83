from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

Depth = Literal["quick", "standard", "comprehensive"]
ModelProfile = Literal["quality", "balanced", "budget"]
NotifyChannel = Literal["console", "system", "teams", "slack", "webhook"]

DEPTHS = ("quick", "standard", "comprehensive")
MODEL_PROFILES = ("quality", "balanced", "budget")
NOTIFY_CHANNELS = ("console", "system", "teams", "slack", "webhook")

CONFIG_FILENAME = ".autopilot.toml"
ENV_PREFIX = "AUTOPILOT_"


class ConfigError(ValueError):
    """Raised when configuration values are missing, unknown or invalid."""


@dataclass(slots=True)
class ExecutionConfig:
    depth: Depth = "standard"
    model: ModelProfile = "balanced"
    skip_discuss: bool = False
    skip_verify: bool = False
    timeout_seconds: float = 600.0
    init_timeout_seconds: float = 1200.0
    auto_answer: bool = False
    max_retries: int = 1
    retry_backoff_seconds: float = 0.0


@dataclass(slots=True)
class NotifyConfig:
    """Notification settings, validated here and read by the notification adapters."""

    channel: NotifyChannel = "console"
    webhook_url: str = ""
    question_reminder_seconds: int = 300


@dataclass(slots=True)
class ServerConfig:
    """Dashboard server settings. The run loop itself never opens a port."""

    port: int = 3847


@dataclass(slots=True)
class OutputConfig:
    verbose: bool = False
    quiet: bool = False


@dataclass(slots=True)
class CommandsConfig:
    init: str = "/gsd:new-project --auto {spec_path}"
    discuss: str = "/gsd:discuss-phase {phase}"
    plan: str = "/gsd:plan-phase {phase}"
    plan_gaps: str = "/gsd:plan-phase {phase} --gaps"
    execute: str = "/gsd:execute-phase {phase}"
    execute_gaps: str = "/gsd:execute-phase {phase} --gaps-only"
    verify: str = "/gsd:verify-work {phase}"

    def render(self, name: str, **values: str) -> str:
        template = getattr(self, name)
        try:
            return template.format(**values)
        except (KeyError, IndexError) as exc:
            raise ConfigError(f"Command template '{name}' references unknown field {exc}") from exc


SECTION_TYPES = {
    "execution": ExecutionConfig,
    "notify": NotifyConfig,
    "server": ServerConfig,
    "output": OutputConfig,
    "commands": CommandsConfig,
}
# Sections whose keys can be overridden as flat AUTOPILOT_<KEY> variables or CLI flags.
OVERRIDABLE_SECTIONS = ("execution", "notify", "server", "output")


@dataclass(slots=True)
class AutopilotConfig:
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotConfig:
        unknown = set(data) - set(SECTION_TYPES)
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(sorted(unknown))}")
        sections: dict[str, Any] = {}
        for name, section_type in SECTION_TYPES.items():
            values = data.get(name, {})
            if not isinstance(values, dict):
                raise ConfigError(f"Config section [{name}] must be a table")
            try:
                sections[name] = section_type(**values)
            except TypeError as exc:
                raise ConfigError(f"Invalid key in config section [{name}]: {exc}") from exc
        config = cls(**sections)
        config.validate()
        return config

    def to_dict(self) -> dict:
        return {
            name: {item.name: getattr(getattr(self, name), item.name) for item in fields(section)}
            for name, section in SECTION_TYPES.items()
        }

    def validate(self) -> None:
        execution = self.execution
        if execution.depth not in DEPTHS:
            raise ConfigError(f"execution.depth must be one of {', '.join(DEPTHS)}")
        if execution.model not in MODEL_PROFILES:
            raise ConfigError(f"execution.model must be one of {', '.join(MODEL_PROFILES)}")
        if execution.timeout_seconds <= 0 or execution.init_timeout_seconds <= 0:
            raise ConfigError("execution timeouts must be positive")
        if execution.max_retries < 0:
            raise ConfigError("execution.max_retries must be >= 0")
        if execution.retry_backoff_seconds < 0:
            raise ConfigError("execution.retry_backoff_seconds must be >= 0")
        if self.notify.channel not in NOTIFY_CHANNELS:
            raise ConfigError(f"notify.channel must be one of {', '.join(NOTIFY_CHANNELS)}")
        if self.notify.channel == "webhook" and not self.notify.webhook_url:
            raise ConfigError("notify.webhook_url is required when notify.channel is 'webhook'")
        if self.notify.question_reminder_seconds < 0:
            raise ConfigError("notify.question_reminder_seconds must be >= 0")
        if not 1 <= self.server.port <= 65535:
            raise ConfigError("server.port must be between 1 and 65535")
        if self.output.verbose and self.output.quiet:
            raise ConfigError("output.verbose and output.quiet cannot both be set")


def _override_targets() -> dict[str, str]:
    targets: dict[str, str] = {}
    for section in OVERRIDABLE_SECTIONS:
        for item in fields(SECTION_TYPES[section]):
            targets[item.name] = section
    return targets


def _coerce(raw: Any, default: Any, key: str) -> Any:
    if not isinstance(raw, str):
        return raw
    value = raw.strip()
    if isinstance(default, bool):
        lowered = value.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ConfigError(f"{key} expects a boolean, got {raw!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigError(f"{key} expects an integer, got {raw!r}") from exc
    if isinstance(default, float):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"{key} expects a number, got {raw!r}") from exc
    return value


def apply_overrides(config: AutopilotConfig, overrides: Mapping[str, Any]) -> AutopilotConfig:
    """Apply flat ``{key: value}`` overrides; ``None`` values are ignored."""
    targets = _override_targets()
    data = config.to_dict()
    for key, raw in overrides.items():
        if raw is None:
            continue
        section = targets.get(key)
        if section is None:
            raise ConfigError(f"Unknown config key: {key}")
        declared = getattr(SECTION_TYPES[section](), key)
        data[section][key] = _coerce(raw, declared, key)
    return AutopilotConfig.from_dict(data)


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    overrides: dict[str, str] = {}
    for key in _override_targets():
        value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value is not None:
            overrides[key] = value
    return overrides


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutopilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_TYPES:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(
    path: Path,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AutopilotConfig:
    """Defaults < config file < ``AUTOPILOT_*`` environment < explicit overrides."""
    if path.exists():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
        config = AutopilotConfig.from_dict(data)
    else:
        config = AutopilotConfig.default()
    config = apply_overrides(config, env_overrides(environ))
    if overrides:
        config = apply_overrides(config, overrides)
    return config


def save_config(path: Path, config: AutopilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
