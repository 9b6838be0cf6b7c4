from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_SECURITY_PATH_PATTERN = (
    r"(^|/)(auth|security|secrets?|credentials?|tokens?|permissions?)(/|$)|\.env"
)
MAX_AUTO_FIX_RETRIES_LIMIT = 10


class ParseError(RuntimeError):
    """Raised when a configuration or workflow document cannot be parsed."""


class ConfigError(ParseError):
    """Raised when the project config contains invalid values."""


@dataclass(slots=True)
class RoutingConfig:
    provider: str = "codex-cli"
    default_workflow: str = "refactor"
    roles: dict[str, str] = field(default_factory=dict)

    def provider_for_role(self, role: str) -> str | None:
        provider = self.roles.get(role.strip().lower())
        if provider and provider.strip():
            return provider.strip()
        return None


@dataclass(slots=True)
class GatekeeperConfig:
    check_command_ids: list[str] = field(default_factory=lambda: ["build", "test"])
    max_auto_fix_retries: int = 2
    large_change_file_threshold: int = 20
    large_change_line_threshold: int = 500
    security_path_pattern: str = DEFAULT_SECURITY_PATH_PATTERN
    diff_name_status_command_id: str = "git-diff-name-status"
    diff_numstat_command_id: str = "git-diff-numstat"

    def compiled_security_pattern(self) -> re.Pattern[str]:
        return re.compile(self.security_path_pattern, re.IGNORECASE)


@dataclass(slots=True)
class ProvidersConfig:
    timeout_seconds: float = 300.0
    claude_binary: str = "claude-cli"
    codex_binary: str = "codex"
    gemini_binary: str = "gemini"
    openai_model: str = "gpt-5-codex"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class DevTeamConfig:
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    gatekeeper: GatekeeperConfig = field(default_factory=GatekeeperConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> DevTeamConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> DevTeamConfig:
        unknown = sorted(set(data) - {"routing", "gatekeeper", "providers", "logging"})
        if unknown:
            raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")
        routing_data = dict(data.get("routing", {}))
        roles = routing_data.pop("roles", {})
        if not isinstance(roles, dict):
            raise ConfigError("routing.roles must be a table of role = provider.")
        try:
            config = cls(
                routing=RoutingConfig(
                    **routing_data,
                    roles={str(role).strip().lower(): str(pid) for role, pid in roles.items()},
                ),
                gatekeeper=GatekeeperConfig(**data.get("gatekeeper", {})),
                providers=ProvidersConfig(**data.get("providers", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid config: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        retries = self.gatekeeper.max_auto_fix_retries
        if (
            isinstance(retries, bool)
            or not isinstance(retries, int)
            or not 0 <= retries <= MAX_AUTO_FIX_RETRIES_LIMIT
        ):
            raise ConfigError(
                f"gatekeeper.max_auto_fix_retries must be an integer in 0..10: {retries}"
            )
        for name in ("large_change_file_threshold", "large_change_line_threshold"):
            value = getattr(self.gatekeeper, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"gatekeeper.{name} must be a positive integer: {value!r}")
        check_ids = self.gatekeeper.check_command_ids
        if not isinstance(check_ids, list) or not all(isinstance(item, str) for item in check_ids):
            raise ConfigError(
                f"gatekeeper.check_command_ids must be a list of strings: {check_ids!r}"
            )
        string_fields = (
            "security_path_pattern",
            "diff_name_status_command_id",
            "diff_numstat_command_id",
        )
        for name in string_fields:
            if not isinstance(getattr(self.gatekeeper, name), str):
                raise ConfigError(f"gatekeeper.{name} must be a string.")
        try:
            self.gatekeeper.compiled_security_pattern()
        except re.error as exc:
            raise ConfigError(f"gatekeeper.security_path_pattern is invalid: {exc}") from exc
        timeout = self.providers.timeout_seconds
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"providers.timeout_seconds must be a positive number: {timeout!r}")

    def to_dict(self) -> dict:
        return {
            "routing": {
                "provider": self.routing.provider,
                "default_workflow": self.routing.default_workflow,
                "roles": dict(self.routing.roles),
            },
            "gatekeeper": {
                "check_command_ids": list(self.gatekeeper.check_command_ids),
                "max_auto_fix_retries": self.gatekeeper.max_auto_fix_retries,
                "large_change_file_threshold": self.gatekeeper.large_change_file_threshold,
                "large_change_line_threshold": self.gatekeeper.large_change_line_threshold,
                "security_path_pattern": self.gatekeeper.security_path_pattern,
                "diff_name_status_command_id": self.gatekeeper.diff_name_status_command_id,
                "diff_numstat_command_id": self.gatekeeper.diff_numstat_command_id,
            },
            "providers": {
                "timeout_seconds": self.providers.timeout_seconds,
                "claude_binary": self.providers.claude_binary,
                "codex_binary": self.providers.codex_binary,
                "gemini_binary": self.providers.gemini_binary,
                "openai_model": self.providers.openai_model,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


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
    if isinstance(value, dict):
        items = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: DevTeamConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["routing", "gatekeeper", "providers", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> DevTeamConfig:
    if not path.exists():
        return DevTeamConfig.default()
    try:
        data: dict[str, Any] = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Config is not valid TOML ({path}): {exc}") from exc
    return DevTeamConfig.from_dict(data)


def save_config(path: Path, config: DevTeamConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
