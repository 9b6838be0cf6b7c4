from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from devteam.config import ParseError

_COMMAND_KEYS = {"id", "executable", "args", "timeout_ms"}


class ToolsConfigError(ParseError):
    """Raised when the tools allowlist document is malformed."""


@dataclass(frozen=True, slots=True)
class ToolCommand:
    id: str
    executable: str
    args: tuple[str, ...] = ()
    timeout_ms: int | None = None

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]


@dataclass(frozen=True, slots=True)
class ToolsConfig:
    commands: tuple[ToolCommand, ...]

    def get(self, command_id: str) -> ToolCommand | None:
        wanted = command_id.strip()
        for command in self.commands:
            if command.id == wanted:
                return command
        return None

    def ids(self) -> list[str]:
        return [command.id for command in self.commands]


def _required_str(entry: dict[str, Any], key: str, label: str) -> str:
    value = entry.get(key)
    if value is None or isinstance(value, (dict, list, bool)):
        raise ToolsConfigError(f"{label}.{key} is required.")
    normalized = str(value).strip()
    if not normalized:
        raise ToolsConfigError(f"{label}.{key} is required.")
    return normalized


def _parse_command(entry: Any, index: int) -> ToolCommand:
    if not isinstance(entry, dict):
        raise ToolsConfigError(f"commands[{index}] must be a mapping.")
    unknown = sorted(set(entry) - _COMMAND_KEYS)
    if unknown:
        raise ToolsConfigError(f"Unknown keys in commands[{index}]: {', '.join(unknown)}")

    command_id = _required_str(entry, "id", f"commands[{index}]")
    label = f"commands[{command_id}]"
    executable = _required_str(entry, "executable", label)

    raw_args = entry.get("args") or []
    if not isinstance(raw_args, list):
        raise ToolsConfigError(f"{label}.args must be a list.")
    args: list[str] = []
    for arg in raw_args:
        if isinstance(arg, (dict, list)) or arg is None:
            raise ToolsConfigError(f"{label}.args must contain only scalar values.")
        args.append(str(arg))

    timeout_ms = entry.get("timeout_ms")
    if timeout_ms is not None and (
        isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0
    ):
        raise ToolsConfigError(f"{label}.timeout_ms must be a positive integer.")

    return ToolCommand(
        id=command_id,
        executable=executable,
        args=tuple(args),
        timeout_ms=timeout_ms,
    )


def parse_tools_config(text: str) -> ToolsConfig:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ToolsConfigError(f"tools config is not valid YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise ToolsConfigError("tools config must be a mapping with a 'commands' list.")
    unknown = sorted(str(key) for key in set(document) - {"commands"})
    if unknown:
        raise ToolsConfigError(f"Unknown keys in tools config: {', '.join(unknown)}")

    raw_commands = document.get("commands")
    if not isinstance(raw_commands, list) or not raw_commands:
        raise ToolsConfigError("tools config 'commands' must be a non-empty list.")

    commands = [_parse_command(entry, index) for index, entry in enumerate(raw_commands)]
    seen: set[str] = set()
    for command in commands:
        if command.id in seen:
            raise ToolsConfigError(f"Duplicate command id in tools config: {command.id}")
        seen.add(command.id)
    return ToolsConfig(commands=tuple(commands))


def load_tools_config(path: Path) -> ToolsConfig:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ToolsConfigError(f"Cannot read tools config {path}: {exc}") from exc
    return parse_tools_config(text)
