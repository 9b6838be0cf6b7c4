from __future__ import annotations

import json
import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from devteam.state.store import utcnow_iso
from devteam.tools_config import ToolsConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
KILL_GRACE_SECONDS = 0.5
LOG_RELATIVE_PATH = Path("logs") / "tool-runtime.log"
STDIO_LOG_LIMIT = 4000

CommandRunnerErrorCode = Literal["NOT_ALLOWED", "SPAWN_FAILED"]


class CommandRunnerError(RuntimeError):
    """Raised when a command is not allowlisted or cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        code: CommandRunnerErrorCode,
        command_id: str,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.command_id = command_id
        self.retriable = retriable


@dataclass(slots=True)
class CommandResult:
    command_id: str
    command: list[str] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def failed(self) -> bool:
        return self.timed_out or self.exit_code != 0


def _truncate(value: str, limit: int = STDIO_LOG_LIMIT) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}\n...[truncated {len(value) - limit} chars]"


class CommandRunner:
    """Runs allowlisted commands only, with fixed arguments from the tools config."""

    def __init__(
        self,
        *,
        workspace_dir: Path,
        run_dir: Path,
        tools: ToolsConfig,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.workspace_dir = workspace_dir.resolve()
        self.tools = tools
        self.default_timeout_seconds = default_timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.log_path = run_dir / LOG_RELATIVE_PATH

    def _log_execution(self, payload: dict[str, Any]) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps({"ts": utcnow_iso(), **payload}, ensure_ascii=False)
        with self.log_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def run(self, command_id: str, *, timeout_seconds: float | None = None) -> CommandResult:
        normalized_id = command_id.strip()
        if not normalized_id:
            raise ValueError("command_id must not be empty.")

        command = self.tools.get(normalized_id)
        if command is None:
            error = CommandRunnerError(
                f"Command is not in the allowlist: {normalized_id}",
                code="NOT_ALLOWED",
                command_id=normalized_id,
            )
            self._log_execution(
                {"event": "rejected", "commandId": normalized_id, "reason": str(error)}
            )
            logger.warning("Rejected command outside allowlist: %s", normalized_id)
            raise error

        if timeout_seconds is None:
            timeout_seconds = (
                command.timeout_ms / 1000
                if command.timeout_ms is not None
                else self.default_timeout_seconds
            )
        argv = command.argv
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                cwd=self.workspace_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            error = CommandRunnerError(
                f"Failed to start command {normalized_id}: {exc}",
                code="SPAWN_FAILED",
                command_id=normalized_id,
            )
            self._log_execution(
                {"event": "spawn_failed", "commandId": normalized_id, "reason": str(error)}
            )
            raise error from exc

        timed_out = False
        try:
            stdout, stderr = process.communicate(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            process.terminate()
            try:
                stdout, stderr = process.communicate(timeout=self.kill_grace_seconds)
            except subprocess.TimeoutExpired:
                process.kill()
                stdout, stderr = process.communicate()

        result = CommandResult(
            command_id=normalized_id,
            command=argv,
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=process.returncode,
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
        )
        self._log_execution(
            {
                "event": "completed",
                "commandId": normalized_id,
                "command": argv,
                "exitCode": result.exit_code,
                "timedOut": result.timed_out,
                "durationMs": result.duration_ms,
                "stdout": _truncate(result.stdout),
                "stderr": _truncate(result.stderr),
            }
        )
        logger.debug(
            "Command %s finished exit_code=%s timed_out=%s",
            normalized_id,
            result.exit_code,
            result.timed_out,
        )
        return result
