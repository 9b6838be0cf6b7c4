from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

ProviderErrorCode = Literal["TIMEOUT", "EXECUTION_FAILED", "SPAWN_FAILED", "UNKNOWN"]
SystemPromptMode = Literal["inline", "separate"]

DEFAULT_TIMEOUT_SECONDS = 300.0
KILL_GRACE_SECONDS = 0.5


@dataclass(frozen=True, slots=True)
class ProviderCapabilities:
    system_prompt_mode: SystemPromptMode = "inline"
    supports_patch_output: bool = True


@dataclass(frozen=True, slots=True)
class ProviderRequest:
    system_prompt: str
    user_prompt: str
    workspace_dir: Path
    timeout_seconds: float | None = None


@dataclass(slots=True)
class ProviderMeta:
    duration_ms: int = 0
    stdout: str = ""
    stderr: str = ""
    command: list[str] = field(default_factory=list)
    exit_code: int | None = None
    timed_out: bool = False


@dataclass(slots=True)
class ProviderResult:
    text: str
    meta: ProviderMeta = field(default_factory=ProviderMeta)


class ProviderError(RuntimeError):
    """Raised when a model invocation fails. Never retried automatically."""

    def __init__(
        self,
        message: str,
        *,
        code: ProviderErrorCode,
        provider: str | None = None,
        meta: ProviderMeta | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.provider = provider
        self.meta = meta
        self.retriable = retriable


class Provider(ABC):
    id: str = "provider"
    capabilities: ProviderCapabilities = ProviderCapabilities()

    @abstractmethod
    async def run(self, request: ProviderRequest) -> ProviderResult:
        """Invoke the model and return its text. Must not modify the workspace."""


def merge_prompts(system_prompt: str, user_prompt: str) -> str:
    return f"[SYSTEM]\n{system_prompt.strip()}\n\n[USER]\n{user_prompt.strip()}"


@dataclass(frozen=True, slots=True)
class ProcessSpec:
    command: list[str]
    cwd: Path
    stdin: str | None = None


class SubprocessProvider(Provider):
    """Provider backed by a local CLI process."""

    def __init__(
        self,
        binary: str,
        *,
        extra_args: list[str] | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.binary = binary
        self.extra_args = list(extra_args or [])
        self.default_timeout_seconds = default_timeout_seconds

    @abstractmethod
    def build_command(self, request: ProviderRequest) -> ProcessSpec:
        """Translate a request into the process to spawn."""

    async def run(self, request: ProviderRequest) -> ProviderResult:
        spec = self.build_command(request)
        timeout = request.timeout_seconds or self.default_timeout_seconds
        started = time.monotonic()
        logger.debug("Starting provider %s: %s", self.id, spec.command[:2])
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=str(spec.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProviderError(
                f"{self.id} could not be started: {exc}",
                code="SPAWN_FAILED",
                provider=self.id,
                meta=ProviderMeta(stderr=str(exc), command=spec.command),
            ) from exc

        stdin_bytes = spec.stdin.encode("utf-8") if spec.stdin is not None else b""
        timed_out = False
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(stdin_bytes), timeout=timeout
            )
        except TimeoutError:
            timed_out = True
            process.terminate()
            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(), timeout=KILL_GRACE_SECONDS
                )
            except TimeoutError:
                process.kill()
                stdout_bytes, stderr_bytes = await process.communicate()

        meta = ProviderMeta(
            duration_ms=int((time.monotonic() - started) * 1000),
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            command=spec.command,
            exit_code=process.returncode,
            timed_out=timed_out,
        )
        if timed_out:
            raise ProviderError(
                f"{self.id} timed out after {timeout:.1f}s",
                code="TIMEOUT",
                provider=self.id,
                meta=meta,
            )
        if process.returncode != 0:
            raise ProviderError(
                f"{self.id} failed with exit code {process.returncode}: {meta.stderr.strip()}",
                code="EXECUTION_FAILED",
                provider=self.id,
                meta=meta,
            )
        return ProviderResult(text=meta.stdout.rstrip(), meta=meta)
