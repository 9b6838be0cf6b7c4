from __future__ import annotations

import json
from typing import Literal

from devteam.providers.base import (
    DEFAULT_TIMEOUT_SECONDS,
    ProcessSpec,
    ProviderRequest,
    SubprocessProvider,
    merge_prompts,
)

SandboxMode = Literal["read-only", "workspace-write", "danger-full-access"]


class CodexCliProvider(SubprocessProvider):
    """``codex exec`` with the merged prompt fed on stdin."""

    id = "codex-cli"

    def __init__(
        self,
        binary: str = "codex",
        *,
        sandbox_mode: SandboxMode | None = None,
        approval_policy: str | None = None,
        extra_args: list[str] | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(
            binary, extra_args=extra_args, default_timeout_seconds=default_timeout_seconds
        )
        self.sandbox_mode = sandbox_mode
        self.approval_policy = approval_policy

    def build_command(self, request: ProviderRequest) -> ProcessSpec:
        workspace = request.workspace_dir.resolve()
        command = [self.binary, "exec", "--color", "never", "-C", str(workspace)]
        if self.sandbox_mode:
            command.extend(["--sandbox", self.sandbox_mode])
        if self.approval_policy:
            command.extend(["-c", f"approval_policy={json.dumps(self.approval_policy)}"])
        command.extend(self.extra_args)
        stdin = merge_prompts(request.system_prompt, request.user_prompt) + "\n"
        return ProcessSpec(command=command, cwd=workspace, stdin=stdin)
