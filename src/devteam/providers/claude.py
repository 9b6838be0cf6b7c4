from __future__ import annotations

from devteam.providers.base import (
    DEFAULT_TIMEOUT_SECONDS,
    ProcessSpec,
    ProviderRequest,
    SubprocessProvider,
    merge_prompts,
)


class ClaudeCliProvider(SubprocessProvider):
    id = "claude-cli"

    def __init__(
        self,
        binary: str = "claude-cli",
        *,
        extra_args: list[str] | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(
            binary, extra_args=extra_args, default_timeout_seconds=default_timeout_seconds
        )

    def build_command(self, request: ProviderRequest) -> ProcessSpec:
        prompt = merge_prompts(request.system_prompt, request.user_prompt)
        return ProcessSpec(
            command=[self.binary, "-p", prompt, *self.extra_args],
            cwd=request.workspace_dir.resolve(),
        )
