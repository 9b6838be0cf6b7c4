from __future__ import annotations

import time
from typing import Any

from openai import APITimeoutError, AsyncOpenAI, OpenAIError

from devteam.providers.base import (
    DEFAULT_TIMEOUT_SECONDS,
    Provider,
    ProviderCapabilities,
    ProviderError,
    ProviderMeta,
    ProviderRequest,
    ProviderResult,
)


class OpenAIProvider(Provider):
    """Responses API provider. The system prompt travels as ``instructions``."""

    id = "openai"
    capabilities = ProviderCapabilities(system_prompt_mode="separate")

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        client: Any | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model
        self.default_timeout_seconds = default_timeout_seconds
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = AsyncOpenAI()
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def run(self, request: ProviderRequest) -> ProviderResult:
        timeout = request.timeout_seconds or self.default_timeout_seconds
        command = ["openai.responses.create", self.model]
        started = time.monotonic()
        try:
            response = await self.client.responses.create(
                model=self.model,
                instructions=request.system_prompt,
                input=request.user_prompt,
                timeout=timeout,
            )
        except APITimeoutError as exc:
            raise ProviderError(
                f"openai request timed out after {timeout:.1f}s",
                code="TIMEOUT",
                provider=self.id,
                meta=ProviderMeta(
                    duration_ms=int((time.monotonic() - started) * 1000),
                    stderr=str(exc),
                    command=command,
                    timed_out=True,
                ),
            ) from exc
        except OpenAIError as exc:
            raise ProviderError(
                f"openai request failed: {exc}",
                code="EXECUTION_FAILED",
                provider=self.id,
                meta=ProviderMeta(
                    duration_ms=int((time.monotonic() - started) * 1000),
                    stderr=str(exc),
                    command=command,
                ),
            ) from exc

        text = self._extract_text(response)
        return ProviderResult(
            text=text.rstrip(),
            meta=ProviderMeta(
                duration_ms=int((time.monotonic() - started) * 1000),
                stdout=text,
                command=command,
                exit_code=0,
            ),
        )
