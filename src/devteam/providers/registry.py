from __future__ import annotations

from collections.abc import Callable

from devteam.config import ProvidersConfig, RoutingConfig
from devteam.providers.base import Provider, ProviderError
from devteam.providers.claude import ClaudeCliProvider
from devteam.providers.codex import CodexCliProvider
from devteam.providers.gemini import GeminiCliProvider
from devteam.providers.openai_api import OpenAIProvider

ProviderFactory = Callable[[], Provider]

FALLBACK_PROVIDER_ID = "codex-cli"
_ALIASES = {
    "codex": "codex-cli",
    "gemini": "gemini-cli",
    "claude": "claude-cli",
}


def normalize_provider_id(provider_id: str) -> str:
    normalized = provider_id.strip().lower()
    return _ALIASES.get(normalized, normalized)


class ProviderRegistry:
    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, provider_id: str, factory: ProviderFactory) -> None:
        self._factories[normalize_provider_id(provider_id)] = factory

    def has(self, provider_id: str) -> bool:
        return normalize_provider_id(provider_id) in self._factories

    def create(self, provider_id: str) -> Provider:
        factory = self._factories.get(normalize_provider_id(provider_id))
        if factory is None:
            raise ProviderError(
                f"Provider is not registered: {provider_id}",
                code="UNKNOWN",
                provider=provider_id,
            )
        return factory()

    def list(self) -> list[str]:
        return sorted(self._factories)


def create_provider_registry(config: ProvidersConfig | None = None) -> ProviderRegistry:
    settings = config or ProvidersConfig()
    timeout = settings.timeout_seconds
    registry = ProviderRegistry()
    registry.register(
        "codex-cli",
        lambda: CodexCliProvider(settings.codex_binary, default_timeout_seconds=timeout),
    )
    registry.register(
        "claude-cli",
        lambda: ClaudeCliProvider(settings.claude_binary, default_timeout_seconds=timeout),
    )
    registry.register(
        "gemini-cli",
        lambda: GeminiCliProvider(settings.gemini_binary, default_timeout_seconds=timeout),
    )
    registry.register(
        "openai",
        lambda: OpenAIProvider(model=settings.openai_model, default_timeout_seconds=timeout),
    )
    return registry


def resolve_provider_id(
    provider_id: str | None = None,
    *,
    role: str | None = None,
    routing: RoutingConfig | None = None,
    fallback: str | None = None,
) -> str:
    """Pick a provider id: explicit id, routed role, routing default, fallback."""
    if provider_id and provider_id.strip():
        return normalize_provider_id(provider_id)
    if routing is not None:
        if role:
            routed = routing.provider_for_role(role)
            if routed:
                return normalize_provider_id(routed)
        if routing.provider and routing.provider.strip():
            return normalize_provider_id(routing.provider)
    if fallback and fallback.strip():
        return normalize_provider_id(fallback)
    return FALLBACK_PROVIDER_ID


class CachingProviderResolver:
    """One provider instance per id for the lifetime of a run."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry
        self._cache: dict[str, Provider] = {}

    def __call__(self, provider_id: str, phase: object | None = None) -> Provider:
        key = normalize_provider_id(provider_id)
        if key not in self._cache:
            self._cache[key] = self.registry.create(key)
        return self._cache[key]
