from devteam.providers.base import (
    Provider,
    ProviderCapabilities,
    ProviderError,
    ProviderMeta,
    ProviderRequest,
    ProviderResult,
    SubprocessProvider,
)
from devteam.providers.claude import ClaudeCliProvider
from devteam.providers.codex import CodexCliProvider
from devteam.providers.gemini import GeminiCliProvider
from devteam.providers.openai_api import OpenAIProvider
from devteam.providers.registry import (
    CachingProviderResolver,
    ProviderRegistry,
    create_provider_registry,
    normalize_provider_id,
    resolve_provider_id,
)

__all__ = [
    "CachingProviderResolver",
    "ClaudeCliProvider",
    "CodexCliProvider",
    "GeminiCliProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderCapabilities",
    "ProviderError",
    "ProviderMeta",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderResult",
    "SubprocessProvider",
    "create_provider_registry",
    "normalize_provider_id",
    "resolve_provider_id",
]
