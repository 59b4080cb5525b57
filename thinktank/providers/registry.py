"""Provider registry: the only place that maps a provider kind to a concrete adapter class."""

import logging

from config.config_loader import ModelConfig
from thinktank.providers.anthropic import AnthropicProvider
from thinktank.providers.base import AIProvider, ProviderError
from thinktank.providers.gemini import GeminiProvider
from thinktank.providers.ollama import OllamaProvider
from thinktank.providers.openai_provider import OpenAIProvider
from thinktank.providers.xai import XAIProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "xai": XAIProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}


def create_provider(config: ModelConfig) -> AIProvider:
    """Construct the adapter for ``config``.

    Raises:
        MissingApiKey: credential variable unset or blank.
        ProviderError: unknown provider kind or invalid configuration.
    """
    provider_cls = PROVIDER_CLASSES.get(config.provider)
    if provider_cls is None:
        raise ProviderError(config.name, f"Unknown provider kind: {config.provider}")
    return provider_cls(config)


def build_provider_chain(
    primary: ModelConfig,
    fallbacks: list[ModelConfig] | None = None,
) -> list[AIProvider]:
    """Return ``[primary, *fallbacks]`` adapters for one participant.

    Fallbacks of the same provider kind as the primary are skipped, as are
    fallbacks that cannot be constructed. If the primary itself cannot be
    constructed the first constructible fallback takes its place.

    Raises:
        ProviderError: nothing in the chain could be constructed (the
            primary's error is re-raised).
    """
    chain: list[AIProvider] = []
    primary_error: ProviderError | None = None
    try:
        chain.append(create_provider(primary))
    except ProviderError as exc:
        primary_error = exc
        logger.warning("Primary provider '%s' unavailable: %s", primary.name, exc)

    for config in fallbacks or []:
        if config.provider == primary.provider or config.name == primary.name:
            continue
        try:
            chain.append(create_provider(config))
        except ProviderError as exc:
            logger.info("Fallback provider '%s' skipped: %s", config.name, exc)

    if not chain:
        assert primary_error is not None
        raise primary_error
    return chain


def build_all_providers(models: dict[str, ModelConfig], available: set[str]) -> dict[str, AIProvider]:
    """Build every available provider. Returns dict keyed by model name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(available):
        model_cfg = models.get(name)
        if model_cfg is None:
            logger.warning("Provider '%s' unknown, skipping", name)
            continue
        try:
            providers[name] = create_provider(model_cfg)
        except ProviderError as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers
