"""xAI Grok adapter using the OpenAI-compatible streaming API."""

from config.config_loader import ModelConfig
from thinktank.providers.base import ProviderError
from thinktank.providers.openai_provider import OpenAIProvider


class XAIProvider(OpenAIProvider):
    """xAI Grok provider via OpenAI-compatible API."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        if not config.base_url:
            raise ProviderError(config.name, "base_url is required for xAI provider")
