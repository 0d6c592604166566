"""Construction of AI backends and lookup of mail providers by account type."""

import logging

from spamguard.errors import ConfigurationError
from spamguard.integrations.ollama import OllamaClient
from spamguard.integrations.openrouter import OpenRouterClient
from spamguard.integrations.protocols import MailProvider
from spamguard.schemas.email import ProviderType

logger = logging.getLogger(__name__)


def create_ai_backend(
    source: str,
    *,
    ollama_base_url: str = "",
    openrouter_api_key: str = "",
    openrouter_base_url: str = "",
) -> OllamaClient | OpenRouterClient:
    """Build the AI backend selected by ``source`` ("ollama" or "openrouter")."""
    source = source.lower()
    if source == "ollama":
        if not ollama_base_url:
            raise ConfigurationError("OLLAMA_BASE_URL is not set")
        return OllamaClient(ollama_base_url)
    if source == "openrouter":
        if not openrouter_api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not set")
        if openrouter_base_url:
            return OpenRouterClient(openrouter_api_key, openrouter_base_url)
        return OpenRouterClient(openrouter_api_key)
    raise ConfigurationError(f"Unknown AI source: {source!r}")


class MailProviderRegistry:
    """Maps account provider types to mail provider implementations.

    Usage::

        registry = MailProviderRegistry({ProviderType.IMAP: ImapMailProvider()})
        provider = registry.get(account.provider)
    """

    def __init__(self, providers: dict[ProviderType, MailProvider] | None = None) -> None:
        self._providers: dict[ProviderType, MailProvider] = dict(providers or {})

    def register(self, provider_type: ProviderType, provider: MailProvider) -> None:
        self._providers[provider_type] = provider

    def get(self, provider_type: ProviderType) -> MailProvider:
        try:
            return self._providers[provider_type]
        except KeyError:
            raise ConfigurationError(
                f"No mail provider registered for {provider_type.value!r} accounts"
            ) from None

    @classmethod
    def default(cls) -> "MailProviderRegistry":
        """Registry with the providers that ship with spamguard (IMAP only)."""
        from spamguard.integrations.imap import ImapMailProvider

        return cls({ProviderType.IMAP: ImapMailProvider()})
