"""Extraction provider lookup.

``settings.extraction_provider`` names one of the registered providers. The
regex provider is always registered and needs no network, so it doubles as
the offline default and as the fallback the intake pipeline uses when an
LLM provider fails.
"""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.ollama_provider import OllamaExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.extraction.regex_provider import RegexExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Name to class mapping for invoice extraction providers."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "regex": RegexExtractionProvider,
        "ollama": OllamaExtractionProvider,
        "openai": OpenAIExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        """Add or replace a provider under ``name``."""
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up a provider class.

        Raises:
            ValueError: If nothing is registered under ``name``. The message
                lists the registered names.
        """
        try:
            return cls._providers[name]
        except KeyError:
            available = ", ".join(cls._providers)
            raise ValueError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            ) from None

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers)


def create_extraction_service(settings: Settings) -> ExtractionProvider:
    """Instantiate the provider configured in ``settings``.

    An unavailable provider (no OpenAI key, Ollama unreachable) is still
    returned. Its calls fail with an error result and the caller decides
    whether to fall back.

    Raises:
        ValueError: If the configured provider name is unknown.
    """
    name = settings.extraction_provider
    provider = ProviderRegistry.get_provider_class(name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' is not fully available; "
            f"invoices will fall back to regex extraction."
        )

    logger.info(f"Created extraction provider: {name}")
    return provider
