"""Factory for creating extraction providers based on configuration.

Registry maps APP_EXTRACTION_PROVIDER values to provider classes, so a new
backend only needs to be registered to become selectable.
"""

import logging

from invoice_processor.extraction.base import ExtractionProvider
from invoice_processor.extraction.mlx_provider import MLXExtractionProvider
from invoice_processor.extraction.openrouter_provider import OpenRouterExtractionProvider
from invoice_processor.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available extraction providers."""

    _providers: dict[str, type[ExtractionProvider]] = {
        "openrouter": OpenRouterExtractionProvider,
        "mlx": MLXExtractionProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        """Register a new provider.

        Args:
            name: Provider identifier (must match Settings.extraction_provider)
            provider_class: Provider class implementing ExtractionProvider interface
        """
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Get provider class by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            )
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Instantiate the provider named by settings.extraction_provider.

    An unconfigured provider is still returned; its extract_invoice call
    reports a configuration failure.

    Args:
        settings: Application settings

    Returns:
        Configured extraction provider instance

    Raises:
        ValueError: If configured provider is unknown

    Example:
        >>> settings = Settings(extraction_provider="mlx")
        >>> provider = create_extraction_provider(settings)
        >>> result = provider.extract_invoice("https://.../invoice_1.png")
    """
    provider_name = settings.extraction_provider
    provider = ProviderRegistry.get_provider_class(provider_name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{provider_name}' is not fully available. "
            f"Check configuration (e.g., API keys, service URL)."
        )

    logger.info(f"Created extraction provider: {provider_name}")
    return provider
