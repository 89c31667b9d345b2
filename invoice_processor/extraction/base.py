"""Abstract base class for vision model extraction providers.

Enables switching between different model backends (OpenRouter, self-hosted
MLX-VLM) while keeping one result type and one parsing pipeline.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

Design follows existing patterns:
- Pydantic BaseModel for type-safe results (consistent with schema.py)
- ABC for interface enforcement (Python standard library)
- Settings injection (consistent with existing service initialization)
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from invoice_processor.extraction.parser import DecodeStage, parse_completion
from invoice_processor.extraction.schema import Invoice
from invoice_processor.shared.config import Settings
from invoice_processor.shared.errors import ErrorKind


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        invoice: Extracted invoice or None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        error_kind: Failure category (extraction, upstream, configuration)
        op: Operation that failed (e.g. 'call_model', 'parse_response')
        provider: Name of provider that performed extraction (e.g. 'openrouter')
        stage: Decode stage whose output produced the invoice
        image_url: Public URL of the image the model was given
    """

    invoice: Invoice | None
    success: bool
    error: str | None = None
    error_kind: ErrorKind | None = None
    op: str | None = None
    provider: str
    stage: DecodeStage | None = None
    image_url: str | None = None


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    All providers send an image URL to a vision model and hand the
    model's completion text to the shared parsing pipeline.

    Example implementations:
    - OpenRouterExtractionProvider: OpenAI-compatible OpenRouter API (cloud)
    - MLXExtractionProvider: MLX-VLM HTTP service (self-hosted)
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_invoice(self, image_url: str) -> ExtractionResult:
        """Extract structured invoice data from a publicly reachable image.

        Args:
            image_url: Public URL of the uploaded invoice image

        Returns:
            ExtractionResult with the invoice or a typed failure
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    def health_check(self) -> bool:
        """Check if the provider can serve requests right now.

        Providers without a liveness endpoint report their configuration.

        Returns:
            True if the provider is usable
        """
        return self.is_available()

    def close(self) -> None:
        """Release network clients held by the provider."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openrouter', 'mlx')
        """
        pass

    def _failure(self, error: str, kind: ErrorKind, op: str) -> ExtractionResult:
        return ExtractionResult(
            invoice=None,
            success=False,
            error=error,
            error_kind=kind,
            op=op,
            provider=self.provider_name,
        )

    def _result_from_completion(self, completion: str) -> ExtractionResult:
        """Run the parsing pipeline over a model completion."""
        parsed = parse_completion(completion)
        if not parsed.success:
            return self._failure(
                parsed.error or "failed to extract invoice data",
                ErrorKind.EXTRACTION_FAILED,
                "parse_response",
            )
        return ExtractionResult(
            invoice=parsed.invoice,
            success=True,
            provider=self.provider_name,
            stage=parsed.stage,
        )
