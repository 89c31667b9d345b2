"""Unit tests for extraction base classes and interfaces.

Tests cover:
- Abstract base class enforcement
- ExtractionResult model validation
- Shared completion handling
"""

import pytest

from invoice_processor.extraction.base import ExtractionProvider, ExtractionResult
from invoice_processor.extraction.parser import DecodeStage
from invoice_processor.extraction.schema import Invoice
from invoice_processor.shared.config import Settings
from invoice_processor.shared.errors import ErrorKind


class StaticProvider(ExtractionProvider):
    """Provider answering every request with a fixed completion."""

    def __init__(self, settings: Settings, completion: str) -> None:
        super().__init__(settings)
        self.completion = completion

    def extract_invoice(self, image_url: str) -> ExtractionResult:
        return self._result_from_completion(self.completion)

    def is_available(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return "static"


def test_extraction_result_with_success() -> None:
    """Test ExtractionResult with successful extraction."""
    invoice = Invoice(vendor_name="ACME Corp")

    result = ExtractionResult(
        invoice=invoice, success=True, provider="test", stage=DecodeStage.STRICT_JSON
    )

    assert result.success is True
    assert result.invoice is not None
    assert result.invoice.vendor_name == "ACME Corp"
    assert result.error is None
    assert result.error_kind is None
    assert result.image_url is None


def test_extraction_result_with_failure() -> None:
    """Test ExtractionResult with failed extraction."""
    result = ExtractionResult(
        invoice=None,
        success=False,
        error="Test error",
        error_kind=ErrorKind.UPSTREAM,
        op="call_model",
        provider="test",
    )

    assert result.success is False
    assert result.invoice is None
    assert result.op == "call_model"


def test_extraction_provider_is_abstract() -> None:
    """Test that ExtractionProvider cannot be instantiated directly."""
    with pytest.raises(TypeError):
        ExtractionProvider(Settings())  # type: ignore[abstract]


def test_incomplete_provider_cannot_be_instantiated() -> None:
    class IncompleteProvider(ExtractionProvider):
        def is_available(self) -> bool:
            return True

    with pytest.raises(TypeError):
        IncompleteProvider(Settings())  # type: ignore[abstract]


def test_result_from_completion_success() -> None:
    provider = StaticProvider(Settings(), '{"vendor_name": "ACME Corp", "total_due": 10}')

    result = provider.extract_invoice("https://example.com/a.png")

    assert result.success is True
    assert result.provider == "static"
    assert result.stage == DecodeStage.STRICT_JSON


def test_result_from_completion_failure() -> None:
    """Unrecoverable completions become extraction failures at parse_response."""
    provider = StaticProvider(Settings(), "")

    result = provider.extract_invoice("https://example.com/a.png")

    assert result.success is False
    assert result.error_kind == ErrorKind.EXTRACTION_FAILED
    assert result.op == "parse_response"
    assert result.provider == "static"


def test_health_check_defaults_to_configuration() -> None:
    provider = StaticProvider(Settings(_env_file=None), "{}")  # type: ignore[call-arg]

    assert provider.health_check() is True
    provider.close()
