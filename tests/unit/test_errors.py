"""Unit tests for the error taxonomy."""

import pytest

from invoice_processor.shared.errors import (
    AdmissionCancelledError,
    ConfigurationError,
    ErrorKind,
    ExtractionFailedError,
    ReceiptNotFoundError,
    ReceiptServiceError,
    UpstreamServiceError,
    error_for_kind,
)


def test_message_carries_operation() -> None:
    error = UpstreamServiceError("upload_image", "S3 error: AccessDenied - denied")

    assert str(error) == "upload_image: S3 error: AccessDenied - denied"
    assert error.op == "upload_image"
    assert error.message == "S3 error: AccessDenied - denied"
    assert error.kind == ErrorKind.UPSTREAM


def test_admission_cancelled_defaults() -> None:
    error = AdmissionCancelledError()

    assert error.op == "acquire_worker"
    assert error.kind == ErrorKind.ADMISSION_CANCELLED
    assert "cancelled" in str(error)


def test_configuration_error_is_upstream() -> None:
    """Configuration failures can be caught as upstream failures."""
    error = ConfigurationError("missing key")

    assert isinstance(error, UpstreamServiceError)
    assert error.kind == ErrorKind.CONFIGURATION
    assert error.op == "validate_configuration"


def test_receipt_not_found() -> None:
    error = ReceiptNotFoundError("abc", op="delete_receipt")

    assert isinstance(error, ReceiptServiceError)
    assert error.receipt_id == "abc"
    assert str(error) == "delete_receipt: receipt not found: abc"
    assert error.kind is None


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        (ErrorKind.EXTRACTION_FAILED, ExtractionFailedError),
        (ErrorKind.CONFIGURATION, ConfigurationError),
        (ErrorKind.ADMISSION_CANCELLED, AdmissionCancelledError),
        (ErrorKind.UPSTREAM, UpstreamServiceError),
        (None, UpstreamServiceError),
    ],
)
def test_error_for_kind(kind: ErrorKind | None, expected: type[ReceiptServiceError]) -> None:
    error = error_for_kind(kind, "call_model", "boom")

    assert type(error) is expected
    assert error.message == "boom"
