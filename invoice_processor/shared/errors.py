"""Error taxonomy for the extraction pipeline and receipt service.

Each error carries the operation that failed, mirroring how failures are
reported to callers: "<op>: <message>".
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Caller-facing failure categories."""

    EXTRACTION_FAILED = "extraction_failed"
    ADMISSION_CANCELLED = "admission_cancelled"
    UPSTREAM = "upstream"
    CONFIGURATION = "configuration"


class ReceiptServiceError(Exception):
    """Base error raised by the receipt service.

    Attributes:
        op: Operation that failed (e.g. 'acquire_worker', 'upload_image')
        message: Human readable description of the failure
    """

    kind: ErrorKind | None = None

    def __init__(self, op: str, message: str) -> None:
        super().__init__(f"{op}: {message}")
        self.op = op
        self.message = message


class ExtractionFailedError(ReceiptServiceError):
    """No decode stage recovered any usable invoice field."""

    kind = ErrorKind.EXTRACTION_FAILED


class AdmissionCancelledError(ReceiptServiceError):
    """Caller gave up while waiting for a worker slot."""

    kind = ErrorKind.ADMISSION_CANCELLED

    def __init__(self, message: str = "cancelled while waiting for a worker") -> None:
        super().__init__("acquire_worker", message)


class UpstreamServiceError(ReceiptServiceError):
    """Storage or model API failure, surfaced with the failing operation."""

    kind = ErrorKind.UPSTREAM


class ConfigurationError(UpstreamServiceError):
    """A required dependency is not configured (e.g. missing API key)."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str) -> None:
        super().__init__("validate_configuration", message)


class ReceiptNotFoundError(ReceiptServiceError):
    """Receipt lookup missed."""

    def __init__(self, receipt_id: str, op: str = "get_receipt") -> None:
        super().__init__(op, f"receipt not found: {receipt_id}")
        self.receipt_id = receipt_id


def error_for_kind(kind: ErrorKind | None, op: str, message: str) -> ReceiptServiceError:
    """Build the exception matching a failed result's error kind."""
    if kind == ErrorKind.EXTRACTION_FAILED:
        return ExtractionFailedError(op, message)
    if kind == ErrorKind.CONFIGURATION:
        return ConfigurationError(message)
    if kind == ErrorKind.ADMISSION_CANCELLED:
        return AdmissionCancelledError(message)
    return UpstreamServiceError(op, message)
