"""Invoice extraction pipeline: upload, model call, parse.

Each request holds one worker slot for the whole pipeline. Blocking
clients (minio, openai, httpx) run in worker threads so the event loop
stays free to admit or reject other callers.

Example:
    >>> service = InvoiceExtractionService(settings)
    >>> result = await service.process_invoice(image_bytes)
    >>> result.invoice.vendor_name
    'ACME Corp'
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from prometheus_client import Counter, Gauge, Histogram
from pydantic import BaseModel

from invoice_processor.extraction.base import ExtractionProvider, ExtractionResult
from invoice_processor.extraction.factory import create_extraction_provider
from invoice_processor.extraction.parser import DecodeStage
from invoice_processor.extraction.schema import Invoice
from invoice_processor.extraction.worker_pool import WorkerPool
from invoice_processor.shared.config import Settings
from invoice_processor.shared.errors import (
    ConfigurationError,
    ErrorKind,
    ReceiptServiceError,
    UpstreamServiceError,
    error_for_kind,
)
from invoice_processor.storage.service import (
    NOT_CONFIGURED_MESSAGE as STORAGE_NOT_CONFIGURED_MESSAGE,
)
from invoice_processor.storage.service import StorageService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Prometheus metrics for the extraction pipeline
extraction_requests_total = Counter(
    "extraction_requests_total",
    "Total invoice extraction requests",
    ["status"],  # success, extraction_failed, admission_cancelled, upstream, configuration
)

extraction_stage_total = Counter(
    "extraction_stage_total",
    "Successful extractions by the decode stage that produced them",
    ["stage"],  # strict_json, embedded_json, field_regex
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Pipeline duration (admission wait + upload + model call + parse) in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

worker_pool_in_flight = Gauge(
    "worker_pool_in_flight",
    "Extraction pipelines currently holding a worker slot",
)


def image_filename() -> str:
    """Unique object name for an uploaded invoice image."""
    return f"invoice_{time.time_ns()}.png"


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking call in a worker thread and wait for it to return.

    A cancelled caller waits for the thread to finish before CancelledError
    propagates, so a worker slot held around the call stays taken for as
    long as the blocking call runs.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        while not future.done():
            try:
                await asyncio.wait({future})
            except asyncio.CancelledError:
                continue
        if not future.cancelled() and future.exception() is not None:
            logger.debug(f"Blocking call finished after cancellation: {future.exception()}")
        raise


class BatchItemResult(BaseModel):
    """Outcome of one image in a batch.

    Attributes:
        index: Position of the image in the submitted batch
        success: Whether an invoice was extracted
        invoice: Extracted invoice (None on failure)
        stage: Decode stage that produced the invoice
        error: "<op>: <message>" on failure
        error_kind: Failure category on failure
    """

    index: int
    success: bool
    invoice: Invoice | None = None
    stage: DecodeStage | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None


class InvoiceExtractionService:
    """Runs the bounded extraction pipeline for raw invoice images."""

    def __init__(
        self,
        settings: Settings,
        provider: ExtractionProvider | None = None,
        storage: StorageService | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings
            provider: Vision model provider (defaults to the configured one)
            storage: Image storage (defaults to StorageService(settings))
            pool: Admission gate (defaults to WorkerPool(settings.max_workers))
        """
        self.settings = settings
        self.provider = provider or create_extraction_provider(settings)
        self.storage = storage or StorageService(settings)
        self.pool = pool or WorkerPool(settings.max_workers)
        worker_pool_in_flight.set_function(lambda: self.pool.in_flight)

    def close(self) -> None:
        """Release the provider's network clients."""
        self.provider.close()

    async def process_invoice(
        self,
        image_bytes: bytes,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExtractionResult:
        """Extract an invoice from raw image bytes.

        Args:
            image_bytes: Raw image content
            timeout: Admission timeout (defaults to settings.admission_timeout_seconds)
            cancel_event: Caller's cancellation signal, observed while waiting
                for a worker

        Returns:
            Successful ExtractionResult

        Raises:
            AdmissionCancelledError: Cancelled or timed out before admission
            ConfigurationError: Provider or storage is not configured
            UpstreamServiceError: Storage or model call failed
            ExtractionFailedError: No decode stage recovered usable data
        """
        if timeout is None:
            timeout = self.settings.admission_timeout_seconds

        start_time = time.time()
        try:
            result = await self._run_pipeline(image_bytes, timeout, cancel_event)
        except ReceiptServiceError as e:
            kind = e.kind or ErrorKind.UPSTREAM
            extraction_requests_total.labels(status=kind.value).inc()
            raise
        finally:
            extraction_duration_seconds.observe(time.time() - start_time)

        extraction_requests_total.labels(status="success").inc()
        if result.stage is not None:
            extraction_stage_total.labels(stage=result.stage.value).inc()
        return result

    async def _run_pipeline(
        self,
        image_bytes: bytes,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ) -> ExtractionResult:
        self._check_configuration()

        async with self.pool.slot(timeout=timeout, cancel_event=cancel_event):
            logger.debug(f"Worker admitted ({self.pool.in_flight}/{self.pool.max_workers} busy)")
            image_url = await self._upload(image_bytes)
            result = await run_blocking(self.provider.extract_invoice, image_url)

        if not result.success:
            logger.warning(f"Extraction failed via {result.provider}: {result.error}")
            raise error_for_kind(
                result.error_kind, result.op or "extract_invoice", result.error or "unknown error"
            )

        logger.info(
            f"Extracted invoice via {result.provider} "
            f"(stage={result.stage.value if result.stage else 'unknown'})"
        )
        return result.model_copy(update={"image_url": image_url})

    def _check_configuration(self) -> None:
        """Fail before any upload when the provider or storage cannot be used."""
        if not self.provider.is_available():
            raise ConfigurationError(
                f"extraction provider '{self.provider.provider_name}' is not configured"
            )
        if not self.storage.is_available():
            raise ConfigurationError(STORAGE_NOT_CONFIGURED_MESSAGE)

    async def _upload(self, image_bytes: bytes) -> str:
        filename = image_filename()
        upload = await run_blocking(self.storage.upload_image, image_bytes, filename)
        if not upload.success or not upload.url:
            raise UpstreamServiceError("upload_image", upload.error or "upload failed")
        return upload.url

    async def process_invoice_batch(
        self,
        images: list[bytes],
        timeout: float | None = None,
    ) -> list[BatchItemResult]:
        """Extract several invoices concurrently through the same pool.

        Failures are reported per image; one bad image never fails the batch.

        Args:
            images: Raw image contents
            timeout: Admission timeout applied to each image

        Returns:
            One BatchItemResult per image, in submission order
        """

        async def run(index: int, image_bytes: bytes) -> BatchItemResult:
            try:
                result = await self.process_invoice(image_bytes, timeout=timeout)
            except ReceiptServiceError as e:
                return BatchItemResult(index=index, success=False, error=str(e), error_kind=e.kind)
            return BatchItemResult(
                index=index, success=True, invoice=result.invoice, stage=result.stage
            )

        results = await asyncio.gather(*(run(i, image) for i, image in enumerate(images)))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch complete: {succeeded}/{len(images)} invoices extracted")
        return list(results)
