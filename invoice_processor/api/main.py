"""FastAPI application for invoice processing and receipt management.

Endpoints:
- Health, readiness and Prometheus metrics
- Invoice extraction from uploaded images (legacy snake_case response)
- Receipt scanning, CRUD and paginated listing (camelCase)
- Spending insights over stored receipts

Extraction failures map to status codes by kind: 422 when nothing could be
recovered from the model response, 503 when no worker was free or the
provider is not configured, 502 when storage or the model API failed.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date

from fastapi import FastAPI, File, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from invoice_processor.api import metrics
from invoice_processor.extraction.schema import InvoiceDTO
from invoice_processor.extraction.service import BatchItemResult, InvoiceExtractionService
from invoice_processor.receipts import analytics
from invoice_processor.receipts.models import (
    PaginatedReceipts,
    Receipt,
    ReceiptFilter,
    ReceiptItem,
)
from invoice_processor.receipts.sql_repository import SqlAlchemyReceiptRepository
from invoice_processor.receipts.service import ReceiptService
from invoice_processor.shared.config import get_settings
from invoice_processor.shared.errors import (
    ErrorKind,
    ExtractionFailedError,
    ReceiptNotFoundError,
    ReceiptServiceError,
)
from invoice_processor.shared.logging import configure_logging

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

extraction_service = InvoiceExtractionService(settings)
receipt_repository = SqlAlchemyReceiptRepository.from_url(settings.database_url)
receipt_service = ReceiptService(receipt_repository, extraction_service)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the receipt schema on startup; close model clients on shutdown."""
    logger.info(f"Starting {settings.service_name} {settings.service_version}")
    receipt_repository.init_schema()
    yield
    logger.info("Shutting down...")
    extraction_service.close()
    receipt_repository.engine.dispose()


app = FastAPI(
    title="Invoice Processor Service",
    description="Receipt and invoice extraction with vision language models",
    version=settings.service_version,
    lifespan=lifespan,
)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.EXTRACTION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.ADMISSION_CANCELLED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.CONFIGURATION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
}


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request count and duration metrics."""
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)

    return response


@app.exception_handler(ReceiptServiceError)
async def receipt_service_error_handler(
    request: Request, exc: ReceiptServiceError
) -> JSONResponse:
    """Render service errors as {"detail", "op", "kind"} with a mapped status code."""
    if isinstance(exc, ReceiptNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = STATUS_BY_KIND.get(
            exc.kind or ErrorKind.UPSTREAM, status.HTTP_502_BAD_GATEWAY
        )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "op": exc.op,
            "kind": exc.kind.value if exc.kind else None,
        },
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    provider: str
    provider_configured: bool
    provider_healthy: bool
    storage_configured: bool
    storage_healthy: bool


class BatchResponse(BaseModel):
    """Batch extraction response."""

    total: int
    succeeded: int
    failed: int
    results: list[BatchItemResult]


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Liveness endpoint."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check: the model provider and image storage are configured and respond."""
    provider = extraction_service.provider
    storage = extraction_service.storage
    provider_healthy = provider.health_check()
    storage_healthy = storage.health_check()
    return ReadinessResponse(
        ready=provider_healthy and storage_healthy,
        provider=provider.provider_name,
        provider_configured=provider.is_available(),
        provider_healthy=provider_healthy,
        storage_configured=storage.is_available(),
        storage_healthy=storage_healthy,
    )


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


async def _read_image(file: UploadFile) -> bytes:
    """Validate an uploaded image and return its content.

    Raises:
        HTTPException: 400 if the file is missing, not an image, or empty
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type: {file.content_type}. Only images are supported.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    metrics.image_upload_size_bytes.observe(len(content))
    return content


# Invoices


@app.post(
    f"{settings.api_base_path}/invoices/process", response_model=InvoiceDTO, tags=["Invoices"]
)
async def process_invoice(
    file: UploadFile = File(..., description="Invoice image (PNG, JPEG, etc.)"),  # noqa: B008
) -> InvoiceDTO:
    """Extract structured invoice data from an uploaded image.

    The image is uploaded to object storage, its public URL is sent to the
    configured vision model, and the completion is parsed with strict JSON,
    embedded JSON and field-level fallbacks.

    ## Usage Example

    ```bash
    curl -X POST "http://localhost:8000/v1/invoices/process" \\
      -F "file=@invoice.png"
    ```

    ## Error Handling

    - 400 if the file is invalid, empty, or not an image
    - 422 if no usable invoice data could be recovered
    - 502 if storage or the model API failed
    - 503 if no worker was free in time or the provider is not configured
    """
    content = await _read_image(file)
    result = await extraction_service.process_invoice(content)
    if result.invoice is None:
        raise ExtractionFailedError("parse_response", "no invoice in successful result")
    return result.invoice.to_dto()


@app.post(
    f"{settings.api_base_path}/invoices/batch", response_model=BatchResponse, tags=["Invoices"]
)
async def process_invoice_batch(
    files: list[UploadFile] = File(..., description="Invoice images"),  # noqa: B008
) -> BatchResponse:
    """Extract several invoices concurrently; failures are reported per image.

    Files that are not valid images are reported as failed items and never
    reach the pipeline; the rest of the batch still runs.
    """
    images: list[bytes] = []
    positions: list[int] = []
    results: list[BatchItemResult] = []
    for index, file in enumerate(files):
        try:
            images.append(await _read_image(file))
        except HTTPException as e:
            results.append(
                BatchItemResult(index=index, success=False, error=f"read_upload: {e.detail}")
            )
            continue
        positions.append(index)

    extracted = await extraction_service.process_invoice_batch(images)
    results.extend(r.model_copy(update={"index": positions[r.index]}) for r in extracted)
    results.sort(key=lambda r: r.index)
    succeeded = sum(1 for r in results if r.success)
    return BatchResponse(
        total=len(results), succeeded=succeeded, failed=len(results) - succeeded, results=results
    )


# Receipts


@app.post(
    f"{settings.api_base_path}/receipts/scan",
    response_model=Receipt,
    status_code=status.HTTP_201_CREATED,
    tags=["Receipts"],
)
async def scan_receipt(
    file: UploadFile = File(..., description="Receipt image"),  # noqa: B008
    user_id: str = Query("", description="Owner of the receipt"),
) -> Receipt:
    """Scan a receipt image, extract its data and store it."""
    content = await _read_image(file)
    return await receipt_service.scan_receipt(content, user_id=user_id)


@app.post(
    f"{settings.api_base_path}/receipts",
    response_model=Receipt,
    status_code=status.HTTP_201_CREATED,
    tags=["Receipts"],
)
def create_receipt(receipt: Receipt) -> Receipt:
    """Store a manually entered receipt."""
    return receipt_service.create_receipt(receipt)


@app.get(f"{settings.api_base_path}/receipts", response_model=PaginatedReceipts, tags=["Receipts"])
def list_receipts(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    merchant: str = Query(""),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> PaginatedReceipts:
    """List receipts newest first, filtered by date range and merchant."""
    return receipt_service.list_receipts(
        ReceiptFilter(
            start_date=start_date, end_date=end_date, merchant=merchant, page=page, limit=limit
        )
    )


@app.get(
    f"{settings.api_base_path}/receipts/{{receipt_id}}", response_model=Receipt, tags=["Receipts"]
)
def get_receipt(receipt_id: str) -> Receipt:
    return receipt_service.get_receipt(receipt_id)


@app.put(
    f"{settings.api_base_path}/receipts/{{receipt_id}}", response_model=Receipt, tags=["Receipts"]
)
def update_receipt(receipt_id: str, receipt: Receipt) -> Receipt:
    return receipt_service.update_receipt(receipt_id, receipt)


@app.delete(
    f"{settings.api_base_path}/receipts/{{receipt_id}}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Receipts"],
)
def delete_receipt(receipt_id: str) -> Response:
    receipt_service.delete_receipt(receipt_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get(
    f"{settings.api_base_path}/receipts/{{receipt_id}}/items",
    response_model=list[ReceiptItem],
    tags=["Receipts"],
)
def get_receipt_items(receipt_id: str) -> list[ReceiptItem]:
    return receipt_service.get_receipt_items(receipt_id)


# Insights


@app.get(
    f"{settings.api_base_path}/insights/dashboard",
    response_model=analytics.DashboardSummary,
    tags=["Insights"],
)
def dashboard_summary(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
) -> analytics.DashboardSummary:
    return receipt_service.get_dashboard_summary(start_date, end_date)


@app.get(
    f"{settings.api_base_path}/insights/trends",
    response_model=analytics.SpendingTrends,
    tags=["Insights"],
)
def spending_trends(
    period: str = Query("monthly", description="daily, weekly, monthly or yearly"),
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
) -> analytics.SpendingTrends:
    try:
        return receipt_service.get_spending_trends(period, start_date, end_date)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@app.get(
    f"{settings.api_base_path}/insights/categories",
    response_model=analytics.CategorySpending,
    tags=["Insights"],
)
def spending_by_category(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
) -> analytics.CategorySpending:
    return receipt_service.get_spending_by_category(start_date, end_date)


@app.get(
    f"{settings.api_base_path}/insights/merchants",
    response_model=analytics.MerchantFrequency,
    tags=["Insights"],
)
def merchant_frequency(
    start_date: date | None = Query(None, alias="startDate"),
    end_date: date | None = Query(None, alias="endDate"),
    limit: int = Query(analytics.DEFAULT_MERCHANT_LIMIT),
) -> analytics.MerchantFrequency:
    return receipt_service.get_merchant_frequency(start_date, end_date, limit)


@app.get(
    f"{settings.api_base_path}/insights/monthly-comparison",
    response_model=analytics.MonthlyComparison,
    tags=["Insights"],
)
def monthly_comparison(
    month1: str = Query(..., description="First month (YYYY-MM)"),
    month2: str = Query(..., description="Second month (YYYY-MM)"),
) -> analytics.MonthlyComparison:
    try:
        return receipt_service.get_monthly_comparison(month1, month2)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
