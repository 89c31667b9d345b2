"""Receipt business logic: scanning, CRUD and spending insights."""

import asyncio
import logging
from datetime import date

from invoice_processor.extraction.service import InvoiceExtractionService
from invoice_processor.receipts import analytics
from invoice_processor.receipts.models import (
    PaginatedReceipts,
    Receipt,
    ReceiptFilter,
    ReceiptItem,
    utc_now,
)
from invoice_processor.receipts.repository import ReceiptRepository
from invoice_processor.shared.errors import (
    ExtractionFailedError,
    ReceiptServiceError,
    UpstreamServiceError,
)

logger = logging.getLogger(__name__)


class ReceiptService:
    """Turns scanned images into stored receipts and answers queries over them."""

    def __init__(
        self, repository: ReceiptRepository, extraction: InvoiceExtractionService
    ) -> None:
        """Initialize receipt service.

        Args:
            repository: Receipt store
            extraction: Bounded image-to-invoice pipeline
        """
        self.repository = repository
        self.extraction = extraction

    async def scan_receipt(
        self,
        image_bytes: bytes,
        user_id: str = "",
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Receipt:
        """Extract a receipt from an image and store it.

        Args:
            image_bytes: Raw image content
            user_id: Owner of the receipt
            timeout: Admission timeout for the extraction pipeline
            cancel_event: Caller's cancellation signal

        Returns:
            Stored receipt

        Raises:
            ReceiptServiceError: Extraction or storage failed; ``op`` names
                the failing step
        """
        result = await self.extraction.process_invoice(
            image_bytes, timeout=timeout, cancel_event=cancel_event
        )
        if result.invoice is None:
            raise ExtractionFailedError("extract_invoice", "no invoice in successful result")

        receipt = Receipt.from_invoice(
            result.invoice, user_id=user_id, image_url=result.image_url or ""
        )
        return self._store(receipt, op="store_receipt")

    def _store(self, receipt: Receipt, op: str) -> Receipt:
        try:
            return self.repository.create(receipt)
        except ReceiptServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to store receipt: {e}")
            raise UpstreamServiceError(op, str(e)) from e

    def create_receipt(self, receipt: Receipt) -> Receipt:
        """Store a manually entered receipt with fresh timestamps."""
        now = utc_now()
        stamped = receipt.model_copy(update={"created_at": now, "updated_at": now})
        return self._store(stamped, op="create_receipt")

    def get_receipt(self, receipt_id: str) -> Receipt:
        """Fetch one receipt.

        Raises:
            ReceiptNotFoundError: If the receipt does not exist
        """
        return self.repository.get(receipt_id)

    def update_receipt(self, receipt_id: str, receipt: Receipt) -> Receipt:
        """Replace a receipt's contents, keeping its id and creation time.

        Raises:
            ReceiptNotFoundError: If the receipt does not exist
        """
        existing = self.repository.get(receipt_id)
        updated = receipt.model_copy(
            update={
                "id": receipt_id,
                "created_at": existing.created_at,
                "updated_at": utc_now(),
            }
        )
        return self.repository.update(updated)

    def delete_receipt(self, receipt_id: str) -> None:
        self.repository.delete(receipt_id)

    def list_receipts(self, receipt_filter: ReceiptFilter) -> PaginatedReceipts:
        return self.repository.list_receipts(receipt_filter)

    def get_receipt_items(self, receipt_id: str) -> list[ReceiptItem]:
        return self.repository.get_items(receipt_id)

    # Insights

    def get_dashboard_summary(
        self, start_date: date | None = None, end_date: date | None = None
    ) -> analytics.DashboardSummary:
        return analytics.dashboard_summary(self.repository.find(start_date, end_date))

    def get_spending_trends(
        self,
        period: str = "monthly",
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> analytics.SpendingTrends:
        """Spending per period.

        Raises:
            ValueError: If period is not daily, weekly, monthly or yearly
        """
        return analytics.spending_trends(self.repository.find(start_date, end_date), period)

    def get_spending_by_category(
        self, start_date: date | None = None, end_date: date | None = None
    ) -> analytics.CategorySpending:
        return analytics.spending_by_category(self.repository.find(start_date, end_date))

    def get_merchant_frequency(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = analytics.DEFAULT_MERCHANT_LIMIT,
    ) -> analytics.MerchantFrequency:
        return analytics.merchant_frequency(self.repository.find(start_date, end_date), limit)

    def get_monthly_comparison(self, month1: str, month2: str) -> analytics.MonthlyComparison:
        """Compare two YYYY-MM months.

        Raises:
            ValueError: If a month is malformed
        """
        return analytics.monthly_comparison(self.repository.find(), month1, month2)
