"""Receipt persistence.

``ReceiptRepository`` is the storage interface the receipt service depends
on. ``InMemoryReceiptRepository`` keeps receipts in a dict guarded by a
lock and backs the tests; the API persists receipts through
``invoice_processor.receipts.sql_repository``.
"""

import logging
import math
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date

from invoice_processor.receipts.models import (
    PaginatedReceipts,
    Pagination,
    Receipt,
    ReceiptFilter,
    ReceiptItem,
)
from invoice_processor.shared.errors import ReceiptNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class ReceiptRepository(ABC):
    """Abstract receipt store."""

    @abstractmethod
    def create(self, receipt: Receipt) -> Receipt:
        """Store a new receipt and return it with ids assigned."""
        pass

    @abstractmethod
    def get(self, receipt_id: str) -> Receipt:
        """Fetch a receipt.

        Raises:
            ReceiptNotFoundError: If no receipt has this id
        """
        pass

    @abstractmethod
    def update(self, receipt: Receipt) -> Receipt:
        """Replace a stored receipt.

        Raises:
            ReceiptNotFoundError: If no receipt has this id
        """
        pass

    @abstractmethod
    def delete(self, receipt_id: str) -> None:
        """Remove a receipt.

        Raises:
            ReceiptNotFoundError: If no receipt has this id
        """
        pass

    @abstractmethod
    def list_receipts(self, receipt_filter: ReceiptFilter) -> PaginatedReceipts:
        """List receipts matching a filter, newest first, one page at a time."""
        pass

    @abstractmethod
    def get_items(self, receipt_id: str) -> list[ReceiptItem]:
        """Items of one receipt.

        Raises:
            ReceiptNotFoundError: If no receipt has this id
        """
        pass

    @abstractmethod
    def find(
        self, start_date: date | None = None, end_date: date | None = None
    ) -> list[Receipt]:
        """All receipts dated within [start_date, end_date], used by analytics."""
        pass


def _in_range(receipt: Receipt, start_date: date | None, end_date: date | None) -> bool:
    if start_date is None and end_date is None:
        return True
    if receipt.date is None:
        return False
    if start_date is not None and receipt.date < start_date:
        return False
    if end_date is not None and receipt.date > end_date:
        return False
    return True


def _sort_key(receipt: Receipt) -> tuple[date, float]:
    return (receipt.date or date.min, receipt.created_at.timestamp())


def page_window(receipt_filter: ReceiptFilter) -> tuple[int, int]:
    """Normalized (page, limit) of a listing request."""
    page = max(receipt_filter.page, 1)
    limit = receipt_filter.limit if receipt_filter.limit > 0 else DEFAULT_PAGE_SIZE
    return page, min(limit, MAX_PAGE_SIZE)


def assign_item_ids(receipt: Receipt) -> Receipt:
    """Give every item without an id a fresh one."""
    items = [
        item if item.id else item.model_copy(update={"id": str(uuid.uuid4())})
        for item in receipt.items
    ]
    return receipt.model_copy(update={"items": items})


class InMemoryReceiptRepository(ReceiptRepository):
    """Thread-safe dict-backed receipt store."""

    def __init__(self) -> None:
        self._receipts: dict[str, Receipt] = {}
        self._lock = threading.Lock()

    def create(self, receipt: Receipt) -> Receipt:
        stored = assign_item_ids(receipt.model_copy(update={"id": str(uuid.uuid4())}))
        with self._lock:
            self._receipts[stored.id] = stored
        logger.info(f"Stored receipt {stored.id} ({len(stored.items)} items)")
        return stored

    def get(self, receipt_id: str) -> Receipt:
        with self._lock:
            receipt = self._receipts.get(receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id, op="get_receipt")
        return receipt

    def update(self, receipt: Receipt) -> Receipt:
        stored = assign_item_ids(receipt)
        with self._lock:
            if stored.id not in self._receipts:
                raise ReceiptNotFoundError(stored.id, op="update_receipt")
            self._receipts[stored.id] = stored
        return stored

    def delete(self, receipt_id: str) -> None:
        with self._lock:
            if self._receipts.pop(receipt_id, None) is None:
                raise ReceiptNotFoundError(receipt_id, op="delete_receipt")
        logger.info(f"Deleted receipt {receipt_id}")

    def list_receipts(self, receipt_filter: ReceiptFilter) -> PaginatedReceipts:
        page, limit = page_window(receipt_filter)
        merchant = receipt_filter.merchant.strip().lower()

        matching = [
            r
            for r in self.find(receipt_filter.start_date, receipt_filter.end_date)
            if not merchant or merchant in r.merchant.lower()
        ]
        matching.sort(key=_sort_key, reverse=True)

        offset = (page - 1) * limit
        return PaginatedReceipts(
            data=matching[offset : offset + limit],
            pagination=Pagination(
                total_items=len(matching),
                total_pages=math.ceil(len(matching) / limit),
                current_page=page,
                limit=limit,
            ),
        )

    def get_items(self, receipt_id: str) -> list[ReceiptItem]:
        try:
            return list(self.get(receipt_id).items)
        except ReceiptNotFoundError:
            raise ReceiptNotFoundError(receipt_id, op="get_receipt_items") from None

    def find(
        self, start_date: date | None = None, end_date: date | None = None
    ) -> list[Receipt]:
        with self._lock:
            receipts = list(self._receipts.values())
        return [r for r in receipts if _in_range(r, start_date, end_date)]
