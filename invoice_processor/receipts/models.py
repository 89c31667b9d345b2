"""Receipt domain models.

Receipts are the persisted form of an extracted invoice. On the wire they
use camelCase keys and items carry an integer ``qty``; Decimal amounts
serialize as strings so no cents are lost.
"""

import datetime as dt
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from invoice_processor.extraction.schema import ZERO, Invoice


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either key style."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReceiptItem(CamelModel):
    """A purchased item on a receipt."""

    id: str = ""
    name: str = Field(..., min_length=1)
    qty: int = 0
    price: Decimal = ZERO
    currency: str = ""
    category: str = ""

    @property
    def amount(self) -> Decimal:
        """Spend on this line (qty x price)."""
        return self.price * self.qty


class Receipt(CamelModel):
    """A scanned or manually entered receipt.

    Attributes:
        id: Repository-assigned identifier
        user_id: Owner of the receipt
        merchant: Vendor name
        date: Purchase date (None if unknown)
        total: Amount paid
        tax: Tax amount
        subtotal: Amount before tax
        items: Purchased items
        image_url: Public URL of the scanned image
        created_at: Creation timestamp
        updated_at: Last modification timestamp
    """

    id: str = ""
    user_id: str = ""
    merchant: str = ""
    date: dt.date | None = None
    total: Decimal = ZERO
    tax: Decimal = ZERO
    subtotal: Decimal = ZERO
    items: list[ReceiptItem] = Field(default_factory=list)
    image_url: str = ""
    created_at: dt.datetime = Field(default_factory=utc_now)
    updated_at: dt.datetime = Field(default_factory=utc_now)

    @classmethod
    def from_invoice(cls, invoice: Invoice, user_id: str = "", image_url: str = "") -> "Receipt":
        """Convert an extracted invoice into an unsaved receipt.

        Item quantities are truncated to whole units; item prices are the
        invoice unit prices.

        Args:
            invoice: Assembled invoice
            user_id: Owner of the receipt
            image_url: Public URL of the scanned image

        Returns:
            Receipt without an id
        """
        return cls(
            user_id=user_id,
            merchant=invoice.vendor_name,
            date=invoice.invoice_date,
            total=invoice.total_due,
            tax=invoice.tax_amount,
            subtotal=invoice.subtotal,
            items=[
                ReceiptItem(
                    name=item.description,
                    qty=int(item.quantity),
                    price=item.unit_price,
                    category=item.category,
                )
                for item in invoice.items
            ],
            image_url=image_url,
        )


class ReceiptFilter(BaseModel):
    """Filters and paging for listing receipts."""

    start_date: dt.date | None = None
    end_date: dt.date | None = None
    merchant: str = ""
    page: int = 1
    limit: int = 10


class Pagination(CamelModel):
    total_items: int
    total_pages: int
    current_page: int
    limit: int


class PaginatedReceipts(CamelModel):
    data: list[Receipt]
    pagination: Pagination
