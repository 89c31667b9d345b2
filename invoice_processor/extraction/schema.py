"""Invoice data models for structured extraction.

Two layers:
- ``InvoicePayload`` / ``LineItemPayload``: the raw canonical JSON shape the
  vision model is asked to produce. Every field is optional; these models are
  what the decode stages build.
- ``Invoice`` / ``LineItem``: the assembled, immutable domain entities handed
  to callers.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

ZERO = Decimal("0")


def _require_number(value: object) -> object:
    """Reject JSON strings and booleans where the schema asks for a number."""
    if isinstance(value, (str, bool)):
        raise ValueError(f"expected a JSON number, got {type(value).__name__}")
    return value


Amount = Annotated[Decimal | None, BeforeValidator(_require_number)]


class LineItemPayload(BaseModel):
    """One entry of the ``items`` array as emitted by the model."""

    model_config = ConfigDict(extra="ignore")

    description: str | None = None
    details: list[str] | None = None
    quantity: Amount = None
    unit_price: Amount = None
    total: Amount = None
    category: str | None = None


class InvoicePayload(BaseModel):
    """Canonical invoice JSON shape requested from the vision model.

    Dates stay as strings here; assembly parses them so that a malformed
    date drops only that field instead of failing the whole decode.
    """

    model_config = ConfigDict(extra="ignore")

    vendor_name: str | None = None
    invoice_number: str | None = None
    invoice_date: str | None = None
    due_date: str | None = None
    items: list[LineItemPayload] | None = None
    subtotal: Amount = None
    tax_rate_percent: Amount = None
    tax_amount: Amount = None
    discount: Amount = None
    total_due: Amount = None


class LineItem(BaseModel):
    """A single purchased item, owned by exactly one invoice."""

    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1, description="Item description")
    details: tuple[str, ...] = Field(default=(), description="Free-form sub-notes")
    quantity: Decimal = Field(default=ZERO, description="Quantity purchased")
    unit_price: Decimal = Field(default=ZERO, description="Price per unit")
    total: Decimal = Field(default=ZERO, description="Line total")
    category: str = Field(default="", description="Spending category")


class Invoice(BaseModel):
    """Structured invoice data extracted from a document image.

    Built fresh for every extraction call and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    vendor_name: str = Field(default="", description="Merchant/vendor display name")
    invoice_number: str = Field(default="", description="External document identifier")
    invoice_date: date | None = Field(default=None, description="Date invoice was issued")
    due_date: date | None = Field(default=None, description="Payment due date")
    items: tuple[LineItem, ...] = Field(default=(), description="Line items in recovery order")

    # Financial details
    subtotal: Decimal = Field(default=ZERO, description="Subtotal before tax")
    tax_rate_percent: Decimal = Field(default=ZERO, description="Tax rate in percent")
    tax_amount: Decimal = Field(default=ZERO, description="Tax amount")
    discount: Decimal = Field(default=ZERO, description="Discount applied")
    total_due: Decimal = Field(default=ZERO, description="Total amount due")

    def is_empty(self) -> bool:
        """True when nothing usable was recovered."""
        return (
            not self.vendor_name
            and not self.invoice_number
            and self.total_due == 0
            and not self.items
        )

    def to_dto(self) -> "InvoiceDTO":
        """Convert to the legacy snake_case wire shape."""
        return InvoiceDTO(
            vendor_name=self.vendor_name,
            invoice_number=self.invoice_number,
            invoice_date=self.invoice_date.isoformat() if self.invoice_date else "",
            due_date=self.due_date.isoformat() if self.due_date else "",
            items=[
                LineItemDTO(
                    description=item.description,
                    details=list(item.details),
                    quantity=float(item.quantity),
                    unit_price=float(item.unit_price),
                    total=float(item.total),
                    category=item.category,
                )
                for item in self.items
            ],
            subtotal=float(self.subtotal),
            tax_rate_percent=float(self.tax_rate_percent),
            tax_amount=float(self.tax_amount),
            discount=float(self.discount),
            total_due=float(self.total_due),
        )


class LineItemDTO(BaseModel):
    """Legacy line item wire shape."""

    description: str
    details: list[str] = []
    quantity: float = 0.0
    unit_price: float = 0.0
    total: float = 0.0
    category: str = ""


class InvoiceDTO(BaseModel):
    """Legacy invoice wire shape (snake_case, dates as YYYY-MM-DD or empty)."""

    vendor_name: str = ""
    invoice_number: str = ""
    invoice_date: str = ""
    due_date: str = ""
    items: list[LineItemDTO] = []
    subtotal: float = 0.0
    tax_rate_percent: float = 0.0
    tax_amount: float = 0.0
    discount: float = 0.0
    total_due: float = 0.0
