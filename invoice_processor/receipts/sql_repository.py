"""SQLAlchemy-backed receipt store.

Receipts live in a ``receipts`` table and their items in ``receipt_items``.
Any SQLAlchemy URL works; the default is a local SQLite file.

Example:
    >>> repository = SqlAlchemyReceiptRepository.from_url("sqlite:///./receipts.db")
    >>> repository.init_schema()
    >>> repository.create(receipt).id
    '5f0c...'
"""

import datetime as dt
import logging
import math
import uuid
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    Engine,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    func,
    nulls_last,
    select,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from invoice_processor.receipts.models import (
    PaginatedReceipts,
    Pagination,
    Receipt,
    ReceiptFilter,
    ReceiptItem,
)
from invoice_processor.receipts.repository import (
    ReceiptRepository,
    assign_item_ids,
    page_window,
)
from invoice_processor.shared.errors import ReceiptNotFoundError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ReceiptRow(Base):
    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), default="", index=True)
    merchant: Mapped[str] = mapped_column(String(255), default="", index=True)
    date: Mapped[dt.date | None] = mapped_column(Date, nullable=True, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    image_url: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["ReceiptItemRow"]] = relationship(
        back_populates="receipt",
        cascade="all, delete-orphan",
        order_by="ReceiptItemRow.position",
        lazy="selectin",
    )


class ReceiptItemRow(Base):
    __tablename__ = "receipt_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    receipt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("receipts.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(255))
    qty: Mapped[int] = mapped_column(Integer, default=0)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="")
    category: Mapped[str] = mapped_column(String(100), default="")

    receipt: Mapped[ReceiptRow] = relationship(back_populates="items")


def create_database_engine(database_url: str) -> Engine:
    """Create an engine, sharing one connection for in-memory SQLite."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    connect_args = {"check_same_thread": False}
    if url.database in (None, "", ":memory:"):
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


def _as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite drops the offset on the way back
    return value if value.tzinfo else value.replace(tzinfo=dt.timezone.utc)


def _item_rows(receipt: Receipt) -> list[ReceiptItemRow]:
    return [
        ReceiptItemRow(
            id=item.id,
            position=position,
            name=item.name,
            qty=item.qty,
            price=item.price,
            currency=item.currency,
            category=item.category,
        )
        for position, item in enumerate(receipt.items)
    ]


def _apply(row: ReceiptRow, receipt: Receipt) -> None:
    row.user_id = receipt.user_id
    row.merchant = receipt.merchant
    row.date = receipt.date
    row.total = receipt.total
    row.tax = receipt.tax
    row.subtotal = receipt.subtotal
    row.image_url = receipt.image_url
    row.created_at = receipt.created_at
    row.updated_at = receipt.updated_at


def _to_receipt(row: ReceiptRow) -> Receipt:
    return Receipt(
        id=row.id,
        user_id=row.user_id,
        merchant=row.merchant,
        date=row.date,
        total=row.total,
        tax=row.tax,
        subtotal=row.subtotal,
        items=[
            ReceiptItem(
                id=item.id,
                name=item.name,
                qty=item.qty,
                price=item.price,
                currency=item.currency,
                category=item.category,
            )
            for item in row.items
        ],
        image_url=row.image_url,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _date_conditions(start_date: dt.date | None, end_date: dt.date | None) -> list:
    """Undated receipts only match an unbounded range."""
    if start_date is None and end_date is None:
        return []
    conditions = [ReceiptRow.date.is_not(None)]
    if start_date is not None:
        conditions.append(ReceiptRow.date >= start_date)
    if end_date is not None:
        conditions.append(ReceiptRow.date <= end_date)
    return conditions


class SqlAlchemyReceiptRepository(ReceiptRepository):
    """Receipt store on a relational database."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAlchemyReceiptRepository":
        return cls(create_database_engine(database_url))

    def init_schema(self) -> None:
        """Create the receipt tables if they do not exist."""
        Base.metadata.create_all(self.engine)
        logger.info(f"Receipt schema ready on {self.engine.url.render_as_string()}")

    def create(self, receipt: Receipt) -> Receipt:
        stored = assign_item_ids(receipt.model_copy(update={"id": str(uuid.uuid4())}))
        row = ReceiptRow(id=stored.id, items=_item_rows(stored))
        _apply(row, stored)
        with self._session_factory.begin() as session:
            session.add(row)
        logger.info(f"Stored receipt {stored.id} ({len(stored.items)} items)")
        return stored

    def get(self, receipt_id: str) -> Receipt:
        with self._session_factory() as session:
            row = session.get(ReceiptRow, receipt_id)
            if row is None:
                raise ReceiptNotFoundError(receipt_id, op="get_receipt")
            return _to_receipt(row)

    def update(self, receipt: Receipt) -> Receipt:
        stored = assign_item_ids(receipt)
        with self._session_factory.begin() as session:
            row = session.get(ReceiptRow, stored.id)
            if row is None:
                raise ReceiptNotFoundError(stored.id, op="update_receipt")
            _apply(row, stored)
            # Old item rows must be gone before rows with the same ids are added
            row.items.clear()
            session.flush()
            row.items.extend(_item_rows(stored))
        return stored

    def delete(self, receipt_id: str) -> None:
        with self._session_factory.begin() as session:
            row = session.get(ReceiptRow, receipt_id)
            if row is None:
                raise ReceiptNotFoundError(receipt_id, op="delete_receipt")
            session.delete(row)
        logger.info(f"Deleted receipt {receipt_id}")

    def list_receipts(self, receipt_filter: ReceiptFilter) -> PaginatedReceipts:
        page, limit = page_window(receipt_filter)
        conditions = _date_conditions(receipt_filter.start_date, receipt_filter.end_date)
        merchant = receipt_filter.merchant.strip().lower()
        if merchant:
            conditions.append(func.lower(ReceiptRow.merchant).contains(merchant, autoescape=True))

        with self._session_factory() as session:
            total_items = (
                session.scalar(select(func.count()).select_from(ReceiptRow).where(*conditions))
                or 0
            )
            rows = session.scalars(
                select(ReceiptRow)
                .where(*conditions)
                .order_by(nulls_last(ReceiptRow.date.desc()), ReceiptRow.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            data = [_to_receipt(row) for row in rows]

        return PaginatedReceipts(
            data=data,
            pagination=Pagination(
                total_items=total_items,
                total_pages=math.ceil(total_items / limit),
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
        self, start_date: dt.date | None = None, end_date: dt.date | None = None
    ) -> list[Receipt]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ReceiptRow).where(*_date_conditions(start_date, end_date))
            ).all()
            return [_to_receipt(row) for row in rows]
