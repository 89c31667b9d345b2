"""Spending insights computed over stored receipts.

Receipt-level figures (totals, visits) use ``Receipt.total``; category
figures use item spend (qty x price), so category amounts need not add up
to the receipt total. Items without a category are left out of category
breakdowns.
"""

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal

from invoice_processor.extraction.schema import ZERO
from invoice_processor.receipts.models import CamelModel, Receipt

TREND_PERIODS: tuple[str, ...] = ("daily", "weekly", "monthly", "yearly")
TOP_N = 5
DEFAULT_MERCHANT_LIMIT = 10
MAX_MERCHANT_LIMIT = 50


class CategorySummary(CamelModel):
    category: str
    amount: Decimal
    percentage: float


class MerchantSummary(CamelModel):
    merchant: str
    amount: Decimal
    percentage: float


class DashboardSummary(CamelModel):
    total_spend: Decimal
    receipt_count: int
    average_spend: Decimal
    top_categories: list[CategorySummary]
    top_merchants: list[MerchantSummary]


class TrendPoint(CamelModel):
    date: str
    amount: Decimal


class SpendingTrends(CamelModel):
    period: str
    data: list[TrendPoint]


class CategoryItemDetail(CamelModel):
    name: str
    total_spent: Decimal
    count: int


class CategorySpendingDetail(CamelModel):
    name: str
    amount: Decimal
    percentage: float
    items: list[CategoryItemDetail]


class CategorySpending(CamelModel):
    total: Decimal
    categories: list[CategorySpendingDetail]


class MerchantFrequencyDetail(CamelModel):
    name: str
    visits: int
    total_spent: Decimal
    average_spent: Decimal
    percentage: float


class MerchantFrequency(CamelModel):
    total_visits: int
    merchants: list[MerchantFrequencyDetail]


class MonthlyCategoryComparison(CamelModel):
    name: str
    month1_amount: Decimal
    month2_amount: Decimal
    difference: Decimal
    percentage_change: float


class MonthlyComparison(CamelModel):
    month1: str
    month2: str
    month1_total: Decimal
    month2_total: Decimal
    difference: Decimal
    percentage_change: float
    categories: list[MonthlyCategoryComparison]


def _percentage(part: Decimal, whole: Decimal) -> float:
    if whole == 0:
        return 0.0
    return round(float(part / whole * 100), 2)


def _change(before: Decimal, after: Decimal) -> float:
    """Percent change; growth from nothing counts as +100%."""
    if before > 0:
        return _percentage(after - before, before)
    if after > 0:
        return 100.0
    return 0.0


def _ranked(amounts: dict[str, Decimal]) -> list[tuple[str, Decimal]]:
    return sorted(amounts.items(), key=lambda pair: (-pair[1], pair[0]))


def _category_amounts(receipts: list[Receipt]) -> dict[str, Decimal]:
    amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for receipt in receipts:
        for item in receipt.items:
            if item.category:
                amounts[item.category] += item.amount
    return amounts


def dashboard_summary(receipts: list[Receipt]) -> DashboardSummary:
    """Overall spend with the top five categories and merchants."""
    total = sum((r.total for r in receipts), ZERO)
    count = len(receipts)

    merchant_amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for receipt in receipts:
        merchant_amounts[receipt.merchant] += receipt.total

    return DashboardSummary(
        total_spend=total,
        receipt_count=count,
        average_spend=total / count if count else ZERO,
        top_categories=[
            CategorySummary(category=name, amount=amount, percentage=_percentage(amount, total))
            for name, amount in _ranked(_category_amounts(receipts))[:TOP_N]
        ],
        top_merchants=[
            MerchantSummary(merchant=name, amount=amount, percentage=_percentage(amount, total))
            for name, amount in _ranked(merchant_amounts)[:TOP_N]
        ],
    )


def _period_key(day: date, period: str) -> str:
    if period == "daily":
        return day.isoformat()
    if period == "weekly":
        # Week 1 is days 1-7 of the year
        week = (day.timetuple().tm_yday - 1) // 7 + 1
        return f"{day.year}-{week:02d}"
    if period == "monthly":
        return f"{day.year}-{day.month:02d}"
    return str(day.year)


def spending_trends(receipts: list[Receipt], period: str = "monthly") -> SpendingTrends:
    """Receipt totals grouped by day, week, month or year.

    Args:
        receipts: Receipts to aggregate (undated receipts are skipped)
        period: One of daily, weekly, monthly, yearly (empty means monthly)

    Returns:
        SpendingTrends with one point per period, oldest first

    Raises:
        ValueError: If period is not supported
    """
    period = period or "monthly"
    if period not in TREND_PERIODS:
        raise ValueError(f"invalid period: {period}")

    buckets: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for receipt in receipts:
        if receipt.date is not None:
            buckets[_period_key(receipt.date, period)] += receipt.total

    return SpendingTrends(
        period=period,
        data=[TrendPoint(date=key, amount=buckets[key]) for key in sorted(buckets)],
    )


def spending_by_category(receipts: list[Receipt]) -> CategorySpending:
    """Item spend per category, each with its top five items by spend."""
    total = sum((r.total for r in receipts), ZERO)

    item_spend: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    item_count: dict[tuple[str, str], int] = defaultdict(int)
    for receipt in receipts:
        for item in receipt.items:
            if not item.category:
                continue
            item_spend[item.category][item.name] += item.amount
            item_count[(item.category, item.name)] += 1

    categories = []
    for name, amount in _ranked(_category_amounts(receipts)):
        top_items = _ranked(item_spend[name])[:TOP_N]
        categories.append(
            CategorySpendingDetail(
                name=name,
                amount=amount,
                percentage=_percentage(amount, total),
                items=[
                    CategoryItemDetail(
                        name=item_name, total_spent=spent, count=item_count[(name, item_name)]
                    )
                    for item_name, spent in top_items
                ],
            )
        )
    return CategorySpending(total=total, categories=categories)


def merchant_frequency(
    receipts: list[Receipt], limit: int = DEFAULT_MERCHANT_LIMIT
) -> MerchantFrequency:
    """Most visited merchants.

    Args:
        receipts: Receipts to aggregate
        limit: Merchants to return; <= 0 means 10, capped at 50

    Returns:
        MerchantFrequency ordered by visit count
    """
    if limit <= 0:
        limit = DEFAULT_MERCHANT_LIMIT
    limit = min(limit, MAX_MERCHANT_LIMIT)

    visits: dict[str, int] = defaultdict(int)
    spent: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for receipt in receipts:
        visits[receipt.merchant] += 1
        spent[receipt.merchant] += receipt.total

    total_visits = len(receipts)
    ranked = sorted(visits, key=lambda name: (-visits[name], name))[:limit]
    return MerchantFrequency(
        total_visits=total_visits,
        merchants=[
            MerchantFrequencyDetail(
                name=name,
                visits=visits[name],
                total_spent=spent[name],
                average_spent=spent[name] / visits[name],
                percentage=_percentage(Decimal(visits[name]), Decimal(total_visits)),
            )
            for name in ranked
        ],
    )


def _month_key(month: str) -> str:
    try:
        parsed = datetime.strptime(month, "%Y-%m")
    except ValueError:
        raise ValueError(f"invalid month format {month}, expected YYYY-MM") from None
    return f"{parsed.year}-{parsed.month:02d}"


def _in_month(receipts: list[Receipt], key: str) -> list[Receipt]:
    return [r for r in receipts if r.date is not None and _period_key(r.date, "monthly") == key]


def monthly_comparison(receipts: list[Receipt], month1: str, month2: str) -> MonthlyComparison:
    """Compare total and per-category spend between two YYYY-MM months.

    Raises:
        ValueError: If a month is not in YYYY-MM format
    """
    key1, key2 = _month_key(month1), _month_key(month2)
    in_month1 = _in_month(receipts, key1)
    in_month2 = _in_month(receipts, key2)

    total1 = sum((r.total for r in in_month1), ZERO)
    total2 = sum((r.total for r in in_month2), ZERO)
    categories1 = _category_amounts(in_month1)
    categories2 = _category_amounts(in_month2)

    names = sorted(
        set(categories1) | set(categories2),
        key=lambda name: (-max(categories1.get(name, ZERO), categories2.get(name, ZERO)), name),
    )
    return MonthlyComparison(
        month1=month1,
        month2=month2,
        month1_total=total1,
        month2_total=total2,
        difference=total2 - total1,
        percentage_change=_change(total1, total2),
        categories=[
            MonthlyCategoryComparison(
                name=name,
                month1_amount=categories1.get(name, ZERO),
                month2_amount=categories2.get(name, ZERO),
                difference=categories2.get(name, ZERO) - categories1.get(name, ZERO),
                percentage_change=_change(
                    categories1.get(name, ZERO), categories2.get(name, ZERO)
                ),
            )
            for name in names
        ],
    )
