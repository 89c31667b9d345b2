"""Keyword-based spending category inference for line items."""

DEFAULT_CATEGORY = "Other"

# Ordered: the first row with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Transport", ("taxi", "uber", "grab")),
    ("Travel", ("flight", "airfare")),
    ("Accommodation", ("hotel", "inn")),
    ("Food", ("meal", "food", "restaurant")),
    ("Office Supplies", ("office", "stationery")),
    ("Professional Services", ("consult", "service")),
)


def infer_category(description: str) -> str:
    """Map an item description to a category by substring match.

    Args:
        description: Line item description

    Returns:
        Category name, or 'Other' when no keyword matches
    """
    text = description.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def normalize_category(category: str | None, description: str) -> str:
    """Prefer the model-supplied category, fall back to keyword inference."""
    if category and category.strip():
        return category
    return infer_category(description)
