"""Unit tests for keyword-based category inference."""

import pytest

from invoice_processor.extraction.categories import (
    DEFAULT_CATEGORY,
    infer_category,
    normalize_category,
)


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("Uber ride downtown", "Transport"),
        ("GRAB CAR", "Transport"),
        ("Return flight SIN-KUL", "Travel"),
        ("Airfare surcharge", "Travel"),
        ("Hotel booking", "Accommodation"),
        ("Business lunch at restaurant", "Food"),
        ("Office chair", "Office Supplies"),
        ("Stationery set", "Office Supplies"),
        ("Consulting hours", "Professional Services"),
        ("Cleaning service", "Professional Services"),
        ("Garden hose", "Other"),
    ],
)
def test_infer_category(description: str, expected: str) -> None:
    """Each keyword row maps to its category, case-insensitively."""
    assert infer_category(description) == expected


def test_first_matching_row_wins() -> None:
    """Transport is checked before Food, Travel before Accommodation."""
    assert infer_category("Taxi to restaurant") == "Transport"
    assert infer_category("Flight and hotel package") == "Travel"


def test_substring_match() -> None:
    """Keywords match inside longer words ('inn' in 'dinner')."""
    assert infer_category("Dinner") == "Accommodation"


def test_empty_description_is_other() -> None:
    assert infer_category("") == DEFAULT_CATEGORY


class TestNormalizeCategory:
    """Model-supplied categories take precedence over inference."""

    def test_keeps_supplied_category_verbatim(self) -> None:
        assert normalize_category("groceries ", "Taxi") == "groceries "

    def test_blank_category_is_inferred(self) -> None:
        assert normalize_category("  ", "Taxi fare") == "Transport"

    def test_missing_category_is_inferred(self) -> None:
        assert normalize_category(None, "Unknown widget") == "Other"
