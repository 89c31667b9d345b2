"""Unit tests for the model-response recovery pipeline.

Tests cover:
- Stage precedence (strict JSON, embedded JSON, field regex)
- Code fence stripping
- Field-level recovery from truncated output
- Empty-result rejection
- Derived totals, item filtering and category normalization
"""

import json
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from invoice_processor.extraction.parser import (
    EXTRACTION_FAILED_MESSAGE,
    FIELD_PATTERNS,
    DecodeStage,
    assemble_invoice,
    decode_embedded,
    decode_strict,
    parse_completion,
    parse_date,
    recover_fields,
    strip_code_fences,
)
from invoice_processor.extraction.schema import InvoicePayload


@pytest.fixture
def invoice_json() -> dict:
    """Canonical invoice object as a model would return it."""
    return {
        "vendor_name": "ACME Corp",
        "invoice_number": "INV-2024-001",
        "invoice_date": "2024-01-15",
        "due_date": "2024-02-15",
        "items": [
            {
                "description": "Taxi to airport",
                "details": ["Pickup 06:00"],
                "quantity": 1,
                "unit_price": 25.5,
                "total": 25.5,
                "category": "",
            },
            {
                "description": "Printer paper",
                "details": [],
                "quantity": 2,
                "unit_price": 4.99,
                "total": 9.98,
                "category": "Stationery & Paper",
            },
        ],
        "subtotal": 35.48,
        "tax_rate_percent": 10,
        "tax_amount": 3.55,
        "discount": 0,
        "total_due": 39.03,
    }


TRUNCATED_COMPLETION = (
    "```json\n"
    '{"vendor_name": "Harbor Hotel", "invoice_number": "HH-77", '
    '"invoice_date": "2024-03-02", '
    '"items": [{"description": "Hotel room", "details": ["2 nights", "Sea view"], '
    '"quantity": 2, "unit_price": 120.00, "total": 240.00}, '
    '{"description": "Room service meal", "quantity": 1, "unit_price": 35.5, "total": 35.5, '
    '"category": ""}, {"description": "Minib'
)


class TestStagePrecedence:
    """The first stage that yields a usable invoice wins."""

    def test_valid_json_uses_strict_stage(self, invoice_json: dict) -> None:
        """A completion that is exactly the invoice object decodes in stage 1."""
        result = parse_completion(json.dumps(invoice_json))

        assert result.success is True
        assert result.stage == DecodeStage.STRICT_JSON
        assert result.invoice is not None
        assert result.invoice.vendor_name == "ACME Corp"
        assert result.invoice.invoice_number == "INV-2024-001"
        assert result.invoice.invoice_date == date(2024, 1, 15)
        assert result.invoice.due_date == date(2024, 2, 15)
        assert result.invoice.total_due == Decimal("39.03")

    def test_fenced_json_uses_embedded_stage(self, invoice_json: dict) -> None:
        """Fenced JSON fails strict decoding and is recovered by stage 2."""
        completion = f"```json\n{json.dumps(invoice_json, indent=2)}\n```"

        result = parse_completion(completion)

        assert result.success is True
        assert result.stage == DecodeStage.EMBEDDED_JSON
        assert result.invoice is not None
        assert result.invoice.vendor_name == "ACME Corp"
        assert len(result.invoice.items) == 2

    def test_json_wrapped_in_prose_uses_embedded_stage(self, invoice_json: dict) -> None:
        completion = f"Sure! Here is the data you asked for:\n{json.dumps(invoice_json)}\nThanks."

        result = parse_completion(completion)

        assert result.success is True
        assert result.stage == DecodeStage.EMBEDDED_JSON

    def test_truncated_json_uses_regex_stage(self) -> None:
        """Unparseable output still yields the fields that are present."""
        result = parse_completion(TRUNCATED_COMPLETION)

        assert result.success is True
        assert result.stage == DecodeStage.FIELD_REGEX
        invoice = result.invoice
        assert invoice is not None
        assert invoice.vendor_name == "Harbor Hotel"
        assert invoice.invoice_number == "HH-77"
        assert invoice.invoice_date == date(2024, 3, 2)
        assert [item.description for item in invoice.items] == ["Hotel room", "Room service meal"]

    def test_strict_json_with_wrong_types_falls_through(self) -> None:
        """A type mismatch in strict decoding is a stage failure, not an exception."""
        completion = '{"vendor_name": "ACME", "items": "none"}'

        result = parse_completion(completion)

        assert result.success is True
        assert result.stage == DecodeStage.FIELD_REGEX
        assert result.invoice is not None
        assert result.invoice.vendor_name == "ACME"
        assert result.invoice.items == ()

    def test_quoted_numbers_are_a_type_mismatch(self) -> None:
        """Numbers sent as JSON strings fail stages 1 and 2; regex keeps the rest."""
        completion = (
            '{"vendor_name": "ACME", "subtotal": "100", "total_due": 108, '
            '"items": [{"description": "Paper", "quantity": "2", "total": 8}]}'
        )

        assert decode_strict(completion).success is False
        assert decode_embedded(completion).success is False

        result = parse_completion(completion)

        assert result.success is True
        assert result.stage == DecodeStage.FIELD_REGEX
        assert result.invoice is not None
        assert result.invoice.subtotal == Decimal("0")
        assert result.invoice.total_due == Decimal("108")
        assert result.invoice.items[0].quantity == Decimal("0")
        assert result.invoice.items[0].total == Decimal("8")

    def test_boolean_for_number_is_a_type_mismatch(self) -> None:
        assert decode_strict('{"vendor_name": "ACME", "discount": true}').success is False

    def test_fences_and_prose_do_not_change_the_invoice(self, invoice_json: dict) -> None:
        """Raw, fenced and prose-wrapped forms of one object give identical invoices."""
        raw = json.dumps(invoice_json)
        fenced = f"```json\n{json.dumps(invoice_json, indent=2)}\n```"
        prose = f"Here is the extracted invoice:\n{raw}\nLet me know if you need more."

        results = [parse_completion(text) for text in (raw, fenced, prose)]

        assert [r.stage for r in results] == [
            DecodeStage.STRICT_JSON,
            DecodeStage.EMBEDDED_JSON,
            DecodeStage.EMBEDDED_JSON,
        ]
        assert results[0].invoice is not None
        assert results[0].invoice == results[1].invoice == results[2].invoice


class TestStructuredStages:
    """Test strict and embedded decoding in isolation."""

    @pytest.mark.parametrize("completion", ["[" * 200000, '{"items": ' + "[" * 200000 + "}"])
    def test_deeply_nested_input_is_a_stage_failure(self, completion: str) -> None:
        """Runaway nesting fails the stage instead of raising RecursionError."""
        assert decode_strict(completion).success is False
        assert decode_embedded(completion).success is False

    def test_deeply_nested_completion_fails_cleanly(self) -> None:
        result = parse_completion("[" * 200000)

        assert result.success is False
        assert result.error == EXTRACTION_FAILED_MESSAGE

    def test_decode_strict_rejects_non_object(self) -> None:
        result = decode_strict("[1, 2, 3]")
        assert result.success is False
        assert result.stage == DecodeStage.STRICT_JSON
        assert result.error is not None

    def test_decode_strict_treats_null_as_absent(self) -> None:
        result = decode_strict('{"vendor_name": null, "invoice_number": "X-1", "items": null}')

        assert result.success is True
        assert result.payload is not None
        assert result.payload.vendor_name is None
        assert result.payload.items is None

    def test_decode_strict_keeps_money_exact(self) -> None:
        result = decode_strict('{"total_due": 79.18, "subtotal": 0.1}')

        assert result.payload is not None
        assert result.payload.total_due == Decimal("79.18")
        assert result.payload.subtotal == Decimal("0.1")

    def test_decode_embedded_without_braces_fails(self) -> None:
        result = decode_embedded("no json here")
        assert result.success is False
        assert result.error == "no JSON object found"

    def test_decode_embedded_ignores_unknown_fields(self) -> None:
        result = decode_embedded('Result: {"vendor_name": "Shop", "currency": "USD"} end')

        assert result.success is True
        assert result.payload is not None
        assert result.payload.vendor_name == "Shop"


class TestStripCodeFences:
    """Test Markdown fence removal."""

    def test_removes_json_fence(self) -> None:
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}\n'

    def test_removes_plain_fence(self) -> None:
        assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'

    def test_leaves_unfenced_text_alone(self) -> None:
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'


class TestFieldRecovery:
    """Test regex recovery on malformed output."""

    def test_recovers_scalar_fields(self) -> None:
        completion = (
            'vendor "vendor_name": "Corner Cafe", "invoice_number" : "CC-9", '
            '"subtotal": 20, "tax_amount": 2.5, "total_due": 22.50, "broken'
        )

        result = recover_fields(completion)

        assert result.success is True
        assert result.payload is not None
        assert result.payload.vendor_name == "Corner Cafe"
        assert result.payload.invoice_number == "CC-9"
        assert result.payload.subtotal == Decimal("20")
        assert result.payload.total_due == Decimal("22.50")

    def test_recovers_items_with_nested_details(self) -> None:
        result = recover_fields(TRUNCATED_COMPLETION)

        assert result.payload is not None
        items = result.payload.items or []
        assert len(items) == 2
        assert items[0].description == "Hotel room"
        assert items[0].details == ["2 nights", "Sea view"]
        assert items[0].quantity == Decimal("2")
        assert items[0].unit_price == Decimal("120.00")
        assert items[1].details is None

    def test_drops_items_without_description(self) -> None:
        completion = (
            '{"vendor_name": "Shop", "items": [{"quantity": 1, "total": 5}, '
            '{"description": "Coffee", "quantity": 1, "total": 3}]'
        )

        result = recover_fields(completion)

        assert result.payload is not None
        assert [item.description for item in result.payload.items or []] == ["Coffee"]

    def test_nothing_recognizable_fails(self) -> None:
        result = recover_fields("I'm sorry, I cannot read this image.")

        assert result.success is False
        assert result.stage == DecodeStage.FIELD_REGEX

    def test_unparseable_date_is_left_absent(self) -> None:
        result = parse_completion('"vendor_name": "Shop", "invoice_date": "15/01/2024"')

        assert result.invoice is not None
        assert result.invoice.vendor_name == "Shop"
        assert result.invoice.invoice_date is None

    def test_pattern_table_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            FIELD_PATTERNS["vendor_name"] = None  # type: ignore[index]


class TestEmptyResults:
    """An invoice with nothing in it is a failure, never an empty success."""

    def test_prose_only_response_fails(self) -> None:
        result = parse_completion("The image is too blurry to read.")

        assert result.success is False
        assert result.invoice is None
        assert result.error == EXTRACTION_FAILED_MESSAGE

    def test_empty_response_fails(self) -> None:
        result = parse_completion("   ")

        assert result.success is False
        assert result.error == "empty model response"

    def test_all_empty_json_fails(self) -> None:
        """Valid JSON with only blank or zero fields is rejected."""
        completion = json.dumps(
            {"vendor_name": "", "invoice_number": "", "items": [], "total_due": 0}
        )

        result = parse_completion(completion)

        assert result.success is False
        assert result.error == EXTRACTION_FAILED_MESSAGE

    def test_single_field_is_enough(self) -> None:
        result = parse_completion('{"invoice_number": "A-1"}')

        assert result.success is True
        assert result.invoice is not None
        assert result.invoice.invoice_number == "A-1"


class TestAssembly:
    """Test normalization applied after decoding."""

    def test_total_due_derived_from_components(self) -> None:
        payload = InvoicePayload(
            vendor_name="Shop",
            subtotal=Decimal("100.00"),
            tax_amount=Decimal("10.00"),
            discount=Decimal("5.00"),
        )

        invoice = assemble_invoice(payload)

        assert invoice.total_due == Decimal("105.00")

    def test_explicit_total_due_is_kept(self) -> None:
        payload = InvoicePayload(
            vendor_name="Shop", subtotal=Decimal("100"), total_due=Decimal("99.99")
        )

        assert assemble_invoice(payload).total_due == Decimal("99.99")

    def test_total_due_stays_zero_without_subtotal(self) -> None:
        payload = InvoicePayload(vendor_name="Shop", tax_amount=Decimal("3"))

        assert assemble_invoice(payload).total_due == Decimal("0")

    def test_blank_descriptions_are_dropped(self) -> None:
        payload = InvoicePayload.model_validate(
            {
                "vendor_name": "Shop",
                "items": [
                    {"description": "   ", "total": 1},
                    {"description": None, "total": 2},
                    {"description": "Lunch", "total": 3},
                ],
            }
        )

        invoice = assemble_invoice(payload)

        assert len(invoice.items) == 1
        assert invoice.items[0].description == "Lunch"

    def test_categories_are_inferred_when_missing(self, invoice_json: dict) -> None:
        invoice = parse_completion(json.dumps(invoice_json)).invoice

        assert invoice is not None
        assert invoice.items[0].category == "Transport"
        # Model-supplied category wins verbatim
        assert invoice.items[1].category == "Stationery & Paper"

    def test_missing_item_numbers_default_to_zero(self) -> None:
        payload = InvoicePayload.model_validate({"items": [{"description": "Consulting"}]})

        item = assemble_invoice(payload).items[0]

        assert item.quantity == Decimal("0")
        assert item.total == Decimal("0")
        assert item.category == "Professional Services"

    def test_invoice_is_immutable(self, invoice_json: dict) -> None:
        invoice = parse_completion(json.dumps(invoice_json)).invoice
        assert invoice is not None

        with pytest.raises(ValidationError):
            invoice.vendor_name = "Other"  # type: ignore[misc]


class TestParseDate:
    """Test date parsing helper."""

    def test_iso_date(self) -> None:
        assert parse_date("2024-12-31") == date(2024, 12, 31)

    def test_invalid_calendar_date(self) -> None:
        assert parse_date("2024-02-30") is None

    def test_empty_and_none(self) -> None:
        assert parse_date("") is None
        assert parse_date(None) is None


class TestLegacyDTO:
    """Test conversion to the snake_case wire shape."""

    def test_dates_are_empty_strings_when_missing(self) -> None:
        invoice = parse_completion('{"vendor_name": "Shop", "total_due": 12.5}').invoice
        assert invoice is not None

        dto = invoice.to_dto()

        assert dto.vendor_name == "Shop"
        assert dto.invoice_date == ""
        assert dto.due_date == ""
        assert dto.total_due == 12.5

    def test_items_are_serialized(self, invoice_json: dict) -> None:
        invoice = parse_completion(json.dumps(invoice_json)).invoice
        assert invoice is not None

        data = invoice.to_dto().model_dump()

        assert data["invoice_date"] == "2024-01-15"
        assert data["items"][0]["description"] == "Taxi to airport"
        assert data["items"][0]["details"] == ["Pickup 06:00"]
        assert data["items"][1]["unit_price"] == 4.99
