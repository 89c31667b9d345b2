"""Recovery pipeline turning a vision model completion into an Invoice.

Language models rarely return exactly what they are asked for. The
completion goes through three decode stages, strictly in order, and the
first stage that yields a usable invoice wins:

1. strict JSON: the whole completion is the canonical invoice object
2. embedded JSON: code fences are stripped and the span between the first
   '{' and the last '}' is decoded
3. field regex: each field (and each line item) is recovered on its own
   with targeted patterns, so truncated or prose answers still yield data

Stages return ``StageResult`` values; a failed stage is an expected branch,
not an exception. Everything here is pure and safe to call concurrently.
"""

import json
import logging
import re
from collections.abc import Callable, Iterator, Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ValidationError

from invoice_processor.extraction.categories import normalize_category
from invoice_processor.extraction.schema import (
    ZERO,
    Invoice,
    InvoicePayload,
    LineItem,
    LineItemPayload,
)

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
EXTRACTION_FAILED_MESSAGE = "failed to extract invoice data from model response"


class DecodeStage(str, Enum):
    """Decode stages in the order they are attempted."""

    STRICT_JSON = "strict_json"
    EMBEDDED_JSON = "embedded_json"
    FIELD_REGEX = "field_regex"


class StageResult(BaseModel):
    """Outcome of a single decode stage.

    Attributes:
        stage: Stage that produced this result
        success: Whether the stage produced a payload
        payload: Raw invoice payload (None on failure)
        error: Why the stage failed
    """

    stage: DecodeStage
    success: bool
    payload: InvoicePayload | None = None
    error: str | None = None


class ParseResult(BaseModel):
    """Final outcome of the pipeline.

    Attributes:
        invoice: Assembled invoice or None if nothing could be recovered
        success: Whether an invoice was produced
        stage: Stage whose output was used
        error: Failure description when success is False
    """

    invoice: Invoice | None = None
    success: bool
    stage: DecodeStage | None = None
    error: str | None = None


# Stage 1 & 2: structured decode

_FENCE_JSON = re.compile(r"```json\s*")
_FENCE = re.compile(r"```\s*")


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fence markers, keeping the fenced content."""
    return _FENCE.sub("", _FENCE_JSON.sub("", text))


def _decode_payload(candidate: str) -> InvoicePayload:
    # Decimal keeps monetary values exact (79.18 stays 79.18); deeply nested
    # input raises RecursionError
    data = json.loads(candidate, parse_float=Decimal)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return InvoicePayload.model_validate(data)


def decode_strict(completion: str) -> StageResult:
    """Decode the completion as a single canonical invoice JSON object."""
    try:
        payload = _decode_payload(completion)
    except (ValueError, RecursionError, ValidationError) as e:
        return StageResult(stage=DecodeStage.STRICT_JSON, success=False, error=str(e))
    return StageResult(stage=DecodeStage.STRICT_JSON, success=True, payload=payload)


def decode_embedded(completion: str) -> StageResult:
    """Decode the outermost {...} span after stripping code fences."""
    content = strip_code_fences(completion)
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        return StageResult(
            stage=DecodeStage.EMBEDDED_JSON, success=False, error="no JSON object found"
        )

    try:
        payload = _decode_payload(content[start : end + 1])
    except (ValueError, RecursionError, ValidationError) as e:
        return StageResult(stage=DecodeStage.EMBEDDED_JSON, success=False, error=str(e))
    return StageResult(stage=DecodeStage.EMBEDDED_JSON, success=True, payload=payload)


# Stage 3: field-level regex recovery

STRING_FIELDS = ("vendor_name", "invoice_number", "invoice_date", "due_date")
NUMERIC_FIELDS = ("subtotal", "tax_rate_percent", "tax_amount", "discount", "total_due")
ITEM_STRING_FIELDS = ("description", "category")
ITEM_NUMERIC_FIELDS = ("quantity", "unit_price", "total")


def _string_pattern(field: str) -> re.Pattern[str]:
    return re.compile(rf'"{field}"\s*:\s*"([^"]+)"')


def _numeric_pattern(field: str) -> re.Pattern[str]:
    return re.compile(rf'"{field}"\s*:\s*(-?\d+(?:\.\d*)?)')


FIELD_PATTERNS: Mapping[str, re.Pattern[str]] = MappingProxyType(
    {
        **{field: _string_pattern(field) for field in STRING_FIELDS},
        **{field: _numeric_pattern(field) for field in NUMERIC_FIELDS},
    }
)
ITEM_FIELD_PATTERNS: Mapping[str, re.Pattern[str]] = MappingProxyType(
    {
        **{field: _string_pattern(field) for field in ITEM_STRING_FIELDS},
        **{field: _numeric_pattern(field) for field in ITEM_NUMERIC_FIELDS},
    }
)
ITEMS_START_PATTERN = re.compile(r'"items"\s*:\s*\[')
DETAILS_PATTERN = re.compile(r'"details"\s*:\s*\[([\s\S]*?)\]')
QUOTED_STRING_PATTERN = re.compile(r'"([^"]+)"')


def _unescape(raw: str) -> str:
    """Decode JSON escapes in a captured string value when possible."""
    try:
        value = json.loads(f'"{raw}"')
    except ValueError:
        return raw
    return value if isinstance(value, str) else raw


def _match_string(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return _unescape(match.group(1)) if match else None


def _match_decimal(pattern: re.Pattern[str], text: str) -> Decimal | None:
    match = pattern.search(text)
    if not match:
        return None
    try:
        return Decimal(match.group(1))
    except InvalidOperation:
        return None


def _scan_balanced(text: str, start: int, opener: str, closer: str) -> int | None:
    """Return the index of the closer matching text[start], ignoring string contents."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return None


def _items_body(text: str) -> str | None:
    """Isolate the content of the "items" array.

    A truncated completion with no closing bracket yields everything after
    the opening bracket.
    """
    match = ITEMS_START_PATTERN.search(text)
    if not match:
        return None
    open_index = match.end() - 1
    close_index = _scan_balanced(text, open_index, "[", "]")
    if close_index is None:
        return text[open_index + 1 :]
    return text[open_index + 1 : close_index]


def _iter_objects(body: str) -> Iterator[str]:
    """Yield each complete top-level {...} object in an array body."""
    position = 0
    while True:
        start = body.find("{", position)
        if start == -1:
            return
        end = _scan_balanced(body, start, "{", "}")
        if end is None:
            return
        yield body[start : end + 1]
        position = end + 1


def _recover_item(candidate: str) -> LineItemPayload:
    details = None
    details_match = DETAILS_PATTERN.search(candidate)
    if details_match:
        details = [_unescape(d) for d in QUOTED_STRING_PATTERN.findall(details_match.group(1))]

    return LineItemPayload(
        description=_match_string(ITEM_FIELD_PATTERNS["description"], candidate),
        category=_match_string(ITEM_FIELD_PATTERNS["category"], candidate),
        quantity=_match_decimal(ITEM_FIELD_PATTERNS["quantity"], candidate),
        unit_price=_match_decimal(ITEM_FIELD_PATTERNS["unit_price"], candidate),
        total=_match_decimal(ITEM_FIELD_PATTERNS["total"], candidate),
        details=details,
    )


def recover_fields(completion: str) -> StageResult:
    """Recover every field independently with targeted patterns.

    Works on output that is not valid JSON at all (truncated responses,
    prose with JSON-like fragments). Items without a description are dropped.
    """
    content = strip_code_fences(completion)

    items: list[LineItemPayload] = []
    body = _items_body(content)
    if body is not None:
        for candidate in _iter_objects(body):
            item = _recover_item(candidate)
            if item.description:
                items.append(item)

    fields: dict[str, object] = {}
    for field in STRING_FIELDS:
        fields[field] = _match_string(FIELD_PATTERNS[field], content)
    for field in NUMERIC_FIELDS:
        fields[field] = _match_decimal(FIELD_PATTERNS[field], content)

    payload = InvoicePayload.model_validate({**fields, "items": items})
    if not any(value is not None for value in fields.values()) and not items:
        return StageResult(
            stage=DecodeStage.FIELD_REGEX, success=False, error="no recognizable fields"
        )
    return StageResult(stage=DecodeStage.FIELD_REGEX, success=True, payload=payload)


# Assembly & normalization


def parse_date(value: str | None) -> date | None:
    """Parse a YYYY-MM-DD date, returning None when absent or malformed."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError:
        return None


def _assemble_item(payload: LineItemPayload) -> LineItem | None:
    description = (payload.description or "").strip()
    if not description:
        return None
    return LineItem(
        description=description,
        details=tuple(payload.details or ()),
        quantity=payload.quantity or ZERO,
        unit_price=payload.unit_price or ZERO,
        total=payload.total or ZERO,
        category=normalize_category(payload.category, description),
    )


def assemble_invoice(payload: InvoicePayload) -> Invoice:
    """Build the canonical Invoice from a decoded payload.

    Parses dates, drops items without a description, normalizes item
    categories and derives total_due from subtotal + tax - discount when
    the model did not provide it.
    """
    items = tuple(
        item for item in (_assemble_item(p) for p in payload.items or ()) if item is not None
    )

    subtotal = payload.subtotal or ZERO
    tax_amount = payload.tax_amount or ZERO
    discount = payload.discount or ZERO
    total_due = payload.total_due or ZERO
    if total_due == 0 and subtotal != 0:
        total_due = subtotal + tax_amount - discount

    return Invoice(
        vendor_name=(payload.vendor_name or "").strip(),
        invoice_number=(payload.invoice_number or "").strip(),
        invoice_date=parse_date(payload.invoice_date),
        due_date=parse_date(payload.due_date),
        items=items,
        subtotal=subtotal,
        tax_rate_percent=payload.tax_rate_percent or ZERO,
        tax_amount=tax_amount,
        discount=discount,
        total_due=total_due,
    )


DECODE_STAGES: tuple[Callable[[str], StageResult], ...] = (
    decode_strict,
    decode_embedded,
    recover_fields,
)


def parse_completion(completion: str) -> ParseResult:
    """Run the decode stages in order and assemble the first usable result.

    Args:
        completion: Free-text response of the vision model

    Returns:
        ParseResult with the invoice, or success=False when no stage
        recovered any vendor, invoice number, total or line item
    """
    if not completion or not completion.strip():
        return ParseResult(success=False, error="empty model response")

    for stage in DECODE_STAGES:
        result = stage(completion)
        if not result.success or result.payload is None:
            logger.debug(f"Decode stage {result.stage.value} failed: {result.error}")
            continue

        invoice = assemble_invoice(result.payload)
        if invoice.is_empty():
            logger.debug(f"Decode stage {result.stage.value} produced no usable fields")
            continue

        if result.stage is not DecodeStage.STRICT_JSON:
            logger.info(f"Recovered invoice with fallback stage {result.stage.value}")
        return ParseResult(invoice=invoice, success=True, stage=result.stage)

    logger.warning(EXTRACTION_FAILED_MESSAGE)
    return ParseResult(success=False, error=EXTRACTION_FAILED_MESSAGE)
