"""
Tabular Report Parser

Turns vendor flat-file reports (tab-delimited, header row first) into typed
records:
- Header names normalized (case-folded, non-alphanumeric runs collapsed to "-")
- Declarative per-report-type field mappings with ordered synonym lists,
  consumed by one resolver
- Rows lacking a required identifying field are dropped and counted
- Row order preserved, blank lines skipped
"""

import io
import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import polars as pl
import structlog

from sellerops.database.models import FulfillmentChannel, OrderStatus
from sellerops.timeutils import parse_timestamp

logger = structlog.get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_MONEY_STRIP = re.compile(r"[,$\"\s]")


class ValueKind(str, Enum):
    """How a resolved cell is coerced"""
    TEXT = "text"
    MONEY = "money"
    INTEGER = "integer"
    DATETIME = "datetime"


@dataclass(frozen=True)
class FieldSpec:
    """One logical field and the report columns that may carry it"""
    name: str
    synonyms: Tuple[str, ...]
    kind: ValueKind = ValueKind.TEXT
    required: bool = False
    default: Any = None


@dataclass(frozen=True)
class ReportFieldMapping:
    """Field configuration for one report type"""
    report_type: str
    fields: Tuple[FieldSpec, ...]

    @property
    def required_fields(self) -> Tuple[FieldSpec, ...]:
        return tuple(f for f in self.fields if f.required)


# =============================================================================
# VALUE HELPERS
# =============================================================================

def normalize_header(name: str) -> str:
    """``"Amazon Order ID"`` / ``amazon_order_id`` -> ``amazon-order-id``"""
    return _NON_ALNUM.sub("-", name.strip().strip('"').lower()).strip("-")


def parse_money(value: Any) -> Decimal:
    """Strip ``,$"`` and whitespace; anything unparseable is zero."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    text = _MONEY_STRIP.sub("", str(value))
    if not text:
        return Decimal("0")
    try:
        result = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def parse_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    text = _MONEY_STRIP.sub("", str(value))
    if not text:
        return default
    try:
        return int(Decimal(text))
    except (InvalidOperation, ValueError):
        return default


_STATUS_BY_KEY = {_NON_ALNUM.sub("", s.value.lower()): s for s in OrderStatus}

# Checked in order: "unshipped" must win over "ship"
_STATUS_SUBSTRINGS = (
    ("cancel", OrderStatus.CANCELLED),
    ("unship", OrderStatus.UNSHIPPED),
    ("partial", OrderStatus.PARTIALLY_SHIPPED),
    ("deliver", OrderStatus.DELIVERED),
    ("return", OrderStatus.RETURNED),
    ("pend", OrderStatus.PENDING),
    ("ship", OrderStatus.SHIPPED),
)


def normalize_order_status(value: Optional[str], default: OrderStatus = OrderStatus.PENDING) -> OrderStatus:
    """Map a free-text vendor status onto the closed OrderStatus enum."""
    if not value:
        return default
    key = _NON_ALNUM.sub("", value.lower())
    if key in _STATUS_BY_KEY:
        return _STATUS_BY_KEY[key]
    for needle, status in _STATUS_SUBSTRINGS:
        if needle in key:
            return status
    return default


def normalize_fulfillment_channel(value: Optional[str]) -> FulfillmentChannel:
    """``Amazon``/``AFN``/``FBA`` are fulfilled by Amazon; anything else is MFN."""
    text = (value or "").upper()
    if "AFN" in text or "FBA" in text or "AMAZON" in text:
        return FulfillmentChannel.FBA
    return FulfillmentChannel.MFN


# =============================================================================
# FIELD MAPPINGS
# =============================================================================

def _money(name: str, *synonyms: str) -> FieldSpec:
    return FieldSpec(name, synonyms or (name.replace("_", "-"),), ValueKind.MONEY, default=Decimal("0"))


_CHARGE_FIELDS = (
    _money("item_price"),
    _money("item_tax"),
    _money("shipping_price"),
    _money("shipping_tax"),
    _money("gift_wrap_price"),
    _money("gift_wrap_tax"),
    _money("item_promotion_discount"),
    _money("ship_promotion_discount"),
)

_DESTINATION_FIELDS = (
    FieldSpec("ship_city", ("ship-city", "shipping-city")),
    FieldSpec("ship_state", ("ship-state", "shipping-state")),
    FieldSpec("ship_postal_code", ("ship-postal-code", "shipping-postal-code", "ship-zip")),
    FieldSpec("ship_country", ("ship-country", "shipping-country")),
)

ORDER_ID = FieldSpec("order_id", ("amazon-order-id", "order-id", "amazonorderid", "merchant-order-id"), required=True)
SKU = FieldSpec("sku", ("sku", "seller-sku", "sellersku", "merchant-sku"), required=True)

ALL_ORDERS_MAPPING = ReportFieldMapping(
    report_type="GET_FLAT_FILE_ALL_ORDERS_DATA_BY_ORDER_DATE_GENERAL",
    fields=(
        ORDER_ID,
        SKU,
        FieldSpec("asin", ("asin",)),
        FieldSpec("purchase_date", ("purchase-date", "purchasedate", "order-date"), ValueKind.DATETIME),
        FieldSpec("ship_date", ("shipment-date", "ship-date", "shipdate"), ValueKind.DATETIME),
        FieldSpec("order_status", ("order-status", "status", "item-status")),
        FieldSpec("fulfillment_channel", ("fulfillment-channel", "fulfillment")),
        FieldSpec("sales_channel", ("sales-channel", "saleschannel")),
        FieldSpec("quantity", ("quantity", "quantity-purchased", "qty", "quantity-shipped"), ValueKind.INTEGER, default=1),
        FieldSpec("currency", ("currency",)),
        *_CHARGE_FIELDS,
        *_DESTINATION_FIELDS,
    ),
)

FBA_SHIPMENTS_MAPPING = ReportFieldMapping(
    report_type="GET_AMAZON_FULFILLED_SHIPMENTS_DATA_GENERAL",
    fields=(
        ORDER_ID,
        SKU,
        FieldSpec("asin", ("asin",)),
        FieldSpec("purchase_date", ("purchase-date", "purchasedate", "payments-date"), ValueKind.DATETIME),
        FieldSpec("ship_date", ("shipment-date", "ship-date", "reporting-date", "last-updated-date"), ValueKind.DATETIME),
        # rows in this report exist only for shipped units
        FieldSpec("order_status", ("order-status", "shipment-status"), default="Shipped"),
        FieldSpec("fulfillment_channel", ("fulfillment-channel",), default="AFN"),
        FieldSpec("sales_channel", ("sales-channel", "saleschannel")),
        FieldSpec("quantity", ("quantity-shipped", "quantity", "qty"), ValueKind.INTEGER, default=1),
        FieldSpec("currency", ("currency",)),
        *_CHARGE_FIELDS,
        *_DESTINATION_FIELDS,
    ),
)

CUSTOMER_RETURNS_MAPPING = ReportFieldMapping(
    report_type="GET_FBA_FULFILLMENT_CUSTOMER_RETURNS_DATA",
    fields=(
        FieldSpec("order_id", ("order-id", "amazon-order-id"), required=True),
        SKU,
        FieldSpec("return_date", ("return-date", "returndate"), ValueKind.DATETIME, required=True),
        FieldSpec("asin", ("asin",)),
        FieldSpec("fnsku", ("fnsku",)),
        FieldSpec("quantity", ("quantity", "qty"), ValueKind.INTEGER, default=1),
        FieldSpec("reason", ("reason", "return-reason")),
        FieldSpec("disposition", ("detailed-disposition", "disposition")),
        FieldSpec("status", ("status",)),
        FieldSpec("license_plate_number", ("license-plate-number", "lpn")),
    ),
)

FIELD_MAPPINGS: Dict[str, ReportFieldMapping] = {
    mapping.report_type: mapping
    for mapping in (ALL_ORDERS_MAPPING, FBA_SHIPMENTS_MAPPING, CUSTOMER_RETURNS_MAPPING)
}


def get_field_mapping(report_type: Any) -> ReportFieldMapping:
    key = getattr(report_type, "value", report_type)
    try:
        return FIELD_MAPPINGS[key]
    except KeyError:
        raise ValueError(f"No field mapping configured for report type: {key}") from None


# =============================================================================
# PARSING
# =============================================================================

def _clean_cell(value: Optional[str]) -> str:
    value = (value or "").strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1].strip()
    return value


def parse_table(raw: Union[str, bytes], delimiter: str = "\t") -> List[Dict[str, str]]:
    """
    Read a delimited blob into row maps keyed by normalized header.

    Quoted cells may contain the delimiter or line breaks. Blank rows are
    skipped, cells are trimmed, short rows are padded with empty strings and
    surplus cells ignored. When two headers normalize to the same name the
    first column wins.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8-sig", errors="replace")
    raw = raw.lstrip("\r\n")
    if not raw.strip():
        return []

    # header read as a plain row so duplicate names reach the first-wins rule
    frame = pl.read_csv(
        io.BytesIO(raw.encode("utf-8")),
        separator=delimiter,
        has_header=False,
        infer_schema_length=0,
        quote_char='"',
        truncate_ragged_lines=True,
    )
    table = frame.rows()
    headers = [normalize_header(cell or "") for cell in table[0]]
    rows: List[Dict[str, str]] = []
    for cells in table[1:]:
        row: Dict[str, str] = {}
        for index, header in enumerate(headers):
            if not header or header in row:
                continue
            row[header] = _clean_cell(cells[index]) if index < len(cells) else ""
        if any(row.values()):
            rows.append(row)
    return rows


class FieldResolver:
    """Resolves logical fields from a normalized row using a mapping."""

    def __init__(self, mapping: ReportFieldMapping):
        self.mapping = mapping
        # synonyms are written in the same normalized form as headers
        self._lookup = {
            field_spec.name: tuple(normalize_header(s) for s in field_spec.synonyms)
            for field_spec in mapping.fields
        }

    def raw_value(self, row: Dict[str, str], field_spec: FieldSpec) -> Optional[str]:
        """First non-empty value among the field's synonyms, in priority order."""
        for column in self._lookup[field_spec.name]:
            value = row.get(column)
            if value:
                return value
        return None

    def coerce(self, field_spec: FieldSpec, value: Optional[str]) -> Any:
        if field_spec.kind == ValueKind.MONEY:
            return parse_money(value) if value is not None else field_spec.default
        if field_spec.kind == ValueKind.INTEGER:
            return parse_int(value, field_spec.default if field_spec.default is not None else 0)
        if field_spec.kind == ValueKind.DATETIME:
            parsed = parse_timestamp(value)
            return parsed if parsed is not None else field_spec.default
        return value if value is not None else field_spec.default

    def resolve(self, row: Dict[str, str]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """
        Resolve every field of the mapping.

        Returns:
            (record, None) or (None, name of the missing required field)
        """
        record: Dict[str, Any] = {}
        for field_spec in self.mapping.fields:
            value = self.coerce(field_spec, self.raw_value(row, field_spec))
            if field_spec.required and value in (None, ""):
                return None, field_spec.name
            record[field_spec.name] = value
        return record, None


@dataclass
class ParseResult:
    """Records in source order plus skip accounting"""
    report_type: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    skipped: int = 0
    skipped_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def parsed(self) -> int:
        return len(self.rows)


class ReportParser:
    """
    Parser for one report type.

    Example:
        parser = ReportParser.for_report_type(ReportType.ALL_ORDERS_BY_ORDER_DATE)
        result = parser.parse(document_text)
        for record in result.rows:
            record["order_id"], record["sku"], record["item_price"]
    """

    def __init__(self, mapping: ReportFieldMapping, delimiter: str = "\t"):
        self.mapping = mapping
        self.delimiter = delimiter
        self.resolver = FieldResolver(mapping)

    @classmethod
    def for_report_type(cls, report_type: Any) -> "ReportParser":
        return cls(get_field_mapping(report_type))

    def parse(self, raw: Union[str, bytes]) -> ParseResult:
        table = parse_table(raw, self.delimiter)
        result = ParseResult(report_type=self.mapping.report_type, total=len(table))
        reasons: Counter = Counter()

        for row in table:
            record, missing = self.resolver.resolve(row)
            if record is None:
                reasons[f"missing_{missing}"] += 1
                continue
            result.rows.append(record)

        result.skipped = sum(reasons.values())
        result.skipped_reasons = dict(reasons)
        if result.skipped:
            logger.warning(
                "Dropped report rows lacking identifying fields",
                report_type=self.mapping.report_type,
                skipped=result.skipped,
                reasons=result.skipped_reasons,
            )
        return result


def parse_report(raw: Union[str, bytes], report_type: Any) -> ParseResult:
    """Convenience wrapper: parse ``raw`` with the mapping for ``report_type``."""
    return ReportParser.for_report_type(report_type).parse(raw)
