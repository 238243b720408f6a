"""
Unit Tests - Report Parsing
"""
from datetime import datetime
from decimal import Decimal

import pytest

from sellerops.amazon.reports import ReportType
from sellerops.database.models import FulfillmentChannel, OrderStatus
from sellerops.ingestion.report_parser import (
    normalize_fulfillment_channel,
    normalize_header,
    normalize_order_status,
    parse_money,
    parse_report,
    parse_table,
)


class TestParseTable:
    """Tests for the delimited table splitter"""

    def test_headers_are_normalized(self):
        """Header case and punctuation collapse to dash-separated names"""
        rows = parse_table("Amazon Order ID\tSKU\nA-1\tS1\n")

        assert rows == [{"amazon-order-id": "A-1", "sku": "S1"}]

    def test_blank_lines_skipped_and_short_rows_padded(self):
        """Blank lines disappear and missing trailing cells become empty"""
        rows = parse_table("a\tb\tc\n\n1\t2\n\n")

        assert rows == [{"a": "1", "b": "2", "c": ""}]

    def test_cells_are_trimmed_and_unquoted(self):
        """Surrounding whitespace and quotes are removed"""
        rows = parse_table('a\tb\n "x" \t  y \n')

        assert rows[0] == {"a": "x", "b": "y"}

    def test_quoted_line_break_stays_in_cell(self):
        """A quoted product name spanning two lines is one cell of one row"""
        rows = parse_table('amazon-order-id\tproduct-name\tsku\n111-1\t"Widget\nDeluxe"\tSKU-A\n')

        assert rows == [{"amazon-order-id": "111-1", "product-name": "Widget\nDeluxe", "sku": "SKU-A"}]

    def test_quoted_delimiter_stays_in_cell(self):
        """A tab inside quotes does not shift the following columns"""
        rows = parse_table('amazon-order-id\tproduct-name\tsku\n111-1\t"Widget\tDeluxe"\tSKU-A\n')

        assert rows[0]["product-name"] == "Widget\tDeluxe"
        assert rows[0]["sku"] == "SKU-A"

    def test_first_duplicate_header_wins(self):
        """Two headers normalizing to the same name keep the first column"""
        rows = parse_table("SKU\tsku\nfirst\tsecond\n")

        assert rows[0]["sku"] == "first"

    def test_empty_document(self):
        """An empty blob yields no rows"""
        assert parse_table("") == []
        assert parse_table("\n\n") == []

    def test_bytes_with_bom(self):
        """UTF-8 BOM is stripped from the first header"""
        rows = parse_table("\ufeffsku\tqty\nA\t1\n".encode("utf-8"))

        assert rows == [{"sku": "A", "qty": "1"}]


class TestValueHelpers:
    """Tests for header and value normalization"""

    def test_normalize_header(self):
        """Underscores, spaces and case are unified"""
        assert normalize_header("Purchase_Date") == "purchase-date"
        assert normalize_header("  item price ") == "item-price"

    def test_parse_money(self):
        """Currency symbols and thousands separators are ignored"""
        assert parse_money("$1,234.50") == Decimal("1234.50")
        assert parse_money("") == Decimal("0")
        assert parse_money("n/a") == Decimal("0")
        assert parse_money(None) == Decimal("0")

    @pytest.mark.parametrize("raw,expected", [
        ("Shipped", OrderStatus.SHIPPED),
        ("shipped", OrderStatus.SHIPPED),
        ("Unshipped", OrderStatus.UNSHIPPED),
        ("Shipping", OrderStatus.SHIPPED),
        ("Partially Shipped", OrderStatus.PARTIALLY_SHIPPED),
        ("Canceled", OrderStatus.CANCELLED),
        ("Pending - Waiting for Pick Up", OrderStatus.PENDING),
        ("Delivered to buyer", OrderStatus.DELIVERED),
    ])
    def test_normalize_order_status(self, raw, expected):
        """Free-text vendor statuses map onto the closed enum"""
        assert normalize_order_status(raw) == expected

    def test_unknown_status_defaults_to_pending(self):
        """Unrecognized or missing statuses fall back to pending"""
        assert normalize_order_status("Mystery") == OrderStatus.PENDING
        assert normalize_order_status(None) == OrderStatus.PENDING

    def test_normalize_fulfillment_channel(self):
        """Amazon-fulfilled spellings map to FBA, everything else to MFN"""
        assert normalize_fulfillment_channel("Amazon") == FulfillmentChannel.FBA
        assert normalize_fulfillment_channel("AFN") == FulfillmentChannel.FBA
        assert normalize_fulfillment_channel("Merchant") == FulfillmentChannel.MFN
        assert normalize_fulfillment_channel(None) == FulfillmentChannel.MFN


class TestParseReport:
    """Tests for mapping-driven record extraction"""

    def test_orders_report_fields_resolved(self):
        """Synonym columns resolve to logical fields with typed values"""
        text = (
            "order-id\tpurchase-date\torder-status\tseller-sku\tquantity-purchased\titem-price\tship-city\n"
            "111-1\t2024-01-15T08:30:00-08:00\tShipped\tSKU-A\t2\t$19.98\tSeattle\n"
        )
        result = parse_report(text, ReportType.ALL_ORDERS_BY_ORDER_DATE)

        assert result.parsed == 1
        record = result.rows[0]
        assert record["order_id"] == "111-1"
        assert record["sku"] == "SKU-A"
        assert record["quantity"] == 2
        assert record["item_price"] == Decimal("19.98")
        assert record["purchase_date"] == datetime(2024, 1, 15, 16, 30)
        assert record["ship_city"] == "Seattle"
        assert record["item_tax"] == Decimal("0")

    def test_rows_missing_identifiers_are_counted(self):
        """Rows without an order id or SKU are dropped and tallied"""
        text = (
            "amazon-order-id\tsku\titem-price\n"
            "A-1\tS1\t1.00\n"
            "\tS2\t2.00\n"
            "A-3\t\t3.00\n"
        )
        result = parse_report(text, ReportType.ALL_ORDERS_BY_ORDER_DATE)

        assert result.total == 3
        assert result.parsed == 1
        assert result.skipped == 2
        assert result.skipped_reasons == {"missing_order_id": 1, "missing_sku": 1}

    def test_row_order_is_preserved(self):
        """Records come back in source order"""
        text = "amazon-order-id\tsku\nB\t2\nA\t1\nC\t3\n"
        result = parse_report(text, ReportType.ALL_ORDERS_BY_ORDER_DATE)

        assert [r["order_id"] for r in result.rows] == ["B", "A", "C"]

    def test_fba_shipments_defaults(self):
        """Shipment rows default to shipped status and Amazon fulfillment"""
        text = "amazon-order-id\tsku\tquantity-shipped\tshipment-date\nA-1\tS1\t3\t2024-02-01T00:00:00Z\n"
        result = parse_report(text, ReportType.FBA_SHIPMENTS)

        record = result.rows[0]
        assert record["order_status"] == "Shipped"
        assert record["fulfillment_channel"] == "AFN"
        assert record["quantity"] == 3
        assert record["ship_date"] == datetime(2024, 2, 1)

    def test_returns_require_return_date(self):
        """Customer return rows without a return date are skipped"""
        text = (
            "return-date\torder-id\tsku\tquantity\treason\n"
            "2024-03-01T10:00:00Z\tA-1\tS1\t1\tDEFECTIVE\n"
            "\tA-2\tS2\t1\tDAMAGED\n"
        )
        result = parse_report(text, ReportType.FBA_CUSTOMER_RETURNS)

        assert result.parsed == 1
        assert result.skipped_reasons == {"missing_return_date": 1}
        assert result.rows[0]["reason"] == "DEFECTIVE"

    def test_unknown_report_type(self):
        """Report types without a mapping are rejected"""
        with pytest.raises(ValueError):
            parse_report("a\tb\n", "GET_SOMETHING_ELSE")
