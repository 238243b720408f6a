"""
Data Ingestion Module

Parsing of vendor tab-separated reports into normalized order records.
"""
from .report_parser import ParseResult, normalize_fulfillment_channel, normalize_order_status, parse_report

__all__ = [
    "ParseResult",
    "parse_report",
    "normalize_order_status",
    "normalize_fulfillment_channel",
]
