"""
Reconciliation Module

FBA shipment reconciliation with exactly-once inventory deduction.
"""
from .ledger import DeductionLine, DeductionReport, ReconciliationAction, ReconciliationLedger
from .matching import CatalogIndex, load_catalog_index

__all__ = [
    "DeductionLine",
    "DeductionReport",
    "ReconciliationAction",
    "ReconciliationLedger",
    "CatalogIndex",
    "load_catalog_index",
]
