"""
FBA Shipment Reconciliation Endpoints

List shipments awaiting reconciliation, accept/deduct/revert them, and
preview or apply an ad hoc deduction by vendor shipment id.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sellerops.amazon import FulfillmentInboundClient, SpApiClient
from sellerops.config import get_settings
from sellerops.database.connection import get_session_factory
from sellerops.database.models import ReconciliationStatus
from sellerops.reconciliation import ReconciliationAction, ReconciliationLedger

settings = get_settings()
router = APIRouter()


class ReconcileRequest(BaseModel):
    shipment_id: str = Field(..., min_length=1)
    action: ReconciliationAction
    warehouse_id: Optional[int] = None
    reconciled_by: Optional[str] = None
    notes: Optional[str] = None


class RevertRequest(BaseModel):
    shipment_id: str = Field(..., min_length=1)
    reverted_by: Optional[str] = None


class DeductRequest(BaseModel):
    shipment_id: str = Field(..., min_length=1)
    warehouse_id: int
    dry_run: bool = True
    created_by: Optional[str] = None


def get_ledger() -> ReconciliationLedger:
    # shipment items can only be fetched remotely when credentials are configured
    sp = settings.sp_api
    inbound = None
    if sp.client_id and sp.client_secret and sp.refresh_token:
        inbound = FulfillmentInboundClient(SpApiClient.from_settings())
    return ReconciliationLedger(get_session_factory(), inbound=inbound)


@router.get("/reconcile")
async def list_reconciliation(
    status: Optional[ReconciliationStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    ledger: ReconciliationLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    return {
        "shipments": await ledger.list_shipments(status=status, limit=limit),
        "summary": await ledger.summary(),
    }


@router.post("/reconcile")
async def reconcile_shipment(
    request: ReconcileRequest,
    ledger: ReconciliationLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    """
    Accept a shipment as-is or deduct its units from a warehouse.

    A shipment that is no longer pending yields 409 with its current state.
    """
    return await ledger.reconcile(
        request.shipment_id,
        request.action,
        warehouse_id=request.warehouse_id,
        reconciled_by=request.reconciled_by,
        notes=request.notes,
    )


@router.patch("/reconcile")
async def revert_reconciliation(
    request: RevertRequest,
    ledger: ReconciliationLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    """Undo an accept. Deducted shipments cannot be reverted."""
    return await ledger.revert(request.shipment_id, reverted_by=request.reverted_by)


@router.post("/deduct-inventory")
async def deduct_inventory(
    request: DeductRequest,
    ledger: ReconciliationLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    report = await ledger.deduct_by_shipment_id(
        request.shipment_id,
        request.warehouse_id,
        dry_run=request.dry_run,
        created_by=request.created_by,
    )
    return report.to_dict()
