"""
FBA Shipment Reconciliation Ledger

State machine per shipment:

    pending --accept--> accepted   (no inventory effect, may be reverted)
    pending --deduct--> deducted   (decrements warehouse stock, final)

The move out of ``pending`` is a conditional UPDATE guarded on the current
state, so two concurrent callers cannot both win. Every stock decrement
writes an ``InventoryAdjustment`` row keyed by (SKU, "fba_shipment",
shipment id); that unique key is the idempotency record shared by every
entry point that can deduct for a shipment.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from sellerops.amazon.fulfillment import FulfillmentInboundClient
from sellerops.database.connection import session_scope
from sellerops.database.models import (
    FbaShipment,
    InventoryAdjustment,
    InventoryLevel,
    ReconciliationStatus,
    Warehouse,
    WarehouseInventory,
    validate_transition,
)
from sellerops.errors import ConfigurationError, NotFoundError, StateConflictError
from sellerops.reconciliation.matching import load_catalog_index
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)

ADJUSTMENT_TYPE = "fba_shipment"


class ReconciliationAction(str, Enum):
    ACCEPT = "accept"
    DEDUCT = "deduct"


ACTION_TARGETS = {
    ReconciliationAction.ACCEPT: ReconciliationStatus.ACCEPTED,
    ReconciliationAction.DEDUCT: ReconciliationStatus.DEDUCTED,
}


@dataclass
class DeductionLine:
    """One planned or applied SKU decrement"""
    master_sku: str
    quantity: int
    quantity_before: int = 0
    quantity_after: int = 0
    seller_skus: List[str] = field(default_factory=list)

    @property
    def quantity_change(self) -> int:
        return self.quantity_after - self.quantity_before

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "quantity_change": self.quantity_change}


@dataclass
class DeductionReport:
    """Preview (dry run) or confirmation of a shipment deduction"""
    shipment_id: str
    warehouse_id: int
    dry_run: bool
    deductions: List[DeductionLine] = field(default_factory=list)
    already_deducted: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    applied: bool = False
    status: Optional[ReconciliationStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "warehouse_id": self.warehouse_id,
            "dry_run": self.dry_run,
            "applied": self.applied,
            "status": self.status.value if self.status else None,
            "deductions": [line.to_dict() for line in self.deductions],
            "already_deducted": self.already_deducted,
            "not_found": self.not_found,
            "summary": {
                "skus": len(self.deductions),
                "units": sum(line.quantity for line in self.deductions),
                "already_deducted": len(self.already_deducted),
                "not_found": len(self.not_found),
            },
        }


def _conflict(shipment: FbaShipment, message: str) -> StateConflictError:
    return StateConflictError(
        message,
        current_state=shipment.reconciliation_status,
        details={
            "shipment_id": shipment.shipment_id,
            "reconciled_at": shipment.reconciled_at.isoformat() if shipment.reconciled_at else None,
            "reconciled_by": shipment.reconciled_by,
        },
    )


# =============================================================================
# INVENTORY PRIMITIVES
# =============================================================================

async def has_adjustment(session: AsyncSession, master_sku: str, reference: str) -> bool:
    result = await session.execute(
        select(InventoryAdjustment.id).where(
            InventoryAdjustment.master_sku == master_sku,
            InventoryAdjustment.adjustment_type == ADJUSTMENT_TYPE,
            InventoryAdjustment.reference == reference,
        )
    )
    return result.first() is not None


async def _warehouse_row(session: AsyncSession, warehouse_id: int, master_sku: str) -> Optional[WarehouseInventory]:
    result = await session.execute(
        select(WarehouseInventory).where(
            WarehouseInventory.warehouse_id == warehouse_id,
            WarehouseInventory.master_sku == master_sku,
        )
    )
    return result.scalar_one_or_none()


async def plan_deduction(session: AsyncSession, warehouse_id: int, line: DeductionLine) -> DeductionLine:
    """Fill in before/after quantities without writing anything."""
    row = await _warehouse_row(session, warehouse_id, line.master_sku)
    line.quantity_before = row.available if row is not None else 0
    line.quantity_after = max(0, line.quantity_before - line.quantity)
    return line


async def apply_deduction(
    session: AsyncSession,
    warehouse_id: int,
    line: DeductionLine,
    reference: str,
    created_by: Optional[str] = None,
) -> DeductionLine:
    """
    Decrement warehouse stock for one SKU, floored at zero, and write the audit row.

    The aggregate ``warehouse_available`` moves by the same (actual) delta.
    """
    row = await _warehouse_row(session, warehouse_id, line.master_sku)
    if row is None:
        row = WarehouseInventory(warehouse_id=warehouse_id, master_sku=line.master_sku, available=0)
        session.add(row)

    line.quantity_before = row.available or 0
    line.quantity_after = max(0, line.quantity_before - line.quantity)
    row.available = line.quantity_after

    level = await session.get(InventoryLevel, line.master_sku)
    if level is None:
        level = InventoryLevel(
            master_sku=line.master_sku, fba_available=0, fba_inbound=0, fba_reserved=0, warehouse_available=0,
        )
        session.add(level)
    level.warehouse_available = max(0, (level.warehouse_available or 0) + line.quantity_change)

    session.add(InventoryAdjustment(
        master_sku=line.master_sku,
        warehouse_id=warehouse_id,
        location="warehouse",
        adjustment_type=ADJUSTMENT_TYPE,
        quantity_change=line.quantity_change,
        quantity_before=line.quantity_before,
        quantity_after=line.quantity_after,
        reason=f"Sent to FBA in shipment {reference}",
        reference=reference,
        created_by=created_by,
    ))
    # surfaces a concurrent duplicate as IntegrityError inside this transaction
    await session.flush()
    return line


def group_lines(lines: List[Tuple[Optional[str], str, int]]) -> Tuple[List[DeductionLine], List[str]]:
    """
    Collapse ``(master_sku, seller_sku, quantity)`` by catalog SKU.

    Returns:
        (lines to deduct, seller SKUs with no catalog match)
    """
    grouped: Dict[str, DeductionLine] = {}
    not_found: List[str] = []
    for master_sku, seller_sku, quantity in lines:
        if not master_sku:
            not_found.append(seller_sku)
            continue
        if quantity <= 0:
            continue
        line = grouped.setdefault(master_sku, DeductionLine(master_sku=master_sku, quantity=0))
        line.quantity += quantity
        line.seller_skus.append(seller_sku)
    return list(grouped.values()), not_found


# =============================================================================
# LEDGER
# =============================================================================

class ReconciliationLedger:
    """
    Reconciliation entry points for FBA shipments.

    Example:
        ledger = ReconciliationLedger(session_factory)
        result = await ledger.reconcile("FBA15ABC", ReconciliationAction.DEDUCT, warehouse_id=1)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        inbound: Optional[FulfillmentInboundClient] = None,
    ):
        self.session_factory = session_factory
        self.inbound = inbound

    async def _load(self, session: AsyncSession, shipment_id: str) -> FbaShipment:
        result = await session.execute(
            select(FbaShipment)
            .options(selectinload(FbaShipment.items))
            .where(FbaShipment.shipment_id == shipment_id)
        )
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError(f"FBA shipment {shipment_id} not found")
        return shipment

    async def _require_warehouse(self, session: AsyncSession, warehouse_id: int) -> None:
        if await session.get(Warehouse, warehouse_id) is None:
            raise NotFoundError(f"Warehouse {warehouse_id} not found")

    async def _transition(
        self,
        session: AsyncSession,
        shipment: FbaShipment,
        expected: ReconciliationStatus,
        target: ReconciliationStatus,
        **values: Any,
    ) -> None:
        """Conditional state move; losing a race is a conflict."""
        validate_transition(expected, target)
        result = await session.execute(
            update(FbaShipment)
            .where(FbaShipment.id == shipment.id, FbaShipment.reconciliation_status == expected)
            .values(reconciliation_status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.refresh(shipment)
            raise _conflict(shipment, f"Shipment {shipment.shipment_id} was reconciled concurrently")

    async def reconcile(
        self,
        shipment_id: str,
        action: ReconciliationAction,
        warehouse_id: Optional[int] = None,
        reconciled_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move a pending shipment to accepted or deducted.

        Raises:
            ConfigurationError: deduct without a warehouse
            NotFoundError: unknown shipment or warehouse, or no line matches the catalog
            StateConflictError: shipment is not pending
        """
        action = ReconciliationAction(action)
        if action == ReconciliationAction.DEDUCT and not warehouse_id:
            raise ConfigurationError("warehouse_id is required to deduct inventory")

        target = ACTION_TARGETS[action]
        now = utcnow()
        try:
            async with session_scope(self.session_factory) as session:
                shipment = await self._load(session, shipment_id)
                if shipment.reconciliation_status != ReconciliationStatus.PENDING:
                    raise _conflict(
                        shipment,
                        f"Shipment {shipment_id} is already {shipment.reconciliation_status.value}",
                    )

                deductions: List[DeductionLine] = []
                not_found: List[str] = []
                if action == ReconciliationAction.DEDUCT:
                    await self._require_warehouse(session, warehouse_id)
                    catalog = await load_catalog_index(session)
                    for item in shipment.items:
                        # lines synced before their product existed are matched now
                        item.master_sku = item.master_sku or catalog.match(item.seller_sku, item.fnsku)
                    lines, not_found = group_lines([
                        (item.master_sku, item.seller_sku, item.quantity_shipped or 0) for item in shipment.items
                    ])
                    if not lines and not_found:
                        raise NotFoundError(
                            f"No lines of shipment {shipment_id} match the catalog: {', '.join(not_found)}"
                        )
                    for line in lines:
                        if await has_adjustment(session, line.master_sku, shipment.shipment_id):
                            raise _conflict(shipment, f"Shipment {shipment_id} was already deducted for {line.master_sku}")
                        deductions.append(
                            await apply_deduction(session, warehouse_id, line, shipment.shipment_id, reconciled_by)
                        )

                await self._transition(
                    session,
                    shipment,
                    ReconciliationStatus.PENDING,
                    target,
                    reconciled_at=now,
                    reconciled_by=reconciled_by,
                    reconciliation_notes=notes,
                    deducted_from_warehouse_id=warehouse_id if action == ReconciliationAction.DEDUCT else None,
                    inventory_deducted=action == ReconciliationAction.DEDUCT,
                )
        except IntegrityError as e:
            raise StateConflictError(
                f"Shipment {shipment_id} was deducted concurrently",
                current_state=ReconciliationStatus.DEDUCTED,
                details={"shipment_id": shipment_id},
            ) from e

        logger.info(
            "FBA shipment reconciled",
            shipment_id=shipment_id,
            action=action.value,
            warehouse_id=warehouse_id,
            skus=len(deductions),
            not_found=len(not_found),
        )
        return {
            "shipment_id": shipment_id,
            "action": action.value,
            "status": target.value,
            "reconciled_at": now.isoformat(),
            "warehouse_id": warehouse_id,
            "deductions": [line.to_dict() for line in deductions],
            "not_found": not_found,
        }

    async def revert(self, shipment_id: str, reverted_by: Optional[str] = None) -> Dict[str, Any]:
        """
        Reopen an accepted shipment.

        Raises:
            StateConflictError: shipment is pending, or deducted (needs a
                manual compensating inventory adjustment instead)
        """
        async with session_scope(self.session_factory) as session:
            shipment = await self._load(session, shipment_id)
            status = shipment.reconciliation_status
            if status == ReconciliationStatus.DEDUCTED:
                raise _conflict(
                    shipment,
                    f"Shipment {shipment_id} was deducted from inventory and cannot be reverted; "
                    "record a manual inventory adjustment instead",
                )
            if status != ReconciliationStatus.ACCEPTED:
                raise _conflict(shipment, f"Shipment {shipment_id} is not reconciled")

            await self._transition(
                session,
                shipment,
                ReconciliationStatus.ACCEPTED,
                ReconciliationStatus.PENDING,
                reconciled_at=None,
                reconciled_by=None,
                reconciliation_notes=f"Reverted by {reverted_by}" if reverted_by else None,
            )

        logger.info("FBA shipment reconciliation reverted", shipment_id=shipment_id, reverted_by=reverted_by)
        return {"shipment_id": shipment_id, "status": ReconciliationStatus.PENDING.value}

    async def deduct_by_shipment_id(
        self,
        shipment_id: str,
        warehouse_id: Optional[int],
        dry_run: bool = True,
        created_by: Optional[str] = None,
    ) -> DeductionReport:
        """
        Ad hoc deduction for a vendor shipment id.

        Lines come from the local shipment when synced, otherwise from the
        inbound API. SKUs already deducted for this shipment (by any entry
        point) are reported and skipped.
        """
        if not shipment_id:
            raise ConfigurationError("shipment_id is required")
        if not warehouse_id:
            raise ConfigurationError("warehouse_id is required to deduct inventory")

        async with session_scope(self.session_factory) as session:
            await self._require_warehouse(session, warehouse_id)
            catalog = await load_catalog_index(session)
            result = await session.execute(
                select(FbaShipment)
                .options(selectinload(FbaShipment.items))
                .where(FbaShipment.shipment_id == shipment_id)
            )
            local = result.scalar_one_or_none()
            raw_lines = (
                [(i.master_sku, i.seller_sku, i.fnsku, i.quantity_shipped or 0) for i in local.items]
                if local is not None else None
            )

        if raw_lines is None:
            if self.inbound is None:
                raise NotFoundError(f"FBA shipment {shipment_id} not found")
            remote = await self.inbound.get_shipment_items(shipment_id)
            raw_lines = [(None, i.seller_sku, i.fnsku, i.quantity_shipped) for i in remote]

        lines, not_found = group_lines([
            (master_sku or catalog.match(seller_sku, fnsku), seller_sku, quantity)
            for master_sku, seller_sku, fnsku, quantity in raw_lines
        ])
        report = DeductionReport(shipment_id=shipment_id, warehouse_id=warehouse_id, dry_run=dry_run, not_found=not_found)

        try:
            async with session_scope(self.session_factory) as session:
                for line in lines:
                    if await has_adjustment(session, line.master_sku, shipment_id):
                        report.already_deducted.append(line.master_sku)
                    elif dry_run:
                        report.deductions.append(await plan_deduction(session, warehouse_id, line))
                    else:
                        report.deductions.append(
                            await apply_deduction(session, warehouse_id, line, shipment_id, created_by)
                        )

                if not dry_run:
                    shipment = await session.execute(
                        select(FbaShipment).where(FbaShipment.shipment_id == shipment_id)
                    )
                    shipment = shipment.scalar_one_or_none()
                    if shipment is not None and shipment.reconciliation_status == ReconciliationStatus.PENDING and report.deductions:
                        await self._transition(
                            session,
                            shipment,
                            ReconciliationStatus.PENDING,
                            ReconciliationStatus.DEDUCTED,
                            reconciled_at=utcnow(),
                            reconciled_by=created_by,
                            deducted_from_warehouse_id=warehouse_id,
                            inventory_deducted=True,
                        )
                        report.status = ReconciliationStatus.DEDUCTED
                    elif shipment is not None:
                        report.status = shipment.reconciliation_status
                    report.applied = bool(report.deductions)
        except IntegrityError as e:
            raise StateConflictError(
                f"Shipment {shipment_id} was deducted concurrently",
                current_state=ReconciliationStatus.DEDUCTED,
                details={"shipment_id": shipment_id},
            ) from e

        logger.info(
            "Deduct by shipment id",
            shipment_id=shipment_id,
            dry_run=dry_run,
            skus=len(report.deductions),
            already_deducted=len(report.already_deducted),
            not_found=len(report.not_found),
        )
        return report

    async def list_shipments(
        self,
        status: Optional[ReconciliationStatus] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            query = (
                select(FbaShipment)
                .options(selectinload(FbaShipment.items))
                .order_by(FbaShipment.created_date.desc(), FbaShipment.id.desc())
                .limit(limit)
            )
            if status is not None:
                query = query.where(FbaShipment.reconciliation_status == status)
            result = await session.execute(query)
            return [
                {
                    "shipment_id": s.shipment_id,
                    "name": s.shipment_name,
                    "destination_fc": s.destination_fc,
                    "status": s.status,
                    "created_date": s.created_date.isoformat() if s.created_date else None,
                    "reconciliation_status": s.reconciliation_status.value,
                    "reconciled_at": s.reconciled_at.isoformat() if s.reconciled_at else None,
                    "reconciled_by": s.reconciled_by,
                    "total_units_shipped": s.total_units_shipped,
                    "items": [
                        {
                            "seller_sku": i.seller_sku,
                            "master_sku": i.master_sku,
                            "fnsku": i.fnsku,
                            "quantity_shipped": i.quantity_shipped,
                        }
                        for i in s.items
                    ],
                }
                for s in result.scalars().all()
            ]

    async def summary(self) -> Dict[str, int]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(FbaShipment.reconciliation_status, func.count(FbaShipment.id))
                .group_by(FbaShipment.reconciliation_status)
            )
            counts = {status.value: 0 for status in ReconciliationStatus}
            for status, count in result.all():
                counts[status.value] = count
            return counts
