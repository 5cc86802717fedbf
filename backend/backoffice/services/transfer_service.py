# backend/backoffice/services/transfer_service.py
"""
Warehouse transfer service.

WHY: Move a material between warehouses with a request step and an
atomic completion. Completion creates a TRANSFER_OUT at the source and a
TRANSFER_IN at the destination, both costed at the source's average cost.

LIFECYCLE:
1. PENDING: Transfer requested (availability checked, no stock effect)
2. COMPLETED: Stock moved (terminal)
3. CANCELLED: Abandoned before completion, no stock effect (terminal)
"""
from __future__ import annotations
from decimal import Decimal

from sqlalchemy import or_

from backoffice.extensions import db
from backoffice.models import Transfer, Material, Warehouse
from backoffice.numbers import quantize
from backoffice.validation import ValidationError, require_positive
from backoffice.services.concurrency import lock_for_update, run_with_retry
from backoffice.services.conversion_service import UNIT_CONSUMPTION, to_canonical
from backoffice.services.stock_service import (
    InsufficientStockError,
    get_stock_row,
    _apply_stock_event_inner,
)
from backoffice.time_utils import utcnow, normalize_datetime


# Transfer status constants
TRANSFER_STATUS_PENDING = "PENDING"
TRANSFER_STATUS_COMPLETED = "COMPLETED"
TRANSFER_STATUS_CANCELLED = "CANCELLED"

TRANSFER_TRANSITIONS = {
    TRANSFER_STATUS_PENDING: {TRANSFER_STATUS_COMPLETED, TRANSFER_STATUS_CANCELLED},
    TRANSFER_STATUS_COMPLETED: set(),
    TRANSFER_STATUS_CANCELLED: set(),
}


class TransferError(Exception):
    """Raised when transfer operations fail."""
    pass


class TransferNotFoundError(TransferError):
    pass


def _available(material_id: int, warehouse_id: int) -> Decimal:
    row = get_stock_row(material_id, warehouse_id)
    return quantize(row.available_stock) if row is not None else quantize(0)


def create_transfer(
    *,
    from_warehouse_id: int,
    to_warehouse_id: int,
    material_id: int,
    quantity,
    unit: str = UNIT_CONSUMPTION,
    reason: str | None = None,
    request_date=None,
    user_id: int | None = None,
) -> Transfer:
    """
    Create a transfer request (status: PENDING).

    Raises:
        ValidationError: bad quantity / date, same warehouse, unknown warehouse or material
        InsufficientStockError: source cannot cover the quantity right now
    """
    def _op():
        if from_warehouse_id == to_warehouse_id:
            raise ValidationError("Source and destination warehouses cannot be the same")

        for warehouse_id in (from_warehouse_id, to_warehouse_id):
            warehouse = db.session.get(Warehouse, warehouse_id)
            if warehouse is None or not warehouse.is_active:
                raise ValidationError(f"Warehouse {warehouse_id} not found")

        material = db.session.get(Material, material_id)
        if material is None:
            raise ValidationError(f"Material {material_id} not found")

        canonical_qty = to_canonical(material, require_positive(quantity, "quantity"), unit)

        try:
            request_dt = normalize_datetime(request_date) or utcnow()
        except ValueError:
            raise ValidationError("request_date must be an ISO-8601 datetime")

        available = _available(material_id, from_warehouse_id)
        if canonical_qty > available:
            raise InsufficientStockError(material_id, from_warehouse_id, canonical_qty, available)

        transfer = Transfer(
            from_warehouse_id=from_warehouse_id,
            to_warehouse_id=to_warehouse_id,
            material_id=material_id,
            quantity=canonical_qty,
            status=TRANSFER_STATUS_PENDING,
            reason=reason or "Transfer request",
            request_date=request_dt,
            created_by_user_id=user_id,
        )
        db.session.add(transfer)
        db.session.commit()
        return transfer

    return run_with_retry(_op)


def _lock_transfer(transfer_id: int) -> Transfer:
    transfer = lock_for_update(db.session.query(Transfer).filter_by(id=transfer_id)).first()
    if not transfer:
        raise TransferNotFoundError(f"Transfer {transfer_id} not found")
    return transfer


def _check_transition(transfer: Transfer, new_status: str) -> None:
    if new_status not in TRANSFER_TRANSITIONS:
        raise ValidationError(f"status must be one of {', '.join(TRANSFER_TRANSITIONS)}")
    if new_status not in TRANSFER_TRANSITIONS[transfer.status]:
        raise TransferError(f"Cannot move transfer from {transfer.status} to {new_status}")


def complete_transfer(transfer_id: int, user_id: int | None = None) -> Transfer:
    """
    Complete a PENDING transfer.

    Both stock events and the status change commit together; if the source
    no longer has enough available stock nothing is written.
    """
    def _op():
        transfer = _lock_transfer(transfer_id)
        _check_transition(transfer, TRANSFER_STATUS_COMPLETED)

        out_event = _apply_stock_event_inner(
            material_id=transfer.material_id,
            warehouse_id=transfer.from_warehouse_id,
            kind="TRANSFER_OUT",
            quantity=transfer.quantity,
            occurred_dt=transfer.request_date,
            reference_type="TRANSFER",
            reference_id=transfer.id,
            note=f"Transfer {transfer.id} to warehouse {transfer.to_warehouse_id}",
            user_id=user_id,
        )

        # Destination receives at the source's average cost at this moment
        _apply_stock_event_inner(
            material_id=transfer.material_id,
            warehouse_id=transfer.to_warehouse_id,
            kind="TRANSFER_IN",
            quantity=transfer.quantity,
            unit_cost=out_event.unit_cost,
            occurred_dt=transfer.request_date,
            reference_type="TRANSFER",
            reference_id=transfer.id,
            note=f"Transfer {transfer.id} from warehouse {transfer.from_warehouse_id}",
            user_id=user_id,
        )

        transfer.unit_cost = out_event.unit_cost
        transfer.total_cost = quantize(Decimal(transfer.quantity) * Decimal(out_event.unit_cost))
        transfer.status = TRANSFER_STATUS_COMPLETED
        transfer.completed_by_user_id = user_id
        transfer.completed_at = utcnow()

        db.session.commit()
        return transfer

    return run_with_retry(_op)


def cancel_transfer(transfer_id: int, user_id: int | None = None) -> Transfer:
    def _op():
        transfer = _lock_transfer(transfer_id)
        _check_transition(transfer, TRANSFER_STATUS_CANCELLED)

        transfer.status = TRANSFER_STATUS_CANCELLED
        transfer.cancelled_by_user_id = user_id
        transfer.cancelled_at = utcnow()

        db.session.commit()
        return transfer

    return run_with_retry(_op)


def update_transfer_status(transfer_id: int, status: str, user_id: int | None = None) -> Transfer:
    """PATCH entrypoint: COMPLETED realizes stock events, CANCELLED realizes none."""
    status = (status or "").upper()
    if status == TRANSFER_STATUS_COMPLETED:
        return complete_transfer(transfer_id, user_id=user_id)
    if status == TRANSFER_STATUS_CANCELLED:
        return cancel_transfer(transfer_id, user_id=user_id)
    raise ValidationError("status must be COMPLETED or CANCELLED")


def get_transfer(transfer_id: int) -> Transfer:
    transfer = db.session.get(Transfer, transfer_id)
    if not transfer:
        raise TransferNotFoundError(f"Transfer {transfer_id} not found")
    return transfer


def list_transfers(*, warehouse_id: int | None = None, status: str | None = None, limit: int = 200):
    q = db.session.query(Transfer)
    if warehouse_id is not None:
        q = q.filter(
            or_(Transfer.from_warehouse_id == warehouse_id, Transfer.to_warehouse_id == warehouse_id)
        )
    if status:
        q = q.filter(Transfer.status == status.upper())
    return q.order_by(Transfer.request_date.desc(), Transfer.id.desc()).limit(limit).all()
