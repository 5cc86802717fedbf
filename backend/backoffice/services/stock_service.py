# Overview: Service-layer operations for warehouse stock; encapsulates business logic and database work.

# backend/backoffice/services/stock_service.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from ..extensions import db
from ..models import (
    Material,
    Warehouse,
    WarehouseStock,
    StockLedgerEvent,
    STOCK_IN_KINDS,
    STOCK_OUT_KINDS,
    STOCK_EVENT_KINDS,
    COSTED_IN_KINDS,
)
from ..numbers import ZERO, quantize, decimal_str
from ..validation import ValidationError, to_decimal, require_positive
from backoffice.time_utils import utcnow, normalize_datetime, to_utc_z, is_future
from .concurrency import lock_for_update, run_with_retry
from .conversion_service import UNIT_CONSUMPTION, UNIT_PURCHASE, to_canonical, cost_to_canonical
from .valuation_service import weighted_average, stock_value
"""
Stock Ledger Invariants & Time Semantics (authoritative)

Projection model:
- StockLedgerEvent rows are the source of truth and are append-only.
- WarehouseStock.current_stock / average_cost are a materialized fold of those
  events per (material_id, warehouse_id), in (occurred_at, id) order.
- Appending an event and updating its WarehouseStock row happen in the same
  DB transaction; the row is locked (FOR UPDATE) and version-checked.

Business invariants:
- Event quantities are positive canonical (consumption-unit) magnitudes.
- OUT kinds may never exceed available_stock (= current_stock - reserved_stock);
  a rejected OUT leaves the row and the event log untouched.
- PURCHASE_IN / TRANSFER_IN / PRODUCTION_IN re-weight average_cost.
- ADJUSTMENT_IN adds quantity at the current average without changing it.
- OUT kinds consume at the current average_cost and never change it.

As-of semantics:
- All "as_of" filters are inclusive: occurred_at <= as_of.
- An event dated before the key's latest event re-derives the row from a full
  fold, so incremental application always equals the canonical fold.
"""


class StockError(ValueError):
    """Raised when a stock operation references unknown or inactive records."""


class StockNotFoundError(StockError):
    pass


class InsufficientStockError(StockError):
    """Raised when an OUT movement would drive available stock negative."""

    def __init__(self, material_id: int, warehouse_id: int, requested, available):
        self.material_id = material_id
        self.warehouse_id = warehouse_id
        self.requested = Decimal(requested)
        self.available = Decimal(available)
        super().__init__(
            f"Insufficient stock for material {material_id} in warehouse {warehouse_id}. "
            f"Available: {decimal_str(self.available)}, requested: {decimal_str(self.requested)}"
        )

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "material_id": self.material_id,
            "warehouse_id": self.warehouse_id,
            "requested": decimal_str(self.requested),
            "available": decimal_str(self.available),
        }


@dataclass(frozen=True)
class StockPosition:
    """Quantity and weighted-average cost of one (material, warehouse) key."""
    quantity: Decimal = ZERO
    average_cost: Decimal = ZERO

    @property
    def value(self) -> Decimal:
        return stock_value(self.quantity, self.average_cost)

    def to_dict(self) -> dict:
        return {
            "quantity": decimal_str(self.quantity),
            "average_cost": decimal_str(self.average_cost),
            "value": decimal_str(self.value),
        }


def apply_movement(position: StockPosition, kind: str, quantity, unit_cost=None) -> StockPosition:
    """
    Pure transition of a stock position by one movement.

    No floor check here: validation happens against the materialized row
    before an event is appended, and historical folds must replay what was
    recorded.
    """
    quantity = Decimal(quantity)
    if kind in COSTED_IN_KINDS:
        return StockPosition(
            quantity=quantize(position.quantity + quantity),
            average_cost=weighted_average(position.quantity, position.average_cost, quantity, unit_cost),
        )
    if kind in STOCK_IN_KINDS:
        return StockPosition(quantize(position.quantity + quantity), position.average_cost)
    if kind in STOCK_OUT_KINDS:
        return StockPosition(quantize(position.quantity - quantity), position.average_cost)
    raise ValueError(f"unknown stock event kind {kind!r}")


def fold_stock_events(events: Iterable[StockLedgerEvent], position: StockPosition | None = None) -> StockPosition:
    """Fold events (already in canonical order) onto a starting position."""
    position = position or StockPosition()
    for ev in events:
        position = apply_movement(position, ev.kind, ev.quantity, ev.unit_cost)
    return position


def ordered_stock_events(material_id: int, warehouse_id: int, as_of: datetime | None = None, before: datetime | None = None):
    """Events of one key in canonical (occurred_at, id) order."""
    q = db.session.query(StockLedgerEvent).filter(
        StockLedgerEvent.material_id == material_id,
        StockLedgerEvent.warehouse_id == warehouse_id,
    )
    if as_of is not None:
        q = q.filter(StockLedgerEvent.occurred_at <= as_of)
    if before is not None:
        q = q.filter(StockLedgerEvent.occurred_at < before)
    return q.order_by(StockLedgerEvent.occurred_at.asc(), StockLedgerEvent.id.asc())


def _parse_occurred_at(value) -> datetime:
    try:
        occurred_dt = normalize_datetime(value)
    except ValueError:
        raise ValidationError("invalid occurred_at")
    if occurred_dt is None:
        return utcnow()
    if is_future(occurred_dt):
        raise ValidationError("occurred_at cannot be in the future")
    return occurred_dt


def _ensure_material(material_id: int, *, require_active: bool = False) -> Material:
    material = db.session.get(Material, material_id)
    if material is None:
        raise StockNotFoundError(f"Material {material_id} not found")
    if require_active and not material.is_active:
        raise StockError(f"Material {material_id} is inactive")
    return material


def _ensure_warehouse(warehouse_id: int, *, require_active: bool = False) -> Warehouse:
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise StockNotFoundError(f"Warehouse {warehouse_id} not found")
    if require_active and not warehouse.is_active:
        raise StockError(f"Warehouse {warehouse_id} is inactive")
    return warehouse


def get_stock_row(material_id: int, warehouse_id: int, *, lock: bool = False) -> WarehouseStock | None:
    query = db.session.query(WarehouseStock).filter_by(material_id=material_id, warehouse_id=warehouse_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_or_create_stock_row(material_id: int, warehouse_id: int, *, lock: bool = False) -> WarehouseStock:
    """
    Fetch the WarehouseStock row for a key, creating an empty one on first use.

    Two writers creating the same key race on uq_warehouse_stocks_material_warehouse;
    the loser's transaction fails and is rolled back by run_with_retry.
    """
    row = get_stock_row(material_id, warehouse_id, lock=lock)
    if row is not None:
        return row

    row = WarehouseStock(
        material_id=material_id,
        warehouse_id=warehouse_id,
        current_stock=ZERO,
        reserved_stock=ZERO,
        minimum_stock=ZERO,
        average_cost=ZERO,
    )
    db.session.add(row)
    db.session.flush()
    return row


def refresh_material_average_cost(material_id: int) -> Decimal:
    """
    Material.average_cost = quantity-weighted average over its warehouse rows
    holding positive stock; left unchanged when nothing is on hand.
    """
    material = db.session.get(Material, material_id)
    rows = db.session.query(WarehouseStock).filter(
        WarehouseStock.material_id == material_id,
        WarehouseStock.current_stock > 0,
    ).all()
    total_qty = sum((Decimal(r.current_stock) for r in rows), ZERO)
    if total_qty > 0 and material is not None:
        total_value = sum((Decimal(r.current_stock) * Decimal(r.average_cost) for r in rows), ZERO)
        material.average_cost = quantize(total_value / total_qty)
    return Decimal(material.average_cost) if material is not None else ZERO


def _apply_stock_event_inner(
    *,
    material_id: int,
    warehouse_id: int,
    kind: str,
    quantity,
    unit_cost=None,
    occurred_dt: datetime,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> StockLedgerEvent:
    """Core append + projection update without retry or commit.

    Called by the public wrappers and by transfer / production completion,
    which need several events inside one transaction.
    """
    if kind not in STOCK_EVENT_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(STOCK_EVENT_KINDS)}")
    quantity = quantize(require_positive(quantity, "quantity"))
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")

    row = get_or_create_stock_row(material_id, warehouse_id, lock=True)
    current = StockPosition(quantize(row.current_stock), quantize(row.average_cost))

    if kind in STOCK_OUT_KINDS:
        available = quantize(row.available_stock)
        if quantity > available:
            raise InsufficientStockError(material_id, warehouse_id, quantity, available)
        event_cost = current.average_cost
    elif kind in COSTED_IN_KINDS:
        if unit_cost is None:
            raise ValidationError(f"unit_cost is required for {kind}")
        event_cost = quantize(to_decimal(unit_cost, "unit_cost"))
        if event_cost < 0:
            raise ValidationError("unit_cost must be >= 0")
    else:
        event_cost = current.average_cost

    backdated = db.session.query(StockLedgerEvent.id).filter(
        StockLedgerEvent.material_id == material_id,
        StockLedgerEvent.warehouse_id == warehouse_id,
        StockLedgerEvent.occurred_at > occurred_dt,
    ).first() is not None

    ev = StockLedgerEvent(
        material_id=material_id,
        warehouse_id=warehouse_id,
        kind=kind,
        quantity=quantity,
        unit_cost=event_cost,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
        occurred_at=occurred_dt,
        created_by_user_id=user_id,
    )
    db.session.add(ev)
    db.session.flush()

    if backdated:
        position = fold_stock_events(ordered_stock_events(material_id, warehouse_id).all())
    else:
        position = apply_movement(current, kind, quantity, event_cost)

    row.current_stock = position.quantity
    row.average_cost = position.average_cost
    db.session.flush()

    refresh_material_average_cost(material_id)
    return ev


def apply_stock_event(
    *,
    material_id: int,
    warehouse_id: int,
    kind: str,
    quantity,
    unit_cost=None,
    occurred_at=None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
    commit: bool = True,
) -> StockLedgerEvent:
    """
    Append one stock event and update its WarehouseStock row atomically.

    Raises InsufficientStockError for an OUT beyond available stock, with no
    event written and the row unchanged.
    """
    def _op():
        _ensure_material(material_id, require_active=True)
        _ensure_warehouse(warehouse_id, require_active=True)
        occurred_dt = _parse_occurred_at(occurred_at)

        ev = _apply_stock_event_inner(
            material_id=material_id,
            warehouse_id=warehouse_id,
            kind=kind,
            quantity=quantity,
            unit_cost=unit_cost,
            occurred_dt=occurred_dt,
            reference_type=reference_type,
            reference_id=reference_id,
            note=note,
            user_id=user_id,
        )

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return ev

    return run_with_retry(_op)


def receive_purchase(
    *,
    material_id: int,
    warehouse_id: int,
    quantity,
    unit_cost,
    unit: str = UNIT_PURCHASE,
    occurred_at=None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> StockLedgerEvent:
    """
    PURCHASE_IN from an invoice line.

    quantity and unit_cost are expressed in `unit` (purchase units by default)
    and converted to the canonical consumption unit before posting.
    """
    material = _ensure_material(material_id)
    canonical_qty = to_canonical(material, require_positive(quantity, "quantity"), unit)
    canonical_cost = cost_to_canonical(material, to_decimal(unit_cost, "unit_cost"), unit)

    return apply_stock_event(
        material_id=material_id,
        warehouse_id=warehouse_id,
        kind="PURCHASE_IN",
        quantity=canonical_qty,
        unit_cost=canonical_cost,
        occurred_at=occurred_at,
        reference_type="INVOICE" if reference_id is not None else "MANUAL",
        reference_id=reference_id,
        note=note,
        user_id=user_id,
    )


def adjust_stock(
    *,
    material_id: int,
    warehouse_id: int,
    quantity_delta,
    unit: str = UNIT_CONSUMPTION,
    occurred_at=None,
    note: str | None = None,
    user_id: int | None = None,
) -> StockLedgerEvent:
    """Signed correction: positive -> ADJUSTMENT_IN, negative -> ADJUSTMENT_OUT."""
    delta = to_decimal(quantity_delta, "quantity_delta")
    if delta == 0:
        raise ValidationError("quantity_delta must be non-zero")
    material = _ensure_material(material_id)
    magnitude = to_canonical(material, abs(delta), unit)

    return apply_stock_event(
        material_id=material_id,
        warehouse_id=warehouse_id,
        kind="ADJUSTMENT_IN" if delta > 0 else "ADJUSTMENT_OUT",
        quantity=magnitude,
        occurred_at=occurred_at,
        reference_type="MANUAL",
        note=note,
        user_id=user_id,
    )


def return_to_supplier(
    *,
    material_id: int,
    warehouse_id: int,
    quantity,
    unit: str = UNIT_PURCHASE,
    occurred_at=None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> StockLedgerEvent:
    material = _ensure_material(material_id)
    return apply_stock_event(
        material_id=material_id,
        warehouse_id=warehouse_id,
        kind="RETURN_OUT",
        quantity=to_canonical(material, require_positive(quantity, "quantity"), unit),
        occurred_at=occurred_at,
        reference_type="INVOICE" if reference_id is not None else "MANUAL",
        reference_id=reference_id,
        note=note,
        user_id=user_id,
    )


def record_consumption(
    *,
    material_id: int,
    warehouse_id: int,
    quantity,
    occurred_at=None,
    reference_type: str = "SALE",
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> StockLedgerEvent:
    """Consumption outside a production run (e.g. recipe usage from a sale)."""
    return apply_stock_event(
        material_id=material_id,
        warehouse_id=warehouse_id,
        kind="PRODUCTION_OUT",
        quantity=quantity,
        occurred_at=occurred_at,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
        user_id=user_id,
    )


def reserve_stock(*, material_id: int, warehouse_id: int, quantity) -> WarehouseStock:
    """Move quantity from available to reserved; never beyond available."""
    quantity = quantize(require_positive(quantity, "quantity"))

    def _op():
        row = get_stock_row(material_id, warehouse_id, lock=True)
        available = quantize(row.available_stock) if row is not None else ZERO
        if row is None or quantity > available:
            raise InsufficientStockError(material_id, warehouse_id, quantity, available)
        row.reserved_stock = quantize(row.reserved_stock + quantity)
        db.session.commit()
        return row

    return run_with_retry(_op)


def release_reservation(*, material_id: int, warehouse_id: int, quantity) -> WarehouseStock:
    quantity = quantize(require_positive(quantity, "quantity"))

    def _op():
        row = get_stock_row(material_id, warehouse_id, lock=True)
        if row is None:
            raise StockNotFoundError(f"No stock row for material {material_id} in warehouse {warehouse_id}")
        if quantity > quantize(row.reserved_stock):
            raise ValidationError(
                f"Cannot release {decimal_str(quantity)}; only {decimal_str(row.reserved_stock)} reserved"
            )
        row.reserved_stock = quantize(row.reserved_stock - quantity)
        db.session.commit()
        return row

    return run_with_retry(_op)


def set_minimum_stock(*, material_id: int, warehouse_id: int, minimum_stock) -> WarehouseStock:
    minimum = quantize(to_decimal(minimum_stock, "minimum_stock"))
    if minimum < 0:
        raise ValidationError("minimum_stock must be >= 0")

    def _op():
        _ensure_material(material_id)
        _ensure_warehouse(warehouse_id)
        row = get_or_create_stock_row(material_id, warehouse_id, lock=True)
        row.minimum_stock = minimum
        db.session.commit()
        return row

    return run_with_retry(_op)


def reconcile_count(
    *,
    warehouse_id: int,
    counts: list,
    occurred_at=None,
    reference_id: int | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> list[dict]:
    """
    Post an approved physical stock count for one warehouse.

    Each entry is {"material_id": int, "counted_stock": number, "unit": "consumption" | "purchase"}.
    difference = counted_stock - current_stock; a positive difference posts
    ADJUSTMENT_IN, a negative one ADJUSTMENT_OUT, zero posts nothing. All
    adjustments commit together; a shortfall against available stock (the
    count lands below reserved stock) raises InsufficientStockError and
    writes nothing.
    """
    if not counts or not isinstance(counts, list):
        raise ValidationError("At least one counted material is required")

    def _op():
        _ensure_warehouse(warehouse_id, require_active=True)
        occurred_dt = _parse_occurred_at(occurred_at)

        lines = []
        seen = set()
        for idx, entry in enumerate(counts, start=1):
            if not isinstance(entry, dict) or not entry.get("material_id"):
                raise ValidationError(f"Count {idx}: material_id is required")
            material_id = entry["material_id"]
            if material_id in seen:
                raise ValidationError(f"Count {idx}: material {material_id} is counted twice")
            seen.add(material_id)

            material = _ensure_material(material_id, require_active=True)
            if entry.get("counted_stock") is None:
                raise ValidationError(f"Count {idx}: counted_stock is required")
            counted = to_canonical(material, to_decimal(entry["counted_stock"], "counted_stock"), entry.get("unit") or UNIT_CONSUMPTION)
            if counted < 0:
                raise ValidationError(f"Count {idx}: counted_stock must be >= 0")

            row = get_stock_row(material_id, warehouse_id, lock=True)
            system = quantize(row.current_stock) if row is not None else ZERO
            difference = quantize(counted - system)

            ev = None
            if difference != 0:
                ev = _apply_stock_event_inner(
                    material_id=material_id,
                    warehouse_id=warehouse_id,
                    kind="ADJUSTMENT_IN" if difference > 0 else "ADJUSTMENT_OUT",
                    quantity=abs(difference),
                    occurred_dt=occurred_dt,
                    reference_type="STOCK_COUNT",
                    reference_id=reference_id,
                    note=note or "Stock count difference",
                    user_id=user_id,
                )
            lines.append({
                "material_id": material_id,
                "system_stock": decimal_str(system),
                "counted_stock": decimal_str(counted),
                "difference": decimal_str(difference),
                "event_id": ev.id if ev is not None else None,
            })

        db.session.commit()
        return lines

    return run_with_retry(_op)


def snapshot_as_of(material_id: int, warehouse_id: int, as_of=None) -> StockPosition:
    """
    Reconstruct a key's position from zero using events with occurred_at <= as_of.

    as_of=None folds the full history (equals the materialized row when no
    drift exists).
    """
    as_of_dt = normalize_datetime(as_of)
    return fold_stock_events(ordered_stock_events(material_id, warehouse_id, as_of=as_of_dt).all())


def get_stock_summary(*, material_id: int, warehouse_id: int | None = None, as_of=None) -> dict:
    """
    Stock of a material per warehouse.

    Without as_of the materialized rows answer; with as_of each key is
    reconstructed from the ledger.
    """
    material = _ensure_material(material_id)
    try:
        as_of_dt = normalize_datetime(as_of)
    except ValueError:
        raise ValidationError("as_of must be an ISO-8601 datetime")

    q = db.session.query(WarehouseStock).filter(WarehouseStock.material_id == material_id)
    if warehouse_id is not None:
        _ensure_warehouse(warehouse_id)
        q = q.filter(WarehouseStock.warehouse_id == warehouse_id)
    rows = q.order_by(WarehouseStock.warehouse_id.asc()).all()

    warehouses = []
    total_qty = ZERO
    total_value = ZERO
    for row in rows:
        if as_of_dt is None:
            entry = row.to_dict()
            total_qty += Decimal(row.current_stock)
            total_value += stock_value(row.current_stock, row.average_cost)
        else:
            position = snapshot_as_of(material_id, row.warehouse_id, as_of_dt)
            entry = {
                "material_id": material_id,
                "warehouse_id": row.warehouse_id,
                "current_stock": decimal_str(position.quantity),
                "average_cost": decimal_str(position.average_cost),
                "stock_value": decimal_str(position.value),
            }
            total_qty += position.quantity
            total_value += position.value
        warehouses.append(entry)

    return {
        "material_id": material_id,
        "material_name": material.name,
        "unit": material.consumption_unit,
        "as_of": to_utc_z(as_of_dt) if as_of_dt else None,
        "total_stock": decimal_str(total_qty),
        "total_value": decimal_str(total_value),
        "average_cost": decimal_str(material.average_cost),
        "warehouses": warehouses,
    }


def list_stock_events(*, material_id: int, warehouse_id: int | None = None, limit: int = 200):
    _ensure_material(material_id)
    q = db.session.query(StockLedgerEvent).filter(StockLedgerEvent.material_id == material_id)
    if warehouse_id is not None:
        q = q.filter(StockLedgerEvent.warehouse_id == warehouse_id)
    return q.order_by(
        StockLedgerEvent.occurred_at.desc(),
        StockLedgerEvent.id.desc(),
    ).limit(limit).all()


def list_low_stock(*, warehouse_id: int | None = None) -> list[dict]:
    """Stock alerts: rows whose current stock is below their minimum."""
    q = db.session.query(WarehouseStock, Material, Warehouse).join(
        Material, Material.id == WarehouseStock.material_id
    ).join(
        Warehouse, Warehouse.id == WarehouseStock.warehouse_id
    ).filter(
        WarehouseStock.current_stock < WarehouseStock.minimum_stock,
        Material.is_active.is_(True),
    )
    if warehouse_id is not None:
        q = q.filter(WarehouseStock.warehouse_id == warehouse_id)

    alerts = []
    for row, material, warehouse in q.order_by(Warehouse.name.asc(), Material.name.asc()).all():
        current = Decimal(row.current_stock)
        minimum = Decimal(row.minimum_stock)
        alerts.append({
            "material_id": material.id,
            "material_name": material.name,
            "warehouse_id": warehouse.id,
            "warehouse_name": warehouse.name,
            "unit": material.consumption_unit,
            "current_stock": decimal_str(current),
            "minimum_stock": decimal_str(minimum),
            "shortage": decimal_str(minimum - current),
            # Nothing left at all is critical; below minimum is a warning
            "severity": "critical" if current <= 0 else "warning",
        })
    return alerts


def warehouse_utilization(warehouse_id: int) -> dict:
    """total canonical stock / capacity, as a percentage; None when capacity is not tracked."""
    warehouse = _ensure_warehouse(warehouse_id)
    rows = db.session.query(WarehouseStock.current_stock).filter(WarehouseStock.warehouse_id == warehouse_id).all()
    total = quantize(sum((Decimal(r.current_stock) for r in rows), ZERO))

    capacity = Decimal(warehouse.capacity) if warehouse.capacity is not None else None
    if capacity is None or capacity <= 0:
        percent = None
    else:
        percent = quantize(total / capacity * 100)

    return {
        "warehouse_id": warehouse.id,
        "warehouse_name": warehouse.name,
        "capacity": decimal_str(capacity),
        "total_stock": decimal_str(total),
        "utilization_percent": decimal_str(percent),
    }
