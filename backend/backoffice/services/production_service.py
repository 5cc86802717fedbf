# backend/backoffice/services/production_service.py
"""
Open production service.

WHY: A production run turns raw materials held in one warehouse into a
produced material in another. While PENDING the run is only a plan with an
estimated cost; completion realizes it on the stock ledger:

- one PRODUCTION_OUT per item at the consumption warehouse, at that row's
  average cost at completion time
- one PRODUCTION_IN for the produced material at the production warehouse,
  unit cost = total consumed cost / produced quantity

LIFECYCLE:
1. PENDING: editable and deletable, no stock effect
2. COMPLETED: stock events appended (terminal)
3. CANCELLED: no stock effect (terminal)
"""
from __future__ import annotations
from decimal import Decimal

from backoffice.extensions import db
from backoffice.models import OpenProduction, OpenProductionItem, Material, Warehouse
from backoffice.numbers import ZERO, quantize
from backoffice.validation import ValidationError, ConflictError, require_positive
from backoffice.services.concurrency import lock_for_update, run_with_retry
from backoffice.services.conversion_service import UNIT_CONSUMPTION, to_canonical
from backoffice.services.stock_service import (
    InsufficientStockError,
    get_stock_row,
    _apply_stock_event_inner,
)
from backoffice.time_utils import utcnow, normalize_datetime


PRODUCTION_STATUS_PENDING = "PENDING"
PRODUCTION_STATUS_COMPLETED = "COMPLETED"
PRODUCTION_STATUS_CANCELLED = "CANCELLED"


class ProductionError(Exception):
    """Raised when open production operations fail."""
    pass


class ProductionNotFoundError(ProductionError):
    pass


def _unit_cost_at(material_id: int, warehouse_id: int) -> Decimal:
    """Average cost of the consumption row; the material-wide average when no row exists yet."""
    row = get_stock_row(material_id, warehouse_id)
    if row is not None and Decimal(row.current_stock) > 0:
        return quantize(row.average_cost)
    material = db.session.get(Material, material_id)
    return quantize(material.average_cost) if material is not None else ZERO


def _normalize_items(items, consumption_warehouse_id: int, produced_material_id: int) -> list[dict]:
    """
    Validate the item list and convert each quantity to canonical units.

    Each item: {"material_id": int, "quantity": number, "unit": "consumption" | "purchase"}.
    """
    if not items or not isinstance(items, list):
        raise ValidationError("At least one item is required")

    normalized = []
    for idx, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Item {idx} must be an object")
        material_id = item.get("material_id")
        if not material_id:
            raise ValidationError(f"Item {idx}: material_id is required")
        if material_id == produced_material_id:
            raise ValidationError(f"Item {idx}: the produced material cannot be consumed by its own run")

        material = db.session.get(Material, material_id)
        if material is None:
            raise ValidationError(f"Material {material_id} not found")

        quantity = require_positive(item.get("quantity"), f"items[{idx}].quantity")
        canonical_qty = to_canonical(material, quantity, item.get("unit") or UNIT_CONSUMPTION)

        row = get_stock_row(material_id, consumption_warehouse_id)
        available = quantize(row.available_stock) if row is not None else ZERO
        if canonical_qty > available:
            raise InsufficientStockError(material_id, consumption_warehouse_id, canonical_qty, available)

        unit_cost = _unit_cost_at(material_id, consumption_warehouse_id)
        normalized.append({
            "material_id": material_id,
            "quantity": canonical_qty,
            "unit_cost": unit_cost,
            "total_cost": quantize(canonical_qty * unit_cost),
        })
    return normalized


def _ensure_warehouses(*warehouse_ids: int) -> None:
    for warehouse_id in warehouse_ids:
        if not warehouse_id:
            raise ValidationError("production_warehouse_id and consumption_warehouse_id are required")
        warehouse = db.session.get(Warehouse, warehouse_id)
        if warehouse is None or not warehouse.is_active:
            raise ValidationError(f"Warehouse {warehouse_id} not found")


def _replace_items(production: OpenProduction, normalized: list[dict]) -> None:
    production.items.clear()
    total = ZERO
    for item in normalized:
        production.items.append(OpenProductionItem(**item))
        total += item["total_cost"]
    production.total_cost = quantize(total)


def create_open_production(
    *,
    produced_material_id: int,
    produced_quantity,
    production_warehouse_id: int,
    consumption_warehouse_id: int,
    items: list,
    production_date=None,
    notes: str | None = None,
    user_id: int | None = None,
) -> OpenProduction:
    """
    Create a PENDING production run with an estimated total cost.

    Raises:
        ValidationError: missing fields, non-positive quantities, empty items, unknown material or warehouse
        InsufficientStockError: an item exceeds available stock at the consumption warehouse
    """
    def _op():
        if not produced_material_id:
            raise ValidationError("produced_material_id is required")
        produced = db.session.get(Material, produced_material_id)
        if produced is None:
            raise ValidationError(f"Material {produced_material_id} not found")
        quantity = quantize(require_positive(produced_quantity, "produced_quantity"))
        _ensure_warehouses(production_warehouse_id, consumption_warehouse_id)

        try:
            production_dt = normalize_datetime(production_date) or utcnow()
        except ValueError:
            raise ValidationError("production_date must be an ISO-8601 datetime")

        normalized = _normalize_items(items, consumption_warehouse_id, produced_material_id)

        production = OpenProduction(
            produced_material_id=produced_material_id,
            produced_quantity=quantity,
            production_warehouse_id=production_warehouse_id,
            consumption_warehouse_id=consumption_warehouse_id,
            status=PRODUCTION_STATUS_PENDING,
            production_date=production_dt,
            notes=notes,
            created_by_user_id=user_id,
        )
        db.session.add(production)
        _replace_items(production, normalized)

        db.session.commit()
        return production

    return run_with_retry(_op)


def _lock_production(production_id: int) -> OpenProduction:
    production = lock_for_update(db.session.query(OpenProduction).filter_by(id=production_id)).first()
    if not production:
        raise ProductionNotFoundError(f"Open production {production_id} not found")
    return production


def _require_pending(production: OpenProduction, action: str) -> None:
    if production.status != PRODUCTION_STATUS_PENDING:
        raise ConflictError(f"Cannot {action} a {production.status} production")


def update_open_production(production_id: int, patch: dict) -> OpenProduction:
    """
    Edit a PENDING run. Accepted keys: produced_quantity, production_date,
    notes, items, production_warehouse_id, consumption_warehouse_id.
    Item costs are re-estimated whenever items or the consumption warehouse change.
    """
    allowed = {
        "produced_quantity",
        "production_date",
        "notes",
        "items",
        "production_warehouse_id",
        "consumption_warehouse_id",
    }
    unknown = sorted(set(patch or {}) - allowed)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    def _op():
        production = _lock_production(production_id)
        _require_pending(production, "edit")

        if "produced_quantity" in patch:
            production.produced_quantity = quantize(require_positive(patch["produced_quantity"], "produced_quantity"))
        if "production_date" in patch:
            try:
                production.production_date = normalize_datetime(patch["production_date"]) or production.production_date
            except ValueError:
                raise ValidationError("production_date must be an ISO-8601 datetime")
        if "notes" in patch:
            production.notes = patch["notes"]
        if "production_warehouse_id" in patch or "consumption_warehouse_id" in patch:
            production_wh = patch.get("production_warehouse_id", production.production_warehouse_id)
            consumption_wh = patch.get("consumption_warehouse_id", production.consumption_warehouse_id)
            _ensure_warehouses(production_wh, consumption_wh)
            production.production_warehouse_id = production_wh
            production.consumption_warehouse_id = consumption_wh

        if "items" in patch or "consumption_warehouse_id" in patch:
            items = patch.get("items")
            if items is None:
                items = [
                    {"material_id": item.material_id, "quantity": item.quantity}
                    for item in production.items
                ]
            normalized = _normalize_items(items, production.consumption_warehouse_id, production.produced_material_id)
            _replace_items(production, normalized)

        db.session.commit()
        return production

    return run_with_retry(_op)


def delete_open_production(production_id: int) -> None:
    def _op():
        production = _lock_production(production_id)
        _require_pending(production, "delete")
        db.session.delete(production)
        db.session.commit()

    run_with_retry(_op)


def complete_open_production(production_id: int, user_id: int | None = None) -> OpenProduction:
    """
    Realize a PENDING run on the stock ledger.

    All PRODUCTION_OUT events, the PRODUCTION_IN event and the status change
    commit together. Any shortfall raises InsufficientStockError and writes nothing.
    """
    def _op():
        production = _lock_production(production_id)
        _require_pending(production, "complete")

        total = ZERO
        for item in production.items:
            out_event = _apply_stock_event_inner(
                material_id=item.material_id,
                warehouse_id=production.consumption_warehouse_id,
                kind="PRODUCTION_OUT",
                quantity=item.quantity,
                occurred_dt=production.production_date,
                reference_type="PRODUCTION",
                reference_id=production.id,
                note=f"Open production {production.id}",
                user_id=user_id,
            )
            item.unit_cost = out_event.unit_cost
            item.total_cost = quantize(Decimal(item.quantity) * Decimal(out_event.unit_cost))
            total += item.total_cost

        total = quantize(total)
        produced_qty = Decimal(production.produced_quantity)
        _apply_stock_event_inner(
            material_id=production.produced_material_id,
            warehouse_id=production.production_warehouse_id,
            kind="PRODUCTION_IN",
            quantity=produced_qty,
            unit_cost=quantize(total / produced_qty),
            occurred_dt=production.production_date,
            reference_type="PRODUCTION",
            reference_id=production.id,
            note=f"Open production {production.id}",
            user_id=user_id,
        )

        production.total_cost = total
        production.status = PRODUCTION_STATUS_COMPLETED
        production.completed_at = utcnow()

        db.session.commit()
        return production

    return run_with_retry(_op)


def cancel_open_production(production_id: int) -> OpenProduction:
    def _op():
        production = _lock_production(production_id)
        _require_pending(production, "cancel")
        production.status = PRODUCTION_STATUS_CANCELLED
        db.session.commit()
        return production

    return run_with_retry(_op)


def update_production_status(production_id: int, status: str, user_id: int | None = None) -> OpenProduction:
    status = (status or "").upper()
    if status == PRODUCTION_STATUS_COMPLETED:
        return complete_open_production(production_id, user_id=user_id)
    if status == PRODUCTION_STATUS_CANCELLED:
        return cancel_open_production(production_id)
    raise ValidationError("status must be COMPLETED or CANCELLED")


def get_open_production(production_id: int) -> OpenProduction:
    production = db.session.get(OpenProduction, production_id)
    if not production:
        raise ProductionNotFoundError(f"Open production {production_id} not found")
    return production


def list_open_productions(*, status: str | None = None, date_from=None, date_to=None, limit: int = 200):
    q = db.session.query(OpenProduction)
    if status:
        q = q.filter(OpenProduction.status == status.upper())
    if date_from is not None:
        q = q.filter(OpenProduction.production_date >= date_from)
    if date_to is not None:
        q = q.filter(OpenProduction.production_date < date_to)
    return q.order_by(OpenProduction.production_date.desc(), OpenProduction.id.desc()).limit(limit).all()
