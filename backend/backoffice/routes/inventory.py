# backend/backoffice/routes/inventory.py
"""
Warehouse stock routes.

Every movement appends one StockLedgerEvent and updates its WarehouseStock
row in the same transaction. Quantities are accepted in either unit
("purchase" or "consumption") and stored in consumption units.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- as_of filtering is inclusive: occurred_at <= as_of.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..models import StockLedgerEvent, WarehouseStock
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
    enforce_rules_positive_quantity,
    enforce_rules_unit_cost,
)
from ..decorators import require_actor
from ..services import stock_service, recalculation_service, recipe_service
from ..services.stock_service import StockError, StockNotFoundError, InsufficientStockError
from ..services.conversion_service import InvalidConversionError
from ..services.concurrency import ConcurrencyConflictError


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

PURCHASE_POLICY = ModelValidationPolicy(
    writable_fields={"material_id", "warehouse_id", "quantity", "unit_cost", "occurred_at", "note", "reference_id"},
    required_on_create={"material_id", "warehouse_id", "quantity", "unit_cost"},
    extra_fields={"unit"},
)

ADJUST_POLICY = ModelValidationPolicy(
    writable_fields={"material_id", "warehouse_id", "occurred_at", "note"},
    required_on_create={"material_id", "warehouse_id", "quantity_delta"},
    extra_fields={"quantity_delta", "unit"},
)

RETURN_POLICY = ModelValidationPolicy(
    writable_fields={"material_id", "warehouse_id", "quantity", "occurred_at", "note", "reference_id"},
    required_on_create={"material_id", "warehouse_id", "quantity"},
    extra_fields={"unit"},
)

CONSUMPTION_POLICY = ModelValidationPolicy(
    writable_fields={"material_id", "warehouse_id", "quantity", "occurred_at", "note", "reference_type", "reference_id"},
    required_on_create={"material_id", "warehouse_id", "quantity"},
)

RESERVATION_POLICY = ModelValidationPolicy(
    writable_fields={"material_id", "warehouse_id", "reserved_stock"},
    required_on_create={"material_id", "warehouse_id", "reserved_stock"},
)

MINIMUM_POLICY = ModelValidationPolicy(
    writable_fields={"material_id", "warehouse_id", "minimum_stock"},
    required_on_create={"material_id", "warehouse_id", "minimum_stock"},
)

COUNT_POLICY = ModelValidationPolicy(
    writable_fields={"warehouse_id", "occurred_at", "note", "reference_id"},
    required_on_create={"warehouse_id", "counts"},
    extra_fields={"counts"},
)


def _json_error(exc: Exception, action: str):
    if isinstance(exc, InsufficientStockError):
        return jsonify(exc.to_dict()), 409
    if isinstance(exc, (ValidationError, InvalidConversionError)):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, StockNotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, StockError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, ConcurrencyConflictError):
        return jsonify({"error": str(exc)}), 409
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500


def _movement_response(ev: StockLedgerEvent):
    row = stock_service.get_stock_row(ev.material_id, ev.warehouse_id)
    return jsonify({"event": ev.to_dict(), "stock": row.to_dict() if row else None}), 201


@inventory_bp.post("/purchase")
@require_actor
def purchase_route():
    """
    Receive purchased stock (PURCHASE_IN).

    quantity and unit_cost are in "unit" (default "purchase").
    """
    try:
        patch = validate_payload(
            model=StockLedgerEvent,
            payload=request.get_json(silent=True),
            policy=PURCHASE_POLICY,
            partial=False,
        )
        enforce_rules_positive_quantity(patch)
        enforce_rules_unit_cost(patch)
        ev = stock_service.receive_purchase(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            quantity=patch["quantity"],
            unit_cost=patch["unit_cost"],
            unit=patch.get("unit") or "purchase",
            occurred_at=patch.get("occurred_at"),
            reference_id=patch.get("reference_id"),
            note=patch.get("note"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "receive purchase")
    return _movement_response(ev)


@inventory_bp.post("/adjust")
@require_actor
def adjust_route():
    """Signed correction; positive quantity_delta adds stock, negative removes it."""
    try:
        patch = validate_payload(
            model=StockLedgerEvent,
            payload=request.get_json(silent=True),
            policy=ADJUST_POLICY,
            partial=False,
        )
        ev = stock_service.adjust_stock(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            quantity_delta=patch["quantity_delta"],
            unit=patch.get("unit") or "consumption",
            occurred_at=patch.get("occurred_at"),
            note=patch.get("note"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "adjust stock")
    return _movement_response(ev)


@inventory_bp.post("/return")
@require_actor
def return_route():
    """Return stock to a supplier (RETURN_OUT)."""
    try:
        patch = validate_payload(
            model=StockLedgerEvent,
            payload=request.get_json(silent=True),
            policy=RETURN_POLICY,
            partial=False,
        )
        enforce_rules_positive_quantity(patch)
        ev = stock_service.return_to_supplier(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            quantity=patch["quantity"],
            unit=patch.get("unit") or "purchase",
            occurred_at=patch.get("occurred_at"),
            reference_id=patch.get("reference_id"),
            note=patch.get("note"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "return stock")
    return _movement_response(ev)


@inventory_bp.post("/consumption")
@require_actor
def consumption_route():
    """Consume stock outside a production run (PRODUCTION_OUT), in consumption units."""
    try:
        patch = validate_payload(
            model=StockLedgerEvent,
            payload=request.get_json(silent=True),
            policy=CONSUMPTION_POLICY,
            partial=False,
        )
        enforce_rules_positive_quantity(patch)
        ev = stock_service.record_consumption(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            quantity=patch["quantity"],
            occurred_at=patch.get("occurred_at"),
            reference_type=patch.get("reference_type") or "SALE",
            reference_id=patch.get("reference_id"),
            note=patch.get("note"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "record consumption")
    return _movement_response(ev)


@inventory_bp.post("/reserve")
@require_actor
def reserve_route():
    """Move quantity from available to reserved (body field: reserved_stock)."""
    try:
        patch = validate_payload(
            model=WarehouseStock,
            payload=request.get_json(silent=True),
            policy=RESERVATION_POLICY,
            partial=False,
        )
        row = stock_service.reserve_stock(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            quantity=patch["reserved_stock"],
        )
    except Exception as e:
        return _json_error(e, "reserve stock")
    return jsonify(row.to_dict()), 200


@inventory_bp.post("/release")
@require_actor
def release_route():
    try:
        patch = validate_payload(
            model=WarehouseStock,
            payload=request.get_json(silent=True),
            policy=RESERVATION_POLICY,
            partial=False,
        )
        row = stock_service.release_reservation(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            quantity=patch["reserved_stock"],
        )
    except Exception as e:
        return _json_error(e, "release reservation")
    return jsonify(row.to_dict()), 200


@inventory_bp.post("/minimum")
@require_actor
def minimum_route():
    """Set the low-stock threshold of one (material, warehouse)."""
    try:
        patch = validate_payload(
            model=WarehouseStock,
            payload=request.get_json(silent=True),
            policy=MINIMUM_POLICY,
            partial=False,
        )
        row = stock_service.set_minimum_stock(
            material_id=patch["material_id"],
            warehouse_id=patch["warehouse_id"],
            minimum_stock=patch["minimum_stock"],
        )
    except Exception as e:
        return _json_error(e, "set minimum stock")
    return jsonify(row.to_dict()), 200


@inventory_bp.post("/count")
@require_actor
def count_route():
    """
    Post an approved stock count for one warehouse.

    counts: [{"material_id", "counted_stock", "unit"}]; differences against
    current stock are booked as ADJUSTMENT_IN / ADJUSTMENT_OUT in one transaction.
    """
    try:
        patch = validate_payload(
            model=StockLedgerEvent,
            payload=request.get_json(silent=True),
            policy=COUNT_POLICY,
            partial=False,
        )
        lines = stock_service.reconcile_count(
            warehouse_id=patch["warehouse_id"],
            counts=patch["counts"],
            occurred_at=patch.get("occurred_at"),
            reference_id=patch.get("reference_id"),
            note=patch.get("note"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "post stock count")
    adjustments = sum(1 for line in lines if line["event_id"] is not None)
    return jsonify({
        "warehouse_id": patch["warehouse_id"],
        "lines": lines,
        "adjustments_count": adjustments,
    }), 201


@inventory_bp.post("/recipe-cost")
@require_actor
def recipe_cost_route():
    """Cost a recipe at current average costs. Body: ingredients, servings (default 1)."""
    payload = request.get_json(silent=True) or {}
    try:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON payload")
        recipe = recipe_service.calculate_recipe_cost(
            payload.get("ingredients"),
            servings=payload.get("servings", 1),
        )
    except Exception as e:
        return _json_error(e, "calculate recipe cost")
    return jsonify(recipe.to_dict()), 200


@inventory_bp.get("/stock/<int:material_id>")
@require_actor
def stock_summary_route(material_id: int):
    """
    Stock of a material per warehouse.

    Query params: warehouse_id (optional), as_of (optional, inclusive).
    """
    try:
        summary = stock_service.get_stock_summary(
            material_id=material_id,
            warehouse_id=request.args.get("warehouse_id", type=int),
            as_of=request.args.get("as_of"),
        )
    except Exception as e:
        return _json_error(e, "load stock summary")
    return jsonify(summary), 200


@inventory_bp.get("/stock/<int:material_id>/events")
@require_actor
def stock_events_route(material_id: int):
    limit = request.args.get("limit", default=200, type=int)
    try:
        events = stock_service.list_stock_events(
            material_id=material_id,
            warehouse_id=request.args.get("warehouse_id", type=int),
            limit=limit,
        )
    except Exception as e:
        return _json_error(e, "list stock events")
    return jsonify({"items": [ev.to_dict() for ev in events], "count": len(events)}), 200


@inventory_bp.get("/alerts")
@require_actor
def alerts_route():
    alerts = stock_service.list_low_stock(warehouse_id=request.args.get("warehouse_id", type=int))
    return jsonify({"items": alerts, "count": len(alerts)}), 200


@inventory_bp.get("/warehouses/<int:warehouse_id>/utilization")
@require_actor
def utilization_route(warehouse_id: int):
    try:
        data = stock_service.warehouse_utilization(warehouse_id)
    except Exception as e:
        return _json_error(e, "compute warehouse utilization")
    return jsonify(data), 200


@inventory_bp.get("/consistency")
@require_actor
def consistency_route():
    """Compare materialized stock rows with their ledgers; never writes."""
    report = recalculation_service.check_stock_consistency(
        material_id=request.args.get("material_id", type=int),
    )
    return jsonify(report), 200
