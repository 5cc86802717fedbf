# backend/backoffice/routes/production.py
"""
Open production API routes.

A run may be edited or deleted only while PENDING; PATCH with a status
completes (stock events appended) or cancels it.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..models import OpenProduction
from ..validation import ModelValidationPolicy, validate_payload, ValidationError, ConflictError
from ..decorators import require_actor
from ..services import production_service
from ..services.stock_service import InsufficientStockError
from ..services.conversion_service import InvalidConversionError
from ..services.concurrency import ConcurrencyConflictError
from ..time_utils import start_of_day, end_of_day_exclusive


production_bp = Blueprint("production", __name__, url_prefix="/api/production")

PRODUCTION_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "produced_material_id",
        "produced_quantity",
        "production_warehouse_id",
        "consumption_warehouse_id",
        "production_date",
        "notes",
    },
    required_on_create={
        "produced_material_id",
        "produced_quantity",
        "production_warehouse_id",
        "consumption_warehouse_id",
        "items",
    },
    extra_fields={"items"},
)

PRODUCTION_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "produced_quantity",
        "production_warehouse_id",
        "consumption_warehouse_id",
        "production_date",
        "notes",
    },
    extra_fields={"items"},
)


def _json_error(exc: Exception, action: str):
    if isinstance(exc, InsufficientStockError):
        return jsonify(exc.to_dict()), 409
    if isinstance(exc, (ValidationError, InvalidConversionError)):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, production_service.ProductionNotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (ConflictError, production_service.ProductionError, ConcurrencyConflictError)):
        return jsonify({"error": str(exc)}), 409
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500


@production_bp.post("/open")
@require_actor
def create_open_production():
    """
    Create a PENDING production run.

    Request body:
    {
        "produced_material_id": int,
        "produced_quantity": number,
        "production_warehouse_id": int,
        "consumption_warehouse_id": int,
        "items": [{"material_id": int, "quantity": number, "unit": "consumption" | "purchase"}],
        "production_date": ISO-8601 (optional),
        "notes": str (optional)
    }
    """
    try:
        patch = validate_payload(
            model=OpenProduction,
            payload=request.get_json(silent=True),
            policy=PRODUCTION_CREATE_POLICY,
            partial=False,
        )
        production = production_service.create_open_production(
            produced_material_id=patch["produced_material_id"],
            produced_quantity=patch["produced_quantity"],
            production_warehouse_id=patch["production_warehouse_id"],
            consumption_warehouse_id=patch["consumption_warehouse_id"],
            items=patch["items"],
            production_date=patch.get("production_date"),
            notes=patch.get("notes"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "create open production")

    return jsonify(production.to_dict()), 201


@production_bp.get("/open")
@require_actor
def list_open_productions():
    try:
        productions = production_service.list_open_productions(
            status=request.args.get("status"),
            date_from=start_of_day(request.args.get("date_from")),
            date_to=end_of_day_exclusive(request.args.get("date_to")),
        )
    except ValueError:
        return jsonify({"error": "date_from / date_to must be ISO-8601 dates"}), 400
    return jsonify({"items": [p.to_dict() for p in productions], "count": len(productions)}), 200


@production_bp.get("/open/<int:production_id>")
@require_actor
def get_open_production(production_id: int):
    try:
        production = production_service.get_open_production(production_id)
    except Exception as e:
        return _json_error(e, "load open production")
    return jsonify(production.to_dict()), 200


@production_bp.put("/open/<int:production_id>")
@require_actor
def update_open_production(production_id: int):
    """Edit a PENDING run; items, when given, replace the existing list."""
    try:
        patch = validate_payload(
            model=OpenProduction,
            payload=request.get_json(silent=True),
            policy=PRODUCTION_UPDATE_POLICY,
            partial=True,
        )
        production = production_service.update_open_production(production_id, patch)
    except Exception as e:
        return _json_error(e, "update open production")
    return jsonify(production.to_dict()), 200


@production_bp.patch("/open/<int:production_id>")
@require_actor
def update_production_status(production_id: int):
    """
    Request body: {"status": "COMPLETED" | "CANCELLED"}

    COMPLETED appends one PRODUCTION_IN and one PRODUCTION_OUT per item.
    """
    payload = request.get_json(silent=True) or {}
    try:
        production = production_service.update_production_status(
            production_id,
            payload.get("status"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "update open production status")
    return jsonify(production.to_dict()), 200


@production_bp.delete("/open/<int:production_id>")
@require_actor
def delete_open_production(production_id: int):
    try:
        production_service.delete_open_production(production_id)
    except Exception as e:
        return _json_error(e, "delete open production")
    return jsonify({"deleted": production_id}), 200
