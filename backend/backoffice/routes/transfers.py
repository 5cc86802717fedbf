# backend/backoffice/routes/transfers.py
"""
Warehouse transfer API routes.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..models import Transfer
from ..validation import ModelValidationPolicy, validate_payload, ValidationError
from ..decorators import require_actor
from ..services import transfer_service
from ..services.stock_service import InsufficientStockError
from ..services.conversion_service import InvalidConversionError
from ..services.concurrency import ConcurrencyConflictError


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")

TRANSFER_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"from_warehouse_id", "to_warehouse_id", "material_id", "quantity", "reason", "request_date"},
    required_on_create={"from_warehouse_id", "to_warehouse_id", "material_id", "quantity"},
    extra_fields={"unit"},
)


def _json_error(exc: Exception, action: str):
    if isinstance(exc, InsufficientStockError):
        return jsonify(exc.to_dict()), 409
    if isinstance(exc, (ValidationError, InvalidConversionError)):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, transfer_service.TransferNotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (transfer_service.TransferError, ConcurrencyConflictError)):
        return jsonify({"error": str(exc)}), 409
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500


@transfers_bp.route("", methods=["POST"])
@require_actor
def create_transfer():
    """
    Create a transfer request (PENDING).

    Request body:
    {
        "from_warehouse_id": int,
        "to_warehouse_id": int,
        "material_id": int,
        "quantity": number,
        "unit": "consumption" | "purchase" (optional),
        "reason": str (optional),
        "request_date": ISO-8601 (optional)
    }

    Returns:
        201: Transfer created
        400: Invalid request
        409: Not enough available stock at the source
    """
    try:
        patch = validate_payload(
            model=Transfer,
            payload=request.get_json(silent=True),
            policy=TRANSFER_CREATE_POLICY,
            partial=False,
        )
        transfer = transfer_service.create_transfer(
            from_warehouse_id=patch["from_warehouse_id"],
            to_warehouse_id=patch["to_warehouse_id"],
            material_id=patch["material_id"],
            quantity=patch["quantity"],
            unit=patch.get("unit") or "consumption",
            reason=patch.get("reason"),
            request_date=patch.get("request_date"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "create transfer")

    return jsonify(transfer.to_dict()), 201


@transfers_bp.route("/<int:transfer_id>", methods=["PATCH"])
@require_actor
def update_transfer(transfer_id: int):
    """
    Change a transfer's status.

    Request body: {"status": "COMPLETED" | "CANCELLED"}

    Returns:
        200: Transfer updated
        400: Invalid status
        404: Transfer not found
        409: Not PENDING, or not enough available stock at the source
    """
    payload = request.get_json(silent=True) or {}
    try:
        transfer = transfer_service.update_transfer_status(
            transfer_id,
            payload.get("status"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "update transfer")

    return jsonify(transfer.to_dict()), 200


@transfers_bp.route("/<int:transfer_id>", methods=["GET"])
@require_actor
def get_transfer(transfer_id: int):
    try:
        transfer = transfer_service.get_transfer(transfer_id)
    except Exception as e:
        return _json_error(e, "load transfer")
    return jsonify(transfer.to_dict()), 200


@transfers_bp.route("", methods=["GET"])
@require_actor
def list_transfers():
    transfers = transfer_service.list_transfers(
        warehouse_id=request.args.get("warehouse_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify({"items": [t.to_dict() for t in transfers], "count": len(transfers)}), 200
