# backend/backoffice/routes/accounts.py
"""
Current account routes: postings, payments, statements and balance recalculation.

Amounts are returned as decimal strings. Balance sign: positive = the
account owes us, negative = we owe the account.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..models import Account, AccountLedgerEvent
from ..numbers import decimal_str
from ..validation import ModelValidationPolicy, validate_payload, ValidationError, ConflictError
from ..decorators import require_actor
from ..services import account_service, recalculation_service
from ..services.account_service import AccountError, AccountNotFoundError
from ..services.concurrency import ConcurrencyConflictError
from ..services.recalculation_service import RecalculationPartialFailureError


accounts_bp = Blueprint("accounts", __name__, url_prefix="/api/current-accounts")

ACCOUNT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"code", "name", "account_type", "credit_limit", "opening_balance"},
    required_on_create={"code", "name"},
    extra_fields={"opened_at"},
)

ACCOUNT_EVENT_POLICY = ModelValidationPolicy(
    writable_fields={"kind", "reference", "description", "detail", "occurred_at"},
    required_on_create={"kind", "amount"},
    extra_fields={"amount"},
)

PAYMENT_POLICY = ModelValidationPolicy(
    writable_fields={"description", "occurred_at"},
    required_on_create={"amount"},
    extra_fields={"amount", "payment_method", "bank_account", "payment_number"},
)


def _json_error(exc: Exception, action: str):
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, AccountNotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (AccountError, ConflictError, ConcurrencyConflictError)):
        return jsonify({"error": str(exc)}), 409
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "Internal server error"}), 500


def _query_arg(*names: str):
    for name in names:
        value = request.args.get(name)
        if value:
            return value
    return None


@accounts_bp.post("")
@require_actor
def create_account():
    """
    Create a current account.

    Request body:
    {
        "code": str,
        "name": str,
        "account_type": "SUPPLIER" | "CUSTOMER" | "BOTH" (optional),
        "credit_limit": number (optional),
        "opening_balance": number (optional, recorded as an OPENING adjustment),
        "opened_at": ISO-8601 (optional)
    }
    """
    try:
        patch = validate_payload(
            model=Account,
            payload=request.get_json(silent=True),
            policy=ACCOUNT_CREATE_POLICY,
            partial=False,
        )
        account = account_service.create_account(
            code=patch["code"],
            name=patch["name"],
            account_type=patch.get("account_type") or "SUPPLIER",
            credit_limit=patch.get("credit_limit"),
            opening_balance=patch.get("opening_balance") or 0,
            opened_at=patch.get("opened_at"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "create current account")

    return jsonify(account.to_dict()), 201


@accounts_bp.get("/<int:account_id>")
@require_actor
def get_account(account_id: int):
    try:
        account = account_service.get_account(account_id)
    except Exception as e:
        return _json_error(e, "load current account")
    return jsonify(account.to_dict()), 200


@accounts_bp.post("/<int:account_id>/deactivate")
@require_actor
def deactivate_account(account_id: int):
    try:
        account = account_service.deactivate_account(account_id)
    except Exception as e:
        return _json_error(e, "deactivate current account")
    return jsonify(account.to_dict()), 200


@accounts_bp.get("/<int:account_id>/transactions")
@require_actor
def list_transactions(account_id: int):
    limit = request.args.get("limit", default=200, type=int)
    try:
        events = account_service.list_account_events(account_id=account_id, limit=limit)
    except Exception as e:
        return _json_error(e, "list account transactions")
    return jsonify({"items": [ev.to_dict() for ev in events], "count": len(events)}), 200


@accounts_bp.post("/<int:account_id>/transactions")
@require_actor
def create_transaction(account_id: int):
    """
    Post a DEBT / CREDIT / PAYMENT / ADJUSTMENT.

    DEBT, CREDIT and PAYMENT take a positive amount; ADJUSTMENT takes a signed one.
    """
    try:
        patch = validate_payload(
            model=AccountLedgerEvent,
            payload=request.get_json(silent=True),
            policy=ACCOUNT_EVENT_POLICY,
            partial=False,
        )
        ev = account_service.record_account_event(
            account_id=account_id,
            kind=patch["kind"],
            amount=patch["amount"],
            occurred_at=patch.get("occurred_at"),
            reference=patch.get("reference"),
            description=patch.get("description"),
            detail=patch.get("detail"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "post account transaction")

    return jsonify({
        "transaction": ev.to_dict(),
        "current_balance": decimal_str(account_service.get_account_balance(account_id)),
    }), 201


@accounts_bp.post("/<int:account_id>/payments")
@require_actor
def create_payment(account_id: int):
    try:
        patch = validate_payload(
            model=AccountLedgerEvent,
            payload=request.get_json(silent=True),
            policy=PAYMENT_POLICY,
            partial=False,
        )
        ev = account_service.record_payment(
            account_id=account_id,
            amount=patch["amount"],
            payment_method=patch.get("payment_method") or "CASH",
            bank_account=patch.get("bank_account"),
            payment_number=patch.get("payment_number"),
            occurred_at=patch.get("occurred_at"),
            description=patch.get("description"),
            user_id=g.user_id,
        )
    except Exception as e:
        return _json_error(e, "record payment")

    return jsonify({
        "payment": ev.to_dict(),
        "current_balance": decimal_str(account_service.get_account_balance(account_id)),
    }), 201


@accounts_bp.get("/<int:account_id>/statement")
@require_actor
def get_statement(account_id: int):
    """
    Account statement.

    Query params:
    - start_date / startDate: first day (inclusive), optional
    - end_date / endDate: last day (inclusive, whole day), optional
    - detailed: "true" to include each operation's detail payload
    """
    detailed = (request.args.get("detailed") or "false").lower() == "true"
    try:
        statement = account_service.get_statement(
            account_id=account_id,
            start_date=_query_arg("start_date", "startDate"),
            end_date=_query_arg("end_date", "endDate"),
        )
    except Exception as e:
        return _json_error(e, "build account statement")

    return jsonify(statement.to_dict(detailed=detailed)), 200


@accounts_bp.post("/recalculate-balances")
@require_actor
def recalculate_balances():
    """
    Rebuild every account balance and warehouse stock row from the ledgers.

    Returns:
        200: all keys recalculated
        207: some keys failed (listed in failed_keys); the rest were committed
    """
    current_app.logger.info("Balance recalculation requested by user %s", g.user_id)
    try:
        result = recalculation_service.recalculate_all()
    except RecalculationPartialFailureError as e:
        return jsonify(e.to_dict()), 207
    except Exception as e:
        return _json_error(e, "recalculate balances")

    return jsonify(result.to_dict()), 200
