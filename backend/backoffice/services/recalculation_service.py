# Overview: Full re-derivation of materialized balances and stock from the ledgers.

# backend/backoffice/services/recalculation_service.py
"""
Recalculation (drift repair).

Account.current_balance and WarehouseStock.current_stock / average_cost are
projections. This module rebuilds them from the append-only event tables:

- each account and each (material, warehouse) key is refolded from zero in
  canonical (occurred_at, id) order and overwritten
- every key runs in its own short transaction under a row lock, so a failure
  leaves already-committed keys corrected
- keys are walked in key order, RECALC_CHUNK_SIZE at a time; a stock pair with
  ledger events but no WarehouseStock row gets its row rebuilt
- events are only read, never created, changed or reordered

Running it twice in a row yields identical projections.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy import and_, or_, select, union

from ..extensions import db
from ..models import Account, StockLedgerEvent, WarehouseStock
from ..numbers import ZERO, quantize, decimal_str
from .account_service import AccountNotFoundError, fold_account_events, ordered_account_events
from .concurrency import lock_for_update, run_with_retry
from .stock_service import (
    StockNotFoundError,
    fold_stock_events,
    get_or_create_stock_row,
    get_stock_row,
    ordered_stock_events,
    refresh_material_average_cost,
)


DEFAULT_CHUNK_SIZE = 200


@dataclass
class RecalculationResult:
    updated_accounts: int = 0
    total_transactions_processed: int = 0
    total_payments_processed: int = 0
    corrected_accounts: int = 0
    updated_stocks: int = 0
    total_stock_events_processed: int = 0
    corrected_stocks: int = 0
    failed_keys: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_keys

    def to_dict(self) -> dict:
        return {
            "updated_accounts": self.updated_accounts,
            "total_transactions_processed": self.total_transactions_processed,
            "total_payments_processed": self.total_payments_processed,
            "corrected_accounts": self.corrected_accounts,
            "updated_stocks": self.updated_stocks,
            "total_stock_events_processed": self.total_stock_events_processed,
            "corrected_stocks": self.corrected_stocks,
            "failed_keys": list(self.failed_keys),
        }


class RecalculationPartialFailureError(Exception):
    """Some keys could not be recalculated; the rest were committed."""

    def __init__(self, result: RecalculationResult):
        self.result = result
        super().__init__(f"Recalculation failed for {len(result.failed_keys)} key(s)")

    def to_dict(self) -> dict:
        data = self.result.to_dict()
        data["error"] = str(self)
        return data


@dataclass(frozen=True)
class AccountRecalc:
    account_id: int
    balance: Decimal
    changed: bool
    transactions: int
    payments: int


@dataclass(frozen=True)
class StockRecalc:
    material_id: int
    warehouse_id: int
    quantity: Decimal
    average_cost: Decimal
    changed: bool
    events: int


def _chunk_size() -> int:
    try:
        size = int(current_app.config.get("RECALC_CHUNK_SIZE", DEFAULT_CHUNK_SIZE))
    except RuntimeError:
        size = DEFAULT_CHUNK_SIZE
    return max(size, 1)


def _iter_ids(column, chunk_size: int):
    """Keyset pagination over a primary key column."""
    last_id = 0
    while True:
        ids = [
            row[0]
            for row in db.session.query(column).filter(column > last_id).order_by(column.asc()).limit(chunk_size).all()
        ]
        if not ids:
            return
        yield from ids
        last_id = ids[-1]


def recalculate_account(account_id: int) -> AccountRecalc:
    """Refold one account's events and overwrite current_balance (one transaction)."""
    def _op():
        account = lock_for_update(db.session.query(Account).filter_by(id=account_id)).first()
        if account is None:
            raise AccountNotFoundError(f"Current account {account_id} not found")

        events = ordered_account_events(account_id).all()
        balance = fold_account_events(events)
        changed = quantize(account.current_balance or 0) != balance
        if changed:
            account.current_balance = balance
        db.session.commit()

        return AccountRecalc(
            account_id=account_id,
            balance=balance,
            changed=changed,
            transactions=len(events),
            payments=sum(1 for ev in events if ev.kind == "PAYMENT"),
        )

    return run_with_retry(_op)


def recalculate_stock(material_id: int, warehouse_id: int) -> StockRecalc:
    """
    Refold one (material, warehouse) key and overwrite its WarehouseStock row.

    A key with ledger events but no row gets its row rebuilt; a key with
    neither raises StockNotFoundError.
    """
    def _op():
        events = ordered_stock_events(material_id, warehouse_id).all()
        row = get_stock_row(material_id, warehouse_id, lock=True)
        missing = row is None
        if missing:
            if not events:
                raise StockNotFoundError(f"No stock row for material {material_id} in warehouse {warehouse_id}")
            current_app.logger.warning(
                "Stock row missing for material %s in warehouse %s; rebuilding from %s event(s)",
                material_id, warehouse_id, len(events),
            )
            row = get_or_create_stock_row(material_id, warehouse_id, lock=True)

        position = fold_stock_events(events)

        changed = missing or (
            quantize(row.current_stock or 0) != position.quantity
            or quantize(row.average_cost or 0) != position.average_cost
        )
        if changed:
            row.current_stock = position.quantity
            row.average_cost = position.average_cost

        reserved = quantize(row.reserved_stock or 0)
        ceiling = max(position.quantity, ZERO)
        if reserved > ceiling:
            current_app.logger.warning(
                "Reserved stock %s exceeds recalculated stock %s for material %s in warehouse %s; capping",
                decimal_str(reserved), decimal_str(position.quantity), material_id, warehouse_id,
            )
            row.reserved_stock = ceiling
            changed = True

        db.session.flush()
        refresh_material_average_cost(material_id)
        db.session.commit()

        return StockRecalc(
            material_id=material_id,
            warehouse_id=warehouse_id,
            quantity=position.quantity,
            average_cost=position.average_cost,
            changed=changed,
            events=len(events),
        )

    return run_with_retry(_op)


def recalculate_accounts(result: RecalculationResult, chunk_size: int) -> None:
    for account_id in _iter_ids(Account.id, chunk_size):
        try:
            outcome = recalculate_account(account_id)
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("Failed to recalculate account %s", account_id)
            result.failed_keys.append({"type": "account", "account_id": account_id, "error": str(e)})
            continue

        result.updated_accounts += 1
        result.total_transactions_processed += outcome.transactions
        result.total_payments_processed += outcome.payments
        if outcome.changed:
            result.corrected_accounts += 1
            current_app.logger.info(
                "Account %s balance corrected to %s", account_id, decimal_str(outcome.balance)
            )


def _stock_keys(material_id: int | None = None):
    """Distinct (material_id, warehouse_id) pairs that have a stock row or ledger events."""
    rows = select(WarehouseStock.material_id, WarehouseStock.warehouse_id)
    events = select(StockLedgerEvent.material_id, StockLedgerEvent.warehouse_id)
    if material_id is not None:
        rows = rows.where(WarehouseStock.material_id == material_id)
        events = events.where(StockLedgerEvent.material_id == material_id)
    return union(rows, events).subquery()


def _iter_stock_keys(chunk_size: int):
    """Keyset pagination over (material_id, warehouse_id) pairs."""
    keys = _stock_keys()
    last = None
    while True:
        stmt = select(keys.c.material_id, keys.c.warehouse_id)
        if last is not None:
            stmt = stmt.where(or_(
                keys.c.material_id > last[0],
                and_(keys.c.material_id == last[0], keys.c.warehouse_id > last[1]),
            ))
        stmt = stmt.order_by(keys.c.material_id.asc(), keys.c.warehouse_id.asc()).limit(chunk_size)
        page = [tuple(row) for row in db.session.execute(stmt).all()]
        if not page:
            return
        yield from page
        last = page[-1]


def recalculate_stocks(result: RecalculationResult, chunk_size: int) -> None:
    for material_id, warehouse_id in _iter_stock_keys(chunk_size):
        try:
            outcome = recalculate_stock(material_id, warehouse_id)
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to recalculate stock for material %s in warehouse %s", material_id, warehouse_id
            )
            result.failed_keys.append({
                "type": "stock",
                "material_id": material_id,
                "warehouse_id": warehouse_id,
                "error": str(e),
            })
            continue

        result.updated_stocks += 1
        result.total_stock_events_processed += outcome.events
        if outcome.changed:
            result.corrected_stocks += 1
            current_app.logger.info(
                "Stock for material %s in warehouse %s corrected to %s @ %s",
                material_id, warehouse_id, decimal_str(outcome.quantity), decimal_str(outcome.average_cost),
            )


def recalculate_all(*, include_accounts: bool = True, include_stock: bool = True, raise_on_failure: bool = True) -> RecalculationResult:
    """
    Rebuild every account balance and every stock row from the ledgers.

    Raises RecalculationPartialFailureError (carrying the result) when any key
    failed and raise_on_failure is set.
    """
    chunk_size = _chunk_size()
    result = RecalculationResult()
    current_app.logger.info("Starting recalculation (chunk size %s)", chunk_size)

    if include_accounts:
        recalculate_accounts(result, chunk_size)
    if include_stock:
        recalculate_stocks(result, chunk_size)

    current_app.logger.info(
        "Recalculation finished: %s accounts (%s corrected), %s stock rows (%s corrected), %s failed",
        result.updated_accounts, result.corrected_accounts,
        result.updated_stocks, result.corrected_stocks, len(result.failed_keys),
    )

    if result.failed_keys and raise_on_failure:
        raise RecalculationPartialFailureError(result)
    return result


def check_stock_consistency(*, material_id: int | None = None) -> dict:
    """
    Compare each stock key with the fold of its events without writing.

    Keys come from WarehouseStock rows and from the ledger, so a pair whose
    row is missing is reported with missing_row set. Returns a summary plus
    one entry per inconsistent key.
    """
    keys = _stock_keys(material_id)
    stmt = select(keys.c.material_id, keys.c.warehouse_id).order_by(
        keys.c.material_id.asc(), keys.c.warehouse_id.asc()
    )

    checked = 0
    issues = []
    for key_material_id, warehouse_id in db.session.execute(stmt).all():
        checked += 1
        position = fold_stock_events(ordered_stock_events(key_material_id, warehouse_id).all())
        row = get_stock_row(key_material_id, warehouse_id)
        stored_qty = quantize(row.current_stock or 0) if row is not None else ZERO
        stored_cost = quantize(row.average_cost or 0) if row is not None else ZERO
        if row is not None and stored_qty == position.quantity and stored_cost == position.average_cost:
            continue
        issues.append({
            "material_id": key_material_id,
            "warehouse_id": warehouse_id,
            "missing_row": row is None,
            "stored_stock": decimal_str(stored_qty),
            "ledger_stock": decimal_str(position.quantity),
            "stock_difference": decimal_str(stored_qty - position.quantity),
            "stored_average_cost": decimal_str(stored_cost),
            "ledger_average_cost": decimal_str(position.average_cost),
        })

    return {
        "checked": checked,
        "inconsistent": len(issues),
        "is_consistent": not issues,
        "issues": issues,
    }


def check_account_consistency() -> dict:
    """Compare each Account.current_balance with the fold of its events without writing."""
    checked = 0
    issues = []
    for account in db.session.query(Account).order_by(Account.id.asc()).all():
        checked += 1
        balance = fold_account_events(ordered_account_events(account.id).all())
        stored = quantize(account.current_balance or 0)
        if stored != balance:
            issues.append({
                "account_id": account.id,
                "code": account.code,
                "stored_balance": decimal_str(stored),
                "ledger_balance": decimal_str(balance),
                "difference": decimal_str(stored - balance),
            })
    return {
        "checked": checked,
        "inconsistent": len(issues),
        "is_consistent": not issues,
        "issues": issues,
    }
