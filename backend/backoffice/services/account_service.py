# Overview: Service-layer operations for current accounts; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from ..extensions import db
from ..models import Account, AccountLedgerEvent, ACCOUNT_TYPES, ACCOUNT_EVENT_KINDS
from ..numbers import ZERO, quantize, decimal_str
from ..validation import ValidationError, to_decimal, require_positive
from backoffice.time_utils import (
    utcnow,
    normalize_datetime,
    is_future,
    start_of_day,
    end_of_day_exclusive,
    to_utc_z,
)
from .concurrency import lock_for_update, run_with_retry
"""
Current Account Invariants (authoritative)

- AccountLedgerEvent rows are append-only; Account.current_balance is their
  materialized sum, updated in the same DB transaction as each append.
- Sign convention: positive balance = the account owes us ("debt"),
  negative = we owe the account ("credit").
    DEBT        +amount
    CREDIT      -amount
    PAYMENT     -amount
    ADJUSTMENT  signed as given
- There is no floor: a negative balance is a legitimate business state.
- Canonical order is (occurred_at, id); ties keep insertion order.
- Statement windows are [start day 00:00, end day + 1 day).
"""

OPENING_REFERENCE = "OPENING"


class AccountError(ValueError):
    """Raised when a current-account operation fails."""


class AccountNotFoundError(AccountError):
    pass


def signed_amount_for(kind: str, amount) -> Decimal:
    """
    Turn caller input into the stored signed amount.

    DEBT / CREDIT / PAYMENT take a positive magnitude; ADJUSTMENT takes a
    non-zero signed value.
    """
    if kind not in ACCOUNT_EVENT_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(ACCOUNT_EVENT_KINDS)}")
    if kind == "ADJUSTMENT":
        value = quantize(to_decimal(amount, "amount"))
        if value == 0:
            raise ValidationError("amount must be non-zero for ADJUSTMENT")
        return value
    value = quantize(require_positive(amount, "amount"))
    if kind == "DEBT":
        return value
    return -value


def fold_account_events(events: Iterable[AccountLedgerEvent], opening: Decimal = ZERO) -> Decimal:
    balance = Decimal(opening)
    for ev in events:
        balance += Decimal(ev.signed_amount)
    return quantize(balance)


def ordered_account_events(account_id: int):
    return db.session.query(AccountLedgerEvent).filter(
        AccountLedgerEvent.account_id == account_id
    ).order_by(AccountLedgerEvent.occurred_at.asc(), AccountLedgerEvent.id.asc())


def _ensure_account(account_id: int, *, lock: bool = False) -> Account:
    query = db.session.query(Account).filter_by(id=account_id)
    if lock:
        query = lock_for_update(query)
    account = query.first()
    if account is None:
        raise AccountNotFoundError(f"Current account {account_id} not found")
    return account


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


def _record_account_event_inner(
    *,
    account: Account,
    kind: str,
    signed_amount: Decimal,
    occurred_dt: datetime,
    reference: str | None = None,
    description: str | None = None,
    detail: dict | None = None,
    user_id: int | None = None,
) -> AccountLedgerEvent:
    """Append + projection update without locking, retry or commit."""
    ev = AccountLedgerEvent(
        account_id=account.id,
        kind=kind,
        signed_amount=signed_amount,
        reference=reference,
        description=description,
        detail=detail,
        occurred_at=occurred_dt,
        created_by_user_id=user_id,
    )
    db.session.add(ev)
    account.current_balance = quantize(Decimal(account.current_balance or 0) + signed_amount)
    db.session.flush()
    return ev


def create_account(
    *,
    code: str,
    name: str,
    account_type: str = "SUPPLIER",
    credit_limit=None,
    opening_balance=0,
    opened_at=None,
    user_id: int | None = None,
) -> Account:
    """
    Create a current account; a non-zero opening balance is recorded as an
    OPENING adjustment so the ledger alone explains current_balance.
    """
    if not code or not str(code).strip():
        raise ValidationError("code is required")
    if not name or not str(name).strip():
        raise ValidationError("name is required")
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(f"account_type must be one of {', '.join(ACCOUNT_TYPES)}")
    opening = quantize(to_decimal(opening_balance or 0, "opening_balance"))
    limit = quantize(to_decimal(credit_limit, "credit_limit")) if credit_limit is not None else None

    def _op():
        if db.session.query(Account.id).filter_by(code=code.strip()).first() is not None:
            raise AccountError(f"Current account code {code!r} already exists")

        account = Account(
            code=code.strip(),
            name=name.strip(),
            account_type=account_type,
            credit_limit=limit,
            opening_balance=opening,
            current_balance=ZERO,
        )
        db.session.add(account)
        db.session.flush()

        if opening != 0:
            _record_account_event_inner(
                account=account,
                kind="ADJUSTMENT",
                signed_amount=opening,
                occurred_dt=_parse_occurred_at(opened_at),
                reference=OPENING_REFERENCE,
                description="Opening balance",
                user_id=user_id,
            )

        db.session.commit()
        return account

    return run_with_retry(_op)


def deactivate_account(account_id: int) -> Account:
    """Accounts with ledger history are never deleted, only deactivated."""
    def _op():
        account = _ensure_account(account_id, lock=True)
        account.is_active = False
        db.session.commit()
        return account

    return run_with_retry(_op)


def record_account_event(
    *,
    account_id: int,
    kind: str,
    amount,
    occurred_at=None,
    reference: str | None = None,
    description: str | None = None,
    detail: dict | None = None,
    user_id: int | None = None,
    commit: bool = True,
) -> AccountLedgerEvent:
    """
    Append a DEBT / CREDIT / PAYMENT / ADJUSTMENT event and move the balance.

    The account row is locked and version-checked so concurrent postings to
    the same account cannot lose an update.
    """
    signed = signed_amount_for(kind, amount)
    if detail is not None and not isinstance(detail, dict):
        raise ValidationError("detail must be an object")

    def _op():
        account = _ensure_account(account_id, lock=True)
        if not account.is_active:
            raise AccountError(f"Current account {account_id} is inactive")

        ev = _record_account_event_inner(
            account=account,
            kind=kind,
            signed_amount=signed,
            occurred_dt=_parse_occurred_at(occurred_at),
            reference=reference,
            description=description,
            detail=detail,
            user_id=user_id,
        )

        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return ev

    return run_with_retry(_op)


def record_payment(
    *,
    account_id: int,
    amount,
    payment_method: str = "CASH",
    bank_account: str | None = None,
    payment_number: str | None = None,
    occurred_at=None,
    description: str | None = None,
    user_id: int | None = None,
) -> AccountLedgerEvent:
    detail = {"payment_method": payment_method}
    if bank_account:
        detail["bank_account"] = bank_account
    return record_account_event(
        account_id=account_id,
        kind="PAYMENT",
        amount=amount,
        occurred_at=occurred_at,
        reference=payment_number,
        description=description or (f"Payment {payment_number}" if payment_number else "Payment"),
        detail=detail,
        user_id=user_id,
    )


def get_account(account_id: int) -> Account:
    return _ensure_account(account_id)


def get_account_balance(account_id: int) -> Decimal:
    return quantize(_ensure_account(account_id).current_balance)


def list_account_events(*, account_id: int, limit: int = 200):
    _ensure_account(account_id)
    return db.session.query(AccountLedgerEvent).filter(
        AccountLedgerEvent.account_id == account_id
    ).order_by(
        AccountLedgerEvent.occurred_at.desc(),
        AccountLedgerEvent.id.desc(),
    ).limit(limit).all()


@dataclass
class StatementLine:
    event: AccountLedgerEvent
    balance: Decimal

    def to_dict(self, detailed: bool) -> dict:
        ev = self.event
        amount = Decimal(ev.signed_amount)
        data = {
            "id": ev.id,
            "date": to_utc_z(ev.occurred_at),
            "kind": ev.kind,
            "amount": decimal_str(amount),
            "debit": decimal_str(amount if amount > 0 else ZERO),
            "credit": decimal_str(-amount if amount < 0 else ZERO),
            "description": ev.description,
            "reference": ev.reference,
            "balance": decimal_str(self.balance),
        }
        if detailed:
            data["details"] = ev.detail
        return data


@dataclass
class Statement:
    account: Account
    start: datetime | None
    end: datetime | None
    opening_balance: Decimal
    lines: list[StatementLine] = field(default_factory=list)
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO
    closing_balance: Decimal = ZERO

    @property
    def transaction_count(self) -> int:
        return len(self.lines)

    def to_dict(self, detailed: bool = False) -> dict:
        return {
            "account": {
                "id": self.account.id,
                "code": self.account.code,
                "name": self.account.name,
                "account_type": self.account.account_type,
            },
            "period": {
                "start_date": to_utc_z(self.start),
                "end_date": to_utc_z(self.end),
            },
            "summary": {
                "opening_balance": decimal_str(self.opening_balance),
                "closing_balance": decimal_str(self.closing_balance),
                "total_debit": decimal_str(self.total_debit),
                "total_credit": decimal_str(self.total_credit),
                "transaction_count": self.transaction_count,
            },
            "operations": [line.to_dict(detailed) for line in self.lines],
            "detailed": detailed,
        }


def get_statement(*, account_id: int, start_date=None, end_date=None) -> Statement:
    """
    Statement for [start_date, end_date] (both days inclusive).

    opening = every event before the window; each operation carries the
    running balance; closing = opening + sum of amounts in the window.
    Either bound may be omitted.
    """
    account = _ensure_account(account_id)
    try:
        start_dt = start_of_day(start_date)
        end_exclusive = end_of_day_exclusive(end_date)
    except ValueError:
        raise ValidationError("start_date / end_date must be ISO-8601 dates")
    if start_dt is not None and end_exclusive is not None and end_exclusive <= start_dt:
        raise ValidationError("end_date must not be before start_date")

    opening = ZERO
    if start_dt is not None:
        before = ordered_account_events(account_id).filter(AccountLedgerEvent.occurred_at < start_dt)
        opening = fold_account_events(before.all())

    q = ordered_account_events(account_id)
    if start_dt is not None:
        q = q.filter(AccountLedgerEvent.occurred_at >= start_dt)
    if end_exclusive is not None:
        q = q.filter(AccountLedgerEvent.occurred_at < end_exclusive)

    statement = Statement(
        account=account,
        start=start_dt,
        end=normalize_datetime(end_date),
        opening_balance=opening,
    )
    running = opening
    for ev in q.all():
        amount = Decimal(ev.signed_amount)
        running = quantize(running + amount)
        if amount > 0:
            statement.total_debit += amount
        else:
            statement.total_credit += -amount
        statement.lines.append(StatementLine(event=ev, balance=running))

    statement.total_debit = quantize(statement.total_debit)
    statement.total_credit = quantize(statement.total_credit)
    statement.closing_balance = running
    return statement
