from __future__ import annotations

from ..extensions import db
from ..numbers import DECIMAL_PRECISION, DECIMAL_SCALE, decimal_str
from backoffice.time_utils import to_utc_z


ACCOUNT_TYPES = ("SUPPLIER", "CUSTOMER", "BOTH")

# Signed-amount conventions for current-account events.
# DEBT raises what the account owes; CREDIT and PAYMENT lower it; ADJUSTMENT carries its own sign.
ACCOUNT_EVENT_KINDS = ("DEBT", "CREDIT", "PAYMENT", "ADJUSTMENT")


class Account(db.Model):
    """
    Current account (supplier / customer).

    current_balance is a materialized projection of AccountLedgerEvent rows:
    positive = owed by the account ("debt"), negative = owed to it ("credit").
    Only account_service and recalculation_service write it.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.Index("ix_accounts_type_active", "account_type", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    account_type = db.Column(db.String(16), nullable=False, default="SUPPLIER")

    credit_limit = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=True)
    # Informational; the opening amount itself lives in the ledger as an OPENING adjustment
    opening_balance = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    current_balance = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Account id={self.id} code={self.code!r} balance={self.current_balance}>"

    def to_dict(self) -> dict:
        events = db.session.query(AccountLedgerEvent.kind, db.func.count(AccountLedgerEvent.id)).filter(
            AccountLedgerEvent.account_id == self.id
        ).group_by(AccountLedgerEvent.kind).all()
        counts = {kind: count for kind, count in events}
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "account_type": self.account_type,
            "credit_limit": decimal_str(self.credit_limit),
            "opening_balance": decimal_str(self.opening_balance),
            "current_balance": decimal_str(self.current_balance),
            "is_active": self.is_active,
            "transaction_count": sum(counts.values()),
            "payment_count": counts.get("PAYMENT", 0),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class AccountLedgerEvent(db.Model):
    """
    Append-only current-account event. Never updated or deleted;
    corrections are new ADJUSTMENT rows. Canonical order is (occurred_at, id).
    """
    __tablename__ = "account_ledger_events"
    __table_args__ = (
        db.Index("ix_account_events_account_occurred", "account_id", "occurred_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)
    signed_amount = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False)

    # Invoice / payment number, or OPENING for the opening balance
    reference = db.Column(db.String(64), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)
    # Invoice lines, payment method, bank account ... (only returned on detailed statements)
    detail = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, nullable=True)

    account = db.relationship("Account", backref=db.backref("events", lazy="dynamic"))

    def to_dict(self, include_detail: bool = True) -> dict:
        data = {
            "id": self.id,
            "account_id": self.account_id,
            "kind": self.kind,
            "signed_amount": decimal_str(self.signed_amount),
            "reference": self.reference,
            "description": self.description,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }
        if include_detail:
            data["detail"] = self.detail
        return data
