# Overview: Pytest coverage for the ledger maintenance CLI commands.

from decimal import Decimal

from backoffice.extensions import db
from backoffice.models import Account
from backoffice.services import account_service, recalculation_service, stock_service
from conftest import at


def _drifted_account():
    account = account_service.create_account(code="SUP-9", name="Drifted", opening_balance=40)
    account_service.record_account_event(account_id=account.id, kind="DEBT", amount=10, occurred_at=at(2))
    account.current_balance = Decimal("1")
    db.session.commit()
    return account.id


def test_check_consistency_reports_drift(app, db_session):
    _drifted_account()
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "check-consistency"])

    assert result.exit_code == 0
    assert "Accounts checked: 1, inconsistent: 1" in result.output
    assert "stored 1.0000 ledger 50.0000" in result.output
    assert "WARN" in result.output


def test_recalculate_repairs_drift(app, db_session, material, warehouse_a):
    account_id = _drifted_account()
    stock_service.receive_purchase(
        material_id=material.id, warehouse_id=warehouse_a.id, quantity=5, unit_cost=2,
        unit="consumption", occurred_at=at(1),
    )
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "recalculate"])

    assert result.exit_code == 0
    assert "Accounts processed:      1 (1 corrected)" in result.output
    assert "Stock rows processed:    1 (0 corrected)" in result.output
    assert "PASS Recalculation complete." in result.output
    db.session.expire_all()
    assert db.session.get(Account, account_id).current_balance == Decimal("50")


def test_recalculate_scope_flags_are_exclusive(app, db_session):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["ledger", "recalculate", "--accounts-only", "--stock-only"])
    assert result.exit_code != 0
    assert "mutually exclusive" in result.output


def test_recalculate_exits_non_zero_on_partial_failure(app, db_session, monkeypatch):
    _drifted_account()

    def broken(account_id):
        raise RuntimeError("lock timeout")

    monkeypatch.setattr(recalculation_service, "recalculate_account", broken)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "recalculate", "--accounts-only"])

    assert result.exit_code == 1
    assert "1 key(s) failed" in result.output
