# Overview: Pytest coverage for drift repair and consistency checks.

from decimal import Decimal

import pytest

from backoffice.extensions import db
from backoffice.models import Account, AccountLedgerEvent, StockLedgerEvent, WarehouseStock
from backoffice.services import account_service, recalculation_service, stock_service
from backoffice.services.recalculation_service import RecalculationPartialFailureError
from backoffice.services.stock_service import StockNotFoundError
from conftest import at


@pytest.fixture
def ledgers(material, warehouse_a, warehouse_b):
    """Two accounts and two stock keys with some history."""
    first = account_service.create_account(code="SUP-1", name="First", opening_balance=100)
    second = account_service.create_account(code="CUS-1", name="Second", account_type="CUSTOMER")
    account_service.record_account_event(account_id=first.id, kind="DEBT", amount=50, occurred_at=at(2))
    account_service.record_payment(account_id=first.id, amount=30, occurred_at=at(3))
    account_service.record_account_event(account_id=second.id, kind="CREDIT", amount=20, occurred_at=at(2))

    for warehouse, cost in ((warehouse_a, 10), (warehouse_b, 14)):
        stock_service.receive_purchase(
            material_id=material.id, warehouse_id=warehouse.id, quantity=100, unit_cost=cost,
            unit="consumption", occurred_at=at(1),
        )
    stock_service.record_consumption(
        material_id=material.id, warehouse_id=warehouse_a.id, quantity=25, occurred_at=at(4),
    )
    return {"first": first.id, "second": second.id, "material": material.id,
            "warehouse_a": warehouse_a.id, "warehouse_b": warehouse_b.id}


def _corrupt(ledgers):
    account = db.session.get(Account, ledgers["first"])
    account.current_balance = Decimal("999")
    row = stock_service.get_stock_row(ledgers["material"], ledgers["warehouse_a"])
    row.current_stock = Decimal("5")
    row.average_cost = Decimal("1")
    db.session.commit()


class TestRecalculateAll:

    def test_clean_ledgers_need_no_correction(self, ledgers):
        result = recalculation_service.recalculate_all()

        assert result.ok
        assert result.updated_accounts == 2
        assert result.corrected_accounts == 0
        assert result.total_transactions_processed == 4
        assert result.total_payments_processed == 1
        assert result.updated_stocks == 2
        assert result.corrected_stocks == 0
        assert result.total_stock_events_processed == 3

    def test_drift_is_repaired_from_the_ledger(self, ledgers):
        _corrupt(ledgers)
        report = recalculation_service.check_stock_consistency()
        assert report["inconsistent"] == 1
        assert recalculation_service.check_account_consistency()["inconsistent"] == 1

        result = recalculation_service.recalculate_all()

        assert result.corrected_accounts == 1
        assert result.corrected_stocks == 1
        db.session.expire_all()
        assert db.session.get(Account, ledgers["first"]).current_balance == Decimal("120")
        row = stock_service.get_stock_row(ledgers["material"], ledgers["warehouse_a"])
        assert row.current_stock == Decimal("75")
        assert row.average_cost == Decimal("10")
        assert recalculation_service.check_stock_consistency()["is_consistent"]
        assert recalculation_service.check_account_consistency()["is_consistent"]

    def test_running_twice_is_idempotent(self, ledgers):
        _corrupt(ledgers)
        recalculation_service.recalculate_all()
        db.session.expire_all()
        first_pass = {
            "balances": [a.current_balance for a in db.session.query(Account).order_by(Account.id).all()],
            "stock": [(r.current_stock, r.average_cost) for r in db.session.query(WarehouseStock).order_by(WarehouseStock.id).all()],
        }

        second = recalculation_service.recalculate_all()

        db.session.expire_all()
        assert second.corrected_accounts == 0
        assert second.corrected_stocks == 0
        assert first_pass == {
            "balances": [a.current_balance for a in db.session.query(Account).order_by(Account.id).all()],
            "stock": [(r.current_stock, r.average_cost) for r in db.session.query(WarehouseStock).order_by(WarehouseStock.id).all()],
        }

    def test_events_are_never_touched(self, ledgers):
        before = (db.session.query(AccountLedgerEvent).count(), db.session.query(StockLedgerEvent).count())
        _corrupt(ledgers)
        recalculation_service.recalculate_all()
        after = (db.session.query(AccountLedgerEvent).count(), db.session.query(StockLedgerEvent).count())
        assert before == after

    def test_scope_flags(self, ledgers):
        result = recalculation_service.recalculate_all(include_stock=False)
        assert result.updated_accounts == 2
        assert result.updated_stocks == 0

        result = recalculation_service.recalculate_all(include_accounts=False)
        assert result.updated_accounts == 0
        assert result.updated_stocks == 2

    def test_small_chunks_visit_every_key(self, app, ledgers):
        app.config["RECALC_CHUNK_SIZE"] = 1
        try:
            result = recalculation_service.recalculate_all()
        finally:
            app.config["RECALC_CHUNK_SIZE"] = 200
        assert result.updated_accounts == 2
        assert result.updated_stocks == 2


class TestMissingStockRow:

    def _drop_row(self, ledgers):
        table = WarehouseStock.__table__
        db.session.execute(table.delete().where(
            table.c.material_id == ledgers["material"],
            table.c.warehouse_id == ledgers["warehouse_b"],
        ))
        db.session.commit()

    def test_consistency_check_reports_missing_row(self, ledgers):
        self._drop_row(ledgers)

        report = recalculation_service.check_stock_consistency()

        assert report["checked"] == 2
        assert report["inconsistent"] == 1
        issue = report["issues"][0]
        assert issue["warehouse_id"] == ledgers["warehouse_b"]
        assert issue["missing_row"] is True
        assert issue["stored_stock"] == "0.0000"
        assert issue["ledger_stock"] == "100.0000"

    def test_recalculation_rebuilds_missing_row(self, ledgers):
        self._drop_row(ledgers)

        result = recalculation_service.recalculate_all()

        assert result.updated_stocks == 2
        assert result.corrected_stocks == 1
        assert result.total_stock_events_processed == 3
        db.session.expire_all()
        row = stock_service.get_stock_row(ledgers["material"], ledgers["warehouse_b"])
        assert row is not None
        assert row.current_stock == Decimal("100")
        assert row.average_cost == Decimal("14")
        assert row.reserved_stock == Decimal("0")
        assert recalculation_service.check_stock_consistency()["is_consistent"]

    def test_single_key_rebuild(self, ledgers):
        self._drop_row(ledgers)

        outcome = recalculation_service.recalculate_stock(ledgers["material"], ledgers["warehouse_b"])

        assert outcome.changed
        assert outcome.events == 1
        assert outcome.quantity == Decimal("100")


class TestPartialFailure:

    def test_failed_key_is_reported_and_others_commit(self, ledgers, monkeypatch):
        _corrupt(ledgers)
        real = recalculation_service.recalculate_account

        def flaky(account_id):
            if account_id == ledgers["second"]:
                raise RuntimeError("lock timeout")
            return real(account_id)

        monkeypatch.setattr(recalculation_service, "recalculate_account", flaky)

        with pytest.raises(RecalculationPartialFailureError) as exc_info:
            recalculation_service.recalculate_all()

        result = exc_info.value.result
        assert result.failed_keys == [{"type": "account", "account_id": ledgers["second"], "error": "lock timeout"}]
        assert result.corrected_accounts == 1
        assert result.corrected_stocks == 1
        assert "error" in exc_info.value.to_dict()
        db.session.expire_all()
        assert db.session.get(Account, ledgers["first"]).current_balance == Decimal("120")

    def test_raise_on_failure_can_be_disabled(self, ledgers, monkeypatch):
        def broken(material_id, warehouse_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(recalculation_service, "recalculate_stock", broken)

        result = recalculation_service.recalculate_all(raise_on_failure=False)
        assert not result.ok
        assert len(result.failed_keys) == 2
        assert result.updated_accounts == 2


class TestSingleKey:

    def test_reserved_stock_is_capped_at_recalculated_stock(self, ledgers):
        stock_service.reserve_stock(material_id=ledgers["material"], warehouse_id=ledgers["warehouse_b"], quantity=90)
        # A movement that reached the ledger without its projection update
        db.session.add(StockLedgerEvent(
            material_id=ledgers["material"], warehouse_id=ledgers["warehouse_b"], kind="ADJUSTMENT_OUT",
            quantity=Decimal("60"), unit_cost=Decimal("14"), occurred_at=at(5), reference_type="MANUAL",
        ))
        db.session.commit()

        outcome = recalculation_service.recalculate_stock(ledgers["material"], ledgers["warehouse_b"])

        assert outcome.changed
        assert outcome.quantity == Decimal("40")
        db.session.expire_all()
        row = stock_service.get_stock_row(ledgers["material"], ledgers["warehouse_b"])
        assert row.reserved_stock == Decimal("40")
        assert row.available_stock == Decimal("0")

    def test_missing_stock_row(self, ledgers):
        with pytest.raises(StockNotFoundError):
            recalculation_service.recalculate_stock(ledgers["material"], 99999)

    def test_consistency_check_can_filter_by_material(self, ledgers, make_material):
        other = make_material("Other")
        report = recalculation_service.check_stock_consistency(material_id=other.id)
        assert report == {"checked": 0, "inconsistent": 0, "is_consistent": True, "issues": []}
