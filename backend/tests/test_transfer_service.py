# Overview: Pytest coverage for warehouse transfers (request, completion, cancellation).

from decimal import Decimal

import pytest

from backoffice.extensions import db
from backoffice.models import StockLedgerEvent
from backoffice.services import stock_service, transfer_service
from backoffice.services.stock_service import InsufficientStockError
from backoffice.services.transfer_service import TransferError, TransferNotFoundError
from backoffice.validation import ValidationError
from conftest import at


@pytest.fixture
def stocked(material, warehouse_a):
    """Warehouse A: 100 on hand at cost 8, 20 reserved (80 available)."""
    stock_service.receive_purchase(
        material_id=material.id, warehouse_id=warehouse_a.id, quantity=100, unit_cost=8,
        unit="consumption", occurred_at=at(1),
    )
    stock_service.reserve_stock(material_id=material.id, warehouse_id=warehouse_a.id, quantity=20)
    return material


def _transfer(material, source, destination, quantity, **kwargs):
    return transfer_service.create_transfer(
        from_warehouse_id=source.id,
        to_warehouse_id=destination.id,
        material_id=material.id,
        quantity=quantity,
        request_date=kwargs.pop("request_date", at(5)),
        user_id=kwargs.pop("user_id", 1),
        **kwargs,
    )


class TestTransferRequest:

    def test_request_beyond_available_is_rejected(self, stocked, warehouse_a, warehouse_b):
        with pytest.raises(InsufficientStockError) as exc_info:
            _transfer(stocked, warehouse_a, warehouse_b, 90)
        assert exc_info.value.available == Decimal("80")

    def test_request_is_pending_without_stock_effect(self, stocked, warehouse_a, warehouse_b):
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 80, reason="Restock B")

        assert transfer.status == transfer_service.TRANSFER_STATUS_PENDING
        assert transfer.reason == "Restock B"
        assert db.session.query(StockLedgerEvent).filter_by(kind="TRANSFER_OUT").count() == 0
        assert stock_service.get_stock_row(stocked.id, warehouse_a.id).current_stock == Decimal("100")

    def test_same_warehouse_rejected(self, stocked, warehouse_a):
        with pytest.raises(ValidationError):
            _transfer(stocked, warehouse_a, warehouse_a, 1)

    def test_unknown_destination_rejected(self, stocked, warehouse_a):
        with pytest.raises(ValidationError):
            _transfer(stocked, warehouse_a, type("W", (), {"id": 99999})(), 1)

    def test_quantity_in_purchase_units(self, make_material, warehouse_a, warehouse_b):
        sugar = make_material("Sugar", purchase_unit="sack", consumption_unit="kg", factor=25)
        stock_service.receive_purchase(
            material_id=sugar.id, warehouse_id=warehouse_a.id, quantity=4, unit_cost=100, occurred_at=at(1),
        )
        transfer = _transfer(sugar, warehouse_a, warehouse_b, 2, unit="purchase")
        assert transfer.quantity == Decimal("50")


class TestTransferCompletion:

    def test_completion_moves_stock_at_source_average(self, stocked, warehouse_a, warehouse_b):
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 80)

        completed = transfer_service.update_transfer_status(transfer.id, "COMPLETED", user_id=2)

        assert completed.status == transfer_service.TRANSFER_STATUS_COMPLETED
        assert completed.unit_cost == Decimal("8")
        assert completed.total_cost == Decimal("640")
        assert completed.completed_by_user_id == 2

        db.session.expire_all()
        source = stock_service.get_stock_row(stocked.id, warehouse_a.id)
        destination = stock_service.get_stock_row(stocked.id, warehouse_b.id)
        assert source.current_stock == Decimal("20")
        assert source.available_stock == Decimal("0")
        assert destination.current_stock == Decimal("80")
        assert destination.average_cost == Decimal("8")

        events = db.session.query(StockLedgerEvent).filter_by(reference_type="TRANSFER", reference_id=transfer.id).all()
        assert sorted(ev.kind for ev in events) == ["TRANSFER_IN", "TRANSFER_OUT"]
        assert all(ev.occurred_at == at(5) for ev in events)
        assert all(ev.unit_cost == Decimal("8") for ev in events)

    def test_transfer_in_reweights_destination(self, stocked, warehouse_a, warehouse_b):
        stock_service.receive_purchase(
            material_id=stocked.id, warehouse_id=warehouse_b.id, quantity=20, unit_cost=18,
            unit="consumption", occurred_at=at(2),
        )
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 80)
        transfer_service.complete_transfer(transfer.id)

        db.session.expire_all()
        destination = stock_service.get_stock_row(stocked.id, warehouse_b.id)
        # (20 * 18 + 80 * 8) / 100
        assert destination.average_cost == Decimal("10")

    def test_completion_rechecks_availability(self, stocked, warehouse_a, warehouse_b):
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 50)
        stock_service.record_consumption(
            material_id=stocked.id, warehouse_id=warehouse_a.id, quantity=40, occurred_at=at(3),
        )

        with pytest.raises(InsufficientStockError):
            transfer_service.complete_transfer(transfer.id)

        db.session.expire_all()
        assert transfer_service.get_transfer(transfer.id).status == "PENDING"
        assert db.session.query(StockLedgerEvent).filter_by(reference_type="TRANSFER").count() == 0
        assert stock_service.get_stock_row(stocked.id, warehouse_b.id) is None

    def test_completed_transfer_is_terminal(self, stocked, warehouse_a, warehouse_b):
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 10)
        transfer_service.complete_transfer(transfer.id)

        with pytest.raises(TransferError):
            transfer_service.complete_transfer(transfer.id)
        with pytest.raises(TransferError):
            transfer_service.cancel_transfer(transfer.id)


class TestTransferCancellation:

    def test_cancel_has_no_stock_effect(self, stocked, warehouse_a, warehouse_b):
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 10)

        cancelled = transfer_service.update_transfer_status(transfer.id, "cancelled", user_id=3)

        assert cancelled.status == transfer_service.TRANSFER_STATUS_CANCELLED
        assert cancelled.cancelled_by_user_id == 3
        assert db.session.query(StockLedgerEvent).filter_by(reference_type="TRANSFER").count() == 0
        with pytest.raises(TransferError):
            transfer_service.complete_transfer(transfer.id)

    def test_unknown_status_rejected(self, stocked, warehouse_a, warehouse_b):
        transfer = _transfer(stocked, warehouse_a, warehouse_b, 10)
        with pytest.raises(ValidationError):
            transfer_service.update_transfer_status(transfer.id, "PENDING")

    def test_unknown_transfer(self, db_session):
        with pytest.raises(TransferNotFoundError):
            transfer_service.get_transfer(99999)
        with pytest.raises(TransferNotFoundError):
            transfer_service.complete_transfer(99999)


class TestTransferListing:

    def test_filters_by_warehouse_and_status(self, stocked, make_warehouse, warehouse_a, warehouse_b):
        warehouse_c = make_warehouse("Warehouse C")
        first = _transfer(stocked, warehouse_a, warehouse_b, 10)
        _transfer(stocked, warehouse_a, warehouse_c, 10)
        transfer_service.cancel_transfer(first.id)

        assert len(transfer_service.list_transfers(warehouse_id=warehouse_b.id)) == 1
        assert len(transfer_service.list_transfers(warehouse_id=warehouse_a.id)) == 2
        pending = transfer_service.list_transfers(status="pending")
        assert [t.to_warehouse_id for t in pending] == [warehouse_c.id]
