from sqlalchemy import event

from .accounts import Account, AccountLedgerEvent, ACCOUNT_TYPES, ACCOUNT_EVENT_KINDS
from .inventory import (
    Category,
    Material,
    Warehouse,
    WarehouseStock,
    StockLedgerEvent,
    STOCK_IN_KINDS,
    STOCK_OUT_KINDS,
    STOCK_EVENT_KINDS,
    COSTED_IN_KINDS,
)
from .documents import Transfer, OpenProduction, OpenProductionItem

__all__ = [
    'Account', 'AccountLedgerEvent', 'ACCOUNT_TYPES', 'ACCOUNT_EVENT_KINDS',
    'Category', 'Material', 'Warehouse', 'WarehouseStock', 'StockLedgerEvent',
    'STOCK_IN_KINDS', 'STOCK_OUT_KINDS', 'STOCK_EVENT_KINDS', 'COSTED_IN_KINDS',
    'Transfer', 'OpenProduction', 'OpenProductionItem',
]


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to rewrite or delete a ledger event."""


def _reject_mutation(mapper, connection, target):
    raise LedgerImmutableError(
        f"{target.__class__.__name__} {target.id} is append-only; record an ADJUSTMENT instead"
    )


for _ledger_model in (AccountLedgerEvent, StockLedgerEvent):
    event.listen(_ledger_model, "before_update", _reject_mutation)
    event.listen(_ledger_model, "before_delete", _reject_mutation)
