# Overview: Fixed-point helpers shared by models and services.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# Every quantity and monetary amount is stored as Numeric(18, 4)
DECIMAL_PRECISION = 18
DECIMAL_SCALE = 4
QUANTUM = Decimal(1).scaleb(-DECIMAL_SCALE)  # Decimal("0.0001")

ZERO = Decimal("0")


def quantize(value) -> Decimal:
    """Round to the ledger scale (4 fractional digits, half-up)."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(QUANTUM, rounding=ROUND_HALF_UP)


def decimal_str(value) -> Optional[str]:
    """Serialize a Decimal for JSON without float drift; None stays None."""
    if value is None:
        return None
    return str(quantize(value))
