# Overview: Unit conversion between a material's purchase and consumption units.

from __future__ import annotations

from decimal import Decimal

from ..numbers import quantize

"""
Unit conversion rules (authoritative)

- The ledger stores every quantity in the material's consumption unit (canonical).
- unit_conversion_factor = consumption units contained in ONE purchase unit.
    kg (purchase) -> g (consumption): factor 1000
    2 purchase units  -> 2 * 1000 = 2000 canonical units
    cost 50 / kg      -> 50 / 1000 = 0.05 per g
- A factor of 1 means both units are the same.
- No call site may invert this direction or substitute its own fallback factor.
"""

UNIT_PURCHASE = "purchase"
UNIT_CONSUMPTION = "consumption"
UNITS = (UNIT_PURCHASE, UNIT_CONSUMPTION)


class InvalidConversionError(ValueError):
    """Raised when a material has no usable conversion factor or the unit is unknown."""


def conversion_factor(material) -> Decimal:
    factor = getattr(material, "unit_conversion_factor", None)
    if factor is None:
        raise InvalidConversionError(f"material {getattr(material, 'id', '?')} has no unit conversion factor")
    factor = Decimal(factor)
    if factor <= 0:
        raise InvalidConversionError(
            f"material {getattr(material, 'id', '?')} has a non-positive unit conversion factor ({factor})"
        )
    return factor


def _check_unit(unit: str) -> str:
    unit = (unit or UNIT_CONSUMPTION).lower()
    if unit not in UNITS:
        raise InvalidConversionError(f"unknown unit {unit!r}; expected one of {', '.join(UNITS)}")
    return unit


def to_canonical(material, quantity, source_unit: str = UNIT_CONSUMPTION) -> Decimal:
    """Quantity in source_unit -> quantity in consumption units."""
    unit = _check_unit(source_unit)
    quantity = Decimal(quantity)
    if unit == UNIT_CONSUMPTION:
        return quantize(quantity)
    return quantize(quantity * conversion_factor(material))


def from_canonical(material, quantity, target_unit: str = UNIT_PURCHASE) -> Decimal:
    """Consumption-unit quantity -> quantity in target_unit (for display)."""
    unit = _check_unit(target_unit)
    quantity = Decimal(quantity)
    if unit == UNIT_CONSUMPTION:
        return quantize(quantity)
    return quantize(quantity / conversion_factor(material))


def cost_to_canonical(material, unit_cost, source_unit: str = UNIT_CONSUMPTION) -> Decimal:
    """Cost per source_unit -> cost per consumption unit."""
    unit = _check_unit(source_unit)
    unit_cost = Decimal(unit_cost)
    if unit == UNIT_CONSUMPTION:
        return quantize(unit_cost)
    return quantize(unit_cost / conversion_factor(material))
