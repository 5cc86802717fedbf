# Overview: Weighted-average costing and tax-inclusive valuation.

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..numbers import ZERO, quantize


def weighted_average(old_qty, old_cost, incoming_qty, incoming_cost) -> Decimal:
    """
    (old_qty * old_cost + incoming_qty * incoming_cost) / (old_qty + incoming_qty)

    Returns old_cost unchanged when the combined quantity is not positive.
    Only IN events with their own cost basis call this; OUT events leave the
    average where it is.
    """
    old_qty = Decimal(old_qty or 0)
    old_cost = Decimal(old_cost or 0)
    incoming_qty = Decimal(incoming_qty or 0)
    incoming_cost = Decimal(incoming_cost or 0)

    total_qty = old_qty + incoming_qty
    if total_qty <= 0:
        return quantize(old_cost)
    # A negative prior position carries no value into the blend
    if old_qty < 0:
        return quantize(incoming_cost)
    return quantize((old_qty * old_cost + incoming_qty * incoming_cost) / total_qty)


def with_tax(base_value, tax_rate_percent) -> Decimal:
    """base_value * (1 + tax_rate_percent / 100)"""
    base_value = Decimal(base_value or 0)
    rate = Decimal(tax_rate_percent or 0)
    return quantize(base_value * (1 + rate / 100))


def default_tax_rate() -> Decimal:
    return Decimal(current_app.config.get("DEFAULT_TAX_RATE_PERCENT", ZERO))


def resolve_tax_rate(material) -> Decimal:
    """Material's own default tax, else the configured DEFAULT_TAX_RATE_PERCENT."""
    rate = getattr(material, "default_tax_rate", None)
    if rate is not None:
        return Decimal(rate)
    return default_tax_rate()


def stock_value(quantity, unit_cost) -> Decimal:
    return quantize(Decimal(quantity or 0) * Decimal(unit_cost or 0))
