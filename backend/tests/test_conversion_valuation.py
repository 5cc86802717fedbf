# Overview: Pytest coverage for unit conversion and weighted-average costing.

from decimal import Decimal
from types import SimpleNamespace

import pytest

from backoffice.services.conversion_service import (
    InvalidConversionError,
    conversion_factor,
    cost_to_canonical,
    from_canonical,
    to_canonical,
)
from backoffice.services.valuation_service import (
    default_tax_rate,
    resolve_tax_rate,
    stock_value,
    weighted_average,
    with_tax,
)


def _material(factor, tax_rate=None):
    return SimpleNamespace(id=7, unit_conversion_factor=factor, default_tax_rate=tax_rate)


class TestUnitConversion:

    def test_purchase_units_multiply_into_consumption_units(self):
        kg_to_g = _material(Decimal("1000"))
        assert to_canonical(kg_to_g, 2, "purchase") == Decimal("2000.0000")

    def test_consumption_units_pass_through(self):
        kg_to_g = _material(Decimal("1000"))
        assert to_canonical(kg_to_g, "250", "consumption") == Decimal("250.0000")

    def test_from_canonical_is_the_inverse_direction(self):
        kg_to_g = _material(Decimal("1000"))
        assert from_canonical(kg_to_g, 2500, "purchase") == Decimal("2.5000")

    def test_cost_per_purchase_unit_divides(self):
        kg_to_g = _material(Decimal("1000"))
        assert cost_to_canonical(kg_to_g, 50, "purchase") == Decimal("0.0500")

    def test_factor_of_one_is_identity(self):
        same = _material(Decimal("1"))
        assert to_canonical(same, 12, "purchase") == Decimal("12.0000")
        assert cost_to_canonical(same, 3, "purchase") == Decimal("3.0000")

    def test_missing_factor_is_rejected(self):
        with pytest.raises(InvalidConversionError):
            conversion_factor(_material(None))

    def test_non_positive_factor_is_rejected(self):
        with pytest.raises(InvalidConversionError):
            to_canonical(_material(Decimal("0")), 1, "purchase")
        with pytest.raises(InvalidConversionError):
            to_canonical(_material(Decimal("-5")), 1, "purchase")

    def test_unknown_unit_is_rejected(self):
        with pytest.raises(InvalidConversionError):
            to_canonical(_material(Decimal("10")), 1, "pallet")

    def test_missing_factor_is_irrelevant_for_consumption_input(self):
        assert to_canonical(_material(None), 4, "consumption") == Decimal("4.0000")


class TestWeightedAverage:

    def test_from_empty_position_takes_incoming_cost(self):
        assert weighted_average(0, 0, 2000, Decimal("0.05")) == Decimal("0.0500")

    def test_blends_by_quantity(self):
        # (100 * 10 + 300 * 20) / 400 = 17.5
        assert weighted_average(100, 10, 300, 20) == Decimal("17.5000")

    def test_rounds_half_up_to_four_places(self):
        # (1 * 1 + 2 * 2) / 3 = 1.66666...
        assert weighted_average(1, 1, 2, 2) == Decimal("1.6667")

    def test_non_positive_total_keeps_old_cost(self):
        assert weighted_average(-10, 4, 5, 9) == Decimal("4.0000")

    def test_negative_prior_position_carries_no_value(self):
        assert weighted_average(-2, 4, 5, 9) == Decimal("9.0000")

    def test_stock_value(self):
        assert stock_value(Decimal("2000"), Decimal("0.05")) == Decimal("100.0000")


class TestTax:

    def test_with_tax(self):
        assert with_tax(100, 20) == Decimal("120.0000")
        assert with_tax(Decimal("10.5"), 8) == Decimal("11.3400")

    def test_material_rate_wins_over_default(self, app):
        assert resolve_tax_rate(_material(1, tax_rate=Decimal("8"))) == Decimal("8")

    def test_default_rate_comes_from_config(self, app):
        assert default_tax_rate() == Decimal("20")
        assert resolve_tax_rate(_material(1)) == Decimal("20")
