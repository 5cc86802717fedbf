# Overview: Recipe cost lookup from current material average costs.

# backend/backoffice/services/recipe_service.py
"""
Recipe costing.

WHY: Menu and sales-item pricing needs the current cost of a recipe. A
recipe is a list of ingredients (material + quantity); its cost is read
from the materials' weighted-average cost, never written to the ledger.

- each ingredient quantity is converted to consumption units first
- line cost = canonical quantity * Material.average_cost
- tax-inclusive cost uses each material's own rate (or the configured default)
- cost per serving = total / servings
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ..extensions import db
from ..models import Material
from ..numbers import ZERO, quantize, decimal_str
from ..validation import ValidationError, require_positive
from .conversion_service import UNIT_CONSUMPTION, to_canonical
from .valuation_service import resolve_tax_rate, with_tax


@dataclass(frozen=True)
class IngredientCost:
    material_id: int
    material_name: str
    quantity: Decimal
    unit_cost: Decimal
    cost: Decimal
    tax_rate: Decimal
    cost_with_tax: Decimal

    def to_dict(self) -> dict:
        return {
            "material_id": self.material_id,
            "material_name": self.material_name,
            "quantity": decimal_str(self.quantity),
            "unit_cost": decimal_str(self.unit_cost),
            "cost": decimal_str(self.cost),
            "tax_rate": decimal_str(self.tax_rate),
            "cost_with_tax": decimal_str(self.cost_with_tax),
        }


@dataclass
class RecipeCost:
    servings: Decimal
    ingredients: list[IngredientCost] = field(default_factory=list)

    @property
    def total_cost(self) -> Decimal:
        return quantize(sum((i.cost for i in self.ingredients), ZERO))

    @property
    def total_cost_with_tax(self) -> Decimal:
        return quantize(sum((i.cost_with_tax for i in self.ingredients), ZERO))

    @property
    def cost_per_serving(self) -> Decimal:
        return quantize(self.total_cost / self.servings)

    @property
    def cost_per_serving_with_tax(self) -> Decimal:
        return quantize(self.total_cost_with_tax / self.servings)

    def to_dict(self) -> dict:
        return {
            "servings": decimal_str(self.servings),
            "ingredients": [i.to_dict() for i in self.ingredients],
            "total_cost": decimal_str(self.total_cost),
            "total_cost_with_tax": decimal_str(self.total_cost_with_tax),
            "cost_per_serving": decimal_str(self.cost_per_serving),
            "cost_per_serving_with_tax": decimal_str(self.cost_per_serving_with_tax),
        }


def calculate_recipe_cost(ingredients: list, servings=1) -> RecipeCost:
    """
    Cost a recipe at current average costs.

    Each ingredient: {"material_id": int, "quantity": number, "unit": "consumption" | "purchase"}.

    Raises:
        ValidationError: empty list, missing material, non-positive quantity or servings
        InvalidConversionError: purchase-unit quantity on a material without a usable factor
    """
    if not ingredients or not isinstance(ingredients, list):
        raise ValidationError("At least one ingredient is required")
    recipe = RecipeCost(servings=quantize(require_positive(servings, "servings")))

    for idx, item in enumerate(ingredients, start=1):
        if not isinstance(item, dict) or not item.get("material_id"):
            raise ValidationError(f"Ingredient {idx}: material_id is required")
        material = db.session.get(Material, item["material_id"])
        if material is None:
            raise ValidationError(f"Material {item['material_id']} not found")

        quantity = to_canonical(
            material,
            require_positive(item.get("quantity"), f"ingredients[{idx}].quantity"),
            item.get("unit") or UNIT_CONSUMPTION,
        )
        unit_cost = quantize(material.average_cost)
        cost = quantize(quantity * unit_cost)
        tax_rate = resolve_tax_rate(material)
        recipe.ingredients.append(IngredientCost(
            material_id=material.id,
            material_name=material.name,
            quantity=quantity,
            unit_cost=unit_cost,
            cost=cost,
            tax_rate=tax_rate,
            cost_with_tax=with_tax(cost, tax_rate),
        ))

    return recipe
