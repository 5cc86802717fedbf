# Overview: Stock extract report; per-key movement totals rolled up warehouse -> category -> material.

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from backoffice.extensions import db
from backoffice.models import Category, Material, Warehouse, StockLedgerEvent
from backoffice.numbers import ZERO, quantize, decimal_str
from backoffice.services.stock_service import StockPosition, apply_movement
from backoffice.services.valuation_service import resolve_tax_rate, with_tax
from backoffice.time_utils import start_of_day, end_of_day_exclusive, normalize_datetime, to_utc_z


REPORT_TYPES = ("quantity", "amount", "amount_with_vat")

# Report columns in display order; every stock event kind lands in exactly one
IN_COLUMNS = ("purchase_in", "transfer_in", "production_in", "adjustment_in")
OUT_COLUMNS = ("return_out", "transfer_out", "consumption_out", "adjustment_out")
MOVEMENT_COLUMNS = IN_COLUMNS + OUT_COLUMNS
COLUMNS = ("opening",) + MOVEMENT_COLUMNS + ("closing",)

KIND_COLUMNS = {
    "PURCHASE_IN": "purchase_in",
    "TRANSFER_IN": "transfer_in",
    "PRODUCTION_IN": "production_in",
    "ADJUSTMENT_IN": "adjustment_in",
    "RETURN_OUT": "return_out",
    "TRANSFER_OUT": "transfer_out",
    "PRODUCTION_OUT": "consumption_out",
    "ADJUSTMENT_OUT": "adjustment_out",
}

NO_CATEGORY = (None, "Uncategorized")


class ReportError(Exception):
    """Raised when report generation fails."""
    pass


def _zeroes() -> dict[str, Decimal]:
    return {col: ZERO for col in COLUMNS}


@dataclass
class MovementTotals:
    """Opening, per-column movements and closing, in quantity, amount and tax-inclusive amount."""
    quantity: dict[str, Decimal] = field(default_factory=_zeroes)
    amount: dict[str, Decimal] = field(default_factory=_zeroes)
    amount_with_tax: dict[str, Decimal] = field(default_factory=_zeroes)

    def add(self, other: "MovementTotals") -> "MovementTotals":
        for col in COLUMNS:
            self.quantity[col] += other.quantity[col]
            self.amount[col] += other.amount[col]
            self.amount_with_tax[col] += other.amount_with_tax[col]
        return self

    @property
    def total_in(self) -> Decimal:
        return sum((self.quantity[c] for c in IN_COLUMNS), ZERO)

    @property
    def total_out(self) -> Decimal:
        return sum((self.quantity[c] for c in OUT_COLUMNS), ZERO)

    @property
    def has_activity(self) -> bool:
        return any(self.quantity[col] != 0 for col in COLUMNS)

    def values(self, report_type: str) -> dict[str, Decimal]:
        if report_type == "quantity":
            return self.quantity
        if report_type == "amount":
            return self.amount
        if report_type == "amount_with_vat":
            return self.amount_with_tax
        raise ReportError(f"report_type must be one of {', '.join(REPORT_TYPES)}")

    def as_dict(self, report_type: str) -> dict:
        values = self.values(report_type)
        return {col: decimal_str(values[col]) for col in COLUMNS}


class CategoryTree:
    """
    Resolves a material's category into (main, sub).

    A category without a parent is a main category; its materials have no
    sub category. Deeper chains resolve main to the root ancestor.
    """

    def __init__(self, categories: Iterable[Category]):
        self._by_id = {c.id: c for c in categories}

    @classmethod
    def load(cls) -> "CategoryTree":
        return cls(db.session.query(Category).all())

    def _root(self, category: Category) -> Category:
        seen = set()
        while category.parent_id is not None and category.parent_id in self._by_id and category.id not in seen:
            seen.add(category.id)
            category = self._by_id[category.parent_id]
        return category

    def resolve(self, category_id: int | None) -> tuple[tuple, tuple]:
        category = self._by_id.get(category_id) if category_id is not None else None
        if category is None:
            return NO_CATEGORY, NO_CATEGORY
        root = self._root(category)
        if root.id == category.id:
            return (root.id, root.name), NO_CATEGORY
        return (root.id, root.name), (category.id, category.name)

    def matches(self, category_id: int | None, wanted: set[int]) -> bool:
        """True when the category or any of its ancestors is one of wanted."""
        seen = set()
        while category_id is not None and category_id not in seen:
            if category_id in wanted:
                return True
            seen.add(category_id)
            category = self._by_id.get(category_id)
            category_id = category.parent_id if category is not None else None
        return False


@dataclass
class StockMovementRow:
    material_id: int
    material_name: str
    unit: str
    warehouse_id: int
    warehouse_name: str
    category_id: int | None
    main_category: tuple
    sub_category: tuple
    tax_rate: Decimal
    totals: MovementTotals

    def sort_key(self):
        return (
            self.warehouse_name or "",
            self.main_category[1] or "",
            self.sub_category[1] or "",
            self.material_name or "",
        )

    def to_dict(self, report_type: str) -> dict:
        return {
            "material_id": self.material_id,
            "material_name": self.material_name,
            "unit": self.unit,
            "warehouse_id": self.warehouse_id,
            "warehouse_name": self.warehouse_name,
            "main_category_id": self.main_category[0],
            "main_category_name": self.main_category[1],
            "sub_category_id": self.sub_category[0],
            "sub_category_name": self.sub_category[1],
            "tax_rate": decimal_str(self.tax_rate),
            **self.totals.as_dict(report_type),
        }


def _row_totals(events: list[StockLedgerEvent], start_dt: datetime, tax_rate: Decimal) -> MovementTotals:
    """
    Fold one key's events (canonical order, all before the window end).

    Opening is the position before start_dt at its average cost; movements are
    valued at the cost captured on each event; closing = opening + in - out.
    """
    totals = MovementTotals()
    position = StockPosition()
    for ev in events:
        # Drivers may hand back aware datetimes for timezone=True columns
        if normalize_datetime(ev.occurred_at) < start_dt:
            position = apply_movement(position, ev.kind, ev.quantity, ev.unit_cost)
            continue
        col = KIND_COLUMNS[ev.kind]
        qty = Decimal(ev.quantity)
        totals.quantity[col] += qty
        totals.amount[col] += quantize(qty * Decimal(ev.unit_cost))

    totals.quantity["opening"] = position.quantity
    totals.amount["opening"] = position.value

    for values in (totals.quantity, totals.amount):
        values["closing"] = quantize(
            values["opening"]
            + sum((values[c] for c in IN_COLUMNS), ZERO)
            - sum((values[c] for c in OUT_COLUMNS), ZERO)
        )
    for col in COLUMNS:
        totals.amount_with_tax[col] = with_tax(totals.amount[col], tax_rate)
    return totals


def _parse_window(start_date, end_date) -> tuple[datetime, datetime]:
    if not start_date or not end_date:
        raise ReportError("start_date and end_date are required")
    try:
        start_dt = start_of_day(start_date)
        end_exclusive = end_of_day_exclusive(end_date)
    except ValueError:
        raise ReportError("start_date / end_date must be ISO-8601 dates")
    if end_exclusive <= start_dt:
        raise ReportError("end_date must not be before start_date")
    return start_dt, end_exclusive


def build_stock_extract_rows(
    *,
    start_date,
    end_date,
    warehouse_ids: Iterable[int] | None = None,
    category_ids: Iterable[int] | None = None,
    category_tree: CategoryTree | None = None,
) -> list[StockMovementRow]:
    """
    One row per (material, warehouse) with opening, per-kind movements and
    closing for [start_date, end_date] (end day inclusive).

    Keys with no stock and no movement are left out. Rows are sorted by
    warehouse, main category, sub category and material name.
    """
    start_dt, end_exclusive = _parse_window(start_date, end_date)
    tree = category_tree or CategoryTree.load()
    warehouse_ids = set(warehouse_ids or ())
    category_ids = set(category_ids or ())

    warehouse_q = db.session.query(Warehouse)
    if warehouse_ids:
        warehouse_q = warehouse_q.filter(Warehouse.id.in_(warehouse_ids))
    warehouses = {w.id: w for w in warehouse_q.all()}

    materials = {
        m.id: m
        for m in db.session.query(Material).all()
        if not category_ids or tree.matches(m.category_id, category_ids)
    }
    if not warehouses or not materials:
        return []

    events = db.session.query(StockLedgerEvent).filter(
        StockLedgerEvent.material_id.in_(materials.keys()),
        StockLedgerEvent.warehouse_id.in_(warehouses.keys()),
        StockLedgerEvent.occurred_at < end_exclusive,
    ).order_by(
        StockLedgerEvent.material_id.asc(),
        StockLedgerEvent.warehouse_id.asc(),
        StockLedgerEvent.occurred_at.asc(),
        StockLedgerEvent.id.asc(),
    ).all()

    by_key: dict[tuple[int, int], list[StockLedgerEvent]] = defaultdict(list)
    for ev in events:
        by_key[(ev.material_id, ev.warehouse_id)].append(ev)

    rows = []
    for (material_id, warehouse_id), key_events in by_key.items():
        material = materials[material_id]
        warehouse = warehouses[warehouse_id]
        tax_rate = resolve_tax_rate(material)
        totals = _row_totals(key_events, start_dt, tax_rate)
        if not totals.has_activity:
            continue
        main, sub = tree.resolve(material.category_id)
        rows.append(StockMovementRow(
            material_id=material.id,
            material_name=material.name,
            unit=material.consumption_unit,
            warehouse_id=warehouse.id,
            warehouse_name=warehouse.name,
            category_id=material.category_id,
            main_category=main,
            sub_category=sub,
            tax_rate=tax_rate,
            totals=totals,
        ))

    rows.sort(key=StockMovementRow.sort_key)
    return rows


def aggregate(rows: Iterable[StockMovementRow], category_tree: CategoryTree, report_type: str = "quantity") -> list[dict]:
    """
    Roll rows up warehouse -> main category -> sub category -> material.

    Every level's totals are the plain sum of its children; nothing else is
    computed here. Input order is preserved at each level.
    """
    if report_type not in REPORT_TYPES:
        raise ReportError(f"report_type must be one of {', '.join(REPORT_TYPES)}")

    tree: dict = {}
    for row in rows:
        main, sub = category_tree.resolve(row.category_id)

        wh = tree.setdefault(row.warehouse_id, {
            "warehouse_id": row.warehouse_id,
            "warehouse_name": row.warehouse_name,
            "totals": MovementTotals(),
            "children": {},
        })
        main_node = wh["children"].setdefault(main[0], {
            "category_id": main[0],
            "category_name": main[1],
            "totals": MovementTotals(),
            "children": {},
        })
        sub_node = main_node["children"].setdefault(sub[0], {
            "category_id": sub[0],
            "category_name": sub[1],
            "totals": MovementTotals(),
            "materials": [],
        })

        sub_node["materials"].append(row.to_dict(report_type))
        for node in (wh, main_node, sub_node):
            node["totals"].add(row.totals)

    result = []
    for wh in tree.values():
        rendered = {
            "warehouse_id": wh["warehouse_id"],
            "warehouse_name": wh["warehouse_name"],
            "totals": wh["totals"].as_dict(report_type),
            "main_categories": [],
        }
        for main_node in wh["children"].values():
            rendered["main_categories"].append({
                "category_id": main_node["category_id"],
                "category_name": main_node["category_name"],
                "totals": main_node["totals"].as_dict(report_type),
                "sub_categories": [
                    {
                        "category_id": sub_node["category_id"],
                        "category_name": sub_node["category_name"],
                        "totals": sub_node["totals"].as_dict(report_type),
                        "materials": sub_node["materials"],
                    }
                    for sub_node in main_node["children"].values()
                ],
            })
        result.append(rendered)
    return result


def stock_extract(
    *,
    start_date,
    end_date,
    warehouse_ids: Iterable[int] | None = None,
    category_ids: Iterable[int] | None = None,
    report_type: str = "quantity",
) -> dict:
    if report_type not in REPORT_TYPES:
        raise ReportError(f"report_type must be one of {', '.join(REPORT_TYPES)}")

    tree = CategoryTree.load()
    rows = build_stock_extract_rows(
        start_date=start_date,
        end_date=end_date,
        warehouse_ids=warehouse_ids,
        category_ids=category_ids,
        category_tree=tree,
    )

    grand_total = MovementTotals()
    for row in rows:
        grand_total.add(row.totals)

    return {
        "period": {
            "start_date": to_utc_z(start_of_day(start_date)),
            "end_date": to_utc_z(normalize_datetime(end_date)),
        },
        "report_type": report_type,
        "summary": {
            "record_count": len(rows),
            "warehouse_count": len({r.warehouse_id for r in rows}),
            "material_count": len({r.material_id for r in rows}),
            "totals": grand_total.as_dict(report_type),
        },
        "records": [row.to_dict(report_type) for row in rows],
        "tree": aggregate(rows, tree, report_type),
    }
