from __future__ import annotations

from ..extensions import db
from ..numbers import DECIMAL_PRECISION, DECIMAL_SCALE, decimal_str
from backoffice.time_utils import to_utc_z


# Quantity always positive on the event; direction comes from the kind
STOCK_IN_KINDS = ("PURCHASE_IN", "TRANSFER_IN", "PRODUCTION_IN", "ADJUSTMENT_IN")
STOCK_OUT_KINDS = ("TRANSFER_OUT", "PRODUCTION_OUT", "ADJUSTMENT_OUT", "RETURN_OUT")
STOCK_EVENT_KINDS = STOCK_IN_KINDS + STOCK_OUT_KINDS

# IN kinds that bring their own cost basis and re-weight the average cost.
# ADJUSTMENT_IN enters at the current average without changing it.
COSTED_IN_KINDS = ("PURCHASE_IN", "TRANSFER_IN", "PRODUCTION_IN")


class Category(db.Model):
    """
    Two-level material category: a main category (parent_id NULL)
    and its sub categories.
    """
    __tablename__ = "categories"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    parent = db.relationship("Category", remote_side=[id], backref=db.backref("children", lazy=True))

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r} parent_id={self.parent_id}>"

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "parent_id": self.parent_id}


class Material(db.Model):
    """
    Stock-keeping material.

    UNIT DIRECTION (fixed for the whole ledger):
    - canonical unit = consumption_unit
    - unit_conversion_factor = consumption units per ONE purchase unit
      (kg -> g: factor 1000, so 2 kg purchased = 2000 g on the ledger)
    - average_cost is per consumption unit
    """
    __tablename__ = "materials"
    __table_args__ = (
        db.Index("ix_materials_category_active", "category_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    purchase_unit = db.Column(db.String(32), nullable=False, default="unit")
    consumption_unit = db.Column(db.String(32), nullable=False, default="unit")
    unit_conversion_factor = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=True, default=1)

    # Quantity-weighted across this material's warehouse rows
    average_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    # Percent; NULL falls back to DEFAULT_TAX_RATE_PERCENT
    default_tax_rate = db.Column(db.Numeric(7, 4), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    category = db.relationship("Category", backref=db.backref("materials", lazy=True))

    def __repr__(self) -> str:
        return f"<Material id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "category_id": self.category_id,
            "purchase_unit": self.purchase_unit,
            "consumption_unit": self.consumption_unit,
            "unit_conversion_factor": decimal_str(self.unit_conversion_factor),
            "average_cost": decimal_str(self.average_cost),
            "default_tax_rate": decimal_str(self.default_tax_rate),
            "is_active": self.is_active,
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    # Total canonical quantity the warehouse is sized for; NULL = not tracked
    capacity = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Warehouse id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "capacity": decimal_str(self.capacity),
            "is_active": self.is_active,
        }


class WarehouseStock(db.Model):
    """
    Materialized stock position for one (material, warehouse).

    current_stock / average_cost are a projection of StockLedgerEvent rows and
    are only written by stock_service and recalculation_service.
    reserved_stock is operational state (not ledger-derived) and never exceeds
    current_stock.
    """
    __tablename__ = "warehouse_stocks"
    __table_args__ = (
        db.UniqueConstraint("material_id", "warehouse_id", name="uq_warehouse_stocks_material_warehouse"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    current_stock = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    reserved_stock = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    minimum_stock = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    average_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    location = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    material = db.relationship("Material", backref=db.backref("stocks", lazy=True))
    warehouse = db.relationship("Warehouse", backref=db.backref("stocks", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_stock(self):
        return (self.current_stock or 0) - (self.reserved_stock or 0)

    @property
    def is_low_stock(self) -> bool:
        return (self.current_stock or 0) < (self.minimum_stock or 0)

    def __repr__(self) -> str:
        return (
            f"<WarehouseStock material_id={self.material_id} warehouse_id={self.warehouse_id} "
            f"current={self.current_stock} reserved={self.reserved_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_id": self.material_id,
            "warehouse_id": self.warehouse_id,
            "current_stock": decimal_str(self.current_stock),
            "reserved_stock": decimal_str(self.reserved_stock),
            "available_stock": decimal_str(self.available_stock),
            "minimum_stock": decimal_str(self.minimum_stock),
            "average_cost": decimal_str(self.average_cost),
            "stock_value": decimal_str((self.current_stock or 0) * (self.average_cost or 0)),
            "is_low_stock": self.is_low_stock,
            "location": self.location,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockLedgerEvent(db.Model):
    """
    Append-only stock movement in canonical (consumption) units.

    unit_cost is the cost basis captured when the event happened: the incoming
    cost for costed IN kinds, the running average for everything else.
    Canonical order per key is (occurred_at, id).
    """
    __tablename__ = "stock_ledger_events"
    __table_args__ = (
        db.Index("ix_stock_events_key_occurred", "material_id", "warehouse_id", "occurred_at", "id"),
        db.Index("ix_stock_events_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    kind = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False)
    unit_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)

    # TRANSFER / PRODUCTION / INVOICE / MANUAL, with the document id when there is one
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, nullable=True)

    @property
    def is_inbound(self) -> bool:
        return self.kind in STOCK_IN_KINDS

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "material_id": self.material_id,
            "warehouse_id": self.warehouse_id,
            "kind": self.kind,
            "quantity": decimal_str(self.quantity),
            "unit_cost": decimal_str(self.unit_cost),
            "total_cost": decimal_str(self.quantity * self.unit_cost),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }
