from __future__ import annotations

from ..extensions import db
from ..numbers import DECIMAL_PRECISION, DECIMAL_SCALE, decimal_str
from backoffice.time_utils import to_utc_z


class Transfer(db.Model):
    """
    Warehouse-to-warehouse transfer of a single material.

    LIFECYCLE:
    1. PENDING: requested, no stock effect
    2. COMPLETED: TRANSFER_OUT at source + TRANSFER_IN at destination (terminal)
    3. CANCELLED: no stock effect (terminal)
    """
    __tablename__ = "transfers"
    __table_args__ = (
        db.Index("ix_transfers_status_request", "status", "request_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    from_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    to_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)

    # Canonical (consumption) units
    quantity = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    reason = db.Column(db.String(255), nullable=True)
    request_date = db.Column(db.DateTime(timezone=True), nullable=False)

    # Set on completion: quantity * source average cost at that moment
    unit_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=True)
    total_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    completed_by_user_id = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_warehouse_id": self.from_warehouse_id,
            "to_warehouse_id": self.to_warehouse_id,
            "material_id": self.material_id,
            "quantity": decimal_str(self.quantity),
            "status": self.status,
            "reason": self.reason,
            "request_date": to_utc_z(self.request_date),
            "unit_cost": decimal_str(self.unit_cost),
            "total_cost": decimal_str(self.total_cost),
            "created_by_user_id": self.created_by_user_id,
            "completed_by_user_id": self.completed_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
        }


class OpenProduction(db.Model):
    """
    Production run: consumes raw materials from one warehouse and produces a
    material into another.

    LIFECYCLE: PENDING (editable / deletable) -> COMPLETED | CANCELLED (terminal).
    Completion appends one PRODUCTION_IN and one PRODUCTION_OUT per item.
    """
    __tablename__ = "open_productions"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    produced_material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)
    produced_quantity = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False)
    production_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)
    consumption_warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    production_date = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    # Estimated while PENDING, final once COMPLETED
    total_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    items = db.relationship(
        "OpenProductionItem",
        backref="production",
        cascade="all, delete-orphan",
        order_by="OpenProductionItem.id",
        lazy=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "produced_material_id": self.produced_material_id,
            "produced_quantity": decimal_str(self.produced_quantity),
            "production_warehouse_id": self.production_warehouse_id,
            "consumption_warehouse_id": self.consumption_warehouse_id,
            "status": self.status,
            "production_date": to_utc_z(self.production_date),
            "notes": self.notes,
            "total_cost": decimal_str(self.total_cost),
            "created_by_user_id": self.created_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class OpenProductionItem(db.Model):
    __tablename__ = "open_production_items"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    production_id = db.Column(db.Integer, db.ForeignKey("open_productions.id"), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey("materials.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False)
    unit_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)
    total_cost = db.Column(db.Numeric(DECIMAL_PRECISION, DECIMAL_SCALE), nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "production_id": self.production_id,
            "material_id": self.material_id,
            "quantity": decimal_str(self.quantity),
            "unit_cost": decimal_str(self.unit_cost),
            "total_cost": decimal_str(self.total_cost),
        }
