from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z, utcnow


class Unit(db.Model):
    """
    Unit of measure (ea, box, pack...).

    store_id NULL means a system unit shared by every store.
    """
    __tablename__ = "units"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_units_store_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(64), nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "store_id": self.store_id, "code": self.code, "name": self.name}


class Product(db.Model):
    """
    Product master data.

    BASE UNIT:
    Every inventory movement is recorded in the product's base unit.
    Conversions from purchase/sale units happen at write time through
    ProductUnit.multiplier_to_base, never at read time.

    STOCK IS NOT A COLUMN:
    There is deliberately no on_hand column here. Stock is always the
    aggregation of InventoryMovement rows (see inventory_service).

    COST:
    cost_base is the weighted-average landed cost per base unit in store
    currency, moved only by purchase-order receipt.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.Index("ix_products_store_name", "store_id", "name"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    base_unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Store currency, minor units
    cost_base = db.Column(db.Integer, nullable=False, default=0)
    price_base = db.Column(db.Integer, nullable=False, default=0)

    # NULL -> fall back to the store-wide threshold
    out_stock_threshold = db.Column(db.Integer, nullable=True)
    low_stock_threshold = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    base_unit = db.relationship("Unit", foreign_keys=[base_unit_id])
    unit_conversions = db.relationship(
        "ProductUnit",
        backref="product",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ProductUnit.multiplier_to_base",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "base_unit_id": self.base_unit_id,
            "is_active": self.is_active,
            "cost_base": self.cost_base,
            "price_base": self.price_base,
            "out_stock_threshold": self.out_stock_threshold,
            "low_stock_threshold": self.low_stock_threshold,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductUnit(db.Model):
    """Conversion of a non-base unit into the product's base unit."""
    __tablename__ = "product_units"
    __table_args__ = (
        db.UniqueConstraint("product_id", "unit_id", name="uq_product_units_product_unit"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=False)
    multiplier_to_base = db.Column(db.Integer, nullable=False)

    unit = db.relationship("Unit")


class InventoryMovement(db.Model):
    """
    Append-only stock ledger row.

    WHY: Balance is always recomputed from these rows. There is no mutable
    counter that could drift from history.

    SIGN CONVENTION:
    qty_base is stored positive for IN, OUT, RESERVE, RELEASE and RETURN;
    the type implies the sign. ADJUST is the escape hatch for manual
    corrections and stores the signed delta (negative for a decrease).

    REFERENCES:
    ref_type/ref_id tie movements back to the business event that produced
    them. A PO receipt produces one IN movement per received line with
    ref_type="PO", ref_id=<purchase order id>.

    IMMUTABLE: rows are never updated or deleted in normal operation.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_invmov_store_product_type", "store_id", "product_id", "type"),
        db.Index("ix_invmov_store_created", "store_id", "created_at"),
        db.Index("ix_invmov_ref", "ref_type", "ref_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)  # IN, OUT, RESERVE, RELEASE, ADJUST, RETURN
    qty_base = db.Column(db.Integer, nullable=False)

    ref_type = db.Column(db.String(16), nullable=True)  # MANUAL, RETURN, PO
    ref_id = db.Column(db.Integer, nullable=True)

    note = db.Column(db.String(240), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "type": self.type,
            "qty_base": self.qty_base,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
