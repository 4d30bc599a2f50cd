from __future__ import annotations

from ..extensions import db
from backoffice.money import rate_to_str
from backoffice.time_utils import to_utc_z, to_date_key, utcnow


class PurchaseOrder(db.Model):
    """
    Purchase order from a supplier.

    LIFECYCLE:
    1. DRAFT: Being prepared, fully editable
    2. ORDERED: Sent to the supplier, still fully editable
    3. SHIPPED: Supplier shipped; only landed costs, due date and notes editable
    4. RECEIVED: Goods in. IN movements posted, cost frozen, AP opens
    5. CANCELLED: Terminal, no resurrection

    MONEY:
    - Line unit costs are captured in purchase_currency and converted to
      store base currency at exchange_rate (base units per 1 purchase unit)
    - shipping_cost and other_cost are in store base currency
    - total_cost_base is round(sum(unit_cost_purchase * qty) * exchange_rate),
      so paying the whole invoice in purchase_currency at the booked rate
      clears it exactly; grand total adds shipping and other cost
    - exchange_rate_initial keeps the rate the PO was first booked at

    RATE LOCK:
    A foreign-currency PO may be booked at an estimated rate
    (exchange_rate_locked_at is NULL). After receipt the final rate is
    locked, which rebooks line and landed costs. AP payments require a
    locked rate. Store-currency POs are locked from creation.

    AP:
    Payment state is never stored here. It is recomputed from
    PurchaseOrderPayment rows (see purchase_ap_service).
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.UniqueConstraint("store_id", "po_number", name="uq_purchase_orders_store_number"),
        db.Index("ix_purchase_orders_store_status", "store_id", "status"),
        db.Index("ix_purchase_orders_store_supplier", "store_id", "supplier_name"),
        db.Index("ix_purchase_orders_store_rate_lock", "store_id", "exchange_rate_locked_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Human-readable document number (e.g., "PO-001-0042")
    po_number = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="DRAFT")

    supplier_name = db.Column(db.String(160), nullable=True)
    supplier_contact = db.Column(db.String(160), nullable=True)

    purchase_currency = db.Column(db.String(3), nullable=False)
    exchange_rate = db.Column(db.Numeric(18, 6), nullable=False, default=1)
    exchange_rate_initial = db.Column(db.Numeric(18, 6), nullable=False, default=1)
    exchange_rate_locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    exchange_rate_locked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    exchange_rate_lock_note = db.Column(db.String(240), nullable=True)

    total_cost_base = db.Column(db.Integer, nullable=False, default=0)
    shipping_cost = db.Column(db.Integer, nullable=False, default=0)
    other_cost = db.Column(db.Integer, nullable=False, default=0)
    other_cost_note = db.Column(db.String(240), nullable=True)

    note = db.Column(db.Text, nullable=True)
    tracking_info = db.Column(db.String(240), nullable=True)

    due_date = db.Column(db.Date, nullable=True)
    ordered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "PurchaseOrderItem",
        backref="purchase_order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="PurchaseOrderItem.id",
    )
    payments = db.relationship(
        "PurchaseOrderPayment",
        backref="purchase_order",
        lazy=True,
        order_by="PurchaseOrderPayment.id",
        foreign_keys="PurchaseOrderPayment.purchase_order_id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def grand_total_base(self) -> int:
        return (self.total_cost_base or 0) + (self.shipping_cost or 0) + (self.other_cost or 0)

    @property
    def is_rate_locked(self) -> bool:
        return self.exchange_rate_locked_at is not None

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} po_number={self.po_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "po_number": self.po_number,
            "status": self.status,
            "supplier_name": self.supplier_name,
            "supplier_contact": self.supplier_contact,
            "purchase_currency": self.purchase_currency,
            "exchange_rate": rate_to_str(self.exchange_rate),
            "exchange_rate_initial": rate_to_str(self.exchange_rate_initial),
            "exchange_rate_locked": self.is_rate_locked,
            "exchange_rate_locked_at": to_utc_z(self.exchange_rate_locked_at),
            "exchange_rate_locked_by": self.exchange_rate_locked_by,
            "exchange_rate_lock_note": self.exchange_rate_lock_note,
            "total_cost_base": self.total_cost_base,
            "shipping_cost": self.shipping_cost,
            "other_cost": self.other_cost,
            "other_cost_note": self.other_cost_note,
            "grand_total_base": self.grand_total_base,
            "note": self.note,
            "tracking_info": self.tracking_info,
            "due_date": to_date_key(self.due_date),
            "ordered_at": to_utc_z(self.ordered_at),
            "expected_at": to_utc_z(self.expected_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "received_at": to_utc_z(self.received_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class PurchaseOrderItem(db.Model):
    """
    PO line. Quantities are in the product's base unit.

    landed_cost_per_unit = unit_cost_base plus this line's share of
    shipping_cost + other_cost, allocated by line value.
    """
    __tablename__ = "purchase_order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    qty_ordered = db.Column(db.Integer, nullable=False)
    qty_received = db.Column(db.Integer, nullable=False, default=0)

    unit_cost_purchase = db.Column(db.Integer, nullable=False)
    unit_cost_base = db.Column(db.Integer, nullable=False)
    landed_cost_per_unit = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "sku": self.product.sku if self.product else None,
            "product_name": self.product.name if self.product else None,
            "qty_ordered": self.qty_ordered,
            "qty_received": self.qty_received,
            "unit_cost_purchase": self.unit_cost_purchase,
            "unit_cost_base": self.unit_cost_base,
            "landed_cost_per_unit": self.landed_cost_per_unit,
        }


class PurchaseOrderPayment(db.Model):
    """
    AP payment entry against a received purchase order.

    APPEND-ONLY: Corrections are new REVERSAL rows pointing at the payment
    they undo. Amounts are stored positive; entry_type implies the sign.

    FX:
    - amount/currency: what was actually paid
    - fx_rate_used: base units per 1 unit of currency at payment time
    - amount_base: amount converted at fx_rate_used; this is what reduces
      the outstanding balance
    - settled_base: what the same amount cost at the PO's booked rate
      (equal to amount_base unless paying in the PO's foreign currency)
    - fx_delta_base: amount_base - settled_base (positive = FX loss)
    """
    __tablename__ = "purchase_order_payments"
    __table_args__ = (
        db.Index("ix_po_payments_po_entry", "purchase_order_id", "entry_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    entry_type = db.Column(db.String(16), nullable=False, default="PAYMENT")  # PAYMENT, REVERSAL

    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    fx_rate_used = db.Column(db.Numeric(18, 6), nullable=False)
    fx_rate_source = db.Column(db.String(16), nullable=False)  # BASE, BOOKED, CALLER

    amount_base = db.Column(db.Integer, nullable=False)
    settled_base = db.Column(db.Integer, nullable=False)
    fx_delta_base = db.Column(db.Integer, nullable=False, default=0)

    reference = db.Column(db.String(120), nullable=True)
    note = db.Column(db.String(240), nullable=True)

    reversed_payment_id = db.Column(
        db.Integer, db.ForeignKey("purchase_order_payments.id"), nullable=True, unique=True
    )

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "entry_type": self.entry_type,
            "amount": self.amount,
            "currency": self.currency,
            "fx_rate_used": rate_to_str(self.fx_rate_used),
            "fx_rate_source": self.fx_rate_source,
            "amount_base": self.amount_base,
            "settled_base": self.settled_base,
            "fx_delta_base": self.fx_delta_base,
            "reference": self.reference,
            "note": self.note,
            "reversed_payment_id": self.reversed_payment_id,
            "paid_at": to_utc_z(self.paid_at),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
