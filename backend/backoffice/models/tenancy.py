from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class Store(db.Model):
    """
    Store: the tenant boundary.

    WHY: Every product, movement, purchase order, idempotency key and audit
    row is scoped by store_id. No query may cross store boundaries.

    CURRENCY CONFIG:
    - currency is the store base currency; every *_base amount is in it
    - supported_currencies is a comma list of currencies purchase orders and
      payments may use. The base currency is always implicitly supported.

    STOCK THRESHOLDS:
    Store-wide defaults for low-stock classification. Products may override.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_stores_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, index=True)

    currency = db.Column(db.String(3), nullable=False, default="LAK")
    supported_currencies = db.Column(db.String(64), nullable=False, default="LAK")

    out_stock_threshold = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=10)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def supported_currency_list(self) -> list[str]:
        codes = [c.strip().upper() for c in (self.supported_currencies or "").split(",") if c.strip()]
        base = (self.currency or "").upper()
        if base and base not in codes:
            codes.insert(0, base)
        return codes

    def __repr__(self) -> str:
        return f"<Store id={self.id} code={self.code!r} currency={self.currency}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "currency": self.currency,
            "supported_currencies": self.supported_currency_list(),
            "out_stock_threshold": self.out_stock_threshold,
            "low_stock_threshold": self.low_stock_threshold,
            "created_at": to_utc_z(self.created_at),
        }
