"""Purchase order exchange-rate lock

Revision ID: 20261018_po_rate_lock
Revises: 20261001_core
Create Date: 2026-10-18

Foreign-currency purchase orders may be booked at an estimated rate and
locked to the final rate after receipt. Existing rows are treated as
locked (their rate was always explicit).
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_po_rate_lock"
down_revision = "20261001_core"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("purchase_orders", schema=None) as batch_op:
        batch_op.add_column(sa.Column("exchange_rate_locked_at", sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column("exchange_rate_locked_by", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("exchange_rate_lock_note", sa.String(length=240), nullable=True))
        batch_op.create_foreign_key(
            "fk_purchase_orders_rate_locked_by", "users", ["exchange_rate_locked_by"], ["id"],
        )
        batch_op.create_index("ix_purchase_orders_store_rate_lock", ["store_id", "exchange_rate_locked_at"], unique=False)

    op.execute("UPDATE purchase_orders SET exchange_rate_locked_at = created_at WHERE exchange_rate_locked_at IS NULL")


def downgrade():
    with op.batch_alter_table("purchase_orders", schema=None) as batch_op:
        batch_op.drop_index("ix_purchase_orders_store_rate_lock")
        batch_op.drop_constraint("fk_purchase_orders_rate_locked_by", type_="foreignkey")
        batch_op.drop_column("exchange_rate_lock_note")
        batch_op.drop_column("exchange_rate_locked_by")
        batch_op.drop_column("exchange_rate_locked_at")
