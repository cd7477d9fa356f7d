"""Add product merchandising columns

Revision ID: 0001_product_merchandising
Revises:
Create Date: 2026-03-02

Legacy catalogs only carry the core product columns. Each column below is
added only when missing, so the revision is a no-op on tables that
create_all() already built from the current model.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_product_merchandising"
down_revision = None
branch_labels = None
depends_on = None


def _merchandising_columns():
    return [
        sa.Column("barcode", sa.String(128), nullable=True),
        sa.Column("qr_code", sa.Text(), nullable=True),
        sa.Column("reorder_qty", sa.Integer(), nullable=True),
        sa.Column("max_buy_qty", sa.Integer(), nullable=True),
        sa.Column("min_buy_qty", sa.Integer(), nullable=True),
        sa.Column("reseller_name", sa.String(255), nullable=True),
        sa.Column("brand", sa.String(128), nullable=True),
        sa.Column("information", sa.Text(), nullable=True),
        # SQLite refuses non-constant defaults on ADD COLUMN; backfilled below
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing = {col["name"] for col in sa.inspect(bind).get_columns("products")}

    for column in _merchandising_columns():
        if column.name not in existing:
            op.add_column("products", column)

    op.execute("UPDATE products SET created_at = CURRENT_TIMESTAMP WHERE created_at IS NULL")
    op.execute("UPDATE products SET updated_at = CURRENT_TIMESTAMP WHERE updated_at IS NULL")

    # Category-specific stocking defaults for rows that predate the columns
    op.execute(
        """
        UPDATE products SET
            reorder_qty = CASE
                WHEN category = 'food' THEN 20
                WHEN category = 'electronics' THEN 5
                WHEN category = 'clothing' THEN 15
                ELSE 10
            END,
            max_buy_qty = CASE
                WHEN category = 'food' THEN 50
                WHEN category = 'electronics' THEN 10
                WHEN category = 'clothing' THEN 25
                ELSE 100
            END,
            min_buy_qty = COALESCE(min_buy_qty, 1)
        WHERE reorder_qty IS NULL
        """
    )


def downgrade():
    with op.batch_alter_table("products") as batch_op:
        for column in reversed(_merchandising_columns()):
            batch_op.drop_column(column.name)
