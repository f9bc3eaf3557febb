"""hold wallet credit for pending orders

Revision ID: 0002_wallet_reservations
Revises: 0001_store
Create Date: 2026-10-20
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_wallet_reservations"
down_revision = "0001_store"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "wallets",
        sa.Column("reserved_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.alter_column("wallets", "reserved_cents", server_default=None)
    op.create_check_constraint("ck_wallet_reserved_non_negative", "wallets", "reserved_cents >= 0")

    op.add_column(
        "orders",
        sa.Column("wallet_reserved_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.alter_column("orders", "wallet_reserved_cents", server_default=None)
    op.add_column("orders", sa.Column("wallet_reservation_status", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("orders", "wallet_reservation_status")
    op.drop_column("orders", "wallet_reserved_cents")
    op.drop_constraint("ck_wallet_reserved_non_negative", "wallets", type_="check")
    op.drop_column("wallets", "reserved_cents")
