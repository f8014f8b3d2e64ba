"""credit ledger, redemption codes, and payment attempts

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_ledgers",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("lifetime_generation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_user_ledgers_balance_non_negative"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "redemption_codes",
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("grant_amount", sa.Integer(), nullable=False),
        sa.Column("grant_validity_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consumed_by", sa.String(), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("code"),
    )
    op.create_index("ix_redemption_codes_consumed", "redemption_codes", ["consumed"], unique=False)
    op.create_index("ix_redemption_codes_consumed_by", "redemption_codes", ["consumed_by"], unique=False)

    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("external_session_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("grant_amount", sa.Integer(), nullable=False),
        sa.Column("grant_validity_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("external_transaction_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_attempts_user_id", "payment_attempts", ["user_id"], unique=False)
    op.create_index(
        "ix_payment_attempts_external_session_id", "payment_attempts", ["external_session_id"], unique=True
    )
    op.create_index("ix_payment_attempts_status", "payment_attempts", ["status"], unique=False)
    op.create_index("ix_payment_attempts_created_at", "payment_attempts", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_payment_attempts_created_at", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_status", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_external_session_id", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_user_id", table_name="payment_attempts")
    op.drop_table("payment_attempts")
    op.drop_index("ix_redemption_codes_consumed_by", table_name="redemption_codes")
    op.drop_index("ix_redemption_codes_consumed", table_name="redemption_codes")
    op.drop_table("redemption_codes")
    op.drop_table("user_ledgers")
