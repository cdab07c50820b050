"""Create escrows, signers, payees tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# paymentrail is shared by several tables, so every enum is created once up front
ESCROW_STATUS = postgresql.ENUM(
    "created", "deposit_pending", "funds_received", "ready_to_close", "closing", "closed", "cancelled",
    name="escrowstatus", create_type=False,
)
PAYEE_ROLE = postgresql.ENUM(
    "buyer", "seller", "listing_agent", "buyer_agent", "lender", "title_company", "escrow_fee", "other",
    name="payeerole", create_type=False,
)
PAYEE_STATUS = postgresql.ENUM(
    "pending", "processing", "completed", "failed", name="payeestatus", create_type=False,
)
PAYOUT_KIND = postgresql.ENUM("principal", "yield_return", name="payoutkind", create_type=False)
PAYMENT_RAIL = postgresql.ENUM("wire", "ach", "rtp", name="paymentrail", create_type=False)

ENUMS = (ESCROW_STATUS, PAYEE_ROLE, PAYEE_STATUS, PAYOUT_KIND, PAYMENT_RAIL)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "escrows",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column("reference", sa.String(32), unique=True, nullable=False),
        sa.Column("property_address", sa.String(512), nullable=False),
        sa.Column("purchase_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("initial_deposit", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("current_balance", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("yield_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("yield_earned", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("yield_recipient", sa.String(64), nullable=True),
        sa.Column("distributed_total", sa.Numeric(14, 2), nullable=True),
        sa.Column("settlement_ref", sa.String(128), nullable=True),
        sa.Column("required_approvals", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("wallet_ref", sa.String(128), nullable=True),
        sa.Column("deposit_account_ref", sa.String(128), nullable=True),
        sa.Column("deposit_instructions", sa.String(512), nullable=True),
        sa.Column("deposit_transfer_ref", sa.String(128), nullable=True),
        sa.Column("depositor_name", sa.String(256), nullable=False),
        sa.Column("depositor_email", sa.String(320), nullable=True),
        sa.Column("depositor_settlement_ref", sa.String(128), nullable=True),
        sa.Column("status", ESCROW_STATUS, nullable=False, server_default="created"),
        sa.Column("needs_reconciliation", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("close_initiated_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_initiated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("current_balance >= 0", name="ck_escrows_balance_non_negative"),
        sa.CheckConstraint("yield_earned >= 0", name="ck_escrows_yield_non_negative"),
        sa.CheckConstraint("required_approvals >= 1", name="ck_escrows_required_approvals"),
    )

    op.create_table(
        "signers",
        sa.Column("signer_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("role_label", sa.String(64), nullable=False, server_default="signer"),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("has_signed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("escrow_id", "wallet_address", name="uq_signers_escrow_wallet"),
        sa.UniqueConstraint("escrow_id", "ordinal", name="uq_signers_escrow_ordinal"),
    )
    op.create_index("ix_signers_escrow_id", "signers", ["escrow_id"])

    op.create_table(
        "payees",
        sa.Column("payee_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("role", PAYEE_ROLE, nullable=False),
        sa.Column("kind", PAYOUT_KIND, nullable=False, server_default="principal"),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("basis_points", sa.Integer(), nullable=True),
        sa.Column("settlement_ref", sa.String(128), nullable=False),
        sa.Column("bank_name", sa.String(128), nullable=True),
        sa.Column("account_last4", sa.String(4), nullable=True),
        sa.Column("preferred_rail", PAYMENT_RAIL, nullable=True),
        sa.Column("status", PAYEE_STATUS, nullable=False, server_default="pending"),
        sa.Column("payout_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("payout_rail", PAYMENT_RAIL, nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("transfer_ref", sa.String(128), nullable=True),
        sa.Column("failure_reason", sa.String(512), nullable=True),
        sa.Column("redrive_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("(amount IS NULL) <> (basis_points IS NULL)", name="ck_payees_exactly_one_payout"),
        sa.CheckConstraint(
            "basis_points IS NULL OR (basis_points >= 0 AND basis_points <= 10000)",
            name="ck_payees_basis_points_range",
        ),
        sa.CheckConstraint("amount IS NULL OR amount > 0", name="ck_payees_amount_positive"),
    )
    op.create_index("ix_payees_escrow_id", "payees", ["escrow_id"])


def downgrade() -> None:
    op.drop_table("payees")
    op.drop_table("signers")
    op.drop_table("escrows")
    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
