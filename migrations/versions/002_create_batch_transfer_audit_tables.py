"""Create wire batch, transfer record, provider event and audit tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BATCH_STATUS = postgresql.ENUM(
    "uploaded", "approved", "rejected", "processing", "completed", "partial", "failed", "cancelled",
    name="batchstatus", create_type=False,
)
BATCH_FILE_TYPE = postgresql.ENUM("nacha", "csv", name="batchfiletype", create_type=False)
LINE_RESULT = postgresql.ENUM("pending", "success", "failed", "skipped", name="lineresult", create_type=False)
TRANSFER_STATUS = postgresql.ENUM(
    "pending", "submitted", "completed", "failed", name="transferstatus", create_type=False,
)
PROVIDER_EVENT_STATUS = postgresql.ENUM(
    "processed", "ignored", name="providereventstatus", create_type=False,
)
AUDIT_ACTION = postgresql.ENUM(
    "escrow_created", "escrow_cancelled",
    "deposit_pending", "deposit_completed", "deposit_failed", "deposit_wallet_mismatch",
    "ready_to_close", "close_initiated", "signer_added", "signature_added", "closing",
    "payee_added", "payee_removed", "yield_allocated",
    "payout_submitted", "payout_completed", "payout_failed", "payout_redriven",
    "disbursement_completed", "disbursement_incomplete", "escrow_closed",
    "batch_uploaded", "batch_approved", "batch_rejected", "batch_executed", "batch_cancelled",
    "batch_funds_reserved", "batch_funds_released",
    name="auditaction", create_type=False,
)
# Created in 001
PAYMENT_RAIL = postgresql.ENUM("wire", "ach", "rtp", name="paymentrail", create_type=False)

ENUMS = (BATCH_STATUS, BATCH_FILE_TYPE, LINE_RESULT, TRANSFER_STATUS, PROVIDER_EVENT_STATUS, AUDIT_ACTION)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "wire_batches",
        sa.Column("batch_id", sa.Uuid(), primary_key=True),
        sa.Column("reference", sa.String(32), unique=True, nullable=False),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("file_name", sa.String(256), nullable=False),
        sa.Column("file_type", BATCH_FILE_TYPE, nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("status", BATCH_STATUS, nullable=False, server_default="uploaded"),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("rail_subtotals", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("parse_errors", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("missing_bank_details", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("maker_wallet", sa.String(64), nullable=False),
        sa.Column("checker_wallet", sa.String(64), nullable=True),
        sa.Column("checker_notes", sa.String(1024), nullable=True),
        sa.Column("source_account_ref", sa.String(128), nullable=True),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_wire_batches_escrow_id", "wire_batches", ["escrow_id"])

    op.create_table(
        "wire_batch_items",
        sa.Column("item_id", sa.Uuid(), primary_key=True),
        sa.Column("batch_id", sa.Uuid(), sa.ForeignKey("wire_batches.batch_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("payee_name", sa.String(256), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("memo", sa.String(256), nullable=True),
        sa.Column("rail", PAYMENT_RAIL, nullable=False),
        sa.Column("settlement_ref", sa.String(128), nullable=True),
        sa.Column("account_last4", sa.String(4), nullable=True),
        sa.Column("account_type", sa.String(16), nullable=True),
        sa.Column("result", LINE_RESULT, nullable=False, server_default="pending"),
        sa.Column("transfer_ref", sa.String(128), nullable=True),
        sa.Column("error_message", sa.String(512), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("batch_id", "line_number", name="uq_wire_batch_items_line"),
    )
    op.create_index("ix_wire_batch_items_batch_id", "wire_batch_items", ["batch_id"])

    op.create_table(
        "transfer_records",
        sa.Column("transfer_id", sa.Uuid(), primary_key=True),
        sa.Column("idempotency_key", sa.String(128), unique=True, nullable=False),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("payee_id", sa.Uuid(), sa.ForeignKey("payees.payee_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("batch_id", sa.Uuid(), sa.ForeignKey("wire_batches.batch_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("line_number", sa.Integer(), nullable=True),
        sa.Column("source_ref", sa.String(128), nullable=False),
        sa.Column("destination_ref", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("rail", PAYMENT_RAIL, nullable=False),
        sa.Column("status", TRANSFER_STATUS, nullable=False, server_default="pending"),
        sa.Column("provider_transfer_ref", sa.String(128), nullable=True),
        sa.Column("failure_reason", sa.String(512), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_transfer_records_escrow_id", "transfer_records", ["escrow_id"])
    op.create_index("ix_transfer_records_provider_transfer_ref", "transfer_records", ["provider_transfer_ref"])

    op.create_table(
        "provider_events",
        sa.Column("provider_event_pk", sa.Uuid(), primary_key=True),
        sa.Column("event_id", sa.String(128), unique=True, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("status", PROVIDER_EVENT_STATUS, nullable=False, server_default="processed"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "audit_events",
        sa.Column("audit_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("batch_id", sa.Uuid(), sa.ForeignKey("wire_batches.batch_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("action", AUDIT_ACTION, nullable=False),
        sa.Column("actor", sa.String(64), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_escrow_id", "audit_events", ["escrow_id"])
    op.create_index("ix_audit_events_batch_id", "audit_events", ["batch_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("provider_events")
    op.drop_table("transfer_records")
    op.drop_table("wire_batch_items")
    op.drop_table("wire_batches")
    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
