"""Append-only audit log model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base, JSONType


class AuditAction(enum.Enum):
    ESCROW_CREATED = "escrow_created"
    ESCROW_CANCELLED = "escrow_cancelled"
    DEPOSIT_PENDING = "deposit_pending"
    DEPOSIT_COMPLETED = "deposit_completed"
    DEPOSIT_FAILED = "deposit_failed"
    DEPOSIT_WALLET_MISMATCH = "deposit_wallet_mismatch"
    READY_TO_CLOSE = "ready_to_close"
    CLOSE_INITIATED = "close_initiated"
    SIGNER_ADDED = "signer_added"
    SIGNATURE_ADDED = "signature_added"
    CLOSING = "closing"
    PAYEE_ADDED = "payee_added"
    PAYEE_REMOVED = "payee_removed"
    YIELD_ALLOCATED = "yield_allocated"
    PAYOUT_SUBMITTED = "payout_submitted"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_REDRIVEN = "payout_redriven"
    DISBURSEMENT_COMPLETED = "disbursement_completed"
    DISBURSEMENT_INCOMPLETE = "disbursement_incomplete"
    ESCROW_CLOSED = "escrow_closed"
    BATCH_UPLOADED = "batch_uploaded"
    BATCH_APPROVED = "batch_approved"
    BATCH_REJECTED = "batch_rejected"
    BATCH_EXECUTED = "batch_executed"
    BATCH_CANCELLED = "batch_cancelled"
    BATCH_FUNDS_RESERVED = "batch_funds_reserved"
    BATCH_FUNDS_RELEASED = "batch_funds_released"


class AuditEvent(Base):
    """Append-only audit log. Never update or delete rows.

    Details carry amounts, statuses and opaque references only; never raw
    account or routing numbers.
    """
    __tablename__ = "audit_events"

    audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wire_batches.batch_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)  # wallet, or "provider"
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
