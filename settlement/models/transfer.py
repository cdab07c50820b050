"""Outbound transfer records, one per idempotency key."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base
from settlement.models.payee import PaymentRail


class TransferStatus(enum.Enum):
    PENDING = "pending"      # recorded, not yet acknowledged by the provider
    SUBMITTED = "submitted"  # accepted by the provider, settlement outstanding
    COMPLETED = "completed"
    FAILED = "failed"


# A record in one of these has reached the provider; never resubmit it
SUBMITTED_STATUSES = frozenset({TransferStatus.SUBMITTED, TransferStatus.COMPLETED})


class TransferRecord(Base):
    __tablename__ = "transfer_records"

    transfer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    escrow_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    payee_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("payees.payee_id", ondelete="RESTRICT"), nullable=True
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wire_batches.batch_id", ondelete="RESTRICT"), nullable=True
    )
    line_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    source_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rail: Mapped[PaymentRail] = mapped_column(
        Enum(PaymentRail, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransferStatus.PENDING,
    )
    provider_transfer_ref: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    failure_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # Submission lease: set by the request currently calling the provider
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
