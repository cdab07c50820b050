"""Wire batch (bulk payout upload) and line item models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base, JSONType
from settlement.models.payee import PaymentRail


class BatchStatus(enum.Enum):
    UPLOADED = "uploaded"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.UPLOADED: {
        BatchStatus.APPROVED,
        BatchStatus.REJECTED,
        BatchStatus.PROCESSING,
        BatchStatus.CANCELLED,
    },
    BatchStatus.APPROVED: {BatchStatus.PROCESSING, BatchStatus.CANCELLED},
    BatchStatus.REJECTED: {BatchStatus.CANCELLED},
    BatchStatus.PROCESSING: {BatchStatus.COMPLETED, BatchStatus.PARTIAL, BatchStatus.FAILED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.PARTIAL: set(),
    BatchStatus.FAILED: set(),
    BatchStatus.CANCELLED: set(),
}

# Execution results are frozen once a batch reaches one of these
RESULT_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.PARTIAL, BatchStatus.FAILED})


class BatchFileType(enum.Enum):
    NACHA = "nacha"
    CSV = "csv"


class LineResult(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class WireBatch(Base):
    __tablename__ = "wire_batches"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    escrow_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    file_name: Mapped[str] = mapped_column(String(256), nullable=False)
    file_type: Mapped[BatchFileType] = mapped_column(
        Enum(BatchFileType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=BatchStatus.UPLOADED,
    )

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    # {"wire": {"count": 2, "total": "250000.00"}, "ach": {...}}
    rail_subtotals: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    parse_errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    missing_bank_details: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    maker_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    checker_wallet: Mapped[str | None] = mapped_column(String(64), nullable=True)
    checker_notes: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    source_account_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WireBatchItem(Base):
    __tablename__ = "wire_batch_items"
    __table_args__ = (
        UniqueConstraint("batch_id", "line_number", name="uq_wire_batch_items_line"),
    )

    item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wire_batches.batch_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    payee_name: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    memo: Mapped[str | None] = mapped_column(String(256), nullable=True)
    rail: Mapped[PaymentRail] = mapped_column(
        Enum(PaymentRail, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    # None when the file line carried no usable bank details
    settlement_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    account_type: Mapped[str | None] = mapped_column(String(16), nullable=True)

    result: Mapped[LineResult] = mapped_column(
        Enum(LineResult, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=LineResult.PENDING,
    )
    transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(512), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
