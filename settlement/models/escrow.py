"""Escrow account model and its status state machine."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base


class EscrowStatus(enum.Enum):
    CREATED = "created"
    DEPOSIT_PENDING = "deposit_pending"
    FUNDS_RECEIVED = "funds_received"
    READY_TO_CLOSE = "ready_to_close"
    CLOSING = "closing"
    CLOSED = "closed"
    CANCELLED = "cancelled"


# DEPOSIT_PENDING -> CREATED is the provider reporting a failed deposit.
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.CREATED: {
        EscrowStatus.DEPOSIT_PENDING,
        EscrowStatus.FUNDS_RECEIVED,
        EscrowStatus.CANCELLED,
    },
    EscrowStatus.DEPOSIT_PENDING: {
        EscrowStatus.FUNDS_RECEIVED,
        EscrowStatus.CREATED,
        EscrowStatus.CANCELLED,
    },
    EscrowStatus.FUNDS_RECEIVED: {EscrowStatus.READY_TO_CLOSE, EscrowStatus.CANCELLED},
    EscrowStatus.READY_TO_CLOSE: {EscrowStatus.CLOSING, EscrowStatus.CANCELLED},
    EscrowStatus.CLOSING: {EscrowStatus.CLOSED},
    EscrowStatus.CLOSED: set(),
    EscrowStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({EscrowStatus.CLOSED, EscrowStatus.CANCELLED})

# Statuses in which payees and signers may still be edited
EDITABLE_STATUSES = frozenset({
    EscrowStatus.CREATED,
    EscrowStatus.DEPOSIT_PENDING,
    EscrowStatus.FUNDS_RECEIVED,
    EscrowStatus.READY_TO_CLOSE,
})


class Escrow(Base):
    __tablename__ = "escrows"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_escrows_balance_non_negative"),
        CheckConstraint("yield_earned >= 0", name="ck_escrows_yield_non_negative"),
        CheckConstraint("required_approvals >= 1", name="ck_escrows_required_approvals"),
    )

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    property_address: Mapped[str] = mapped_column(String(512), nullable=False)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    initial_deposit: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    yield_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    yield_earned: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    # Payee id of the buyer, or "depositor" when a yield-return line was synthesized
    yield_recipient: Mapped[str | None] = mapped_column(String(64), nullable=True)
    distributed_total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    settlement_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Custody references, owned by the provider
    wallet_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deposit_account_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deposit_instructions: Mapped[str | None] = mapped_column(String(512), nullable=True)
    deposit_transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    depositor_name: Mapped[str] = mapped_column(String(256), nullable=False)
    depositor_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    # Tokenized destination for a yield-return payout when no BUYER payee exists
    depositor_settlement_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.CREATED,
    )
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    close_initiated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    close_initiated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
