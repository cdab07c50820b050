"""Payee model and the payout specification variant."""

import enum
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base


class PayeeRole(enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    LISTING_AGENT = "listing_agent"
    BUYER_AGENT = "buyer_agent"
    LENDER = "lender"
    TITLE_COMPANY = "title_company"
    ESCROW_FEE = "escrow_fee"
    OTHER = "other"


class PayeeStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PAYEE_STATUSES = frozenset({PayeeStatus.COMPLETED, PayeeStatus.FAILED})


class PayoutKind(enum.Enum):
    PRINCIPAL = "principal"
    YIELD_RETURN = "yield_return"


class PaymentRail(enum.Enum):
    WIRE = "wire"
    ACH = "ach"
    RTP = "rtp"


@dataclass(frozen=True)
class FixedAmount:
    amount: Decimal


@dataclass(frozen=True)
class Percentage:
    basis_points: int


PayoutSpec = FixedAmount | Percentage


class Payee(Base):
    __tablename__ = "payees"
    __table_args__ = (
        CheckConstraint(
            "(amount IS NULL) <> (basis_points IS NULL)",
            name="ck_payees_exactly_one_payout",
        ),
        CheckConstraint(
            "basis_points IS NULL OR (basis_points >= 0 AND basis_points <= 10000)",
            name="ck_payees_basis_points_range",
        ),
        CheckConstraint("amount IS NULL OR amount > 0", name="ck_payees_amount_positive"),
    )

    payee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[PayeeRole] = mapped_column(
        Enum(PayeeRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    kind: Mapped[PayoutKind] = mapped_column(
        Enum(PayoutKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PayoutKind.PRINCIPAL,
    )

    # Exactly one of these is set; read and write through payout_spec
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    basis_points: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Tokenized destination. Raw account/routing numbers are never stored.
    settlement_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    bank_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    preferred_rail: Mapped[PaymentRail | None] = mapped_column(
        Enum(PaymentRail, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )

    status: Mapped[PayeeStatus] = mapped_column(
        Enum(PayeeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PayeeStatus.PENDING,
    )
    # Stamped at close: resolved amount including any yield, and the rail used
    payout_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    payout_rail: Mapped[PaymentRail | None] = mapped_column(
        Enum(PaymentRail, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transfer_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    redrive_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def payout_spec(self) -> PayoutSpec:
        if self.amount is not None:
            return FixedAmount(self.amount)
        return Percentage(self.basis_points or 0)

    @payout_spec.setter
    def payout_spec(self, spec: PayoutSpec) -> None:
        if isinstance(spec, FixedAmount):
            self.amount, self.basis_points = spec.amount, None
        else:
            self.amount, self.basis_points = None, spec.basis_points
