"""Signer model: authorized approvers of an escrow's closure."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base


class Signer(Base):
    __tablename__ = "signers"
    __table_args__ = (
        UniqueConstraint("escrow_id", "wallet_address", name="uq_signers_escrow_wallet"),
        UniqueConstraint("escrow_id", "ordinal", name="uq_signers_escrow_ordinal"),
    )

    signer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)  # lowercased
    role_label: Mapped[str] = mapped_column(String(64), nullable=False, default="signer")
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 = initiating party
    has_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
