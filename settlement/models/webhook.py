"""Inbound provider webhook event log, keyed by provider event id."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base, JSONType


class ProviderEventStatus(enum.Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"  # unknown type, stale transition, or nothing to update


class ProviderEvent(Base):
    __tablename__ = "provider_events"

    provider_event_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    signature_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[ProviderEventStatus] = mapped_column(
        Enum(ProviderEventStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ProviderEventStatus.PROCESSED,
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
