"""Audit log writes and the per-escrow audit query."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.models.audit import AuditAction, AuditEvent


async def log_audit(
    db: AsyncSession,
    action: AuditAction,
    *,
    escrow_id: uuid.UUID | None = None,
    batch_id: uuid.UUID | None = None,
    actor: str | None = None,
    details: dict | None = None,
) -> AuditEvent:
    """Append to the immutable audit log. Committed with the caller's transaction."""
    entry = AuditEvent(
        audit_id=uuid.uuid4(),
        escrow_id=escrow_id,
        batch_id=batch_id,
        action=action,
        actor=actor,
        details=details,
    )
    db.add(entry)
    return entry


async def list_escrow_audit(db: AsyncSession, escrow_id: uuid.UUID) -> list[AuditEvent]:
    """Audit events for an escrow, newest first."""
    result = await db.execute(
        select(AuditEvent)
        .where(AuditEvent.escrow_id == escrow_id)
        .order_by(AuditEvent.created_at.desc())
    )
    return list(result.scalars().all())


async def list_batch_audit(db: AsyncSession, batch_id: uuid.UUID) -> list[AuditEvent]:
    result = await db.execute(
        select(AuditEvent)
        .where(AuditEvent.batch_id == batch_id)
        .order_by(AuditEvent.created_at.desc())
    )
    return list(result.scalars().all())
