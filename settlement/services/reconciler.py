"""Settlement reconciler: applies signed provider events to escrow state.

Events arrive as JSON ``{"id", "type", "data"}``. Each provider event id is
stored once in provider_events; a redelivery is answered without touching
any state. Escrow state only advances on provider-confirmed events:
``deposit.received`` never moves an escrow past DEPOSIT_PENDING, only
``deposit.completed`` can fund it.
"""

import json
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from fastapi import HTTPException
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.errors import InvalidStateError, SignatureVerificationError
from settlement.models.audit import AuditAction
from settlement.models.escrow import Escrow, EscrowStatus
from settlement.models.payee import TERMINAL_PAYEE_STATUSES, Payee, PayeeStatus
from settlement.models.transfer import TransferRecord, TransferStatus
from settlement.models.webhook import ProviderEvent, ProviderEventStatus
from settlement.services.audit import log_audit
from settlement.services.disbursement import refresh_closed_totals, settle_if_complete
from settlement.services.escrow import (
    mark_deposit_pending,
    record_deposit,
    revert_deposit,
)
from settlement.utils.crypto import (
    is_timestamp_fresh,
    parse_signature_header,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"
PROCESSED = "processed"
IGNORED = "ignored"

DEPOSIT_EVENTS = {"deposit.received", "deposit.completed", "deposit.failed"}
TRANSFER_EVENTS = {"transfer.completed", "transfer.failed"}


class EventIgnored(Exception):
    """Nothing to apply for this event. Recorded as ignored, answered 200."""


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------

def verify_webhook(raw_body: bytes, signature_header: str | None) -> bool:
    """Check the provider signature and timestamp freshness.

    Returns True when verified. Returns False only when unverified delivery
    is explicitly allowed outside production; otherwise raises
    SignatureVerificationError.
    """
    problem = _signature_problem(raw_body, signature_header)
    if problem is None:
        return True
    if settings.unverified_webhooks_allowed:
        logger.warning("Accepting unverified webhook (%s); not allowed in production", problem)
        return False
    raise SignatureVerificationError(problem)


def _signature_problem(raw_body: bytes, signature_header: str | None) -> str | None:
    if not signature_header:
        return "Missing signature header"
    parsed = parse_signature_header(signature_header)
    if parsed is None:
        return "Malformed signature header"
    timestamp, signature = parsed
    if not is_timestamp_fresh(timestamp, settings.webhook_max_age_seconds):
        return "Signature timestamp outside the allowed window"
    if not settings.webhook_public_key:
        return "Webhook public key not configured"
    if not verify_webhook_signature(settings.webhook_public_key, signature, timestamp, raw_body):
        return "Invalid signature"
    return None


def parse_event(raw_body: bytes) -> dict:
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise HTTPException(status_code=400, detail="Webhook event must carry id and type")
    if not isinstance(event.get("data"), dict):
        event["data"] = {}
    return event


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _as_uuid(value: object) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


async def _find_deposit_escrow(db: AsyncSession, data: dict) -> Escrow | None:
    metadata = data.get("metadata") or {}
    candidates = [metadata.get("escrow_id"), data.get("external_id")]
    for candidate in candidates:
        if not candidate:
            continue
        escrow_id = _as_uuid(candidate)
        clause = Escrow.escrow_id == escrow_id if escrow_id else Escrow.reference == str(candidate)
        result = await db.execute(select(Escrow).where(clause).with_for_update())
        escrow = result.scalar_one_or_none()
        if escrow is not None:
            return escrow
    account = data.get("virtual_account_id")
    if account:
        result = await db.execute(
            select(Escrow).where(Escrow.deposit_account_ref == account).with_for_update()
        )
        return result.scalar_one_or_none()
    return None


async def _find_transfer(db: AsyncSession, data: dict) -> TransferRecord | None:
    metadata = data.get("metadata") or {}
    clauses = []
    if data.get("id"):
        clauses.append(TransferRecord.provider_transfer_ref == str(data["id"]))
    if metadata.get("idempotency_key"):
        clauses.append(TransferRecord.idempotency_key == str(metadata["idempotency_key"]))
    if not clauses:
        return None
    result = await db.execute(select(TransferRecord).where(or_(*clauses)).limit(1))
    return result.scalar_one_or_none()


def _amount(data: dict) -> Decimal:
    try:
        amount = Decimal(str(data.get("amount")))
    except (InvalidOperation, ValueError):
        raise InvalidStateError(f"Invalid deposit amount: {data.get('amount')!r}")
    if not amount.is_finite():
        raise InvalidStateError(f"Invalid deposit amount: {data.get('amount')!r}")
    return amount.quantize(Decimal("0.01"))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _apply_deposit_event(db: AsyncSession, event_type: str, data: dict) -> None:
    escrow = await _find_deposit_escrow(db, data)
    if escrow is None:
        raise EventIgnored("No escrow matches this deposit")

    destination = (data.get("destination") or {}).get("wallet_id")
    if destination and escrow.wallet_ref and destination != escrow.wallet_ref:
        logger.error(
            "Deposit for %s landed in wallet %s, expected %s",
            escrow.reference, destination, escrow.wallet_ref,
        )
        await log_audit(
            db, AuditAction.DEPOSIT_WALLET_MISMATCH,
            escrow_id=escrow.escrow_id,
            actor="provider",
            details={
                "expected": escrow.wallet_ref,
                "received": destination,
                "amount": str(data.get("amount")),
            },
        )
        raise EventIgnored("Deposit destination wallet does not match the escrow wallet")

    if event_type == "deposit.received":
        amount = _amount(data) if data.get("amount") is not None else None
        if not await mark_deposit_pending(db, escrow, amount):
            raise EventIgnored(f"Escrow already {escrow.status.value}")
    elif event_type == "deposit.completed":
        await record_deposit(db, escrow, _amount(data), transfer_ref=data.get("id"))
        logger.info("Escrow %s funded: %s", escrow.reference, escrow.current_balance)
    else:
        if not await revert_deposit(db, escrow, reason=data.get("failure_reason")):
            raise EventIgnored(f"No pending deposit to fail (escrow is {escrow.status.value})")


async def _apply_transfer_event(db: AsyncSession, event_type: str, data: dict) -> None:
    record = await _find_transfer(db, data)
    if record is None:
        raise EventIgnored("No transfer matches this event")

    completed = event_type == "transfer.completed"
    if record.status in (TransferStatus.COMPLETED, TransferStatus.FAILED):
        raise EventIgnored(f"Transfer already {record.status.value}")
    record.status = TransferStatus.COMPLETED if completed else TransferStatus.FAILED
    if data.get("id") and not record.provider_transfer_ref:
        record.provider_transfer_ref = str(data["id"])
    if not completed:
        record.failure_reason = str(data.get("failure_reason") or "Transfer failed at provider")[:512]
    record.updated_at = datetime.now(UTC)

    # Batch results are immutable once written; only the record moves
    if record.payee_id is None or record.escrow_id is None:
        return

    escrow = (
        await db.execute(
            select(Escrow).where(Escrow.escrow_id == record.escrow_id).with_for_update()
        )
    ).scalar_one()
    payee = await db.get(Payee, record.payee_id)
    if payee is None or payee.status in TERMINAL_PAYEE_STATUSES:
        return
    if payee.idempotency_key and payee.idempotency_key != record.idempotency_key:
        # Superseded by a later re-drive attempt
        return

    if completed:
        payee.status = PayeeStatus.COMPLETED
        payee.paid_at = datetime.now(UTC)
        payee.transfer_ref = record.provider_transfer_ref
        action = AuditAction.PAYOUT_COMPLETED
    else:
        payee.status = PayeeStatus.FAILED
        payee.failure_reason = record.failure_reason
        action = AuditAction.PAYOUT_FAILED
    await log_audit(
        db, action,
        escrow_id=escrow.escrow_id,
        actor="provider",
        details={
            "payee_id": str(payee.payee_id),
            "transfer_ref": record.provider_transfer_ref,
            "amount": str(record.amount),
            "error": record.failure_reason if not completed else None,
        },
    )
    await db.flush()

    if escrow.status == EscrowStatus.CLOSING:
        if await settle_if_complete(db, escrow):
            logger.info("Escrow %s closed from provider confirmation", escrow.reference)
    elif escrow.status == EscrowStatus.CLOSED:
        await refresh_closed_totals(db, escrow)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _already_seen(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(select(ProviderEvent.provider_event_pk).where(ProviderEvent.event_id == event_id))
    return result.scalar_one_or_none() is not None


async def process_event(db: AsyncSession, event: dict, signature_verified: bool) -> str:
    """Apply one provider event. Returns processed, ignored or duplicate."""
    event_id = str(event["id"])
    event_type = str(event["type"])
    data = event.get("data") or {}

    if await _already_seen(db, event_id):
        logger.info("Duplicate provider event %s (%s)", event_id, event_type)
        return DUPLICATE

    stored = ProviderEvent(
        provider_event_pk=uuid.uuid4(),
        event_id=event_id,
        event_type=event_type,
        payload=event,
        signature_verified=signature_verified,
        status=ProviderEventStatus.PROCESSED,
    )
    db.add(stored)

    try:
        if event_type in DEPOSIT_EVENTS:
            await _apply_deposit_event(db, event_type, data)
        elif event_type in TRANSFER_EVENTS:
            await _apply_transfer_event(db, event_type, data)
        else:
            raise EventIgnored(f"Unhandled event type {event_type}")
    except (EventIgnored, InvalidStateError) as e:
        note = str(e.detail) if isinstance(e, InvalidStateError) else str(e)
        logger.info("Provider event %s (%s) ignored: %s", event_id, event_type, note)
        stored.status = ProviderEventStatus.IGNORED
        stored.note = note

    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event id won the insert
        await db.rollback()
        logger.info("Duplicate provider event %s lost insert race", event_id)
        return DUPLICATE
    return PROCESSED if stored.status == ProviderEventStatus.PROCESSED else IGNORED
