"""Per-item idempotent transfer path, shared by escrow closes and wire batches.

A transfer is staged as a TransferRecord (unique idempotency key) and
committed before the provider is called. Submission then fans out with
bounded parallelism and joins on every outcome before anything is applied,
so the caller's rollup never runs on a partial result set.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.errors import ProviderCallError
from settlement.models.payee import PaymentRail
from settlement.models.transfer import SUBMITTED_STATUSES, TransferRecord, TransferStatus
from settlement.services.custody import CustodyGateway

logger = logging.getLogger(__name__)


@dataclass
class TransferOutcome:
    record: TransferRecord
    success: bool
    transfer_ref: str | None = None
    settled: bool = False
    error: str | None = None
    replayed: bool = False  # already submitted earlier; the provider was not called again

    def to_dict(self) -> dict:
        return {
            "idempotency_key": self.record.idempotency_key,
            "success": self.success,
            "transfer_ref": self.transfer_ref,
            "settled": self.settled,
            "error": self.error,
            "replayed": self.replayed,
        }


async def get_transfer_by_key(db: AsyncSession, key: str) -> TransferRecord | None:
    result = await db.execute(
        select(TransferRecord).where(TransferRecord.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def stage_transfer(
    db: AsyncSession,
    key: str,
    *,
    source_ref: str,
    destination_ref: str,
    amount: Decimal,
    rail: PaymentRail,
    escrow_id: uuid.UUID | None = None,
    payee_id: uuid.UUID | None = None,
    batch_id: uuid.UUID | None = None,
    line_number: int | None = None,
) -> TransferRecord:
    """Return the record for this key, creating it if it does not exist yet."""
    existing = await get_transfer_by_key(db, key)
    if existing is not None:
        return existing
    record = TransferRecord(
        transfer_id=uuid.uuid4(),
        idempotency_key=key,
        escrow_id=escrow_id,
        payee_id=payee_id,
        batch_id=batch_id,
        line_number=line_number,
        source_ref=source_ref,
        destination_ref=destination_ref,
        amount=amount,
        rail=rail,
        status=TransferStatus.PENDING,
    )
    db.add(record)
    return record


async def claim_transfers(db: AsyncSession, records: list[TransferRecord]) -> list[TransferRecord]:
    """Take the submission lease on every PENDING record this request may send.

    A record leased by a concurrent request is dropped from the result, so
    only one caller submits and applies its outcome. Records that already
    reached the provider pass through and are replayed, not resent.
    """
    await db.flush()
    now = datetime.now(UTC)
    expired = now - timedelta(seconds=settings.transfer_claim_lease_seconds)
    claimed: list[TransferRecord] = []
    for record in records:
        if record.status != TransferStatus.PENDING:
            claimed.append(record)
            continue
        result = await db.execute(
            update(TransferRecord)
            .where(
                TransferRecord.transfer_id == record.transfer_id,
                TransferRecord.status == TransferStatus.PENDING,
                or_(TransferRecord.claimed_at.is_(None), TransferRecord.claimed_at < expired),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("Transfer %s is being submitted by another request", record.idempotency_key)
            continue
        record.claimed_at = now
        claimed.append(record)
    return claimed


def release_unresolved(records: list[TransferRecord], outcomes: list[TransferOutcome]) -> None:
    """Drop the lease on records whose outcome is unknown so a later run can resubmit them."""
    resolved = {outcome.record.transfer_id for outcome in outcomes}
    for record in records:
        if record.transfer_id not in resolved and record.status == TransferStatus.PENDING:
            record.claimed_at = None


def _metadata(record: TransferRecord) -> dict[str, str]:
    meta = {"idempotency_key": record.idempotency_key}
    if record.escrow_id is not None:
        meta["escrow_id"] = str(record.escrow_id)
    if record.payee_id is not None:
        meta["payee_id"] = str(record.payee_id)
    if record.batch_id is not None:
        meta["batch_id"] = str(record.batch_id)
        meta["line_number"] = str(record.line_number)
    return meta


async def _submit_one(
    gateway: CustodyGateway, record: TransferRecord, semaphore: asyncio.Semaphore
) -> TransferOutcome:
    if record.status in SUBMITTED_STATUSES:
        return TransferOutcome(
            record=record,
            success=True,
            transfer_ref=record.provider_transfer_ref,
            settled=record.status == TransferStatus.COMPLETED,
            replayed=True,
        )
    async with semaphore:
        try:
            receipt = await gateway.transfer(
                record.idempotency_key,
                record.source_ref,
                record.destination_ref,
                record.amount,
                record.rail,
                _metadata(record),
            )
        except ProviderCallError as e:
            logger.warning("Transfer %s failed: %s", record.idempotency_key, e.detail)
            return TransferOutcome(record=record, success=False, error=str(e.detail))
    return TransferOutcome(
        record=record,
        success=True,
        transfer_ref=receipt.transfer_ref,
        settled=receipt.settled,
    )


async def submit_transfers(
    gateway: CustodyGateway,
    records: list[TransferRecord],
    max_concurrency: int | None = None,
) -> list[TransferOutcome]:
    """Submit every record with bounded parallelism and wait for all of them.

    Records whose outcome is unknown (an unexpected error, not a provider
    rejection) are left out of the result and stay PENDING; resubmitting them
    later reuses the same idempotency key.
    """
    semaphore = asyncio.Semaphore(max_concurrency or settings.disbursement_max_concurrency)
    results = await asyncio.gather(
        *(_submit_one(gateway, record, semaphore) for record in records),
        return_exceptions=True,
    )
    outcomes: list[TransferOutcome] = []
    for record, result in zip(records, results):
        if isinstance(result, BaseException):
            logger.error(
                "Transfer %s outcome unknown, left pending: %r", record.idempotency_key, result
            )
            continue
        outcomes.append(result)
    return outcomes


def apply_outcome(outcome: TransferOutcome) -> None:
    """Write a submission outcome onto its TransferRecord."""
    record = outcome.record
    if outcome.replayed:
        return
    if outcome.success:
        record.provider_transfer_ref = outcome.transfer_ref
        record.status = TransferStatus.COMPLETED if outcome.settled else TransferStatus.SUBMITTED
    else:
        record.status = TransferStatus.FAILED
        record.failure_reason = (outcome.error or "")[:512]
    record.updated_at = datetime.now(UTC)
