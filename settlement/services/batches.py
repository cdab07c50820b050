"""Bulk payout batches under maker/checker dual control.

The maker uploads a file; a different wallet (the checker) approves or
rejects it. Execution reuses the per-item idempotent transfer path of the
escrow close, one TransferRecord per line keyed by (batch, line number).
Results are written once, when the batch leaves PROCESSING, and never
change afterwards.
"""

import csv
import io
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.errors import (
    BatchValidationError,
    DualControlViolation,
    InsufficientFundsError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
)
from settlement.models.audit import AuditAction
from settlement.models.batch import (
    RESULT_STATUSES,
    VALID_TRANSITIONS,
    BatchStatus,
    LineResult,
    WireBatch,
    WireBatchItem,
)
from settlement.models.escrow import Escrow, EscrowStatus
from settlement.models.transfer import TransferRecord, TransferStatus
from settlement.services.approvals import get_approval_status
from settlement.services.audit import log_audit
from settlement.services.batch_parser import ParsedLine, parse_batch_file
from settlement.services.custody import BankDetails, CustodyGateway
from settlement.services.escrow import get_escrow, require_signer
from settlement.services.payouts import determine_rail
from settlement.services.transfers import (
    TransferOutcome,
    apply_outcome,
    claim_transfers,
    release_unresolved,
    stage_transfer,
    submit_transfers,
)
from settlement.utils.banking import last4
from settlement.utils.crypto import content_hash, idempotency_key

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = frozenset({BatchStatus.UPLOADED, BatchStatus.APPROVED, BatchStatus.REJECTED})
# Escrow states holding confirmed funds that a batch may draw on
ESCROW_FUNDING_STATUSES = frozenset({
    EscrowStatus.FUNDS_RECEIVED, EscrowStatus.READY_TO_CLOSE, EscrowStatus.CLOSING,
})

POSITIVE_PAY_HEADER = [
    "Date",
    "Check/Wire Number",
    "Payee",
    "Amount",
    "Status",
    "Payment Type",
    "Reference ID",
    "Confirmation Number",
]


def _assert_transition(current: BatchStatus, target: BatchStatus) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition batch from {current.value} to {target.value}"
        )


def _same_wallet(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def generate_batch_reference() -> str:
    return f"WB-{datetime.now(UTC).year}-{secrets.randbelow(100_000_000):08d}"


def line_transfer_key(batch_id: uuid.UUID, line_number: int) -> str:
    return idempotency_key("batch", batch_id, f"line-{line_number}")


def rail_subtotals(lines: list[ParsedLine]) -> dict[str, dict]:
    totals: dict[str, dict] = {}
    for line in lines:
        rail = determine_rail(line.amount).value
        entry = totals.setdefault(rail, {"count": 0, "total": Decimal("0.00")})
        entry["count"] += 1
        entry["total"] += line.amount
    return {rail: {"count": e["count"], "total": str(e["total"])} for rail, e in totals.items()}


@dataclass
class BatchExecution:
    batch: WireBatch
    outcomes: list[TransferOutcome]
    skipped: int

    @property
    def pending(self) -> bool:
        return self.batch.status == BatchStatus.PROCESSING


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_batch(db: AsyncSession, batch_id: uuid.UUID, for_update: bool = False) -> WireBatch:
    stmt = select(WireBatch).where(WireBatch.batch_id == batch_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    batch = result.scalar_one_or_none()
    if batch is None:
        raise NotFoundError("Batch", batch_id)
    return batch


async def list_items(db: AsyncSession, batch_id: uuid.UUID) -> list[WireBatchItem]:
    result = await db.execute(
        select(WireBatchItem)
        .where(WireBatchItem.batch_id == batch_id)
        .order_by(WireBatchItem.line_number)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

async def _tokenize_line(gateway: CustodyGateway, batch_id: uuid.UUID, line: ParsedLine) -> str | None:
    if not line.has_bank_details:
        return None
    return await gateway.tokenize_recipient(
        idempotency_key("batch", batch_id, f"line-{line.line_number}:tokenize"),
        BankDetails(
            holder_name=line.payee_name,
            routing_number=line.routing_number,
            account_number=line.account_number,
            account_type=line.account_type,
        ),
    )


async def upload_batch(
    db: AsyncSession,
    gateway: CustodyGateway,
    raw: bytes,
    file_name: str,
    maker_wallet: str,
    escrow_id: uuid.UUID | None = None,
) -> WireBatch:
    """Parse, tokenize and persist an uploaded payout file as an UPLOADED batch."""
    if escrow_id is not None:
        await get_escrow(db, escrow_id)
        await require_signer(db, escrow_id, maker_wallet)

    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise BatchValidationError("Batch file must be UTF-8 text")

    parsed = parse_batch_file(text, file_name)
    if parsed.file_type is None or not parsed.lines:
        reasons = "; ".join(
            f"line {e.line_number}: {e.message}" if e.line_number else e.message
            for e in parsed.errors[:10]
        )
        raise BatchValidationError(f"No valid payout lines found. {reasons}".strip())

    batch_id = uuid.uuid4()
    batch = WireBatch(
        batch_id=batch_id,
        reference=generate_batch_reference(),
        escrow_id=escrow_id,
        file_name=file_name[:256],
        file_type=parsed.file_type,
        file_size=len(raw),
        content_hash=content_hash(raw),
        status=BatchStatus.UPLOADED,
        total_items=len(parsed.lines),
        total_amount=parsed.total_amount,
        rail_subtotals=rail_subtotals(parsed.lines),
        parse_errors=[e.to_dict() for e in parsed.errors],
        missing_bank_details=sum(1 for line in parsed.lines if not line.has_bank_details),
        maker_wallet=maker_wallet.lower(),
    )
    db.add(batch)

    for line in parsed.lines:
        settlement_ref = await _tokenize_line(gateway, batch_id, line)
        db.add(WireBatchItem(
            item_id=uuid.uuid4(),
            batch_id=batch_id,
            line_number=line.line_number,
            payee_name=line.payee_name[:256],
            amount=line.amount,
            reference_id=line.reference_id[:64],
            memo=line.memo[:256] if line.memo else None,
            rail=determine_rail(line.amount),
            settlement_ref=settlement_ref,
            account_last4=last4(line.account_number) if line.account_number else None,
            account_type=line.account_type,
            result=LineResult.PENDING,
        ))

    await log_audit(
        db, AuditAction.BATCH_UPLOADED,
        escrow_id=escrow_id,
        batch_id=batch_id,
        actor=batch.maker_wallet,
        details={
            "reference": batch.reference,
            "file_name": batch.file_name,
            "file_type": batch.file_type.value,
            "content_hash": batch.content_hash,
            "total_items": batch.total_items,
            "total_amount": str(batch.total_amount),
            "parse_errors": len(parsed.errors),
            "missing_bank_details": batch.missing_bank_details,
        },
    )
    await db.commit()
    await db.refresh(batch)
    logger.info(
        "Batch %s uploaded: %d line(s), total %s, %d parse error(s)",
        batch.reference, batch.total_items, batch.total_amount, len(parsed.errors),
    )
    return batch


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

async def _review(
    db: AsyncSession,
    batch_id: uuid.UUID,
    checker_wallet: str,
    target: BatchStatus,
    notes: str | None,
) -> WireBatch:
    batch = await get_batch(db, batch_id, for_update=True)
    if _same_wallet(batch.maker_wallet, checker_wallet):
        raise DualControlViolation("The uploader of a batch cannot approve or reject it")
    if batch.status != BatchStatus.UPLOADED:
        raise InvalidStateError(f"Batch must be uploaded to review, currently {batch.status.value}")
    _assert_transition(batch.status, target)

    batch.status = target
    batch.checker_wallet = checker_wallet.lower()
    batch.checker_notes = notes
    batch.reviewed_at = datetime.now(UTC)
    action = AuditAction.BATCH_APPROVED if target == BatchStatus.APPROVED else AuditAction.BATCH_REJECTED
    await log_audit(
        db, action,
        escrow_id=batch.escrow_id,
        batch_id=batch_id,
        actor=batch.checker_wallet,
        details={"reference": batch.reference, "notes": notes},
    )
    await db.commit()
    await db.refresh(batch)
    return batch


async def approve_batch(
    db: AsyncSession, batch_id: uuid.UUID, checker_wallet: str, notes: str | None = None
) -> WireBatch:
    return await _review(db, batch_id, checker_wallet, BatchStatus.APPROVED, notes)


async def reject_batch(
    db: AsyncSession, batch_id: uuid.UUID, checker_wallet: str, reason: str
) -> WireBatch:
    return await _review(db, batch_id, checker_wallet, BatchStatus.REJECTED, reason)


async def cancel_batch(db: AsyncSession, batch_id: uuid.UUID, requester_wallet: str) -> WireBatch:
    batch = await get_batch(db, batch_id, for_update=True)
    if not _same_wallet(batch.maker_wallet, requester_wallet):
        raise NotAuthorizedError("Only the uploader can cancel a batch")
    if batch.status not in CANCELLABLE_STATUSES:
        raise InvalidStateError(f"Cannot cancel a batch in {batch.status.value} status")
    _assert_transition(batch.status, BatchStatus.CANCELLED)

    batch.status = BatchStatus.CANCELLED
    await log_audit(
        db, AuditAction.BATCH_CANCELLED,
        escrow_id=batch.escrow_id,
        batch_id=batch_id,
        actor=requester_wallet.lower(),
        details={"reference": batch.reference},
    )
    await db.commit()
    await db.refresh(batch)
    return batch


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

async def _resolve_source(db: AsyncSession, batch: WireBatch, source_account_ref: str | None) -> str:
    if source_account_ref:
        return source_account_ref
    if batch.escrow_id is not None:
        escrow = await get_escrow(db, batch.escrow_id)
        if escrow.wallet_ref:
            return escrow.wallet_ref
    raise BatchValidationError("A source account is required for batches not tied to an escrow")


async def _funding_escrow(db: AsyncSession, batch: WireBatch, source_ref: str | None) -> Escrow | None:
    """The linked escrow, locked, when the batch draws on its wallet."""
    if batch.escrow_id is None:
        return None
    escrow = await get_escrow(db, batch.escrow_id, for_update=True)
    if escrow.wallet_ref is None or source_ref != escrow.wallet_ref:
        return None
    return escrow


async def _reserve_escrow_funds(
    db: AsyncSession, escrow: Escrow, batch: WireBatch, items: list[WireBatchItem], actor: str
) -> Decimal:
    """Debit the escrow books for every payable line before any money moves."""
    if escrow.status not in ESCROW_FUNDING_STATUSES:
        raise InvalidStateError(
            f"Escrow {escrow.reference} has no confirmed funds to pay out (status {escrow.status.value})"
        )
    if escrow.status == EscrowStatus.CLOSING:
        approval = await get_approval_status(db, escrow)
        if not approval.can_execute:
            raise InvalidStateError(
                f"Approval threshold not met: {approval.confirmations}/{approval.required_approvals} signatures"
            )

    payable = sum(
        (i.amount for i in items if i.result == LineResult.PENDING and i.settlement_ref is not None),
        Decimal("0.00"),
    )
    if payable > escrow.current_balance:
        raise InsufficientFundsError(
            f"Batch total {payable} exceeds escrow balance {escrow.current_balance}"
        )
    escrow.current_balance -= payable
    await log_audit(
        db, AuditAction.BATCH_FUNDS_RESERVED,
        escrow_id=escrow.escrow_id,
        batch_id=batch.batch_id,
        actor=actor.lower(),
        details={
            "reference": batch.reference,
            "amount": str(payable),
            "current_balance": str(escrow.current_balance),
        },
    )
    return payable


async def _release_escrow_funds(
    db: AsyncSession, batch: WireBatch, outcomes: list[TransferOutcome], actor: str
) -> None:
    """Credit back lines the provider rejected. Unknown outcomes stay reserved."""
    released = sum(
        (o.record.amount for o in outcomes if not o.success), Decimal("0.00")
    )
    if released <= 0:
        return
    escrow = await _funding_escrow(db, batch, batch.source_account_ref)
    if escrow is None:
        return
    escrow.current_balance += released
    await log_audit(
        db, AuditAction.BATCH_FUNDS_RELEASED,
        escrow_id=escrow.escrow_id,
        batch_id=batch.batch_id,
        actor=actor.lower(),
        details={
            "reference": batch.reference,
            "amount": str(released),
            "current_balance": str(escrow.current_balance),
        },
    )


async def _stage_items(
    db: AsyncSession, batch: WireBatch, items: list[WireBatchItem]
) -> list[TransferRecord]:
    records: list[TransferRecord] = []
    for item in items:
        if item.result != LineResult.PENDING:
            continue
        if item.settlement_ref is None:
            item.result = LineResult.SKIPPED
            item.error_message = "Missing bank account details"
            item.processed_at = datetime.now(UTC)
            continue
        records.append(await stage_transfer(
            db, line_transfer_key(batch.batch_id, item.line_number),
            source_ref=batch.source_account_ref,
            destination_ref=item.settlement_ref,
            amount=item.amount,
            rail=item.rail,
            escrow_id=batch.escrow_id,
            batch_id=batch.batch_id,
            line_number=item.line_number,
        ))
    return records


def _apply_item_outcome(item: WireBatchItem, outcome: TransferOutcome) -> None:
    apply_outcome(outcome)
    record = outcome.record
    item.processed_at = datetime.now(UTC)
    if outcome.success:
        item.result = LineResult.SUCCESS
        item.transfer_ref = outcome.transfer_ref or record.provider_transfer_ref
        item.error_message = None
    else:
        item.result = LineResult.FAILED
        item.error_message = (outcome.error or record.failure_reason or "")[:512]


def _rollup(batch: WireBatch, items: list[WireBatchItem]) -> BatchStatus:
    batch.success_count = sum(1 for i in items if i.result == LineResult.SUCCESS)
    batch.failed_count = sum(1 for i in items if i.result == LineResult.FAILED)
    batch.skipped_count = sum(1 for i in items if i.result == LineResult.SKIPPED)
    if batch.success_count == 0:
        return BatchStatus.FAILED
    if batch.failed_count == 0 and batch.skipped_count == 0:
        return BatchStatus.COMPLETED
    return BatchStatus.PARTIAL


async def execute_batch(
    db: AsyncSession,
    gateway: CustodyGateway,
    batch_id: uuid.UUID,
    actor: str,
    source_account_ref: str | None = None,
) -> BatchExecution:
    """Submit every line of an UPLOADED or APPROVED batch.

    A batch left in PROCESSING (some line outcome unknown) can be executed
    again; only lines that never reached the provider are resubmitted.
    """
    batch = await get_batch(db, batch_id, for_update=True)
    if batch.status in RESULT_STATUSES:
        raise InvalidStateError(f"Batch already executed ({batch.status.value})")
    items = await list_items(db, batch_id)
    if batch.status != BatchStatus.PROCESSING:
        _assert_transition(batch.status, BatchStatus.PROCESSING)
        source = await _resolve_source(db, batch, source_account_ref)
        escrow = await _funding_escrow(db, batch, source)
        if escrow is not None:
            await _reserve_escrow_funds(db, escrow, batch, items, actor)
        batch.source_account_ref = source
        batch.status = BatchStatus.PROCESSING
        batch.executed_at = datetime.now(UTC)

    records = await claim_transfers(db, await _stage_items(db, batch, items))
    await db.commit()

    by_line = {item.line_number: item for item in items}
    pending = [r for r in records if r.status == TransferStatus.PENDING]
    logger.info("Executing batch %s: %d transfer(s)", batch.reference, len(pending))
    outcomes = await submit_transfers(gateway, records)
    release_unresolved(records, outcomes)
    for outcome in outcomes:
        _apply_item_outcome(by_line[outcome.record.line_number], outcome)
    await _release_escrow_funds(db, batch, outcomes, actor)

    skipped = sum(1 for i in items if i.result == LineResult.SKIPPED)
    if all(item.result != LineResult.PENDING for item in items):
        final = _rollup(batch, items)
        _assert_transition(batch.status, final)
        batch.status = final
        batch.completed_at = datetime.now(UTC)
        await log_audit(
            db, AuditAction.BATCH_EXECUTED,
            escrow_id=batch.escrow_id,
            batch_id=batch_id,
            actor=actor.lower(),
            details={
                "reference": batch.reference,
                "status": final.value,
                "success_count": batch.success_count,
                "failed_count": batch.failed_count,
                "skipped_count": batch.skipped_count,
                "source_account_ref": batch.source_account_ref,
            },
        )
        logger.info(
            "Batch %s %s: %d success, %d failed, %d skipped",
            batch.reference, final.value,
            batch.success_count, batch.failed_count, batch.skipped_count,
        )
    else:
        logger.warning("Batch %s left processing with unresolved lines", batch.reference)

    await db.commit()
    await db.refresh(batch)
    return BatchExecution(batch=batch, outcomes=outcomes, skipped=skipped)


# ---------------------------------------------------------------------------
# Reconciliation export
# ---------------------------------------------------------------------------

async def reconciliation_csv(db: AsyncSession, batch_id: uuid.UUID) -> tuple[str, str]:
    """Positive-pay CSV of cleared lines. Returns (file name, content)."""
    batch = await get_batch(db, batch_id)
    if batch.status not in RESULT_STATUSES:
        raise InvalidStateError(
            f"Reconciliation is available once a batch has executed (batch is {batch.status.value})"
        )
    items = await list_items(db, batch_id)

    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(POSITIVE_PAY_HEADER)
    for item in items:
        if item.result != LineResult.SUCCESS:
            continue
        processed = item.processed_at or batch.completed_at
        writer.writerow([
            processed.strftime("%m/%d/%Y") if processed else "",
            (item.transfer_ref or "")[:20],
            item.payee_name,
            f"{item.amount:.2f}",
            "CLEARED",
            item.rail.value.upper(),
            item.reference_id or "",
            item.transfer_ref or "",
        ])

    stamp = (batch.completed_at or datetime.now(UTC)).strftime("%Y-%m-%d")
    return f"PositivePay_{batch.reference}_{stamp}.csv", out.getvalue()
