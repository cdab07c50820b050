"""Disbursement executor: turns an approved close into per-payee transfers.

Flow for a fresh close:
1. Lock the escrow, check it is CLOSING and the approval threshold is met.
2. Read the live custody balance and build the payout plan (amounts, yield).
3. Stage every payout: payee -> PROCESSING, one TransferRecord per payee,
   committed before any money moves.
4. Submit all transfers with bounded parallelism and wait for every outcome.
5. Apply outcomes. A provider failure fails that payee only.
6. Finalize the escrow once every payee is COMPLETED or FAILED.

Payees the provider has not settled synchronously stay PROCESSING until the
reconciler sees transfer.completed / transfer.failed for them.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.errors import InsufficientFundsError, InvalidStateError, ProviderCallError
from settlement.models.audit import AuditAction
from settlement.models.escrow import Escrow, EscrowStatus
from settlement.models.payee import (
    TERMINAL_PAYEE_STATUSES,
    FixedAmount,
    Payee,
    PayeeStatus,
    PayoutKind,
)
from settlement.models.transfer import TransferRecord, TransferStatus
from settlement.services.approvals import get_approval_status
from settlement.services.audit import log_audit
from settlement.services.custody import CustodyGateway
from settlement.services.escrow import finalize_closed, get_escrow, require_signer
from settlement.services.notifications import Notifier, notify_escrow_closed
from settlement.services.payees import get_payee, list_payees
from settlement.services.payouts import DEPOSITOR, PayoutPlan, build_payout_plan, determine_rail
from settlement.services.transfers import (
    TransferOutcome,
    apply_outcome,
    claim_transfers,
    release_unresolved,
    stage_transfer,
    submit_transfers,
)
from settlement.utils.crypto import idempotency_key

logger = logging.getLogger(__name__)


def close_transfer_key(escrow_id: uuid.UUID, payee_id: uuid.UUID) -> str:
    return idempotency_key("escrow", escrow_id, f"{payee_id}:close")


def redrive_transfer_key(escrow_id: uuid.UUID, payee_id: uuid.UUID, attempt: int) -> str:
    return idempotency_key("escrow", escrow_id, f"{payee_id}:redrive-{attempt}")


@dataclass
class DisbursementResult:
    escrow: Escrow
    outcomes: list[TransferOutcome] = field(default_factory=list)
    finalized: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def awaiting_settlement(self) -> int:
        return sum(1 for o in self.outcomes if o.success and not o.settled)


@dataclass
class ClosePreview:
    escrow: Escrow
    plan: PayoutPlan
    blocking_reasons: list[str]

    @property
    def can_close(self) -> bool:
        return not self.blocking_reasons


# ---------------------------------------------------------------------------
# Plan checks shared by preview and execution
# ---------------------------------------------------------------------------

def _plan_problems(escrow: Escrow, plan: PayoutPlan) -> list[tuple[type, str]]:
    problems: list[tuple[type, str]] = []
    if not plan.lines:
        problems.append((InvalidStateError, "No payees to disburse to"))
    if plan.principal_total > escrow.current_balance:
        problems.append((
            InsufficientFundsError,
            f"Disbursement total {plan.principal_total} exceeds escrow balance {escrow.current_balance}",
        ))
    elif plan.total > plan.custody_balance:
        problems.append((
            InsufficientFundsError,
            f"Disbursement total {plan.total} exceeds custody balance {plan.custody_balance}",
        ))
    if plan.yield_recipient == DEPOSITOR and not escrow.depositor_settlement_ref:
        problems.append((
            InvalidStateError,
            "Yield must be returned to the depositor: add a BUYER payee or depositor bank account",
        ))
    return problems


async def preview_close(db: AsyncSession, gateway: CustodyGateway, escrow_id: uuid.UUID) -> ClosePreview:
    """Compute what a close would pay out right now, without changing anything."""
    escrow = await get_escrow(db, escrow_id)
    payees = await list_payees(db, escrow_id)
    balance = await gateway.get_balance(escrow.wallet_ref) if escrow.wallet_ref else Decimal("0.00")
    plan = build_payout_plan(escrow, payees, balance)

    reasons: list[str] = []
    if escrow.status not in (EscrowStatus.READY_TO_CLOSE, EscrowStatus.CLOSING):
        reasons.append(f"Escrow is {escrow.status.value}")
    approval = await get_approval_status(db, escrow)
    if escrow.status == EscrowStatus.CLOSING and not approval.can_execute:
        reasons.append(
            f"Approval threshold not met: {approval.confirmations}/{approval.required_approvals} signatures"
        )
    reasons.extend(message for _, message in _plan_problems(escrow, plan))
    return ClosePreview(escrow=escrow, plan=plan, blocking_reasons=reasons)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

async def _stage_plan(db: AsyncSession, escrow: Escrow, plan: PayoutPlan) -> list[TransferRecord]:
    records: list[TransferRecord] = []
    for line in plan.lines:
        payee = line.payee
        if payee is None:
            payee = Payee(
                payee_id=uuid.uuid4(),
                escrow_id=escrow.escrow_id,
                name=line.name,
                email=escrow.depositor_email,
                role=line.role,
                kind=PayoutKind.YIELD_RETURN,
                payout_spec=FixedAmount(line.amount),
                settlement_ref=escrow.depositor_settlement_ref,
                status=PayeeStatus.PENDING,
            )
            db.add(payee)
            line.payee = payee

        key = close_transfer_key(escrow.escrow_id, payee.payee_id)
        payee.status = PayeeStatus.PROCESSING
        payee.payout_amount = line.amount
        payee.payout_rail = line.rail
        payee.idempotency_key = key
        records.append(await stage_transfer(
            db, key,
            source_ref=escrow.wallet_ref,
            destination_ref=payee.settlement_ref,
            amount=line.amount,
            rail=line.rail,
            escrow_id=escrow.escrow_id,
            payee_id=payee.payee_id,
        ))

    escrow.yield_earned = plan.yield_earned
    escrow.yield_recipient = plan.yield_recipient
    if plan.yield_earned > 0:
        await log_audit(
            db, AuditAction.YIELD_ALLOCATED,
            escrow_id=escrow.escrow_id,
            details={
                "yield_earned": str(plan.yield_earned),
                "yield_recipient": plan.yield_recipient,
                "custody_balance": str(plan.custody_balance),
                "initial_deposit": str(escrow.initial_deposit),
            },
        )
    return records


async def _apply_payee_outcomes(
    db: AsyncSession, escrow: Escrow, outcomes: list[TransferOutcome]
) -> None:
    for outcome in outcomes:
        apply_outcome(outcome)
        payee = await get_payee(db, escrow.escrow_id, outcome.record.payee_id)
        if payee.status in TERMINAL_PAYEE_STATUSES:
            continue
        if outcome.success:
            payee.transfer_ref = outcome.transfer_ref
            payee.failure_reason = None
            if outcome.settled:
                payee.status = PayeeStatus.COMPLETED
                payee.paid_at = datetime.now(UTC)
            action = AuditAction.PAYOUT_COMPLETED if outcome.settled else AuditAction.PAYOUT_SUBMITTED
        else:
            payee.status = PayeeStatus.FAILED
            payee.failure_reason = (outcome.error or "")[:512]
            action = AuditAction.PAYOUT_FAILED
        if outcome.replayed:
            continue
        await log_audit(
            db, action,
            escrow_id=escrow.escrow_id,
            details={
                "payee_id": str(payee.payee_id),
                "amount": str(outcome.record.amount),
                "rail": outcome.record.rail.value,
                "transfer_ref": outcome.transfer_ref,
                "idempotency_key": outcome.record.idempotency_key,
                "error": outcome.error,
            },
        )


async def settle_if_complete(db: AsyncSession, escrow: Escrow) -> bool:
    """Finalize a CLOSING escrow once every payee is terminal. Returns True if closed."""
    if escrow.status != EscrowStatus.CLOSING:
        return False
    payees = await list_payees(db, escrow.escrow_id)
    if not payees or any(p.status not in TERMINAL_PAYEE_STATUSES for p in payees):
        return False

    completed = [p for p in payees if p.status == PayeeStatus.COMPLETED]
    failed = [p for p in payees if p.status == PayeeStatus.FAILED]
    distributed = sum((p.payout_amount or Decimal("0.00") for p in completed), Decimal("0.00"))

    if failed:
        escrow.needs_reconciliation = True
        await log_audit(
            db, AuditAction.DISBURSEMENT_INCOMPLETE,
            escrow_id=escrow.escrow_id,
            details={
                "success_count": len(completed),
                "failed_count": len(failed),
                "failed_payee_ids": [str(p.payee_id) for p in failed],
            },
        )
        logger.warning(
            "Escrow %s closing with %d failed payout(s); flagged for reconciliation",
            escrow.reference, len(failed),
        )
    else:
        await log_audit(
            db, AuditAction.DISBURSEMENT_COMPLETED,
            escrow_id=escrow.escrow_id,
            details={"success_count": len(completed), "distributed_total": str(distributed)},
        )

    await finalize_closed(
        db, escrow,
        distributed_total=distributed,
        yield_earned=escrow.yield_earned,
        yield_recipient=escrow.yield_recipient,
        settlement_ref=idempotency_key("escrow", escrow.escrow_id, "settlement"),
    )
    return True


async def refresh_closed_totals(db: AsyncSession, escrow: Escrow) -> None:
    """Recompute distributed total and the reconciliation flag after a late payout change."""
    if escrow.status != EscrowStatus.CLOSED:
        return
    payees = await list_payees(db, escrow.escrow_id)
    escrow.distributed_total = sum(
        (p.payout_amount or Decimal("0.00") for p in payees if p.status == PayeeStatus.COMPLETED),
        Decimal("0.00"),
    )
    escrow.needs_reconciliation = any(p.status != PayeeStatus.COMPLETED for p in payees)


async def _unsubmitted_records(db: AsyncSession, escrow_id: uuid.UUID) -> list[TransferRecord]:
    result = await db.execute(
        select(TransferRecord).where(
            TransferRecord.escrow_id == escrow_id,
            TransferRecord.status == TransferStatus.PENDING,
        )
    )
    return list(result.scalars().all())


async def execute_close(
    db: AsyncSession,
    gateway: CustodyGateway,
    notifier: Notifier,
    escrow_id: uuid.UUID,
    wallet: str,
) -> DisbursementResult:
    """Run the disbursement for an approved close.

    Safe to call again: a second run only resubmits transfers that never
    reached the provider, under their original idempotency keys.
    """
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    if escrow.status != EscrowStatus.CLOSING:
        raise InvalidStateError(
            f"Escrow must be closing to disburse, currently {escrow.status.value}"
        )
    approval = await get_approval_status(db, escrow)
    if not approval.can_execute:
        raise InvalidStateError(
            f"Approval threshold not met: {approval.confirmations}/{approval.required_approvals} signatures"
        )

    payees = await list_payees(db, escrow_id)
    if any(p.status != PayeeStatus.PENDING for p in payees):
        records = await _unsubmitted_records(db, escrow_id)
        logger.info("Resuming disbursement for %s: %d unsubmitted transfer(s)", escrow.reference, len(records))
    else:
        balance = await gateway.get_balance(escrow.wallet_ref)
        plan = build_payout_plan(escrow, payees, balance)
        problems = _plan_problems(escrow, plan)
        if problems:
            error_cls, message = problems[0]
            raise error_cls(message)
        records = await _stage_plan(db, escrow, plan)
        logger.info(
            "Disbursing %s: %d payout(s), principal %s, yield %s",
            escrow.reference, len(records), plan.principal_total, plan.yield_earned,
        )
    claimed = await claim_transfers(db, records)
    await db.commit()

    outcomes = await submit_transfers(gateway, claimed)
    release_unresolved(claimed, outcomes)
    await _apply_payee_outcomes(db, escrow, outcomes)
    finalized = await settle_if_complete(db, escrow)
    await db.commit()
    await db.refresh(escrow)

    if finalized:
        await notify_escrow_closed(notifier, escrow)
    return DisbursementResult(escrow=escrow, outcomes=outcomes, finalized=finalized)


async def redrive_payee(
    db: AsyncSession,
    gateway: CustodyGateway,
    escrow_id: uuid.UUID,
    payee_id: uuid.UUID,
    wallet: str,
) -> Payee:
    """Manually resubmit a FAILED payout under a fresh attempt key."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    payee = await get_payee(db, escrow_id, payee_id)
    if payee.status != PayeeStatus.FAILED:
        raise InvalidStateError(f"Only failed payouts can be re-driven (payee is {payee.status.value})")
    if escrow.status not in (EscrowStatus.CLOSING, EscrowStatus.CLOSED):
        raise InvalidStateError(f"Escrow is {escrow.status.value}; nothing to re-drive")

    attempt = payee.redrive_attempts + 1
    key = redrive_transfer_key(escrow_id, payee_id, attempt)
    amount = payee.payout_amount
    rail = payee.payout_rail or determine_rail(amount, payee.preferred_rail)
    record = await stage_transfer(
        db, key,
        source_ref=escrow.wallet_ref,
        destination_ref=payee.settlement_ref,
        amount=amount,
        rail=rail,
        escrow_id=escrow_id,
        payee_id=payee_id,
    )
    payee.redrive_attempts = attempt
    payee.idempotency_key = key
    payee.status = PayeeStatus.PROCESSING
    payee.failure_reason = None
    await log_audit(
        db, AuditAction.PAYOUT_REDRIVEN,
        escrow_id=escrow_id,
        actor=wallet,
        details={"payee_id": str(payee_id), "attempt": attempt, "amount": str(amount)},
    )
    await db.commit()

    outcomes = await submit_transfers(gateway, [record], max_concurrency=1)
    if not outcomes:
        raise ProviderCallError("Re-drive outcome unknown; transfer left pending")
    await _apply_payee_outcomes(db, escrow, outcomes)
    if escrow.status == EscrowStatus.CLOSED:
        await refresh_closed_totals(db, escrow)
    else:
        await settle_if_complete(db, escrow)
    await db.commit()
    await db.refresh(payee)
    return payee
