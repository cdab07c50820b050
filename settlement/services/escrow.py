"""Escrow lifecycle: the status state machine and balance/yield bookkeeping.

Guard functions (record_deposit, begin_closing, finalize_closed, ...) take an
escrow row the caller has already locked with SELECT FOR UPDATE and do not
commit, so the caller can make them atomic with its own writes. The
request-level operations (open_escrow, mark_ready_to_close, cancel_escrow)
lock, mutate and commit themselves.
"""

import logging
import secrets
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.errors import InvalidStateError, NotAuthorizedError, NotFoundError
from settlement.models.audit import AuditAction
from settlement.models.escrow import VALID_TRANSITIONS, Escrow, EscrowStatus
from settlement.models.payee import Payee
from settlement.models.signer import Signer
from settlement.schemas.escrow import EscrowCreate
from settlement.services.audit import log_audit
from settlement.services.custody import BankDetails, CustodyGateway
from settlement.services.notifications import Notifier, notify_deposit_instructions
from settlement.utils.crypto import idempotency_key

logger = logging.getLogger(__name__)

DEPOSIT_ACTOR = "provider"


def _assert_transition(current: EscrowStatus, target: EscrowStatus) -> None:
    """Raise InvalidStateError if the state transition is not valid."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot transition escrow from {current.value} to {target.value}"
        )


def generate_escrow_reference() -> str:
    return f"ESC-{datetime.now(UTC).year}-{secrets.randbelow(1_000_000):06d}"


async def get_escrow(
    db: AsyncSession, escrow_id: uuid.UUID, for_update: bool = False
) -> Escrow:
    stmt = select(Escrow).where(Escrow.escrow_id == escrow_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFoundError("Escrow", escrow_id)
    return escrow


async def list_signers(db: AsyncSession, escrow_id: uuid.UUID) -> list[Signer]:
    result = await db.execute(
        select(Signer).where(Signer.escrow_id == escrow_id).order_by(Signer.ordinal)
    )
    return list(result.scalars().all())


async def find_signer(db: AsyncSession, escrow_id: uuid.UUID, wallet: str) -> Signer | None:
    result = await db.execute(
        select(Signer).where(
            Signer.escrow_id == escrow_id,
            Signer.wallet_address == wallet.lower(),
        )
    )
    return result.scalar_one_or_none()


async def require_signer(db: AsyncSession, escrow_id: uuid.UUID, wallet: str) -> Signer:
    signer = await find_signer(db, escrow_id, wallet)
    if signer is None:
        raise NotAuthorizedError("Wallet is not a registered signer for this escrow")
    return signer


async def open_escrow(
    db: AsyncSession,
    gateway: CustodyGateway,
    notifier: Notifier,
    data: EscrowCreate,
    initiator_wallet: str,
) -> Escrow:
    """Open an escrow with its own segregated wallet and deposit account."""
    initiator = initiator_wallet.lower()
    others = list(data.additional_signers)
    wallets = [initiator] + [s.wallet_address for s in others]
    if len(set(wallets)) != len(wallets):
        raise HTTPException(status_code=422, detail="Each signer wallet may appear only once")
    if data.required_approvals > len(wallets):
        raise HTTPException(
            status_code=422,
            detail=f"required_approvals ({data.required_approvals}) exceeds signer count ({len(wallets)})",
        )

    reference = generate_escrow_reference()

    # One wallet per escrow: funds are never commingled
    wallet_ref = await gateway.create_wallet(
        idempotency_key("escrow", reference, "wallet"), settings.custody_chain
    )
    deposit_account = await gateway.create_deposit_account(
        idempotency_key("escrow", reference, "deposit-account"), wallet_ref, data.yield_enabled
    )
    depositor_ref = None
    if data.depositor_bank_account is not None:
        bank = data.depositor_bank_account
        depositor_ref = await gateway.tokenize_recipient(
            idempotency_key("escrow", reference, "depositor-tokenize"),
            BankDetails(
                holder_name=data.depositor_name,
                routing_number=bank.routing_number,
                account_number=bank.account_number,
                account_type=bank.account_type,
                bank_name=bank.bank_name,
            ),
        )

    escrow = Escrow(
        escrow_id=uuid.uuid4(),
        reference=reference,
        property_address=data.property_address,
        purchase_price=data.purchase_price,
        initial_deposit=Decimal("0.00"),
        current_balance=Decimal("0.00"),
        yield_enabled=data.yield_enabled,
        yield_earned=Decimal("0.00"),
        required_approvals=data.required_approvals,
        wallet_ref=wallet_ref,
        deposit_account_ref=deposit_account.account_ref,
        deposit_instructions=deposit_account.instructions,
        depositor_name=data.depositor_name,
        depositor_email=data.depositor_email,
        depositor_settlement_ref=depositor_ref,
        status=EscrowStatus.CREATED,
        needs_reconciliation=False,
        created_by=initiator,
    )
    db.add(escrow)

    db.add(Signer(
        signer_id=uuid.uuid4(),
        escrow_id=escrow.escrow_id,
        wallet_address=initiator,
        role_label="initiator",
        ordinal=1,
        has_signed=False,
    ))
    for ordinal, signer in enumerate(others, start=2):
        db.add(Signer(
            signer_id=uuid.uuid4(),
            escrow_id=escrow.escrow_id,
            wallet_address=signer.wallet_address,
            role_label=signer.role_label,
            ordinal=ordinal,
            has_signed=False,
        ))

    await log_audit(
        db, AuditAction.ESCROW_CREATED,
        escrow_id=escrow.escrow_id,
        actor=initiator,
        details={
            "reference": reference,
            "purchase_price": str(data.purchase_price),
            "required_approvals": data.required_approvals,
            "signer_count": len(wallets),
            "yield_enabled": data.yield_enabled,
            "wallet_ref": wallet_ref,
        },
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Escrow %s opened (wallet %s)", reference, wallet_ref)

    await notify_deposit_instructions(notifier, escrow)
    return escrow


async def record_deposit(
    db: AsyncSession,
    escrow: Escrow,
    amount: Decimal,
    transfer_ref: str | None = None,
    actor: str = DEPOSIT_ACTOR,
) -> Escrow:
    """Record confirmed, irreversible funds. Only reachable from a completed deposit."""
    if escrow.status not in (EscrowStatus.CREATED, EscrowStatus.DEPOSIT_PENDING):
        raise InvalidStateError(
            f"Deposit already received or escrow not accepting funds (status {escrow.status.value})"
        )
    if amount <= 0:
        raise InvalidStateError("Deposit amount must be positive")
    _assert_transition(escrow.status, EscrowStatus.FUNDS_RECEIVED)

    escrow.initial_deposit = amount
    escrow.current_balance = amount
    escrow.deposit_transfer_ref = transfer_ref
    escrow.funded_at = datetime.now(UTC)
    escrow.status = EscrowStatus.FUNDS_RECEIVED

    await log_audit(
        db, AuditAction.DEPOSIT_COMPLETED,
        escrow_id=escrow.escrow_id,
        actor=actor,
        details={"amount": str(amount), "transfer_ref": transfer_ref},
    )
    return escrow


async def mark_deposit_pending(db: AsyncSession, escrow: Escrow, amount: Decimal | None = None) -> bool:
    """Funds seen but not final. Never moves an escrow past DEPOSIT_PENDING.

    Returns False when the escrow is already at or beyond DEPOSIT_PENDING.
    """
    if escrow.status != EscrowStatus.CREATED:
        return False
    escrow.status = EscrowStatus.DEPOSIT_PENDING
    await log_audit(
        db, AuditAction.DEPOSIT_PENDING,
        escrow_id=escrow.escrow_id,
        actor=DEPOSIT_ACTOR,
        details={"amount": str(amount) if amount is not None else None},
    )
    return True


async def revert_deposit(db: AsyncSession, escrow: Escrow, reason: str | None = None) -> bool:
    """A pending deposit failed at the provider. Returns False if nothing to revert."""
    if escrow.status != EscrowStatus.DEPOSIT_PENDING:
        return False
    _assert_transition(escrow.status, EscrowStatus.CREATED)
    escrow.status = EscrowStatus.CREATED
    await log_audit(
        db, AuditAction.DEPOSIT_FAILED,
        escrow_id=escrow.escrow_id,
        actor=DEPOSIT_ACTOR,
        details={"reason": reason},
    )
    return True


async def mark_ready_to_close(db: AsyncSession, escrow_id: uuid.UUID, wallet: str) -> Escrow:
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    if escrow.status != EscrowStatus.FUNDS_RECEIVED:
        raise InvalidStateError(
            f"Escrow must be funds_received to mark ready, currently {escrow.status.value}"
        )
    payee_count = await db.scalar(
        select(func.count()).select_from(Payee).where(Payee.escrow_id == escrow_id)
    )
    if not payee_count:
        raise InvalidStateError("At least one payee is required before closing")

    _assert_transition(escrow.status, EscrowStatus.READY_TO_CLOSE)
    escrow.status = EscrowStatus.READY_TO_CLOSE
    await log_audit(
        db, AuditAction.READY_TO_CLOSE,
        escrow_id=escrow_id,
        actor=wallet,
        details={"payee_count": payee_count},
    )
    await db.commit()
    await db.refresh(escrow)
    return escrow


async def begin_closing(db: AsyncSession, escrow: Escrow, wallet: str) -> Escrow:
    """Move to CLOSING. Idempotent if already there."""
    if escrow.status == EscrowStatus.CLOSING:
        return escrow
    _assert_transition(escrow.status, EscrowStatus.CLOSING)
    escrow.status = EscrowStatus.CLOSING
    escrow.close_initiated_by = wallet
    escrow.close_initiated_at = datetime.now(UTC)
    await log_audit(db, AuditAction.CLOSING, escrow_id=escrow.escrow_id, actor=wallet)
    return escrow


async def finalize_closed(
    db: AsyncSession,
    escrow: Escrow,
    distributed_total: Decimal,
    yield_earned: Decimal,
    yield_recipient: str | None,
    settlement_ref: str,
) -> Escrow:
    if escrow.status != EscrowStatus.CLOSING:
        raise InvalidStateError(
            f"Escrow must be closing to finalize, currently {escrow.status.value}"
        )
    _assert_transition(escrow.status, EscrowStatus.CLOSED)
    escrow.current_balance = Decimal("0.00")
    escrow.yield_earned = yield_earned
    escrow.yield_recipient = yield_recipient
    escrow.distributed_total = distributed_total
    escrow.settlement_ref = settlement_ref
    escrow.closed_at = datetime.now(UTC)
    escrow.status = EscrowStatus.CLOSED
    await log_audit(
        db, AuditAction.ESCROW_CLOSED,
        escrow_id=escrow.escrow_id,
        details={
            "distributed_total": str(distributed_total),
            "yield_earned": str(yield_earned),
            "yield_recipient": yield_recipient,
            "settlement_ref": settlement_ref,
        },
    )
    return escrow


async def cancel_escrow(
    db: AsyncSession, escrow_id: uuid.UUID, wallet: str, reason: str | None = None
) -> Escrow:
    """Cancel before closing. CLOSING and terminal escrows cannot be cancelled."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    _assert_transition(escrow.status, EscrowStatus.CANCELLED)
    previous = escrow.status
    escrow.status = EscrowStatus.CANCELLED
    await log_audit(
        db, AuditAction.ESCROW_CANCELLED,
        escrow_id=escrow_id,
        actor=wallet,
        details={"previous_status": previous.value, "reason": reason},
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Escrow %s cancelled from %s", escrow.reference, previous.value)
    return escrow
