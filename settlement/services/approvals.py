"""M-of-N approval workflow gating an escrow close.

A close is an intent that gathers signatures from registered signers.
Only the count of distinct signers matters, never the order they sign in.
Reaching the threshold makes the intent executable; execution itself is a
separate, explicit step.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.errors import AlreadySignedError, InvalidStateError, NotAuthorizedError
from settlement.models.audit import AuditAction
from settlement.models.escrow import EDITABLE_STATUSES, Escrow, EscrowStatus
from settlement.models.payee import Payee
from settlement.models.signer import Signer
from settlement.schemas.escrow import SignerCreate
from settlement.services.audit import log_audit
from settlement.services.escrow import (
    begin_closing,
    find_signer,
    get_escrow,
    list_signers,
    require_signer,
)

logger = logging.getLogger(__name__)


@dataclass
class ApprovalStatus:
    escrow: Escrow
    signers: list[Signer]

    @property
    def required_approvals(self) -> int:
        return self.escrow.required_approvals

    @property
    def confirmations(self) -> int:
        return sum(1 for s in self.signers if s.has_signed)

    @property
    def can_execute(self) -> bool:
        return (
            self.escrow.status == EscrowStatus.CLOSING
            and self.confirmations >= self.required_approvals
        )


async def get_approval_status(db: AsyncSession, escrow: Escrow) -> ApprovalStatus:
    return ApprovalStatus(escrow=escrow, signers=await list_signers(db, escrow.escrow_id))


def _mark_signed(signer: Signer) -> None:
    signer.has_signed = True
    signer.signed_at = datetime.now(UTC)


async def initiate_close(db: AsyncSession, escrow_id: uuid.UUID, wallet: str) -> ApprovalStatus:
    """Signer #1 opens the close intent and signs it.

    With a threshold of 1 the intent is executable immediately. Either way
    the escrow moves to CLOSING, which freezes payees and signers.
    """
    escrow = await get_escrow(db, escrow_id, for_update=True)
    signer = await require_signer(db, escrow_id, wallet)
    if signer.ordinal != 1:
        raise NotAuthorizedError("Only the initiating party (signer #1) can initiate a close")

    if escrow.status == EscrowStatus.CLOSING:
        if signer.has_signed:
            raise AlreadySignedError("Close already initiated and signed by this wallet")
    elif escrow.status != EscrowStatus.READY_TO_CLOSE:
        raise InvalidStateError(
            f"Escrow must be ready_to_close to initiate, currently {escrow.status.value}"
        )

    payee_count = await db.scalar(
        select(func.count()).select_from(Payee).where(Payee.escrow_id == escrow_id)
    )
    if not payee_count:
        raise InvalidStateError("At least one payee is required before closing")

    _mark_signed(signer)
    await log_audit(
        db, AuditAction.CLOSE_INITIATED,
        escrow_id=escrow_id,
        actor=signer.wallet_address,
        details={"required_approvals": escrow.required_approvals},
    )
    await begin_closing(db, escrow, signer.wallet_address)
    await db.commit()

    status = await get_approval_status(db, escrow)
    logger.info(
        "Close initiated for %s (%d/%d)",
        escrow.reference, status.confirmations, status.required_approvals,
    )
    return status


async def add_signature(db: AsyncSession, escrow_id: uuid.UUID, wallet: str) -> ApprovalStatus:
    escrow = await get_escrow(db, escrow_id, for_update=True)
    signer = await find_signer(db, escrow_id, wallet)
    if signer is None:
        raise NotAuthorizedError("Wallet is not a registered signer for this escrow")
    if signer.has_signed:
        raise AlreadySignedError("This signer has already signed")
    if escrow.status != EscrowStatus.CLOSING:
        raise InvalidStateError(
            f"No close awaiting signatures (escrow is {escrow.status.value})"
        )

    _mark_signed(signer)
    await db.flush()
    status = await get_approval_status(db, escrow)
    await log_audit(
        db, AuditAction.SIGNATURE_ADDED,
        escrow_id=escrow_id,
        actor=signer.wallet_address,
        details={
            "ordinal": signer.ordinal,
            "confirmations": status.confirmations,
            "required_approvals": status.required_approvals,
        },
    )
    await db.commit()
    return status


async def add_signer(
    db: AsyncSession, escrow_id: uuid.UUID, wallet: str, data: SignerCreate
) -> Signer:
    """Register another signer. Only allowed before the close starts."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    if escrow.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Cannot add signers while escrow is {escrow.status.value}")
    if await find_signer(db, escrow_id, data.wallet_address) is not None:
        raise HTTPException(status_code=409, detail="Wallet is already a signer for this escrow")

    max_ordinal = await db.scalar(
        select(func.max(Signer.ordinal)).where(Signer.escrow_id == escrow_id)
    )
    signer = Signer(
        signer_id=uuid.uuid4(),
        escrow_id=escrow_id,
        wallet_address=data.wallet_address,
        role_label=data.role_label,
        ordinal=(max_ordinal or 0) + 1,
        has_signed=False,
    )
    db.add(signer)
    await log_audit(
        db, AuditAction.SIGNER_ADDED,
        escrow_id=escrow_id,
        actor=wallet,
        details={"wallet_address": data.wallet_address, "ordinal": signer.ordinal},
    )
    await db.commit()
    await db.refresh(signer)
    return signer
