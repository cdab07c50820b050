"""Payee management: add (tokenize and discard bank details), list, remove."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.errors import InvalidStateError, NotFoundError
from settlement.models.audit import AuditAction
from settlement.models.escrow import EDITABLE_STATUSES
from settlement.models.payee import FixedAmount, Payee, PayeeStatus, PayoutKind
from settlement.schemas.payee import PayeeCreate
from settlement.services.audit import log_audit
from settlement.services.custody import BankDetails, CustodyGateway
from settlement.services.escrow import get_escrow, require_signer
from settlement.utils.banking import last4
from settlement.utils.crypto import idempotency_key

logger = logging.getLogger(__name__)


async def list_payees(db: AsyncSession, escrow_id: uuid.UUID) -> list[Payee]:
    result = await db.execute(
        select(Payee).where(Payee.escrow_id == escrow_id).order_by(Payee.created_at)
    )
    return list(result.scalars().all())


async def get_payee(db: AsyncSession, escrow_id: uuid.UUID, payee_id: uuid.UUID) -> Payee:
    result = await db.execute(
        select(Payee).where(Payee.payee_id == payee_id, Payee.escrow_id == escrow_id)
    )
    payee = result.scalar_one_or_none()
    if payee is None:
        raise NotFoundError("Payee", payee_id)
    return payee


async def add_payee(
    db: AsyncSession,
    gateway: CustodyGateway,
    escrow_id: uuid.UUID,
    data: PayeeCreate,
    wallet: str,
) -> Payee:
    """Add a payee. Bank details go to the provider and only the token comes back."""
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    if escrow.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Cannot add payees while escrow is {escrow.status.value}")

    payee_id = uuid.uuid4()
    bank = data.bank_account
    settlement_ref = await gateway.tokenize_recipient(
        idempotency_key("payee", payee_id, "tokenize"),
        BankDetails(
            holder_name=data.name,
            routing_number=bank.routing_number,
            account_number=bank.account_number,
            account_type=bank.account_type,
            bank_name=bank.bank_name,
        ),
    )

    spec = data.payout.to_spec()
    payee = Payee(
        payee_id=payee_id,
        escrow_id=escrow_id,
        name=data.name,
        email=data.email,
        role=data.role,
        kind=PayoutKind.PRINCIPAL,
        payout_spec=spec,
        settlement_ref=settlement_ref,
        bank_name=bank.bank_name,
        account_last4=last4(bank.account_number),
        preferred_rail=data.preferred_rail,
        status=PayeeStatus.PENDING,
    )
    db.add(payee)

    payout_detail = (
        {"amount": str(spec.amount)} if isinstance(spec, FixedAmount)
        else {"basis_points": spec.basis_points}
    )
    await log_audit(
        db, AuditAction.PAYEE_ADDED,
        escrow_id=escrow_id,
        actor=wallet,
        details={
            "payee_id": str(payee_id),
            "name": data.name,
            "role": data.role.value,
            "account_last4": payee.account_last4,
            **payout_detail,
        },
    )
    await db.commit()
    await db.refresh(payee)
    logger.info("Payee %s added to escrow %s (acct ****%s)", payee_id, escrow.reference, payee.account_last4)
    return payee


async def remove_payee(
    db: AsyncSession, escrow_id: uuid.UUID, payee_id: uuid.UUID, wallet: str
) -> None:
    escrow = await get_escrow(db, escrow_id, for_update=True)
    await require_signer(db, escrow_id, wallet)
    if escrow.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Cannot remove payees while escrow is {escrow.status.value}")
    payee = await get_payee(db, escrow_id, payee_id)
    if payee.status != PayeeStatus.PENDING:
        raise InvalidStateError(f"Cannot remove a payee in {payee.status.value} status")

    await db.delete(payee)
    await log_audit(
        db, AuditAction.PAYEE_REMOVED,
        escrow_id=escrow_id,
        actor=wallet,
        details={"payee_id": str(payee_id), "name": payee.name},
    )
    await db.commit()
