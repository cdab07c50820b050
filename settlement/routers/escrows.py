"""Escrow lifecycle, payee, signer, approval and disbursement endpoints."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.auth.identity import require_wallet
from settlement.config import settings
from settlement.database import get_db
from settlement.errors import InvalidStateError
from settlement.models.escrow import EscrowStatus
from settlement.schemas.disbursement import (
    ClosePreviewResponse,
    DisbursementResponse,
    PlannedPayoutResponse,
    TransferOutcomeResponse,
)
from settlement.schemas.escrow import (
    ApprovalStatusResponse,
    AuditEventResponse,
    EscrowCancelRequest,
    EscrowCreate,
    EscrowDetailResponse,
    EscrowResponse,
    SignerCreate,
    SignerResponse,
    SimulatedFunds,
)
from settlement.schemas.payee import PayeeCreate, PayeeResponse
from settlement.services import approvals as approval_service
from settlement.services import disbursement as disbursement_service
from settlement.services import escrow as escrow_service
from settlement.services import payees as payee_service
from settlement.services.approvals import ApprovalStatus
from settlement.services.audit import list_escrow_audit
from settlement.services.custody import CustodyGateway, MockCustodyGateway, get_custody_gateway
from settlement.services.notifications import Notifier, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrows", tags=["escrows"])


def _approval_response(status: ApprovalStatus) -> ApprovalStatusResponse:
    return ApprovalStatusResponse(
        escrow_id=status.escrow.escrow_id,
        status=status.escrow.status.value,
        required_approvals=status.required_approvals,
        confirmations=status.confirmations,
        can_execute=status.can_execute,
        signers=[SignerResponse.model_validate(s) for s in status.signers],
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("", response_model=EscrowResponse, status_code=201)
async def open_escrow(
    data: EscrowCreate,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowResponse:
    """Open an escrow. The calling wallet becomes signer #1."""
    escrow = await escrow_service.open_escrow(db, gateway, notifier, data, wallet)
    return EscrowResponse.model_validate(escrow)


@router.get("/{escrow_id}", response_model=EscrowDetailResponse)
async def get_escrow(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> EscrowDetailResponse:
    """Escrow details with the current approval status. Signers only."""
    escrow = await escrow_service.get_escrow(db, escrow_id)
    await escrow_service.require_signer(db, escrow_id, wallet)
    status = await approval_service.get_approval_status(db, escrow)
    return EscrowDetailResponse(
        **EscrowResponse.model_validate(escrow).model_dump(),
        approval=_approval_response(status),
    )


@router.post("/{escrow_id}/ready", response_model=EscrowResponse)
async def mark_ready(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    escrow = await escrow_service.mark_ready_to_close(db, escrow_id, wallet)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/cancel", response_model=EscrowResponse)
async def cancel_escrow(
    escrow_id: uuid.UUID,
    data: EscrowCancelRequest | None = None,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Cancel an escrow that has not started closing."""
    reason = data.reason if data else None
    escrow = await escrow_service.cancel_escrow(db, escrow_id, wallet, reason)
    return EscrowResponse.model_validate(escrow)


@router.get("/{escrow_id}/audit", response_model=list[AuditEventResponse])
async def get_audit(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> list[AuditEventResponse]:
    """Audit trail, newest first."""
    await escrow_service.get_escrow(db, escrow_id)
    await escrow_service.require_signer(db, escrow_id, wallet)
    events = await list_escrow_audit(db, escrow_id)
    return [AuditEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Payees
# ---------------------------------------------------------------------------

@router.post("/{escrow_id}/payees", response_model=PayeeResponse, status_code=201)
async def add_payee(
    escrow_id: uuid.UUID,
    data: PayeeCreate,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> PayeeResponse:
    """Add a payee. Bank details are tokenized by the custody provider and discarded."""
    payee = await payee_service.add_payee(db, gateway, escrow_id, data, wallet)
    return PayeeResponse.model_validate(payee)


@router.get("/{escrow_id}/payees", response_model=list[PayeeResponse])
async def list_payees(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> list[PayeeResponse]:
    await escrow_service.get_escrow(db, escrow_id)
    await escrow_service.require_signer(db, escrow_id, wallet)
    payees = await payee_service.list_payees(db, escrow_id)
    return [PayeeResponse.model_validate(p) for p in payees]


@router.delete("/{escrow_id}/payees/{payee_id}", status_code=204)
async def remove_payee(
    escrow_id: uuid.UUID,
    payee_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await payee_service.remove_payee(db, escrow_id, payee_id, wallet)
    return Response(status_code=204)


@router.post("/{escrow_id}/payees/{payee_id}/redrive", response_model=PayeeResponse)
async def redrive_payee(
    escrow_id: uuid.UUID,
    payee_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> PayeeResponse:
    """Resubmit a failed payout under a fresh attempt key."""
    payee = await disbursement_service.redrive_payee(db, gateway, escrow_id, payee_id, wallet)
    return PayeeResponse.model_validate(payee)


# ---------------------------------------------------------------------------
# Signers and approvals
# ---------------------------------------------------------------------------

@router.post("/{escrow_id}/signers", response_model=SignerResponse, status_code=201)
async def add_signer(
    escrow_id: uuid.UUID,
    data: SignerCreate,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> SignerResponse:
    signer = await approval_service.add_signer(db, escrow_id, wallet, data)
    return SignerResponse.model_validate(signer)


@router.post("/{escrow_id}/close", response_model=ApprovalStatusResponse)
async def initiate_close(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> ApprovalStatusResponse:
    """Signer #1 opens the close intent and signs it."""
    status = await approval_service.initiate_close(db, escrow_id, wallet)
    return _approval_response(status)


@router.post("/{escrow_id}/signatures", response_model=ApprovalStatusResponse)
async def add_signature(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> ApprovalStatusResponse:
    status = await approval_service.add_signature(db, escrow_id, wallet)
    return _approval_response(status)


@router.get("/{escrow_id}/approval", response_model=ApprovalStatusResponse)
async def get_approval(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> ApprovalStatusResponse:
    escrow = await escrow_service.get_escrow(db, escrow_id)
    await escrow_service.require_signer(db, escrow_id, wallet)
    status = await approval_service.get_approval_status(db, escrow)
    return _approval_response(status)


# ---------------------------------------------------------------------------
# Disbursement
# ---------------------------------------------------------------------------

@router.get("/{escrow_id}/close/preview", response_model=ClosePreviewResponse)
async def preview_close(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> ClosePreviewResponse:
    """What a close would pay out right now. Changes nothing."""
    await escrow_service.get_escrow(db, escrow_id)
    await escrow_service.require_signer(db, escrow_id, wallet)
    preview = await disbursement_service.preview_close(db, gateway, escrow_id)
    plan = preview.plan
    return ClosePreviewResponse(
        escrow_id=escrow_id,
        status=preview.escrow.status.value,
        can_close=preview.can_close,
        blocking_reasons=preview.blocking_reasons,
        custody_balance=plan.custody_balance,
        principal_total=plan.principal_total,
        yield_earned=plan.yield_earned,
        yield_recipient=plan.yield_recipient,
        total=plan.total,
        remaining_balance=plan.remaining_balance,
        payouts=[PlannedPayoutResponse(**line.to_dict()) for line in plan.lines],
    )


@router.post("/{escrow_id}/close/execute", response_model=DisbursementResponse)
async def execute_close(
    escrow_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> DisbursementResponse:
    """Disburse an approved close. Safe to retry."""
    result = await disbursement_service.execute_close(db, gateway, notifier, escrow_id, wallet)
    payees = await payee_service.list_payees(db, escrow_id)
    return DisbursementResponse(
        escrow=EscrowResponse.model_validate(result.escrow),
        finalized=result.finalized,
        succeeded=result.succeeded,
        failed=result.failed,
        awaiting_settlement=result.awaiting_settlement,
        outcomes=[TransferOutcomeResponse(**o.to_dict()) for o in result.outcomes],
        payees=[PayeeResponse.model_validate(p) for p in payees],
    )


# ---------------------------------------------------------------------------
# Dev-only simulation (mock custody)
# ---------------------------------------------------------------------------

def _require_simulation(gateway: CustodyGateway) -> MockCustodyGateway:
    if not settings.dev_simulation_enabled or settings.is_production:
        raise HTTPException(status_code=404, detail="Not found")
    if not isinstance(gateway, MockCustodyGateway):
        raise HTTPException(status_code=409, detail="Simulation requires the mock custody backend")
    return gateway


@router.post("/{escrow_id}/simulate-deposit", response_model=EscrowResponse)
async def simulate_deposit(
    escrow_id: uuid.UUID,
    data: SimulatedFunds,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> EscrowResponse:
    """Credit the escrow wallet and record a completed deposit."""
    mock = _require_simulation(gateway)
    escrow = await escrow_service.get_escrow(db, escrow_id, for_update=True)
    await escrow_service.require_signer(db, escrow_id, wallet)
    await escrow_service.record_deposit(
        db, escrow, data.amount, transfer_ref=f"sim_{uuid.uuid4().hex[:12]}", actor=wallet
    )
    mock.credit(escrow.wallet_ref, data.amount)
    await db.commit()
    await db.refresh(escrow)
    logger.info("Simulated deposit of %s into %s", data.amount, escrow.reference)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/simulate-yield")
async def simulate_yield(
    escrow_id: uuid.UUID,
    data: SimulatedFunds,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> dict:
    """Accrue yield on the custody wallet. Picked up by the next close."""
    mock = _require_simulation(gateway)
    escrow = await escrow_service.get_escrow(db, escrow_id)
    await escrow_service.require_signer(db, escrow_id, wallet)
    if escrow.status not in (
        EscrowStatus.FUNDS_RECEIVED, EscrowStatus.READY_TO_CLOSE, EscrowStatus.CLOSING
    ):
        raise InvalidStateError(f"Cannot accrue yield while escrow is {escrow.status.value}")
    mock.credit(escrow.wallet_ref, data.amount)
    balance = await gateway.get_balance(escrow.wallet_ref)
    logger.info("Simulated yield of %s on %s", data.amount, escrow.reference)
    return {"escrow_id": str(escrow_id), "custody_balance": str(balance)}
