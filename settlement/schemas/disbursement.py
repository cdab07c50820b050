"""Response schemas for close preview and disbursement execution."""

import uuid
from decimal import Decimal

from pydantic import BaseModel

from settlement.schemas.escrow import EscrowResponse
from settlement.schemas.payee import PayeeResponse


class PlannedPayoutResponse(BaseModel):
    payee_id: uuid.UUID | None
    name: str
    role: str
    kind: str
    principal: Decimal
    yield_share: Decimal
    amount: Decimal
    rail: str


class ClosePreviewResponse(BaseModel):
    escrow_id: uuid.UUID
    status: str
    can_close: bool
    blocking_reasons: list[str]
    custody_balance: Decimal
    principal_total: Decimal
    yield_earned: Decimal
    yield_recipient: str | None
    total: Decimal
    remaining_balance: Decimal
    payouts: list[PlannedPayoutResponse]


class TransferOutcomeResponse(BaseModel):
    idempotency_key: str
    success: bool
    transfer_ref: str | None
    settled: bool
    error: str | None
    replayed: bool


class DisbursementResponse(BaseModel):
    escrow: EscrowResponse
    finalized: bool
    succeeded: int
    failed: int
    awaiting_settlement: int
    outcomes: list[TransferOutcomeResponse]
    payees: list[PayeeResponse]
