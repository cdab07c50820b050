"""Pydantic v2 schemas for escrows, signers, approvals and the audit trail."""

import re
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from settlement.auth.identity import is_valid_wallet, normalize_wallet
from settlement.schemas.payee import BankAccountIn

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SignerCreate(BaseModel):
    wallet_address: str = Field(..., min_length=42, max_length=42)
    role_label: str = Field("signer", min_length=1, max_length=64)

    @field_validator("wallet_address")
    @classmethod
    def validate_wallet(cls, v: str) -> str:
        if not is_valid_wallet(v):
            raise ValueError("Invalid wallet address format (expected 0x + 40 hex chars)")
        return normalize_wallet(v)


class EscrowCreate(BaseModel):
    """Open an escrow. The calling wallet becomes signer #1."""

    property_address: str = Field(..., min_length=1, max_length=512)
    purchase_price: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    depositor_name: str = Field(..., min_length=1, max_length=256)
    depositor_email: str | None = Field(None, max_length=320)
    yield_enabled: bool = True
    required_approvals: int = Field(1, ge=1, le=10)
    additional_signers: list[SignerCreate] = Field(default_factory=list, max_length=9)
    # Where yield goes if no BUYER payee is added; tokenized at open, never stored raw
    depositor_bank_account: BankAccountIn | None = None

    @field_validator("depositor_email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v is not None and not _EMAIL_RE.match(v):
            raise ValueError("Invalid email address")
        return v


class EscrowCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=512)


class SimulatedFunds(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    reference: str
    property_address: str
    purchase_price: Decimal
    initial_deposit: Decimal
    current_balance: Decimal
    yield_enabled: bool
    yield_earned: Decimal
    yield_recipient: str | None
    distributed_total: Decimal | None
    settlement_ref: str | None
    required_approvals: int
    wallet_ref: str | None
    deposit_account_ref: str | None
    deposit_instructions: str | None
    depositor_name: str
    status: str
    needs_reconciliation: bool
    created_by: str
    created_at: datetime
    funded_at: datetime | None
    closed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class SignerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    signer_id: uuid.UUID
    wallet_address: str
    role_label: str
    ordinal: int
    has_signed: bool
    signed_at: datetime | None


class ApprovalStatusResponse(BaseModel):
    escrow_id: uuid.UUID
    status: str
    required_approvals: int
    confirmations: int
    can_execute: bool
    signers: list[SignerResponse]


class EscrowDetailResponse(EscrowResponse):
    approval: ApprovalStatusResponse


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    audit_id: uuid.UUID
    escrow_id: uuid.UUID | None
    batch_id: uuid.UUID | None
    action: str
    actor: str | None
    details: dict | None
    created_at: datetime

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> str:
        return v.value if hasattr(v, "value") else str(v)
