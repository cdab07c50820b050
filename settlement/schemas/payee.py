"""Pydantic v2 schemas for payees.

The payout is a tagged variant: either ``{"kind": "fixed", "amount": ...}`` or
``{"kind": "percentage", "basis_points": ...}``. The flat form
(``amount`` / ``basis_points`` at the top level) is also accepted as long
as exactly one of the two is present.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from settlement.models.payee import FixedAmount, PaymentRail, PayeeRole, PayoutSpec, Percentage
from settlement.utils.banking import is_valid_account_number, is_valid_routing_number


class FixedPayout(BaseModel):
    kind: Literal["fixed"] = "fixed"
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)

    def to_spec(self) -> PayoutSpec:
        return FixedAmount(self.amount)


class PercentagePayout(BaseModel):
    kind: Literal["percentage"] = "percentage"
    basis_points: int = Field(..., ge=0, le=10000)

    def to_spec(self) -> PayoutSpec:
        return Percentage(self.basis_points)


Payout = Annotated[FixedPayout | PercentagePayout, Field(discriminator="kind")]


class BankAccountIn(BaseModel):
    """Raw bank details. Forwarded for tokenization, never persisted."""

    routing_number: str = Field(..., repr=False)
    account_number: str = Field(..., repr=False)
    account_type: Literal["checking", "savings"] = "checking"
    bank_name: str | None = Field(None, max_length=128)

    @field_validator("routing_number")
    @classmethod
    def validate_routing(cls, v: str) -> str:
        if not is_valid_routing_number(v):
            raise ValueError("Routing number must be 9 digits with a valid ABA checksum")
        return v

    @field_validator("account_number")
    @classmethod
    def validate_account(cls, v: str) -> str:
        if not is_valid_account_number(v):
            raise ValueError("Account number must be 4-17 digits")
        return v


class PayeeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    email: str | None = Field(None, max_length=320)
    role: PayeeRole
    payout: Payout
    bank_account: BankAccountIn
    preferred_rail: PaymentRail | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_flat_payout(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "payout" in data:
            return data
        has_amount = data.get("amount") is not None
        has_bp = data.get("basis_points") is not None
        if has_amount and has_bp:
            raise ValueError("Specify either amount or basis_points, not both")
        if not has_amount and not has_bp:
            raise ValueError("One of amount or basis_points is required")
        data = dict(data)
        if has_amount:
            data["payout"] = {"kind": "fixed", "amount": data.pop("amount")}
            data.pop("basis_points", None)
        else:
            data["payout"] = {"kind": "percentage", "basis_points": data.pop("basis_points")}
            data.pop("amount", None)
        return data


class PayeeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payee_id: uuid.UUID
    escrow_id: uuid.UUID
    name: str
    role: str
    kind: str
    amount: Decimal | None
    basis_points: int | None
    settlement_ref: str
    bank_name: str | None
    account_last4: str | None
    preferred_rail: str | None
    status: str
    payout_amount: Decimal | None
    payout_rail: str | None
    transfer_ref: str | None
    failure_reason: str | None
    created_at: datetime
    paid_at: datetime | None

    @field_validator("role", "kind", "status", "preferred_rail", "payout_rail", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return v.value if hasattr(v, "value") else v
