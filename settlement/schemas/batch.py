"""Pydantic v2 schemas for wire batches."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> object:
    return v.value if hasattr(v, "value") else v


class BatchReview(BaseModel):
    notes: str | None = Field(None, max_length=1024)


class BatchReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1024)


class BatchExecuteRequest(BaseModel):
    # Defaults to the linked escrow's custody wallet
    source_account_ref: str | None = Field(None, max_length=128)


class BatchItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_number: int
    payee_name: str
    amount: Decimal
    reference_id: str | None
    memo: str | None
    rail: str
    account_last4: str | None
    account_type: str | None
    result: str
    transfer_ref: str | None
    error_message: str | None
    processed_at: datetime | None

    @field_validator("rail", "result", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class BatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: uuid.UUID
    reference: str
    escrow_id: uuid.UUID | None
    file_name: str
    file_type: str
    file_size: int
    content_hash: str
    status: str
    total_items: int
    total_amount: Decimal
    rail_subtotals: dict
    parse_errors: list
    missing_bank_details: int
    maker_wallet: str
    checker_wallet: str | None
    checker_notes: str | None
    source_account_ref: str | None
    success_count: int
    failed_count: int
    skipped_count: int
    created_at: datetime
    reviewed_at: datetime | None
    executed_at: datetime | None
    completed_at: datetime | None

    @field_validator("file_type", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class BatchDetailResponse(BatchResponse):
    items: list[BatchItemResponse] = Field(default_factory=list)
