"""Wire batch upload, maker/checker review, execution and reconciliation export."""

import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.auth.identity import require_wallet
from settlement.config import settings
from settlement.database import get_db
from settlement.schemas.batch import (
    BatchDetailResponse,
    BatchExecuteRequest,
    BatchItemResponse,
    BatchReject,
    BatchResponse,
    BatchReview,
)
from settlement.schemas.escrow import AuditEventResponse
from settlement.services import batches as batch_service
from settlement.services.audit import list_batch_audit
from settlement.services.custody import CustodyGateway, get_custody_gateway

router = APIRouter(prefix="/batches", tags=["batches"])

_ALLOWED_EXTENSIONS = {".csv", ".txt", ".ach", ".nacha"}


async def _read_upload(file: UploadFile) -> bytes:
    name = (file.filename or "").lower()
    if not any(name.endswith(ext) for ext in _ALLOWED_EXTENSIONS):
        accepted = ", ".join(sorted(_ALLOWED_EXTENSIONS))
        raise HTTPException(status_code=415, detail=f"Unsupported file type. Accepted formats: {accepted}")

    contents = await file.read()
    if len(contents) == 0:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(contents) > settings.max_batch_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.max_batch_upload_bytes} byte limit.",
        )
    return contents


async def _detail(db: AsyncSession, batch_id: uuid.UUID) -> BatchDetailResponse:
    batch = await batch_service.get_batch(db, batch_id)
    items = await batch_service.list_items(db, batch_id)
    response = BatchDetailResponse.model_validate(batch)
    response.items = [BatchItemResponse.model_validate(i) for i in items]
    return response


@router.post("", response_model=BatchDetailResponse, status_code=201)
async def upload_batch(
    file: UploadFile = File(...),
    escrow_id: uuid.UUID | None = Form(None),
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> BatchDetailResponse:
    """Upload a NACHA or CSV payout file. The uploader is the maker."""
    contents = await _read_upload(file)
    batch = await batch_service.upload_batch(
        db, gateway, contents, file.filename or "upload", wallet, escrow_id=escrow_id
    )
    return await _detail(db, batch.batch_id)


@router.get("/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(
    batch_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> BatchDetailResponse:
    return await _detail(db, batch_id)


@router.post("/{batch_id}/approve", response_model=BatchResponse)
async def approve_batch(
    batch_id: uuid.UUID,
    data: BatchReview | None = None,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> BatchResponse:
    """Checker approval. The maker can never approve their own batch."""
    batch = await batch_service.approve_batch(db, batch_id, wallet, data.notes if data else None)
    return BatchResponse.model_validate(batch)


@router.post("/{batch_id}/reject", response_model=BatchResponse)
async def reject_batch(
    batch_id: uuid.UUID,
    data: BatchReject,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> BatchResponse:
    batch = await batch_service.reject_batch(db, batch_id, wallet, data.reason)
    return BatchResponse.model_validate(batch)


@router.post("/{batch_id}/execute", response_model=BatchDetailResponse)
async def execute_batch(
    batch_id: uuid.UUID,
    data: BatchExecuteRequest | None = None,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
    gateway: CustodyGateway = Depends(get_custody_gateway),
) -> BatchDetailResponse:
    """Submit every line. Lines without bank details are skipped."""
    await batch_service.execute_batch(
        db, gateway, batch_id, wallet,
        source_account_ref=data.source_account_ref if data else None,
    )
    return await _detail(db, batch_id)


@router.post("/{batch_id}/cancel", response_model=BatchResponse)
async def cancel_batch(
    batch_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> BatchResponse:
    batch = await batch_service.cancel_batch(db, batch_id, wallet)
    return BatchResponse.model_validate(batch)


@router.get("/{batch_id}/audit", response_model=list[AuditEventResponse])
async def get_batch_audit(
    batch_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> list[AuditEventResponse]:
    await batch_service.get_batch(db, batch_id)
    events = await list_batch_audit(db, batch_id)
    return [AuditEventResponse.model_validate(e) for e in events]


@router.get("/{batch_id}/reconciliation")
async def get_reconciliation(
    batch_id: uuid.UUID,
    wallet: str = Depends(require_wallet),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Positive-pay CSV of cleared lines, for ledger balancing."""
    file_name, content = await batch_service.reconciliation_csv(db, batch_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
