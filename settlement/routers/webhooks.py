"""Custody provider webhook ingress."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.database import get_db
from settlement.services import reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/custody")
async def custody_webhook(
    request: Request,
    x_webhook_signature: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Verify and apply a provider event. Redeliveries are acknowledged as duplicates."""
    raw_body = await request.body()
    verified = reconciler.verify_webhook(raw_body, x_webhook_signature)
    event = reconciler.parse_event(raw_body)
    result = await reconciler.process_event(db, event, signature_verified=verified)
    logger.info("Provider event %s (%s): %s", event["id"], event["type"], result)
    return {"received": True, "event_id": str(event["id"]), "result": result}
