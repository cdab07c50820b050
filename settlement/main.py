"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from settlement.config import settings
from settlement.errors import register_exception_handlers
from settlement.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from settlement.routers import batches, escrows, webhooks
from settlement.services.custody import HttpCustodyGateway, get_custody_gateway

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    logger.info("Settlement service starting (env=%s, custody=%s)", settings.env, settings.custody_backend)
    if settings.is_production and settings.webhook_allow_unverified:
        logger.warning("webhook_allow_unverified is ignored in production")

    yield

    gateway = get_custody_gateway()
    if isinstance(gateway, HttpCustodyGateway):
        await gateway.aclose()


app = FastAPI(
    title="Escrow Settlement Orchestrator",
    description="Escrow lifecycle, multi-signer approvals, idempotent disbursement and provider reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (last added runs outermost)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    BodySizeLimitMiddleware,
    max_bytes=settings.max_body_bytes,
    upload_max_bytes=settings.max_batch_upload_bytes,
)

register_exception_handlers(app)

app.include_router(escrows.router)
app.include_router(batches.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
