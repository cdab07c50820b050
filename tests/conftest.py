"""Test configuration and fixtures.

Each test gets its own in-memory SQLite database (aiosqlite, one shared
connection via StaticPool) with tables created from the models, so tests
never need a running Postgres.
"""

import json
import secrets
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from settlement.config import settings
from settlement.database import Base, get_db
from settlement.main import app
from settlement.models.escrow import Escrow
from settlement.schemas.escrow import EscrowCreate
from settlement.schemas.payee import PayeeCreate
from settlement.services.custody import MockCustodyGateway, get_custody_gateway
from settlement.services.escrow import mark_ready_to_close, open_escrow, record_deposit
from settlement.services.notifications import get_notifier
from settlement.services.payees import add_payee
from settlement.utils.crypto import build_signature_header, public_key_for

# Fixed seed: pytest loads this file as `conftest` and the tests import it
# again as `tests.conftest`, so both copies must agree on the key
WEBHOOK_PRIVATE_KEY = "11" * 32
WEBHOOK_PUBLIC_KEY = public_key_for(WEBHOOK_PRIVATE_KEY)

# Passes the ABA checksum
ROUTING_NUMBER = "021000021"
ACCOUNT_NUMBER = "123456789012"


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "env", "test")
    object.__setattr__(settings, "dev_simulation_enabled", True)
    object.__setattr__(settings, "webhook_public_key", WEBHOOK_PUBLIC_KEY)
    object.__setattr__(settings, "webhook_allow_unverified", False)
    object.__setattr__(settings, "rtp_enabled", False)
    object.__setattr__(settings, "wire_threshold", Decimal("100000.00"))
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def _engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.test_database_url,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session = AsyncSession(bind=_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
def gateway() -> MockCustodyGateway:
    return MockCustodyGateway()


class RecordingNotifier:
    """Notifier that keeps messages in memory instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: MockCustodyGateway,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, custody and notifier dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_custody_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_wallet() -> str:
    return "0x" + secrets.token_hex(20)


def wallet_headers(wallet: str) -> dict[str, str]:
    return {"X-Wallet-Address": wallet}


def make_bank_account(account_number: str = ACCOUNT_NUMBER) -> dict:
    return {
        "routing_number": ROUTING_NUMBER,
        "account_number": account_number,
        "account_type": "checking",
        "bank_name": "First Test Bank",
    }


def make_escrow_data(**overrides: object) -> dict:
    """Factory for escrow open payload."""
    data: dict = {
        "property_address": "742 Evergreen Terrace, Springfield",
        "purchase_price": "500000.00",
        "depositor_name": "Pat Buyer",
        "depositor_email": "pat@example.com",
        "yield_enabled": True,
        "required_approvals": 1,
        "additional_signers": [],
    }
    data.update(overrides)
    return data


def make_payee_data(
    name: str = "Sam Seller",
    role: str = "seller",
    amount: str | None = None,
    basis_points: int | None = None,
    account_number: str = ACCOUNT_NUMBER,
    **overrides: object,
) -> dict:
    """Factory for payee payload. Defaults to a fixed payout."""
    if basis_points is not None:
        payout: dict = {"kind": "percentage", "basis_points": basis_points}
    else:
        payout = {"kind": "fixed", "amount": amount or "100000.00"}
    data: dict = {
        "name": name,
        "email": f"{name.split()[0].lower()}@example.com",
        "role": role,
        "payout": payout,
        "bank_account": make_bank_account(account_number),
    }
    data.update(overrides)
    return data


def signed_webhook(event: dict, timestamp: str | None = None) -> tuple[bytes, dict[str, str]]:
    """Serialize an event and sign it with the test provider key."""
    body = json.dumps(event).encode()
    header = build_signature_header(WEBHOOK_PRIVATE_KEY, body, timestamp)
    return body, {"X-Webhook-Signature": header, "Content-Type": "application/json"}


async def create_escrow(
    db: AsyncSession,
    gateway: MockCustodyGateway,
    notifier: RecordingNotifier,
    initiator: str,
    **overrides: object,
) -> Escrow:
    """Open an escrow through the service layer."""
    data = EscrowCreate(**make_escrow_data(**overrides))
    return await open_escrow(db, gateway, notifier, data, initiator)


async def fund_escrow(
    db: AsyncSession,
    gateway: MockCustodyGateway,
    escrow: Escrow,
    amount: Decimal,
) -> Escrow:
    """Record a confirmed deposit and put the funds in the custody wallet."""
    await record_deposit(db, escrow, amount, transfer_ref="dep_test")
    gateway.credit(escrow.wallet_ref, amount)
    await db.commit()
    return escrow


async def ready_escrow(
    db: AsyncSession,
    gateway: MockCustodyGateway,
    notifier: RecordingNotifier,
    initiator: str,
    payees: list[dict] | None = None,
    deposit: Decimal = Decimal("500000.00"),
    **overrides: object,
) -> Escrow:
    """Open, fund and add payees to an escrow, leaving it READY_TO_CLOSE."""
    escrow = await create_escrow(db, gateway, notifier, initiator, **overrides)
    await fund_escrow(db, gateway, escrow, deposit)
    for data in payees if payees is not None else [make_payee_data()]:
        await add_payee(db, gateway, escrow.escrow_id, PayeeCreate(**data), initiator)
    return await mark_ready_to_close(db, escrow.escrow_id, initiator)
