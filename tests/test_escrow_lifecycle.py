"""Tests for the escrow lifecycle: open, good-funds rule, ready, cancel."""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.errors import InvalidStateError
from settlement.models.audit import AuditAction, AuditEvent
from settlement.models.escrow import EscrowStatus
from settlement.services.custody import MockCustodyGateway
from settlement.services.escrow import (
    mark_deposit_pending,
    mark_ready_to_close,
    record_deposit,
    revert_deposit,
)
from tests.conftest import (
    RecordingNotifier,
    create_escrow,
    make_escrow_data,
    make_payee_data,
    make_wallet,
    wallet_headers,
)


async def _open(client: AsyncClient, wallet: str, **overrides: object) -> dict:
    resp = await client.post("/escrows", json=make_escrow_data(**overrides), headers=wallet_headers(wallet))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _deposit(client: AsyncClient, wallet: str, escrow_id: str, amount: str) -> dict:
    resp = await client.post(
        f"/escrows/{escrow_id}/simulate-deposit",
        json={"amount": amount},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Open
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_escrow(client: AsyncClient, notifier: RecordingNotifier) -> None:
    wallet = make_wallet()
    data = await _open(client, wallet)
    assert data["status"] == "created"
    assert data["reference"].startswith("ESC-")
    assert data["wallet_ref"].startswith("wal_")
    assert data["deposit_account_ref"].startswith("va_")
    assert Decimal(data["current_balance"]) == Decimal("0.00")
    assert data["created_by"] == wallet
    assert data["needs_reconciliation"] is False

    # Depositor gets funding instructions
    assert len(notifier.sent) == 1
    to, subject, body = notifier.sent[0]
    assert to == "pat@example.com"
    assert data["reference"] in subject
    assert data["deposit_account_ref"] in body


@pytest.mark.asyncio
async def test_open_escrow_initiator_is_signer_one(client: AsyncClient) -> None:
    wallet, other = make_wallet(), make_wallet()
    data = await _open(
        client, wallet,
        required_approvals=2,
        additional_signers=[{"wallet_address": other, "role_label": "seller"}],
    )
    resp = await client.get(f"/escrows/{data['escrow_id']}/approval", headers=wallet_headers(wallet))
    assert resp.status_code == 200
    signers = resp.json()["signers"]
    assert [(s["wallet_address"], s["ordinal"]) for s in signers] == [(wallet, 1), (other, 2)]
    assert resp.json()["required_approvals"] == 2
    assert resp.json()["confirmations"] == 0


@pytest.mark.asyncio
async def test_open_escrow_wallet_is_normalized(client: AsyncClient) -> None:
    wallet = make_wallet()
    data = await _open(client, "0x" + wallet[2:].upper())
    assert data["created_by"] == wallet


@pytest.mark.asyncio
async def test_open_escrow_requires_wallet_header(client: AsyncClient) -> None:
    resp = await client.post("/escrows", json=make_escrow_data())
    assert resp.status_code == 401
    resp = await client.post("/escrows", json=make_escrow_data(), headers=wallet_headers("0x1234"))
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_open_escrow_threshold_exceeds_signers(client: AsyncClient) -> None:
    resp = await client.post(
        "/escrows",
        json=make_escrow_data(required_approvals=2),
        headers=wallet_headers(make_wallet()),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_open_escrow_duplicate_signer(client: AsyncClient) -> None:
    wallet = make_wallet()
    resp = await client.post(
        "/escrows",
        json=make_escrow_data(additional_signers=[{"wallet_address": wallet}]),
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_open_escrow_rejects_non_positive_price(client: AsyncClient) -> None:
    resp = await client.post(
        "/escrows",
        json=make_escrow_data(purchase_price="0"),
        headers=wallet_headers(make_wallet()),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_escrow_includes_approval(client: AsyncClient) -> None:
    wallet, second = make_wallet(), make_wallet()
    data = await _open(
        client, wallet, required_approvals=2, additional_signers=[{"wallet_address": second}]
    )
    resp = await client.get(f"/escrows/{data['escrow_id']}", headers=wallet_headers(second))
    assert resp.status_code == 200
    body = resp.json()
    assert body["reference"] == data["reference"]
    assert body["approval"]["required_approvals"] == 2
    assert body["approval"]["confirmations"] == 0
    assert body["approval"]["can_execute"] is False
    assert [s["wallet_address"] for s in body["approval"]["signers"]] == [wallet, second]


@pytest.mark.asyncio
async def test_get_escrow_signers_only(client: AsyncClient) -> None:
    data = await _open(client, make_wallet())
    resp = await client.get(f"/escrows/{data['escrow_id']}", headers=wallet_headers(make_wallet()))
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_AUTHORIZED"


@pytest.mark.asyncio
async def test_get_unknown_escrow(client: AsyncClient) -> None:
    resp = await client.get(
        "/escrows/00000000-0000-0000-0000-000000000000", headers=wallet_headers(make_wallet())
    )
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Good funds
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pending_deposit_does_not_fund(
    db_session: AsyncSession, gateway: MockCustodyGateway, notifier: RecordingNotifier
) -> None:
    """Funds seen but not final never make an escrow closable."""
    wallet = make_wallet()
    escrow = await create_escrow(db_session, gateway, notifier, wallet)
    assert await mark_deposit_pending(db_session, escrow, Decimal("500000.00"))
    await db_session.commit()

    assert escrow.status == EscrowStatus.DEPOSIT_PENDING
    assert escrow.current_balance == Decimal("0.00")
    with pytest.raises(InvalidStateError):
        await mark_ready_to_close(db_session, escrow.escrow_id, wallet)

    # A second pending notice is a no-op
    assert not await mark_deposit_pending(db_session, escrow)


@pytest.mark.asyncio
async def test_completed_deposit_funds_escrow(
    db_session: AsyncSession, gateway: MockCustodyGateway, notifier: RecordingNotifier
) -> None:
    escrow = await create_escrow(db_session, gateway, notifier, make_wallet())
    await mark_deposit_pending(db_session, escrow)
    await record_deposit(db_session, escrow, Decimal("500000.00"), transfer_ref="dep_1")
    await db_session.commit()

    assert escrow.status == EscrowStatus.FUNDS_RECEIVED
    assert escrow.initial_deposit == Decimal("500000.00")
    assert escrow.current_balance == Decimal("500000.00")
    assert escrow.funded_at is not None
    assert escrow.deposit_transfer_ref == "dep_1"


@pytest.mark.asyncio
async def test_deposit_cannot_be_recorded_twice(
    db_session: AsyncSession, gateway: MockCustodyGateway, notifier: RecordingNotifier
) -> None:
    escrow = await create_escrow(db_session, gateway, notifier, make_wallet())
    await record_deposit(db_session, escrow, Decimal("1000.00"))
    with pytest.raises(InvalidStateError):
        await record_deposit(db_session, escrow, Decimal("1000.00"))


@pytest.mark.asyncio
async def test_failed_deposit_reverts_to_created(
    db_session: AsyncSession, gateway: MockCustodyGateway, notifier: RecordingNotifier
) -> None:
    escrow = await create_escrow(db_session, gateway, notifier, make_wallet())
    assert not await revert_deposit(db_session, escrow, "nothing pending")
    await mark_deposit_pending(db_session, escrow)
    assert await revert_deposit(db_session, escrow, "returned by bank")
    await db_session.commit()
    assert escrow.status == EscrowStatus.CREATED

    result = await db_session.execute(
        select(AuditEvent.action).where(AuditEvent.escrow_id == escrow.escrow_id)
    )
    actions = set(result.scalars().all())
    assert {AuditAction.DEPOSIT_PENDING, AuditAction.DEPOSIT_FAILED} <= actions


@pytest.mark.asyncio
async def test_deposit_must_be_positive(
    db_session: AsyncSession, gateway: MockCustodyGateway, notifier: RecordingNotifier
) -> None:
    escrow = await create_escrow(db_session, gateway, notifier, make_wallet())
    with pytest.raises(InvalidStateError):
        await record_deposit(db_session, escrow, Decimal("0"))


# ---------------------------------------------------------------------------
# Ready to close
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ready_to_close_flow(client: AsyncClient, gateway: MockCustodyGateway) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    escrow_id = escrow["escrow_id"]

    # Not funded yet
    resp = await client.post(f"/escrows/{escrow_id}/ready", headers=wallet_headers(wallet))
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE"

    funded = await _deposit(client, wallet, escrow_id, "500000.00")
    assert funded["status"] == "funds_received"
    assert await gateway.get_balance(escrow["wallet_ref"]) == Decimal("500000.00")

    # No payees yet
    resp = await client.post(f"/escrows/{escrow_id}/ready", headers=wallet_headers(wallet))
    assert resp.status_code == 409

    resp = await client.post(
        f"/escrows/{escrow_id}/payees", json=make_payee_data(), headers=wallet_headers(wallet)
    )
    assert resp.status_code == 201

    resp = await client.post(f"/escrows/{escrow_id}/ready", headers=wallet_headers(wallet))
    assert resp.status_code == 200
    assert resp.json()["status"] == "ready_to_close"


@pytest.mark.asyncio
async def test_ready_requires_signer(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    await _deposit(client, wallet, escrow["escrow_id"], "1000.00")
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/ready", headers=wallet_headers(make_wallet())
    )
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_escrow(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/cancel",
        json={"reason": "Buyer walked"},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    # Terminal: no deposit, no second cancel
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/simulate-deposit",
        json={"amount": "10.00"},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 409
    resp = await client.post(f"/escrows/{escrow['escrow_id']}/cancel", headers=wallet_headers(wallet))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_cancel_not_allowed_once_closing(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    escrow_id = escrow["escrow_id"]
    await _deposit(client, wallet, escrow_id, "500000.00")
    await client.post(f"/escrows/{escrow_id}/payees", json=make_payee_data(), headers=wallet_headers(wallet))
    await client.post(f"/escrows/{escrow_id}/ready", headers=wallet_headers(wallet))
    resp = await client.post(f"/escrows/{escrow_id}/close", headers=wallet_headers(wallet))
    assert resp.status_code == 200

    resp = await client.post(f"/escrows/{escrow_id}/cancel", headers=wallet_headers(wallet))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_audit_trail_newest_first(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    await _deposit(client, wallet, escrow["escrow_id"], "1000.00")
    resp = await client.get(f"/escrows/{escrow['escrow_id']}/audit", headers=wallet_headers(wallet))
    assert resp.status_code == 200
    actions = [e["action"] for e in resp.json()]
    assert actions == ["deposit_completed", "escrow_created"]


# ---------------------------------------------------------------------------
# Dev simulation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_simulation_disabled_returns_404(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    object.__setattr__(settings, "dev_simulation_enabled", False)
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/simulate-deposit",
        json={"amount": "10.00"},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_simulation_disabled_in_production(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    object.__setattr__(settings, "env", "production")
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/simulate-yield",
        json={"amount": "10.00"},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_simulate_yield_requires_funds(client: AsyncClient) -> None:
    wallet = make_wallet()
    escrow = await _open(client, wallet)
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/simulate-yield",
        json={"amount": "10.00"},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 409

    await _deposit(client, wallet, escrow["escrow_id"], "1000.00")
    resp = await client.post(
        f"/escrows/{escrow['escrow_id']}/simulate-yield",
        json={"amount": "12.34"},
        headers=wallet_headers(wallet),
    )
    assert resp.status_code == 200
    assert resp.json()["custody_balance"] == "1012.34"
