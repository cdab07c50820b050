"""Tests for the custody gateways: the HTTP client and the in-memory mock."""

import json
from decimal import Decimal

import httpx
import pytest

from settlement.config import settings
from settlement.errors import ProviderCallError
from settlement.models.payee import PaymentRail
from settlement.services.custody import (
    BankDetails,
    HttpCustodyGateway,
    MockCustodyGateway,
    get_custody_gateway,
)
from tests.conftest import ACCOUNT_NUMBER, ROUTING_NUMBER

BASE_URL = "https://custody.test"
CUSTOMER = "cust_123"


def _gateway(handler) -> HttpCustodyGateway:  # type: ignore[no-untyped-def]
    return HttpCustodyGateway(
        base_url=BASE_URL + "/",
        api_key="key_abc",
        customer_id=CUSTOMER,
        transport=httpx.MockTransport(handler),
    )


def _details() -> BankDetails:
    return BankDetails(
        holder_name="Sam Seller",
        routing_number=ROUTING_NUMBER,
        account_number=ACCOUNT_NUMBER,
        bank_name="First Test Bank",
    )


# ---------------------------------------------------------------------------
# HTTP backend
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_http_create_wallet_sends_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "wal_remote"})

    gateway = _gateway(handler)
    assert await gateway.create_wallet("escrow-abc", "base") == "wal_remote"

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == f"/v0/customers/{CUSTOMER}/wallets"
    assert request.headers["Api-Key"] == "key_abc"
    assert request.headers["Idempotency-Key"] == "escrow-abc"
    assert json.loads(request.content) == {"chain": "base"}
    await gateway.aclose()


@pytest.mark.asyncio
async def test_http_deposit_account() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["destination"] == {"currency": "usdb", "wallet_id": "wal_1"}
        return httpx.Response(201, json={
            "id": "va_1",
            "source_deposit_instructions": {"bank_name": "Lead Bank", "deposit_message": "BRGMEMO"},
        })

    account = await _gateway(handler).create_deposit_account("k", "wal_1", yield_enabled=True)
    assert account.account_ref == "va_1"
    assert account.instructions == "Wire to Lead Bank, memo BRGMEMO"


@pytest.mark.asyncio
async def test_http_tokenize_recipient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == f"/v0/customers/{CUSTOMER}/external_accounts"
        account = json.loads(request.content)["account"]
        assert account["routing_number"] == ROUTING_NUMBER
        assert account["checking_or_savings"] == "checking"
        return httpx.Response(201, json={"id": "ext_1"})

    assert await _gateway(handler).tokenize_recipient("k", _details()) == "ext_1"


@pytest.mark.asyncio
async def test_http_transfer_states() -> None:
    states = iter(["payment_processed", "awaiting_funds"])
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v0/transfers"
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"id": f"tr_{len(bodies)}", "state": next(states)})

    gateway = _gateway(handler)
    settled = await gateway.transfer("k1", "wal_1", "ext_1", Decimal("150000.00"), PaymentRail.WIRE, {"payee_id": "p"})
    pending = await gateway.transfer("k2", "wal_1", "ext_2", Decimal("10.00"), PaymentRail.ACH)

    assert settled.transfer_ref == "tr_1"
    assert settled.settled is True
    assert pending.settled is False
    assert bodies[0]["amount"] == "150000.00"
    assert bodies[0]["destination"] == {"payment_rail": "wire", "external_account_id": "ext_1"}
    assert bodies[0]["metadata"] == {"payee_id": "p"}
    assert bodies[1]["metadata"] == {}


@pytest.mark.asyncio
async def test_http_balance_sums_entries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert "Idempotency-Key" not in request.headers
        return httpx.Response(200, json={"balances": [{"balance": "10.50"}, {"balance": "1.25"}]})

    assert await _gateway(handler).get_balance("wal_1") == Decimal("11.75")


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "boom"}),
    httpx.Response(200, content=b"not json"),
    httpx.Response(200, json=["unexpected"]),
    httpx.Response(200, json={"state": "payment_processed"}),
])
async def test_http_bad_responses_raise_provider_error(response: httpx.Response) -> None:
    gateway = _gateway(lambda request: response)
    with pytest.raises(ProviderCallError) as exc:
        await gateway.transfer("k", "wal_1", "ext_1", Decimal("1.00"), PaymentRail.ACH)
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_http_connection_error_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderCallError):
        await _gateway(handler).create_wallet("k", "base")


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------

def test_bank_details_repr_hides_numbers() -> None:
    details = _details()
    assert ACCOUNT_NUMBER not in repr(details)
    assert ROUTING_NUMBER not in repr(details)
    assert details.last4 == ACCOUNT_NUMBER[-4:]


@pytest.mark.asyncio
async def test_mock_calls_are_idempotent() -> None:
    gateway = MockCustodyGateway()
    wallet = await gateway.create_wallet("k-wallet", "base")
    assert wallet.startswith("wal_")
    assert await gateway.create_wallet("k-wallet", "base") == wallet
    assert await gateway.create_wallet("k-other", "base") != wallet

    account = await gateway.create_deposit_account("k-va", wallet, True)
    assert account.account_ref.startswith("va_")
    assert await gateway.create_deposit_account("k-va", wallet, True) == account

    recipient = await gateway.tokenize_recipient("k-ext", _details())
    assert recipient.startswith("ext_")
    assert await gateway.tokenize_recipient("k-ext", _details()) == recipient


@pytest.mark.asyncio
async def test_mock_transfer_replay_moves_money_once() -> None:
    gateway = MockCustodyGateway()
    wallet = await gateway.create_wallet("k", "base")
    gateway.credit(wallet, Decimal("100.00"))

    first = await gateway.transfer("t-1", wallet, "ext_1", Decimal("60.00"), PaymentRail.ACH)
    again = await gateway.transfer("t-1", wallet, "ext_1", Decimal("60.00"), PaymentRail.ACH)
    assert again == first
    assert first.transfer_ref.startswith("tr_")
    assert first.settled is False
    assert await gateway.get_balance(wallet) == Decimal("40.00")
    assert gateway.transfer_calls == 2
    assert list(gateway.executed_transfers) == ["t-1"]

    with pytest.raises(ProviderCallError):
        await gateway.transfer("t-2", wallet, "ext_1", Decimal("60.00"), PaymentRail.ACH)


@pytest.mark.asyncio
async def test_mock_failures() -> None:
    gateway = MockCustodyGateway(instant_settlement=True)
    gateway.fail_destinations.add("ext_bad")
    with pytest.raises(ProviderCallError):
        await gateway.transfer("t-1", "wal_x", "ext_bad", Decimal("1.00"), PaymentRail.ACH)

    receipt = await gateway.transfer("t-2", "wal_x", "ext_ok", Decimal("1.00"), PaymentRail.ACH)
    assert receipt.settled is True

    gateway.unavailable = True
    with pytest.raises(ProviderCallError):
        await gateway.get_balance("wal_x")


def test_default_gateway_is_mock() -> None:
    get_custody_gateway.cache_clear()
    try:
        gateway = get_custody_gateway()
        assert isinstance(gateway, MockCustodyGateway)
        assert get_custody_gateway() is gateway
        assert gateway.instant_settlement == settings.mock_instant_settlement
    finally:
        get_custody_gateway.cache_clear()


def test_http_gateway_selected_by_setting() -> None:
    object.__setattr__(settings, "custody_backend", "http")
    get_custody_gateway.cache_clear()
    try:
        assert isinstance(get_custody_gateway(), HttpCustodyGateway)
    finally:
        get_custody_gateway.cache_clear()
