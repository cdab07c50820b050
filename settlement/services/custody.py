"""Custody provider gateway.

Supports two backends:
- HTTP via httpx against the provider's REST API (production)
- In-memory mock (development / testing), idempotent by key

Set CUSTODY_BACKEND=http and configure CUSTODY_* settings for production.
The backend is chosen once at process start by get_custody_gateway(); call
sites only ever see the CustodyGateway protocol.
"""

import logging
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Protocol

import httpx

from settlement.config import settings
from settlement.errors import ProviderCallError
from settlement.models.payee import PaymentRail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BankDetails:
    """Raw recipient bank details. Lives only long enough to be tokenized."""

    holder_name: str
    routing_number: str = field(repr=False)
    account_number: str = field(repr=False)
    account_type: str = "checking"
    bank_name: str | None = None

    @property
    def last4(self) -> str:
        return self.account_number[-4:]


@dataclass(frozen=True)
class DepositAccount:
    account_ref: str
    instructions: str


@dataclass(frozen=True)
class TransferReceipt:
    transfer_ref: str
    status: str  # "pending" or "completed"

    @property
    def settled(self) -> bool:
        return self.status == "completed"


class CustodyGateway(Protocol):
    async def create_wallet(self, idempotency_key: str, chain: str) -> str: ...

    async def create_deposit_account(
        self, idempotency_key: str, wallet_ref: str, yield_enabled: bool
    ) -> DepositAccount: ...

    async def tokenize_recipient(self, idempotency_key: str, details: BankDetails) -> str: ...

    async def transfer(
        self,
        idempotency_key: str,
        source_ref: str,
        destination_ref: str,
        amount: Decimal,
        rail: PaymentRail,
        metadata: dict[str, str] | None = None,
    ) -> TransferReceipt: ...

    async def get_balance(self, wallet_ref: str) -> Decimal: ...


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------

class MockCustodyGateway:
    """In-memory provider. Every call is idempotent by key, like the real one."""

    def __init__(self, instant_settlement: bool = False) -> None:
        self.instant_settlement = instant_settlement
        self.balances: dict[str, Decimal] = {}
        self.fail_destinations: set[str] = set()
        self.unavailable = False
        self.transfer_calls = 0
        self._wallets: dict[str, str] = {}
        self._deposit_accounts: dict[str, DepositAccount] = {}
        self._recipients: dict[str, str] = {}
        self._transfers: dict[str, TransferReceipt] = {}

    @property
    def executed_transfers(self) -> dict[str, TransferReceipt]:
        return dict(self._transfers)

    def _check_available(self) -> None:
        if self.unavailable:
            raise ProviderCallError("Custody provider unavailable")

    async def create_wallet(self, idempotency_key: str, chain: str) -> str:
        self._check_available()
        if idempotency_key not in self._wallets:
            wallet_ref = f"wal_{secrets.token_hex(8)}"
            self._wallets[idempotency_key] = wallet_ref
            self.balances[wallet_ref] = Decimal("0.00")
        return self._wallets[idempotency_key]

    async def create_deposit_account(
        self, idempotency_key: str, wallet_ref: str, yield_enabled: bool
    ) -> DepositAccount:
        self._check_available()
        if idempotency_key not in self._deposit_accounts:
            ref = f"va_{secrets.token_hex(8)}"
            self._deposit_accounts[idempotency_key] = DepositAccount(
                account_ref=ref,
                instructions=f"Wire to Mock Custody Bank, memo {ref}",
            )
        return self._deposit_accounts[idempotency_key]

    async def tokenize_recipient(self, idempotency_key: str, details: BankDetails) -> str:
        self._check_available()
        if idempotency_key not in self._recipients:
            self._recipients[idempotency_key] = f"ext_{secrets.token_hex(8)}"
        return self._recipients[idempotency_key]

    async def transfer(
        self,
        idempotency_key: str,
        source_ref: str,
        destination_ref: str,
        amount: Decimal,
        rail: PaymentRail,
        metadata: dict[str, str] | None = None,
    ) -> TransferReceipt:
        self.transfer_calls += 1
        self._check_available()
        if idempotency_key in self._transfers:
            return self._transfers[idempotency_key]
        if destination_ref in self.fail_destinations:
            raise ProviderCallError(f"Transfer to {destination_ref} rejected by provider")
        if source_ref in self.balances:
            if self.balances[source_ref] < amount:
                raise ProviderCallError("Insufficient funds at provider")
            self.balances[source_ref] -= amount
        receipt = TransferReceipt(
            transfer_ref=f"tr_{secrets.token_hex(8)}",
            status="completed" if self.instant_settlement else "pending",
        )
        self._transfers[idempotency_key] = receipt
        return receipt

    async def get_balance(self, wallet_ref: str) -> Decimal:
        self._check_available()
        return self.balances.get(wallet_ref, Decimal("0.00"))

    def credit(self, wallet_ref: str, amount: Decimal) -> None:
        """Simulate funds (deposit or accrued yield) landing in a wallet."""
        self.balances[wallet_ref] = self.balances.get(wallet_ref, Decimal("0.00")) + amount


# ---------------------------------------------------------------------------
# HTTP backend
# ---------------------------------------------------------------------------

class HttpCustodyGateway:
    """Provider REST client. Mutating calls carry an Idempotency-Key header."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        customer_id: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.customer_id = customer_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Api-Key": api_key, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        idempotency_key: str | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = await self._client.request(method, path, json=json, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Custody %s %s failed: HTTP %s", method, path, e.response.status_code)
            raise ProviderCallError(
                f"Custody call {method} {path} failed: HTTP {e.response.status_code}"
            )
        except httpx.RequestError as e:
            logger.warning("Custody %s %s failed: %s", method, path, e)
            raise ProviderCallError(f"Custody call {method} {path} failed: {e}")

        try:
            data = resp.json()
        except ValueError:
            raise ProviderCallError(f"Custody call {method} {path} returned invalid JSON")
        if not isinstance(data, dict):
            raise ProviderCallError(f"Custody call {method} {path} returned unexpected payload")
        return data

    @staticmethod
    def _require(data: dict[str, Any], key: str) -> Any:
        value = data.get(key)
        if value is None:
            raise ProviderCallError(f"Custody response missing '{key}'")
        return value

    async def create_wallet(self, idempotency_key: str, chain: str) -> str:
        data = await self._request(
            "POST",
            f"/v0/customers/{self.customer_id}/wallets",
            idempotency_key,
            {"chain": chain},
        )
        return str(self._require(data, "id"))

    async def create_deposit_account(
        self, idempotency_key: str, wallet_ref: str, yield_enabled: bool
    ) -> DepositAccount:
        data = await self._request(
            "POST",
            f"/v0/customers/{self.customer_id}/virtual_accounts",
            idempotency_key,
            {
                "source": {"currency": "usd"},
                "destination": {"currency": "usdb" if yield_enabled else "usdc", "wallet_id": wallet_ref},
            },
        )
        instructions = data.get("source_deposit_instructions") or {}
        bank_name = instructions.get("bank_name", "custody bank")
        memo = instructions.get("deposit_message") or self._require(data, "id")
        return DepositAccount(
            account_ref=str(self._require(data, "id")),
            instructions=f"Wire to {bank_name}, memo {memo}",
        )

    async def tokenize_recipient(self, idempotency_key: str, details: BankDetails) -> str:
        data = await self._request(
            "POST",
            f"/v0/customers/{self.customer_id}/external_accounts",
            idempotency_key,
            {
                "account_type": "us",
                "account_owner_name": details.holder_name,
                "bank_name": details.bank_name,
                "account": {
                    "routing_number": details.routing_number,
                    "account_number": details.account_number,
                    "checking_or_savings": details.account_type,
                },
            },
        )
        return str(self._require(data, "id"))

    async def transfer(
        self,
        idempotency_key: str,
        source_ref: str,
        destination_ref: str,
        amount: Decimal,
        rail: PaymentRail,
        metadata: dict[str, str] | None = None,
    ) -> TransferReceipt:
        data = await self._request(
            "POST",
            "/v0/transfers",
            idempotency_key,
            {
                "amount": str(amount),
                "on_behalf_of": self.customer_id,
                "client_reference_id": idempotency_key,
                "source": {"payment_rail": "wallet", "wallet_id": source_ref},
                "destination": {"payment_rail": rail.value, "external_account_id": destination_ref},
                "metadata": metadata or {},
            },
        )
        state = data.get("state", "")
        return TransferReceipt(
            transfer_ref=str(self._require(data, "id")),
            status="completed" if state == "payment_processed" else "pending",
        )

    async def get_balance(self, wallet_ref: str) -> Decimal:
        data = await self._request(
            "GET", f"/v0/customers/{self.customer_id}/wallets/{wallet_ref}"
        )
        total = Decimal("0.00")
        for entry in data.get("balances", []):
            total += Decimal(str(entry.get("balance", "0")))
        return total


@lru_cache
def get_custody_gateway() -> CustodyGateway:
    """Process-wide gateway, chosen from settings on first use."""
    if settings.custody_backend == "http":
        logger.info("Using HTTP custody backend at %s", settings.custody_api_url)
        return HttpCustodyGateway(
            base_url=settings.custody_api_url,
            api_key=settings.custody_api_key,
            customer_id=settings.custody_customer_id,
            timeout=settings.custody_timeout_seconds,
        )
    logger.info("Using in-memory mock custody backend")
    return MockCustodyGateway(instant_settlement=settings.mock_instant_settlement)
