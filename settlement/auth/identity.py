"""Caller wallet identity dependency for FastAPI.

Login and passkey authentication happen upstream; this service only needs to
know which wallet is acting, so that signer, maker and checker rules can be
enforced. Wallets are compared case-insensitively and stored lowercased.
"""

import re

from fastapi import Header, HTTPException

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_wallet(address: str) -> bool:
    return bool(_ETH_ADDRESS_RE.match(address))


def normalize_wallet(address: str) -> str:
    return address.strip().lower()


async def require_wallet(
    x_wallet_address: str | None = Header(default=None),
) -> str:
    """Return the acting wallet from the X-Wallet-Address header, normalized."""
    if not x_wallet_address:
        raise HTTPException(status_code=401, detail="Missing X-Wallet-Address header")
    address = x_wallet_address.strip()
    if not is_valid_wallet(address):
        raise HTTPException(
            status_code=401,
            detail="Invalid X-Wallet-Address (expected 0x + 40 hex chars)",
        )
    return normalize_wallet(address)
