"""US bank routing/account number checks."""

import re

_ROUTING_RE = re.compile(r"^\d{9}$")
_ACCOUNT_RE = re.compile(r"^\d{4,17}$")
_ABA_WEIGHTS = (3, 7, 1, 3, 7, 1, 3, 7, 1)


def is_valid_routing_number(routing: str) -> bool:
    """Nine digits with a valid ABA checksum (weights 3-7-1)."""
    if not _ROUTING_RE.match(routing):
        return False
    total = sum(int(d) * w for d, w in zip(routing, _ABA_WEIGHTS))
    return total % 10 == 0


def is_valid_account_number(account: str) -> bool:
    return bool(_ACCOUNT_RE.match(account))


def last4(account: str) -> str:
    return account[-4:]
