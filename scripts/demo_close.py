#!/usr/bin/env python3
"""
Live E2E Demo: a residential closing from funding to disbursement.

Parties:
  Escrow officer (signer #1) and closing attorney (signer #2), 2-of-2 approval

Showcases:
  1. Escrow open with custody wallet and deposit instructions
  2. Deposit (simulated provider confirmation)
  3. Payees: fixed amounts and a 3% commission, bank details tokenized
  4. Yield accrual on the custody balance
  5. Close preview: amounts, rails, yield routing
  6. Two-signer approval
  7. Idempotent disbursement and re-execution
  8. Wire batch with maker/checker review and positive-pay export
  9. Audit trail

Run:
  1. Start the API:  DEV_SIMULATION_ENABLED=true MOCK_INSTANT_SETTLEMENT=true \\
                     uvicorn settlement.main:app --port 8080
  2. Run this demo:  python scripts/demo_close.py [base_url]
"""

import json
import secrets
import sys

import httpx

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"

# ─── Colors ───

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
MAGENTA = "\033[95m"
RESET = "\033[0m"


def banner(text: str) -> None:
    print(f"\n{'═' * 64}")
    print(f"  {BOLD}{text}{RESET}")
    print(f"{'═' * 64}")


def step(num: int, text: str) -> None:
    print(f"\n{BOLD}{CYAN}Step {num:2d}{RESET} │ {text}")


def party_says(name: str, color: str, msg: str) -> None:
    print(f"         {color}{BOLD}{name}{RESET}: {msg}")


def platform_says(msg: str) -> None:
    print(f"         {MAGENTA}⚙ Platform{RESET}: {msg}")


def show_json(data: dict | list, keys: list[str] | None = None, indent: int = 9) -> None:
    if keys and isinstance(data, dict):
        data = {k: data[k] for k in keys if k in data}
    prefix = " " * indent
    for line in json.dumps(data, indent=2, default=str).split("\n"):
        print(f"{prefix}{DIM}{line}{RESET}")


def fail(msg: str) -> None:
    print(f"\n{RED}{BOLD}✖ FAILED: {msg}{RESET}")
    sys.exit(1)


def expect(resp: httpx.Response, status: int, context: str) -> dict:
    if resp.status_code != status:
        fail(f"{context}: expected {status}, got {resp.status_code}: {resp.text}")
    return resp.json() if resp.content and "json" in resp.headers.get("content-type", "") else {}


class Party:
    """A closing participant acting through its wallet address."""

    def __init__(self, name: str, color: str) -> None:
        self.name = name
        self.color = color
        self.wallet = "0x" + secrets.token_hex(20)
        self.http = httpx.Client(
            base_url=BASE_URL, timeout=30.0, headers={"X-Wallet-Address": self.wallet}
        )

    def says(self, msg: str) -> None:
        party_says(self.name, self.color, msg)


def bank(account_number: str) -> dict:
    return {
        "routing_number": "021000021",
        "account_number": account_number,
        "account_type": "checking",
        "bank_name": "First Demo Bank",
    }


PAYEES = [
    {
        "name": "Sam Seller", "email": "sam@example.com", "role": "seller",
        "payout": {"kind": "fixed", "amount": "400000.00"}, "bank_account": bank("100200300"),
    },
    {
        "name": "Lee Listing Realty", "email": "lee@example.com", "role": "listing_agent",
        "payout": {"kind": "percentage", "basis_points": 300}, "bank_account": bank("400500600"),
    },
    {
        "name": "Pat Buyer", "email": "pat@example.com", "role": "buyer",
        "payout": {"kind": "fixed", "amount": "85000.00"}, "bank_account": bank("700800900"),
    },
]

BATCH_CSV = """Payee Name,Routing Number,Account Number,Amount,Reference
County Recorder,021000021,111122223333,325.00,REC-1
Title Insurance Co,011000015,444455556666,1850.00,TIT-7
HOA Transfer Fee,,,250.00,HOA-2
"""


def main() -> None:
    banner("Escrow Settlement: closing demo")
    officer = Party("Officer", YELLOW)
    attorney = Party("Attorney", GREEN)

    try:
        httpx.get(f"{BASE_URL}/health", timeout=5.0).raise_for_status()
    except httpx.HTTPError:
        fail(f"API not reachable at {BASE_URL}")

    step(1, "Open the escrow (2-of-2 approval)")
    escrow = expect(officer.http.post("/escrows", json={
        "property_address": "742 Evergreen Terrace, Springfield",
        "purchase_price": "500000.00",
        "depositor_name": "Pat Buyer",
        "depositor_email": "pat@example.com",
        "required_approvals": 2,
        "additional_signers": [{"wallet_address": attorney.wallet, "role_label": "attorney"}],
    }), 201, "open escrow")
    escrow_id = escrow["escrow_id"]
    officer.says(f"Opened {escrow['reference']}")
    show_json(escrow, ["reference", "status", "wallet_ref", "deposit_instructions"])

    step(2, "Buyer wires the deposit")
    escrow = expect(officer.http.post(
        f"/escrows/{escrow_id}/simulate-deposit", json={"amount": "500000.00"}
    ), 200, "simulate deposit")
    platform_says(f"Deposit confirmed, status {escrow['status']}, balance {escrow['current_balance']}")

    step(3, "Add payees")
    for payee in PAYEES:
        created = expect(officer.http.post(f"/escrows/{escrow_id}/payees", json=payee), 201, "add payee")
        platform_says(f"{created['name']}: account ****{created['account_last4']} tokenized")

    step(4, "Yield accrues while funds sit in custody")
    accrued = expect(officer.http.post(
        f"/escrows/{escrow_id}/simulate-yield", json={"amount": "187.42"}
    ), 200, "simulate yield")
    platform_says(f"Custody balance now {accrued['custody_balance']}")

    step(5, "Mark ready and preview the close")
    expect(officer.http.post(f"/escrows/{escrow_id}/ready"), 200, "mark ready")
    preview = expect(officer.http.get(f"/escrows/{escrow_id}/close/preview"), 200, "preview")
    show_json(preview, ["can_close", "principal_total", "yield_earned", "total", "remaining_balance"])
    for line in preview["payouts"]:
        platform_says(f"{line['name']}: {line['amount']} via {line['rail'].upper()}")

    step(6, "Both signers approve")
    approval = expect(officer.http.post(f"/escrows/{escrow_id}/close"), 200, "initiate close")
    officer.says(f"Signed ({approval['confirmations']}/{approval['required_approvals']})")
    resp = officer.http.post(f"/escrows/{escrow_id}/close/execute")
    if resp.status_code != 409:
        fail(f"execute before threshold should be refused, got {resp.status_code}")
    platform_says("Execution refused until the threshold is met")
    approval = expect(attorney.http.post(f"/escrows/{escrow_id}/signatures"), 200, "second signature")
    attorney.says(f"Signed ({approval['confirmations']}/{approval['required_approvals']})")

    step(7, "Disburse")
    result = expect(attorney.http.post(f"/escrows/{escrow_id}/close/execute"), 200, "execute close")
    show_json(result["escrow"], ["status", "distributed_total", "yield_earned", "needs_reconciliation"])
    for payee in result["payees"]:
        platform_says(f"{payee['name']}: {payee['status']} {payee['payout_amount']}")
    resp = attorney.http.post(f"/escrows/{escrow_id}/close/execute")
    platform_says(f"Re-executing a closed escrow: HTTP {resp.status_code}, no money moved")

    step(8, "Recording and title fees as a wire batch")
    batch = expect(officer.http.post(
        "/batches",
        files={"file": ("closing_fees.csv", BATCH_CSV.encode(), "text/csv")},
        data={"escrow_id": escrow_id},
    ), 201, "upload batch")
    officer.says(f"Uploaded {batch['reference']}: {batch['total_items']} lines, {batch['total_amount']}")
    resp = officer.http.post(f"/batches/{batch['batch_id']}/approve")
    platform_says(f"Uploader approving own batch: HTTP {resp.status_code} ({resp.json().get('code')})")
    expect(attorney.http.post(f"/batches/{batch['batch_id']}/approve", json={"notes": "fees verified"}),
           200, "approve batch")
    attorney.says("Approved")
    executed = expect(attorney.http.post(
        f"/batches/{batch['batch_id']}/execute", json={"source_account_ref": "wal_operating"}
    ), 200, "execute batch")
    platform_says(
        f"Batch {executed['status']}: {executed['success_count']} sent, "
        f"{executed['skipped_count']} skipped for missing bank details"
    )
    recon = attorney.http.get(f"/batches/{batch['batch_id']}/reconciliation")
    expect(recon, 200, "reconciliation export")
    for line in recon.text.strip().split("\n"):
        print(f"         {DIM}{line}{RESET}")

    step(9, "Audit trail")
    events = expect(officer.http.get(f"/escrows/{escrow_id}/audit"), 200, "audit")
    for event in reversed(events):
        print(f"         {DIM}{event['created_at']}  {event['action']:<24} {event['actor'] or ''}{RESET}")

    banner(f"{GREEN}✔ Closing complete{RESET}")


if __name__ == "__main__":
    main()
