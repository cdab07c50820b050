"""Payout amount resolution, yield allocation and rail routing.

Pure functions over already-loaded rows: nothing here touches the database
or the custody provider, so the close preview and the executor share them.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from settlement.config import settings
from settlement.models.escrow import Escrow
from settlement.models.payee import (
    FixedAmount,
    PaymentRail,
    Payee,
    PayeeRole,
    PayeeStatus,
    PayoutKind,
    PayoutSpec,
)

CENT = Decimal("0.01")
BASIS_POINTS_DENOMINATOR = Decimal("10000")
DEPOSITOR = "depositor"


def to_cents(value: Decimal) -> Decimal:
    """Round half up to the nearest cent."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_amount(purchase_price: Decimal, spec: PayoutSpec) -> Decimal:
    if isinstance(spec, FixedAmount):
        return to_cents(spec.amount)
    return to_cents(Decimal(purchase_price) * spec.basis_points / BASIS_POINTS_DENOMINATOR)


def calculate_yield(custody_balance: Decimal, principal_held: Decimal) -> Decimal:
    """Everything above the principal still held is yield, and it belongs to the depositor."""
    return max(Decimal("0.00"), to_cents(custody_balance - principal_held))


def determine_rail(amount: Decimal, preferred: PaymentRail | None = None) -> PaymentRail:
    if preferred is not None:
        return preferred
    if amount > settings.wire_threshold:
        return PaymentRail.WIRE
    return PaymentRail.RTP if settings.rtp_enabled else PaymentRail.ACH


@dataclass
class PlannedPayout:
    payee: Payee | None  # None: synthesized yield-return line, created at execution
    name: str
    role: PayeeRole
    kind: PayoutKind
    principal: Decimal
    yield_share: Decimal
    rail: PaymentRail

    @property
    def amount(self) -> Decimal:
        return self.principal + self.yield_share

    def to_dict(self) -> dict:
        return {
            "payee_id": str(self.payee.payee_id) if self.payee is not None else None,
            "name": self.name,
            "role": self.role.value,
            "kind": self.kind.value,
            "principal": str(self.principal),
            "yield_share": str(self.yield_share),
            "amount": str(self.amount),
            "rail": self.rail.value,
        }


@dataclass
class PayoutPlan:
    lines: list[PlannedPayout] = field(default_factory=list)
    principal_total: Decimal = Decimal("0.00")
    yield_earned: Decimal = Decimal("0.00")
    yield_recipient: str | None = None
    custody_balance: Decimal = Decimal("0.00")

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal("0.00"))

    @property
    def remaining_balance(self) -> Decimal:
        return self.custody_balance - self.total


def build_payout_plan(escrow: Escrow, payees: list[Payee], custody_balance: Decimal) -> PayoutPlan:
    """Resolve every pending payee and route all yield to the depositor.

    Yield goes to the BUYER payee when there is one; otherwise a separate
    yield-return line to the depositor is planned. It is never left behind.
    """
    plan = PayoutPlan(custody_balance=custody_balance)
    pending = [
        p for p in payees
        if p.status == PayeeStatus.PENDING and p.kind == PayoutKind.PRINCIPAL
    ]
    for payee in pending:
        principal = resolve_amount(escrow.purchase_price, payee.payout_spec)
        plan.lines.append(PlannedPayout(
            payee=payee,
            name=payee.name,
            role=payee.role,
            kind=PayoutKind.PRINCIPAL,
            principal=principal,
            yield_share=Decimal("0.00"),
            rail=determine_rail(principal, payee.preferred_rail),
        ))
        plan.principal_total += principal

    # Computed even when yield_enabled is off: any excess still belongs to the depositor.
    # Principal held is the deposit less any batch payouts already drawn from the wallet.
    plan.yield_earned = calculate_yield(custody_balance, escrow.current_balance)
    if plan.yield_earned <= 0:
        return plan

    buyer_line = next((line for line in plan.lines if line.role == PayeeRole.BUYER), None)
    if buyer_line is not None:
        buyer_line.yield_share = plan.yield_earned
        buyer_line.rail = determine_rail(buyer_line.amount, buyer_line.payee.preferred_rail)
        plan.yield_recipient = str(buyer_line.payee.payee_id)
    else:
        plan.lines.append(PlannedPayout(
            payee=None,
            name=escrow.depositor_name,
            role=PayeeRole.BUYER,
            kind=PayoutKind.YIELD_RETURN,
            principal=Decimal("0.00"),
            yield_share=plan.yield_earned,
            rail=determine_rail(plan.yield_earned),
        ))
        plan.yield_recipient = DEPOSITOR
    return plan
