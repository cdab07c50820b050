"""Unit tests for payout resolution, yield allocation and rail routing."""

import uuid
from decimal import Decimal

from settlement.config import settings
from settlement.models.escrow import Escrow, EscrowStatus
from settlement.models.payee import (
    FixedAmount,
    Payee,
    PayeeRole,
    PayeeStatus,
    PaymentRail,
    PayoutKind,
    Percentage,
)
from settlement.services.payouts import (
    DEPOSITOR,
    build_payout_plan,
    calculate_yield,
    determine_rail,
    resolve_amount,
    to_cents,
)


def _escrow(price: str = "500000.00", deposit: str = "500000.00") -> Escrow:
    return Escrow(
        escrow_id=uuid.uuid4(),
        reference="ESC-2026-000001",
        property_address="1 Test Way",
        purchase_price=Decimal(price),
        initial_deposit=Decimal(deposit),
        current_balance=Decimal(deposit),
        depositor_name="Pat Buyer",
        status=EscrowStatus.READY_TO_CLOSE,
        created_by="0x" + "a" * 40,
    )


def _payee(
    name: str,
    role: PayeeRole,
    spec: FixedAmount | Percentage,
    status: PayeeStatus = PayeeStatus.PENDING,
    preferred_rail: PaymentRail | None = None,
) -> Payee:
    return Payee(
        payee_id=uuid.uuid4(),
        name=name,
        role=role,
        kind=PayoutKind.PRINCIPAL,
        payout_spec=spec,
        settlement_ref=f"ext_{name.lower()}",
        status=status,
        preferred_rail=preferred_rail,
    )


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

def test_percentage_of_purchase_price() -> None:
    assert resolve_amount(Decimal("500000"), Percentage(300)) == Decimal("15000.00")


def test_fixed_amount_passes_through() -> None:
    assert resolve_amount(Decimal("500000"), FixedAmount(Decimal("1234.5"))) == Decimal("1234.50")


def test_rounding_is_half_up_to_cents() -> None:
    assert resolve_amount(Decimal("1.00"), Percentage(50)) == Decimal("0.01")
    assert resolve_amount(Decimal("333333.33"), Percentage(1)) == Decimal("33.33")
    assert to_cents(Decimal("2.675")) == Decimal("2.68")
    assert to_cents(Decimal("2.674")) == Decimal("2.67")


def test_zero_basis_points() -> None:
    assert resolve_amount(Decimal("500000"), Percentage(0)) == Decimal("0.00")


def test_yield_is_excess_over_deposit() -> None:
    assert calculate_yield(Decimal("500123.45"), Decimal("500000.00")) == Decimal("123.45")
    assert calculate_yield(Decimal("500000.00"), Decimal("500000.00")) == Decimal("0.00")
    assert calculate_yield(Decimal("499000.00"), Decimal("500000.00")) == Decimal("0.00")


# ---------------------------------------------------------------------------
# Rails
# ---------------------------------------------------------------------------

def test_rail_by_threshold() -> None:
    assert determine_rail(Decimal("100000.01")) == PaymentRail.WIRE
    assert determine_rail(Decimal("100000.00")) == PaymentRail.ACH
    assert determine_rail(Decimal("50.00")) == PaymentRail.ACH


def test_rail_rtp_when_enabled() -> None:
    object.__setattr__(settings, "rtp_enabled", True)
    assert determine_rail(Decimal("50.00")) == PaymentRail.RTP
    assert determine_rail(Decimal("250000.00")) == PaymentRail.WIRE


def test_rail_preference_wins() -> None:
    assert determine_rail(Decimal("250000.00"), PaymentRail.ACH) == PaymentRail.ACH
    assert determine_rail(Decimal("10.00"), PaymentRail.WIRE) == PaymentRail.WIRE


def test_rail_threshold_configurable() -> None:
    object.__setattr__(settings, "wire_threshold", Decimal("1000.00"))
    assert determine_rail(Decimal("1000.01")) == PaymentRail.WIRE


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

def test_plan_routes_yield_to_buyer() -> None:
    escrow = _escrow()
    seller = _payee("Seller", PayeeRole.SELLER, FixedAmount(Decimal("400000.00")))
    buyer = _payee("Buyer", PayeeRole.BUYER, FixedAmount(Decimal("50000.00")))
    plan = build_payout_plan(escrow, [seller, buyer], Decimal("500250.00"))

    assert plan.yield_earned == Decimal("250.00")
    assert plan.yield_recipient == str(buyer.payee_id)
    assert plan.principal_total == Decimal("450000.00")
    assert plan.total == Decimal("450250.00")
    assert plan.remaining_balance == Decimal("50000.00")

    buyer_line = next(line for line in plan.lines if line.payee is buyer)
    assert buyer_line.yield_share == Decimal("250.00")
    assert buyer_line.amount == Decimal("50250.00")
    assert len(plan.lines) == 2
    assert next(line for line in plan.lines if line.payee is seller).rail == PaymentRail.WIRE


def test_plan_synthesizes_yield_return_without_buyer() -> None:
    escrow = _escrow()
    seller = _payee("Seller", PayeeRole.SELLER, FixedAmount(Decimal("500000.00")))
    plan = build_payout_plan(escrow, [seller], Decimal("500080.00"))

    assert plan.yield_recipient == DEPOSITOR
    assert len(plan.lines) == 2
    yield_line = plan.lines[-1]
    assert yield_line.payee is None
    assert yield_line.kind == PayoutKind.YIELD_RETURN
    assert yield_line.name == "Pat Buyer"
    assert yield_line.amount == Decimal("80.00")
    assert yield_line.rail == PaymentRail.ACH
    assert plan.total == Decimal("500080.00")
    assert plan.remaining_balance == Decimal("0.00")


def test_plan_without_yield() -> None:
    escrow = _escrow()
    seller = _payee("Seller", PayeeRole.SELLER, Percentage(9700))
    agent = _payee("Agent", PayeeRole.LISTING_AGENT, Percentage(300))
    plan = build_payout_plan(escrow, [seller, agent], Decimal("500000.00"))

    assert plan.yield_earned == Decimal("0.00")
    assert plan.yield_recipient is None
    assert [line.amount for line in plan.lines] == [Decimal("485000.00"), Decimal("15000.00")]
    assert plan.total == Decimal("500000.00")


def test_plan_yield_computed_even_when_disabled() -> None:
    """Excess balance still belongs to the depositor."""
    escrow = _escrow()
    escrow.yield_enabled = False
    buyer = _payee("Buyer", PayeeRole.BUYER, FixedAmount(Decimal("1000.00")))
    plan = build_payout_plan(escrow, [buyer], Decimal("500010.00"))
    assert plan.yield_earned == Decimal("10.00")
    assert plan.lines[0].amount == Decimal("1010.00")


def test_plan_skips_non_pending_payees() -> None:
    escrow = _escrow()
    done = _payee("Done", PayeeRole.SELLER, FixedAmount(Decimal("100.00")), status=PayeeStatus.COMPLETED)
    todo = _payee("Todo", PayeeRole.OTHER, FixedAmount(Decimal("200.00")))
    plan = build_payout_plan(escrow, [done, todo], Decimal("500000.00"))
    assert [line.payee for line in plan.lines] == [todo]


def test_planned_payout_to_dict() -> None:
    escrow = _escrow()
    seller = _payee("Seller", PayeeRole.SELLER, FixedAmount(Decimal("2500.00")))
    line = build_payout_plan(escrow, [seller], Decimal("500000.00")).lines[0].to_dict()
    assert line == {
        "payee_id": str(seller.payee_id),
        "name": "Seller",
        "role": "seller",
        "kind": "principal",
        "principal": "2500.00",
        "yield_share": "0.00",
        "amount": "2500.00",
        "rail": "ach",
    }
