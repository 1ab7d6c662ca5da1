"""Refund and coin-credit calculations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from returnflow.config import ReturnPolicy
from returnflow.exceptions import ValidationError
from returnflow.schemas import Deduction, DeductionType, PickupCharge, ReturnItem, ReturnRequest
from returnflow.services.pickup_charge import classify_reason

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_percentage(percentage) -> Decimal:
    try:
        pct = Decimal(str(percentage))
    except ArithmeticError:
        raise ValidationError(f"Invalid refund percentage: {percentage}")
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(f"Refund percentage must be between 0 and 100, got {percentage}")
    return pct


@dataclass
class RefundCalculation:
    original_amount: Decimal
    refund_amount: Decimal
    coin_equivalent: Decimal
    percentage: Decimal

    def to_dict(self) -> dict:
        return {
            "original_amount": str(self.original_amount),
            "refund_amount": str(self.refund_amount),
            "coin_equivalent": str(self.coin_equivalent),
            "percentage": str(self.percentage),
        }


@dataclass
class SettlementBreakdown:
    """Everything a refund decision needs to record."""
    original_amount: Decimal
    percentage: Decimal
    base_refund: Decimal
    total_deductions: Decimal
    final_amount: Decimal
    final_coins: Decimal
    conversion_rate: Decimal
    deductions: list[Deduction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "original_amount": str(self.original_amount),
            "percentage": str(self.percentage),
            "base_refund": str(self.base_refund),
            "total_deductions": str(self.total_deductions),
            "final_amount": str(self.final_amount),
            "final_coins": str(self.final_coins),
            "conversion_rate": str(self.conversion_rate),
            "deductions": [d.model_dump(mode="json") for d in self.deductions],
        }


def original_amount(items: Iterable[ReturnItem]) -> Decimal:
    return money(sum((item.unit_price * item.quantity for item in items), Decimal("0")))


def calculate_refund(
    items: Iterable[ReturnItem],
    refund_percentage=HUNDRED,
    conversion_rate: Decimal = Decimal("5"),
) -> RefundCalculation:
    """Percentage refund of the returned items, recomputed from the item lines."""
    pct = validate_percentage(refund_percentage)
    original = original_amount(items)
    refund = money(original * pct / HUNDRED)
    return RefundCalculation(
        original_amount=original,
        refund_amount=refund,
        coin_equivalent=money(refund * conversion_rate),
        percentage=pct,
    )


def resolve_deductions(refund_amount: Decimal, deductions: Iterable[Deduction]) -> list[Deduction]:
    """Price percentage deductions against ``refund_amount``; fixed ones pass through."""
    resolved = []
    for d in deductions:
        if d.percentage is not None:
            d = d.model_copy(update={"amount": money(Decimal(refund_amount) * d.percentage / HUNDRED)})
        resolved.append(d)
    return resolved


def apply_deductions(
    refund_amount: Decimal,
    deductions: Iterable[Deduction],
    conversion_rate: Decimal = Decimal("5"),
) -> tuple[Decimal, Decimal]:
    """Subtract deductions, clamped at zero. Returns (final_amount, final_coins)."""
    deductions = resolve_deductions(refund_amount, deductions)
    total = sum((d.amount for d in deductions), Decimal("0"))
    final = money(max(Decimal("0"), Decimal(refund_amount) - total))
    return final, money(final * conversion_rate)


def with_pickup_charge(
    deductions: Iterable[Deduction],
    charge: Optional[PickupCharge],
    now: Optional[datetime] = None,
) -> list[Deduction]:
    """Fold a non-free pickup charge into the deductions, at most once."""
    result = list(deductions)
    if charge is None or charge.is_free or charge.amount <= 0:
        return result
    if any(d.type == DeductionType.PICKUP_CHARGE for d in result):
        return result
    result.append(Deduction(
        type=DeductionType.PICKUP_CHARGE,
        amount=money(charge.amount),
        reason=charge.reason or "Return pickup charge",
        calculated_at=now,
    ))
    return result


def settlement_amounts(
    items: Iterable[ReturnItem],
    percentage,
    deductions: Iterable[Deduction],
    conversion_rate: Decimal = Decimal("5"),
) -> SettlementBreakdown:
    calc = calculate_refund(items, percentage, conversion_rate)
    deductions = resolve_deductions(calc.refund_amount, deductions)
    final_amount, final_coins = apply_deductions(calc.refund_amount, deductions, conversion_rate)
    return SettlementBreakdown(
        original_amount=calc.original_amount,
        percentage=calc.percentage,
        base_refund=calc.refund_amount,
        total_deductions=money(sum((d.amount for d in deductions), Decimal("0"))),
        final_amount=final_amount,
        final_coins=final_coins,
        conversion_rate=conversion_rate,
        deductions=deductions,
    )


def backfill_decision(ret: ReturnRequest, policy: ReturnPolicy, now: datetime) -> bool:
    """Fill in missing final amounts on an admin decision.

    Uses the stored percentage and stored deductions only; the pickup charge
    is never added here. Returns True when the decision was changed.
    """
    decision = ret.refund.decision
    if decision is None:
        return False
    if decision.final_amount is not None and decision.final_coins is not None:
        return False

    breakdown = settlement_amounts(
        ret.items, decision.refund_percentage, decision.deductions, policy.coin_conversion_rate,
    )
    decision.final_amount = breakdown.final_amount
    decision.final_coins = breakdown.final_coins
    decision.backfilled_at = now
    return True


_PRIORITY_POINTS = {"high": 100, "medium": 50, "low": 10}


def processing_priority(ret: ReturnRequest, now: datetime) -> int:
    """Queue priority: reason severity, then order value, then age."""
    score = _PRIORITY_POINTS.get(classify_reason(ret.reason).priority, 0)

    value = original_amount(ret.items)
    if value > 5000:
        score += 50
    elif value > 2000:
        score += 25
    elif value > 1000:
        score += 10

    hours_old = (now - ret.requested_at).total_seconds() / 3600
    if hours_old > 48:
        score += 30
    elif hours_old > 24:
        score += 15
    return score
