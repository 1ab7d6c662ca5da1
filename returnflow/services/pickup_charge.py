"""Pickup-charge policy and return-reason classification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from returnflow.schemas import PickupCharge, ReturnReason

FREE_REASONS = frozenset({
    ReturnReason.DEFECTIVE,
    ReturnReason.WRONG_ITEM,
    ReturnReason.NOT_AS_DESCRIBED,
    ReturnReason.QUALITY_ISSUE,
    ReturnReason.DAMAGED_IN_TRANSIT,
})
CHARGED_REASONS = frozenset({ReturnReason.CHANGED_MIND, ReturnReason.SIZE_ISSUE})


@dataclass(frozen=True)
class ReasonClassification:
    category: str
    liability: str  # company | customer
    charged_pickup: bool
    priority: str  # high | medium | low


_CLASSIFICATIONS = {
    ReturnReason.DEFECTIVE: ReasonClassification("quality_issue", "company", False, "high"),
    ReturnReason.WRONG_ITEM: ReasonClassification("fulfillment_error", "company", False, "high"),
    ReturnReason.NOT_AS_DESCRIBED: ReasonClassification("description_mismatch", "company", False, "medium"),
    ReturnReason.QUALITY_ISSUE: ReasonClassification("quality_issue", "company", False, "high"),
    ReturnReason.DAMAGED_IN_TRANSIT: ReasonClassification("shipping_damage", "company", False, "high"),
    ReturnReason.CHANGED_MIND: ReasonClassification("customer_preference", "customer", True, "low"),
    ReturnReason.SIZE_ISSUE: ReasonClassification("sizing_problem", "customer", True, "medium"),
}
_UNCLASSIFIED = ReasonClassification("other", "customer", True, "low")


def classify_reason(reason: ReturnReason | str) -> ReasonClassification:
    try:
        return _CLASSIFICATIONS[ReturnReason(reason)]
    except ValueError:
        return _UNCLASSIFIED


def calculate_pickup_charge(
    reason: ReturnReason | str,
    override: Optional[bool] = None,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
    charge_amount: Decimal = Decimal("50"),
) -> PickupCharge:
    """Pickup charge for a return.

    ``override`` is an admin's explicit "free" / "charged" choice and wins
    over the reason-based default.
    """
    if override is not None:
        return PickupCharge(
            is_free=override,
            amount=Decimal("0") if override else charge_amount,
            reason="Admin override - company courtesy" if override else "Admin override - customer preference",
            source="override",
            toggled_by=actor_id,
            toggled_at=now,
        )

    is_free = ReturnReason(reason) in FREE_REASONS
    return PickupCharge(
        is_free=is_free,
        amount=Decimal("0") if is_free else charge_amount,
        reason="Company error/defect" if is_free else "Customer preference",
        source="policy",
    )
