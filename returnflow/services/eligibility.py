"""Return-window eligibility."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from returnflow.schemas import EligibilitySnapshot, Order, OrderStatus, ReturnRequest

NOT_DELIVERED = "Order not delivered"
NO_DELIVERY_DATE = "Delivery date not found"
WINDOW_EXPIRED = "Return window expired"
ACTIVE_RETURN = "Active return request exists"


@dataclass
class Eligibility:
    is_eligible: bool
    reason: Optional[str] = None
    days_remaining: int = 0
    eligibility_expiry: Optional[datetime] = None

    def snapshot(self, now: datetime) -> EligibilitySnapshot:
        return EligibilitySnapshot(
            is_eligible=self.is_eligible,
            days_remaining=self.days_remaining,
            eligibility_expiry=self.eligibility_expiry,
            checked_at=now,
        )

    def to_dict(self) -> dict:
        return {
            "is_eligible": self.is_eligible,
            "reason": self.reason,
            "days_remaining": self.days_remaining,
            "eligibility_expiry": self.eligibility_expiry.isoformat() if self.eligibility_expiry else None,
        }


def window_expiry(delivered_at: datetime, window_days: int = 7) -> datetime:
    """First moment a return is no longer accepted.

    Elapsed time is floored to whole days, so all of day ``window_days`` is
    still inside the window.
    """
    return delivered_at + timedelta(days=window_days + 1)


def evaluate_eligibility(
    order_status: OrderStatus | str,
    delivered_at: Optional[datetime],
    has_active_return: bool,
    now: datetime,
    window_days: int = 7,
) -> Eligibility:
    """Decide whether a delivered order may still be returned.

    Rules are checked in order: delivery, window, then active return. The
    window is counted in whole elapsed days; ``eligibility_expiry`` is the
    start of day ``window_days + 1``, the first moment outside it.
    """
    if OrderStatus(order_status) != OrderStatus.DELIVERED:
        return Eligibility(is_eligible=False, reason=NOT_DELIVERED)
    if delivered_at is None:
        return Eligibility(is_eligible=False, reason=NO_DELIVERY_DATE)

    elapsed_days = math.floor((now - delivered_at).total_seconds() / 86400)
    expiry = window_expiry(delivered_at, window_days)
    if elapsed_days > window_days:
        return Eligibility(is_eligible=False, reason=WINDOW_EXPIRED, eligibility_expiry=expiry)

    if has_active_return:
        return Eligibility(is_eligible=False, reason=ACTIVE_RETURN, eligibility_expiry=expiry)

    return Eligibility(
        is_eligible=True,
        days_remaining=max(0, window_days - elapsed_days),
        eligibility_expiry=expiry,
    )


def order_eligibility(order: Order, now: datetime, window_days: int = 7) -> Eligibility:
    return evaluate_eligibility(
        order.status,
        order.delivered_at,
        order.return_info.has_active_return,
        now,
        window_days=window_days,
    )


def refresh_eligibility(ret: ReturnRequest, order: Order, now: datetime, window_days: int = 7) -> EligibilitySnapshot:
    """Recompute the window snapshot held on an existing return.

    The return is itself the order's active return, so that rule is skipped.
    """
    result = evaluate_eligibility(order.status, order.delivered_at, False, now, window_days=window_days)
    ret.eligibility = result.snapshot(now)
    return ret.eligibility
