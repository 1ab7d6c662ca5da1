"""Delivery / pickup OTP verification with failed-attempt lockout."""

from __future__ import annotations

import hmac
import logging
import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from returnflow.config import ReturnPolicy
from returnflow.exceptions import ValidationError
from returnflow.schemas import (
    DeliveryOtp, FailedOtpAttempt, Order, OrderStatus, OtpPurpose, OtpVerification,
    PickupStatus, ReturnRequest, ReturnStatus, Role,
)
from returnflow.services.eligibility import window_expiry
from returnflow.services.transitions import transition

logger = logging.getLogger(__name__)


@dataclass
class OtpResult:
    success: bool
    error: Optional[str] = None
    lockout_minutes: int = 0
    attempts_remaining: int = 0
    locked: bool = False
    already_used: bool = False
    # True when the order's OTP bookkeeping changed and must be persisted
    state_changed: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "lockout_minutes": self.lockout_minutes,
            "attempts_remaining": self.attempts_remaining,
        }


class OtpGateway:
    """Issues and verifies the order OTP shared by delivery and return pickup.

    Verification order: format, lockout, already used for this purpose, code.
    Each purpose can consume the code once.
    """

    def __init__(self, policy: Optional[ReturnPolicy] = None):
        self.policy = policy or ReturnPolicy()
        self._pattern = re.compile(rf"^\d{{{self.policy.otp_length}}}$")

    def generate_code(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.policy.otp_length))

    def issue(self, order: Order, now: datetime) -> str:
        code = self.generate_code()
        order.otp = DeliveryOtp(code=code, generated_at=now)
        logger.info(f"OTP issued for order {order.id}")
        return code

    def remaining_lockout(self, otp: DeliveryOtp, now: datetime) -> int:
        if otp.lockout_until is None or now >= otp.lockout_until:
            return 0
        return math.ceil((otp.lockout_until - now).total_seconds() / 60)

    def recent_failures(self, otp: DeliveryOtp, now: datetime) -> int:
        since = now - timedelta(minutes=self.policy.otp_failure_window_minutes)
        return sum(1 for a in otp.failed_attempts if a.attempted_at > since)

    def verify(
        self,
        order: Order,
        code: str,
        actor_id: Optional[str],
        purpose: OtpPurpose,
        now: datetime,
        ip_address: Optional[str] = None,
    ) -> OtpResult:
        code = (code or "").strip()
        if not self._pattern.match(code):
            raise ValidationError(f"OTP must be exactly {self.policy.otp_length} digits")
        otp = order.otp
        if otp is None or not otp.code:
            raise ValidationError("No OTP generated for this order")
        purpose = OtpPurpose(purpose)

        remaining = self.remaining_lockout(otp, now)
        if remaining:
            return OtpResult(
                success=False,
                error=f"Too many failed attempts. Try again in {remaining} minutes",
                lockout_minutes=remaining,
                locked=True,
            )

        if purpose in otp.consumed:
            return OtpResult(success=False, error="OTP has already been used", already_used=True)

        if not hmac.compare_digest(code, otp.code):
            otp.failed_attempts.append(FailedOtpAttempt(
                attempted_at=now,
                attempted_code=code,
                actor_id=actor_id,
                ip_address=ip_address,
                purpose=purpose,
            ))
            failures = self.recent_failures(otp, now)
            if failures >= self.policy.otp_max_failed_attempts:
                otp.lockout_until = now + timedelta(minutes=self.policy.otp_lockout_minutes)
                logger.warning(
                    f"OTP locked for order {order.id} after {failures} failed attempts "
                    f"(actor={actor_id}, ip={ip_address})"
                )
                return OtpResult(
                    success=False,
                    error=f"Too many failed attempts. Try again in {self.policy.otp_lockout_minutes} minutes",
                    lockout_minutes=self.policy.otp_lockout_minutes,
                    locked=True,
                    state_changed=True,
                )
            logger.warning(f"Invalid OTP for order {order.id} (actor={actor_id}, purpose={purpose.value})")
            return OtpResult(
                success=False,
                error="Invalid OTP",
                attempts_remaining=self.policy.otp_max_failed_attempts - failures,
                state_changed=True,
            )

        otp.consumed[purpose] = now
        return OtpResult(
            success=True,
            attempts_remaining=self.policy.otp_max_failed_attempts - self.recent_failures(otp, now),
            state_changed=True,
        )


def record_pickup_verification(ret: ReturnRequest, code: str, agent_id: str, now: datetime, notes: str = "") -> None:
    """Apply a successful pickup OTP to the Return."""
    pickup = ret.warehouse.pickup
    pickup.otp_verification = OtpVerification(code_used=code, verified_at=now, verified_by=agent_id)
    pickup.pickup_status = PickupStatus.COMPLETED
    pickup.picked_up_at = now
    if notes:
        pickup.notes = notes
    transition(
        ret, ReturnStatus.PICKED_UP, Role.AGENT, agent_id,
        notes="Items picked up and OTP verified", automatic=True, now=now,
    )


def record_delivery(order: Order, now: datetime, window_days: int) -> None:
    """Apply a successful delivery OTP to the order."""
    order.status = OrderStatus.DELIVERED
    order.delivered_at = now
    order.return_info.return_window_days = window_days
    order.return_info.eligibility_expiry = window_expiry(now, window_days)
