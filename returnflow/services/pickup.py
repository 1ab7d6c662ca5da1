"""Delivery-agent operations: return pickups and forward-delivery OTP confirmation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from returnflow.exceptions import OTPLockedError, OTPMismatchError, ReturnsError, ValidationError
from returnflow.schemas import (
    Actor, Order, OrderStatus, OtpPurpose, PickupStatus, ReturnRequest, ReturnStatus, Role,
)
from returnflow.services.otp import OtpGateway, OtpResult, record_delivery, record_pickup_verification
from returnflow.services.returns import ReturnWorkflow, check_version, require_role, require_status

logger = logging.getLogger(__name__)

DELIVERABLE = (OrderStatus.SHIPPED, OrderStatus.DISPATCHED, OrderStatus.OUT_FOR_DELIVERY)
_UNSCHEDULED = datetime.max.replace(tzinfo=timezone.utc)


def otp_error(result: OtpResult) -> ReturnsError:
    if result.locked:
        return OTPLockedError(
            result.error,
            lockout_minutes=result.lockout_minutes,
            state_changed=result.state_changed,
        )
    if result.already_used:
        return ValidationError(result.error)
    return OTPMismatchError(result.error, attempts_remaining=result.attempts_remaining)


class AgentPickups(ReturnWorkflow):
    """Operations available to a delivery agent."""

    def __init__(self, *args, otp_gateway: Optional[OtpGateway] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.otp = otp_gateway or OtpGateway(self.policy)

    def assigned_pickups(self, actor: Actor, pickup_status: Optional[PickupStatus] = None) -> list[ReturnRequest]:
        require_role(actor, Role.AGENT)
        pickups = self.store.list_returns(status=ReturnStatus.PICKUP_SCHEDULED, assigned_agent=actor.id)
        if pickup_status:
            pickups = [r for r in pickups if r.warehouse.pickup.pickup_status == PickupStatus(pickup_status)]
        return sorted(pickups, key=lambda r: r.warehouse.pickup.scheduled_date or _UNSCHEDULED)

    def start_pickup(self, actor: Actor, return_id: str, expected_version: Optional[int] = None) -> ReturnRequest:
        require_role(actor, Role.AGENT)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, ReturnStatus.PICKUP_SCHEDULED)
            pickup = ret.warehouse.pickup
            if pickup.pickup_status not in (PickupStatus.SCHEDULED, PickupStatus.RESCHEDULED):
                raise ValidationError(f"Pickup cannot be started from {pickup.pickup_status.value}")
            pickup.pickup_status = PickupStatus.IN_PROGRESS
            pickup.started_at = self.now()
            ret.last_updated_at = self.now()
            self.store.save_return(ret)
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_pickup_started(snapshot))
        return ret

    def verify_pickup_otp(
        self,
        actor: Actor,
        return_id: str,
        code: str,
        ip_address: Optional[str] = None,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """Confirm the pickup with the customer's order OTP.

        Failed-attempt and lockout bookkeeping is committed before the OTP
        error is raised.
        """
        require_role(actor, Role.AGENT)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, ReturnStatus.PICKUP_SCHEDULED)
            order = self.store.get_order(ret.order_id)
            now = self.now()
            result = self.otp.verify(order, code, actor.id, OtpPurpose.PICKUP, now, ip_address=ip_address)
            if result.state_changed:
                self.store.save_order(order)
            if result.success:
                from_status = ret.status
                record_pickup_verification(ret, code.strip(), actor.id, now, notes=notes)
                self.store.save_return(ret)
                logger.info(f"Pickup OTP verified for {ret.request_id} by agent {actor.id}")
                snapshot = ret.model_copy(deep=True)
                events.append(lambda: self.notifier.notify_status_changed(snapshot, from_status))
                events.append(lambda: self.notifier.notify_pickup_completed(snapshot))
        if not result.success:
            raise otp_error(result)
        return ret

    def report_pickup_failure(
        self,
        actor: Actor,
        return_id: str,
        reason: str,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.AGENT)
        if not reason or not reason.strip():
            raise ValidationError("Failure reason is required")
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, ReturnStatus.PICKUP_SCHEDULED)
            pickup = ret.warehouse.pickup
            pickup.pickup_status = PickupStatus.FAILED
            pickup.failure_reason = reason
            pickup.notes = reason
            ret.last_updated_at = self.now()
            self.store.save_return(ret)
            logger.warning(f"Pickup failed for {ret.request_id}: {reason}")
            snapshot = ret.model_copy(deep=True)
            events.append(
                lambda: self.notifier.notify_status_changed(snapshot, snapshot.status, f"Pickup failed: {reason}")
            )
        return ret

    def request_reschedule(
        self,
        actor: Actor,
        return_id: str,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.AGENT)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            self._move(ret, ReturnStatus.PICKUP_SCHEDULED, actor, events,
                       notes=notes or "Reschedule requested by agent")
            ret.warehouse.pickup.pickup_status = PickupStatus.RESCHEDULED
            if notes:
                ret.warehouse.pickup.notes = notes
            self.store.save_return(ret)
        return ret

    def pickup_instructions(self, actor: Actor, return_id: str) -> dict:
        require_role(actor, Role.AGENT)
        ret = self._load(return_id, actor)
        pickup = ret.warehouse.pickup
        charge = ret.admin_review.pickup_charge
        return {
            "return_id": ret.id,
            "request_id": ret.request_id,
            "order_id": ret.order_id,
            "customer_id": ret.customer_id,
            "reason": ret.reason.value,
            "scheduled_date": pickup.scheduled_date.isoformat() if pickup.scheduled_date else None,
            "scheduled_slot": pickup.scheduled_slot,
            "pickup_status": pickup.pickup_status.value,
            "items": [
                {"product_name": i.product_name, "variant_name": i.variant_name, "quantity": i.quantity}
                for i in ret.items
            ],
            "pickup_charge": {"is_free": charge.is_free, "amount": str(charge.amount)},
            "notes": pickup.notes,
            "instructions": [
                "Verify the items match the return request",
                "Check item condition and packaging",
                "Ask the customer for the order OTP",
                "Verify the OTP to complete the pickup",
            ],
        }

    def confirm_delivery(
        self,
        actor: Actor,
        order_id: str,
        code: str,
        ip_address: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Order:
        """Confirm a forward delivery with the order OTP; starts the return window."""
        require_role(actor, Role.AGENT)
        with self._unit_of_work():
            order = self.store.get_order(order_id)
            check_version(order, expected_version)
            if order.status not in DELIVERABLE:
                raise ValidationError(f"Order {order_id} is not out for delivery ({order.status.value})")
            now = self.now()
            result = self.otp.verify(order, code, actor.id, OtpPurpose.DELIVERY, now, ip_address=ip_address)
            if result.success:
                record_delivery(order, now, self.policy.return_window_days)
                logger.info(f"Order {order_id} delivered, confirmed by agent {actor.id}")
            if result.state_changed:
                self.store.save_order(order)
        if not result.success:
            raise otp_error(result)
        return order
