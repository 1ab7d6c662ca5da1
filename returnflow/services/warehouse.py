"""Warehouse return handling: review, pickup scheduling, receipt, inspection, refund."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from returnflow.exceptions import InvalidTransitionError, ValidationError
from returnflow.schemas import (
    PICKUP_SLOTS, Actor, ConditionDetails, DecisionType, Deduction, ItemCondition, PickupMethod,
    PickupStatus, Recommendation, RefundEligibility, RestockDecision, ReturnRequest, ReturnStatus,
    Role, WarehouseRecommendation, as_utc,
)
from returnflow.services.refund_calc import settlement_amounts, validate_percentage, with_pickup_charge
from returnflow.services.returns import ReturnWorkflow, require_role, require_status
from returnflow.services.settlement import SettlementProcessor, SettlementResult

logger = logging.getLogger(__name__)

_DEFAULT_PERCENTAGE = {
    RefundEligibility.FULL: 100,
    RefundEligibility.NONE: 0,
}


class WarehouseReturns(ReturnWorkflow):
    """Warehouse-manager operations.

    A manager may act on returns that are unassigned or assigned to them.
    Reviewing or scheduling an unassigned return assigns it to the manager.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.settlement = SettlementProcessor(self.store, self.policy, self.notifier, self.clock)

    def _claim(self, ret: ReturnRequest, actor: Actor) -> None:
        if ret.warehouse.assigned_manager is None:
            ret.warehouse.assigned_manager = actor.id
            ret.warehouse.assigned_at = self.now()

    def review(
        self,
        actor: Actor,
        return_id: str,
        decision: str,
        comments: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.WAREHOUSE)
        if decision not in ("approve", "reject"):
            raise ValidationError(f"Invalid review decision: {decision}")

        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, ReturnStatus.REQUESTED, ReturnStatus.ADMIN_REVIEW)
            review = ret.admin_review
            review.reviewed_by = actor.id
            review.reviewer_role = actor.role
            review.reviewed_at = self.now()
            review.comments = comments
            review.approved = decision == "approve"

            if decision == "approve":
                self._move(ret, ReturnStatus.APPROVED, actor, events, notes=comments or "Approved by warehouse")
                self._claim(ret, actor)
                self._move(ret, ReturnStatus.WAREHOUSE_ASSIGNED, actor, events,
                           notes=f"Assigned to warehouse manager {actor.id}", automatic=True)
            else:
                self._move(ret, ReturnStatus.REJECTED, actor, events, notes=comments or "Rejected by warehouse")
                self._release_order(ret, ReturnStatus.REJECTED.value)
            self.store.save_return(ret)
        return ret

    def schedule_pickup(
        self,
        actor: Actor,
        return_id: str,
        method: PickupMethod | str = PickupMethod.AGENT_ASSIGNED,
        scheduled_date: Optional[datetime] = None,
        scheduled_slot: Optional[str] = None,
        agent_id: Optional[str] = None,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """Schedule, or reschedule, the pickup of a return."""
        require_role(actor, Role.WAREHOUSE)
        method = PickupMethod(method)
        scheduled_date = as_utc(scheduled_date)
        if scheduled_date is None:
            raise ValidationError("Scheduled date is required")
        if scheduled_slot is not None and scheduled_slot not in PICKUP_SLOTS:
            raise ValidationError(f"Invalid pickup slot: {scheduled_slot}")
        if method == PickupMethod.AGENT_ASSIGNED and not agent_id:
            raise ValidationError("Agent ID is required for agent pickups")
        if scheduled_date.date() < self.now().date():
            raise ValidationError("Scheduled date cannot be in the past")

        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            if ret.status == ReturnStatus.APPROVED:
                self._claim(ret, actor)
                self._move(ret, ReturnStatus.WAREHOUSE_ASSIGNED, actor, events,
                           notes=f"Assigned to warehouse manager {ret.warehouse.assigned_manager}",
                           automatic=True)

            rescheduling = ret.status == ReturnStatus.PICKUP_SCHEDULED
            if rescheduling:
                self._move(ret, ReturnStatus.PICKUP_SCHEDULED, actor, events,
                           notes=notes or "Pickup rescheduled")
            else:
                self._move(ret, ReturnStatus.PICKUP_SCHEDULED, actor, events,
                           notes=notes or f"Pickup scheduled ({method.value})")
            self._claim(ret, actor)

            pickup = ret.warehouse.pickup
            pickup.method = method
            pickup.assigned_agent = agent_id if method == PickupMethod.AGENT_ASSIGNED else None
            pickup.scheduled_date = scheduled_date
            pickup.scheduled_slot = scheduled_slot
            pickup.pickup_status = PickupStatus.SCHEDULED
            pickup.failure_reason = None
            pickup.started_at = None
            if notes:
                pickup.notes = notes
            self.store.save_return(ret)

            logger.info(
                f"Pickup {'rescheduled' if rescheduling else 'scheduled'} for {ret.request_id}: "
                f"{method.value} on {scheduled_date.date()} agent={agent_id}"
            )
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_pickup_scheduled(snapshot))
        return ret

    def mark_picked_up(
        self,
        actor: Actor,
        return_id: str,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """Confirm a pickup that did not go through an agent (direct or drop-off)."""
        require_role(actor, Role.WAREHOUSE)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            pickup = ret.warehouse.pickup
            if pickup.method == PickupMethod.AGENT_ASSIGNED:
                raise InvalidTransitionError(
                    f"Return {ret.request_id} is an agent pickup and must be confirmed by OTP",
                    from_status=ret.status.value,
                    to_status=ReturnStatus.PICKED_UP.value,
                    role=actor.role.value,
                )
            self._move(ret, ReturnStatus.PICKED_UP, actor, events, notes=notes or "Items collected")
            pickup.pickup_status = PickupStatus.COMPLETED
            pickup.picked_up_at = self.now()
            self.store.save_return(ret)
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_pickup_completed(snapshot))
        return ret

    def mark_received(
        self,
        actor: Actor,
        return_id: str,
        initial_condition: Optional[str] = None,
        notes: str = "",
        images: Optional[list[str]] = None,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.WAREHOUSE)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            self._move(ret, ReturnStatus.IN_WAREHOUSE, actor, events, notes=notes or "Items received at warehouse")
            quality = ret.warehouse.quality
            quality.received_at = self.now()
            quality.initial_condition = initial_condition
            quality.received_notes = notes
            quality.received_images = list(images or [])
            self.store.save_return(ret)
        return ret

    def assess_quality(
        self,
        actor: Actor,
        return_id: str,
        item_condition: ItemCondition | str,
        refund_eligibility: RefundEligibility | str,
        refund_percentage=None,
        notes: str = "",
        images: Optional[list[str]] = None,
        condition_details: Optional[ConditionDetails] = None,
        restock_decision: Optional[RestockDecision] = None,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.WAREHOUSE)
        item_condition = ItemCondition(item_condition)
        refund_eligibility = RefundEligibility(refund_eligibility)
        if refund_percentage is None:
            if refund_eligibility == RefundEligibility.PARTIAL:
                raise ValidationError("Refund percentage is required for a partial refund")
            refund_percentage = _DEFAULT_PERCENTAGE[refund_eligibility]
        pct = validate_percentage(refund_percentage)

        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            self._move(ret, ReturnStatus.QUALITY_CHECKED, actor, events,
                       notes=notes or f"Quality assessed: {item_condition.value}, {pct}% refund")
            quality = ret.warehouse.quality
            quality.assessed_at = self.now()
            quality.assessed_by = actor.id
            quality.item_condition = item_condition
            quality.refund_eligibility = refund_eligibility
            quality.refund_percentage = pct
            quality.notes = notes
            quality.images = list(images or [])
            quality.condition_details = condition_details
            quality.restock_decision = restock_decision
            self.store.save_return(ret)
        return ret

    def recommend_refund(
        self,
        actor: Actor,
        return_id: str,
        recommendation: Recommendation | str,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """Record the warehouse's refund recommendation for the admin's final decision."""
        require_role(actor, Role.WAREHOUSE)
        recommendation = Recommendation(recommendation)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, ReturnStatus.QUALITY_CHECKED)
            pct = 0 if recommendation == Recommendation.REJECT else ret.warehouse.quality.refund_percentage
            deductions = with_pickup_charge([], ret.admin_review.pickup_charge, self.now())
            breakdown = settlement_amounts(ret.items, pct, deductions, self.policy.coin_conversion_rate)
            ret.refund.recommendation = WarehouseRecommendation(
                recommendation=recommendation,
                recommended_amount=breakdown.final_amount,
                recommended_coins=breakdown.final_coins,
                notes=notes,
                recommended_by=actor.id,
                recommended_at=self.now(),
            )
            ret.last_updated_at = self.now()
            self.store.save_return(ret)
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_refund_recommended(snapshot))
        return ret

    def final_decision(
        self,
        actor: Actor,
        return_id: str,
        decision: DecisionType | str,
        refund_percentage=None,
        deductions: Optional[list[Deduction]] = None,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.WAREHOUSE)
        return self._final_decision(
            actor, return_id, decision, refund_percentage, deductions, notes, expected_version,
        )

    def settle(self, actor: Actor, return_id: str, expected_version: Optional[int] = None) -> SettlementResult:
        require_role(actor, Role.WAREHOUSE)
        return self.settlement.settle(return_id, actor, expected_version)

    def status_history(self, actor: Actor, return_id: str) -> list[dict]:
        require_role(actor, Role.WAREHOUSE)
        ret = self._load(return_id, actor)
        return [u.model_dump(mode="json") for u in ret.status_updates]

    def assigned_returns(self, actor: Actor, status: Optional[ReturnStatus] = None) -> list[ReturnRequest]:
        require_role(actor, Role.WAREHOUSE)
        return self.store.list_returns(status=status, assigned_manager=actor.id)

    def get_return(self, actor: Actor, return_id: str) -> dict:
        require_role(actor, Role.WAREHOUSE)
        return self.describe(self._load(return_id, actor))
