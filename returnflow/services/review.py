"""Admin return management: review, pickup-charge override, assignment, refund decisions."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from returnflow.exceptions import ValidationError
from returnflow.schemas import (
    Actor, DecisionType, Deduction, ProcessingStatus, ReturnRequest, ReturnStatus, Role,
)
from returnflow.services.pickup_charge import calculate_pickup_charge
from returnflow.services.refund_calc import processing_priority
from returnflow.services.returns import ReturnWorkflow, require_role, require_status
from returnflow.services.settlement import BulkSettlementResult, SettlementProcessor, SettlementResult
from returnflow.services.transitions import allowed_transitions

logger = logging.getLogger(__name__)

REVIEWABLE = (ReturnStatus.REQUESTED, ReturnStatus.ADMIN_REVIEW)
# statuses from which an admin may still change the pickup charge
CHARGE_EDITABLE = (
    ReturnStatus.REQUESTED, ReturnStatus.ADMIN_REVIEW, ReturnStatus.APPROVED,
    ReturnStatus.WAREHOUSE_ASSIGNED, ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.PICKED_UP,
    ReturnStatus.IN_WAREHOUSE, ReturnStatus.QUALITY_CHECKED,
)

REASSIGNABLE = (
    ReturnStatus.WAREHOUSE_ASSIGNED, ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.PICKED_UP,
    ReturnStatus.IN_WAREHOUSE, ReturnStatus.QUALITY_CHECKED,
)


class AdminReturns(ReturnWorkflow):
    """Admin operations."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.settlement = SettlementProcessor(self.store, self.policy, self.notifier, self.clock)

    def start_review(self, actor: Actor, return_id: str, expected_version: Optional[int] = None) -> ReturnRequest:
        require_role(actor, Role.ADMIN)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            self._move(ret, ReturnStatus.ADMIN_REVIEW, actor, events, notes="Under admin review")
            ret.admin_review.reviewed_by = actor.id
            ret.admin_review.reviewer_role = actor.role
            self.store.save_return(ret)
        return ret

    def review(
        self,
        actor: Actor,
        return_id: str,
        decision: str,
        comments: str = "",
        pickup_override: Optional[bool] = None,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """Approve or reject a requested return."""
        require_role(actor, Role.ADMIN)
        if decision not in ("approve", "reject"):
            raise ValidationError(f"Invalid review decision: {decision}")

        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, *REVIEWABLE)
            now = self.now()
            review = ret.admin_review
            review.reviewed_by = actor.id
            review.reviewer_role = actor.role
            review.reviewed_at = now
            review.comments = comments
            review.approved = decision == "approve"

            if decision == "approve":
                if pickup_override is not None:
                    review.pickup_charge = calculate_pickup_charge(
                        ret.reason, override=pickup_override, actor_id=actor.id, now=now,
                        charge_amount=self.policy.pickup_charge_amount,
                    )
                self._move(ret, ReturnStatus.APPROVED, actor, events, notes=comments or "Return approved")
            else:
                self._move(ret, ReturnStatus.REJECTED, actor, events, notes=comments or "Return rejected")
                self._release_order(ret, ReturnStatus.REJECTED.value)
            self.store.save_return(ret)
        return ret

    def toggle_pickup_charge(
        self,
        actor: Actor,
        return_id: str,
        is_free: bool,
        reason: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.ADMIN)
        with self._unit_of_work():
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, *CHARGE_EDITABLE)
            charge = calculate_pickup_charge(
                ret.reason, override=is_free, actor_id=actor.id, now=self.now(),
                charge_amount=self.policy.pickup_charge_amount,
            )
            if reason:
                charge.reason = reason
            ret.admin_review.pickup_charge = charge
            ret.last_updated_at = self.now()
            self.store.save_return(ret)
            logger.info(f"Pickup charge for {ret.request_id} set to {'free' if is_free else charge.amount} by {actor.id}")
        return ret

    def assign_warehouse(
        self,
        actor: Actor,
        return_id: str,
        manager_id: str,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.ADMIN)
        if not manager_id:
            raise ValidationError("Warehouse manager ID is required")
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            if ret.status == ReturnStatus.APPROVED:
                self._move(ret, ReturnStatus.WAREHOUSE_ASSIGNED, actor, events,
                           notes=f"Assigned to warehouse manager {manager_id}")
            else:
                require_status(ret, *REASSIGNABLE)
            ret.warehouse.assigned_manager = manager_id
            ret.warehouse.assigned_at = self.now()
            ret.last_updated_at = self.now()
            self.store.save_return(ret)
        return ret

    def pending_final_approval(self) -> list[ReturnRequest]:
        now = self.now()
        pending = self.store.list_returns(status=ReturnStatus.QUALITY_CHECKED)
        pending.sort(key=lambda r: processing_priority(r, now), reverse=True)
        return pending

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
        require_role(actor, Role.ADMIN)
        return self._final_decision(
            actor, return_id, decision, refund_percentage, deductions, notes, expected_version,
        )

    def settle(self, actor: Actor, return_id: str, expected_version: Optional[int] = None) -> SettlementResult:
        require_role(actor, Role.ADMIN)
        return self.settlement.settle(return_id, actor, expected_version)

    def settle_many(self, actor: Actor, return_ids: list[str]) -> BulkSettlementResult:
        require_role(actor, Role.ADMIN)
        return self.settlement.settle_many(return_ids, actor)

    def reconcile(self, actor: Actor) -> list[str]:
        require_role(actor, Role.ADMIN)
        return self.settlement.reconcile(actor)

    def get_return(self, actor: Actor, return_id: str) -> dict:
        require_role(actor, Role.ADMIN)
        ret = self._load(return_id, actor)
        data = self.describe(ret)
        data["available_transitions"] = sorted(
            s.value for s in allowed_transitions(ret.status, Role.ADMIN)
        )
        return data

    def list_returns(
        self,
        status: Optional[ReturnStatus] = None,
        customer_id: Optional[str] = None,
        assigned_manager: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> list[ReturnRequest]:
        results = self.store.list_returns(
            customer_id=customer_id, status=status, assigned_manager=assigned_manager,
        )
        if reason:
            results = [r for r in results if r.reason.value == reason]
        return results

    def stats(self) -> dict:
        returns = self.store.list_returns()
        by_status: dict[str, int] = {}
        by_reason: dict[str, int] = {}
        coins_refunded = Decimal("0")
        for r in returns:
            by_status[r.status.value] = by_status.get(r.status.value, 0) + 1
            by_reason[r.reason.value] = by_reason.get(r.reason.value, 0) + 1
            if r.refund.processing.processing_status == ProcessingStatus.COMPLETED:
                coins_refunded += r.refund.processing.coins_credited or Decimal("0")
        total = len(returns)
        completed = by_status.get(ReturnStatus.COMPLETED.value, 0)
        return {
            "total": total,
            "by_status": by_status,
            "by_reason": by_reason,
            "pending_review": sum(by_status.get(s.value, 0) for s in REVIEWABLE),
            "pending_final_approval": by_status.get(ReturnStatus.QUALITY_CHECKED.value, 0),
            "awaiting_settlement": by_status.get(ReturnStatus.REFUND_APPROVED.value, 0),
            "completed": completed,
            "completion_rate": round(completed / total * 100, 1) if total else 0.0,
            "total_coins_refunded": str(coins_refunded),
        }
