"""Return workflow: shared orchestration and the customer-facing operations."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Iterator, Optional

from returnflow.config import ReturnPolicy
from returnflow.exceptions import (
    AuthorizationError, ConcurrencyError, InvalidTransitionError, NotFoundError, ValidationError,
)
from returnflow.schemas import (
    Actor, AdminDecision, DecisionType, Deduction, Order, ReturnDraft, ReturnHistoryEntry,
    ReturnItem, ReturnReason, ReturnRequest, ReturnStatus, Role, generate_request_id, utcnow,
)
from returnflow.services.eligibility import order_eligibility, refresh_eligibility
from returnflow.services.notification import NotificationService
from returnflow.services.pickup_charge import (
    CHARGED_REASONS, FREE_REASONS, calculate_pickup_charge, classify_reason,
)
from returnflow.services.refund_calc import (
    calculate_refund, money, processing_priority, settlement_amounts, validate_percentage,
    with_pickup_charge,
)
from returnflow.services.store import ReturnStore
from returnflow.services.transitions import CANCELLABLE_STATUSES, allowed_transitions, record_creation, transition

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

REQUEST_ID_ATTEMPTS = 5


# ── Guards ───────────────────────────────────────────────

def require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in roles:
        raise AuthorizationError(
            f"Role {actor.role.value} may not perform this action",
            role=actor.role.value,
        )


def authorize_return(ret: ReturnRequest, actor: Actor) -> None:
    """Ownership check shared by every workflow.

    Admins act on any return. Warehouse staff act on returns that are
    unassigned or assigned to them. Customers and agents only see their own.
    """
    role = actor.role
    if role in (Role.ADMIN, Role.SYSTEM):
        return
    if role == Role.WAREHOUSE:
        manager = ret.warehouse.assigned_manager
        if manager is None or manager == actor.id:
            return
        raise AuthorizationError(f"Return {ret.request_id} is assigned to another warehouse manager")
    if role == Role.CUSTOMER and ret.customer_id == actor.id:
        return
    if role == Role.AGENT and ret.warehouse.pickup.assigned_agent == actor.id:
        return
    raise AuthorizationError(f"Return {ret.request_id} does not belong to {actor.id}")


def check_version(doc, expected_version: Optional[int]) -> None:
    if expected_version is not None and doc.version != expected_version:
        raise ConcurrencyError(
            "Document was modified since it was read",
            expected_version=expected_version,
            current_version=doc.version,
        )


def require_status(ret: ReturnRequest, *statuses: ReturnStatus) -> None:
    if ret.status not in statuses:
        raise InvalidTransitionError(
            f"Return {ret.request_id} is {ret.status.value}; expected one of "
            f"{', '.join(s.value for s in statuses)}",
            from_status=ret.status.value,
        )


# ── Shared base ──────────────────────────────────────────

class ReturnWorkflow:
    """Base for the actor-facing workflows.

    Each mutating operation is one ``_unit_of_work``; notifications queued
    inside it are dispatched only after the store transaction commits.
    """

    def __init__(
        self,
        store: ReturnStore,
        policy: Optional[ReturnPolicy] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.policy = policy or ReturnPolicy()
        self.notifier = notifier or NotificationService()
        self.clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def _unit_of_work(self) -> Iterator[list]:
        events: list[Callable[[], object]] = []
        with self.store.transaction():
            yield events
        for emit in events:
            try:
                emit()
            except Exception as e:
                logger.error(f"Notification dispatch failed: {e}")

    def _load(self, return_id: str, actor: Actor, expected_version: Optional[int] = None) -> ReturnRequest:
        ret = self.store.get_return(return_id)
        authorize_return(ret, actor)
        check_version(ret, expected_version)
        return ret

    def _move(
        self,
        ret: ReturnRequest,
        to_status: ReturnStatus,
        actor: Actor,
        events: list,
        notes: str = "",
        automatic: bool = False,
        role: Optional[Role] = None,
    ) -> None:
        from_status = ret.status
        transition(ret, to_status, role or actor.role, actor.id, notes=notes, automatic=automatic, now=self.now())
        logger.info(
            f"Return {ret.request_id}: {from_status.value} -> {to_status.value} "
            f"({actor.role.value}:{actor.id})"
        )
        snapshot = ret.model_copy(deep=True)
        events.append(lambda: self.notifier.notify_status_changed(snapshot, from_status, notes))

    def _release_order(self, ret: ReturnRequest, outcome: str, completed: bool = False) -> Order:
        """Clear the order's active-return flag and record the outcome in its history."""
        order = self.store.get_order(ret.order_id)
        order.return_info.has_active_return = False
        entry = order.history_entry(ret.id)
        if entry is None:
            entry = ReturnHistoryEntry(return_id=ret.id, status=outcome, created_at=ret.requested_at)
            order.return_info.history.append(entry)
        entry.status = outcome
        if completed:
            entry.completed_at = self.now()
        return self.store.save_order(order)

    def _final_decision(
        self,
        actor: Actor,
        return_id: str,
        decision: DecisionType | str,
        refund_percentage=None,
        deductions: Optional[list[Deduction]] = None,
        notes: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        require_role(actor, Role.ADMIN, Role.WAREHOUSE)
        decision = DecisionType(decision)
        pct = validate_percentage(refund_percentage) if refund_percentage is not None else None
        deductions = list(deductions or [])

        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            require_status(ret, ReturnStatus.QUALITY_CHECKED)
            now = self.now()
            if pct is None:
                pct = ret.warehouse.quality.refund_percentage

            if decision == DecisionType.REJECTED:
                ret.refund.decision = AdminDecision(
                    decision=decision,
                    refund_percentage=pct,
                    final_amount=money(0),
                    final_coins=money(0),
                    deductions=deductions,
                    notes=notes,
                    decided_by=actor.id,
                    decided_role=actor.role,
                    decided_at=now,
                )
                self._move(ret, ReturnStatus.REJECTED, actor, events, notes=notes or "Refund rejected")
                self._release_order(ret, ReturnStatus.REJECTED.value)
            else:
                deductions = with_pickup_charge(deductions, ret.admin_review.pickup_charge, now)
                breakdown = settlement_amounts(ret.items, pct, deductions, self.policy.coin_conversion_rate)
                ret.refund.decision = AdminDecision(
                    decision=decision,
                    refund_percentage=breakdown.percentage,
                    final_amount=breakdown.final_amount,
                    final_coins=breakdown.final_coins,
                    deductions=breakdown.deductions,
                    notes=notes,
                    decided_by=actor.id,
                    decided_role=actor.role,
                    decided_at=now,
                )
                self._move(ret, ReturnStatus.REFUND_APPROVED, actor, events, notes=notes or "Refund approved")

            self.store.save_return(ret)
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_refund_decided(snapshot))
        return ret

    def describe(self, ret: ReturnRequest) -> dict:
        """Return document plus derived views (timeline, refund estimate, next steps)."""
        data = ret.model_dump(mode="json")
        data["timeline"] = ret.timeline()
        data["refund_calculation"] = calculate_refund(
            ret.items, ret.warehouse.quality.refund_percentage, self.policy.coin_conversion_rate,
        ).to_dict()
        data["priority"] = processing_priority(ret, self.now())
        data["classification"] = asdict(classify_reason(ret.reason))
        data["can_cancel"] = ret.status in CANCELLABLE_STATUSES
        return data


# ── Customer ─────────────────────────────────────────────

class CustomerReturns(ReturnWorkflow):
    """Customer operations: eligibility, create, view, cancel."""

    def _owned_order(self, order_id: str, customer_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order.customer_id != customer_id:
            raise AuthorizationError(f"Order {order_id} does not belong to {customer_id}")
        return order

    def _unused_request_id(self, now: datetime) -> str:
        for _ in range(REQUEST_ID_ATTEMPTS):
            request_id = generate_request_id(now)
            try:
                self.store.get_return(request_id)
            except NotFoundError:
                return request_id
            logger.warning(f"Request id {request_id} already taken, drawing another")
        raise ConcurrencyError(f"No free request id after {REQUEST_ID_ATTEMPTS} attempts")

    def check_eligibility(self, order_id: str, customer_id: str) -> dict:
        order = self._owned_order(order_id, customer_id)
        result = order_eligibility(order, self.now(), self.policy.return_window_days)
        if result.is_eligible and self.store.active_return_for_order(order_id):
            result.is_eligible = False
            result.reason = "Active return request exists"
            result.days_remaining = 0
        data = result.to_dict()
        data["order_id"] = order_id
        return data

    def _validate_draft(self, draft: ReturnDraft, order: Order) -> list[ReturnItem]:
        if not draft.items:
            raise ValidationError("At least one item is required")
        if not draft.evidence_images or any(not ref.strip() for ref in draft.evidence_images):
            raise ValidationError("At least one evidence image is required")
        if len(draft.customer_comments) > 500:
            raise ValidationError("Comments must be at most 500 characters")

        requested: dict[str, int] = {}
        for item in draft.items:
            if item.quantity < 1:
                raise ValidationError(f"Quantity must be at least 1 for line {item.order_line_id}")
            requested[item.order_line_id] = requested.get(item.order_line_id, 0) + item.quantity

        items = []
        for line_id, quantity in requested.items():
            line = order.get_line(line_id)
            if line is None:
                raise ValidationError(f"Invalid order item ID: {line_id}")
            if quantity > line.quantity:
                raise ValidationError(
                    f"Return quantity ({quantity}) exceeds ordered quantity ({line.quantity}) "
                    f"for item: {line.name or line.product_id}"
                )
            items.append(ReturnItem(
                order_line_id=line.id,
                product_id=line.product_id,
                product_name=line.name,
                variant_id=line.variant_id,
                variant_name=line.variant_name,
                quantity=quantity,
                unit_price=line.unit_price,
                item_kind=line.item_kind,
            ))
        return items

    def create_return(self, customer_id: str, draft: ReturnDraft) -> ReturnRequest:
        with self._unit_of_work() as events:
            order = self._owned_order(draft.order_id, customer_id)
            items = self._validate_draft(draft, order)

            now = self.now()
            eligibility = order_eligibility(order, now, self.policy.return_window_days)
            if not eligibility.is_eligible:
                raise ValidationError(eligibility.reason, eligibility=eligibility.to_dict())
            if self.store.active_return_for_order(order.id):
                raise ValidationError("Active return request exists")

            ret = ReturnRequest(
                request_id=self._unused_request_id(now),
                order_id=order.id,
                customer_id=customer_id,
                items=items,
                reason=draft.reason,
                customer_comments=draft.customer_comments,
                evidence_images=draft.evidence_images,
                eligibility=eligibility.snapshot(now),
                requested_at=now,
                last_updated_at=now,
            )
            ret.admin_review.pickup_charge = calculate_pickup_charge(
                ret.reason, charge_amount=self.policy.pickup_charge_amount,
            )
            record_creation(ret, customer_id, now)
            self.store.add_return(ret)

            order.return_info.has_active_return = True
            order.return_info.return_window_days = self.policy.return_window_days
            order.return_info.eligibility_expiry = eligibility.eligibility_expiry
            order.return_info.history.append(
                ReturnHistoryEntry(return_id=ret.id, status=ret.status.value, created_at=now)
            )
            self.store.save_order(order)

            logger.info(f"Return {ret.request_id} created for order {order.id} ({ret.reason.value})")
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_return_requested(snapshot))
        return ret

    def list_returns(self, customer_id: str, status: Optional[ReturnStatus] = None) -> list[ReturnRequest]:
        return self.store.list_returns(customer_id=customer_id, status=status)

    def get_return(self, customer_id: str, return_id: str) -> dict:
        ret = self._load(return_id, Actor(id=customer_id, role=Role.CUSTOMER))
        refresh_eligibility(ret, self.store.get_order(ret.order_id), self.now(), self.policy.return_window_days)
        return self.describe(ret)

    def cancel_return(
        self,
        customer_id: str,
        return_id: str,
        reason: str = "",
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        actor = Actor(id=customer_id, role=Role.CUSTOMER)
        with self._unit_of_work() as events:
            ret = self._load(return_id, actor, expected_version)
            if ReturnStatus.CANCELLED not in allowed_transitions(ret.status, Role.CUSTOMER):
                raise InvalidTransitionError(
                    f"Return {ret.request_id} can no longer be cancelled ({ret.status.value})",
                    from_status=ret.status.value,
                    to_status=ReturnStatus.CANCELLED.value,
                    role=Role.CUSTOMER.value,
                )
            self._move(ret, ReturnStatus.CANCELLED, actor, events, notes=reason or "Cancelled by customer")
            self.store.save_return(ret)
            self._release_order(ret, ReturnStatus.CANCELLED.value)
            snapshot = ret.model_copy(deep=True)
            events.append(lambda: self.notifier.notify_return_cancelled(snapshot, reason))
        return ret

    def return_policies(self) -> dict:
        return {
            "return_window_days": self.policy.return_window_days,
            "pickup_charge": {
                "amount": str(self.policy.pickup_charge_amount),
                "free_reasons": [r.value for r in ReturnReason if r in FREE_REASONS],
                "charged_reasons": [r.value for r in ReturnReason if r in CHARGED_REASONS],
            },
            "refund": {
                "method": "wallet_coins",
                "coin_conversion_rate": str(self.policy.coin_conversion_rate),
            },
            "requirements": [
                "Order must be delivered",
                f"Return requested within {self.policy.return_window_days} days of delivery",
                "At least one evidence image",
                "One active return per order",
            ],
        }
