"""Refund settlement: wallet credit, ledger entry and Return completion as one unit."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from returnflow.config import ReturnPolicy
from returnflow.exceptions import (
    AlreadySettledError, InvalidTransitionError, NotFoundError, ReturnsError,
    SettlementConsistencyError, ValidationError,
)
from returnflow.schemas import (
    Actor, LedgerEntry, LedgerEntryType, ProcessingStatus, RefundProcessing, ReturnMetrics,
    ReturnRequest, ReturnStatus, Role,
)
from returnflow.services.refund_calc import backfill_decision, money
from returnflow.services.returns import ReturnWorkflow, authorize_return, check_version, require_role

logger = logging.getLogger(__name__)

SETTLED_STATUSES = (ReturnStatus.REFUND_PROCESSED, ReturnStatus.COMPLETED)


def _minutes(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 60)


def performance_metrics(ret: ReturnRequest) -> ReturnMetrics:
    pickup = ret.warehouse.pickup
    quality = ret.warehouse.quality
    decision = ret.refund.decision
    return ReturnMetrics(
        total_processing_minutes=_minutes(ret.requested_at, ret.completed_at),
        pickup_minutes=_minutes(pickup.scheduled_date, pickup.picked_up_at),
        quality_assessment_minutes=_minutes(quality.received_at, quality.assessed_at),
        refund_processing_minutes=_minutes(
            decision.decided_at if decision else None, ret.refund.processing.processed_at,
        ),
    )


@dataclass
class SettlementResult:
    return_id: str
    request_id: str
    coins_credited: Decimal
    amount: Decimal
    ledger_entry_id: str
    new_balance: Decimal
    backfilled: bool = False

    def to_dict(self) -> dict:
        return {
            "return_id": self.return_id,
            "request_id": self.request_id,
            "coins_credited": str(self.coins_credited),
            "amount": str(self.amount),
            "ledger_entry_id": self.ledger_entry_id,
            "new_balance": str(self.new_balance),
            "backfilled": self.backfilled,
        }


@dataclass
class BulkItemResult:
    return_id: str
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    coins_credited: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    new_balance: Optional[str] = None


@dataclass
class BulkSettlementResult:
    results: list[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict:
        return {
            "results": [asdict(r) for r in self.results],
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total": len(self.results),
        }


class SettlementProcessor(ReturnWorkflow):
    """Credits the customer's coin wallet for an approved refund, exactly once."""

    def _check_preconditions(self, ret: ReturnRequest) -> None:
        if ret.status in SETTLED_STATUSES or ret.refund.processing.processing_status == ProcessingStatus.COMPLETED:
            raise AlreadySettledError(
                f"Refund for return {ret.request_id} has already been processed",
                from_status=ret.status.value,
                to_status=ReturnStatus.REFUND_PROCESSED.value,
            )
        if ret.status != ReturnStatus.REFUND_APPROVED:
            raise InvalidTransitionError(
                f"Return {ret.request_id} must be refund_approved to settle (is {ret.status.value})",
                from_status=ret.status.value,
                to_status=ReturnStatus.REFUND_PROCESSED.value,
            )
        if ret.refund.decision is None:
            raise ValidationError(f"Return {ret.request_id} has no refund decision")

    def _complete(self, ret: ReturnRequest, actor: Actor, events: list, notes: str) -> None:
        system = Actor(id=actor.id, role=Role.SYSTEM)
        self._move(ret, ReturnStatus.REFUND_PROCESSED, system, events, notes=notes, automatic=True)
        self._move(ret, ReturnStatus.COMPLETED, system, events, notes="Return completed", automatic=True)
        ret.completed_at = self.now()
        ret.metrics = performance_metrics(ret)

    def settle(self, return_id: str, actor: Actor, expected_version: Optional[int] = None) -> SettlementResult:
        require_role(actor, Role.ADMIN, Role.WAREHOUSE)

        # Backfill is committed on its own before any money moves.
        with self.store.transaction():
            ret = self.store.get_return(return_id)
            authorize_return(ret, actor)
            check_version(ret, expected_version)
            self._check_preconditions(ret)
            backfilled = backfill_decision(ret, self.policy, self.now())
            if backfilled:
                self.store.save_return(ret)
                logger.info(f"Backfilled refund decision for return {ret.request_id}")

        with self._unit_of_work() as events:
            ret = self.store.get_return(return_id)
            self._check_preconditions(ret)
            if not ret.customer_id:
                raise ValidationError(f"Return {ret.request_id} has no customer reference")
            if self.store.get_wallet(ret.customer_id) is None:
                raise NotFoundError(f"Wallet not found for customer {ret.customer_id}")
            if self.store.ledger_entry_for_return(ret.id) is not None:
                raise SettlementConsistencyError(
                    f"Return {ret.request_id} already has a refund ledger entry; run reconciliation",
                    return_id=ret.id,
                )

            decision = ret.refund.decision
            coins = money(decision.final_coins)
            amount = money(decision.final_amount)
            now = self.now()

            wallet = self.store.credit_wallet(ret.customer_id, coins)
            entry = LedgerEntry(
                user_id=ret.customer_id,
                type=LedgerEntryType.REFUND,
                amount=coins,
                balance_after=wallet.balance,
                order_id=ret.order_id,
                return_id=ret.id,
                description=f"Refund for return {ret.request_id}",
                details={
                    "original_amount": str(ret.original_amount),
                    "refund_amount": str(amount),
                    "refund_percentage": str(decision.refund_percentage),
                    "conversion_rate": str(self.policy.coin_conversion_rate),
                    "deductions": [d.model_dump(mode="json") for d in decision.deductions],
                    "processed_by": actor.id,
                    "processed_role": actor.role.value,
                    "return_reason": ret.reason.value,
                },
                created_at=now,
            )
            self.store.add_ledger_entry(entry)

            ret.refund.processing = RefundProcessing(
                processing_status=ProcessingStatus.COMPLETED,
                processed_by=actor.id,
                processed_at=now,
                ledger_entry_id=entry.id,
                conversion_rate=self.policy.coin_conversion_rate,
                original_amount=amount,
                coins_credited=coins,
            )
            self._complete(ret, actor, events, notes=f"{coins} coins credited to wallet")
            self.store.save_return(ret)
            self._release_order(ret, ReturnStatus.COMPLETED.value, completed=True)

            logger.info(
                f"Settled return {ret.request_id}: {coins} coins to {ret.customer_id} "
                f"(balance {wallet.balance}, ledger {entry.id})"
            )
            snapshot = ret.model_copy(deep=True)
            balance = wallet.balance
            events.append(lambda: self.notifier.notify_refund_processed(snapshot, coins, balance))

        return SettlementResult(
            return_id=ret.id,
            request_id=ret.request_id,
            coins_credited=coins,
            amount=amount,
            ledger_entry_id=entry.id,
            new_balance=wallet.balance,
            backfilled=backfilled,
        )

    def settle_many(self, return_ids: list[str], actor: Actor) -> BulkSettlementResult:
        require_role(actor, Role.ADMIN, Role.WAREHOUSE)
        if not return_ids:
            raise ValidationError("Return IDs array is required")

        result = BulkSettlementResult()
        for return_id in return_ids:
            try:
                settled = self.settle(return_id, actor)
            except ReturnsError as e:
                logger.warning(f"Bulk settlement skipped {return_id}: {e.code} {e.message}")
                result.results.append(BulkItemResult(
                    return_id=return_id, success=False, error=e.message, error_code=e.code,
                ))
                continue
            except Exception as e:
                logger.exception(f"Bulk settlement failed for {return_id}")
                result.results.append(BulkItemResult(
                    return_id=return_id, success=False, error=str(e), error_code="internal_error",
                ))
                continue
            result.results.append(BulkItemResult(
                return_id=return_id,
                success=True,
                coins_credited=str(settled.coins_credited),
                ledger_entry_id=settled.ledger_entry_id,
                new_balance=str(settled.new_balance),
            ))
        logger.info(f"Bulk settlement: {result.succeeded} succeeded, {result.failed} failed")
        return result

    def reconcile(self, actor: Actor) -> list[str]:
        """Complete Returns whose refund is already in the ledger, without crediting again."""
        require_role(actor, Role.ADMIN, Role.SYSTEM)
        repaired = []
        for entry in self.store.refund_entries():
            if not entry.return_id:
                continue
            with self._unit_of_work() as events:
                ret = self.store.get_return(entry.return_id)
                if ret.status == ReturnStatus.COMPLETED:
                    continue
                if ret.status not in (ReturnStatus.REFUND_APPROVED, ReturnStatus.REFUND_PROCESSED):
                    logger.warning(
                        f"Ledger entry {entry.id} references return {ret.request_id} in status "
                        f"{ret.status.value}; needs manual review"
                    )
                    continue

                ret.refund.processing = RefundProcessing(
                    processing_status=ProcessingStatus.COMPLETED,
                    processed_by=entry.details.get("processed_by", actor.id),
                    processed_at=entry.created_at,
                    ledger_entry_id=entry.id,
                    conversion_rate=self.policy.coin_conversion_rate,
                    original_amount=Decimal(entry.details.get("refund_amount", "0")),
                    coins_credited=entry.amount,
                )
                system = Actor(id=actor.id, role=Role.SYSTEM)
                if ret.status == ReturnStatus.REFUND_APPROVED:
                    self._move(ret, ReturnStatus.REFUND_PROCESSED, system, events,
                               notes="Reconciled from ledger", automatic=True)
                self._move(ret, ReturnStatus.COMPLETED, system, events, notes="Return completed", automatic=True)
                ret.completed_at = self.now()
                ret.metrics = performance_metrics(ret)
                self.store.save_return(ret)
                self._release_order(ret, ReturnStatus.COMPLETED.value, completed=True)
                logger.warning(f"Reconciled return {ret.request_id} from ledger entry {entry.id}")
                repaired.append(ret.id)
        return repaired
