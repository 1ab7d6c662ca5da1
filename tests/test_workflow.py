"""End-to-end return scenarios across customer, admin, warehouse and agent."""

from decimal import Decimal

import pytest

from returnflow.exceptions import AlreadySettledError, AuthorizationError, InvalidTransitionError
from returnflow.schemas import (
    DeductionType, ProcessingStatus, ReturnStatus, Role, SYSTEM_ACTOR,
)
from returnflow.services.transitions import transition

from conftest import ADMIN, AGENT, CUSTOMER, MANAGER, OTP_CODE, drive_to_quality_checked, make_draft, schedule


class TestHappyPath:
    def test_standard_return(self, wf, store, clock):
        ret = wf.customer.create_return(CUSTOMER.id, make_draft())
        assert ret.original_amount == Decimal("400")

        wf.admin.review(ADMIN, ret.id, "approve", comments="Looks valid")
        scheduled = schedule(wf, ret.id, clock)
        assert scheduled.status == ReturnStatus.PICKUP_SCHEDULED
        assert scheduled.warehouse.assigned_manager == MANAGER.id

        picked = wf.agent.verify_pickup_otp(AGENT, ret.id, OTP_CODE)
        assert picked.status == ReturnStatus.PICKED_UP
        assert picked.warehouse.pickup.otp_verification.verified_by == AGENT.id
        assert picked.status_updates[-1].automatic is True

        wf.warehouse.mark_received(MANAGER, ret.id)
        wf.warehouse.assess_quality(MANAGER, ret.id, "good", "partial", 80)
        decided = wf.admin.final_decision(ADMIN, ret.id, "approved")
        assert decided.refund.decision.final_amount == Decimal("320.00")
        assert decided.refund.decision.final_coins == Decimal("1600.00")
        assert decided.refund.decision.deductions == []

        result = wf.admin.settle(ADMIN, ret.id)
        assert result.coins_credited == Decimal("1600.00")
        assert store.get_wallet(CUSTOMER.id).balance == Decimal("1600.00")

        done = store.get_return(ret.id)
        assert done.status == ReturnStatus.COMPLETED
        assert done.refund.processing.processing_status == ProcessingStatus.COMPLETED
        assert done.completed_at == clock()
        assert done.history_consistent()
        assert [u.to_status.value for u in done.status_updates] == [
            "requested", "approved", "warehouse_assigned", "pickup_scheduled", "picked_up",
            "in_warehouse", "quality_checked", "refund_approved", "refund_processed", "completed",
        ]
        assert done.status_updates[-1].actor_role == Role.SYSTEM
        assert store.get_order("order-1").return_info.has_active_return is False

    def test_charged_pickup(self, wf, store, clock):
        ret = drive_to_quality_checked(wf, clock, reason="changed_mind", eligibility="full", percentage=None)
        decided = wf.admin.final_decision(ADMIN, ret.id, "approved")
        charges = [d for d in decided.refund.decision.deductions if d.type == DeductionType.PICKUP_CHARGE]
        assert len(charges) == 1
        assert charges[0].amount == Decimal("50.00")
        assert decided.refund.decision.final_amount == Decimal("350.00")
        assert decided.refund.decision.final_coins == Decimal("1750.00")

        wf.admin.settle(ADMIN, ret.id)
        assert store.get_wallet(CUSTOMER.id).balance == Decimal("1750.00")

    def test_full_refund_round_trip(self, wf, store, clock):
        ret = drive_to_quality_checked(wf, clock, eligibility="full", percentage=None)
        wf.admin.final_decision(ADMIN, ret.id, "approved")
        wf.admin.settle(ADMIN, ret.id)
        assert store.get_wallet(CUSTOMER.id).balance == Decimal("400") * Decimal("5")

    def test_waived_pickup_charge(self, wf, clock):
        ret = wf.customer.create_return(CUSTOMER.id, make_draft(reason="size_issue"))
        wf.admin.review(ADMIN, ret.id, "approve", pickup_override=True)
        schedule(wf, ret.id, clock)
        wf.agent.verify_pickup_otp(AGENT, ret.id, OTP_CODE)
        wf.warehouse.mark_received(MANAGER, ret.id)
        wf.warehouse.assess_quality(MANAGER, ret.id, "excellent", "full")
        decided = wf.admin.final_decision(ADMIN, ret.id, "approved")
        assert decided.refund.decision.final_amount == Decimal("400.00")


class TestRejections:
    def test_agent_cannot_complete_from_warehouse(self, wf, store, clock):
        ret = wf.customer.create_return(CUSTOMER.id, make_draft())
        wf.admin.review(ADMIN, ret.id, "approve")
        schedule(wf, ret.id, clock)
        wf.agent.verify_pickup_otp(AGENT, ret.id, OTP_CODE)
        wf.warehouse.mark_received(MANAGER, ret.id)

        before = store.get_return(ret.id)
        attempt = store.get_return(ret.id)
        with pytest.raises(InvalidTransitionError):
            transition(attempt, ReturnStatus.COMPLETED, Role.AGENT, AGENT.id)
        after = store.get_return(ret.id)
        assert after.status == ReturnStatus.IN_WAREHOUSE
        assert after.status_updates == before.status_updates

    def test_refund_rejected(self, wf, store, clock):
        ret = drive_to_quality_checked(wf, clock, eligibility="none", percentage=None)
        rejected = wf.admin.final_decision(ADMIN, ret.id, "rejected", notes="Item was used")
        assert rejected.status == ReturnStatus.REJECTED
        assert rejected.refund.decision.final_coins == Decimal("0.00")
        assert store.get_order("order-1").return_info.has_active_return is False
        with pytest.raises(InvalidTransitionError):
            wf.admin.settle(ADMIN, ret.id)

    def test_admin_rejects_request(self, wf, store):
        ret = wf.customer.create_return(CUSTOMER.id, make_draft())
        rejected = wf.admin.review(ADMIN, ret.id, "reject", comments="Outside policy")
        assert rejected.status == ReturnStatus.REJECTED
        assert rejected.is_terminal
        assert store.get_order("order-1").return_info.history[0].status == "rejected"

    def test_settle_is_idempotent(self, wf, store, clock):
        ret = drive_to_quality_checked(wf, clock)
        wf.admin.final_decision(ADMIN, ret.id, "approved")
        wf.admin.settle(ADMIN, ret.id)
        for _ in range(2):
            with pytest.raises(AlreadySettledError):
                wf.admin.settle(ADMIN, ret.id)
        assert store.get_wallet(CUSTOMER.id).balance == Decimal("1600.00")
        assert len(store.refund_entries()) == 1

    def test_system_actor_cannot_settle_directly(self, wf, clock):
        ret = drive_to_quality_checked(wf, clock)
        wf.admin.final_decision(ADMIN, ret.id, "approved")
        with pytest.raises(AuthorizationError):
            wf.admin.settle(SYSTEM_ACTOR, ret.id)
