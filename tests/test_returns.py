"""Customer return workflow tests."""

from decimal import Decimal

import pytest

from returnflow.exceptions import (
    AuthorizationError, ConcurrencyError, InvalidTransitionError, NotFoundError, ValidationError,
)
from returnflow.schemas import ReturnDraftItem, ReturnStatus, Role
from returnflow.services.notification import NotificationEvent

from conftest import ADMIN, AGENT, OTP_CODE, make_draft, make_order, schedule


class TestEligibility:
    def test_eligible(self, wf):
        result = wf.customer.check_eligibility("order-1", "cust-1")
        assert result["is_eligible"] is True
        assert result["days_remaining"] == 5
        assert result["order_id"] == "order-1"

    def test_other_customers_order(self, wf):
        with pytest.raises(AuthorizationError):
            wf.customer.check_eligibility("order-1", "cust-2")

    def test_active_return_blocks(self, wf):
        wf.customer.create_return("cust-1", make_draft())
        result = wf.customer.check_eligibility("order-1", "cust-1")
        assert result["is_eligible"] is False
        assert result["reason"] == "Active return request exists"


class TestCreateReturn:
    def test_create(self, wf, store, clock):
        ret = wf.customer.create_return("cust-1", make_draft())
        assert ret.status == ReturnStatus.REQUESTED
        assert ret.request_id.startswith("RR-20240503-")
        assert ret.original_amount == Decimal("400")
        assert ret.eligibility.days_remaining == 5
        assert ret.admin_review.pickup_charge.is_free is True
        assert len(ret.status_updates) == 1
        assert ret.status_updates[0].actor_role == Role.CUSTOMER

        order = store.get_order("order-1")
        assert order.return_info.has_active_return is True
        assert order.return_info.history[0].return_id == ret.id

    def test_item_snapshot_from_order(self, wf):
        ret = wf.customer.create_return("cust-1", make_draft(items=[ReturnDraftItem(order_line_id="line-2")]))
        assert len(ret.items) == 1
        assert ret.items[0].product_name == "Shade"
        assert ret.items[0].unit_price == Decimal("200")

    def test_charged_reason(self, wf):
        ret = wf.customer.create_return("cust-1", make_draft(reason="changed_mind"))
        assert ret.admin_review.pickup_charge.is_free is False
        assert ret.admin_review.pickup_charge.amount == Decimal("50")

    def test_notifies_after_commit(self, wf, notifier):
        wf.customer.create_return("cust-1", make_draft())
        history = notifier.get_history(event=NotificationEvent.RETURN_REQUESTED)
        assert len(history) == 1
        assert history[0].recipients == ["cust-1"]

    def test_request_id_collision_draws_again(self, wf, store, monkeypatch):
        draws = iter([12345, 12345, 54321])
        monkeypatch.setattr("returnflow.schemas.random.randint", lambda low, high: next(draws))
        store.add_order(make_order("order-2"))

        first = wf.customer.create_return("cust-1", make_draft())
        second = wf.customer.create_return("cust-1", make_draft("order-2"))
        assert first.request_id == "RR-20240503-12345"
        assert second.request_id == "RR-20240503-54321"

    def test_request_id_space_exhausted(self, wf, store, monkeypatch):
        monkeypatch.setattr("returnflow.schemas.random.randint", lambda low, high: 12345)
        store.add_order(make_order("order-2"))
        wf.customer.create_return("cust-1", make_draft())
        with pytest.raises(ConcurrencyError, match="No free request id"):
            wf.customer.create_return("cust-1", make_draft("order-2"))
        assert store.get_order("order-2").return_info.has_active_return is False

    def test_one_active_return_per_order(self, wf):
        wf.customer.create_return("cust-1", make_draft())
        with pytest.raises(ValidationError):
            wf.customer.create_return("cust-1", make_draft())

    @pytest.mark.parametrize("overrides,message", [
        ({"items": []}, "At least one item"),
        ({"evidence_images": []}, "evidence image"),
        ({"evidence_images": ["  "]}, "evidence image"),
        ({"customer_comments": "x" * 501}, "500 characters"),
        ({"items": [ReturnDraftItem(order_line_id="line-9")]}, "Invalid order item ID"),
        ({"items": [ReturnDraftItem(order_line_id="line-1", quantity=2)]}, "exceeds ordered quantity"),
        ({"items": [ReturnDraftItem(order_line_id="line-1", quantity=0)]}, "at least 1"),
    ])
    def test_invalid_draft(self, wf, store, overrides, message):
        with pytest.raises(ValidationError, match=message):
            wf.customer.create_return("cust-1", make_draft(**overrides))
        assert store.list_returns() == []
        assert store.get_order("order-1").version == 0

    def test_duplicate_lines_are_aggregated(self, wf):
        items = [ReturnDraftItem(order_line_id="line-1"), ReturnDraftItem(order_line_id="line-1")]
        with pytest.raises(ValidationError, match="exceeds ordered quantity"):
            wf.customer.create_return("cust-1", make_draft(items=items))

    def test_window_expired(self, wf, clock):
        clock.advance(days=6)
        with pytest.raises(ValidationError, match="Return window expired"):
            wf.customer.create_return("cust-1", make_draft())

    def test_not_delivered(self, wf, store):
        store.add_order(make_order("order-2", status="out_for_delivery", delivered_at=None))
        with pytest.raises(ValidationError, match="Order not delivered"):
            wf.customer.create_return("cust-1", make_draft("order-2"))

    def test_unknown_order(self, wf):
        with pytest.raises(NotFoundError):
            wf.customer.create_return("cust-1", make_draft("order-404"))


class TestViewAndCancel:
    def test_get_return(self, wf):
        ret = wf.customer.create_return("cust-1", make_draft())
        data = wf.customer.get_return("cust-1", ret.id)
        assert data["can_cancel"] is True
        assert data["refund_calculation"]["coin_equivalent"] == "2000.00"
        assert data["timeline"][0]["status"] == "requested"
        assert data["classification"]["liability"] == "company"

    def test_get_return_refreshes_window(self, wf, store, clock):
        ret = wf.customer.create_return("cust-1", make_draft())
        clock.advance(days=4)
        data = wf.customer.get_return("cust-1", ret.id)
        assert data["eligibility"]["days_remaining"] == 1
        clock.advance(days=3)
        assert wf.customer.get_return("cust-1", ret.id)["eligibility"]["is_eligible"] is False
        assert store.get_return(ret.id).eligibility.days_remaining == 5

    def test_get_other_customers_return(self, wf):
        ret = wf.customer.create_return("cust-1", make_draft())
        with pytest.raises(AuthorizationError):
            wf.customer.get_return("cust-2", ret.id)

    def test_list(self, wf):
        wf.customer.create_return("cust-1", make_draft())
        assert len(wf.customer.list_returns("cust-1")) == 1
        assert wf.customer.list_returns("cust-1", ReturnStatus.COMPLETED) == []

    def test_cancel_releases_order(self, wf, store):
        ret = wf.customer.create_return("cust-1", make_draft())
        cancelled = wf.customer.cancel_return("cust-1", ret.id, "Found a replacement")
        assert cancelled.status == ReturnStatus.CANCELLED
        order = store.get_order("order-1")
        assert order.return_info.has_active_return is False
        assert order.return_info.history[0].status == "cancelled"
        # a new return is allowed once the old one is closed
        wf.customer.create_return("cust-1", make_draft())

    def test_cancel_after_pickup_rejected(self, wf, clock):
        ret = wf.customer.create_return("cust-1", make_draft())
        wf.admin.review(ADMIN, ret.id, "approve")
        schedule(wf, ret.id, clock)
        wf.customer.cancel_return("cust-1", ret.id)  # still allowed while scheduled

        ret = wf.customer.create_return("cust-1", make_draft())
        wf.admin.review(ADMIN, ret.id, "approve")
        schedule(wf, ret.id, clock)
        wf.agent.verify_pickup_otp(AGENT, ret.id, OTP_CODE)
        with pytest.raises(InvalidTransitionError):
            wf.customer.cancel_return("cust-1", ret.id)

    def test_cancel_with_stale_version(self, wf):
        ret = wf.customer.create_return("cust-1", make_draft())
        wf.admin.start_review(ADMIN, ret.id)
        with pytest.raises(ConcurrencyError):
            wf.customer.cancel_return("cust-1", ret.id, expected_version=ret.version)

    def test_policies(self, wf):
        policies = wf.customer.return_policies()
        assert policies["return_window_days"] == 7
        assert policies["pickup_charge"]["charged_reasons"] == ["changed_mind", "size_issue"]
        assert "defective" in policies["pickup_charge"]["free_reasons"]
        assert len(policies["pickup_charge"]["free_reasons"]) == 5
