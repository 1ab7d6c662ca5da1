"""Pickup-charge policy tests."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from returnflow.schemas import ReturnReason
from returnflow.services.pickup_charge import (
    CHARGED_REASONS, FREE_REASONS, calculate_pickup_charge, classify_reason,
)


class TestPolicy:
    @pytest.mark.parametrize("reason", sorted(r.value for r in FREE_REASONS))
    def test_company_fault_is_free(self, reason):
        charge = calculate_pickup_charge(reason)
        assert charge.is_free is True
        assert charge.amount == Decimal("0")
        assert charge.reason == "Company error/defect"
        assert charge.source == "policy"

    @pytest.mark.parametrize("reason", sorted(r.value for r in CHARGED_REASONS))
    def test_customer_preference_is_charged(self, reason):
        charge = calculate_pickup_charge(reason)
        assert charge.is_free is False
        assert charge.amount == Decimal("50")
        assert charge.reason == "Customer preference"

    def test_custom_amount(self):
        charge = calculate_pickup_charge(ReturnReason.SIZE_ISSUE, charge_amount=Decimal("80"))
        assert charge.amount == Decimal("80")

    def test_every_reason_classified(self):
        assert FREE_REASONS | CHARGED_REASONS == set(ReturnReason)


class TestOverride:
    def test_free_override_on_charged_reason(self):
        now = datetime(2024, 5, 3, tzinfo=timezone.utc)
        charge = calculate_pickup_charge("changed_mind", override=True, actor_id="admin-1", now=now)
        assert charge.is_free is True
        assert charge.amount == Decimal("0")
        assert charge.source == "override"
        assert charge.toggled_by == "admin-1"
        assert charge.toggled_at == now

    def test_charged_override_on_free_reason(self):
        charge = calculate_pickup_charge("defective", override=False, actor_id="admin-1")
        assert charge.is_free is False
        assert charge.amount == Decimal("50")
        assert charge.reason.startswith("Admin override")


class TestClassification:
    def test_defective(self):
        info = classify_reason("defective")
        assert info.liability == "company"
        assert info.priority == "high"
        assert info.charged_pickup is False

    def test_changed_mind(self):
        info = classify_reason(ReturnReason.CHANGED_MIND)
        assert info.liability == "customer"
        assert info.charged_pickup is True

    def test_unknown_reason(self):
        assert classify_reason("gift_return").category == "other"
