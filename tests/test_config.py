"""Config tests."""

from decimal import Decimal

import pytest

from returnflow.config import ReturnPolicy, Settings, get_settings


class TestSettings:
    def test_default_values(self):
        s = Settings()
        assert s.app_name == "ReturnFlow"
        assert s.debug is False
        assert s.jwt_expire_minutes == 1440
        assert s.storage_backend == "memory"

    def test_get_settings_cached(self):
        s1 = get_settings()
        s2 = get_settings()
        assert s1 is s2  # lru_cache

    def test_policy_defaults(self):
        s = Settings()
        assert s.return_window_days == 7
        assert s.pickup_charge_amount == Decimal("50")
        assert s.coin_conversion_rate == Decimal("5")
        assert s.otp_max_failed_attempts == 3
        assert s.otp_lockout_minutes == 30

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("RETURN_WINDOW_DAYS", "14")
        monkeypatch.setenv("COIN_CONVERSION_RATE", "10")
        s = Settings()
        assert s.return_window_days == 14
        assert s.coin_conversion_rate == Decimal("10")


class TestReturnPolicy:
    def test_from_settings(self):
        s = Settings(return_window_days=10, pickup_charge_amount=Decimal("75"))
        policy = ReturnPolicy.from_settings(s)
        assert policy.return_window_days == 10
        assert policy.pickup_charge_amount == Decimal("75")
        assert policy.otp_failure_window_minutes == 10

    def test_frozen(self):
        policy = ReturnPolicy()
        with pytest.raises(AttributeError):
            policy.return_window_days = 30

    def test_to_dict(self):
        d = ReturnPolicy().to_dict()
        assert d["coin_conversion_rate"] == "5"
        assert d["pickup_charge_amount"] == "50"
        assert d["otp_length"] == 6
