"""Configuration."""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "ReturnFlow"
    debug: bool = False
    secret_key: str = "change-me"

    # memory | sql
    storage_backend: str = "memory"
    database_url: str = "sqlite:///./returnflow.db"

    # Return policy
    return_window_days: int = 7
    pickup_charge_amount: Decimal = Decimal("50")
    coin_conversion_rate: Decimal = Decimal("5")  # coins per currency unit

    # Delivery / pickup OTP
    otp_length: int = 6
    otp_max_failed_attempts: int = 3
    otp_failure_window_minutes: int = 10
    otp_lockout_minutes: int = 30

    # Notifications
    notification_webhook_url: str = ""

    # Auth
    jwt_expire_minutes: int = 1440

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class ReturnPolicy:
    """Policy constants shared by the calculators, the OTP gateway and settlement."""
    return_window_days: int = 7
    pickup_charge_amount: Decimal = Decimal("50")
    coin_conversion_rate: Decimal = Decimal("5")
    otp_length: int = 6
    otp_max_failed_attempts: int = 3
    otp_failure_window_minutes: int = 10
    otp_lockout_minutes: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReturnPolicy":
        return cls(
            return_window_days=settings.return_window_days,
            pickup_charge_amount=Decimal(str(settings.pickup_charge_amount)),
            coin_conversion_rate=Decimal(str(settings.coin_conversion_rate)),
            otp_length=settings.otp_length,
            otp_max_failed_attempts=settings.otp_max_failed_attempts,
            otp_failure_window_minutes=settings.otp_failure_window_minutes,
            otp_lockout_minutes=settings.otp_lockout_minutes,
        )

    def to_dict(self) -> dict:
        return {
            "return_window_days": self.return_window_days,
            "pickup_charge_amount": str(self.pickup_charge_amount),
            "coin_conversion_rate": str(self.coin_conversion_rate),
            "otp_length": self.otp_length,
            "otp_max_failed_attempts": self.otp_max_failed_attempts,
            "otp_failure_window_minutes": self.otp_failure_window_minutes,
            "otp_lockout_minutes": self.otp_lockout_minutes,
        }
