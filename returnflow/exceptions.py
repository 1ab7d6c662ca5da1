"""Error taxonomy for the returns core.

Every expected failure of a workflow operation is one of these classes.
``state_changed`` tells the caller whether anything was persisted before the
error was raised (OTP bookkeeping, a half-applied settlement), so an API layer
can distinguish "nothing changed" from "partially changed".
"""

from __future__ import annotations

from typing import Any, Optional


class ReturnsError(Exception):
    """Base class for all returns-core errors."""

    code = "returns_error"
    state_changed = False

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        data = {
            "error": self.code,
            "detail": self.message,
            "state_changed": self.state_changed,
        }
        data.update(self.extra)
        return data


class ValidationError(ReturnsError, ValueError):
    """Malformed input, rejected before any state mutation."""

    code = "validation_error"


class NotFoundError(ReturnsError, LookupError):
    """A referenced Return, Order, customer or agent does not exist."""

    code = "not_found"


class AuthorizationError(ReturnsError):
    """The actor lacks ownership or role permission."""

    code = "forbidden"


class InvalidTransitionError(ReturnsError):
    """The requested status change is not allowed from the current state for this role."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str = "",
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        role: Optional[str] = None,
        **extra: Any,
    ):
        if from_status is not None:
            extra["from_status"] = from_status
        if to_status is not None:
            extra["to_status"] = to_status
        if role is not None:
            extra["role"] = role
        super().__init__(message, **extra)


class AlreadySettledError(InvalidTransitionError):
    """Settlement was requested for a Return whose refund is already processed."""

    code = "already_settled"


class ConcurrencyError(ReturnsError):
    """The document version advanced since it was read."""

    code = "version_conflict"


class OTPMismatchError(ReturnsError):
    """Wrong code; the failed attempt has been recorded on the order."""

    code = "otp_mismatch"
    state_changed = True


class OTPLockedError(ReturnsError):
    """Verification is throttled after repeated failures."""

    code = "otp_locked"

    def __init__(self, message: str = "", lockout_minutes: int = 0, state_changed: bool = False, **extra: Any):
        super().__init__(message, lockout_minutes=lockout_minutes, **extra)
        self.lockout_minutes = lockout_minutes
        self.state_changed = state_changed


class SettlementConsistencyError(ReturnsError):
    """The wallet/ledger side of a settlement cannot be confirmed against the Return.

    Never retry blindly: run reconciliation, which checks the ledger first.
    """

    code = "settlement_inconsistent"
    state_changed = True
