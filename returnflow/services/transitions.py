"""Return status machine and role-gated transition table."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from returnflow.exceptions import InvalidTransitionError
from returnflow.schemas import ReturnRequest, ReturnStatus, Role, StatusUpdate, utcnow

logger = logging.getLogger(__name__)

S = ReturnStatus
R = Role

_CUSTOMER_CANCEL = {R.CUSTOMER: frozenset({S.CANCELLED})}

TRANSITIONS: dict[ReturnStatus, dict[Role, frozenset[ReturnStatus]]] = {
    S.REQUESTED: {
        R.ADMIN: frozenset({S.ADMIN_REVIEW, S.APPROVED, S.REJECTED}),
        R.WAREHOUSE: frozenset({S.APPROVED, S.REJECTED}),
        **_CUSTOMER_CANCEL,
    },
    S.ADMIN_REVIEW: {
        R.ADMIN: frozenset({S.APPROVED, S.REJECTED}),
        R.WAREHOUSE: frozenset({S.APPROVED, S.REJECTED}),
        **_CUSTOMER_CANCEL,
    },
    S.APPROVED: {
        R.ADMIN: frozenset({S.WAREHOUSE_ASSIGNED}),
        R.WAREHOUSE: frozenset({S.WAREHOUSE_ASSIGNED}),
        **_CUSTOMER_CANCEL,
    },
    S.WAREHOUSE_ASSIGNED: {
        R.WAREHOUSE: frozenset({S.PICKUP_SCHEDULED}),
        **_CUSTOMER_CANCEL,
    },
    # pickup_scheduled -> pickup_scheduled is a reschedule
    S.PICKUP_SCHEDULED: {
        R.AGENT: frozenset({S.PICKED_UP, S.PICKUP_SCHEDULED}),
        R.WAREHOUSE: frozenset({S.PICKED_UP, S.PICKUP_SCHEDULED}),
        **_CUSTOMER_CANCEL,
    },
    S.PICKED_UP: {
        R.WAREHOUSE: frozenset({S.IN_WAREHOUSE}),
    },
    S.IN_WAREHOUSE: {
        R.WAREHOUSE: frozenset({S.QUALITY_CHECKED}),
    },
    S.QUALITY_CHECKED: {
        R.ADMIN: frozenset({S.REFUND_APPROVED, S.REJECTED}),
        R.WAREHOUSE: frozenset({S.REFUND_APPROVED, S.REJECTED}),
    },
    S.REFUND_APPROVED: {
        R.SYSTEM: frozenset({S.REFUND_PROCESSED}),
    },
    S.REFUND_PROCESSED: {
        R.SYSTEM: frozenset({S.COMPLETED}),
    },
}

CANCELLABLE_STATUSES = frozenset(
    status for status, by_role in TRANSITIONS.items()
    if S.CANCELLED in by_role.get(R.CUSTOMER, frozenset())
)


def allowed_transitions(status: ReturnStatus | str, role: Role | str) -> frozenset[ReturnStatus]:
    return TRANSITIONS.get(ReturnStatus(status), {}).get(Role(role), frozenset())


def is_allowed(from_status: ReturnStatus | str, to_status: ReturnStatus | str, role: Role | str) -> bool:
    return ReturnStatus(to_status) in allowed_transitions(from_status, role)


def transition(
    ret: ReturnRequest,
    to_status: ReturnStatus,
    role: Role,
    actor_id: Optional[str],
    notes: str = "",
    automatic: bool = False,
    now: Optional[datetime] = None,
) -> StatusUpdate:
    """Move ``ret`` to ``to_status`` and append the matching history entry.

    Raises InvalidTransitionError and leaves ``ret`` untouched when the table
    does not allow the move for ``role``.
    """
    from_status = ret.status
    to_status = ReturnStatus(to_status)
    role = Role(role)
    if not is_allowed(from_status, to_status, role):
        raise InvalidTransitionError(
            f"Cannot move return {ret.request_id} from {from_status.value} to {to_status.value} as {role.value}",
            from_status=from_status.value,
            to_status=to_status.value,
            role=role.value,
        )

    now = now or utcnow()
    update = StatusUpdate(
        from_status=from_status,
        to_status=to_status,
        at=now,
        actor_id=actor_id,
        actor_role=role,
        notes=notes,
        automatic=automatic,
    )
    ret.status_updates.append(update)
    ret.status = to_status
    ret.last_updated_at = now
    logger.debug(f"Return {ret.request_id}: {from_status.value} -> {to_status.value} by {role.value}:{actor_id}")
    return update


def record_creation(ret: ReturnRequest, actor_id: str, now: datetime, notes: str = "") -> StatusUpdate:
    """Initial history entry for a new Return (no from_status)."""
    update = StatusUpdate(
        from_status=None,
        to_status=S.REQUESTED,
        at=now,
        actor_id=actor_id,
        actor_role=R.CUSTOMER,
        notes=notes or "Return request created",
    )
    ret.status = S.REQUESTED
    ret.status_updates.append(update)
    return update
