"""Return lifecycle notifications.

Each notification fans out to the channels subscribed to its event (log only
by default). Handler failures are recorded on the notification and logged;
``notify`` never raises. Given an executor, channel handlers run on it and
``notify`` returns without waiting for them.
"""

from collections import Counter, defaultdict, deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional
import json
import logging

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    RETURN_REQUESTED = "return.requested"
    RETURN_STATUS_CHANGED = "return.status_changed"
    RETURN_CANCELLED = "return.cancelled"
    PICKUP_SCHEDULED = "pickup.scheduled"
    PICKUP_STARTED = "pickup.started"
    PICKUP_COMPLETED = "pickup.completed"
    REFUND_RECOMMENDED = "refund.recommended"
    REFUND_DECIDED = "refund.decided"
    REFUND_PROCESSED = "refund.processed"


class NotificationChannel(str, Enum):
    LOG = "log"
    WEBHOOK = "webhook"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class DecimalEncoder(json.JSONEncoder):
    """Money stays exact text; times and enums use their wire form."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


@dataclass
class Notification:
    event: NotificationEvent
    title: str
    message: str
    return_id: Optional[str] = None
    request_id: Optional[str] = None
    recipients: list[str] = field(default_factory=list)
    data: dict = field(default_factory=dict)
    channel: NotificationChannel = NotificationChannel.LOG
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivered: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload.pop("error")
        payload.update(
            event=self.event.value,
            channel=self.channel.value,
            created_at=self.created_at.isoformat(),
        )
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=DecimalEncoder)


Handler = Callable[[Notification], object]


class NotificationService:
    """Routes return events to channel handlers and keeps a bounded history."""

    def __init__(self, max_history: int = 1000, executor: Optional[Executor] = None):
        self._handlers: dict[NotificationChannel, list[Handler]] = defaultdict(list)
        self._routes: dict[NotificationEvent, tuple[NotificationChannel, ...]] = {}
        self._history: deque[Notification] = deque(maxlen=max_history)
        self._executor = executor

    def register_handler(self, channel: NotificationChannel, handler: Handler) -> None:
        self._handlers[channel].append(handler)

    def subscribe(self, event: NotificationEvent, channels: Iterable[NotificationChannel]) -> None:
        """Replace the channel list for ``event``."""
        self._routes[event] = tuple(channels)

    def channels_for(self, event: NotificationEvent) -> tuple[NotificationChannel, ...]:
        return self._routes.get(event, (NotificationChannel.LOG,))

    def notify(
        self,
        event: NotificationEvent,
        title: str,
        message: str,
        recipients: Optional[Iterable[Optional[str]]] = None,
        data: Optional[dict] = None,
        return_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> list[Notification]:
        """Build one notification per subscribed channel and deliver each."""
        payload = json.loads(json.dumps(data or {}, cls=DecimalEncoder))
        addressed = [r for r in (recipients or []) if r]
        sent = []
        for channel in self.channels_for(event):
            notification = Notification(
                event=event,
                title=title,
                message=message,
                return_id=return_id,
                request_id=request_id,
                recipients=list(addressed),
                data=dict(payload),
                channel=channel,
            )
            if self._executor is not None and self._handlers.get(channel):
                self._executor.submit(self._deliver, notification)
            else:
                self._deliver(notification)
            self._history.append(notification)
            sent.append(notification)
        return sent

    def close(self) -> None:
        """Wait for queued deliveries to finish."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _deliver(self, notification: Notification) -> None:
        handlers = self._handlers.get(notification.channel)
        if not handlers:
            logger.info(f"[{notification.event.value}] {notification.title}: {notification.message}")
            notification.delivered = True
            return
        for handler in handlers:
            try:
                handler(notification)
            except Exception as e:
                notification.error = str(e)
                logger.error(
                    f"{notification.channel.value} delivery failed for "
                    f"{notification.event.value} ({notification.request_id}): {e}"
                )
            else:
                notification.delivered = True

    # ── Return lifecycle ─────────────────────────────────

    def _about(
        self,
        ret,
        event: NotificationEvent,
        title: str,
        message: str,
        recipients: Iterable[Optional[str]] = (),
        **data,
    ) -> list[Notification]:
        return self.notify(
            event, title, message,
            recipients=recipients,
            data=data,
            return_id=ret.id,
            request_id=ret.request_id,
        )

    def notify_return_requested(self, ret) -> list[Notification]:
        return self._about(
            ret, NotificationEvent.RETURN_REQUESTED,
            f"Return requested: {ret.request_id}",
            f"Return {ret.request_id} for order {ret.order_id} ({ret.reason.value})",
            [ret.customer_id],
            order_id=ret.order_id,
            reason=ret.reason,
        )

    def notify_status_changed(self, ret, from_status, notes: str = "") -> list[Notification]:
        from_value = getattr(from_status, "value", from_status)
        return self._about(
            ret, NotificationEvent.RETURN_STATUS_CHANGED,
            f"Return {ret.request_id}: {ret.status.value}",
            notes or f"Return {ret.request_id} moved from {from_value} to {ret.status.value}",
            [ret.customer_id],
            from_status=from_value,
            to_status=ret.status,
        )

    def notify_return_cancelled(self, ret, reason: str = "") -> list[Notification]:
        return self._about(
            ret, NotificationEvent.RETURN_CANCELLED,
            f"Return cancelled: {ret.request_id}",
            reason or f"Return {ret.request_id} was cancelled by the customer",
            [ret.customer_id, ret.warehouse.assigned_manager],
        )

    def notify_pickup_scheduled(self, ret) -> list[Notification]:
        pickup = ret.warehouse.pickup
        when = pickup.scheduled_date.date().isoformat() if pickup.scheduled_date else "TBD"
        return self._about(
            ret, NotificationEvent.PICKUP_SCHEDULED,
            f"Pickup scheduled: {ret.request_id}",
            f"Pickup on {when} ({pickup.scheduled_slot or 'any slot'})",
            [ret.customer_id, pickup.assigned_agent],
            method=pickup.method,
            scheduled_date=pickup.scheduled_date,
            scheduled_slot=pickup.scheduled_slot,
            assigned_agent=pickup.assigned_agent,
        )

    def notify_pickup_started(self, ret) -> list[Notification]:
        return self._about(
            ret, NotificationEvent.PICKUP_STARTED,
            f"Pickup on the way: {ret.request_id}",
            "Your pickup agent is on the way",
            [ret.customer_id],
            assigned_agent=ret.warehouse.pickup.assigned_agent,
        )

    def notify_pickup_completed(self, ret) -> list[Notification]:
        return self._about(
            ret, NotificationEvent.PICKUP_COMPLETED,
            f"Items picked up: {ret.request_id}",
            "Your return items were collected",
            [ret.customer_id, ret.warehouse.assigned_manager],
            picked_up_at=ret.warehouse.pickup.picked_up_at,
        )

    def notify_refund_recommended(self, ret) -> list[Notification]:
        rec = ret.refund.recommendation
        return self._about(
            ret, NotificationEvent.REFUND_RECOMMENDED,
            f"Refund recommendation: {ret.request_id}",
            f"{rec.recommendation.value}: {rec.recommended_amount} ({rec.recommended_coins} coins)",
            recommendation=rec.recommendation,
            recommended_coins=rec.recommended_coins,
        )

    def notify_refund_decided(self, ret) -> list[Notification]:
        decision = ret.refund.decision
        return self._about(
            ret, NotificationEvent.REFUND_DECIDED,
            f"Refund {decision.decision.value}: {ret.request_id}",
            f"Refund of {decision.final_amount} ({decision.final_coins} coins)",
            [ret.customer_id],
            decision=decision.decision,
            final_amount=decision.final_amount,
            final_coins=decision.final_coins,
        )

    def notify_refund_processed(self, ret, coins: Decimal, new_balance: Decimal) -> list[Notification]:
        return self._about(
            ret, NotificationEvent.REFUND_PROCESSED,
            f"Refund credited: {ret.request_id}",
            f"{coins} coins credited to your wallet",
            [ret.customer_id],
            coins_credited=coins,
            new_balance=new_balance,
            ledger_entry_id=ret.refund.processing.ledger_entry_id,
        )

    # ── History ──────────────────────────────────────────

    def get_history(
        self,
        event: Optional[NotificationEvent] = None,
        channel: Optional[NotificationChannel] = None,
        return_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Notification]:
        """Most recent notifications last."""
        items = [
            n for n in self._history
            if (event is None or n.event == event)
            and (channel is None or n.channel == channel)
            and (return_id is None or n.return_id == return_id)
        ]
        return items[-limit:]

    def stats(self) -> dict:
        history = list(self._history)
        return {
            "total": len(history),
            "delivered": sum(1 for n in history if n.delivered),
            "failed": sum(1 for n in history if n.error),
            "by_event": dict(Counter(n.event.value for n in history)),
            "by_channel": dict(Counter(n.channel.value for n in history)),
        }


def create_webhook_handler(url: str, timeout: int = 10, transport=None) -> Handler:
    """POST each notification as JSON to ``url``; non-2xx responses raise."""
    import httpx

    def handler(notification: Notification) -> None:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.post(
                url,
                content=notification.to_json(),
                headers={
                    "Content-Type": "application/json",
                    "X-Return-Event": notification.event.value,
                },
            )
            resp.raise_for_status()

    return handler


def build_notification_service(webhook_url: str = "", workers: int = 4) -> NotificationService:
    """Log-only service, or one that posts every event to ``webhook_url`` in the background."""
    if not webhook_url:
        return NotificationService()
    service = NotificationService(executor=ThreadPoolExecutor(workers, thread_name_prefix="notify"))
    service.register_handler(NotificationChannel.WEBHOOK, create_webhook_handler(webhook_url))
    for event in NotificationEvent:
        service.subscribe(event, [NotificationChannel.LOG, NotificationChannel.WEBHOOK])
    return service
