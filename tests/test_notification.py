"""Notification service tests."""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import httpx
import pytest

from returnflow.exceptions import ValidationError
from returnflow.services.notification import (
    Notification,
    NotificationChannel,
    NotificationEvent,
    NotificationService,
    build_notification_service,
    create_webhook_handler,
)

from conftest import ADMIN, CUSTOMER, make_draft, make_order


class TestNotification:
    def test_to_dict(self):
        n = Notification(
            event=NotificationEvent.RETURN_REQUESTED,
            title="Return requested",
            message="RET-1 for order-1",
            data={"return_id": "r-1"},
        )
        d = n.to_dict()
        assert d["event"] == "return.requested"
        assert d["channel"] == "log"
        assert d["data"]["return_id"] == "r-1"
        assert "created_at" in d
        assert "error" not in d

    def test_to_json_keeps_decimal_text(self):
        n = Notification(
            event=NotificationEvent.REFUND_PROCESSED,
            title="Credited",
            message="1600 coins",
            data={"coins": Decimal("1600.00")},
        )
        assert json.loads(n.to_json())["data"]["coins"] == "1600.00"


class TestNotificationService:
    def test_default_log_channel(self):
        svc = NotificationService()
        results = svc.notify(NotificationEvent.RETURN_CANCELLED, "Cancelled", "msg")
        assert len(results) == 1
        assert results[0].delivered is True
        assert results[0].channel == NotificationChannel.LOG

    def test_subscribe(self):
        svc = NotificationService()
        received = []
        svc.register_handler(NotificationChannel.WEBHOOK, received.append)
        svc.subscribe(NotificationEvent.PICKUP_SCHEDULED, [NotificationChannel.WEBHOOK, NotificationChannel.LOG])

        results = svc.notify(NotificationEvent.PICKUP_SCHEDULED, "Pickup", "Tomorrow", recipients=["cust-1", None])
        assert len(results) == 2
        assert len(received) == 1
        assert received[0].recipients == ["cust-1"]

    def test_handler_error_recorded(self):
        svc = NotificationService()

        def bad_handler(n):
            raise RuntimeError("fail")

        svc.register_handler(NotificationChannel.WEBHOOK, bad_handler)
        svc.subscribe(NotificationEvent.REFUND_DECIDED, [NotificationChannel.WEBHOOK])

        results = svc.notify(NotificationEvent.REFUND_DECIDED, "Decided", "msg")
        assert results[0].error == "fail"
        assert results[0].delivered is False
        assert svc.stats()["failed"] == 1

    def test_history_filters(self):
        svc = NotificationService()
        svc.notify(NotificationEvent.RETURN_REQUESTED, "A", "a")
        svc.notify(NotificationEvent.PICKUP_STARTED, "B", "b")
        svc.notify(NotificationEvent.RETURN_REQUESTED, "C", "c")
        assert len(svc.get_history()) == 3
        assert len(svc.get_history(event=NotificationEvent.RETURN_REQUESTED)) == 2
        assert [n.title for n in svc.get_history(limit=1)] == ["C"]

    def test_history_is_capped(self):
        svc = NotificationService(max_history=5)
        for i in range(8):
            svc.notify(NotificationEvent.RETURN_REQUESTED, f"N{i}", "msg")
        assert len(svc.get_history(limit=100)) == 5
        assert svc.get_history(limit=100)[0].title == "N3"

    def test_stats(self):
        svc = NotificationService()
        svc.notify(NotificationEvent.RETURN_REQUESTED, "A", "a")
        svc.notify(NotificationEvent.REFUND_PROCESSED, "B", "b")
        stats = svc.stats()
        assert stats["total"] == 2
        assert stats["delivered"] == 2
        assert stats["by_event"] == {"return.requested": 1, "refund.processed": 1}
        assert stats["by_channel"] == {"log": 2}


class TestWebhook:
    def test_posts_json(self):
        seen = []

        def respond(request):
            seen.append(request)
            return httpx.Response(204)

        handler = create_webhook_handler("https://hooks.example.com/returns", transport=httpx.MockTransport(respond))
        handler(Notification(
            event=NotificationEvent.REFUND_PROCESSED, title="t", message="m",
            return_id="r-1", data={"coins_credited": "1600.00"},
        ))
        assert seen[0].headers["X-Return-Event"] == "refund.processed"
        body = json.loads(seen[0].content)
        assert body["return_id"] == "r-1"
        assert body["data"]["coins_credited"] == "1600.00"

    def test_error_status_is_recorded(self):
        svc = NotificationService()
        svc.register_handler(NotificationChannel.WEBHOOK, create_webhook_handler(
            "https://hooks.example.com/returns", transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        ))
        svc.subscribe(NotificationEvent.RETURN_CANCELLED, [NotificationChannel.WEBHOOK])
        results = svc.notify(NotificationEvent.RETURN_CANCELLED, "Cancelled", "msg")
        assert results[0].delivered is False
        assert "503" in results[0].error


class TestBuild:
    def test_without_webhook(self):
        svc = build_notification_service("")
        results = svc.notify(NotificationEvent.RETURN_REQUESTED, "A", "a")
        assert [n.channel for n in results] == [NotificationChannel.LOG]

    def test_with_webhook_subscribes_every_event(self, monkeypatch):
        sent = []
        monkeypatch.setattr(
            "returnflow.services.notification.create_webhook_handler",
            lambda url, timeout=10: sent.append,
        )
        svc = build_notification_service("https://hooks.example.com/returns")
        for event in NotificationEvent:
            results = svc.notify(event, "t", "m")
            assert [n.channel for n in results] == [NotificationChannel.LOG, NotificationChannel.WEBHOOK]
        svc.close()
        assert len(sent) == len(NotificationEvent)


class TestBackgroundDelivery:
    def test_notify_does_not_wait_for_handlers(self):
        release = threading.Event()
        svc = NotificationService(executor=ThreadPoolExecutor(1))
        svc.register_handler(NotificationChannel.WEBHOOK, lambda n: release.wait(5))
        svc.subscribe(NotificationEvent.REFUND_PROCESSED, [NotificationChannel.WEBHOOK])

        started = time.monotonic()
        results = svc.notify(NotificationEvent.REFUND_PROCESSED, "Credited", "msg")
        assert time.monotonic() - started < 1
        assert results[0].delivered is False
        assert svc.get_history() == results

        release.set()
        svc.close()
        assert results[0].delivered is True

    def test_background_failure_recorded(self):
        svc = NotificationService(executor=ThreadPoolExecutor(1))

        def bad_handler(n):
            raise RuntimeError("webhook down")

        svc.register_handler(NotificationChannel.WEBHOOK, bad_handler)
        svc.subscribe(NotificationEvent.RETURN_CANCELLED, [NotificationChannel.WEBHOOK])
        results = svc.notify(NotificationEvent.RETURN_CANCELLED, "Cancelled", "msg")
        svc.close()
        assert results[0].error == "webhook down"
        assert svc.stats()["failed"] == 1

    def test_log_channel_stays_inline(self):
        svc = NotificationService(executor=ThreadPoolExecutor(1))
        results = svc.notify(NotificationEvent.RETURN_REQUESTED, "A", "a")
        assert results[0].delivered is True
        svc.close()


class TestLifecycleNotifications:
    def test_requested_and_status_changes(self, wf, notifier):
        ret = wf.customer.create_return(CUSTOMER.id, make_draft())
        wf.admin.review(ADMIN, ret.id, "approve")

        requested = notifier.get_history(event=NotificationEvent.RETURN_REQUESTED)
        assert len(requested) == 1
        assert requested[0].recipients == [CUSTOMER.id]
        assert ret.request_id in requested[0].title

        changed = notifier.get_history(event=NotificationEvent.RETURN_STATUS_CHANGED)
        assert changed[-1].data["from_status"] == "requested"
        assert changed[-1].data["to_status"] == "approved"

    def test_history_per_return(self, wf, store, notifier):
        store.add_order(make_order("order-2"))
        first = wf.customer.create_return(CUSTOMER.id, make_draft())
        wf.customer.create_return(CUSTOMER.id, make_draft("order-2"))
        history = notifier.get_history(return_id=first.id)
        assert [n.event for n in history] == [NotificationEvent.RETURN_REQUESTED]
        assert history[0].request_id == first.request_id
        assert history[0].data["reason"] == "defective"

    def test_cancel(self, wf, notifier):
        ret = wf.customer.create_return(CUSTOMER.id, make_draft())
        wf.customer.cancel_return(CUSTOMER.id, ret.id, "Found a replacement")
        cancelled = notifier.get_history(event=NotificationEvent.RETURN_CANCELLED)
        assert cancelled[0].message == "Found a replacement"

    def test_nothing_sent_when_operation_fails(self, wf, notifier):
        with pytest.raises(ValidationError):
            wf.customer.create_return(CUSTOMER.id, make_draft(items=[]))
        assert notifier.get_history() == []
