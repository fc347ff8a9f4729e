"""Tests for the background workers: job retries, pollers and notifications."""

import json

from api import PushClient
from db import unit_of_work
from models import ActorRole, OutboxEventType
from scheduler import run_job, WorkerRuntime
from services import outbox
from services.notifications import NotificationService


class TestRunJob:
    def test_retries_then_succeeds(self, mp):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("database is locked")
            return "done"

        assert run_job("outbox", flaky, attempts=3, backoff_seconds=0) == "done"
        assert len(calls) == 3
        assert mp.count("queue_logs") == 0

    def test_exhausted_attempts_are_logged(self, mp):
        def broken():
            raise RuntimeError("carrier unreachable")

        assert run_job("outbox", broken, attempts=2, backoff_seconds=0) is None
        row = mp.row("SELECT * FROM queue_logs")
        assert row["queue_name"] == "outbox"
        assert "carrier unreachable" in row["reason"]


class TestWorkerRuntime:
    def test_outbox_tick_alerts_new_failures_once(self, carrier, notifier, gateway, ops_alerts):
        runtime = WorkerRuntime(gateway=gateway, carrier=carrier, notifier=notifier)
        with unit_of_work() as conn:
            outbox.enqueue(conn, OutboxEventType.INITIATE_PICKUP, {"deliveryTrackingId": "dt-1", "orderId": None})
        carrier.fail = True

        assert runtime.outbox_tick() == {"SENT": 0, "FAILED": 1}
        assert len(ops_alerts) == 1
        assert "1 outbox event(s) FAILED" in ops_alerts[0]["title"]

        runtime.outbox_tick()
        assert len(ops_alerts) == 1

    def test_expiry_tick(self, mp, carrier, notifier, gateway):
        runtime = WorkerRuntime(gateway=gateway, carrier=carrier, notifier=notifier)
        assert runtime.expiry_tick() == {"expiredPending": 0, "frozenAccepted": 0}

    def test_start_and_shutdown(self, carrier, notifier, gateway):
        runtime = WorkerRuntime(gateway=gateway, carrier=carrier, notifier=notifier,
                                outbox_interval=0.01, expiry_interval=0.01)
        runtime.start()
        assert notifier.started
        runtime.shutdown(timeout=5)
        assert notifier.stopped
        assert runtime._threads == []


class TestNotificationService:
    def service(self, sent):
        def fake_send(to_addrs, subject, html):
            sent.append({"to": to_addrs, "subject": subject, "html": html})
            return True

        return NotificationService(push_client=PushClient(base_url=""), send_email=fake_send)

    def test_deliver_emails_and_records_history(self, mp):
        sent = []
        customer_id = mp.customer(email="asha@example.com")

        channels = self.service(sent).deliver({
            "recipient_id": customer_id,
            "recipient_role": ActorRole.CUSTOMER,
            "kind": "PAYMENT_SUCCESS",
            "title": "Order Confirmed!",
            "message": "Your payment was successful.",
            "data": {"orderId": "o-1"},
        })

        assert channels == ["history", "email"]
        assert sent[0]["to"] == ["asha@example.com"]
        row = mp.row("SELECT * FROM notification_history")
        assert row["kind"] == "PAYMENT_SUCCESS"
        assert row["channels"] == "history,email"
        assert json.loads(row["data"]) == {"orderId": "o-1"}
        assert row["error"] is None

    def test_unknown_recipient_still_recorded(self, mp):
        sent = []
        channels = self.service(sent).deliver({
            "recipient_id": "ghost",
            "recipient_role": ActorRole.VENDOR,
            "kind": "NEW_ORDER_REQUEST",
            "title": "New request",
            "message": "hello",
            "data": {},
        })
        assert channels == ["history"]
        assert sent == []
        assert mp.count("notification_history") == 1

    def test_worker_drains_queue_on_shutdown(self, mp):
        sent = []
        svc = self.service(sent)
        customer_id = mp.customer()
        svc.start()
        svc.notify(customer_id, ActorRole.CUSTOMER, "ORDER_STATUS_UPDATE", "Order update", "Moving along")
        svc.notify(customer_id, ActorRole.CUSTOMER, "ORDER_COMPLETED", "Done", "Delivered")
        svc.shutdown(timeout=5)

        assert mp.count("notification_history", "recipient_id = ?", (customer_id,)) == 2
        assert len(sent) == 2
