"""Tests for payment webhook finalization, compensation and refunds."""

import json
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from config import utc_now
from exceptions import (
    ExternalServiceError,
    NotAuthorizedError,
    PaymentFinalizationError,
    PreconditionError,
    SignatureError,
    ValidationError,
    WindowExpiredError,
)
from models import AssignmentStatus, OrderStatus
from services import order_state, payments, vendor_stats
from db import read_conn


class TestWebhookEntry:
    def test_bad_signature(self, mp):
        order, assignments, quote = mp.quoted_order()
        body = mp.payment_body(order, quote, assignments[0].vendor_id)

        with pytest.raises(SignatureError):
            payments.handle_payment_webhook(body, "deadbeef", mp.gateway)
        assert mp.count("payments") == 0

    def test_body_not_json(self, mp):
        body = b"not json"
        with pytest.raises(ValidationError):
            mp.deliver_payment(body)

    def test_unhandled_event_is_acknowledged(self, mp, gateway):
        order, assignments, quote = mp.quoted_order()
        body = mp.payment_body(order, quote, assignments[0].vendor_id, event="payment.authorized")

        result = mp.deliver_payment(body)

        assert result == {"status": "ignored", "event": "payment.authorized"}
        assert mp.count("payments") == 0
        assert mp.count("payment_failures") == 0
        assert gateway.refunds == []
        assert order_state.get_order(order.id).order_status == OrderStatus.PENDING

    def test_unhandled_event_shape_is_not_checked(self, mp):
        body = json.dumps({"event": "order.paid", "payload": {"order": {"entity": {"id": "order_1"}}}}).encode()
        assert mp.deliver_payment(body)["status"] == "ignored"

    def test_handled_event_shape_is_checked(self, mp):
        body = json.dumps({"event": "payment.captured", "payload": {}}).encode()
        with pytest.raises(ValidationError):
            mp.deliver_payment(body)

    def test_created_at_must_be_a_timestamp(self, mp):
        order, assignments, quote = mp.quoted_order()
        body = json.loads(mp.payment_body(order, quote, assignments[0].vendor_id, payment_id="pay_f",
                                          event="payment.failed", error_description="Card declined"))
        body["payload"]["payment"]["entity"]["created_at"] = "yesterday"

        with pytest.raises(ValidationError) as exc:
            mp.deliver_payment(json.dumps(body).encode())

        assert exc.value.data == {"created_at": "yesterday"}
        assert mp.count("payment_failures") == 0

    def test_failed_payment_is_recorded(self, mp):
        order, assignments, quote = mp.quoted_order()
        body = mp.payment_body(order, quote, assignments[0].vendor_id, payment_id="pay_f",
                               event="payment.failed", error_description="Card declined")

        result = mp.deliver_payment(body)

        assert result["status"] == "failure_recorded"
        failure = mp.row("SELECT * FROM payment_failures")
        assert failure["gateway_payment_id"] == "pay_f"
        assert failure["order_id"] == order.id
        assert failure["reason"] == "Card declined"
        assert Decimal(failure["amount"]) == Decimal("1150")
        assert order_state.get_order(order.id).order_status == OrderStatus.PENDING


class TestFinalize:
    def test_happy_path_without_cloth(self, mp, notifier):
        order, assignments, quote = mp.quoted_order(vendors=3)
        winner = assignments[0]

        result = mp.pay(order, quote, winner.vendor_id)

        assert result["status"] == "processed"
        assert result["pickupScheduled"] is False
        paid = order_state.get_order(order.id)
        assert paid.order_status == OrderStatus.IN_PROGRESS
        assert paid.is_paid
        assert paid.selected_vendor_id == winner.vendor_id
        assert paid.final_quote_id == quote.id
        assert paid.payment_id == "pay_1"
        assert mp.timeline(order.id) == ["PENDING", "IN_PROGRESS", "WORK_STARTED"]

        statuses = {r["id"]: r["status"] for r in mp.rows("SELECT id, status FROM order_vendors")}
        assert statuses[winner.id] == AssignmentStatus.FINALIZED.value
        assert statuses[assignments[1].id] == AssignmentStatus.FROZEN.value
        assert statuses[assignments[2].id] == AssignmentStatus.FROZEN.value

        assert mp.row("SELECT is_processed FROM order_quotes WHERE id = ?", (quote.id,))["is_processed"] == 1
        with read_conn() as conn:
            assert vendor_stats.get_stats(conn, winner.vendor_id)["total_in_progress_orders"] == 1
        assert mp.count("delivery_tracking") == 0
        assert mp.count("outbox") == 0
        assert {"PAYMENT_SUCCESS", "NEW_PAID_ORDER"} <= set(notifier.kinds())

    def test_cloth_order_schedules_pickup(self, mp):
        order, assignments, quote = mp.quoted_order(cloth_provided=True)

        result = mp.pay(order, quote, assignments[0].vendor_id)

        assert result["pickupScheduled"] is True
        assert mp.timeline(order.id) == ["PENDING", "IN_PROGRESS", "ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED"]
        leg = mp.row("SELECT * FROM delivery_tracking WHERE order_id = ?", (order.id,))
        assert leg["delivery_type"] == "TO_VENDOR"
        assert leg["status"] == "PENDING"
        assert leg["initiated_at"] is not None
        outbox = mp.row("SELECT * FROM outbox")
        assert outbox["event_type"] == "INITIATE_PICKUP"
        assert leg["id"] in outbox["payload"]

    def test_duplicate_delivery_is_a_noop(self, mp, notifier):
        order, assignments, quote = mp.quoted_order()
        mp.pay(order, quote, assignments[0].vendor_id)
        sent_before = len(notifier.sent)

        result = mp.pay(order, quote, assignments[0].vendor_id)

        assert result["status"] == "already_processed"
        assert mp.count("payments") == 1
        assert len(mp.timeline(order.id)) == 3
        assert len(notifier.sent) == sent_before
        with read_conn() as conn:
            assert vendor_stats.get_stats(conn, assignments[0].vendor_id)["total_in_progress_orders"] == 1

    def test_amount_mismatch_refunds(self, mp, gateway):
        order, assignments, quote = mp.quoted_order()

        with pytest.raises(PaymentFinalizationError) as exc:
            mp.pay(order, quote, assignments[0].vendor_id, amount=100)

        assert exc.value.refunded is True
        assert gateway.refunds == ["pay_1"]
        assert mp.count("payments") == 0
        assert order_state.get_order(order.id).order_status == OrderStatus.PENDING
        assert mp.row("SELECT is_processed FROM order_quotes")["is_processed"] == 0
        refund = mp.row("SELECT * FROM refunds")
        assert refund["gateway_payment_id"] == "pay_1"
        assert refund["status"] == "processed"
        assert refund["notes"] == payments.COMPENSATION_NOTE
        assert "amount mismatch" in refund["comment"]

    def test_redelivery_after_compensation(self, mp, gateway):
        order, assignments, quote = mp.quoted_order()
        with pytest.raises(PaymentFinalizationError):
            mp.pay(order, quote, assignments[0].vendor_id, amount=100)

        result = mp.pay(order, quote, assignments[0].vendor_id, amount=100)

        assert result["status"] == "already_refunded"
        assert gateway.refunds == ["pay_1"]

    def test_redelivery_after_failed_compensation(self, mp, gateway, ops_alerts):
        gateway.fail_refund = True
        order, assignments, quote = mp.quoted_order()
        with pytest.raises(PaymentFinalizationError):
            mp.pay(order, quote, assignments[0].vendor_id, amount=100)

        result = mp.pay(order, quote, assignments[0].vendor_id, amount=100)

        assert result == {"status": "refund_pending_manual", "paymentId": "pay_1"}
        assert gateway.refunds == ["pay_1"]
        assert mp.count("refunds") == 1
        assert len(ops_alerts) == 1

    def test_refund_failure_escalates(self, mp, gateway, ops_alerts):
        gateway.fail_refund = True
        order, assignments, quote = mp.quoted_order()

        with pytest.raises(PaymentFinalizationError) as exc:
            mp.pay(order, quote, assignments[0].vendor_id, amount=100)

        assert exc.value.refunded is False
        refund = mp.row("SELECT * FROM refunds")
        assert refund["status"] == "failed"
        assert refund["requires_manual_action"] == 1
        assert len(ops_alerts) == 1
        assert ops_alerts[0]["details"]["Payment"] == "pay_1"

    def test_wrong_vendor_in_notes(self, mp, gateway):
        order, assignments, quote = mp.quoted_order(vendors=2)

        with pytest.raises(PaymentFinalizationError):
            mp.pay(order, quote, assignments[1].vendor_id)
        assert gateway.refunds == ["pay_1"]
        assert mp.row("SELECT status FROM order_vendors WHERE id = ?", (assignments[0].id,))["status"] == "ACCEPTED"

    def test_second_payment_for_paid_order_is_refunded(self, mp, gateway):
        order, assignments, quote = mp.quoted_order()
        mp.pay(order, quote, assignments[0].vendor_id, payment_id="pay_1")

        with pytest.raises(PaymentFinalizationError):
            mp.pay(order, quote, assignments[0].vendor_id, payment_id="pay_2")

        assert gateway.refunds == ["pay_2"]
        assert mp.count("payments") == 1
        assert order_state.get_order(order.id).payment_id == "pay_1"


class TestConcurrentCapture:
    def test_same_payment_delivered_twice_at_once(self, mp, gateway):
        order, assignments, quote = mp.quoted_order(vendors=2)
        vendor_id = assignments[0].vendor_id
        body = mp.payment_body(order, quote, vendor_id)
        barrier = threading.Barrier(2)
        results, errors = [], []

        def deliver():
            barrier.wait()
            try:
                results.append(mp.deliver_payment(body))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert sorted(r["status"] for r in results) == ["already_processed", "processed"]
        assert mp.count("payments") == 1
        assert mp.timeline(order.id).count("IN_PROGRESS") == 1
        with read_conn() as conn:
            assert vendor_stats.get_stats(conn, vendor_id)["total_in_progress_orders"] == 1
        assert gateway.refunds == []
        assert mp.count("refunds") == 0


class TestCreatePaymentOrder:
    def test_creates_gateway_order_for_accepted_quote(self, mp, gateway):
        order, assignments, quote = mp.quoted_order()

        result = payments.create_payment_order(order.id, assignments[0].id, order.customer_id, gateway)

        assert result["amount"] == 115000
        assert result["currency"] == "INR"
        assert result["notes"] == {
            "orderId": order.id,
            "quoteId": quote.id,
            "vendorId": assignments[0].vendor_id,
            "customerId": order.customer_id,
        }
        assert gateway.orders[0]["amount"] == 115000
        attempt = mp.row("SELECT * FROM payment_attempts")
        assert attempt["gateway_order_id"] == result["gatewayOrderId"]

    def test_only_owner(self, mp, gateway):
        order, assignments, _ = mp.quoted_order()
        with pytest.raises(NotAuthorizedError):
            payments.create_payment_order(order.id, assignments[0].id, "someone-else", gateway)

    def test_pending_assignment_has_no_quote(self, mp, gateway):
        order, assignments, _ = mp.quoted_order(vendors=2)
        with pytest.raises(PreconditionError):
            payments.create_payment_order(order.id, assignments[1].id, order.customer_id, gateway)
        assert gateway.orders == []

    def test_quote_older_than_window(self, mp, gateway):
        order, assignments, _ = mp.quoted_order()
        with pytest.raises(WindowExpiredError):
            payments.create_payment_order(order.id, assignments[0].id, order.customer_id, gateway,
                                          now=utc_now() + timedelta(hours=25))


class TestRefundOrder:
    def test_refund_before_work_started(self, mp, gateway, notifier):
        order, assignments, quote = mp.quoted_order(cloth_provided=True)
        vendor_id = assignments[0].vendor_id
        mp.pay(order, quote, vendor_id)

        refunded = payments.refund_order(order.id, "admin-1", "Customer request", gateway, notifier)

        assert refunded.order_status == OrderStatus.REFUNDED
        assert refunded.is_refunded
        assert refunded.timestamps.refunded_at is not None
        assert gateway.refunds == ["pay_1"]
        assert mp.row("SELECT status FROM order_vendors WHERE id = ?", (assignments[0].id,))["status"] == "REFUNDED"
        with read_conn() as conn:
            assert vendor_stats.get_stats(conn, vendor_id)["total_in_progress_orders"] == 0
        assert notifier.kinds().count("ORDER_REFUNDED") == 2

    def test_refund_after_work_started(self, mp, gateway):
        order, assignments, quote = mp.quoted_order()
        mp.pay(order, quote, assignments[0].vendor_id)

        with pytest.raises(PreconditionError):
            payments.refund_order(order.id, "admin-1", "Too late", gateway)
        assert gateway.refunds == []

    def test_unpaid_order(self, mp, gateway):
        order = mp.order()
        with pytest.raises(PreconditionError):
            payments.refund_order(order.id, "admin-1", "No payment", gateway)

    def test_reason_required(self, mp, gateway):
        order = mp.order()
        with pytest.raises(ValidationError):
            payments.refund_order(order.id, "admin-1", "", gateway)

    def test_gateway_failure_leaves_order_paid(self, mp, gateway):
        order, assignments, quote = mp.quoted_order(cloth_provided=True)
        mp.pay(order, quote, assignments[0].vendor_id)
        gateway.fail_refund = True

        with pytest.raises(ExternalServiceError):
            payments.refund_order(order.id, "admin-1", "Customer request", gateway)

        current = order_state.get_order(order.id)
        assert current.order_status == OrderStatus.IN_PROGRESS
        assert not current.is_refunded
        refund = mp.row("SELECT * FROM refunds")
        assert refund["status"] == "failed"

    def test_refund_kept_when_order_update_fails(self, mp, gateway, ops_alerts, monkeypatch):
        order, assignments, quote = mp.quoted_order(cloth_provided=True)
        mp.pay(order, quote, assignments[0].vendor_id)

        def broken_advance(*args, **kwargs):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(payments, "advance", broken_advance)

        with pytest.raises(RuntimeError):
            payments.refund_order(order.id, "admin-1", "Customer request", gateway)

        assert gateway.refunds == ["pay_1"]
        refund = mp.row("SELECT * FROM refunds")
        assert refund["gateway_refund_id"] == "rfnd_1"
        assert refund["status"] == "processed"
        assert refund["requires_manual_action"] == 1
        assert "disk I/O error" in refund["comment"]
        assert not order_state.get_order(order.id).is_refunded
        assert len(ops_alerts) == 1
        assert ops_alerts[0]["details"]["Refund"] == "rfnd_1"
