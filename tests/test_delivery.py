"""Tests for carrier webhooks and order completion."""

import json
from decimal import Decimal

import pytest

from api import sign_body
from db import read_conn, unit_of_work, rexec
from exceptions import DuplicateEventError, IntegrityViolation, NotFoundError, SignatureError, ValidationError
from models import ActorRole, DeliveryType, OrderStatus
from services import delivery, order_state, vendor_stats


def event(tracking_id, status):
    return json.dumps({"deliveryTrackingId": tracking_id, "status": status}).encode()


def timeline(order_id):
    return [e.new_status.value for e in order_state.get_timeline(order_id)]


def leg_of(order_id, delivery_type):
    return next(leg for leg in delivery.get_legs(order_id) if leg.delivery_type == delivery_type)


@pytest.fixture
def paid_cloth_order(mp):
    order, assignments, quote = mp.quoted_order(vendors=3, cloth_provided=True)
    mp.pay(order, quote, assignments[0].vendor_id)
    return order, assignments


class TestWebhookInput:
    def test_missing_fields(self):
        with pytest.raises(ValidationError):
            delivery.handle_delivery_webhook(json.dumps({"status": "PICKUP_COMPLETE"}).encode())

    def test_invalid_status(self, paid_cloth_order):
        order, _ = paid_cloth_order
        leg = leg_of(order.id, DeliveryType.TO_VENDOR)
        with pytest.raises(ValidationError):
            delivery.handle_delivery_webhook(event(leg.id, "LOST_IN_SPACE"))

    def test_unknown_tracking_id(self):
        with pytest.raises(NotFoundError):
            delivery.handle_delivery_webhook(event("nope", "PICKUP_ASSIGNED"))

    def test_signature_checked_when_secret_set(self, paid_cloth_order):
        order, _ = paid_cloth_order
        body = event(leg_of(order.id, DeliveryType.TO_VENDOR).id, "PICKUP_ASSIGNED")

        with pytest.raises(SignatureError):
            delivery.handle_delivery_webhook(body, "bad", secret="carrier-secret")
        result = delivery.handle_delivery_webhook(body, sign_body("carrier-secret", body), secret="carrier-secret")
        assert result["subStatus"] == "PICKUP_ASSIGNED"


class TestLegEvents:
    def test_intermediate_event_only_stamps_leg(self, paid_cloth_order):
        order, _ = paid_cloth_order
        leg = leg_of(order.id, DeliveryType.TO_VENDOR)

        result = delivery.handle_delivery_webhook(event(leg.id, "PICKUP_ASSIGNED"))

        assert result["orderStatus"] is None
        updated = leg_of(order.id, DeliveryType.TO_VENDOR)
        assert updated.status.value == "ASSIGNED"
        assert updated.timestamps.pickup_assigned_at is not None
        assert timeline(order.id)[-1] == "ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED"

    def test_duplicate_event(self, paid_cloth_order):
        order, _ = paid_cloth_order
        leg = leg_of(order.id, DeliveryType.TO_VENDOR)
        delivery.handle_delivery_webhook(event(leg.id, "PICKUP_COMPLETE"))
        before = timeline(order.id)

        with pytest.raises(DuplicateEventError):
            delivery.handle_delivery_webhook(event(leg.id, "PICKUP_COMPLETE"))
        assert timeline(order.id) == before

    def test_pickup_complete_to_vendor(self, paid_cloth_order, notifier):
        order, _ = paid_cloth_order
        leg = leg_of(order.id, DeliveryType.TO_VENDOR)

        result = delivery.handle_delivery_webhook(event(leg.id, "PICKUP_COMPLETE"), notifier=notifier)

        assert result["orderStatus"] == "ITEM_DELIVERED_TO_VENDOR"
        assert timeline(order.id)[-1] == "ITEM_DELIVERED_TO_VENDOR"
        assert order_state.get_order(order.id).order_status == OrderStatus.IN_PROGRESS
        assert notifier.sent[-1]["kind"] == "ORDER_STATUS_UPDATE"

    def test_delivery_complete_on_vendor_leg_does_not_advance(self, paid_cloth_order):
        order, _ = paid_cloth_order
        leg = leg_of(order.id, DeliveryType.TO_VENDOR)
        delivery.handle_delivery_webhook(event(leg.id, "PICKUP_COMPLETE"))

        result = delivery.handle_delivery_webhook(event(leg.id, "DELIVERY_COMPLETE"))

        assert result["orderStatus"] is None
        assert leg_of(order.id, DeliveryType.TO_VENDOR).status.value == "DELIVERED"
        assert timeline(order.id)[-1] == "ITEM_DELIVERED_TO_VENDOR"

    def test_late_event_does_not_move_leg_backwards(self, paid_cloth_order):
        order, _ = paid_cloth_order
        leg = leg_of(order.id, DeliveryType.TO_VENDOR)
        delivery.handle_delivery_webhook(event(leg.id, "PICKUP_COMPLETE"))
        delivery.handle_delivery_webhook(event(leg.id, "DELIVERY_COMPLETE"))

        result = delivery.handle_delivery_webhook(event(leg.id, "PICKUP_ASSIGNED"))

        assert result["orderStatus"] is None
        updated = leg_of(order.id, DeliveryType.TO_VENDOR)
        assert updated.status.value == "DELIVERED"
        assert updated.timestamps.pickup_assigned_at is not None
        assert timeline(order.id)[-1] == "ITEM_DELIVERED_TO_VENDOR"


class TestCompletion:
    def walk_to_return_leg(self, order, vendor_id):
        delivery.handle_delivery_webhook(event(leg_of(order.id, DeliveryType.TO_VENDOR).id, "PICKUP_COMPLETE"))
        order_state.request_transition(order.id, OrderStatus.WORK_STARTED, vendor_id, ActorRole.VENDOR)
        order_state.request_transition(order.id, OrderStatus.ITEM_READY_FOR_PICKUP, vendor_id, ActorRole.VENDOR)
        return leg_of(order.id, DeliveryType.TO_CUSTOMER)

    def test_full_round_trip(self, mp, paid_cloth_order, notifier):
        order, assignments = paid_cloth_order
        vendor_id = assignments[0].vendor_id
        back = self.walk_to_return_leg(order, vendor_id)

        delivery.handle_delivery_webhook(event(back.id, "PICKUP_COMPLETE"))
        result = delivery.handle_delivery_webhook(event(back.id, "DELIVERY_COMPLETE"), notifier=notifier)

        assert result["orderCompleted"] is True
        done = order_state.get_order(order.id)
        assert done.order_status == OrderStatus.COMPLETED
        assert done.timestamps.completed_at is not None
        assert timeline(order.id) == [
            "PENDING",
            "IN_PROGRESS",
            "ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED",
            "ITEM_DELIVERED_TO_VENDOR",
            "WORK_STARTED",
            "ITEM_READY_FOR_PICKUP",
            "ITEM_PICKED_UP_FROM_VENDOR",
            "ITEM_DELIVERED_TO_CUSTOMER",
            "COMPLETED",
        ]

        statuses = {r["id"]: r["status"] for r in mp.rows("SELECT id, status FROM order_vendors")}
        assert statuses[assignments[0].id] == "COMPLETED"
        assert statuses[assignments[1].id] == "FROZEN"
        assert statuses[assignments[2].id] == "FROZEN"

        with read_conn() as conn:
            stats = vendor_stats.get_stats(conn, vendor_id)
        assert stats["total_in_progress_orders"] == 0
        assert stats["total_completed_orders"] == 1
        assert stats["total_earnings"] == Decimal("850.00")

        payout = mp.row("SELECT * FROM payouts WHERE order_id = ?", (order.id,))
        assert payout["vendor_id"] == vendor_id
        assert payout["fund_account_id"] == "fa_123"
        assert Decimal(payout["expected_amount"]) == Decimal("850.00")
        assert payout["status"] == "action_required"
        assert "ORDER_COMPLETED" in notifier.kinds()

    def test_missing_fund_account_rolls_back(self, mp, paid_cloth_order):
        order, assignments = paid_cloth_order
        vendor_id = assignments[0].vendor_id
        back = self.walk_to_return_leg(order, vendor_id)
        delivery.handle_delivery_webhook(event(back.id, "PICKUP_COMPLETE"))
        with unit_of_work() as conn:
            rexec(conn, "UPDATE vendors SET fund_account_id = NULL WHERE id = ?", (vendor_id,))

        with pytest.raises(IntegrityViolation):
            delivery.handle_delivery_webhook(event(back.id, "DELIVERY_COMPLETE"))

        assert timeline(order.id)[-1] == "ITEM_PICKED_UP_FROM_VENDOR"
        assert leg_of(order.id, DeliveryType.TO_CUSTOMER).timestamps.delivery_completed_at is None
        assert mp.count("payouts") == 0
