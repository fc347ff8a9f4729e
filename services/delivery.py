# services/delivery.py
"""
Carrier webhook handling. Each sub-status has one timestamp slot per leg;
the slot is written with an `IS NULL` predicate, so a redelivered event
matches nothing and is reported as a duplicate instead of being re-applied.
"""
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

import config
from db import rquery, rquery_one, rexec, ts, new_id, unit_of_work, read_conn
from api import verify_signature
from exceptions import ValidationError, SignatureError, NotFoundError, DuplicateEventError, IntegrityViolation
from models import (
    DeliveryTracking,
    DeliveryType,
    DeliveryStatus,
    DeliverySubStatus,
    OrderStatus,
    AssignmentStatus,
    ActorRole,
    PayoutStatus,
    SUB_STATUS_SLOTS,
    DELIVERY_STATUS_RANK,
    parse_enum,
)
from services import vendor_stats
from services.order_state import advance, lock_order, LOGISTICS_ACTOR, SYSTEM_ACTOR
from logger import get_logger

log = get_logger("delivery")

# (leg, sub-status) -> timeline status it drives; pairs not listed only stamp the leg.
TIMELINE_TRIGGERS = {
    (DeliveryType.TO_VENDOR, DeliverySubStatus.PICKUP_COMPLETE): OrderStatus.ITEM_DELIVERED_TO_VENDOR,
    (DeliveryType.TO_CUSTOMER, DeliverySubStatus.PICKUP_COMPLETE): OrderStatus.ITEM_PICKED_UP_FROM_VENDOR,
    (DeliveryType.TO_CUSTOMER, DeliverySubStatus.DELIVERY_COMPLETE): OrderStatus.ITEM_DELIVERED_TO_CUSTOMER,
}


def get_legs(order_id: str) -> List[DeliveryTracking]:
    with read_conn() as conn:
        rows = rquery(conn, "SELECT * FROM delivery_tracking WHERE order_id = ? ORDER BY initiated_at, rowid", (order_id,))
    return [DeliveryTracking.from_row(r) for r in rows]


def handle_delivery_webhook(
    raw_body: bytes,
    signature: Optional[str] = None,
    notifier=None,
    secret: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    secret = config.DELIVERY_WEBHOOK_SECRET if secret is None else secret
    if secret:
        if not verify_signature(secret, raw_body, signature):
            log.warning("Invalid delivery webhook signature received.")
            raise SignatureError("Signature mismatch")
    else:
        log.warning("DELIVERY_WEBHOOK_SECRET not set; accepting unsigned carrier webhook.")

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(body, dict) or not body.get("deliveryTrackingId") or not body.get("status"):
        raise ValidationError("Delivery tracking ID and status are required")

    sub_status = parse_enum(DeliverySubStatus, body["status"], "status")
    return apply_delivery_event(str(body["deliveryTrackingId"]), sub_status, notifier, now)


def apply_delivery_event(
    tracking_id: str,
    sub_status: DeliverySubStatus,
    notifier=None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    stamp = ts(now)
    completed = None

    with unit_of_work() as conn:
        leg = rquery_one(conn, "SELECT * FROM delivery_tracking WHERE id = ?", (tracking_id,))
        if not leg:
            raise NotFoundError(f"Delivery tracking {tracking_id} not found")
        leg_type = DeliveryType(leg["delivery_type"])
        order = lock_order(conn, leg["order_id"])

        slot, leg_status = SUB_STATUS_SLOTS[sub_status]
        current = DeliveryStatus(leg["status"])
        if DELIVERY_STATUS_RANK[leg_status] < DELIVERY_STATUS_RANK[current]:
            log.info(f"Late {sub_status.value} for delivery {tracking_id}; leg stays {current.value}")
            leg_status = current
        n = rexec(conn, f"""
            UPDATE delivery_tracking
            SET {slot} = ?, status = ?, status_updated_at = ?
            WHERE id = ? AND {slot} IS NULL
        """, (stamp, leg_status.value, stamp, tracking_id))
        if not n:
            raise DuplicateEventError(f"{sub_status.value} already recorded for delivery {tracking_id}")

        target = TIMELINE_TRIGGERS.get((leg_type, sub_status))
        if target:
            advance(conn, order["id"], target, LOGISTICS_ACTOR, ActorRole.LOGISTICS,
                    f"{leg_type.value} {sub_status.value}", now)

        if target == OrderStatus.ITEM_DELIVERED_TO_CUSTOMER:
            completed = _complete_order(conn, order, now)

    log.info(f"Delivery {tracking_id} ({leg_type.value}) -> {sub_status.value}"
             + (f"; order {order['id']} -> {target.value}" if target else ""))

    if notifier and target:
        notifier.notify(
            order["customer_id"], ActorRole.CUSTOMER, "ORDER_STATUS_UPDATE",
            "Order update",
            f"Your order #{order['id'][:8]} is now {target.value.replace('_', ' ').lower()}.",
            {"orderId": order["id"], "status": target.value},
        )
    if notifier and completed:
        notifier.notify(
            completed["vendorId"], ActorRole.VENDOR, "ORDER_COMPLETED",
            "Order completed",
            f"Order #{order['id'][:8]} was delivered. A payout of {completed['payout']} is being processed.",
            {"orderId": order["id"], "payoutId": completed["payoutId"]},
        )

    return {
        "deliveryTrackingId": tracking_id,
        "deliveryType": leg_type.value,
        "subStatus": sub_status.value,
        "orderStatus": target.value if target else None,
        "orderCompleted": bool(completed),
    }


def _complete_order(conn, order: Dict[str, Any], now: Optional[datetime]) -> Dict[str, Any]:
    """Terminal bookkeeping for a delivered order, on the webhook's transaction."""
    order_id = order["id"]
    vendor_id = order["selected_vendor_id"]
    stamp = ts(now)

    advance(conn, order_id, OrderStatus.COMPLETED, SYSTEM_ACTOR, ActorRole.SYSTEM, "Delivered to customer", now)

    if not rexec(conn, """
        UPDATE order_vendors SET status = ?, status_updated_at = ?
        WHERE order_id = ? AND vendor_id = ? AND status = ?
    """, (AssignmentStatus.COMPLETED.value, stamp, order_id, vendor_id, AssignmentStatus.FINALIZED.value)):
        raise IntegrityViolation(f"Order {order_id}: no FINALIZED assignment for vendor {vendor_id}")

    quote = rquery_one(conn, "SELECT vendor_payout FROM order_quotes WHERE id = ?", (order["final_quote_id"],))
    if not quote:
        raise IntegrityViolation(f"Order {order_id}: final quote {order['final_quote_id']} missing")
    payout = Decimal(quote["vendor_payout"])

    vendor = rquery_one(conn, "SELECT fund_account_id FROM vendors WHERE id = ?", (vendor_id,))
    if not vendor or not vendor["fund_account_id"]:
        raise IntegrityViolation(f"Vendor {vendor_id} has no fund account; cannot create payout for order {order_id}")

    vendor_stats.adjust(conn, vendor_id, in_progress=-1, completed=1, earnings=payout)

    payout_id = new_id()
    rexec(conn, """
        INSERT INTO payouts (id, order_id, vendor_id, fund_account_id, expected_amount, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (payout_id, order_id, vendor_id, vendor["fund_account_id"], str(payout),
          PayoutStatus.ACTION_REQUIRED.value, stamp))

    log.info(f"Order {order_id} COMPLETED; payout {payout_id} of {payout} queued for vendor {vendor_id}")
    return {"vendorId": vendor_id, "payout": payout, "payoutId": payout_id}
