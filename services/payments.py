# services/payments.py
"""
Payment webhook consumer, compensation (refund) and admin refunds.

Finalization of a captured payment is a single IMMEDIATE transaction. The
payments.gateway_payment_id unique row is the idempotency guard: it is
checked once before the transaction and again after the write lock is held,
so the loser of two concurrent deliveries of the same event no-ops.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any

import config
import emailer
from db import rquery, rquery_one, rexec, ts, parse_ts, new_id, unit_of_work, read_conn
from api import verify_signature
from exceptions import (
    MarketplaceError,
    ValidationError,
    SignatureError,
    NotAuthorizedError,
    PreconditionError,
    WindowExpiredError,
    IntegrityViolation,
    ExternalServiceError,
    PaymentFinalizationError,
)
from models import (
    PaymentEvent,
    PaymentEventType,
    OrderStatus,
    AssignmentStatus,
    ActorRole,
    Order,
    to_minor_units,
    parse_enum,
)
from services import vendor_stats
from services.delivery_legs import start_pickup_leg
from services.order_state import (
    advance,
    lock_order,
    fetch_order_row,
    current_stage,
    check_transition,
    PAYMENT_GATEWAY_ACTOR,
    SYSTEM_ACTOR,
)
from logger import get_logger

log = get_logger("payments")

CORRELATION_KEYS = ("orderId", "quoteId", "vendorId", "customerId")
COMPENSATION_NOTE = "Internal error during order processing."
HANDLED_EVENTS = {e.value for e in PaymentEventType}


# ------------------------------------------------------------
# Parsing
# ------------------------------------------------------------
def parse_payment_event(body: Dict[str, Any]) -> PaymentEvent:
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    event = parse_enum(PaymentEventType, body.get("event"), "event")
    try:
        entity = body["payload"]["payment"]["entity"]
    except (KeyError, TypeError):
        raise ValidationError("Webhook body is missing payload.payment.entity")

    payment_id = entity.get("id")
    if not payment_id:
        raise ValidationError("Payment entity has no id")
    try:
        amount_minor = int(entity.get("amount"))
    except (TypeError, ValueError):
        raise ValidationError(f"Payment {payment_id}: amount must be an integer in minor units")

    created_at = entity.get("created_at")
    if created_at is not None:
        try:
            created_at = int(created_at)
            datetime.fromtimestamp(created_at, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            raise ValidationError(f"Payment {payment_id}: created_at must be a unix timestamp",
                                  data={"created_at": entity.get("created_at")})

    notes = entity.get("notes") or {}
    if not isinstance(notes, dict):
        notes = {}

    return PaymentEvent(
        event=event,
        payment_id=str(payment_id),
        amount_minor=amount_minor,
        currency=str(entity.get("currency") or ""),
        method=str(entity.get("method") or ""),
        status=str(entity.get("status") or ""),
        created_at=created_at,
        error_description=entity.get("error_description"),
        notes=notes,
    )


# ------------------------------------------------------------
# Audit rows
# ------------------------------------------------------------
def payment_exists(conn, gateway_payment_id: str) -> bool:
    return rquery_one(conn, "SELECT 1 AS x FROM payments WHERE gateway_payment_id = ?", (gateway_payment_id,)) is not None

def refund_outcome(conn, gateway_payment_id: str) -> Optional[Dict[str, Any]]:
    """
    Any refund row makes a redelivered capture terminal. A failed refund is
    left to operations; it is never attempted again from a webhook.
    """
    statuses = [r["status"] for r in rquery(conn, "SELECT status FROM refunds WHERE gateway_payment_id = ?",
                                            (gateway_payment_id,))]
    if not statuses:
        return None
    if any(s != "failed" for s in statuses):
        log.info(f"Payment {gateway_payment_id} was already refunded; ignoring redelivered webhook.")
        return {"status": "already_refunded", "paymentId": gateway_payment_id}
    log.warning(f"Payment {gateway_payment_id} has a failed refund awaiting manual action; not retrying.")
    return {"status": "refund_pending_manual", "paymentId": gateway_payment_id}

def _insert_refund(conn, gateway_payment_id: str, refund: Optional[Dict[str, Any]], *,
                   amount_minor: Optional[int], notes: str, comment: Optional[str] = None,
                   requires_manual_action: bool = False) -> str:
    refund = refund or {}
    refund_id = new_id()
    rexec(conn, """
        INSERT INTO refunds
            (id, gateway_payment_id, gateway_refund_id, amount_minor, status, speed_requested,
             speed_processed, notes, comment, requires_manual_action, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        refund_id,
        gateway_payment_id,
        refund.get("id"),
        refund.get("amount", amount_minor),
        refund.get("status", "failed"),
        refund.get("speed_requested", config.REFUND_SPEED),
        refund.get("speed_processed"),
        notes,
        comment,
        1 if requires_manual_action else 0,
        ts(),
    ))
    return refund_id

def record_failure(event: PaymentEvent) -> str:
    failure_id = new_id()
    failed_at = None
    if event.created_at:
        failed_at = ts(datetime.fromtimestamp(event.created_at, tz=timezone.utc))
    with unit_of_work() as conn:
        rexec(conn, """
            INSERT INTO payment_failures
                (id, order_id, quote_id, customer_id, gateway_payment_id, amount, reason, status, failed_at, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            failure_id,
            event.notes.get("orderId"),
            event.notes.get("quoteId"),
            event.notes.get("customerId"),
            event.payment_id,
            str(Decimal(event.amount_minor) / 100),
            event.error_description or "Unknown reason",
            event.status or "failed",
            failed_at,
            ts(),
        ))
    log.info(f"Payment {event.payment_id} failed for order {event.notes.get('orderId')}: {event.error_description}")
    return failure_id


# ------------------------------------------------------------
# Webhook entry
# ------------------------------------------------------------
def handle_payment_webhook(
    raw_body: bytes,
    signature: Optional[str],
    gateway,
    notifier=None,
    secret: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    secret = config.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    if not verify_signature(secret, raw_body, signature):
        log.warning("Invalid payment webhook signature received.")
        raise SignatureError("Signature mismatch")

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")

    # Other gateway events are acknowledged and dropped.
    if isinstance(body, dict):
        event_name = body.get("event")
        if not isinstance(event_name, str) or event_name not in HANDLED_EVENTS:
            log.info(f"Ignoring unhandled payment webhook event {event_name!r}")
            return {"status": "ignored", "event": event_name}

    event = parse_payment_event(body)

    if event.event == PaymentEventType.FAILED:
        record_failure(event)
        return {"status": "failure_recorded", "paymentId": event.payment_id}

    return finalize_captured(event, gateway, notifier, now)


def finalize_captured(event: PaymentEvent, gateway, notifier=None, now: Optional[datetime] = None) -> Dict[str, Any]:
    with read_conn() as conn:
        if payment_exists(conn, event.payment_id):
            log.info(f"Payment {event.payment_id} already processed; ignoring duplicate webhook.")
            return {"status": "already_processed", "paymentId": event.payment_id}
        refunded = refund_outcome(conn, event.payment_id)
        if refunded:
            return refunded

    try:
        with unit_of_work() as conn:
            if payment_exists(conn, event.payment_id):
                log.info(f"Payment {event.payment_id} finalized by a concurrent delivery; no-op.")
                return {"status": "already_processed", "paymentId": event.payment_id}
            refunded = refund_outcome(conn, event.payment_id)
            if refunded:
                return refunded
            summary = _apply_capture(conn, event, now)
    except Exception as e:
        reason = e.message if isinstance(e, MarketplaceError) else f"{type(e).__name__}: {e}"
        log.error(f"Webhook processing failed for payment {event.payment_id}. Initiating refund. Reason: {reason}")
        refunded = compensate(event, reason, gateway)
        raise PaymentFinalizationError(
            f"Payment {event.payment_id} could not be applied: {reason}",
            payment_id=event.payment_id,
            refunded=refunded,
            cause=reason,
        ) from e

    log.info(f"Order {summary['orderId']} finalized with payment {event.payment_id} "
             f"(vendor {summary['vendorId']}, pickup={summary['pickupScheduled']})")

    if notifier:
        short = summary["orderId"][:8]
        notifier.notify(
            summary["customerId"], ActorRole.CUSTOMER, "PAYMENT_SUCCESS",
            "Order Confirmed!", f"Your payment for order #{short} was successful.",
            {"orderId": summary["orderId"], "paymentId": event.payment_id},
        )
        notifier.notify(
            summary["vendorId"], ActorRole.VENDOR, "NEW_PAID_ORDER",
            "You Have a New Order!", f"You have received a new paid order: #{short}.",
            {"orderId": summary["orderId"]},
        )

    return {"status": "processed", **summary}


def _apply_capture(conn, event: PaymentEvent, now: Optional[datetime]) -> Dict[str, Any]:
    missing = [k for k in CORRELATION_KEYS if not event.notes.get(k)]
    if missing:
        raise IntegrityViolation(f"Payment {event.payment_id} is missing correlation notes: {', '.join(missing)}")
    order_id, quote_id = event.notes["orderId"], event.notes["quoteId"]
    vendor_id, customer_id = event.notes["vendorId"], event.notes["customerId"]

    order = lock_order(conn, order_id)
    if order["order_status"] != OrderStatus.PENDING.value:
        raise IntegrityViolation(f"Order {order_id} is {order['order_status']}, expected PENDING")
    if order["customer_id"] != customer_id:
        raise IntegrityViolation(f"Order {order_id} does not belong to customer {customer_id}")

    quote = rquery_one(conn, """
        SELECT q.id, q.final_price, q.is_processed,
               ov.id AS assignment_id, ov.order_id, ov.vendor_id, ov.status AS assignment_status
        FROM order_quotes q
        JOIN order_vendors ov ON ov.id = q.order_vendor_id
        WHERE q.id = ?
    """, (quote_id,))
    if not quote or quote["order_id"] != order_id or quote["vendor_id"] != vendor_id:
        raise IntegrityViolation(f"Quote {quote_id} does not belong to order {order_id} / vendor {vendor_id}")
    if quote["is_processed"]:
        raise IntegrityViolation(f"Quote {quote_id} was already processed")
    if quote["assignment_status"] != AssignmentStatus.ACCEPTED.value:
        raise IntegrityViolation(f"Assignment {quote['assignment_id']} is {quote['assignment_status']}, expected ACCEPTED")

    expected = to_minor_units(Decimal(quote["final_price"]))
    if event.amount_minor != expected:
        raise IntegrityViolation(f"Payment amount mismatch: got {event.amount_minor}, expected {expected}")
    if event.currency and event.currency != config.CURRENCY:
        raise IntegrityViolation(f"Payment currency mismatch: got {event.currency}, expected {config.CURRENCY}")

    stamp = ts(now)
    rexec(conn, """
        INSERT INTO payments
            (id, order_id, vendor_id, customer_id, quote_id, gateway_payment_id,
             payment_amount, payment_currency, payment_method, payment_status, payment_date)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (new_id(), order_id, vendor_id, customer_id, quote_id, event.payment_id,
          quote["final_price"], event.currency or config.CURRENCY, event.method, event.status or "captured", stamp))

    if not rexec(conn, "UPDATE order_quotes SET is_processed = 1, updated_at = ? WHERE id = ? AND is_processed = 0",
                 (stamp, quote_id)):
        raise IntegrityViolation(f"Quote {quote_id} was processed concurrently")

    if not rexec(conn, """
        UPDATE orders
        SET selected_vendor_id = ?, final_quote_id = ?, payment_id = ?, is_paid = 1, updated_at = ?
        WHERE id = ? AND selected_vendor_id IS NULL AND final_quote_id IS NULL AND payment_id IS NULL
    """, (vendor_id, quote_id, event.payment_id, stamp, order_id)):
        raise IntegrityViolation(f"Order {order_id} already has a selected vendor")

    advance(conn, order_id, OrderStatus.IN_PROGRESS, PAYMENT_GATEWAY_ACTOR, ActorRole.PAYMENT_GATEWAY,
            f"Payment {event.payment_id} captured", now)
    vendor_stats.adjust(conn, vendor_id, in_progress=1)

    pickup = bool(order["cloth_provided"])
    if pickup:
        start_pickup_leg(conn, fetch_order_row(conn, order_id), now)
        advance(conn, order_id, OrderStatus.ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED, SYSTEM_ACTOR, ActorRole.SYSTEM,
                "Pickup from customer requested", now)
    else:
        advance(conn, order_id, OrderStatus.WORK_STARTED, SYSTEM_ACTOR, ActorRole.SYSTEM,
                "No pickup required", now)

    if not rexec(conn, "UPDATE order_vendors SET status = ?, status_updated_at = ? WHERE id = ? AND status = ?",
                 (AssignmentStatus.FINALIZED.value, stamp, quote["assignment_id"], AssignmentStatus.ACCEPTED.value)):
        raise IntegrityViolation(f"Assignment {quote['assignment_id']} changed during finalization")
    rexec(conn, "UPDATE order_vendors SET status = ?, status_updated_at = ? WHERE order_id = ? AND id != ?",
          (AssignmentStatus.FROZEN.value, stamp, order_id, quote["assignment_id"]))

    return {
        "orderId": order_id,
        "quoteId": quote_id,
        "vendorId": vendor_id,
        "customerId": customer_id,
        "pickupScheduled": pickup,
    }


# ------------------------------------------------------------
# Compensation
# ------------------------------------------------------------
def compensate(event: PaymentEvent, reason: str, gateway) -> bool:
    """
    Refund a captured payment whose order could not be finalized. Returns
    whether the refund went through. A failed refund is recorded with
    requires_manual_action and escalated; it is never retried automatically.
    """
    notes = {"reason": COMPENSATION_NOTE, "orderId": event.notes.get("orderId")}
    try:
        refund = gateway.refund(event.payment_id, speed=config.REFUND_SPEED, notes=notes)
    except Exception as e:
        err = e.message if isinstance(e, MarketplaceError) else str(e)
        with unit_of_work() as conn:
            _insert_refund(conn, event.payment_id, None, amount_minor=event.amount_minor,
                           notes=COMPENSATION_NOTE, comment=f"{reason} | refund error: {err}",
                           requires_manual_action=True)
        log.critical(f"CRITICAL: FAILED TO REFUND PAYMENT {event.payment_id}. MANUAL INTERVENTION REQUIRED. {err}")
        emailer.send_ops_alert(
            "Refund failed: manual action required",
            {
                "Payment": event.payment_id,
                "Order": event.notes.get("orderId"),
                "Amount (minor units)": event.amount_minor,
                "Finalization error": reason,
                "Refund error": err,
            },
            footer="The customer has been charged and the order was not finalized.",
        )
        return False

    with unit_of_work() as conn:
        _insert_refund(conn, event.payment_id, refund, amount_minor=event.amount_minor,
                       notes=COMPENSATION_NOTE, comment=reason)
    log.info(f"Successfully refunded payment {event.payment_id} (refund {refund.get('id')})")
    return True


# ------------------------------------------------------------
# Checkout: gateway order for an accepted quote
# ------------------------------------------------------------
def create_payment_order(
    order_id: str,
    assignment_id: str,
    customer_id: str,
    gateway,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or config.utc_now()
    with read_conn() as conn:
        order = fetch_order_row(conn, order_id)
        if order["customer_id"] != customer_id:
            raise NotAuthorizedError("You are not authorized to pay for this order")
        if order["order_status"] != OrderStatus.PENDING.value:
            raise PreconditionError(f"Order {order_id} is {order['order_status']}; payment is closed")

        row = rquery_one(conn, """
            SELECT ov.id AS assignment_id, ov.order_id, ov.vendor_id, ov.status,
                   q.id AS quote_id, q.final_price, q.is_processed, q.created_at AS quoted_at
            FROM order_vendors ov
            LEFT JOIN order_quotes q ON q.order_vendor_id = ov.id
            WHERE ov.id = ?
        """, (assignment_id,))
        if not row or row["order_id"] != order_id:
            raise ValidationError(f"Assignment {assignment_id} does not belong to order {order_id}")
        if row["status"] != AssignmentStatus.ACCEPTED.value or not row["quote_id"]:
            raise PreconditionError(f"Assignment {assignment_id} has no open accepted quote")
        if row["is_processed"]:
            raise PreconditionError(f"Quote {row['quote_id']} is no longer payable")
        if now - parse_ts(row["quoted_at"]) > timedelta(hours=config.QUOTE_PAYMENT_WINDOW_HOURS):
            raise WindowExpiredError(f"Quote {row['quote_id']} is older than {config.QUOTE_PAYMENT_WINDOW_HOURS}h")

    amount_minor = to_minor_units(Decimal(row["final_price"]))
    receipt = f"rcpt_{order_id[:8]}_{row['quote_id'][:8]}"
    notes = {
        "orderId": order_id,
        "quoteId": row["quote_id"],
        "vendorId": row["vendor_id"],
        "customerId": customer_id,
    }

    gw_order = gateway.create_order(amount_minor, config.CURRENCY, receipt, notes)

    with unit_of_work() as conn:
        rexec(conn, """
            INSERT INTO payment_attempts
                (id, order_id, quote_id, customer_id, gateway_order_id, amount_minor, currency, receipt, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (new_id(), order_id, row["quote_id"], customer_id, gw_order.get("id"),
              amount_minor, config.CURRENCY, receipt, ts(now)))

    log.info(f"Gateway order {gw_order.get('id')} created for order {order_id} ({amount_minor} {config.CURRENCY})")
    return {
        "gatewayOrderId": gw_order.get("id"),
        "amount": amount_minor,
        "currency": config.CURRENCY,
        "receipt": receipt,
        "keyId": config.GATEWAY_KEY_ID,
        "notes": notes,
    }


# ------------------------------------------------------------
# Admin refund
# ------------------------------------------------------------
def refund_order(
    order_id: str,
    admin_id: str,
    reason: str,
    gateway,
    notifier=None,
    now: Optional[datetime] = None,
) -> Order:
    """
    Refund a paid order that has not reached WORK_STARTED. The gateway call
    runs while the write lock is held so no delivery webhook can move the
    order underneath it. If the order update fails after the gateway has
    refunded, the refund is still recorded and flagged for manual action.
    """
    if not reason:
        raise ValidationError("A refund reason is required")
    stamp = ts(now)
    gateway_payment_id = None
    amount_minor = None
    refund = None

    try:
        with unit_of_work() as conn:
            row = lock_order(conn, order_id)
            if not row["is_paid"] or row["is_refunded"]:
                raise PreconditionError(f"Order {order_id} is not a paid, unrefunded order")
            check_transition(current_stage(conn, order_id), OrderStatus.REFUNDED, ActorRole.ADMIN)

            gateway_payment_id = row["payment_id"]
            payment = rquery_one(conn, "SELECT * FROM payments WHERE gateway_payment_id = ?", (gateway_payment_id,))
            amount_minor = to_minor_units(Decimal(payment["payment_amount"]))

            refund = gateway.refund(gateway_payment_id, speed=config.REFUND_SPEED,
                                    notes={"reason": reason, "orderId": order_id})

            _insert_refund(conn, gateway_payment_id, refund, amount_minor=amount_minor,
                           notes=reason, comment=f"Admin refund by {admin_id}")
            advance(conn, order_id, OrderStatus.REFUNDED, admin_id, ActorRole.ADMIN, reason, now)
            rexec(conn, "UPDATE orders SET is_refunded = 1, updated_at = ? WHERE id = ? AND is_refunded = 0",
                  (stamp, order_id))
            rexec(conn, "UPDATE order_vendors SET status = ?, status_updated_at = ? WHERE order_id = ? AND status = ?",
                  (AssignmentStatus.REFUNDED.value, stamp, order_id, AssignmentStatus.FINALIZED.value))
            vendor_stats.adjust(conn, row["selected_vendor_id"], in_progress=-1)

            order = Order.from_row(fetch_order_row(conn, order_id))
    except Exception as e:
        if refund is not None:
            _record_unapplied_refund(order_id, admin_id, reason, gateway_payment_id, refund, amount_minor, e)
        elif isinstance(e, ExternalServiceError):
            with unit_of_work() as conn:
                _insert_refund(conn, gateway_payment_id, None, amount_minor=None, notes=reason,
                               comment=f"Admin refund by {admin_id} failed: {e.message}")
            log.error(f"Refund for order {order_id} (payment {gateway_payment_id}) failed: {e.message}")
        raise

    log.info(f"Order {order_id} refunded by admin {admin_id} (payment {gateway_payment_id})")

    if notifier:
        notifier.notify(
            order.customer_id, ActorRole.CUSTOMER, "ORDER_REFUNDED",
            "Order refunded", f"Your payment for order #{order_id[:8]} has been refunded.",
            {"orderId": order_id},
        )
        notifier.notify(
            order.selected_vendor_id, ActorRole.VENDOR, "ORDER_REFUNDED",
            "Order refunded", f"Order #{order_id[:8]} was refunded to the customer.",
            {"orderId": order_id},
        )
    return order


def _record_unapplied_refund(order_id: str, admin_id: str, reason: str, gateway_payment_id: str,
                             refund: Dict[str, Any], amount_minor: Optional[int], error: Exception):
    """The gateway refunded but the order update rolled back; keep the audit row and escalate."""
    err = error.message if isinstance(error, MarketplaceError) else f"{type(error).__name__}: {error}"
    with unit_of_work() as conn:
        _insert_refund(conn, gateway_payment_id, refund, amount_minor=amount_minor, notes=reason,
                       comment=f"Admin refund by {admin_id}; order update failed: {err}",
                       requires_manual_action=True)
    log.critical(f"CRITICAL: PAYMENT {gateway_payment_id} REFUNDED (refund {refund.get('id')}) "
                 f"BUT ORDER {order_id} WAS NOT UPDATED. MANUAL INTERVENTION REQUIRED. {err}")
    emailer.send_ops_alert(
        "Refund applied but order not updated: manual action required",
        {
            "Order": order_id,
            "Payment": gateway_payment_id,
            "Refund": refund.get("id"),
            "Admin": admin_id,
            "Error": err,
        },
        footer="The customer has been refunded and the order is still marked paid.",
    )
