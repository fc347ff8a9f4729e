# services/quotes.py
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

from config import VENDOR_RESPONSE_WINDOW_HOURS, utc_now
from db import rquery_one, rexec, ts, parse_ts, new_id, unit_of_work, read_conn
from exceptions import ValidationError, NotFoundError, NotAuthorizedError, PreconditionError, WindowExpiredError
from models import Assignment, AssignmentStatus, OrderStatus, QuoteAction, ActorRole, Quote, parse_enum
from services.pricing import quote_breakdown
from logger import get_logger

log = get_logger("quotes")


def get_quote_for_assignment(conn, assignment_id: str) -> Optional[Quote]:
    row = rquery_one(conn, "SELECT * FROM order_quotes WHERE order_vendor_id = ?", (assignment_id,))
    return Quote.from_row(row) if row else None


def get_quote(quote_id: str) -> Quote:
    with read_conn() as conn:
        row = rquery_one(conn, "SELECT * FROM order_quotes WHERE id = ?", (quote_id,))
    if not row:
        raise NotFoundError(f"Quote {quote_id} not found")
    return Quote.from_row(row)


def _parse_accept_fields(quoted_price, quoted_days):
    errors: Dict[str, str] = {}
    price = days = None
    try:
        price = Decimal(str(quoted_price)) if quoted_price is not None else None
    except InvalidOperation:
        price = None
    if price is None or not price.is_finite() or price <= 0:
        errors["quotedPrice"] = "required, must be a positive number"

    try:
        days = int(quoted_days) if quoted_days is not None else None
    except (TypeError, ValueError):
        days = None
    if days is None or days <= 0 or str(quoted_days).strip() != str(days):
        errors["quotedDays"] = "required, must be a positive whole number"

    if errors:
        raise ValidationError("quotedPrice and quotedDays are required to accept", data=errors)
    return price, days


def respond(
    assignment_id: str,
    vendor_id: str,
    action,
    quoted_price=None,
    quoted_days=None,
    notes: Optional[str] = None,
    notifier=None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Vendor accepts (with a quote) or rejects a PENDING assignment.
    Returns {"assignment": Assignment, "quote": Quote | None}.
    """
    action = parse_enum(QuoteAction, action, "action")
    if action == QuoteAction.ACCEPT:
        price, days = _parse_accept_fields(quoted_price, quoted_days)

    now = now or utc_now()
    stamp = ts(now)
    quote = None

    with unit_of_work() as conn:
        row = rquery_one(conn, "SELECT * FROM order_vendors WHERE id = ?", (assignment_id,))
        if not row:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        if row["vendor_id"] != vendor_id:
            raise NotAuthorizedError("This assignment belongs to another vendor")

        order = rquery_one(conn, "SELECT id, customer_id, order_status, cloth_provided FROM orders WHERE id = ?",
                           (row["order_id"],))
        if order["order_status"] != OrderStatus.PENDING.value:
            raise PreconditionError(f"Order {order['id']} is {order['order_status']}; responses are closed")
        if row["status"] != AssignmentStatus.PENDING.value:
            raise PreconditionError(f"Assignment {assignment_id} already {row['status']}")
        if now - parse_ts(row["created_at"]) > timedelta(hours=VENDOR_RESPONSE_WINDOW_HOURS):
            raise WindowExpiredError(
                f"Response window of {VENDOR_RESPONSE_WINDOW_HOURS}h has passed for assignment {assignment_id}"
            )

        new_status = AssignmentStatus.ACCEPTED if action == QuoteAction.ACCEPT else AssignmentStatus.REJECTED
        n = rexec(conn, """
            UPDATE order_vendors SET status = ?, response_note = ?, status_updated_at = ?
            WHERE id = ? AND status = ?
        """, (new_status.value, notes, stamp, assignment_id, AssignmentStatus.PENDING.value))
        if not n:
            raise PreconditionError(f"Assignment {assignment_id} is no longer PENDING")

        if action == QuoteAction.ACCEPT:
            b = quote_breakdown(conn, price, bool(order["cloth_provided"]))
            quote_id = new_id()
            try:
                rexec(conn, """
                    INSERT INTO order_quotes
                        (id, order_vendor_id, quoted_price, quoted_days, vendor_payout,
                         price_after_platform_fee, delivery_charge, final_price,
                         platform_fee_percent, vendor_fee_percent, is_processed, notes, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """, (quote_id, assignment_id, str(b.quoted_price), days, str(b.vendor_payout),
                      str(b.price_after_platform_fee), str(b.delivery_charge), str(b.final_price),
                      str(b.platform_fee_percent), str(b.vendor_fee_percent), notes, stamp, stamp))
            except sqlite3.IntegrityError as e:
                raise PreconditionError(f"A quote already exists for assignment {assignment_id}") from e
            quote = get_quote_for_assignment(conn, assignment_id)

        assignment = Assignment.from_row(rquery_one(conn, "SELECT * FROM order_vendors WHERE id = ?", (assignment_id,)))

    if quote:
        log.info(f"Assignment {assignment_id} ACCEPTED: price={quote.breakdown.quoted_price} "
                 f"final={quote.breakdown.final_price} days={quote.quoted_days}")
    else:
        log.info(f"Assignment {assignment_id} REJECTED by vendor {vendor_id}")

    if notifier:
        if quote:
            title, msg = "New quote received", f"A vendor quoted {quote.breakdown.final_price} for {quote.quoted_days} day(s)."
        else:
            title, msg = "Vendor declined", "A vendor declined your order request."
        notifier.notify(
            order["customer_id"], ActorRole.CUSTOMER, f"QUOTE_{action.value}ED",
            title, msg,
            {"orderId": order["id"], "assignmentId": assignment_id, "quoteId": quote.id if quote else None},
        )

    return {"assignment": assignment, "quote": quote}
