# services/expiry.py
from datetime import datetime, timedelta
from typing import Optional

from config import VENDOR_RESPONSE_WINDOW_HOURS, QUOTE_PAYMENT_WINDOW_HOURS, utc_now
from db import rexec, ts, unit_of_work
from models import AssignmentStatus
from logger import get_logger

log = get_logger("expiry")


def expire_pending_vendors(now: Optional[datetime] = None) -> int:
    """PENDING assignments past the response window -> EXPIRED. Frees their slots."""
    now = now or utc_now()
    cutoff = ts(now - timedelta(hours=VENDOR_RESPONSE_WINDOW_HOURS))
    with unit_of_work() as conn:
        n = rexec(conn, """
            UPDATE order_vendors SET status = ?, status_updated_at = ?
            WHERE status = ? AND created_at < ?
        """, (AssignmentStatus.EXPIRED.value, ts(now), AssignmentStatus.PENDING.value, cutoff))
    log.info(f"Expired {n} pending vendor assignment(s) (created before {cutoff})")
    return n


def expire_accepted_quotes(now: Optional[datetime] = None) -> int:
    """
    Unpaid quotes past the payment window: assignment ACCEPTED -> FROZEN and
    quote marked processed. FROZEN is final; the vendor is not re-offered.
    """
    now = now or utc_now()
    cutoff = ts(now - timedelta(hours=QUOTE_PAYMENT_WINDOW_HOURS))
    stamp = ts(now)

    # Quotes first: an ACCEPTED assignment whose quote is processed can only come from this sweep.
    with unit_of_work() as conn:
        rexec(conn, """
            UPDATE order_quotes SET is_processed = 1, updated_at = ?
            WHERE is_processed = 0 AND created_at < ?
              AND order_vendor_id IN (SELECT id FROM order_vendors WHERE status = ?)
        """, (stamp, cutoff, AssignmentStatus.ACCEPTED.value))
        frozen = rexec(conn, """
            UPDATE order_vendors SET status = ?, status_updated_at = ?
            WHERE status = ?
              AND id IN (SELECT order_vendor_id FROM order_quotes WHERE is_processed = 1 AND created_at < ?)
        """, (AssignmentStatus.FROZEN.value, stamp, AssignmentStatus.ACCEPTED.value, cutoff))

    log.info(f"Frozen {frozen} accepted quote(s) (quoted before {cutoff})")
    return frozen
