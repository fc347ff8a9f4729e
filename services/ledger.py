# services/ledger.py
"""
Vendor solicitation. One order_vendors row per (order, vendor); at most
MAX_ACTIVE_VENDOR_SLOTS of them PENDING or ACCEPTED at a time.
"""
from datetime import date, datetime
from typing import Optional, List

from config import MAX_ACTIVE_VENDOR_SLOTS, utc_now
from db import rquery, rquery_one, rexec, ts, new_id, unit_of_work, read_conn, placeholders
from exceptions import ValidationError, NotFoundError, NotAuthorizedError, PreconditionError, CapacityError
from models import Assignment, AssignmentStatus, OrderStatus, VendorStatus, ActorRole, ACTIVE_SLOT_STATUSES
from services.order_state import fetch_order_row, lock_order
from logger import get_logger

log = get_logger("ledger")


def active_slot_count(conn, order_id: str) -> int:
    row = rquery_one(conn, f"""
        SELECT COUNT(*) AS n FROM order_vendors
        WHERE order_id = ? AND status IN ({placeholders(ACTIVE_SLOT_STATUSES)})
    """, (order_id, *[s.value for s in ACTIVE_SLOT_STATUSES]))
    return int(row["n"])


def list_assignments(order_id: str) -> List[Assignment]:
    with read_conn() as conn:
        fetch_order_row(conn, order_id)
        rows = rquery(conn, "SELECT * FROM order_vendors WHERE order_id = ? ORDER BY created_at, rowid", (order_id,))
    return [Assignment.from_row(r) for r in rows]


def _clean_vendor_ids(vendor_ids) -> List[str]:
    if not isinstance(vendor_ids, (list, tuple)) or not vendor_ids:
        raise ValidationError("vendorIds must be a non-empty list", data={"vendorIds": "required"})
    if len(vendor_ids) > MAX_ACTIVE_VENDOR_SLOTS:
        raise ValidationError(
            f"At most {MAX_ACTIVE_VENDOR_SLOTS} vendors can be solicited at once",
            data={"vendorIds": f"max {MAX_ACTIVE_VENDOR_SLOTS}"},
        )
    cleaned = []
    for v in vendor_ids:
        if not isinstance(v, str) or not v.strip():
            raise ValidationError("vendorIds must be non-empty strings", data={"vendorIds": repr(v)})
        if v.strip() not in cleaned:
            cleaned.append(v.strip())
    return cleaned


def _check_vendors(conn, vendor_ids: List[str]) -> None:
    rows = rquery(conn, f"SELECT id, status, is_active FROM vendors WHERE id IN ({placeholders(vendor_ids)})",
                  tuple(vendor_ids))
    found = {r["id"]: r for r in rows}

    missing = [v for v in vendor_ids if v not in found]
    if missing:
        raise NotFoundError(f"Vendor(s) not found: {', '.join(missing)}", data={"vendorIds": missing})

    unusable = [v for v in vendor_ids
                if found[v]["status"] != VendorStatus.VERIFIED.value or not found[v]["is_active"]]
    if unusable:
        raise ValidationError(
            f"Vendor(s) not verified or inactive: {', '.join(unusable)}",
            data={"vendorIds": unusable},
        )


def solicit(
    order_id: str,
    vendor_ids: List[str],
    customer_id: str,
    notifier=None,
    now: Optional[datetime] = None,
) -> List[Assignment]:
    """
    Offer the order to vendors. Vendors already contacted for this order
    (any status) are skipped. Returns only the newly created assignments.
    """
    vendor_ids = _clean_vendor_ids(vendor_ids)
    stamp = ts(now)
    today = (now or utc_now()).date()

    with unit_of_work() as conn:
        order = lock_order(conn, order_id)
        if order["customer_id"] != customer_id:
            raise NotAuthorizedError("You are not authorized to access this order")
        if order["order_status"] != OrderStatus.PENDING.value:
            raise PreconditionError(f"Order {order_id} is {order['order_status']}; vendors can only be added while PENDING")
        if date.fromisoformat(order["required_by_date"]) < today:
            raise PreconditionError(f"Order {order_id} is past its required-by date")

        _check_vendors(conn, vendor_ids)

        contacted = {
            r["vendor_id"]
            for r in rquery(conn, f"""
                SELECT vendor_id FROM order_vendors
                WHERE order_id = ? AND vendor_id IN ({placeholders(vendor_ids)})
            """, (order_id, *vendor_ids))
        }
        new_vendors = [v for v in vendor_ids if v not in contacted]
        if contacted:
            log.info(f"Order {order_id}: skipping already-contacted vendor(s) {sorted(contacted)}")

        active = active_slot_count(conn, order_id)
        free = MAX_ACTIVE_VENDOR_SLOTS - active
        if free < len(new_vendors):
            raise CapacityError(
                f"Only {max(free, 0)} vendor slot(s) available for order {order_id}; "
                f"{len(new_vendors)} requested",
                data={"activeSlots": active, "maxSlots": MAX_ACTIVE_VENDOR_SLOTS},
            )

        created_ids = []
        for vendor_id in new_vendors:
            assignment_id = new_id()
            rexec(conn, """
                INSERT INTO order_vendors (id, order_id, vendor_id, status, created_at, status_updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (assignment_id, order_id, vendor_id, AssignmentStatus.PENDING.value, stamp, stamp))
            created_ids.append(assignment_id)

        created = [
            Assignment.from_row(r)
            for r in rquery(conn, f"SELECT * FROM order_vendors WHERE id IN ({placeholders(created_ids)}) ORDER BY rowid",
                            tuple(created_ids))
        ] if created_ids else []

    log.info(f"Order {order_id}: solicited {len(created)} vendor(s) ({active + len(created)}/{MAX_ACTIVE_VENDOR_SLOTS} slots)")

    if notifier:
        for a in created:
            notifier.notify(
                a.vendor_id, ActorRole.VENDOR, "NEW_ORDER_REQUEST",
                "New order request",
                f"You have a new order request for '{order['order_name']}' ({order['service_type']}).",
                {"orderId": order_id, "assignmentId": a.id},
            )
    return created
