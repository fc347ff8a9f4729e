# services/order_state.py
"""
Order lifecycle.

The timeline (order_status_timeline) is the audit source of truth: every
transition appends one immutable row. orders.order_status holds the coarse
status (PENDING / IN_PROGRESS / COMPLETED / CANCELLED / REFUNDED) and the
<status>_at columns cache the first time each timeline status was reached.

All transitions go through advance(), which checks the requested step
against TRANSITIONS for the current stage and the acting role.
"""
from datetime import date, datetime
from typing import Optional, Dict, Any, List

from config import utc_now
from db import rquery, rquery_one, rexec, ts, new_id, unit_of_work, read_conn, placeholders
from exceptions import ValidationError, NotFoundError, PreconditionError, NotAuthorizedError
from models import (
    Order,
    OrderStatus,
    OrderStatusTimestamps,
    ActorRole,
    AssignmentStatus,
    TimelineEntry,
    COARSE_ORDER_STATUSES,
    ACTIVE_SLOT_STATUSES,
)
from services.delivery_legs import start_return_leg
from logger import get_logger

log = get_logger("order_state")

S = OrderStatus
R = ActorRole

# current stage -> {next stage: roles allowed to request it}
TRANSITIONS: Dict[OrderStatus, Dict[OrderStatus, frozenset]] = {
    S.PENDING: {
        S.IN_PROGRESS: frozenset({R.PAYMENT_GATEWAY}),
        S.CANCELLED: frozenset({R.CUSTOMER, R.ADMIN}),
    },
    S.IN_PROGRESS: {
        S.ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED: frozenset({R.LOGISTICS, R.SYSTEM}),
        S.WORK_STARTED: frozenset({R.SYSTEM}),
        S.REFUNDED: frozenset({R.ADMIN}),
    },
    S.ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED: {
        S.ITEM_DELIVERED_TO_VENDOR: frozenset({R.LOGISTICS}),
        S.REFUNDED: frozenset({R.ADMIN}),
    },
    S.ITEM_DELIVERED_TO_VENDOR: {
        S.WORK_STARTED: frozenset({R.VENDOR}),
        S.REFUNDED: frozenset({R.ADMIN}),
    },
    S.WORK_STARTED: {
        S.ITEM_READY_FOR_PICKUP: frozenset({R.VENDOR}),
    },
    S.ITEM_READY_FOR_PICKUP: {
        S.ITEM_PICKED_UP_FROM_VENDOR: frozenset({R.LOGISTICS}),
    },
    S.ITEM_PICKED_UP_FROM_VENDOR: {
        S.ITEM_DELIVERED_TO_CUSTOMER: frozenset({R.LOGISTICS}),
    },
    S.ITEM_DELIVERED_TO_CUSTOMER: {
        S.COMPLETED: frozenset({R.SYSTEM}),
    },
}

# Steps a vendor drives through the API; everything else is webhook/system driven.
VENDOR_STEPS = (S.WORK_STARTED, S.ITEM_READY_FOR_PICKUP)

SYSTEM_ACTOR = "SYSTEM"
PAYMENT_GATEWAY_ACTOR = "PAYMENT_GATEWAY"
LOGISTICS_ACTOR = "LOGISTICS"


# ------------------------------------------------------------
# Reads
# ------------------------------------------------------------
def fetch_order_row(conn, order_id: str) -> Dict[str, Any]:
    row = rquery_one(conn, "SELECT * FROM orders WHERE id = ?", (order_id,))
    if not row:
        raise NotFoundError(f"Order {order_id} not found")
    return row

def lock_order(conn, order_id: str) -> Dict[str, Any]:
    """
    Must be called inside db.transaction(). The IMMEDIATE transaction already
    holds the write lock, so the row read here cannot change underneath us
    until commit/rollback.
    """
    return fetch_order_row(conn, order_id)

def current_stage(conn, order_id: str) -> Optional[OrderStatus]:
    row = rquery_one(
        conn,
        "SELECT new_status FROM order_status_timeline WHERE order_id = ? ORDER BY id DESC LIMIT 1",
        (order_id,),
    )
    return OrderStatus(row["new_status"]) if row else None

def get_order(order_id: str) -> Order:
    with read_conn() as conn:
        return Order.from_row(fetch_order_row(conn, order_id))

def get_timeline(order_id: str) -> List[TimelineEntry]:
    with read_conn() as conn:
        fetch_order_row(conn, order_id)
        rows = rquery(conn, "SELECT * FROM order_status_timeline WHERE order_id = ? ORDER BY id", (order_id,))
    return [TimelineEntry.from_row(r) for r in rows]


# ------------------------------------------------------------
# Writes (caller owns the transaction)
# ------------------------------------------------------------
def _insert_timeline(conn, order_id: str, previous: Optional[OrderStatus], new: OrderStatus,
                     actor_id: str, actor_role: ActorRole, note: Optional[str], now: str) -> None:
    rexec(conn, """
        INSERT INTO order_status_timeline
            (order_id, previous_status, new_status, changed_by, changed_by_role, notes, changed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (order_id, previous.value if previous else None, new.value, actor_id, actor_role.value, note, now))

    col = OrderStatusTimestamps.column_for(new)
    sets = [f"{col} = COALESCE({col}, ?)", "updated_at = ?"]
    params: list = [now, now]
    if new in COARSE_ORDER_STATUSES:
        sets.append("order_status = ?")
        params.append(new.value)
    rexec(conn, f"UPDATE orders SET {', '.join(sets)} WHERE id = ?", (*params, order_id))

def check_transition(current: Optional[OrderStatus], new: OrderStatus, actor_role: ActorRole) -> None:
    allowed = TRANSITIONS.get(current, {}) if current else {}
    if new not in allowed:
        raise PreconditionError(
            f"Cannot move order from {current.value if current else 'nothing'} to {new.value}"
        )
    if actor_role not in allowed[new]:
        raise PreconditionError(f"Role '{actor_role.value}' may not move an order to {new.value}")

def advance(conn, order_id: str, new_status: OrderStatus, actor_id: str, actor_role: ActorRole,
            note: Optional[str] = None, now: Optional[datetime] = None) -> OrderStatus:
    """Validate and record one transition. Returns the previous stage."""
    current = current_stage(conn, order_id)
    check_transition(current, new_status, actor_role)
    _insert_timeline(conn, order_id, current, new_status, actor_id, actor_role, note, ts(now))
    log.info(f"Order {order_id}: {current.value if current else '-'} -> {new_status.value} by {actor_role.value}:{actor_id}")
    return current


# ------------------------------------------------------------
# Operations
# ------------------------------------------------------------
ADDRESS_FIELDS = ("full_name", "phone_number", "address_line1", "address_line2",
                  "city", "state", "pincode", "landmark")

def create_order(
    customer_id: str,
    order_name: str,
    service_type: str,
    required_by_date: date,
    cloth_provided: bool,
    address: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Order:
    if not order_name or not service_type:
        raise ValidationError("order_name and service_type are required")
    today = (now or utc_now()).date()
    if required_by_date < today:
        raise ValidationError("required_by_date cannot be in the past")

    address = address or {}
    order_id = new_id()
    stamp = ts(now)

    with unit_of_work() as conn:
        if not rquery_one(conn, "SELECT id FROM customers WHERE id = ?", (customer_id,)):
            raise NotFoundError(f"Customer {customer_id} not found")

        cols = ["id", "customer_id", "order_name", "service_type", "required_by_date",
                "cloth_provided", "order_status", "created_at", "updated_at", *ADDRESS_FIELDS]
        vals = [order_id, customer_id, order_name, service_type, required_by_date.isoformat(),
                1 if cloth_provided else 0, S.PENDING.value, stamp, stamp,
                *[address.get(f) for f in ADDRESS_FIELDS]]
        rexec(conn, f"INSERT INTO orders ({', '.join(cols)}) VALUES ({placeholders(cols)})", tuple(vals))
        _insert_timeline(conn, order_id, None, S.PENDING, customer_id, R.CUSTOMER, "Order created", stamp)

        order = Order.from_row(fetch_order_row(conn, order_id))

    log.info(f"Order {order_id} created for customer {customer_id} (cloth_provided={cloth_provided})")
    return order


def request_transition(
    order_id: str,
    new_status: OrderStatus,
    actor_id: str,
    actor_role: ActorRole,
    note: Optional[str] = None,
    notifier=None,
    now: Optional[datetime] = None,
) -> Order:
    """
    Vendor-driven steps (WORK_STARTED, ITEM_READY_FOR_PICKUP). Marking the item
    ready opens the return (TO_CUSTOMER) delivery leg in the same transaction.
    """
    if new_status not in VENDOR_STEPS:
        raise PreconditionError(f"{new_status.value} cannot be requested directly")

    with unit_of_work() as conn:
        row = lock_order(conn, order_id)
        if actor_role == R.VENDOR and row["selected_vendor_id"] != actor_id:
            raise NotAuthorizedError("Only the selected vendor can update this order")
        if row["order_status"] != S.IN_PROGRESS.value:
            raise PreconditionError(f"Order {order_id} is {row['order_status']}, not IN_PROGRESS")

        advance(conn, order_id, new_status, actor_id, actor_role, note, now)

        if new_status == S.ITEM_READY_FOR_PICKUP:
            start_return_leg(conn, row, now)

        order = Order.from_row(fetch_order_row(conn, order_id))

    if notifier:
        notifier.notify(
            order.customer_id, R.CUSTOMER, "ORDER_STATUS_UPDATE",
            "Order update",
            f"Your order #{order_id[:8]} is now {new_status.value.replace('_', ' ').lower()}.",
            {"orderId": order_id, "status": new_status.value},
        )
    return order


def cancel_order(
    order_id: str,
    actor_id: str,
    actor_role: ActorRole,
    note: Optional[str] = None,
    notifier=None,
    now: Optional[datetime] = None,
) -> Order:
    """Unpaid orders only. Paid orders go through payments.refund_order."""
    stamp = ts(now)
    with unit_of_work() as conn:
        row = lock_order(conn, order_id)
        if actor_role == R.CUSTOMER and row["customer_id"] != actor_id:
            raise NotAuthorizedError("You are not authorized to cancel this order")

        advance(conn, order_id, S.CANCELLED, actor_id, actor_role, note or "Order cancelled", now)

        active = rquery(conn, f"""
            SELECT id, vendor_id FROM order_vendors
            WHERE order_id = ? AND status IN ({placeholders(ACTIVE_SLOT_STATUSES)})
        """, (order_id, *[s.value for s in ACTIVE_SLOT_STATUSES]))
        ids = [a["id"] for a in active]
        if ids:
            rexec(conn, f"""
                UPDATE order_vendors SET status = ?, status_updated_at = ?
                WHERE id IN ({placeholders(ids)}) AND status IN (?, ?)
            """, (AssignmentStatus.CANCELLED.value, stamp, *ids, *[s.value for s in ACTIVE_SLOT_STATUSES]))
            rexec(conn, f"""
                UPDATE order_quotes SET is_processed = 1, updated_at = ?
                WHERE order_vendor_id IN ({placeholders(ids)}) AND is_processed = 0
            """, (stamp, *ids))

        order = Order.from_row(fetch_order_row(conn, order_id))

    log.info(f"Order {order_id} cancelled by {actor_role.value}:{actor_id}; {len(active)} assignment(s) closed")

    if notifier:
        for a in active:
            notifier.notify(
                a["vendor_id"], R.VENDOR, "ORDER_CANCELLED",
                "Order cancelled",
                f"Order #{order_id[:8]} was cancelled by the customer.",
                {"orderId": order_id},
            )
    return order
