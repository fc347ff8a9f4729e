# services/outbox.py
"""
Transactional outbox for carrier calls.

Rows are written inside the same transaction as the state change that needs
the side effect (enqueue takes the caller's connection). A separate dispatcher
drains PENDING rows oldest-first; only the dispatcher moves a row out of
PENDING, and every status update is conditional on the row still being
PENDING so two dispatchers can't both claim a result.
"""
import json
from typing import Optional, Dict, Any, List

from db import rquery, rquery_one, rexec, ts, new_id, read_conn, unit_of_work, placeholders
from exceptions import ExternalServiceError, MarketplaceError
from models import OutboxRecord, OutboxStatus, OutboxEventType, OrderStatus
from logger import get_logger

log = get_logger("outbox")

# Orders in these states no longer want a pickup booked.
INACTIVE_ORDER_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)


def enqueue(conn, event_type: OutboxEventType, payload: Dict[str, Any]) -> str:
    outbox_id = new_id()
    rexec(conn, """
        INSERT INTO outbox (id, event_type, payload, status, created_at, attempts)
        VALUES (?, ?, ?, ?, ?, 0)
    """, (outbox_id, event_type.value, json.dumps(payload, default=str), OutboxStatus.PENDING.value, ts()))
    log.info(f"[Outbox] queued {event_type.value} {outbox_id}")
    return outbox_id


def _to_record(row: Dict[str, Any]) -> OutboxRecord:
    return OutboxRecord(
        id=row["id"],
        event_type=row["event_type"],
        payload=json.loads(row["payload"]),
        status=OutboxStatus(row["status"]),
        created_at=row["created_at"],
        failure_reason=row.get("failure_reason"),
        status_updated_at=row.get("status_updated_at"),
        attempts=int(row.get("attempts") or 0),
    )


def fetch_pending(conn, batch_size: int) -> List[OutboxRecord]:
    rows = rquery(conn, """
        SELECT * FROM outbox
        WHERE status = ?
        ORDER BY created_at, rowid
        LIMIT ?
    """, (OutboxStatus.PENDING.value, batch_size))
    return [_to_record(r) for r in rows]


def get_record(outbox_id: str) -> Optional[OutboxRecord]:
    with read_conn() as conn:
        row = rquery_one(conn, "SELECT * FROM outbox WHERE id = ?", (outbox_id,))
    return _to_record(row) if row else None


def _finish(outbox_id: str, status: OutboxStatus, reason: Optional[str] = None) -> bool:
    with unit_of_work() as conn:
        n = rexec(conn, """
            UPDATE outbox
            SET status = ?, failure_reason = ?, status_updated_at = ?, attempts = attempts + 1
            WHERE id = ? AND status = ?
        """, (status.value, reason, ts(), outbox_id, OutboxStatus.PENDING.value))
    if not n:
        log.warning(f"[Outbox] {outbox_id} was no longer PENDING; {status.value} not recorded")
    return bool(n)


def _order_is_inactive(order_id: Optional[str]) -> bool:
    if not order_id:
        return False
    with read_conn() as conn:
        row = rquery_one(conn, "SELECT order_status FROM orders WHERE id = ?", (order_id,))
    return bool(row) and row["order_status"] in INACTIVE_ORDER_STATUSES


def dispatch_one(record: OutboxRecord, carrier) -> OutboxStatus:
    if record.event_type != OutboxEventType.INITIATE_PICKUP.value:
        reason = f"Unknown outbox event type: {record.event_type}"
        log.error(f"[Outbox] {record.id}: {reason}")
        _finish(record.id, OutboxStatus.FAILED, reason)
        return OutboxStatus.FAILED

    if _order_is_inactive(record.payload.get("orderId")):
        reason = f"Order {record.payload.get('orderId')} is no longer active"
        log.info(f"[Outbox] {record.id}: {reason}; not dispatching")
        _finish(record.id, OutboxStatus.FAILED, reason)
        return OutboxStatus.FAILED

    try:
        carrier.dispatch_pickup(record.payload)
    except (ExternalServiceError, MarketplaceError) as e:
        log.error(f"[Outbox] {record.id} dispatch failed: {e.message}")
        _finish(record.id, OutboxStatus.FAILED, e.message)
        return OutboxStatus.FAILED
    except Exception as e:
        log.exception(f"[Outbox] {record.id} dispatch crashed")
        _finish(record.id, OutboxStatus.FAILED, str(e))
        return OutboxStatus.FAILED

    _finish(record.id, OutboxStatus.SENT)
    log.info(f"[Outbox] {record.id} SENT (delivery {record.payload.get('deliveryTrackingId')})")
    return OutboxStatus.SENT


def dispatch_pending(carrier, batch_size: int = 10) -> Dict[str, int]:
    """Drain up to batch_size PENDING rows. Returns counts per outcome."""
    with read_conn() as conn:
        batch = fetch_pending(conn, batch_size)

    counts = {OutboxStatus.SENT.value: 0, OutboxStatus.FAILED.value: 0}
    if not batch:
        return counts

    log.info(f"[Outbox] Found {len(batch)} pending event(s).")
    for record in batch:
        counts[dispatch_one(record, carrier).value] += 1
    return counts


def requeue_failed(ids: Optional[List[str]] = None) -> int:
    """Manual recovery: FAILED -> PENDING. With no ids, requeues every FAILED row."""
    params: list = [OutboxStatus.PENDING.value, ts(), OutboxStatus.FAILED.value]
    sql = """
        UPDATE outbox
        SET status = ?, failure_reason = NULL, status_updated_at = ?
        WHERE status = ?
    """
    if ids:
        sql += f" AND id IN ({placeholders(ids)})"
        params.extend(ids)

    with unit_of_work() as conn:
        n = rexec(conn, sql, tuple(params))
    log.info(f"[Outbox] requeued {n} FAILED event(s)")
    return n


def failed_since(since: str) -> List[OutboxRecord]:
    with read_conn() as conn:
        rows = rquery(conn, """
            SELECT * FROM outbox
            WHERE status = ? AND status_updated_at > ?
            ORDER BY status_updated_at
        """, (OutboxStatus.FAILED.value, since))
    return [_to_record(r) for r in rows]
