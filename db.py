# db.py

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, List, Dict, Optional, Tuple, Iterator

import config
from logger import get_logger
from models import OrderStatusTimestamps, DeliveryTimestamps


log = get_logger("db")

# Every stored timestamp uses this one layout (UTC) so text comparison == time comparison.
TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


# ---------- Time helpers ----------
def ts(dt: Optional[datetime] = None) -> str:
    dt = dt or config.utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)

def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)

def new_id() -> str:
    return str(uuid.uuid4())


# ---------- Query helpers ----------
def fetchall_dict(cur: sqlite3.Cursor) -> List[Dict[str, Any]]:
    if cur.description is None:
        return []
    cols = [c[0] for c in cur.description]
    return [dict(zip(cols, row)) for row in cur.fetchall()]

def rquery(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(sql, params)
    return fetchall_dict(cur)

def rquery_one(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
    rows = rquery(conn, sql, params)
    return rows[0] if rows else None

def rexec(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> int:
    cur = conn.cursor()
    cur.execute(sql, params)
    return cur.rowcount

def placeholders(values) -> str:
    return ",".join("?" for _ in values)


# ---------- Connections / transactions ----------
def state_conn() -> sqlite3.Connection:
    # isolation_level=None: we issue BEGIN ourselves (see transaction()).
    conn = sqlite3.connect(config.STATE_DB_PATH, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    BEGIN IMMEDIATE takes the store's write lock up front. Any unit of work
    that reads-then-writes (finalization, solicitation, webhook handling) is
    therefore serialized against every other writer for its duration.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()

@contextmanager
def unit_of_work() -> Iterator[sqlite3.Connection]:
    conn = state_conn()
    try:
        with transaction(conn):
            yield conn
    finally:
        conn.close()

@contextmanager
def read_conn() -> Iterator[sqlite3.Connection]:
    conn = state_conn()
    try:
        yield conn
    finally:
        conn.close()


# ---------- Schema ----------
def _table_columns(cur: sqlite3.Cursor, table: str) -> set[str]:
    cur.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}

def _ensure_column(cur: sqlite3.Cursor, table: str, column: str, col_type: str) -> None:
    cols = _table_columns(cur, table)
    if column not in cols:
        log.info(f"DB MIGRATION: adding column {table}.{column} {col_type}")
        cur.execute(f'ALTER TABLE {table} ADD COLUMN "{column}" {col_type}')

def init_state_db() -> None:
    conn = state_conn()
    cur = conn.cursor()

    order_ts_cols = ",\n        ".join(f"{c} TEXT" for c in OrderStatusTimestamps.columns())
    delivery_ts_cols = ",\n        ".join(f"{c} TEXT" for c in DeliveryTimestamps.columns())

    cur.execute("""
    CREATE TABLE IF NOT EXISTS customers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        push_token TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS vendors (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        shop_name TEXT,
        email TEXT,
        phone TEXT,
        push_token TEXT,
        status TEXT NOT NULL DEFAULT 'PENDING',
        is_active INTEGER NOT NULL DEFAULT 1,
        fund_account_id TEXT,
        address_line1 TEXT,
        city TEXT,
        state TEXT,
        pincode TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS vendor_stats (
        vendor_id TEXT PRIMARY KEY REFERENCES vendors(id),
        total_in_progress_orders INTEGER NOT NULL DEFAULT 0,
        total_completed_orders INTEGER NOT NULL DEFAULT 0,
        total_earnings TEXT NOT NULL DEFAULT '0.00',
        updated_at TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TEXT
    )
    """)

    cur.execute(f"""
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL REFERENCES customers(id),
        order_name TEXT NOT NULL,
        service_type TEXT NOT NULL,
        required_by_date TEXT NOT NULL,
        cloth_provided INTEGER NOT NULL DEFAULT 0,
        order_status TEXT NOT NULL DEFAULT 'PENDING',
        {order_ts_cols},
        selected_vendor_id TEXT,
        final_quote_id TEXT,
        payment_id TEXT,
        is_paid INTEGER NOT NULL DEFAULT 0,
        is_refunded INTEGER NOT NULL DEFAULT 0,
        full_name TEXT,
        phone_number TEXT,
        address_line1 TEXT,
        address_line2 TEXT,
        city TEXT,
        state TEXT,
        pincode TEXT,
        landmark TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS order_vendors (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id),
        vendor_id TEXT NOT NULL REFERENCES vendors(id),
        status TEXT NOT NULL DEFAULT 'PENDING',
        response_note TEXT,
        created_at TEXT NOT NULL,
        status_updated_at TEXT,
        UNIQUE (order_id, vendor_id)
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS order_quotes (
        id TEXT PRIMARY KEY,
        order_vendor_id TEXT NOT NULL UNIQUE REFERENCES order_vendors(id),
        quoted_price TEXT NOT NULL,
        quoted_days INTEGER NOT NULL,
        vendor_payout TEXT NOT NULL,
        price_after_platform_fee TEXT NOT NULL,
        delivery_charge TEXT NOT NULL,
        final_price TEXT NOT NULL,
        platform_fee_percent TEXT NOT NULL,
        vendor_fee_percent TEXT NOT NULL,
        is_processed INTEGER NOT NULL DEFAULT 0,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS order_status_timeline (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL REFERENCES orders(id),
        previous_status TEXT,
        new_status TEXT NOT NULL,
        changed_by TEXT NOT NULL,
        changed_by_role TEXT NOT NULL,
        notes TEXT,
        changed_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        vendor_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        quote_id TEXT NOT NULL,
        gateway_payment_id TEXT NOT NULL UNIQUE,
        payment_amount TEXT NOT NULL,
        payment_currency TEXT NOT NULL,
        payment_method TEXT,
        payment_status TEXT NOT NULL,
        payment_date TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS payment_attempts (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        quote_id TEXT NOT NULL,
        customer_id TEXT NOT NULL,
        gateway_order_id TEXT,
        amount_minor INTEGER NOT NULL,
        currency TEXT NOT NULL,
        receipt TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS payment_failures (
        id TEXT PRIMARY KEY,
        order_id TEXT,
        quote_id TEXT,
        customer_id TEXT,
        gateway_payment_id TEXT NOT NULL,
        amount TEXT,
        reason TEXT,
        status TEXT,
        failed_at TEXT,
        recorded_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS refunds (
        id TEXT PRIMARY KEY,
        gateway_payment_id TEXT NOT NULL,
        gateway_refund_id TEXT,
        amount_minor INTEGER,
        status TEXT NOT NULL,
        speed_requested TEXT,
        speed_processed TEXT,
        notes TEXT,
        comment TEXT,
        requires_manual_action INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS outbox (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        failure_reason TEXT,
        created_at TEXT NOT NULL,
        status_updated_at TEXT
    )
    """)

    cur.execute(f"""
    CREATE TABLE IF NOT EXISTS delivery_tracking (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id),
        delivery_type TEXT NOT NULL,
        from_party TEXT NOT NULL,
        to_party TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING',
        {delivery_ts_cols},
        status_updated_at TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS payouts (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL UNIQUE,
        vendor_id TEXT NOT NULL,
        fund_account_id TEXT NOT NULL,
        expected_amount TEXT NOT NULL,
        actual_paid_amount TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS notification_history (
        id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        recipient_role TEXT NOT NULL,
        kind TEXT NOT NULL,
        title TEXT,
        message TEXT,
        data TEXT,
        channels TEXT,
        error TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS queue_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        queue_name TEXT NOT NULL,
        reason TEXT,
        failed_at TEXT NOT NULL
    )
    """)

    # ---- MIGRATIONS / SAFE UPGRADES ----
    _ensure_column(cur, "outbox", "attempts", "INTEGER NOT NULL DEFAULT 0")

    conn.close()

    ensure_state_indexes()

def ensure_state_indexes() -> None:
    conn = state_conn()
    conn.executescript("""
    CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);
    CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(order_status);

    CREATE INDEX IF NOT EXISTS idx_order_vendors_order_status ON order_vendors(order_id, status);
    CREATE INDEX IF NOT EXISTS idx_order_vendors_status_created ON order_vendors(status, created_at);
    CREATE INDEX IF NOT EXISTS idx_order_quotes_processed_created ON order_quotes(is_processed, created_at);

    CREATE INDEX IF NOT EXISTS idx_timeline_order_id ON order_status_timeline(order_id);
    CREATE INDEX IF NOT EXISTS idx_timeline_status_time ON order_status_timeline(new_status, changed_at);

    CREATE INDEX IF NOT EXISTS idx_payments_order_id ON payments(order_id);
    CREATE INDEX IF NOT EXISTS idx_refunds_payment_id ON refunds(gateway_payment_id);
    CREATE INDEX IF NOT EXISTS idx_outbox_status_created ON outbox(status, created_at);
    CREATE INDEX IF NOT EXISTS idx_delivery_tracking_order_id ON delivery_tracking(order_id);
    """)
    conn.close()
