# services/vendor_stats.py
from decimal import Decimal
from typing import Dict, Any

from db import rquery_one, rexec, ts
from exceptions import IntegrityViolation


def get_stats(conn, vendor_id: str) -> Dict[str, Any]:
    row = rquery_one(conn, "SELECT * FROM vendor_stats WHERE vendor_id = ?", (vendor_id,))
    if not row:
        return {"vendor_id": vendor_id, "total_in_progress_orders": 0,
                "total_completed_orders": 0, "total_earnings": Decimal("0.00")}
    row["total_earnings"] = Decimal(row["total_earnings"])
    return row


def adjust(conn, vendor_id: str, *, in_progress: int = 0, completed: int = 0,
           earnings: Decimal = Decimal("0")) -> None:
    """Apply counter deltas on the caller's transaction. Counters never go negative."""
    now = ts()
    rexec(conn, """
        INSERT INTO vendor_stats (vendor_id, updated_at) VALUES (?, ?)
        ON CONFLICT(vendor_id) DO NOTHING
    """, (vendor_id, now))

    current = get_stats(conn, vendor_id)
    new_in_progress = current["total_in_progress_orders"] + in_progress
    new_completed = current["total_completed_orders"] + completed
    if new_in_progress < 0 or new_completed < 0:
        raise IntegrityViolation(
            f"Vendor {vendor_id} stats would go negative "
            f"(in_progress={new_in_progress}, completed={new_completed})"
        )

    rexec(conn, """
        UPDATE vendor_stats
        SET total_in_progress_orders = ?, total_completed_orders = ?, total_earnings = ?, updated_at = ?
        WHERE vendor_id = ?
    """, (new_in_progress, new_completed, str(current["total_earnings"] + earnings), now, vendor_id))
