# marketplace_workflow/scripts/requeue_failed_outbox.py
# Usage: python scripts/requeue_failed_outbox.py [outbox_id ...]
# With no ids, every FAILED outbox row is moved back to PENDING.

import os, sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from db import init_state_db, read_conn, rquery
from services.outbox import requeue_failed


def main(ids):
    init_state_db()

    with read_conn() as conn:
        rows = rquery(conn, "SELECT id, event_type, failure_reason FROM outbox WHERE status = 'FAILED' ORDER BY created_at")
    if ids:
        rows = [r for r in rows if r["id"] in ids]

    if not rows:
        print("No FAILED outbox rows to requeue.")
        return 0

    for r in rows:
        print(f"  {r['id']}  {r['event_type']}  {r['failure_reason']}")

    n = requeue_failed(ids or None)
    print(f"Requeued {n} row(s); the outbox poller will pick them up on its next tick.")
    return n


if __name__ == "__main__":
    main(sys.argv[1:])
