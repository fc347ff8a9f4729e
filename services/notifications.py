# services/notifications.py
"""
Best-effort notification delivery on a background thread.

notify() only enqueues and never raises. The worker writes a
notification_history row for every job, emails the recipient when an address
is on file and pushes when a push endpoint and token exist. Failures are
logged and stored on the history row; nothing propagates to the caller.
"""
import html
import json
import queue
import threading
from typing import Optional, Dict, Any, List

import emailer
from api import PushClient
from db import rquery_one, rexec, ts, new_id, unit_of_work, read_conn
from models import ActorRole
from logger import get_logger

log = get_logger("notifications")

_STOP = object()


class NotificationService:
    def __init__(self, push_client: Optional[PushClient] = None, send_email=emailer.send_email):
        self.push_client = push_client or PushClient()
        self.send_email = send_email
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    # ---------- lifecycle ----------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="notification-worker", daemon=True)
        self._thread.start()
        log.info("Notification worker started.")

    def shutdown(self, timeout: float = 10.0) -> None:
        """Drain queued jobs, then stop the worker."""
        if not self._thread:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        if self._thread.is_alive():
            log.warning(f"Notification worker did not stop within {timeout}s")
        else:
            log.info("Notification worker stopped.")
        self._thread = None

    # ---------- producer ----------
    def notify(self, recipient_id: str, recipient_role: ActorRole, kind: str, title: str,
               message: str, data: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._queue.put_nowait({
                "recipient_id": recipient_id,
                "recipient_role": ActorRole(recipient_role),
                "kind": kind,
                "title": title,
                "message": message,
                "data": data or {},
            })
        except Exception as e:
            log.error(f"Could not queue {kind} notification for {recipient_id}: {e}")

    # ---------- worker ----------
    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self.deliver(job)
            except Exception:
                log.exception(f"Notification job crashed: {job!r}")
            finally:
                self._queue.task_done()

    def _lookup_recipient(self, recipient_id: str, role: ActorRole) -> Optional[Dict[str, Any]]:
        table = {ActorRole.CUSTOMER: "customers", ActorRole.VENDOR: "vendors"}.get(role)
        if not table:
            return None
        with read_conn() as conn:
            return rquery_one(conn, f"SELECT name, email, push_token FROM {table} WHERE id = ?", (recipient_id,))

    def deliver(self, job: Dict[str, Any]) -> List[str]:
        """Send one job on every available channel. Returns the channels that succeeded."""
        recipient = self._lookup_recipient(job["recipient_id"], job["recipient_role"]) or {}
        channels: List[str] = ["history"]
        errors: List[str] = []

        if recipient.get("email"):
            body = (
                f"<p>Hi {html.escape(recipient.get('name') or '')},</p>"
                f"<p>{html.escape(job['message'])}</p>"
            )
            if self.send_email([recipient["email"]], job["title"], body):
                channels.append("email")
            else:
                errors.append("email not sent")

        if self.push_client.enabled and recipient.get("push_token"):
            try:
                self.push_client.send(recipient["push_token"], job["title"], job["message"], job["data"])
                channels.append("push")
            except Exception as e:
                errors.append(f"push: {e}")
                log.warning(f"Push to {job['recipient_id']} failed: {e}")

        with unit_of_work() as conn:
            rexec(conn, """
                INSERT INTO notification_history
                    (id, recipient_id, recipient_role, kind, title, message, data, channels, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (new_id(), job["recipient_id"], job["recipient_role"].value, job["kind"], job["title"],
                  job["message"], json.dumps(job["data"], default=str), ",".join(channels),
                  "; ".join(errors) or None, ts()))

        log.debug(f"Notified {job['recipient_role'].value}:{job['recipient_id']} ({job['kind']}) via {channels}")
        return channels
