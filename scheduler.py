# scheduler.py
"""
Long-lived workers for one process: the notification worker, the outbox
poller and the expiry poller. Built once at startup, handed to the HTTP layer
and stopped with shutdown(), which joins every thread.
"""
import threading
import time
from typing import Callable, Optional, Any, List

import config
import emailer
from api import PaymentGateway, DeliveryCarrier
from db import rexec, ts, unit_of_work
from services.notifications import NotificationService
from services import outbox, expiry
from logger import get_logger

log = get_logger("scheduler")


def record_queue_failure(queue_name: str, reason: str) -> None:
    with unit_of_work() as conn:
        rexec(conn, "INSERT INTO queue_logs (queue_name, reason, failed_at) VALUES (?, ?, ?)",
              (queue_name, reason[:2000], ts()))


def run_job(name: str, fn: Callable[[], Any], attempts: int = config.JOB_ATTEMPTS,
            backoff_seconds: float = config.JOB_BACKOFF_SECONDS,
            stop_event: Optional[threading.Event] = None) -> Any:
    """
    Run one job tick with exponential backoff between attempts. When every
    attempt fails the failure is written to queue_logs and None is returned.
    """
    last_err = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_err = e
            log.warning(f"[{name}] attempt {attempt}/{attempts} failed: {e}")
            if attempt < attempts:
                delay = backoff_seconds * (2 ** (attempt - 1))
                if stop_event is not None:
                    if stop_event.wait(delay):
                        break
                else:
                    time.sleep(delay)

    log.error(f"[{name}] giving up after {attempts} attempt(s): {last_err}")
    record_queue_failure(name, f"{type(last_err).__name__}: {last_err}")
    return None


class WorkerRuntime:
    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        carrier: Optional[DeliveryCarrier] = None,
        notifier: Optional[NotificationService] = None,
        outbox_interval: float = config.OUTBOX_POLL_SECONDS,
        expiry_interval: float = config.EXPIRY_RUN_MINUTES * 60,
    ):
        self.gateway = gateway or PaymentGateway()
        self.carrier = carrier or DeliveryCarrier()
        self.notifier = notifier or NotificationService()
        self.outbox_interval = outbox_interval
        self.expiry_interval = expiry_interval

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._failed_seen_at = ts()

    # ---------- ticks ----------
    def outbox_tick(self) -> dict:
        counts = outbox.dispatch_pending(self.carrier, batch_size=config.OUTBOX_BATCH_SIZE)
        self.alert_new_failures()
        return counts

    def expiry_tick(self) -> dict:
        return {
            "expiredPending": expiry.expire_pending_vendors(),
            "frozenAccepted": expiry.expire_accepted_quotes(),
        }

    def alert_new_failures(self) -> int:
        since, self._failed_seen_at = self._failed_seen_at, ts()
        failed = outbox.failed_since(since)
        if not failed:
            return 0
        log.error(f"[Outbox] {len(failed)} event(s) moved to FAILED; ops alerted")
        emailer.send_ops_alert(
            f"{len(failed)} outbox event(s) FAILED",
            {r.id: f"{r.event_type} order={r.payload.get('orderId')} reason={r.failure_reason}" for r in failed},
            footer="Fix the cause, then run scripts/requeue_failed_outbox.py to retry.",
        )
        return len(failed)

    # ---------- loops ----------
    def _loop(self, name: str, interval: float, tick: Callable[[], Any]) -> None:
        log.info(f"[{name}] started (every {interval:g}s).")
        while not self._stop.is_set():
            run_job(name, tick, stop_event=self._stop)
            if self._stop.wait(interval):
                break
        log.info(f"[{name}] stopped.")

    def start(self) -> None:
        self.notifier.start()
        for name, interval, tick in (
            ("outbox", self.outbox_interval, self.outbox_tick),
            ("expiry", self.expiry_interval, self.expiry_tick),
        ):
            t = threading.Thread(target=self._loop, args=(name, interval, tick), name=f"{name}-poller", daemon=True)
            t.start()
            self._threads.append(t)

    def shutdown(self, timeout: float = 30.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
            if t.is_alive():
                log.warning(f"{t.name} did not stop within {timeout}s")
        self._threads.clear()
        self.notifier.shutdown()
        log.info("Worker runtime shut down.")
