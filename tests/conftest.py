"""Pytest fixtures for marketplace workflow tests."""

import json
from datetime import date, timedelta

import pytest

import config
import emailer
from api import sign_body
from db import init_state_db, unit_of_work, read_conn, rexec, rquery, rquery_one, ts
from exceptions import ExternalServiceError
from models import QuoteAction, to_minor_units
from services import ledger, order_state, quotes, payments

WEBHOOK_SECRET = "whsec_test"


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.started = False
        self.stopped = False

    def notify(self, recipient_id, recipient_role, kind, title, message, data=None):
        self.sent.append({"recipient_id": recipient_id, "role": recipient_role, "kind": kind, "data": data or {}})

    def kinds(self):
        return [n["kind"] for n in self.sent]

    def start(self):
        self.started = True

    def shutdown(self):
        self.stopped = True


class FakeGateway:
    def __init__(self):
        self.refunds = []
        self.orders = []
        self.fail_refund = False

    def create_order(self, amount_minor, currency, receipt, notes):
        self.orders.append({"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes})
        return {"id": f"order_{len(self.orders)}", "amount": amount_minor, "currency": currency, "status": "created"}

    def refund(self, payment_id, speed="normal", notes=None):
        self.refunds.append(payment_id)
        if self.fail_refund:
            raise ExternalServiceError("gateway.refund failed (HTTP 502): upstream down", api_entity="gateway.refund",
                                       api_status=502)
        return {"id": f"rfnd_{len(self.refunds)}", "amount": 100, "status": "processed",
                "speed_requested": speed, "speed_processed": "normal"}


class FakeCarrier:
    def __init__(self):
        self.dispatched = []
        self.fail = False

    def dispatch_pickup(self, payload):
        if self.fail:
            raise ExternalServiceError("carrier down", api_entity="carrier.dispatch_pickup")
        self.dispatched.append(payload)
        return {"id": f"pk_{len(self.dispatched)}"}


class Marketplace:
    """Seeds rows and drives the workflow the way the API would."""

    def __init__(self, notifier, gateway):
        self.notifier = notifier
        self.gateway = gateway
        self._n = 0

    def _next(self, prefix):
        self._n += 1
        return f"{prefix}{self._n}"

    def customer(self, email="cust@example.com"):
        cid = self._next("cust-")
        with unit_of_work() as conn:
            rexec(conn, "INSERT INTO customers (id, name, email, created_at) VALUES (?, ?, ?, ?)",
                  (cid, "Asha", email, ts()))
        return cid

    def vendor(self, status="VERIFIED", active=True, fund_account="fa_123"):
        vid = self._next("vend-")
        with unit_of_work() as conn:
            rexec(conn, """
                INSERT INTO vendors (id, name, shop_name, email, phone, status, is_active, fund_account_id,
                                     address_line1, city, state, pincode, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (vid, "Ravi", f"Shop {vid}", f"{vid}@example.com", "9999999999", status, 1 if active else 0,
                  fund_account, "12 Market Rd", "Pune", "MH", "411001", ts()))
        return vid

    def order(self, customer_id=None, cloth_provided=False, required_by=None, now=None):
        customer_id = customer_id or self.customer()
        return order_state.create_order(
            customer_id=customer_id,
            order_name="Wedding sherwani",
            service_type="STITCHING",
            required_by_date=required_by or (date.today() + timedelta(days=14)),
            cloth_provided=cloth_provided,
            address={"full_name": "Asha", "address_line1": "1 Lake View", "city": "Pune", "pincode": "411002"},
            now=now,
        )

    def solicit(self, order, vendor_ids, now=None):
        return ledger.solicit(order.id, vendor_ids, order.customer_id, self.notifier, now=now)

    def accept(self, assignment, price="1000", days=5, now=None):
        return quotes.respond(assignment.id, assignment.vendor_id, QuoteAction.ACCEPT, price, days,
                              notifier=self.notifier, now=now)

    def quoted_order(self, vendors=1, cloth_provided=False, price="1000"):
        """Order with `vendors` solicited vendors; the first one has accepted."""
        order = self.order(cloth_provided=cloth_provided)
        vendor_ids = [self.vendor() for _ in range(vendors)]
        assignments = self.solicit(order, vendor_ids)
        quote = self.accept(assignments[0], price=price)["quote"]
        return order, assignments, quote

    def payment_body(self, order, quote, vendor_id, payment_id="pay_1", amount=None,
                     event="payment.captured", error_description=None):
        amount = to_minor_units(quote.breakdown.final_price) if amount is None else amount
        return json.dumps({
            "event": event,
            "payload": {"payment": {"entity": {
                "id": payment_id,
                "amount": amount,
                "currency": "INR",
                "method": "upi",
                "status": "captured" if event == "payment.captured" else "failed",
                "created_at": 1760000000,
                "error_description": error_description,
                "notes": {
                    "orderId": order.id,
                    "quoteId": quote.id,
                    "vendorId": vendor_id,
                    "customerId": order.customer_id,
                },
            }}},
        }).encode()

    @staticmethod
    def sign(body):
        return sign_body(WEBHOOK_SECRET, body)

    def deliver_payment(self, body):
        return payments.handle_payment_webhook(body, self.sign(body), self.gateway, self.notifier)

    def pay(self, order, quote, vendor_id, payment_id="pay_1", amount=None):
        return self.deliver_payment(self.payment_body(order, quote, vendor_id, payment_id, amount))

    # ---------- reads ----------
    @staticmethod
    def rows(sql, params=()):
        with read_conn() as conn:
            return rquery(conn, sql, params)

    @staticmethod
    def row(sql, params=()):
        with read_conn() as conn:
            return rquery_one(conn, sql, params)

    def count(self, table, where="1=1", params=()):
        return self.row(f"SELECT COUNT(*) AS n FROM {table} WHERE {where}", params)["n"]

    def timeline(self, order_id):
        return [e.new_status.value for e in order_state.get_timeline(order_id)]


@pytest.fixture(autouse=True)
def state_db(tmp_path, monkeypatch):
    """Fresh SQLite store per test; no real email or webhook secrets."""
    db_path = tmp_path / "marketplace.db"
    monkeypatch.setattr(config, "STATE_DB_PATH", str(db_path))
    monkeypatch.setattr(config, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "DELIVERY_WEBHOOK_SECRET", "")
    monkeypatch.setattr(emailer, "EMAIL_ENABLED", False)
    init_state_db()
    yield db_path


@pytest.fixture
def ops_alerts(monkeypatch):
    sent = []

    def fake_alert(title, details, footer=""):
        sent.append({"title": title, "details": details})
        return True

    monkeypatch.setattr(emailer, "send_ops_alert", fake_alert)
    return sent


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def mp(notifier, gateway):
    return Marketplace(notifier, gateway)
