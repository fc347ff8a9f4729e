# server.py
"""
HTTP surface. Webhooks plus the customer / vendor / admin operations.

Callers are authenticated upstream; the acting identity arrives in the
X-Actor-Id and X-Actor-Role headers.
"""
import dataclasses
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from exceptions import MarketplaceError, DuplicateEventError, ValidationError, NotAuthorizedError
from models import ActorRole, OrderStatus, parse_enum
from services import ledger, quotes, order_state, payments, delivery
from logger import get_logger

log = get_logger("server")

PAYMENT_SIGNATURE_HEADER = "X-Razorpay-Signature"
DELIVERY_SIGNATURE_HEADER = "X-Delivery-Signature"


def to_json(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_json(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


def ok(data: Any = None, message: str = "OK", status: int = 200):
    return jsonify({"status": True, "message": message, "data": to_json(data)}), status


def _body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _actor(*allowed: ActorRole):
    actor_id = (request.headers.get("X-Actor-Id") or "").strip()
    if not actor_id:
        raise NotAuthorizedError("Missing X-Actor-Id")
    role = parse_enum(ActorRole, (request.headers.get("X-Actor-Role") or "").strip().lower(), "role")
    if allowed and role not in allowed:
        raise NotAuthorizedError(f"Role '{role.value}' cannot perform this action")
    return actor_id, role


def _parse_date(value, field: str) -> date:
    try:
        return date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}", data={field: "expected YYYY-MM-DD"})


def create_app(runtime) -> Flask:
    app = Flask(__name__)
    app.config["runtime"] = runtime

    # ---------- errors ----------
    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(e: MarketplaceError):
        if isinstance(e, DuplicateEventError):
            log.info(f"{request.method} {request.path}: {e.message}")
        elif e.status_code >= 500:
            log.error(f"{request.method} {request.path}: {type(e).__name__}: {e.message}")
        else:
            log.warning(f"{request.method} {request.path}: {type(e).__name__}: {e.message}")
        return jsonify({"status": False, "message": e.message, "data": to_json(e.data)}), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify({"status": False, "message": e.description, "data": {}}), e.code
        log.exception(f"{request.method} {request.path}: unhandled error")
        return jsonify({"status": False, "message": "Internal server error", "data": {}}), 500

    # ---------- webhooks ----------
    @app.post("/webhooks/payment")
    def payment_webhook():
        result = payments.handle_payment_webhook(
            request.get_data(),
            request.headers.get(PAYMENT_SIGNATURE_HEADER),
            runtime.gateway,
            runtime.notifier,
        )
        return ok(result, "Webhook received")

    @app.post("/webhooks/delivery")
    def delivery_webhook():
        result = delivery.handle_delivery_webhook(
            request.get_data(),
            request.headers.get(DELIVERY_SIGNATURE_HEADER),
            runtime.notifier,
        )
        return ok(result, "Delivery tracking updated successfully")

    # ---------- orders ----------
    @app.post("/orders")
    def create_order():
        customer_id, _ = _actor(ActorRole.CUSTOMER)
        body = _body()
        order = order_state.create_order(
            customer_id=customer_id,
            order_name=(body.get("orderName") or "").strip(),
            service_type=(body.get("serviceType") or "").strip(),
            required_by_date=_parse_date(body.get("requiredByDate"), "requiredByDate"),
            cloth_provided=bool(body.get("clothProvided")),
            address=body.get("address") or {},
        )
        return ok(order, "Order created", 201)

    @app.get("/orders/<order_id>")
    def get_order(order_id):
        _actor()
        return ok(order_state.get_order(order_id))

    @app.get("/orders/<order_id>/timeline")
    def get_timeline(order_id):
        _actor()
        return ok(order_state.get_timeline(order_id))

    @app.get("/orders/<order_id>/deliveries")
    def get_deliveries(order_id):
        _actor()
        order_state.get_order(order_id)
        return ok(delivery.get_legs(order_id))

    @app.get("/orders/<order_id>/vendors")
    def list_vendors(order_id):
        _actor()
        return ok(ledger.list_assignments(order_id))

    @app.post("/orders/<order_id>/vendors")
    def solicit_vendors(order_id):
        customer_id, _ = _actor(ActorRole.CUSTOMER)
        created = ledger.solicit(order_id, _body().get("vendorIds"), customer_id, runtime.notifier)
        return ok(created, f"{len(created)} vendor(s) added", 201)

    @app.post("/orders/<order_id>/payment-order")
    def create_payment_order(order_id):
        customer_id, _ = _actor(ActorRole.CUSTOMER)
        assignment_id = _body().get("assignmentId")
        if not assignment_id:
            raise ValidationError("assignmentId is required")
        result = payments.create_payment_order(order_id, assignment_id, customer_id, runtime.gateway)
        return ok(result, "Payment order created", 201)

    @app.post("/orders/<order_id>/status")
    def update_status(order_id):
        actor_id, role = _actor(ActorRole.VENDOR)
        body = _body()
        new_status = parse_enum(OrderStatus, body.get("status"), "status")
        order = order_state.request_transition(order_id, new_status, actor_id, role, body.get("note"), runtime.notifier)
        return ok(order, "Order status updated")

    @app.post("/orders/<order_id>/cancel")
    def cancel(order_id):
        actor_id, role = _actor(ActorRole.CUSTOMER, ActorRole.ADMIN)
        order = order_state.cancel_order(order_id, actor_id, role, _body().get("note"), runtime.notifier)
        return ok(order, "Order cancelled")

    @app.post("/orders/<order_id>/refund")
    def refund(order_id):
        admin_id, _ = _actor(ActorRole.ADMIN)
        reason = (_body().get("reason") or "").strip()
        order = payments.refund_order(order_id, admin_id, reason, runtime.gateway, runtime.notifier)
        return ok(order, "Order refunded")

    # ---------- vendor responses ----------
    @app.post("/assignments/<assignment_id>/response")
    def respond(assignment_id):
        vendor_id, _ = _actor(ActorRole.VENDOR)
        body = _body()
        result = quotes.respond(
            assignment_id,
            vendor_id,
            body.get("action"),
            quoted_price=body.get("quotedPrice"),
            quoted_days=body.get("quotedDays"),
            notes=body.get("notes"),
            notifier=runtime.notifier,
        )
        return ok(result, "Response recorded")

    @app.get("/health")
    def health():
        return ok({"ok": True})

    return app
