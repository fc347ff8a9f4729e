#api.py
import hashlib
import hmac
import json
from typing import Optional, Dict, Any

import requests

import config
from exceptions import ExternalServiceError
from models import ApiDecodeResult
from logger import get_logger

log = get_logger("api")


# ------------------------------------------------------------
# Webhook signatures (HMAC-SHA256, hex digest of the raw body)
# ------------------------------------------------------------
def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_body(secret, body), signature.strip())


# ------------------------------------------------------------
# Generic POST + decode
# ------------------------------------------------------------
def send_post_request(
    entity_name: str,
    url: str,
    payload: Dict[str, Any],
    logger,
    session: requests.Session,
    auth=None,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    hdrs = {"Content-Type": "application/json", "Accept": "application/json"}
    hdrs.update(headers or {})

    logger.debug(f"Sending '{entity_name}' payload: {json.dumps(payload, default=str)}")
    try:
        resp = session.post(url, json=payload, headers=hdrs, auth=auth, timeout=60)
    except requests.RequestException as e:
        raise ExternalServiceError(
            f"{entity_name} request failed: {e}",
            api_entity=entity_name,
            api_error_message=str(e),
        ) from e
    logger.debug(f"API Response: {resp.status_code} {resp.text}")
    return resp

def decode_generic(entity_name: str, resp: requests.Response) -> ApiDecodeResult:
    raw_err = ""
    messages = []
    decoded_payload = None

    try:
        decoded_payload = resp.json()
    except ValueError as e:
        raw_err = f"Exception parsing API response JSON: {e}"

    if isinstance(decoded_payload, dict):
        # gateway style: {"error": {"code": ..., "description": ...}}
        err = decoded_payload.get("error")
        if isinstance(err, dict):
            raw_err = err.get("description") or err.get("code") or ""
        elif isinstance(err, str):
            raw_err = err

    if raw_err:
        messages.append(raw_err)

    return ApiDecodeResult(resp.status_code, entity_name, raw_err, messages, decoded_payload)

def raise_for_decoded(decoded: ApiDecodeResult, resp: requests.Response) -> Dict[str, Any]:
    if not decoded.ok or not isinstance(decoded.decoded_payload, dict):
        raise ExternalServiceError(
            f"{decoded.entity} failed (HTTP {decoded.status_code}): {'; '.join(decoded.messages) or 'no details'}",
            api_entity=decoded.entity,
            api_status=decoded.status_code,
            api_error_message=decoded.raw_error,
            raw_response_text=resp.text,
        )
    return decoded.decoded_payload


# ------------------------------------------------------------
# Payment gateway
# ------------------------------------------------------------
class PaymentGateway:
    """create-order and refund against the payment gateway REST API."""

    def __init__(
        self,
        base_url: str = config.GATEWAY_API_URL,
        key_id: str = config.GATEWAY_KEY_ID,
        key_secret: str = config.GATEWAY_KEY_SECRET,
        session: requests.Session = config.SESSION,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = (key_id, key_secret)
        self.session = session

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes}
        resp = send_post_request("gateway.create_order", f"{self.base_url}/orders", payload, log, self.session, auth=self.auth)
        return raise_for_decoded(decode_generic("gateway.create_order", resp), resp)

    def refund(self, payment_id: str, speed: str = "normal", notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {"speed": speed, "notes": notes or {}}
        resp = send_post_request(
            "gateway.refund", f"{self.base_url}/payments/{payment_id}/refund", payload, log, self.session, auth=self.auth
        )
        return raise_for_decoded(decode_generic("gateway.refund", resp), resp)


# ------------------------------------------------------------
# Delivery carrier
# ------------------------------------------------------------
class DeliveryCarrier:
    """
    dispatch-pickup contract: deliveryTrackingId, orderId, pickup and drop
    addresses. The carrier is expected to treat deliveryTrackingId as its
    idempotency key, so a re-sent outbox row does not book a second pickup.
    """

    def __init__(
        self,
        base_url: str = config.CARRIER_API_URL,
        api_key: str = config.CARRIER_API_KEY,
        session: requests.Session = config.SESSION,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session

    def dispatch_pickup(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base_url:
            raise ExternalServiceError(
                "Delivery carrier integration is not configured (CARRIER_API_URL empty)",
                api_entity="carrier.dispatch_pickup",
            )
        headers = {"Idempotency-Key": str(payload.get("deliveryTrackingId", ""))}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        resp = send_post_request("carrier.dispatch_pickup", f"{self.base_url}/pickups", payload, log, self.session, headers=headers)
        return raise_for_decoded(decode_generic("carrier.dispatch_pickup", resp), resp)


# ------------------------------------------------------------
# Push
# ------------------------------------------------------------
class PushClient:
    def __init__(
        self,
        base_url: str = config.PUSH_API_URL,
        api_key: str = config.PUSH_API_KEY,
        session: requests.Session = config.SESSION,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def send(self, token: str, title: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        payload = {"token": token, "title": title, "message": message, "data": data or {}}
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        resp = send_post_request("push.send", f"{self.base_url}/send", payload, log, self.session, headers=headers)
        if resp.status_code >= 400:
            raise ExternalServiceError(
                f"push.send failed (HTTP {resp.status_code})",
                api_entity="push.send",
                api_status=resp.status_code,
                raw_response_text=resp.text,
            )
