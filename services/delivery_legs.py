# services/delivery_legs.py
from datetime import datetime
from typing import Optional, Dict, Any

from db import rquery_one, rexec, ts, new_id
from exceptions import NotFoundError
from models import DeliveryType, DeliveryStatus, OutboxEventType
from services.outbox import enqueue
from logger import get_logger

log = get_logger("delivery_legs")

ADDRESS_KEYS = ("full_name", "phone_number", "address_line1", "address_line2",
                "city", "state", "pincode", "landmark")


def _customer_address(order_row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: order_row.get(k) for k in ADDRESS_KEYS}

def _vendor_address(conn, vendor_id: str) -> Dict[str, Any]:
    v = rquery_one(conn, """
        SELECT name, shop_name, phone, address_line1, city, state, pincode
        FROM vendors WHERE id = ?
    """, (vendor_id,))
    if not v:
        raise NotFoundError(f"Vendor {vendor_id} not found")
    return {
        "full_name": v["shop_name"] or v["name"],
        "phone_number": v["phone"],
        "address_line1": v["address_line1"],
        "city": v["city"],
        "state": v["state"],
        "pincode": v["pincode"],
    }


def open_leg(conn, order_row: Dict[str, Any], delivery_type: DeliveryType,
             now: Optional[datetime] = None) -> str:
    """
    Create one delivery_tracking row and its INITIATE_PICKUP outbox row on the
    caller's transaction. TO_VENDOR carries the customer's cloth to the vendor;
    TO_CUSTOMER returns the finished item.
    """
    vendor_id = order_row["selected_vendor_id"]
    customer_id = order_row["customer_id"]
    stamp = ts(now)

    if delivery_type == DeliveryType.TO_VENDOR:
        from_party, to_party = customer_id, vendor_id
        pickup, drop = _customer_address(order_row), _vendor_address(conn, vendor_id)
    else:
        from_party, to_party = vendor_id, customer_id
        pickup, drop = _vendor_address(conn, vendor_id), _customer_address(order_row)

    tracking_id = new_id()
    rexec(conn, """
        INSERT INTO delivery_tracking
            (id, order_id, delivery_type, from_party, to_party, status, initiated_at, status_updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (tracking_id, order_row["id"], delivery_type.value, from_party, to_party,
          DeliveryStatus.PENDING.value, stamp, stamp))

    enqueue(conn, OutboxEventType.INITIATE_PICKUP, {
        "deliveryTrackingId": tracking_id,
        "orderId": order_row["id"],
        "deliveryType": delivery_type.value,
        "pickupAddress": pickup,
        "dropAddress": drop,
    })

    log.info(f"Order {order_row['id']}: {delivery_type.value} leg {tracking_id} opened")
    return tracking_id


def start_pickup_leg(conn, order_row: Dict[str, Any], now: Optional[datetime] = None) -> str:
    return open_leg(conn, order_row, DeliveryType.TO_VENDOR, now)

def start_return_leg(conn, order_row: Dict[str, Any], now: Optional[datetime] = None) -> str:
    return open_leg(conn, order_row, DeliveryType.TO_CUSTOMER, now)
