# services/pricing.py
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from config import (
    DEFAULT_PLATFORM_FEE_PERCENT,
    DEFAULT_VENDOR_FEE_PERCENT,
    DEFAULT_DELIVERY_CHARGE_PER_LEG,
)
from db import rquery_one, rexec, ts
from models import QuoteBreakdown
from logger import get_logger

log = get_logger("pricing")

PLATFORM_FEE_KEY = "platform_fee_percent"
VENDOR_FEE_KEY = "vendor_fee_percent"
DELIVERY_CHARGE_KEY = "delivery_charge_per_leg"

CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def get_setting_decimal(conn, key: str, default: Decimal) -> Decimal:
    row = rquery_one(conn, "SELECT value FROM settings WHERE key = ?", (key,))
    if not row or row["value"] in (None, ""):
        return default
    try:
        return Decimal(str(row["value"]))
    except InvalidOperation:
        log.warning(f"Setting {key}={row['value']!r} is not a number; using default {default}")
        return default


def set_setting(conn, key: str, value) -> None:
    now = ts()
    updated = rexec(conn, "UPDATE settings SET value = ?, updated_at = ? WHERE key = ?", (str(value), now, key))
    if not updated:
        rexec(conn, "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)", (key, str(value), now))


def compute_breakdown(
    quoted_price: Decimal,
    *,
    cloth_provided: bool,
    platform_fee_percent: Decimal,
    vendor_fee_percent: Decimal,
    delivery_charge_per_leg: Decimal,
) -> QuoteBreakdown:
    """
    vendor_payout            = price - price * vendor_fee%
    price_after_platform_fee = price + price * platform_fee%
    delivery_charge          = per-leg charge * legs (pickup leg only when the customer supplies the cloth)
    final_price              = price_after_platform_fee + delivery_charge
    """
    price = _money(Decimal(quoted_price))
    legs = 2 if cloth_provided else 1

    vendor_payout = _money(price - price * vendor_fee_percent / 100)
    after_platform = _money(price + price * platform_fee_percent / 100)
    delivery_charge = _money(delivery_charge_per_leg * legs)

    return QuoteBreakdown(
        quoted_price=price,
        vendor_payout=vendor_payout,
        price_after_platform_fee=after_platform,
        delivery_charge=delivery_charge,
        final_price=_money(after_platform + delivery_charge),
        platform_fee_percent=platform_fee_percent,
        vendor_fee_percent=vendor_fee_percent,
    )


def quote_breakdown(conn, quoted_price: Decimal, cloth_provided: bool,
                    delivery_charge_per_leg: Optional[Decimal] = None) -> QuoteBreakdown:
    """Breakdown using the fee configuration in effect right now. Callers persist the result; it is never recomputed."""
    return compute_breakdown(
        quoted_price,
        cloth_provided=cloth_provided,
        platform_fee_percent=get_setting_decimal(conn, PLATFORM_FEE_KEY, DEFAULT_PLATFORM_FEE_PERCENT),
        vendor_fee_percent=get_setting_decimal(conn, VENDOR_FEE_KEY, DEFAULT_VENDOR_FEE_PERCENT),
        delivery_charge_per_leg=(
            delivery_charge_per_leg
            if delivery_charge_per_leg is not None
            else get_setting_decimal(conn, DELIVERY_CHARGE_KEY, DEFAULT_DELIVERY_CHARGE_PER_LEG)
        ),
    )
