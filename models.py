#models.py
from dataclasses import dataclass, field, fields
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Dict, Any, List, Type, TypeVar

from exceptions import ValidationError

E = TypeVar("E", bound=Enum)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED = "ITEM_PICKUP_FROM_CUSTOMER_SCHEDULED"
    ITEM_DELIVERED_TO_VENDOR = "ITEM_DELIVERED_TO_VENDOR"
    WORK_STARTED = "WORK_STARTED"
    ITEM_READY_FOR_PICKUP = "ITEM_READY_FOR_PICKUP"
    ITEM_PICKED_UP_FROM_VENDOR = "ITEM_PICKED_UP_FROM_VENDOR"
    ITEM_DELIVERED_TO_CUSTOMER = "ITEM_DELIVERED_TO_CUSTOMER"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# The orders.order_status column only ever holds one of these; the finer
# sub-states live on the timeline.
COARSE_ORDER_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.IN_PROGRESS,
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
)


class AssignmentStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    FROZEN = "FROZEN"
    FINALIZED = "FINALIZED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ACTIVE_SLOT_STATUSES = (AssignmentStatus.PENDING, AssignmentStatus.ACCEPTED)


class VendorStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    BLOCKED = "BLOCKED"


class QuoteAction(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"
    SYSTEM = "system"
    PAYMENT_GATEWAY = "payment_gateway"
    LOGISTICS = "logistics"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class OutboxEventType(str, Enum):
    INITIATE_PICKUP = "INITIATE_PICKUP"


class DeliveryType(str, Enum):
    TO_VENDOR = "TO_VENDOR"
    TO_CUSTOMER = "TO_CUSTOMER"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"


class DeliverySubStatus(str, Enum):
    PICKUP_ASSIGNED = "PICKUP_ASSIGNED"
    PICKUP_IN_TRANSIT = "PICKUP_IN_TRANSIT"
    PICKUP_COMPLETE = "PICKUP_COMPLETE"
    DELIVERY_IN_TRANSIT = "DELIVERY_IN_TRANSIT"
    DELIVERY_COMPLETE = "DELIVERY_COMPLETE"


class PaymentEventType(str, Enum):
    CAPTURED = "payment.captured"
    FAILED = "payment.failed"


class PayoutStatus(str, Enum):
    ACTION_REQUIRED = "action_required"


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Boundary check: turn a raw string into a closed enum or fail with a ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip())
    except (ValueError, TypeError):
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            data={field_name: f"must be one of: {allowed}"},
        )


# ------------------------------------------------------------
# Fixed timestamp records (one named slot per known sub-state)
# ------------------------------------------------------------
@dataclass
class OrderStatusTimestamps:
    """First wall-clock time each timeline status was reached. Cache only; the timeline is authoritative."""
    pending_at: Optional[str] = None
    in_progress_at: Optional[str] = None
    item_pickup_from_customer_scheduled_at: Optional[str] = None
    item_delivered_to_vendor_at: Optional[str] = None
    work_started_at: Optional[str] = None
    item_ready_for_pickup_at: Optional[str] = None
    item_picked_up_from_vendor_at: Optional[str] = None
    item_delivered_to_customer_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    refunded_at: Optional[str] = None

    @staticmethod
    def column_for(status: OrderStatus) -> str:
        return f"{status.value.lower()}_at"

    @classmethod
    def columns(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OrderStatusTimestamps":
        return cls(**{c: row.get(c) for c in cls.columns()})

    def get(self, status: OrderStatus) -> Optional[str]:
        return getattr(self, self.column_for(status))


@dataclass
class DeliveryTimestamps:
    initiated_at: Optional[str] = None
    pickup_assigned_at: Optional[str] = None
    pickup_in_transit_at: Optional[str] = None
    pickup_completed_at: Optional[str] = None
    delivery_in_transit_at: Optional[str] = None
    delivery_completed_at: Optional[str] = None

    @classmethod
    def columns(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeliveryTimestamps":
        return cls(**{c: row.get(c) for c in cls.columns()})


# sub-status -> (timestamp slot, leg status after the event)
SUB_STATUS_SLOTS: Dict[DeliverySubStatus, tuple[str, DeliveryStatus]] = {
    DeliverySubStatus.PICKUP_ASSIGNED: ("pickup_assigned_at", DeliveryStatus.ASSIGNED),
    DeliverySubStatus.PICKUP_IN_TRANSIT: ("pickup_in_transit_at", DeliveryStatus.IN_TRANSIT),
    DeliverySubStatus.PICKUP_COMPLETE: ("pickup_completed_at", DeliveryStatus.IN_TRANSIT),
    DeliverySubStatus.DELIVERY_IN_TRANSIT: ("delivery_in_transit_at", DeliveryStatus.IN_TRANSIT),
    DeliverySubStatus.DELIVERY_COMPLETE: ("delivery_completed_at", DeliveryStatus.DELIVERED),
}

# Leg status only moves forward; a late sub-status still stamps its slot.
DELIVERY_STATUS_RANK: Dict[DeliveryStatus, int] = {s: i for i, s in enumerate(DeliveryStatus)}


# ------------------------------------------------------------
# Entities
# ------------------------------------------------------------
@dataclass
class Order:
    id: str
    customer_id: str
    order_name: str
    service_type: str
    required_by_date: date
    cloth_provided: bool
    order_status: OrderStatus
    timestamps: OrderStatusTimestamps
    selected_vendor_id: Optional[str] = None
    final_quote_id: Optional[str] = None
    payment_id: Optional[str] = None
    is_paid: bool = False
    is_refunded: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            order_name=row["order_name"],
            service_type=row["service_type"],
            required_by_date=date.fromisoformat(row["required_by_date"]),
            cloth_provided=bool(row["cloth_provided"]),
            order_status=OrderStatus(row["order_status"]),
            timestamps=OrderStatusTimestamps.from_row(row),
            selected_vendor_id=row.get("selected_vendor_id"),
            final_quote_id=row.get("final_quote_id"),
            payment_id=row.get("payment_id"),
            is_paid=bool(row.get("is_paid")),
            is_refunded=bool(row.get("is_refunded")),
            created_at=row.get("created_at"),
        )


@dataclass
class Assignment:
    id: str
    order_id: str
    vendor_id: str
    status: AssignmentStatus
    created_at: str
    response_note: Optional[str] = None
    status_updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Assignment":
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            vendor_id=row["vendor_id"],
            status=AssignmentStatus(row["status"]),
            created_at=row["created_at"],
            response_note=row.get("response_note"),
            status_updated_at=row.get("status_updated_at"),
        )


@dataclass(frozen=True)
class QuoteBreakdown:
    quoted_price: Decimal
    vendor_payout: Decimal
    price_after_platform_fee: Decimal
    delivery_charge: Decimal
    final_price: Decimal
    platform_fee_percent: Decimal
    vendor_fee_percent: Decimal

    @property
    def final_price_minor(self) -> int:
        return to_minor_units(self.final_price)


@dataclass
class Quote:
    id: str
    order_vendor_id: str
    quoted_days: int
    breakdown: QuoteBreakdown
    is_processed: bool
    created_at: str
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Quote":
        return cls(
            id=row["id"],
            order_vendor_id=row["order_vendor_id"],
            quoted_days=int(row["quoted_days"]),
            breakdown=QuoteBreakdown(
                quoted_price=Decimal(row["quoted_price"]),
                vendor_payout=Decimal(row["vendor_payout"]),
                price_after_platform_fee=Decimal(row["price_after_platform_fee"]),
                delivery_charge=Decimal(row["delivery_charge"]),
                final_price=Decimal(row["final_price"]),
                platform_fee_percent=Decimal(row["platform_fee_percent"]),
                vendor_fee_percent=Decimal(row["vendor_fee_percent"]),
            ),
            is_processed=bool(row["is_processed"]),
            created_at=row["created_at"],
            notes=row.get("notes"),
        )


@dataclass
class TimelineEntry:
    order_id: str
    previous_status: Optional[OrderStatus]
    new_status: OrderStatus
    changed_by: str
    changed_by_role: ActorRole
    changed_at: str
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TimelineEntry":
        prev = row.get("previous_status")
        return cls(
            order_id=row["order_id"],
            previous_status=OrderStatus(prev) if prev else None,
            new_status=OrderStatus(row["new_status"]),
            changed_by=row["changed_by"],
            changed_by_role=ActorRole(row["changed_by_role"]),
            changed_at=row["changed_at"],
            notes=row.get("notes"),
        )


@dataclass
class OutboxRecord:
    id: str
    event_type: str
    payload: Dict[str, Any]
    status: OutboxStatus
    created_at: str
    failure_reason: Optional[str] = None
    status_updated_at: Optional[str] = None
    attempts: int = 0


@dataclass
class DeliveryTracking:
    id: str
    order_id: str
    delivery_type: DeliveryType
    from_party: str
    to_party: str
    status: DeliveryStatus
    timestamps: DeliveryTimestamps

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeliveryTracking":
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            delivery_type=DeliveryType(row["delivery_type"]),
            from_party=row["from_party"],
            to_party=row["to_party"],
            status=DeliveryStatus(row["status"]),
            timestamps=DeliveryTimestamps.from_row(row),
        )


@dataclass
class PaymentEvent:
    """Gateway webhook body after signature verification. `notes` is the correlation metadata bag."""
    event: PaymentEventType
    payment_id: str
    amount_minor: int
    currency: str
    method: str
    status: str
    created_at: Optional[int] = None
    error_description: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class ApiDecodeResult:
    status_code: Optional[int]
    entity: str
    raw_error: str
    messages: List[str] = field(default_factory=list)
    decoded_payload: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300
