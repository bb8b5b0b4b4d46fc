from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


class OrderStatus(str, enum.Enum):
    PROCESSING = "Processing"
    PAID = "Paid"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


# Forward order of the automatic pipeline. CANCELLED sits outside of it.
ORDER_SEQUENCE: Tuple[OrderStatus, ...] = (
    OrderStatus.PROCESSING,
    OrderStatus.PAID,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


class PrescriptionStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    NEEDS_CLARIFICATION = "Needs Clarification"
    REFILL_REQUESTED = "Refill Requested"

    @property
    def is_awaiting_review(self) -> bool:
        return self in (PrescriptionStatus.PENDING, PrescriptionStatus.REFILL_REQUESTED)

    @property
    def is_settled(self) -> bool:
        # Approved is not settled: a refill re-enters review.
        return self in (PrescriptionStatus.REJECTED, PrescriptionStatus.NEEDS_CLARIFICATION)


RESOLUTION_OUTCOMES = (
    PrescriptionStatus.APPROVED,
    PrescriptionStatus.REJECTED,
    PrescriptionStatus.NEEDS_CLARIFICATION,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dump_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def load_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    # Older records may have been written without an offset; they were UTC.
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class Product:
    id: str
    price: int
    stock: int
    name: str = ""

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"price must be >= 0 for product {self.id}")
        if self.stock < 0:
            raise ValueError(f"stock must be >= 0 for product {self.id}")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "price": self.price, "stock": self.stock}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        return cls(id=data["id"], name=data.get("name", ""), price=int(data["price"]), stock=int(data["stock"]))


@dataclass(slots=True, frozen=True)
class CartLine:
    """What the shopper asked for at checkout time."""

    product_id: str
    quantity: int


@dataclass(slots=True, frozen=True)
class OrderLine:
    """A line of a placed order; the price is frozen at purchase time."""

    product_id: str
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return {"product_id": self.product_id, "quantity": self.quantity, "unit_price": self.unit_price}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLine":
        return cls(product_id=data["product_id"], quantity=int(data["quantity"]), unit_price=int(data["unit_price"]))


@dataclass(slots=True, frozen=True)
class ShippingAddress:
    full_name: str
    address_line1: str
    city: str
    state: str
    country: str
    address_line2: Optional[str] = None
    postal_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "full_name": self.full_name,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShippingAddress":
        return cls(
            full_name=data["full_name"],
            address_line1=data["address_line1"],
            address_line2=data.get("address_line2"),
            city=data["city"],
            state=data["state"],
            country=data["country"],
            postal_code=data.get("postal_code"),
        )


@dataclass(slots=True)
class Order:
    """
    A placed order. Items and money fields are fixed at creation; only the
    lifecycle machine touches ``status``, ``tracking_link`` and ``cancelled_at``.
    """

    id: str
    items: Tuple[OrderLine, ...]
    subtotal: int
    shipping_cost: int
    total: int
    shipping_address: ShippingAddress
    payment_method: str
    created_at: datetime
    status: OrderStatus = OrderStatus.PROCESSING
    tracking_link: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "items": [line.to_dict() for line in self.items],
            "subtotal": self.subtotal,
            "shipping_cost": self.shipping_cost,
            "total": self.total,
            "shipping_address": self.shipping_address.to_dict(),
            "payment_method": self.payment_method,
            "created_at": dump_datetime(self.created_at),
            "status": self.status.value,
            "tracking_link": self.tracking_link,
            "cancelled_at": dump_datetime(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            items=tuple(OrderLine.from_dict(line) for line in data["items"]),
            subtotal=int(data["subtotal"]),
            shipping_cost=int(data["shipping_cost"]),
            total=int(data["total"]),
            shipping_address=ShippingAddress.from_dict(data["shipping_address"]),
            payment_method=data["payment_method"],
            created_at=load_datetime(data["created_at"]),
            status=OrderStatus(data["status"]),
            tracking_link=data.get("tracking_link"),
            cancelled_at=load_datetime(data.get("cancelled_at")),
        )


@dataclass(slots=True)
class Prescription:
    id: str
    file_ref: str
    submitted_at: datetime
    status: PrescriptionStatus = PrescriptionStatus.PENDING
    file_name: Optional[str] = None
    content_sha256: Optional[str] = None
    auto_refill: bool = False
    approval_artifact: Optional[str] = None
    rejection_reason: Optional[str] = None
    cycle: int = 0  # 0 for the original upload, +1 per refill
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_ref": self.file_ref,
            "file_name": self.file_name,
            "content_sha256": self.content_sha256,
            "submitted_at": dump_datetime(self.submitted_at),
            "status": self.status.value,
            "auto_refill": self.auto_refill,
            "approval_artifact": self.approval_artifact,
            "rejection_reason": self.rejection_reason,
            "cycle": self.cycle,
            "resolved_at": dump_datetime(self.resolved_at),
            "resolved_by": self.resolved_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Prescription":
        return cls(
            id=data["id"],
            file_ref=data["file_ref"],
            file_name=data.get("file_name"),
            content_sha256=data.get("content_sha256"),
            submitted_at=load_datetime(data["submitted_at"]),
            status=PrescriptionStatus(data["status"]),
            auto_refill=bool(data.get("auto_refill", False)),
            approval_artifact=data.get("approval_artifact"),
            rejection_reason=data.get("rejection_reason"),
            cycle=int(data.get("cycle", 0)),
            resolved_at=load_datetime(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
        )
