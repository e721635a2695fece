from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import ValidationError
from ..helpers import from_iso, is_valid_email, to_iso


class ProductType(str, Enum):
    TICKET = "ticket"
    BOOK = "book"

    @classmethod
    def parse(cls, value: Any) -> "ProductType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                'Invalid product type. Must be "ticket" or "book"',
                product_type=value,
            ) from None


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


# ----------------------------
# Value objects
# ----------------------------
@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Customer":
        if not isinstance(payload, dict):
            raise ValidationError("customer is required")
        name = _text(payload.get("name"))
        email = _text(payload.get("email"))
        if not name:
            raise ValidationError("customer.name is required")
        if not is_valid_email(email):
            raise ValidationError(
                "customer.email is required and must be a valid email address"
            )
        return cls(name=name, email=email, phone=_text(payload.get("phone")))


@dataclass(frozen=True)
class Shipping:
    address: str
    city: str
    postcode: str

    FIELDS = ("address", "city", "postcode")

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["Shipping"]:
        """Parse shipping fields; None when nothing was supplied at all.

        A partially filled block is returned as-is so the caller can reject it
        with a message about the product type.
        """
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise ValidationError("shipping must be an object")
        values = {f: _text(payload.get(f)) or "" for f in cls.FIELDS}
        if not any(values.values()):
            return None
        return cls(**values)

    @property
    def complete(self) -> bool:
        return all((self.address, self.city, self.postcode))


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# ----------------------------
# Order
# ----------------------------
# Column order of the row form (spreadsheet layout).
ROW_FIELDS = (
    "order_reference",
    "product_type",
    "customer_name",
    "customer_email",
    "customer_phone",
    "quantity",
    "amount_total",
    "currency",
    "payment_session_id",
    "payment_intent_id",
    "status",
    "shipping_address",
    "shipping_city",
    "shipping_postcode",
    "created_at",
    "updated_at",
)


@dataclass(frozen=True)
class Order:
    order_reference: str
    product_type: ProductType
    customer: Customer
    quantity: int
    amount_total: int  # pence
    currency: str
    payment_session_id: str
    status: OrderStatus = OrderStatus.PENDING
    shipping: Optional[Shipping] = None
    payment_intent_id: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_row(self) -> Dict[str, str]:
        shipping = self.shipping
        return {
            "order_reference": self.order_reference,
            "product_type": self.product_type.value,
            "customer_name": self.customer.name,
            "customer_email": self.customer.email,
            "customer_phone": self.customer.phone or "",
            "quantity": str(self.quantity),
            "amount_total": str(self.amount_total),
            "currency": self.currency,
            "payment_session_id": self.payment_session_id,
            "payment_intent_id": self.payment_intent_id or "",
            "status": self.status.value,
            "shipping_address": shipping.address if shipping else "",
            "shipping_city": shipping.city if shipping else "",
            "shipping_postcode": shipping.postcode if shipping else "",
            "created_at": to_iso(self.created_at) or "",
            "updated_at": to_iso(self.updated_at) or "",
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        def s(key: str) -> str:
            value = row.get(key)
            return "" if value is None else str(value)

        shipping = None
        if s("shipping_address") or s("shipping_city") or s("shipping_postcode"):
            shipping = Shipping(
                address=s("shipping_address"),
                city=s("shipping_city"),
                postcode=s("shipping_postcode"),
            )
        return cls(
            order_reference=s("order_reference"),
            product_type=ProductType(s("product_type") or "ticket"),
            customer=Customer(
                name=s("customer_name"),
                email=s("customer_email"),
                phone=s("customer_phone") or None,
            ),
            quantity=int(s("quantity") or "1"),
            amount_total=int(s("amount_total") or "0"),
            currency=s("currency") or "gbp",
            payment_session_id=s("payment_session_id"),
            payment_intent_id=s("payment_intent_id") or None,
            status=OrderStatus(s("status") or "pending"),
            shipping=shipping,
            created_at=_ts(row.get("created_at")),
            updated_at=_ts(row.get("updated_at")),
        )

    def with_fields(self, fields: Dict[str, Any]) -> "Order":
        """Apply flat row fields (as passed to a store update) to a copy."""
        row: Dict[str, Any] = self.to_row()
        row["created_at"] = self.created_at
        row["updated_at"] = self.updated_at
        row.update(fields)
        return Order.from_row(row)

    def to_view(self) -> Dict[str, Any]:
        """JSON view for the HTTP API (camelCase keys)."""
        return {
            "orderReference": self.order_reference,
            "productType": self.product_type.value,
            "status": self.status.value,
            "customer": {
                "name": self.customer.name,
                "email": self.customer.email,
                "phone": self.customer.phone,
            },
            "quantity": self.quantity,
            "shipping": None if self.shipping is None else {
                "address": self.shipping.address,
                "city": self.shipping.city,
                "postcode": self.shipping.postcode,
            },
            "amountTotal": self.amount_total,
            "currency": self.currency,
            "paymentSessionId": self.payment_session_id,
            "paymentIntentId": self.payment_intent_id,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


def _ts(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except ValueError:
        return from_iso(str(value)) or 0.0


def normalize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce update values into their row form (enums -> str, None -> '')."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key not in ROW_FIELDS:
            raise ValueError(f"unknown order field {key!r}")
        if isinstance(value, Enum):
            value = value.value
        out[key] = "" if value is None else value
    return out
