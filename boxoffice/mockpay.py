from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import base64
import hashlib
import hmac
import json
import time
import uuid

from .errors import GatewayError, NotFoundError, SignatureError


# ----------------------------
# Payment Adapter Interface
# ----------------------------
@dataclass(frozen=True)
class LineItem:
    name: str
    description: str
    unit_amount: int  # pence
    quantity: int
    currency: str = "gbp"


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    checkout_url: str
    amount_total: int


class EventKind(str, Enum):
    COMPLETED = "completed"
    EXPIRED = "expired"
    OTHER = "other"


@dataclass(frozen=True)
class PaymentEvent:
    event_id: str
    type: str
    kind: EventKind
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount_total: Optional[int] = None
    customer_email: Optional[str] = None
    # untrusted: whatever the provider echoes back from checkout creation
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentAdapter(ABC):
    name = "abstract"
    # header carrying the provider's signature over the raw body
    signature_header = ""

    @abstractmethod
    async def create_checkout(
        self,
        line_items: List[LineItem],
        success_url: str,
        cancel_url: str,
        customer_email: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession: ...

    # must authenticate before looking at the content
    @abstractmethod
    def verify_event(
        self, payload: bytes, signature: Optional[str],
        secret: Optional[str] = None,
    ) -> PaymentEvent: ...

    @abstractmethod
    async def resolve_payment_intent(self, event: PaymentEvent) -> Optional[str]:
        ...

    @abstractmethod
    async def retrieve_checkout(self, session_id: str) -> Dict[str, Any]:
        ...


def check_line_items(line_items: List[LineItem]) -> None:
    if not line_items:
        raise GatewayError("at least one line item is required")
    for item in line_items:
        if item.quantity < 1 or item.unit_amount < 0:
            raise GatewayError(f"invalid line item {item.name!r}")


# ----------------------------
# MockPay implementation
# ----------------------------
MOCK_KINDS = {
    "payment.succeeded": EventKind.COMPLETED,
    "payment.failed": EventKind.EXPIRED,
    "payment.canceled": EventKind.EXPIRED,
    "payment.expired": EventKind.EXPIRED,
}


class MockPay(PaymentAdapter):
    """Self-hosted provider: HMAC-SHA256 (base64) over the raw body.

    Checkout sessions live in process; the mock page turns one into a signed
    event with build_event().
    """
    name = "mock"
    signature_header = "x-mockpay-signature"

    def __init__(self, secret: str, base_url: str = "") -> None:
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def create_checkout(
        self,
        line_items: List[LineItem],
        success_url: str,
        cancel_url: str,
        customer_email: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        check_line_items(line_items)
        psid = f"mock_{uuid.uuid4().hex}"
        amount = sum(i.unit_amount * i.quantity for i in line_items)
        self.sessions[psid] = {
            "session_id": psid,
            "status": "open",
            "payment_status": "unpaid",
            "amount_total": amount,
            "currency": line_items[0].currency,
            "customer_email": customer_email,
            "metadata": dict(metadata),
            "success_url": success_url.replace("{CHECKOUT_SESSION_ID}", psid),
            "cancel_url": cancel_url,
            "line_items": [i.name for i in line_items],
        }
        return CheckoutSession(
            session_id=psid,
            checkout_url=f"{self.base_url}/mockpay/{psid}",
            amount_total=amount,
        )

    def sign(self, payload: bytes, secret: Optional[str] = None) -> str:
        key = (secret or self.secret).encode()
        mac = hmac.new(key, payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_event(
        self, payload: bytes, signature: Optional[str],
        secret: Optional[str] = None,
    ) -> PaymentEvent:
        expected = self.sign(payload, secret)
        if not signature or not hmac.compare_digest(expected, signature):
            raise SignatureError("Invalid signature")
        try:
            data = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise SignatureError("Invalid JSON") from None
        if not isinstance(data, dict):
            raise SignatureError("Invalid event")

        event_type = str(data.get("type", ""))
        metadata = data.get("metadata") or {}
        amount = data.get("amount_total")
        return PaymentEvent(
            event_id=str(data.get("id", "")),
            type=event_type,
            kind=MOCK_KINDS.get(event_type, EventKind.OTHER),
            session_id=data.get("payment_session_id"),
            payment_intent_id=data.get("payment_intent_id"),
            amount_total=int(amount) if amount is not None else None,
            customer_email=data.get("customer_email"),
            metadata={str(k): str(v) for k, v in metadata.items()}
            if isinstance(metadata, dict) else {},
        )

    def build_event(self, psid: str, outcome: str) -> bytes:
        """Payload for payment.<outcome> on a session, marking it closed."""
        ps = self.sessions.get(psid)
        if ps is None:
            raise NotFoundError("payment session not found", session_id=psid)

        succeeded = outcome == "succeeded"
        intent = f"pi_mock_{uuid.uuid4().hex[:16]}" if succeeded else None
        ps["status"] = "complete" if succeeded else "expired"
        ps["payment_status"] = "paid" if succeeded else "unpaid"
        ps["payment_intent_id"] = intent

        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": f"payment.{outcome}",
            "payment_session_id": psid,
            "payment_intent_id": intent,
            "amount_total": ps["amount_total"],
            "currency": ps["currency"],
            "customer_email": ps["customer_email"],
            "metadata": ps["metadata"],
            "created_at": int(time.time()),
        }
        return json.dumps(event).encode()

    async def resolve_payment_intent(self, event: PaymentEvent) -> Optional[str]:
        return event.payment_intent_id

    async def retrieve_checkout(self, session_id: str) -> Dict[str, Any]:
        ps = self.sessions.get(session_id)
        if ps is None:
            raise GatewayError("no such checkout session",
                               session_id=session_id)
        return {
            "session_id": session_id,
            "status": ps["payment_status"],
            "amount_total": ps["amount_total"],
            "customer_email": ps["customer_email"],
            "metadata": dict(ps["metadata"]),
        }
