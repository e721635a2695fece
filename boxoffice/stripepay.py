from __future__ import annotations
import asyncio
import json
from typing import Any, Dict, List, Optional

import stripe
import structlog

from .errors import GatewayError, SignatureError
from .mockpay import (
    CheckoutSession, EventKind, LineItem, PaymentAdapter, PaymentEvent,
    check_line_items,
)

logger = structlog.get_logger(__name__)

STRIPE_KINDS = {
    "checkout.session.completed": EventKind.COMPLETED,
    "checkout.session.expired": EventKind.EXPIRED,
}


def _id_of(value: Any) -> Optional[str]:
    # expandable fields arrive either as an id or as the expanded object
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


class StripePay(PaymentAdapter):
    """Stripe Checkout. The SDK is blocking, so calls run in a thread."""
    name = "stripe"
    signature_header = "stripe-signature"

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def create_checkout(
        self,
        line_items: List[LineItem],
        success_url: str,
        cancel_url: str,
        customer_email: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        check_line_items(line_items)
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": item.currency,
                            "product_data": {
                                "name": item.name,
                                "description": item.description,
                            },
                            "unit_amount": item.unit_amount,
                        },
                        "quantity": item.quantity,
                    }
                    for item in line_items
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error("stripe_checkout_failed", error=str(e),
                         error_type=type(e).__name__)
            raise GatewayError(e.user_message or str(e)) from e

        return CheckoutSession(
            session_id=session.id,
            checkout_url=session.url,
            amount_total=int(session.amount_total or 0),
        )

    def verify_event(
        self, payload: bytes, signature: Optional[str],
        secret: Optional[str] = None,
    ) -> PaymentEvent:
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature or "", secret or self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Webhook Error: {e}") from e
        except ValueError as e:
            # not UTF-8, or signed but not JSON
            raise SignatureError(f"Webhook Error: {e}") from e

        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}
        amount = obj.get("amount_total")
        return PaymentEvent(
            event_id=event["id"],
            type=event["type"],
            kind=STRIPE_KINDS.get(event["type"], EventKind.OTHER),
            session_id=obj.get("id"),
            payment_intent_id=_id_of(obj.get("payment_intent")),
            amount_total=int(amount) if amount is not None else None,
            customer_email=obj.get("customer_email"),
            metadata={str(k): str(v) for k, v in metadata.items()},
        )

    async def resolve_payment_intent(self, event: PaymentEvent) -> Optional[str]:
        if not event.payment_intent_id:
            return None
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve,
                event.payment_intent_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            # the id on the session is still good enough to record
            logger.warning("payment_intent_lookup_failed",
                           payment_intent_id=event.payment_intent_id,
                           error=str(e))
            return event.payment_intent_id
        logger.info("payment_intent_resolved", payment_intent_id=intent.id,
                    status=intent.status)
        return intent.id

    async def retrieve_checkout(self, session_id: str) -> Dict[str, Any]:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                session_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise GatewayError(e.user_message or str(e),
                               session_id=session_id) from e
        return {
            "session_id": session.id,
            "status": session.payment_status,
            "amount_total": session.amount_total,
            "customer_email": session.customer_email,
            "metadata": dict(session.metadata or {}),
        }
