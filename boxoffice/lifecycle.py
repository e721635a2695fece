"""
Order lifecycle: checkout initiation and webhook reconciliation.

    Created --initiate--> Pending --completed event--> Completed
                                  --expired event----> Failed

An order is written once as pending, right after the gateway handed out a
checkout intent, and leaves pending exactly once. The store's conditional
update decides which webhook delivery performs the transition; every other
delivery for that order is acknowledged without side effects. Only the
delivery that performed the completion sends the confirmation email.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from .catalog import CATALOG, CURRENCY
from .errors import (
    CorrelationError, DeliveryError, NotFoundError, ValidationError,
)
from .helpers import new_order_reference, now_ts
from .infra.timings import timeit
from .mockpay import EventKind, LineItem, PaymentAdapter, PaymentEvent
from .model.order import Customer, Order, OrderStatus, ProductType, Shipping
from .model.orderstore import OrderStore
from .notifier import NotificationKind, Notifier

logger = structlog.get_logger(__name__)

# payment state, amounts and identifiers are never amended
AMENDABLE = frozenset({"customer", "shipping"})


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    session_id: str
    order_reference: str


class WebhookOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ORDER_MISSING = "order_missing"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    order_reference: Optional[str] = None
    notified: bool = False


# ----------------------------
# Validation
# ----------------------------
def validate_quantity(product_type: ProductType, quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Invalid quantity", quantity=quantity)
    if quantity < 1:
        raise ValidationError("Invalid quantity", quantity=quantity)
    if product_type is ProductType.BOOK and quantity != 1:
        raise ValidationError("Book orders are fixed at one copy",
                              quantity=quantity)
    return quantity


def validate_shipping(product_type: ProductType,
                      shipping: Optional[Shipping]) -> Optional[Shipping]:
    if product_type is ProductType.BOOK:
        if shipping is None or not shipping.complete:
            raise ValidationError(
                "Shipping address is required for book orders"
            )
        return shipping
    if shipping is not None:
        raise ValidationError("Ticket orders take no shipping address")
    return None


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        gateway: PaymentAdapter,
        notifier: Notifier,
        *,
        frontend_url: str,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")
        self.clock = clock

    # ----------------------------
    # Checkout initiation
    # ----------------------------
    async def initiate(
        self,
        product_type: ProductType | str,
        customer: Customer,
        quantity: Any,
        shipping: Optional[Shipping] = None,
    ) -> CheckoutResult:
        if not isinstance(product_type, ProductType):
            product_type = ProductType.parse(product_type)
        quantity = validate_quantity(product_type, quantity)
        shipping = validate_shipping(product_type, shipping)

        product = CATALOG[product_type]
        ref = new_order_reference(product.reference_prefix)
        log = logger.bind(order_reference=ref, product_type=product_type.value)

        metadata = {
            "order_reference": ref,
            "product_type": product_type.value,
            "customer_name": customer.name,
            "customer_phone": customer.phone or "",
            "quantity": str(quantity),
        }
        if shipping is not None:
            metadata.update({
                "shipping_address": shipping.address,
                "shipping_city": shipping.city,
                "shipping_postcode": shipping.postcode,
            })

        async with timeit("gateway.create_checkout"):
            checkout = await self.gateway.create_checkout(
                [LineItem(
                    name=product.name,
                    description=product.description,
                    unit_amount=product.unit_amount,
                    quantity=quantity,
                    currency=CURRENCY,
                )],
                success_url=(
                    f"{self.frontend_url}/success"
                    f"?session_id={{CHECKOUT_SESSION_ID}}&order_ref={ref}"
                ),
                cancel_url=f"{self.frontend_url}/cancelled",
                customer_email=customer.email,
                metadata=metadata,
            )

        expected = product.unit_amount * quantity
        if checkout.amount_total != expected:
            log.warning("checkout_amount_differs",
                        expected=expected, reported=checkout.amount_total)

        ts = self.clock()
        order = Order(
            order_reference=ref,
            product_type=product_type,
            customer=customer,
            quantity=quantity,
            shipping=shipping,
            # the gateway's figure is what the customer will be charged
            amount_total=checkout.amount_total,
            currency=CURRENCY,
            payment_session_id=checkout.session_id,
            status=OrderStatus.PENDING,
            created_at=ts,
            updated_at=ts,
        )
        try:
            async with timeit("store.create"):
                await self.store.create(order)
        except Exception:
            # the checkout intent now exists without a row
            log.error("order_persist_failed", session_id=checkout.session_id,
                      exc_info=True)
            raise

        log.info("order_created", session_id=checkout.session_id,
                 amount_total=checkout.amount_total, quantity=quantity)
        return CheckoutResult(
            checkout_url=checkout.checkout_url,
            session_id=checkout.session_id,
            order_reference=ref,
        )

    # ----------------------------
    # Webhook reconciliation
    # ----------------------------
    async def handle_payment_event(
        self, payload: bytes, signature: Optional[str]
    ) -> WebhookResult:
        # raises SignatureError before anything in the payload is looked at
        event = self.gateway.verify_event(payload, signature)
        log = logger.bind(event_id=event.event_id, event_type=event.type)

        if event.kind is EventKind.OTHER:
            log.info("webhook_event_ignored")
            return WebhookResult(WebhookOutcome.IGNORED)

        ref = (event.metadata.get("order_reference") or "").strip()
        if not ref:
            log.warning("webhook_event_uncorrelated",
                        session_id=event.session_id)
            raise CorrelationError("event carries no order reference",
                                   event_id=event.event_id)
        log = log.bind(order_reference=ref)

        async with timeit("store.find"):
            order = await self.store.find_by_reference(ref)
        if order is None:
            # acknowledged so the provider stops redelivering
            log.error("webhook_order_missing", session_id=event.session_id)
            return WebhookResult(WebhookOutcome.ORDER_MISSING, ref)

        if order.status.is_terminal:
            log.info("webhook_duplicate", status=order.status.value)
            return WebhookResult(WebhookOutcome.DUPLICATE, ref)

        if event.kind is EventKind.COMPLETED:
            return await self._complete(order, event, log)
        return await self._expire(order, log)

    async def _complete(self, order: Order, event: PaymentEvent,
                        log) -> WebhookResult:
        ref = order.order_reference
        if event.session_id and event.session_id != order.payment_session_id:
            log.error("order_session_mismatch", session_id=event.session_id,
                      expected=order.payment_session_id)
        if (event.amount_total is not None
                and event.amount_total != order.amount_total):
            log.error("order_amount_mismatch", reported=event.amount_total,
                      recorded=order.amount_total)

        async with timeit("gateway.resolve_payment_intent"):
            intent_id = await self.gateway.resolve_payment_intent(event)
        if not intent_id:
            # still completed; the session id is the only charge handle left
            intent_id = event.session_id or order.payment_session_id
            log.error("order_payment_intent_missing", recorded=intent_id)

        fields = {
            "status": OrderStatus.COMPLETED,
            "payment_intent_id": intent_id,
        }
        async with timeit("store.update_if"):
            applied = await self.store.update_if(ref, OrderStatus.PENDING,
                                                 fields)
        if not applied:
            log.info("webhook_duplicate", reason="lost_race")
            return WebhookResult(WebhookOutcome.DUPLICATE, ref)
        log.info("order_completed", payment_intent_id=intent_id)

        completed = order.with_fields({
            "status": OrderStatus.COMPLETED.value,
            "payment_intent_id": intent_id,
        })
        kind = NotificationKind.for_order(completed)
        try:
            await self.notifier.notify(completed, kind)
        except DeliveryError as e:
            # payment happened; the email is followed up by hand
            log.error("confirmation_email_failed", kind=kind.value,
                      error=e.message, to=completed.customer.email)
            return WebhookResult(WebhookOutcome.COMPLETED, ref, notified=False)
        return WebhookResult(WebhookOutcome.COMPLETED, ref, notified=True)

    async def _expire(self, order: Order, log) -> WebhookResult:
        ref = order.order_reference
        async with timeit("store.update_if"):
            applied = await self.store.update_if(
                ref, OrderStatus.PENDING, {"status": OrderStatus.FAILED}
            )
        if not applied:
            log.info("webhook_duplicate", reason="lost_race")
            return WebhookResult(WebhookOutcome.DUPLICATE, ref)
        log.info("order_failed")
        return WebhookResult(WebhookOutcome.FAILED, ref)

    # ----------------------------
    # Lookups and amendments
    # ----------------------------
    async def get_order(self, ref: str) -> Order:
        async with timeit("store.find"):
            order = await self.store.find_by_reference(ref)
        if order is None:
            raise NotFoundError("order not found", order_reference=ref)
        return order

    async def amend_order(self, ref: str, changes: Dict[str, Any]) -> Order:
        """Correct contact details. Payment state and amounts never change
        through here."""
        if not isinstance(changes, dict) or not changes:
            raise ValidationError("no changes supplied")

        unknown = sorted(set(changes) - AMENDABLE)
        if unknown:
            raise ValidationError(
                "fields cannot be changed: " + ", ".join(unknown),
                fields=unknown,
            )

        order = await self.get_order(ref)
        fields: Dict[str, Any] = {}

        if "customer" in changes:
            patch = changes["customer"]
            if not isinstance(patch, dict):
                raise ValidationError("customer must be an object")
            merged = Customer.from_payload({
                "name": patch.get("name", order.customer.name),
                "email": patch.get("email", order.customer.email),
                "phone": patch.get("phone", order.customer.phone),
            })
            fields.update({
                "customer_name": merged.name,
                "customer_email": merged.email,
                "customer_phone": merged.phone,
            })

        if "shipping" in changes:
            if order.product_type is not ProductType.BOOK:
                raise ValidationError("Ticket orders take no shipping address")
            patch = changes["shipping"]
            if not isinstance(patch, dict):
                raise ValidationError("shipping must be an object")
            current = order.shipping
            merged_shipping = Shipping.from_payload({
                f: patch.get(f, getattr(current, f) if current else None)
                for f in Shipping.FIELDS
            })
            validate_shipping(ProductType.BOOK, merged_shipping)
            fields.update({
                "shipping_address": merged_shipping.address,
                "shipping_city": merged_shipping.city,
                "shipping_postcode": merged_shipping.postcode,
            })

        async with timeit("store.update"):
            updated = await self.store.update(ref, fields)
        logger.info("order_amended", order_reference=ref,
                    fields=sorted(fields))
        return updated

    async def verify_session(self, session_id: str) -> Dict[str, Any]:
        async with timeit("gateway.retrieve_checkout"):
            return await self.gateway.retrieve_checkout(session_id)
