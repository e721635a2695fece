"""Checkout initiation: validation, pricing and the pending order row."""

import pytest

from boxoffice.catalog import CATALOG
from boxoffice.errors import GatewayError, StoreError, ValidationError
from boxoffice.model.order import OrderStatus, ProductType, Shipping
from boxoffice.model.orderstore import MemoryOrderStore

from conftest import FRONTEND_URL, run


class FailingCreateStore(MemoryOrderStore):
    async def create(self, order):
        raise StoreError("sheet unavailable")


class TestInitiateTicket:
    def test_creates_pending_order_priced_per_ticket(self, lifecycle, store, alice):
        result = run(lifecycle.initiate(ProductType.TICKET, alice, 2))

        order = store.orders[result.order_reference]
        assert order.status is OrderStatus.PENDING
        assert order.amount_total == 2 * CATALOG[ProductType.TICKET].unit_amount
        assert order.amount_total == 5000
        assert order.currency == "gbp"
        assert order.quantity == 2
        assert order.shipping is None
        assert order.payment_session_id == result.session_id
        assert order.payment_intent_id is None
        assert order.customer == alice

    def test_reference_uses_ticket_prefix(self, lifecycle, alice):
        result = run(lifecycle.initiate("ticket", alice, 1))
        assert result.order_reference.startswith("TIX-")

    def test_references_are_unique(self, lifecycle, alice):
        refs = {run(lifecycle.initiate("ticket", alice, 1)).order_reference
                for _ in range(20)}
        assert len(refs) == 20

    def test_returns_hosted_checkout_url(self, lifecycle, alice):
        result = run(lifecycle.initiate("ticket", alice, 1))
        assert result.checkout_url == f"http://testserver/mockpay/{result.session_id}"

    def test_gateway_receives_reference_and_redirects(self, lifecycle, gateway, alice):
        result = run(lifecycle.initiate("ticket", alice, 3))

        session = gateway.sessions[result.session_id]
        assert session["metadata"]["order_reference"] == result.order_reference
        assert session["metadata"]["product_type"] == "ticket"
        assert session["metadata"]["quantity"] == "3"
        assert session["customer_email"] == alice.email
        assert session["success_url"] == (
            f"{FRONTEND_URL}/success?session_id={result.session_id}"
            f"&order_ref={result.order_reference}"
        )
        assert session["cancel_url"] == f"{FRONTEND_URL}/cancelled"
        assert "shipping_address" not in session["metadata"]

    def test_rejects_shipping_on_tickets(self, lifecycle, store, gateway, alice, shipping):
        with pytest.raises(ValidationError):
            run(lifecycle.initiate("ticket", alice, 1, shipping))
        assert store.orders == {}
        assert gateway.sessions == {}


class TestInitiateBook:
    def test_creates_pending_book_order(self, lifecycle, store, alice, shipping):
        result = run(lifecycle.initiate(ProductType.BOOK, alice, 1, shipping))

        order = store.orders[result.order_reference]
        assert result.order_reference.startswith("BOOK-")
        assert order.amount_total == 1999
        assert order.shipping == shipping
        assert order.status is OrderStatus.PENDING

    def test_gateway_metadata_carries_shipping(self, lifecycle, gateway, alice, shipping):
        result = run(lifecycle.initiate("book", alice, 1, shipping))

        metadata = gateway.sessions[result.session_id]["metadata"]
        assert metadata["shipping_address"] == "12 High Street"
        assert metadata["shipping_city"] == "Chatham"
        assert metadata["shipping_postcode"] == "ME4 4AA"

    def test_requires_shipping(self, lifecycle, store, gateway, alice):
        with pytest.raises(ValidationError):
            run(lifecycle.initiate("book", alice, 1))
        assert store.orders == {}
        assert gateway.sessions == {}

    def test_requires_every_shipping_field(self, lifecycle, store, alice):
        partial = Shipping(address="12 High Street", city="", postcode="ME4 4AA")
        with pytest.raises(ValidationError):
            run(lifecycle.initiate("book", alice, 1, partial))
        assert store.orders == {}

    def test_quantity_is_fixed_at_one(self, lifecycle, store, alice, shipping):
        with pytest.raises(ValidationError):
            run(lifecycle.initiate("book", alice, 2, shipping))
        assert store.orders == {}


class TestInitiateValidation:
    @pytest.mark.parametrize("quantity", [0, -1, True, "2", 1.5, None])
    def test_rejects_invalid_quantity(self, lifecycle, store, gateway, alice, quantity):
        with pytest.raises(ValidationError):
            run(lifecycle.initiate("ticket", alice, quantity))
        assert store.orders == {}
        assert gateway.sessions == {}

    def test_rejects_unknown_product_type(self, lifecycle, alice):
        with pytest.raises(ValidationError):
            run(lifecycle.initiate("poster", alice, 1))


class TestInitiateFailures:
    def test_gateway_failure_persists_nothing(self, lifecycle, store, gateway, alice):
        async def broken(*args, **kwargs):
            raise GatewayError("provider down")

        gateway.create_checkout = broken
        with pytest.raises(GatewayError):
            run(lifecycle.initiate("ticket", alice, 1))
        assert store.orders == {}

    def test_store_failure_propagates(self, gateway, mailer, alice):
        from boxoffice.lifecycle import OrderLifecycle
        from boxoffice.notifier import Notifier

        lifecycle = OrderLifecycle(
            FailingCreateStore(), gateway, Notifier(mailer),
            frontend_url=FRONTEND_URL,
        )
        with pytest.raises(StoreError):
            run(lifecycle.initiate("ticket", alice, 1))
        # the checkout intent was already created at the provider
        assert len(gateway.sessions) == 1
