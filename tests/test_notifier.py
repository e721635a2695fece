"""Confirmation emails: rendering and transports."""

import smtplib

import pytest
from jinja2 import DictLoader, Environment

from boxoffice.errors import DeliveryError
from boxoffice.model.order import Order, OrderStatus, ProductType
from boxoffice.notifier import ConsoleMailer, NotificationKind, Notifier, SmtpMailer

from conftest import run


@pytest.fixture()
def ticket_order(alice):
    return Order(
        order_reference="TIX-1700000000000-ABCDEF123456",
        product_type=ProductType.TICKET,
        customer=alice,
        quantity=2,
        amount_total=5000,
        currency="gbp",
        payment_session_id="mock_1",
        status=OrderStatus.COMPLETED,
        payment_intent_id="pi_mock_1",
    )


@pytest.fixture()
def book_order(alice, shipping):
    return Order(
        order_reference="BOOK-1700000000000-ABCDEF123456",
        product_type=ProductType.BOOK,
        customer=alice,
        quantity=1,
        amount_total=1999,
        currency="gbp",
        payment_session_id="mock_2",
        status=OrderStatus.COMPLETED,
        shipping=shipping,
    )


def bodies(message):
    text = message.get_body(("plain",)).get_content()
    html = message.get_body(("html",)).get_content()
    return text, html


class TestNotificationKind:
    def test_follows_product_type(self, ticket_order, book_order):
        assert NotificationKind.for_order(ticket_order) is NotificationKind.TICKET_CONFIRMATION
        assert NotificationKind.for_order(book_order) is NotificationKind.BOOK_CONFIRMATION


class TestRender:
    def test_ticket_confirmation(self, ticket_order):
        message = Notifier(ConsoleMailer(), sender="orders@example.com").render(
            ticket_order, NotificationKind.TICKET_CONFIRMATION
        )
        text, html = bodies(message)

        assert message["To"] == "alice@example.com"
        assert message["From"] == "orders@example.com"
        assert message["Subject"] == (
            "Booking Confirmed - Your Seminar Tickets "
            "(TIX-1700000000000-ABCDEF123456)"
        )
        assert "TIX-1700000000000-ABCDEF123456" in text
        assert "£50.00" in text
        assert "Number of Tickets: 2" in text
        assert "Alice Smith" in html

    def test_book_confirmation_includes_shipping(self, book_order):
        message = Notifier(ConsoleMailer()).render(
            book_order, NotificationKind.BOOK_CONFIRMATION
        )
        text, html = bodies(message)

        assert "Book Purchase" in message["Subject"]
        assert "12 High Street, Chatham, ME4 4AA" in text
        assert "£19.99" in text
        assert "12 High Street" in html

    def test_html_is_escaped(self, ticket_order, alice):
        from dataclasses import replace

        order = replace(ticket_order, customer=replace(alice, name="<b>Eve</b>"))
        message = Notifier(ConsoleMailer()).render(
            order, NotificationKind.TICKET_CONFIRMATION
        )
        _, html = bodies(message)
        assert "<b>Eve</b>" not in html
        assert "&lt;b&gt;Eve&lt;/b&gt;" in html


class TestDelivery:
    def test_console_mailer_keeps_outbox(self, ticket_order):
        mailer = ConsoleMailer()
        run(Notifier(mailer).notify(ticket_order, NotificationKind.TICKET_CONFIRMATION))
        assert len(mailer.outbox) == 1

    def test_console_mailer_failure(self, ticket_order):
        mailer = ConsoleMailer()
        mailer.configure(should_succeed=False)
        with pytest.raises(DeliveryError):
            run(Notifier(mailer).notify(ticket_order, NotificationKind.TICKET_CONFIRMATION))
        assert mailer.outbox == []

    def test_render_failure_becomes_delivery_error(self, ticket_order):
        mailer = ConsoleMailer()
        notifier = Notifier(mailer)
        notifier.env = Environment(loader=DictLoader({
            "email/ticket_confirmation.txt": "{{ order.quantity + 'x' }}",
        }))
        with pytest.raises(DeliveryError) as excinfo:
            run(notifier.notify(ticket_order, NotificationKind.TICKET_CONFIRMATION))
        assert excinfo.value.context["order_reference"] == ticket_order.order_reference
        assert mailer.outbox == []

    def test_smtp_failure_becomes_delivery_error(self, ticket_order, monkeypatch):
        class RefusingSMTP:
            def __init__(self, *args, **kwargs):
                raise smtplib.SMTPConnectError(421, b"service not available")

        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
        notifier = Notifier(SmtpMailer("smtp.example.com", 587, "user", "pw"))
        with pytest.raises(DeliveryError):
            run(notifier.notify(ticket_order, NotificationKind.TICKET_CONFIRMATION))

    def test_smtp_sends_with_starttls(self, ticket_order, monkeypatch):
        calls = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                calls.append(("connect", host, port))

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self):
                calls.append(("starttls",))

            def login(self, user, password):
                calls.append(("login", user))

            def send_message(self, message):
                calls.append(("send", message["To"]))

        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        notifier = Notifier(SmtpMailer("smtp.example.com", 587, "user", "pw"))
        run(notifier.notify(ticket_order, NotificationKind.TICKET_CONFIRMATION))

        assert calls == [
            ("connect", "smtp.example.com", 587),
            ("starttls",),
            ("login", "user"),
            ("send", "alice@example.com"),
        ]
