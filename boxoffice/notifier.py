from __future__ import annotations
import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from enum import Enum
from typing import List, Optional

import structlog
from jinja2 import Environment, PackageLoader, TemplateError, select_autoescape

from . import catalog
from .errors import DeliveryError
from .helpers import format_pounds
from .infra.timings import timeit
from .model.order import Order, ProductType

logger = structlog.get_logger(__name__)


class NotificationKind(str, Enum):
    TICKET_CONFIRMATION = "ticket_confirmation"
    BOOK_CONFIRMATION = "book_confirmation"

    @classmethod
    def for_order(cls, order: Order) -> "NotificationKind":
        if order.product_type is ProductType.BOOK:
            return cls.BOOK_CONFIRMATION
        return cls.TICKET_CONFIRMATION


SUBJECTS = {
    NotificationKind.TICKET_CONFIRMATION:
        "Booking Confirmed - Your Seminar Tickets ({ref})",
    NotificationKind.BOOK_CONFIRMATION:
        "Order Confirmed - Your Book Purchase ({ref})",
}


# ----------------------------
# Mail transports
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def deliver(self, message: EmailMessage) -> None:
        """Hand the message to the transport; DeliveryError on failure."""


class SmtpMailer(Mailer):
    def __init__(self, host: str, port: int, user: str, password: str,
                 timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            smtp.login(self.user, self.password)
            smtp.send_message(message)

    async def deliver(self, message: EmailMessage) -> None:
        try:
            # smtplib is blocking
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"smtp delivery failed: {e}",
                                to=message["To"]) from e


class ConsoleMailer(Mailer):
    """Logs messages and keeps them in `outbox`; for development and tests."""

    def __init__(self) -> None:
        self.outbox: List[EmailMessage] = []
        self.should_succeed = True
        self.failure_reason = "Email delivery failed"

    def configure(self, should_succeed: bool = True,
                  failure_reason: str = "Email delivery failed") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    async def deliver(self, message: EmailMessage) -> None:
        if not self.should_succeed:
            raise DeliveryError(self.failure_reason, to=message["To"])
        self.outbox.append(message)
        logger.info("email_logged", to=message["To"],
                    subject=message["Subject"])


# ----------------------------
# Notifier
# ----------------------------
class Notifier:
    def __init__(self, mailer: Mailer, sender: Optional[str] = None) -> None:
        self.mailer = mailer
        self.sender = sender or "orders@localhost"
        self.env = Environment(
            loader=PackageLoader("boxoffice", "templates"),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["pounds"] = format_pounds

    def render(self, order: Order, kind: NotificationKind) -> EmailMessage:
        context = {
            "order": order,
            "product": catalog.CATALOG[order.product_type],
            "event_date": catalog.EVENT_DATE,
            "event_time": catalog.EVENT_TIME,
            "event_venue": catalog.EVENT_VENUE,
            "charity": catalog.CHARITY,
        }
        text_body = self.env.get_template(f"email/{kind.value}.txt").render(context)
        html_body = self.env.get_template(f"email/{kind.value}.html").render(context)

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = order.customer.email
        message["Subject"] = SUBJECTS[kind].format(ref=order.order_reference)
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    async def notify(self, order: Order, kind: NotificationKind) -> None:
        try:
            message = self.render(order, kind)
        except (TemplateError, LookupError, TypeError, ValueError) as e:
            raise DeliveryError(f"could not render {kind.value} email: {e}",
                                order_reference=order.order_reference) from e
        async with timeit("mail.deliver"):
            await self.mailer.deliver(message)
        logger.info("confirmation_email_sent", kind=kind.value,
                    order_reference=order.order_reference,
                    to=order.customer.email)
