import asyncio
import json

import pytest

from boxoffice.lifecycle import OrderLifecycle
from boxoffice.mockpay import MockPay
from boxoffice.model.order import Customer, Shipping
from boxoffice.model.orderstore import MemoryOrderStore
from boxoffice.notifier import ConsoleMailer, Notifier

WEBHOOK_SECRET = "test-secret"
FRONTEND_URL = "https://shop.example.com"


def run(coro):
    return asyncio.run(coro)


def signed_event(gateway: MockPay, event: dict):
    """Serialize and sign an arbitrary mock provider event."""
    payload = json.dumps(event).encode()
    return payload, gateway.sign(payload)


@pytest.fixture()
def store():
    return MemoryOrderStore()


@pytest.fixture()
def gateway():
    return MockPay(WEBHOOK_SECRET, base_url="http://testserver")


@pytest.fixture()
def mailer():
    return ConsoleMailer()


@pytest.fixture()
def lifecycle(store, gateway, mailer):
    return OrderLifecycle(
        store,
        gateway,
        Notifier(mailer, sender="orders@example.com"),
        frontend_url=FRONTEND_URL,
    )


@pytest.fixture()
def alice():
    return Customer(name="Alice Smith", email="alice@example.com",
                    phone="07700 900123")


@pytest.fixture()
def shipping():
    return Shipping(address="12 High Street", city="Chatham",
                    postcode="ME4 4AA")
