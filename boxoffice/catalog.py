from dataclasses import dataclass
from typing import Dict

from .model.order import ProductType

CURRENCY = "gbp"

# shown in the ticket confirmation email
EVENT_DATE = "Friday, 14 March 2026"
EVENT_TIME = "6:00 PM - 9:00 PM"
EVENT_VENUE = "Ramada Encore Chatham"
CHARITY = "Place of Victory Charity"


@dataclass(frozen=True)
class Product:
    name: str
    description: str
    unit_amount: int  # pence
    reference_prefix: str


# server-side prices; clients never send an amount
CATALOG: Dict[ProductType, Product] = {
    ProductType.TICKET: Product(
        name="Seminar Ticket",
        description=f"{EVENT_DATE} at {EVENT_VENUE}",
        unit_amount=2500,
        reference_prefix="TIX",
    ),
    ProductType.BOOK: Product(
        name="Build Wealth Through Property — 7 Reasons Why",
        description=f"100% of proceeds go to {CHARITY}",
        unit_amount=1999,
        reference_prefix="BOOK",
    ),
}
