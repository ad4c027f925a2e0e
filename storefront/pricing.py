"""Money helpers shared by the cart, offers and orders.

All amounts are carried as ``Decimal`` and rounded to cents with
ROUND_HALF_UP; Mongo stores them as floats, so every value read back is
converted through ``str`` first.
"""
import random
import string
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from shared.utils import settings

CENT = Decimal("0.01")
ZERO = Decimal("0")

BASE36 = string.digits + string.ascii_uppercase


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def convert_to_usd(price, currency: str = "MNs") -> Decimal:
    if currency == "USD":
        return to_decimal(price)
    return to_decimal(price) / to_decimal(settings.MNS_TO_USD_RATE)


def resolve_price(doc: Optional[dict]) -> Decimal:
    """USD price of a product or variant document.

    ``price_usd`` wins when set and non-zero; otherwise the legacy
    ``price_mns`` is converted at the configured rate.
    """
    if not doc:
        return ZERO
    if doc.get("price_usd"):
        return to_decimal(doc["price_usd"])
    if doc.get("price_mns"):
        return convert_to_usd(doc["price_mns"], "MNs")
    return ZERO


def unit_price(product: Optional[dict], variant: Optional[dict] = None) -> Decimal:
    if variant is not None:
        price = resolve_price(variant)
        if price:
            return price
    return resolve_price(product)


def shipping_for(subtotal: Decimal) -> Decimal:
    if subtotal >= to_decimal(settings.FREE_SHIPPING_THRESHOLD):
        return ZERO
    return quantize(settings.FLAT_SHIPPING_FEE)


def compute_totals(subtotal, discount=ZERO) -> dict:
    subtotal = quantize(subtotal)
    discount = min(quantize(discount), subtotal)
    tax = quantize(subtotal * to_decimal(settings.TAX_RATE))
    shipping = shipping_for(subtotal)
    total = subtotal - discount + tax + shipping
    return {
        "subtotal": subtotal,
        "discount": discount,
        "tax": tax,
        "shipping": shipping,
        "total": quantize(total),
    }


def generate_order_number(now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(random.choices(BASE36, k=9))
    return f"ORD-{now_ms}-{suffix}"
