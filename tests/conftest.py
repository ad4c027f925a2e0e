from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from shared.security_config import limiter
from shared.utils import create_access_token, get_password_hash
from storefront.database import create_indexes
from storefront.main import app
from storefront.models import (
    CartItemDB, CategoryDB, OfferDB, ProductDB, ProductVariantDB, Role, UserDB, to_mongo,
)

limiter.enabled = False

PASSWORD = "Password123"

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address": "12 Analytical St",
    "city": "London",
    "zip_code": "N1 9GU",
    "country": "UK",
}


def money(value) -> Decimal:
    return Decimal(str(value))


class RecordingEmailService:
    """Stands in for EmailService and keeps every message it was asked to send."""

    def __init__(self):
        self.sent = []

    async def send(self, to, subject, text, html=None):
        self.sent.append({"to": to, "subject": subject, "text": text})
        return True

    async def send_welcome(self, to, first_name=None):
        self.sent.append({"kind": "welcome", "to": to})
        return True

    async def send_password_reset(self, to, reset_url):
        self.sent.append({"kind": "password_reset", "to": to, "reset_url": reset_url})
        return True

    async def send_order_confirmation(self, to, order):
        self.sent.append({"kind": "confirmation", "to": to, "order_number": order["order_number"]})
        return True

    async def send_order_status_update(self, to, order_number, status):
        self.sent.append({"kind": "status", "to": to, "order_number": order_number, "status": status})
        return True

    async def send_low_stock_alert(self, to, products, threshold):
        self.sent.append({"kind": "low_stock", "to": to, "products": products, "threshold": threshold})
        return True

    def of_kind(self, kind):
        return [m for m in self.sent if m.get("kind") == kind]


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["storefront_test"]
    await create_indexes(database)
    return database


@pytest.fixture
def emails():
    return RecordingEmailService()


@pytest.fixture
async def client(db, emails):
    app.mongodb = db
    app.state.email_service = emails
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


# --- Seed helpers ---

async def create_user(db, email="user@example.com", role=Role.USER, is_active=True) -> dict:
    user = UserDB(
        email=email,
        password_hash=get_password_hash(PASSWORD),
        first_name=email.split("@")[0].title(),
        role=role,
        is_active=is_active,
    )
    result = await db.users.insert_one(to_mongo(user))
    return await db.users.find_one({"_id": result.inserted_id})


def auth_headers(user: dict) -> dict:
    token = create_access_token({"sub": str(user["_id"]), "email": user["email"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


async def create_category(db, name="Sauces", slug=None, is_active=True) -> dict:
    category = CategoryDB(name=name, slug=slug or name.lower(), is_active=is_active)
    result = await db.categories.insert_one(to_mongo(category))
    return await db.categories.find_one({"_id": result.inserted_id})


async def create_product(db, category, name="Hot Sauce", price_usd="10.00", stock=10, **fields) -> dict:
    product = ProductDB(
        name=name,
        slug=fields.pop("slug", name.lower().replace(" ", "-")),
        price_usd=Decimal(price_usd) if price_usd is not None else None,
        stock=stock,
        category_id=str(category["_id"]),
        **fields,
    )
    result = await db.products.insert_one(to_mongo(product))
    return await db.products.find_one({"_id": result.inserted_id})


async def create_variant(db, product, name="Large", price_usd="15.00", stock=5, **fields) -> dict:
    variant = ProductVariantDB(
        product_id=str(product["_id"]),
        name=name,
        price_usd=Decimal(price_usd) if price_usd is not None else None,
        stock=stock,
        **fields,
    )
    result = await db.product_variants.insert_one(to_mongo(variant))
    return await db.product_variants.find_one({"_id": result.inserted_id})


async def create_offer(db, code="SAVE10", type="PERCENTAGE", value="10", **fields) -> dict:
    now = datetime.utcnow()
    offer = OfferDB(
        name=fields.pop("name", f"Offer {code}"),
        code=code,
        type=type,
        value=Decimal(value),
        start_date=fields.pop("start_date", now - timedelta(days=1)),
        end_date=fields.pop("end_date", now + timedelta(days=30)),
        **fields,
    )
    result = await db.offers.insert_one(to_mongo(offer))
    return await db.offers.find_one({"_id": result.inserted_id})


async def add_to_cart(db, user, product, quantity=1, variant=None) -> dict:
    item = CartItemDB(
        user_id=str(user["_id"]),
        product_id=str(product["_id"]),
        variant_id=str(variant["_id"]) if variant else None,
        quantity=quantity,
    )
    result = await db.cart_items.insert_one(to_mongo(item))
    return await db.cart_items.find_one({"_id": result.inserted_id})
