from datetime import datetime, timezone
from typing import Optional
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from shared.utils import NotFoundException


def get_database(request: Request) -> AsyncIOMotorDatabase:
    return request.app.mongodb


def str_to_oid(id: str) -> ObjectId:
    try:
        return ObjectId(id)
    except (InvalidId, TypeError):
        raise NotFoundException("Invalid ID format")


def maybe_oid(id: Optional[str]) -> Optional[ObjectId]:
    """Like str_to_oid but returns None for malformed ids, for lookups that should just miss."""
    if not id or not ObjectId.is_valid(id):
        return None
    return ObjectId(id)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes, so aware inputs are normalised before storing."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


async def create_indexes(db: AsyncIOMotorDatabase):
    await db.users.create_index("email", unique=True)
    await db.refresh_tokens.create_index("token_hash", unique=True)
    await db.refresh_tokens.create_index("user_id")
    # TTL cleanup of expired refresh tokens
    await db.refresh_tokens.create_index("expires_at", expireAfterSeconds=0)
    await db.categories.create_index("slug", unique=True)
    await db.products.create_index("slug", unique=True)
    await db.products.create_index("category_id")
    await db.product_variants.create_index("product_id")
    await db.cart_items.create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING), ("variant_id", ASCENDING)],
        unique=True,
    )
    await db.orders.create_index("order_number", unique=True)
    await db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.offers.create_index("code", unique=True)
    await db.wishlist_items.create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    await db.reviews.create_index("product_id")
    await db.password_reset_tokens.create_index("token_hash", unique=True)
    await db.password_reset_tokens.create_index("expires_at", expireAfterSeconds=0)
    await db.banners.create_index([("order", ASCENDING), ("created_at", DESCENDING)])
