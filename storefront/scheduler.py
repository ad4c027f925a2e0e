"""Daily low-stock report for the shop admin.

The job only reads stock; failures are logged and the loop keeps going.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import settings
from storefront.database import maybe_oid
from storefront.notifications import EmailService

logger = logging.getLogger("storefront.scheduler")


async def find_low_stock(db: AsyncIOMotorDatabase, threshold: int) -> List[dict]:
    products = []
    cursor = db.products.find({"is_active": True, "stock": {"$lte": threshold}}).sort("stock", 1)
    async for product in cursor:
        category = await db.categories.find_one({"_id": maybe_oid(product.get("category_id"))})
        variants = await db.product_variants.find(
            {"product_id": str(product["_id"]), "stock": {"$lte": threshold}}
        ).to_list(length=None)
        products.append({
            "id": str(product["_id"]),
            "name": product["name"],
            "sku": product.get("sku"),
            "stock": product.get("stock", 0),
            "category": category["name"] if category else None,
            "variants": [{"name": v["name"], "stock": v.get("stock", 0)} for v in variants],
        })
    return products


async def check_low_stock_and_notify(
    db: AsyncIOMotorDatabase,
    email_service: EmailService,
    threshold: int = None,
    admin_email: Optional[str] = None,
) -> int:
    """Email the admin the active products at or below the threshold; returns how many were reported."""
    threshold = settings.LOW_STOCK_THRESHOLD if threshold is None else threshold
    if not admin_email:
        logger.warning("ADMIN_EMAIL not configured, skipping low stock notification")
        return 0

    try:
        products = await find_low_stock(db, threshold)
        if not products:
            logger.info("No low stock products")
            return 0
        await email_service.send_low_stock_alert(admin_email, products, threshold)
        logger.info(f"Low stock notification sent for {len(products)} products", extra={"email_to": admin_email})
        return len(products)
    except Exception:
        logger.error("Low stock check failed", exc_info=True)
        return 0


def seconds_until(hour: int, now: datetime) -> float:
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def run_low_stock_loop(db: AsyncIOMotorDatabase, email_service: EmailService):
    while True:
        delay = seconds_until(settings.LOW_STOCK_CHECK_HOUR, datetime.now())
        logger.info(f"Next low stock check in {int(delay)}s")
        await asyncio.sleep(delay)
        await check_low_stock_and_notify(db, email_service, settings.LOW_STOCK_THRESHOLD, settings.ADMIN_EMAIL)
