from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from shared.utils import settings, SuccessResponse
from storefront.auth import require_admin
from storefront.database import get_database
from storefront.models import PaymentStatus
from storefront.pricing import ZERO, quantize, to_decimal
from storefront.schemas import DashboardStats, StatsOverview, RecentOrder, LowStockProduct, MonthlyRevenue

router = APIRouter(prefix="/stats", tags=["stats"])

RECENT_ORDERS = 10
LOW_STOCK_PRODUCTS = 10
REVENUE_MONTHS = 6


def month_starts(now: datetime, count: int) -> List[datetime]:
    """First day of each of the last ``count`` months, oldest first, current month included."""
    year, month = now.year, now.month
    starts = []
    for _ in range(count):
        starts.append(datetime(year, month, 1))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(starts))


class StatsService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def dashboard(self, now: datetime = None) -> DashboardStats:
        now = now or datetime.utcnow()
        paid = {"payment_status": PaymentStatus.PAID.value}

        revenue = ZERO
        async for order in self.db.orders.find(paid, {"total": 1}):
            revenue += to_decimal(order["total"])

        overview = StatsOverview(
            total_users=await self.db.users.count_documents({}),
            total_products=await self.db.products.count_documents({}),
            total_orders=await self.db.orders.count_documents({}),
            total_revenue=quantize(revenue),
        )

        recent = await self.db.orders.find().sort("created_at", -1).limit(RECENT_ORDERS).to_list(length=None)
        recent_orders = [
            RecentOrder(
                id=str(o["_id"]),
                order_number=o["order_number"],
                user_id=o["user_id"],
                total=to_decimal(o["total"]),
                status=o["status"],
                payment_status=o["payment_status"],
                created_at=o["created_at"],
            )
            for o in recent
        ]

        low_stock = await self.db.products.find(
            {"is_active": True, "stock": {"$lte": settings.LOW_STOCK_THRESHOLD}}
        ).sort("stock", 1).limit(LOW_STOCK_PRODUCTS).to_list(length=None)

        return DashboardStats(
            overview=overview,
            recent_orders=recent_orders,
            low_stock_products=[LowStockProduct(id=str(p["_id"]), name=p["name"], stock=p.get("stock", 0)) for p in low_stock],
            sales_by_month=await self.sales_by_month(now),
        )

    async def sales_by_month(self, now: datetime) -> List[MonthlyRevenue]:
        starts = month_starts(now, REVENUE_MONTHS)
        buckets = {start.strftime("%Y-%m"): Decimal("0") for start in starts}

        cursor = self.db.orders.find(
            {"payment_status": PaymentStatus.PAID.value, "created_at": {"$gte": starts[0]}},
            {"total": 1, "created_at": 1},
        )
        async for order in cursor:
            key = order["created_at"].strftime("%Y-%m")
            if key in buckets:
                buckets[key] += to_decimal(order["total"])

        return [MonthlyRevenue(month=key, revenue=quantize(value)) for key, value in buckets.items()]


def get_stats_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> StatsService:
    return StatsService(db)


@router.get("/dashboard", response_model=SuccessResponse[DashboardStats])
async def dashboard(admin: dict = Depends(require_admin), service: StatsService = Depends(get_stats_service)):
    return SuccessResponse(data=await service.dashboard())
