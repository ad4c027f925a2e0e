import logging
import math
import re
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from shared.utils import SuccessResponse, BadRequestException, NotFoundException
from storefront.auth import get_current_user, require_admin, user_response
from storefront.database import get_database, str_to_oid
from storefront.models import PaymentStatus, Role, to_plain
from storefront.pricing import ZERO, quantize, to_decimal
from storefront.schemas import (
    UserResponse, UserProfileUpdate, UserAdminUpdate, CustomerResponse, CustomerListResponse,
)

logger = logging.getLogger("storefront.users")

router = APIRouter(prefix="/users", tags=["users"])


class UserService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get(self, user_id: str) -> dict:
        user = await self.db.users.find_one({"_id": str_to_oid(user_id)})
        if not user:
            raise NotFoundException("User not found")
        return user

    async def list_all(self) -> List[dict]:
        return await self.db.users.find().sort("created_at", -1).to_list(length=None)

    async def update(self, user_id: str, data: UserProfileUpdate) -> dict:
        user = await self.get(user_id)
        update_data = {k: v for k, v in data.model_dump().items() if v is not None}
        if not update_data:
            return user

        update_data["updated_at"] = datetime.utcnow()
        updated = await self.db.users.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": to_plain(update_data)},
            return_document=ReturnDocument.AFTER,
        )
        if update_data.get("is_active") is False:
            # A deactivated account keeps no live sessions
            await self.db.refresh_tokens.delete_many({"user_id": user_id})
            logger.info("User deactivated", extra={"user_id": user_id})
        return updated

    async def delete(self, user_id: str, acting_user_id: Optional[str] = None):
        if user_id == acting_user_id:
            raise BadRequestException("You cannot delete your own account")
        user = await self.get(user_id)
        await self.db.users.delete_one({"_id": user["_id"]})
        # Orders and reviews stay for bookkeeping
        for collection in ("refresh_tokens", "password_reset_tokens", "cart_items", "wishlist_items"):
            await self.db[collection].delete_many({"user_id": user_id})
        logger.info("User deleted", extra={"user_id": user_id})

    async def list_customers(
        self, page: int = 1, limit: int = 50, search: Optional[str] = None
    ) -> CustomerListResponse:
        query = {"role": Role.USER.value}
        search = (search or "").strip()
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"email": pattern}, {"first_name": pattern}, {"last_name": pattern}, {"phone": pattern}]

        total = await self.db.users.count_documents(query)
        cursor = self.db.users.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        users = await cursor.to_list(length=limit)

        stats = {str(u["_id"]): {"total_orders": 0, "total_spent": ZERO, "last_order_at": None} for u in users}
        if stats:
            orders = self.db.orders.find(
                {"user_id": {"$in": list(stats)}},
                {"user_id": 1, "total": 1, "payment_status": 1, "created_at": 1},
            )
            async for order in orders:
                entry = stats[order["user_id"]]
                entry["total_orders"] += 1
                if order.get("payment_status") == PaymentStatus.PAID.value:
                    entry["total_spent"] += to_decimal(order["total"])
                if entry["last_order_at"] is None or order["created_at"] > entry["last_order_at"]:
                    entry["last_order_at"] = order["created_at"]

        customers = []
        for user in users:
            entry = stats[str(user["_id"])]
            customers.append(CustomerResponse(
                id=str(user["_id"]),
                email=user["email"],
                first_name=user.get("first_name"),
                last_name=user.get("last_name"),
                phone=user.get("phone"),
                is_active=user.get("is_active", True),
                created_at=user.get("created_at"),
                total_orders=entry["total_orders"],
                total_spent=quantize(entry["total_spent"]),
                last_order_at=entry["last_order_at"],
            ))
        return CustomerListResponse(
            customers=customers,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )


def get_user_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> UserService:
    return UserService(db)


# Own profile
@router.get("/me", response_model=SuccessResponse[UserResponse])
async def get_profile(user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return SuccessResponse(data=user_response(await service.get(user["id"])))


@router.patch("/me", response_model=SuccessResponse[UserResponse])
async def update_profile(
    body: UserProfileUpdate,
    user: dict = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    updated = await service.update(user["id"], body)
    return SuccessResponse(data=user_response(updated), message="Profile updated")


# Admin
@router.get("", response_model=SuccessResponse[List[UserResponse]])
async def list_users(admin: dict = Depends(require_admin), service: UserService = Depends(get_user_service)):
    return SuccessResponse(data=[user_response(u) for u in await service.list_all()])


@router.get("/admin/customers", response_model=SuccessResponse[CustomerListResponse])
async def list_customers(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: Optional[str] = None,
    admin: dict = Depends(require_admin),
    service: UserService = Depends(get_user_service),
):
    return SuccessResponse(data=await service.list_customers(page, limit, search))


@router.get("/{user_id}", response_model=SuccessResponse[UserResponse])
async def get_user(user_id: str, admin: dict = Depends(require_admin), service: UserService = Depends(get_user_service)):
    return SuccessResponse(data=user_response(await service.get(user_id)))


@router.patch("/{user_id}", response_model=SuccessResponse[UserResponse])
async def update_user(
    user_id: str,
    body: UserAdminUpdate,
    admin: dict = Depends(require_admin),
    service: UserService = Depends(get_user_service),
):
    updated = await service.update(user_id, body)
    return SuccessResponse(data=user_response(updated), message="User updated")


@router.delete("/{user_id}", response_model=SuccessResponse[dict])
async def delete_user(user_id: str, admin: dict = Depends(require_admin), service: UserService = Depends(get_user_service)):
    await service.delete(user_id, admin["id"])
    return SuccessResponse(data={"id": user_id}, message="User deleted")
