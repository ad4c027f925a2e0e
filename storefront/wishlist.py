import logging
from typing import List

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.utils import SuccessResponse, NotFoundException
from storefront.auth import get_current_user
from storefront.catalog import CatalogService, get_catalog_service
from storefront.database import get_database, maybe_oid
from storefront.models import WishlistItemDB, to_mongo
from storefront.schemas import WishlistItemResponse

logger = logging.getLogger("storefront.wishlist")

router = APIRouter(prefix="/wishlist", tags=["wishlist"])


class WishlistService:
    def __init__(self, db: AsyncIOMotorDatabase, catalog: CatalogService):
        self.db = db
        self.catalog = catalog

    async def list_items(self, user_id: str) -> List[WishlistItemResponse]:
        cursor = self.db.wishlist_items.find({"user_id": user_id}).sort("created_at", -1)
        items = []
        async for doc in cursor:
            product = await self.db.products.find_one({"_id": maybe_oid(doc["product_id"])})
            items.append(WishlistItemResponse(
                id=str(doc["_id"]),
                product_id=doc["product_id"],
                created_at=doc["created_at"],
                product=await self.catalog.product_response(product) if product else None,
            ))
        return items

    async def add(self, user_id: str, product_id: str) -> List[WishlistItemResponse]:
        product = await self.db.products.find_one({"_id": maybe_oid(product_id)})
        if not product:
            raise NotFoundException("Product not found")

        item = WishlistItemDB(user_id=user_id, product_id=str(product["_id"]))
        try:
            await self.db.wishlist_items.insert_one(to_mongo(item))
            logger.info("Product added to wishlist", extra={"user_id": user_id, "product_id": item.product_id})
        except DuplicateKeyError:
            # Already wishlisted
            pass
        return await self.list_items(user_id)

    async def remove(self, user_id: str, product_id: str) -> List[WishlistItemResponse]:
        await self.db.wishlist_items.delete_one({"user_id": user_id, "product_id": product_id})
        return await self.list_items(user_id)


def get_wishlist_service(
    db: AsyncIOMotorDatabase = Depends(get_database),
    catalog: CatalogService = Depends(get_catalog_service),
) -> WishlistService:
    return WishlistService(db, catalog)


@router.get("", response_model=SuccessResponse[List[WishlistItemResponse]])
async def get_wishlist(user: dict = Depends(get_current_user), service: WishlistService = Depends(get_wishlist_service)):
    return SuccessResponse(data=await service.list_items(user["id"]))


@router.post("/{product_id}", response_model=SuccessResponse[List[WishlistItemResponse]])
async def add_to_wishlist(
    product_id: str,
    user: dict = Depends(get_current_user),
    service: WishlistService = Depends(get_wishlist_service),
):
    return SuccessResponse(data=await service.add(user["id"], product_id), message="Added to wishlist")


@router.delete("/{product_id}", response_model=SuccessResponse[List[WishlistItemResponse]])
async def remove_from_wishlist(
    product_id: str,
    user: dict = Depends(get_current_user),
    service: WishlistService = Depends(get_wishlist_service),
):
    return SuccessResponse(data=await service.remove(user["id"], product_id), message="Removed from wishlist")
