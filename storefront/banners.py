import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from shared.utils import SuccessResponse, BadRequestException, NotFoundException
from storefront.auth import require_admin
from storefront.database import get_database, str_to_oid, serialize, naive_utc
from storefront.models import BannerDB, to_mongo
from storefront.schemas import BannerCreate, BannerUpdate, BannerResponse

logger = logging.getLogger("storefront.banners")

router = APIRouter(prefix="/banners", tags=["banners"])


def banner_response(doc: dict) -> BannerResponse:
    return BannerResponse(**serialize(doc))


class BannerService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def list_active(self, now: Optional[datetime] = None) -> List[dict]:
        """Active banners whose optional start/end window contains ``now``, in display order."""
        now = now or datetime.utcnow()
        query = {
            "is_active": True,
            "$and": [
                {"$or": [{"start_date": None}, {"start_date": {"$lte": now}}]},
                {"$or": [{"end_date": None}, {"end_date": {"$gte": now}}]},
            ],
        }
        return await self.db.banners.find(query).sort("order", ASCENDING).to_list(length=None)

    async def list_all(self) -> List[dict]:
        cursor = self.db.banners.find().sort([("order", ASCENDING), ("created_at", DESCENDING)])
        return await cursor.to_list(length=None)

    async def get(self, banner_id: str) -> dict:
        banner = await self.db.banners.find_one({"_id": str_to_oid(banner_id)})
        if not banner:
            raise NotFoundException("Banner not found")
        return banner

    async def create(self, data: BannerCreate) -> dict:
        doc = data.model_dump()
        doc["start_date"] = naive_utc(doc["start_date"])
        doc["end_date"] = naive_utc(doc["end_date"])
        result = await self.db.banners.insert_one(to_mongo(BannerDB(**doc)))
        logger.info("Banner created", extra={"banner_id": str(result.inserted_id)})
        return await self.db.banners.find_one({"_id": result.inserted_id})

    async def update(self, banner_id: str, data: BannerUpdate) -> dict:
        banner = await self.get(banner_id)
        update_data = {k: v for k, v in data.model_dump().items() if v is not None}
        for field in ("start_date", "end_date"):
            if field in update_data:
                update_data[field] = naive_utc(update_data[field])

        start = update_data.get("start_date", banner.get("start_date"))
        end = update_data.get("end_date", banner.get("end_date"))
        if start and end and end < start:
            raise BadRequestException("end_date must be after start_date")

        if not update_data:
            return banner
        update_data["updated_at"] = datetime.utcnow()
        return await self.db.banners.find_one_and_update(
            {"_id": banner["_id"]},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER,
        )

    async def delete(self, banner_id: str):
        banner = await self.get(banner_id)
        await self.db.banners.delete_one({"_id": banner["_id"]})
        logger.info("Banner deleted", extra={"banner_id": banner_id})


def get_banner_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> BannerService:
    return BannerService(db)


@router.get("", response_model=SuccessResponse[List[BannerResponse]])
async def list_banners(service: BannerService = Depends(get_banner_service)):
    return SuccessResponse(data=[banner_response(b) for b in await service.list_active()])


@router.get("/admin", response_model=SuccessResponse[List[BannerResponse]])
async def list_all_banners(admin: dict = Depends(require_admin), service: BannerService = Depends(get_banner_service)):
    return SuccessResponse(data=[banner_response(b) for b in await service.list_all()])


@router.get("/{banner_id}", response_model=SuccessResponse[BannerResponse])
async def get_banner(banner_id: str, service: BannerService = Depends(get_banner_service)):
    return SuccessResponse(data=banner_response(await service.get(banner_id)))


@router.post("", response_model=SuccessResponse[BannerResponse])
async def create_banner(
    body: BannerCreate,
    admin: dict = Depends(require_admin),
    service: BannerService = Depends(get_banner_service),
):
    return SuccessResponse(data=banner_response(await service.create(body)), message="Banner created")


@router.patch("/{banner_id}", response_model=SuccessResponse[BannerResponse])
async def update_banner(
    banner_id: str,
    body: BannerUpdate,
    admin: dict = Depends(require_admin),
    service: BannerService = Depends(get_banner_service),
):
    return SuccessResponse(data=banner_response(await service.update(banner_id, body)), message="Banner updated")


@router.delete("/{banner_id}", response_model=SuccessResponse[dict])
async def delete_banner(banner_id: str, admin: dict = Depends(require_admin), service: BannerService = Depends(get_banner_service)):
    await service.delete(banner_id)
    return SuccessResponse(data={"id": banner_id}, message="Banner deleted")
