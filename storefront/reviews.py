import logging
import math
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from shared.utils import SuccessResponse, NotFoundException
from storefront.auth import get_current_user, require_admin
from storefront.database import get_database, str_to_oid, maybe_oid, serialize
from storefront.models import ReviewDB, to_mongo
from storefront.schemas import (
    ReviewCreate, ReviewUpdate, ReviewModerate, ReviewSettings, ReviewResponse, ReviewListResponse,
)

logger = logging.getLogger("storefront.reviews")

router = APIRouter(tags=["reviews"])

SETTINGS_KEY = "reviews"


def review_response(doc: dict) -> ReviewResponse:
    return ReviewResponse(**serialize(doc))


class ReviewService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_settings(self) -> ReviewSettings:
        doc = await self.db.review_settings.find_one({"_id": SETTINGS_KEY})
        if not doc:
            return ReviewSettings()
        return ReviewSettings(auto_approve_reviews=doc.get("auto_approve_reviews", False))

    async def update_settings(self, data: ReviewSettings) -> ReviewSettings:
        await self.db.review_settings.update_one(
            {"_id": SETTINGS_KEY},
            {"$set": {"auto_approve_reviews": data.auto_approve_reviews}},
            upsert=True,
        )
        return await self.get_settings()

    async def list_approved(self, product_id: str) -> List[ReviewResponse]:
        cursor = self.db.reviews.find({"product_id": product_id, "is_approved": True}).sort("created_at", -1)
        return [review_response(doc) async for doc in cursor]

    async def create(self, product_id: str, data: ReviewCreate, user: dict) -> dict:
        product = await self.db.products.find_one({"_id": maybe_oid(product_id)})
        if not product:
            raise NotFoundException("Product not found")

        settings = await self.get_settings()
        review = ReviewDB(
            product_id=str(product["_id"]),
            user_id=user["id"],
            author_name=data.author_name or user.get("first_name") or user["email"].split("@")[0],
            author_email=user["email"],
            rating=data.rating,
            title=data.title,
            content=data.content,
            is_approved=settings.auto_approve_reviews,
        )
        result = await self.db.reviews.insert_one(to_mongo(review))
        logger.info("Review submitted", extra={"product_id": review.product_id, "user_id": user["id"]})
        return await self.db.reviews.find_one({"_id": result.inserted_id})

    async def list_all(
        self,
        page: int = 1,
        limit: int = 20,
        product_id: Optional[str] = None,
        is_approved: Optional[bool] = None,
    ) -> ReviewListResponse:
        query = {}
        if product_id:
            query["product_id"] = product_id
        if is_approved is not None:
            query["is_approved"] = is_approved

        total = await self.db.reviews.count_documents(query)
        cursor = self.db.reviews.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        return ReviewListResponse(
            reviews=[review_response(doc) async for doc in cursor],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def moderate(self, review_id: str, data: ReviewModerate) -> dict:
        review = await self.db.reviews.find_one_and_update(
            {"_id": str_to_oid(review_id)},
            {"$set": {"is_approved": data.is_approved}},
            return_document=ReturnDocument.AFTER,
        )
        if not review:
            raise NotFoundException("Review not found")
        return review

    async def delete(self, review_id: str):
        result = await self.db.reviews.delete_one({"_id": str_to_oid(review_id)})
        if result.deleted_count == 0:
            raise NotFoundException("Review not found")

    async def _own_review(self, review_id: str, user_id: str) -> dict:
        review = await self.db.reviews.find_one({"_id": str_to_oid(review_id), "user_id": user_id})
        if not review:
            raise NotFoundException("Review not found")
        return review

    async def update_own(self, review_id: str, data: ReviewUpdate, user: dict) -> dict:
        """Edit the caller's review; edited text goes back through moderation unless auto-approve is on."""
        review = await self._own_review(review_id, user["id"])
        update_data = {k: v for k, v in data.model_dump().items() if v is not None}
        if not update_data:
            return review

        settings = await self.get_settings()
        update_data["is_approved"] = settings.auto_approve_reviews
        update_data["updated_at"] = datetime.utcnow()
        updated = await self.db.reviews.find_one_and_update(
            {"_id": review["_id"]},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Review edited", extra={"review_id": review_id, "user_id": user["id"]})
        return updated

    async def delete_own(self, review_id: str, user: dict):
        review = await self._own_review(review_id, user["id"])
        await self.db.reviews.delete_one({"_id": review["_id"]})
        logger.info("Review deleted by author", extra={"review_id": review_id, "user_id": user["id"]})


def get_review_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> ReviewService:
    return ReviewService(db)


# Public
@router.get("/products/{product_id}/reviews", response_model=SuccessResponse[List[ReviewResponse]])
async def list_product_reviews(product_id: str, service: ReviewService = Depends(get_review_service)):
    return SuccessResponse(data=await service.list_approved(product_id))


@router.post("/products/{product_id}/reviews", response_model=SuccessResponse[ReviewResponse])
async def create_review(
    product_id: str,
    body: ReviewCreate,
    user: dict = Depends(get_current_user),
    service: ReviewService = Depends(get_review_service),
):
    review = await service.create(product_id, body, user)
    message = "Review published" if review["is_approved"] else "Review submitted for moderation"
    return SuccessResponse(data=review_response(review), message=message)


# Admin
@router.get("/reviews/admin", response_model=SuccessResponse[ReviewListResponse])
async def list_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    product_id: Optional[str] = None,
    is_approved: Optional[bool] = None,
    admin: dict = Depends(require_admin),
    service: ReviewService = Depends(get_review_service),
):
    return SuccessResponse(data=await service.list_all(page, limit, product_id, is_approved))


@router.get("/reviews/admin/settings", response_model=SuccessResponse[ReviewSettings])
async def get_review_settings(admin: dict = Depends(require_admin), service: ReviewService = Depends(get_review_service)):
    return SuccessResponse(data=await service.get_settings())


@router.patch("/reviews/admin/settings", response_model=SuccessResponse[ReviewSettings])
async def update_review_settings(
    body: ReviewSettings,
    admin: dict = Depends(require_admin),
    service: ReviewService = Depends(get_review_service),
):
    return SuccessResponse(data=await service.update_settings(body), message="Review settings updated")


@router.patch("/reviews/admin/{review_id}", response_model=SuccessResponse[ReviewResponse])
async def moderate_review(
    review_id: str,
    body: ReviewModerate,
    admin: dict = Depends(require_admin),
    service: ReviewService = Depends(get_review_service),
):
    return SuccessResponse(data=review_response(await service.moderate(review_id, body)))


@router.delete("/reviews/admin/{review_id}", response_model=SuccessResponse[dict])
async def delete_review(review_id: str, admin: dict = Depends(require_admin), service: ReviewService = Depends(get_review_service)):
    await service.delete(review_id)
    return SuccessResponse(data={"id": review_id}, message="Review deleted")


# Author
@router.put("/reviews/{review_id}", response_model=SuccessResponse[ReviewResponse])
async def update_own_review(
    review_id: str,
    body: ReviewUpdate,
    user: dict = Depends(get_current_user),
    service: ReviewService = Depends(get_review_service),
):
    review = await service.update_own(review_id, body, user)
    message = "Review updated" if review["is_approved"] else "Review updated and submitted for moderation"
    return SuccessResponse(data=review_response(review), message=message)


@router.delete("/reviews/{review_id}", response_model=SuccessResponse[dict])
async def delete_own_review(
    review_id: str,
    user: dict = Depends(get_current_user),
    service: ReviewService = Depends(get_review_service),
):
    await service.delete_own(review_id, user)
    return SuccessResponse(data={"id": review_id}, message="Review deleted")
