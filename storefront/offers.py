import logging
import math
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.security_config import limiter, normalize_code, COUPON_CHECK_RATE
from shared.utils import SuccessResponse, BadRequestException, NotFoundException, ConflictException
from storefront.auth import require_admin
from storefront.database import get_database, str_to_oid, serialize, naive_utc
from storefront.models import OfferDB, OfferType, to_mongo, to_plain
from storefront.pricing import ZERO, quantize, to_decimal
from storefront.schemas import (
    OfferCreate, OfferUpdate, OfferResponse, OfferListResponse,
    OfferValidateRequest, OfferValidationResult, OfferSummary,
)

logger = logging.getLogger("storefront.offers")

router = APIRouter(prefix="/offers", tags=["offers"])


def offer_response(doc: dict) -> OfferResponse:
    return OfferResponse(**serialize(doc))


def offer_summary(doc: dict) -> OfferSummary:
    return OfferSummary(
        id=str(doc["_id"]),
        name=doc["name"],
        code=doc["code"],
        type=doc["type"],
        value=to_decimal(doc["value"]),
    )


def compute_discount(offer: dict, subtotal: Decimal) -> Decimal:
    value = to_decimal(offer["value"])
    if offer["type"] == OfferType.PERCENTAGE.value:
        discount = subtotal * value / Decimal(100)
    else:
        discount = value
    # A discount never exceeds what is being paid for
    return quantize(min(discount, subtotal))


def _invalid(message: str) -> OfferValidationResult:
    return OfferValidationResult(valid=False, discount=ZERO, message=message)


class OfferService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def evaluate(self, code: str, subtotal, now: Optional[datetime] = None) -> Tuple[OfferValidationResult, Optional[dict]]:
        """Check a code against a subtotal without raising; returns the result and the matching offer."""
        subtotal = to_decimal(subtotal)
        normalized = normalize_code(code)
        offer = await self.db.offers.find_one({"code": normalized}) if normalized else None

        if not offer:
            return _invalid("Coupon not found"), None
        if not offer.get("is_active", False):
            return _invalid("This coupon is not active"), offer

        now = now or datetime.utcnow()
        if now < offer["start_date"]:
            return _invalid("This coupon is not yet available"), offer
        if now > offer["end_date"]:
            return _invalid("This coupon has expired"), offer

        min_purchase = offer.get("min_purchase")
        if min_purchase and subtotal < to_decimal(min_purchase):
            return _invalid(f"This coupon requires a minimum purchase of ${to_decimal(min_purchase):.2f}"), offer

        usage_limit = offer.get("usage_limit")
        if usage_limit and offer.get("usage_count", 0) >= usage_limit:
            return _invalid("This coupon has reached its usage limit"), offer

        result = OfferValidationResult(
            valid=True,
            discount=compute_discount(offer, subtotal),
            offer=offer_summary(offer),
        )
        return result, offer

    async def validate(self, code: str, subtotal) -> OfferValidationResult:
        result, _ = await self.evaluate(code, subtotal)
        return result

    async def claim_usage(self, offer: dict) -> bool:
        """Count one use of the offer; False when the usage limit was reached first."""
        query = {"_id": offer["_id"], "is_active": True}
        if offer.get("usage_limit"):
            query["usage_count"] = {"$lt": offer["usage_limit"]}
        result = await self.db.offers.update_one(query, {"$inc": {"usage_count": 1}})
        return result.modified_count == 1

    async def release_usage(self, offer_id):
        await self.db.offers.update_one(
            {"_id": offer_id, "usage_count": {"$gt": 0}},
            {"$inc": {"usage_count": -1}},
        )

    # --- Admin ---

    async def list_offers(self, page: int = 1, limit: int = 10, search: Optional[str] = None) -> OfferListResponse:
        query = {}
        search = (search or "").strip()
        if search:
            query["$or"] = [
                {"name": {"$regex": re.escape(search), "$options": "i"}},
                {"code": {"$regex": re.escape(search.upper()), "$options": "i"}},
            ]
        total = await self.db.offers.count_documents(query)
        cursor = self.db.offers.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        offers = [offer_response(doc) async for doc in cursor]
        return OfferListResponse(
            offers=offers,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def get_offer(self, offer_id: str) -> dict:
        offer = await self.db.offers.find_one({"_id": str_to_oid(offer_id)})
        if not offer:
            raise NotFoundException("Offer not found")
        return offer

    async def create_offer(self, data: OfferCreate) -> dict:
        if not data.code:
            raise BadRequestException("Code is required")
        doc = data.model_dump()
        doc["start_date"] = naive_utc(doc["start_date"])
        doc["end_date"] = naive_utc(doc["end_date"])
        try:
            result = await self.db.offers.insert_one(to_mongo(OfferDB(**doc)))
        except DuplicateKeyError:
            raise ConflictException(f"Offer code {data.code} already exists")
        logger.info("Offer created", extra={"offer_code": data.code})
        return await self.db.offers.find_one({"_id": result.inserted_id})

    async def update_offer(self, offer_id: str, data: OfferUpdate) -> dict:
        offer = await self.get_offer(offer_id)
        update_data = {k: v for k, v in data.model_dump().items() if v is not None}
        if "code" in update_data and not update_data["code"]:
            raise BadRequestException("Code is required")
        for field in ("start_date", "end_date"):
            if field in update_data:
                update_data[field] = naive_utc(update_data[field])

        start = update_data.get("start_date", offer["start_date"])
        end = update_data.get("end_date", offer["end_date"])
        if end < start:
            raise BadRequestException("end_date must be after start_date")

        offer_type = OfferType(update_data.get("type", offer["type"]))
        value = to_decimal(update_data.get("value", offer["value"]))
        if offer_type == OfferType.PERCENTAGE and value > 100:
            raise BadRequestException("Percentage offers cannot exceed 100")

        if update_data:
            try:
                await self.db.offers.update_one({"_id": offer["_id"]}, {"$set": to_plain(update_data)})
            except DuplicateKeyError:
                raise ConflictException(f"Offer code {update_data['code']} already exists")
        return await self.db.offers.find_one({"_id": offer["_id"]})

    async def delete_offer(self, offer_id: str):
        offer = await self.get_offer(offer_id)
        await self.db.offers.delete_one({"_id": offer["_id"]})


# --- Dependencies ---

def get_offer_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> OfferService:
    return OfferService(db)


# --- Endpoints ---

@router.post("/validate", response_model=SuccessResponse[OfferValidationResult])
@limiter.limit(COUPON_CHECK_RATE)
async def validate_offer(body: OfferValidateRequest, request: Request, service: OfferService = Depends(get_offer_service)):
    result = await service.validate(body.code, body.subtotal)
    return SuccessResponse(data=result, message=result.message)


@router.get("/admin", response_model=SuccessResponse[OfferListResponse])
async def list_offers(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    admin: dict = Depends(require_admin),
    service: OfferService = Depends(get_offer_service),
):
    return SuccessResponse(data=await service.list_offers(page, limit, search))


@router.get("/admin/{offer_id}", response_model=SuccessResponse[OfferResponse])
async def get_offer(offer_id: str, admin: dict = Depends(require_admin), service: OfferService = Depends(get_offer_service)):
    return SuccessResponse(data=offer_response(await service.get_offer(offer_id)))


@router.post("/admin", response_model=SuccessResponse[OfferResponse])
async def create_offer(body: OfferCreate, admin: dict = Depends(require_admin), service: OfferService = Depends(get_offer_service)):
    created = await service.create_offer(body)
    return SuccessResponse(data=offer_response(created), message="Offer created successfully")


@router.patch("/admin/{offer_id}", response_model=SuccessResponse[OfferResponse])
async def update_offer(
    offer_id: str,
    body: OfferUpdate,
    admin: dict = Depends(require_admin),
    service: OfferService = Depends(get_offer_service),
):
    updated = await service.update_offer(offer_id, body)
    return SuccessResponse(data=offer_response(updated), message="Offer updated successfully")


@router.delete("/admin/{offer_id}", response_model=SuccessResponse[dict])
async def delete_offer(offer_id: str, admin: dict = Depends(require_admin), service: OfferService = Depends(get_offer_service)):
    await service.delete_offer(offer_id)
    return SuccessResponse(data={"id": offer_id}, message="Offer deleted successfully")
