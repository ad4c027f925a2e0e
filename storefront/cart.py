import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.utils import SuccessResponse, BadRequestException, NotFoundException
from storefront.auth import get_current_user
from storefront.database import get_database, maybe_oid
from storefront.models import CartItemDB, to_mongo
from storefront.pricing import ZERO, quantize, unit_price
from storefront.schemas import (
    CartItemAdd, CartItemUpdate, CartItemResponse, CartResponse,
    CartProductSummary, CartVariantSummary, CartLineStatus, CartValidationResponse,
)

logger = logging.getLogger("storefront.cart")

router = APIRouter(prefix="/cart", tags=["cart"])

# Line classifications reported by validate_cart
LINE_OK = "ok"
LINE_OUT_OF_STOCK = "out_of_stock"
LINE_INSUFFICIENT = "insufficient_stock"
LINE_UNAVAILABLE = "unavailable"


def item_name(product: Optional[dict], variant: Optional[dict] = None) -> str:
    name = product["name"] if product else "Unknown product"
    if variant:
        return f"{name} - {variant['name']}"
    return name


def insufficient_stock_message(name: str, available: int) -> str:
    return f"Insufficient stock for {name}. Only {max(available, 0)} available"


class CartLine:
    """A cart item joined with its live product and (optional) variant."""

    def __init__(self, item: dict, product: Optional[dict], variant: Optional[dict]):
        self.item = item
        self.product = product
        self.variant = variant

    @property
    def id(self) -> str:
        return str(self.item["_id"])

    @property
    def quantity(self) -> int:
        return self.item["quantity"]

    @property
    def name(self) -> str:
        return item_name(self.product, self.variant)

    @property
    def available(self) -> bool:
        if not self.product or not self.product.get("is_active", False):
            return False
        if self.item.get("variant_id"):
            return bool(self.variant) and self.variant.get("is_active", False)
        return True

    @property
    def stock(self) -> int:
        if not self.available:
            return 0
        source = self.variant if self.item.get("variant_id") else self.product
        return source.get("stock", 0)

    @property
    def unit_price(self) -> Decimal:
        return unit_price(self.product, self.variant)


class CartService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def load_lines(self, user_id: str) -> List[CartLine]:
        items = await self.db.cart_items.find({"user_id": user_id}).sort("created_at", 1).to_list(length=None)
        lines = []
        for item in items:
            product = await self.db.products.find_one({"_id": maybe_oid(item["product_id"])})
            variant = None
            if item.get("variant_id"):
                variant = await self.db.product_variants.find_one({"_id": maybe_oid(item["variant_id"])})
            lines.append(CartLine(item, product, variant))
        return lines

    @staticmethod
    def subtotal(lines: List[CartLine]) -> Decimal:
        return quantize(sum((quantize(line.unit_price) * line.quantity for line in lines), ZERO))

    async def get_cart(self, user_id: str) -> CartResponse:
        lines = await self.load_lines(user_id)
        subtotal = self.subtotal(lines)
        # Tax and shipping are computed at checkout
        return CartResponse(items=[self._line_response(line) for line in lines], subtotal=subtotal, total=subtotal)

    async def add_to_cart(self, user_id: str, data: CartItemAdd) -> CartResponse:
        product = await self.db.products.find_one({"_id": maybe_oid(data.product_id)})
        if not product:
            raise NotFoundException("Product not found")
        if not product.get("is_active", False):
            raise BadRequestException(f"Product {product['name']} is not available")

        variant = None
        if data.variant_id:
            variant = await self.db.product_variants.find_one({"_id": maybe_oid(data.variant_id)})
            if not variant or variant["product_id"] != str(product["_id"]):
                raise NotFoundException("Product variant not found")
            if not variant.get("is_active", False):
                raise BadRequestException(f"Product variant {item_name(product, variant)} is not available")

        key = {
            "user_id": user_id,
            "product_id": str(product["_id"]),
            "variant_id": str(variant["_id"]) if variant else None,
        }
        existing = await self.db.cart_items.find_one(key)
        in_cart = existing["quantity"] if existing else 0

        stock = (variant or product).get("stock", 0)
        if in_cart + data.quantity > stock:
            raise BadRequestException(insufficient_stock_message(item_name(product, variant), stock - in_cart))

        now = datetime.utcnow()
        if existing:
            await self.db.cart_items.update_one(
                {"_id": existing["_id"]},
                {"$inc": {"quantity": data.quantity}, "$set": {"updated_at": now}},
            )
        else:
            try:
                await self.db.cart_items.insert_one(to_mongo(CartItemDB(quantity=data.quantity, **key)))
            except DuplicateKeyError:
                # Another request created the line in the meantime; merge into it
                await self.db.cart_items.update_one(
                    key, {"$inc": {"quantity": data.quantity}, "$set": {"updated_at": now}}
                )
        return await self.get_cart(user_id)

    async def _get_line(self, user_id: str, item_id: str) -> CartLine:
        item = await self.db.cart_items.find_one({"_id": maybe_oid(item_id), "user_id": user_id})
        if not item:
            raise NotFoundException("Cart item not found")
        product = await self.db.products.find_one({"_id": maybe_oid(item["product_id"])})
        variant = None
        if item.get("variant_id"):
            variant = await self.db.product_variants.find_one({"_id": maybe_oid(item["variant_id"])})
        return CartLine(item, product, variant)

    async def update_cart_item(self, user_id: str, item_id: str, data: CartItemUpdate) -> CartResponse:
        line = await self._get_line(user_id, item_id)

        # Live stock, not the stock seen when the line was added
        if data.quantity > line.stock:
            raise BadRequestException(insufficient_stock_message(line.name, line.stock))

        await self.db.cart_items.update_one(
            {"_id": line.item["_id"]},
            {"$set": {"quantity": data.quantity, "updated_at": datetime.utcnow()}},
        )
        return await self.get_cart(user_id)

    async def remove_from_cart(self, user_id: str, item_id: str) -> CartResponse:
        result = await self.db.cart_items.delete_one({"_id": maybe_oid(item_id), "user_id": user_id})
        if result.deleted_count == 0:
            raise NotFoundException("Cart item not found")
        return await self.get_cart(user_id)

    async def clear_cart(self, user_id: str) -> int:
        result = await self.db.cart_items.delete_many({"user_id": user_id})
        logger.info(f"Cart cleared, {result.deleted_count} lines removed", extra={"user_id": user_id})
        return result.deleted_count

    async def validate_cart(self, user_id: str) -> CartValidationResponse:
        statuses = [self.classify(line) for line in await self.load_lines(user_id)]
        issues = [s for s in statuses if s.status != LINE_OK]
        return CartValidationResponse(valid=not issues, items=statuses, issues=issues)

    @staticmethod
    def classify(line: CartLine) -> CartLineStatus:
        available = line.stock
        if not line.available:
            status, message = LINE_UNAVAILABLE, f"{line.name} is no longer available"
        elif available <= 0:
            status, message = LINE_OUT_OF_STOCK, f"{line.name} is out of stock"
        elif available < line.quantity:
            status, message = LINE_INSUFFICIENT, insufficient_stock_message(line.name, available)
        else:
            status, message = LINE_OK, None

        return CartLineStatus(
            item_id=line.id,
            product_id=line.item["product_id"],
            variant_id=line.item.get("variant_id"),
            name=line.name,
            requested=line.quantity,
            available=available,
            status=status,
            message=message,
        )

    @staticmethod
    def _line_response(line: CartLine) -> CartItemResponse:
        product = None
        if line.product:
            product = CartProductSummary(
                id=str(line.product["_id"]),
                name=line.product["name"],
                slug=line.product["slug"],
                images=line.product.get("images", []),
                stock=line.product.get("stock", 0),
                is_active=line.product.get("is_active", False),
                category_id=line.product.get("category_id"),
            )
        variant = None
        if line.variant:
            variant = CartVariantSummary(
                id=str(line.variant["_id"]),
                name=line.variant["name"],
                stock=line.variant.get("stock", 0),
                is_active=line.variant.get("is_active", False),
            )
        return CartItemResponse(
            id=line.id,
            product_id=line.item["product_id"],
            variant_id=line.item.get("variant_id"),
            quantity=line.quantity,
            unit_price=quantize(line.unit_price),
            line_total=quantize(line.unit_price) * line.quantity,
            product=product,
            variant=variant,
        )


# --- Dependencies ---

def get_cart_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> CartService:
    return CartService(db)


# --- Endpoints ---

@router.get("", response_model=SuccessResponse[CartResponse])
async def get_cart(user: dict = Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    return SuccessResponse(data=await service.get_cart(user["id"]))


@router.get("/validate", response_model=SuccessResponse[CartValidationResponse])
async def validate_cart(user: dict = Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    return SuccessResponse(data=await service.validate_cart(user["id"]))


@router.post("", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    user: dict = Depends(get_current_user),
    service: CartService = Depends(get_cart_service),
):
    return SuccessResponse(data=await service.add_to_cart(user["id"], item), message="Item added to cart")


@router.patch("/{item_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    item_id: str,
    update: CartItemUpdate,
    user: dict = Depends(get_current_user),
    service: CartService = Depends(get_cart_service),
):
    return SuccessResponse(data=await service.update_cart_item(user["id"], item_id, update))


@router.delete("/{item_id}", response_model=SuccessResponse[CartResponse])
async def remove_from_cart(
    item_id: str,
    user: dict = Depends(get_current_user),
    service: CartService = Depends(get_cart_service),
):
    return SuccessResponse(data=await service.remove_from_cart(user["id"], item_id), message="Item removed")


@router.delete("", response_model=SuccessResponse[dict])
async def clear_cart(user: dict = Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    removed = await service.clear_cart(user["id"])
    return SuccessResponse(data={"removed": removed}, message="Cart cleared")
