import logging
import math
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from shared.security_config import limiter, slugify, CATALOG_READ_RATE
from shared.utils import (
    SuccessResponse, BadRequestException, NotFoundException, ConflictException, optional_auth,
)
from storefront.auth import require_admin
from storefront.database import get_database, str_to_oid, maybe_oid, serialize
from storefront.models import CategoryDB, ProductDB, ProductVariantDB, PaymentStatus, Role, to_mongo, to_plain
from storefront.pricing import resolve_price, to_decimal
from storefront.schemas import (
    CategoryCreate, CategoryUpdate, CategoryResponse,
    ProductCreate, ProductUpdate, ProductResponse, ProductListResponse,
    VariantCreate, VariantUpdate, VariantResponse, ComboComponentResponse,
)

logger = logging.getLogger("storefront.catalog")

router = APIRouter(tags=["catalog"])

UNCATEGORIZED_SLUG = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"
BEST_SELLERS_DEFAULT = 8
BEST_SELLERS_MAX = 50


def variant_response(doc: dict) -> VariantResponse:
    data = serialize(doc)
    data["price"] = resolve_price(doc)
    return VariantResponse(**data)


def category_response(doc: dict, product_count: Optional[int] = None) -> CategoryResponse:
    data = serialize(doc)
    data["product_count"] = product_count
    return CategoryResponse(**data)


def _discounted(doc: dict) -> bool:
    compare = doc.get("compare_price_usd")
    return compare is not None and to_decimal(compare) > to_decimal(doc.get("price_usd") or 0)


class CatalogService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # --- Categories ---

    async def ensure_uncategorized(self) -> dict:
        existing = await self.db.categories.find_one({"slug": UNCATEGORIZED_SLUG})
        if existing:
            return existing
        category = CategoryDB(
            name=UNCATEGORIZED_NAME,
            slug=UNCATEGORIZED_SLUG,
            description="Products without a category (never published)",
            is_active=False,
            order=9999,
        )
        try:
            await self.db.categories.insert_one(to_mongo(category))
        except DuplicateKeyError:
            pass
        return await self.db.categories.find_one({"slug": UNCATEGORIZED_SLUG})

    async def list_categories(self, include_inactive: bool = False) -> List[CategoryResponse]:
        query = {} if include_inactive else {"is_active": True}
        cursor = self.db.categories.find(query).sort("order", 1)
        categories = []
        async for doc in cursor:
            count = await self.db.products.count_documents({"category_id": str(doc["_id"])})
            categories.append(category_response(doc, count))
        return categories

    async def get_category(self, id_or_slug: str) -> dict:
        oid = maybe_oid(id_or_slug)
        query = {"_id": oid} if oid else {"slug": id_or_slug}
        category = await self.db.categories.find_one(query)
        if not category:
            raise NotFoundException("Category not found")
        return category

    async def create_category(self, data: CategoryCreate) -> dict:
        doc = data.model_dump()
        doc["slug"] = slugify(doc.get("slug") or doc["name"])
        if not doc["slug"]:
            raise BadRequestException("Category slug is required")
        try:
            result = await self.db.categories.insert_one(to_mongo(CategoryDB(**doc)))
        except DuplicateKeyError:
            raise ConflictException("Category slug already exists")
        return await self.db.categories.find_one({"_id": result.inserted_id})

    async def update_category(self, category_id: str, data: CategoryUpdate) -> dict:
        category = await self.db.categories.find_one({"_id": str_to_oid(category_id)})
        if not category:
            raise NotFoundException("Category not found")

        update_data = {k: v for k, v in data.model_dump().items() if v is not None}
        if "slug" in update_data:
            update_data["slug"] = slugify(update_data["slug"])
        if update_data:
            try:
                await self.db.categories.update_one({"_id": category["_id"]}, {"$set": update_data})
            except DuplicateKeyError:
                raise ConflictException("Category slug already exists")
        return await self.db.categories.find_one({"_id": category["_id"]})

    async def delete_category(self, category_id: str) -> int:
        """Delete a category, moving its products to the uncategorized bucket (which unpublishes them)."""
        category = await self.db.categories.find_one({"_id": str_to_oid(category_id)})
        if not category:
            raise NotFoundException("Category not found")
        if category["slug"] == UNCATEGORIZED_SLUG:
            raise BadRequestException("The uncategorized category cannot be deleted")

        uncategorized = await self.ensure_uncategorized()
        result = await self.db.products.update_many(
            {"category_id": str(category["_id"])},
            {"$set": {
                "category_id": str(uncategorized["_id"]),
                "is_active": False,
                "updated_at": datetime.utcnow(),
            }},
        )
        await self.db.categories.delete_one({"_id": category["_id"]})
        logger.info(f"Category {category['slug']} deleted, {result.modified_count} products moved")
        return result.modified_count

    # --- Products ---

    async def list_products(
        self,
        page: int = 1,
        limit: int = 10,
        category_id: Optional[str] = None,
        is_featured: Optional[bool] = None,
        is_combo: Optional[bool] = None,
        search: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        include_inactive: bool = False,
    ) -> ProductListResponse:
        query = {} if include_inactive else {"is_active": True}
        if category_id:
            query["category_id"] = category_id
        if is_featured is not None:
            query["is_featured"] = is_featured
        if is_combo is not None:
            query["is_combo"] = is_combo

        price_query = {}
        if min_price is not None:
            price_query["$gte"] = float(min_price)
        if max_price is not None:
            price_query["$lte"] = float(max_price)
        if price_query:
            query["price_usd"] = price_query

        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"description": pattern}]

        skip = (page - 1) * limit
        total = await self.db.products.count_documents(query)
        cursor = self.db.products.find(query).sort("created_at", -1).skip(skip).limit(limit)
        docs = await cursor.to_list(length=limit)

        products = [await self.product_response(doc) for doc in docs]
        return ProductListResponse(
            products=products,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def get_product(self, product_id: str, include_inactive: bool = False) -> dict:
        query = {"_id": str_to_oid(product_id)}
        if not include_inactive:
            query["is_active"] = True
        product = await self.db.products.find_one(query)
        if not product:
            raise NotFoundException("Product not found")
        return product

    async def get_product_by_slug(self, slug: str, include_inactive: bool = False) -> dict:
        query = {"slug": slug}
        if not include_inactive:
            query["is_active"] = True
        product = await self.db.products.find_one(query)
        if not product:
            raise NotFoundException("Product not found")
        return product

    async def best_sellers(self, limit: int = BEST_SELLERS_DEFAULT) -> List[dict]:
        """Active products ranked by units sold on paid orders; products on sale when nothing has sold yet."""
        limit = max(1, min(BEST_SELLERS_MAX, limit))

        sold = {}
        async for order in self.db.orders.find({"payment_status": PaymentStatus.PAID.value}, {"items": 1}):
            for item in order.get("items", []):
                sold[item["product_id"]] = sold.get(item["product_id"], 0) + item["quantity"]

        if not sold:
            candidates = await self.db.products.find({"is_active": True}).sort("created_at", -1).to_list(
                length=max(50, limit * 5)
            )
            on_sale = [doc for doc in candidates if await self._is_on_sale(doc)]
            return on_sale[:limit]

        ranked = sorted(sold.items(), key=lambda entry: entry[1], reverse=True)
        products = []
        for product_id, _ in ranked:
            product = await self.db.products.find_one({"_id": maybe_oid(product_id), "is_active": True})
            if product:
                products.append(product)
            if len(products) == limit:
                break
        return products

    async def _is_on_sale(self, doc: dict) -> bool:
        if _discounted(doc):
            return True
        variants = self.db.product_variants.find({"product_id": str(doc["_id"]), "is_active": True})
        return any([_discounted(v) async for v in variants])

    async def _check_category(self, category_id: str) -> dict:
        category = await self.db.categories.find_one({"_id": maybe_oid(category_id)})
        if not category:
            raise BadRequestException(f"Invalid category: '{category_id}' not found")
        return category

    async def _check_combo_items(self, combo_items: list, product_id: Optional[str] = None) -> list:
        """Drop self references and merge duplicates; components must exist and must not be combos."""
        merged = {}
        for item in combo_items:
            if item["product_id"] == product_id:
                continue
            merged[item["product_id"]] = merged.get(item["product_id"], 0) + item["quantity"]

        normalized = []
        for component_id, quantity in merged.items():
            component = await self.db.products.find_one({"_id": maybe_oid(component_id)})
            if not component:
                raise BadRequestException(f"Combo component {component_id} not found")
            if component.get("is_combo"):
                raise BadRequestException(f"Combo component {component['name']} is itself a combo")
            normalized.append({"product_id": component_id, "quantity": quantity})
        return normalized

    async def create_product(self, data: ProductCreate) -> dict:
        doc = data.model_dump()
        category = await self._check_category(doc["category_id"])
        if category["slug"] == UNCATEGORIZED_SLUG:
            doc["is_active"] = False

        if doc["is_combo"]:
            doc["combo_items"] = await self._check_combo_items(doc["combo_items"])
        else:
            doc["combo_items"] = []

        product_db = ProductDB(**doc)
        try:
            result = await self.db.products.insert_one(to_mongo(product_db))
        except DuplicateKeyError:
            raise ConflictException("Slug already exists, please choose another one")
        logger.info(f"Product created: {product_db.slug}", extra={"product_id": str(result.inserted_id)})
        return await self.db.products.find_one({"_id": result.inserted_id})

    async def update_product(self, product_id: str, data: ProductUpdate) -> dict:
        product = await self.get_product(product_id, include_inactive=True)
        update_data = {k: v for k, v in data.model_dump().items() if v is not None}

        category_slug = None
        if "category_id" in update_data:
            category_slug = (await self._check_category(update_data["category_id"]))["slug"]
        else:
            current = await self.db.categories.find_one({"_id": maybe_oid(product["category_id"])})
            category_slug = current["slug"] if current else None
        if category_slug == UNCATEGORIZED_SLUG:
            update_data["is_active"] = False

        is_combo = update_data.get("is_combo", product.get("is_combo", False))
        if not is_combo:
            update_data["combo_items"] = []
        elif "combo_items" in update_data:
            update_data["combo_items"] = await self._check_combo_items(
                update_data["combo_items"], product_id=str(product["_id"])
            )

        if update_data:
            update_data["updated_at"] = datetime.utcnow()
            try:
                await self.db.products.update_one(
                    {"_id": product["_id"]}, {"$set": to_plain(update_data)}
                )
            except DuplicateKeyError:
                raise ConflictException("Slug already exists, please choose another one")
        return await self.db.products.find_one({"_id": product["_id"]})

    async def delete_product(self, product_id: str):
        product = await self.get_product(product_id, include_inactive=True)
        await self.db.products.update_one(
            {"_id": product["_id"]},
            {"$set": {"is_active": False, "updated_at": datetime.utcnow()}}
        )

    async def product_response(self, doc: dict, include_inactive_variants: bool = False) -> ProductResponse:
        product_id = str(doc["_id"])
        variant_query = {"product_id": product_id}
        if not include_inactive_variants:
            variant_query["is_active"] = True
        variants = await self.db.product_variants.find(variant_query).sort("order", 1).to_list(length=None)

        category = await self.db.categories.find_one({"_id": maybe_oid(doc.get("category_id"))})

        components = []
        for item in doc.get("combo_items", []):
            component = await self.db.products.find_one({"_id": maybe_oid(item["product_id"])})
            components.append(ComboComponentResponse(
                product_id=item["product_id"],
                quantity=item["quantity"],
                name=component["name"] if component else None,
                slug=component["slug"] if component else None,
                price=resolve_price(component) if component else None,
                is_active=component.get("is_active") if component else None,
            ))

        data = serialize(doc)
        data.update(
            price=resolve_price(doc),
            variants=[variant_response(v) for v in variants],
            category=category_response(category) if category else None,
            combo_items=components,
        )
        return ProductResponse(**data)

    # --- Variants ---

    async def list_variants(self, product_id: str, include_inactive: bool = False) -> List[VariantResponse]:
        await self.get_product(product_id, include_inactive=include_inactive)
        query = {"product_id": product_id}
        if not include_inactive:
            query["is_active"] = True
        cursor = self.db.product_variants.find(query).sort("order", 1)
        return [variant_response(doc) async for doc in cursor]

    async def get_variant(self, variant_id: str) -> dict:
        variant = await self.db.product_variants.find_one({"_id": str_to_oid(variant_id)})
        if not variant:
            raise NotFoundException("Product variant not found")
        return variant

    async def create_variant(self, product_id: str, data: VariantCreate) -> dict:
        product = await self.get_product(product_id, include_inactive=True)
        variant_db = ProductVariantDB(product_id=str(product["_id"]), **data.model_dump())
        result = await self.db.product_variants.insert_one(to_mongo(variant_db))
        return await self.db.product_variants.find_one({"_id": result.inserted_id})

    async def update_variant(self, variant_id: str, data: VariantUpdate) -> dict:
        variant = await self.get_variant(variant_id)
        update_data = {k: v for k, v in data.model_dump().items() if v is not None}
        if update_data:
            await self.db.product_variants.update_one(
                {"_id": variant["_id"]}, {"$set": to_plain(update_data)}
            )
        return await self.db.product_variants.find_one({"_id": variant["_id"]})

    async def delete_variant(self, variant_id: str):
        variant = await self.get_variant(variant_id)
        await self.db.product_variants.delete_one({"_id": variant["_id"]})
        # Lines pointing at a variant that no longer exists could never be checked out
        await self.db.cart_items.delete_many({"variant_id": variant_id})


# --- Dependencies ---

def get_catalog_service(db: AsyncIOMotorDatabase = Depends(get_database)) -> CatalogService:
    return CatalogService(db)


def _wants_inactive(user: Optional[dict], include_inactive: bool) -> bool:
    return include_inactive and user is not None and user.get("role") == Role.ADMIN.value


# --- Endpoints ---

# Products
@router.get("/products", response_model=SuccessResponse[ProductListResponse])
@limiter.limit(CATALOG_READ_RATE)
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category_id: Optional[str] = None,
    is_featured: Optional[bool] = None,
    is_combo: Optional[bool] = None,
    search: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    include_inactive: bool = False,
    user: Optional[dict] = Depends(optional_auth),
    service: CatalogService = Depends(get_catalog_service),
):
    result = await service.list_products(
        page=page,
        limit=limit,
        category_id=category_id,
        is_featured=is_featured,
        is_combo=is_combo,
        search=search,
        min_price=min_price,
        max_price=max_price,
        include_inactive=_wants_inactive(user, include_inactive),
    )
    return SuccessResponse(data=result)


@router.get("/products/best-sellers", response_model=SuccessResponse[List[ProductResponse]])
@limiter.limit(CATALOG_READ_RATE)
async def best_sellers(
    request: Request,
    limit: int = Query(BEST_SELLERS_DEFAULT, ge=1),
    service: CatalogService = Depends(get_catalog_service),
):
    products = await service.best_sellers(limit)
    return SuccessResponse(data=[await service.product_response(p) for p in products])


@router.get("/products/slug/{slug}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(CATALOG_READ_RATE)
async def get_product_by_slug(slug: str, request: Request, service: CatalogService = Depends(get_catalog_service)):
    product = await service.get_product_by_slug(slug)
    return SuccessResponse(data=await service.product_response(product))


@router.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(CATALOG_READ_RATE)
async def get_product(product_id: str, request: Request, service: CatalogService = Depends(get_catalog_service)):
    product = await service.get_product(product_id)
    return SuccessResponse(data=await service.product_response(product))


@router.post("/products", response_model=SuccessResponse[ProductResponse])
async def create_product(
    product: ProductCreate,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    created = await service.create_product(product)
    return SuccessResponse(
        data=await service.product_response(created, include_inactive_variants=True),
        message="Product created successfully",
    )


@router.patch("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: str,
    product_update: ProductUpdate,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    updated = await service.update_product(product_id, product_update)
    return SuccessResponse(
        data=await service.product_response(updated, include_inactive_variants=True),
        message="Product updated successfully",
    )


@router.delete("/products/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(
    product_id: str,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    await service.delete_product(product_id)
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")


# Variants
@router.get("/products/{product_id}/variants", response_model=SuccessResponse[List[VariantResponse]])
async def list_variants(product_id: str, service: CatalogService = Depends(get_catalog_service)):
    return SuccessResponse(data=await service.list_variants(product_id))


@router.post("/products/{product_id}/variants", response_model=SuccessResponse[VariantResponse])
async def create_variant(
    product_id: str,
    variant: VariantCreate,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    created = await service.create_variant(product_id, variant)
    return SuccessResponse(data=variant_response(created), message="Variant created successfully")


@router.patch("/variants/{variant_id}", response_model=SuccessResponse[VariantResponse])
async def update_variant(
    variant_id: str,
    variant_update: VariantUpdate,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    updated = await service.update_variant(variant_id, variant_update)
    return SuccessResponse(data=variant_response(updated), message="Variant updated successfully")


@router.delete("/variants/{variant_id}", response_model=SuccessResponse[dict])
async def delete_variant(
    variant_id: str,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    await service.delete_variant(variant_id)
    return SuccessResponse(data={"id": variant_id}, message="Variant deleted successfully")


# Categories
@router.get("/categories", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories(service: CatalogService = Depends(get_catalog_service)):
    return SuccessResponse(data=await service.list_categories())


@router.get("/categories/admin", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories_admin(
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    return SuccessResponse(data=await service.list_categories(include_inactive=True))


@router.get("/categories/{id_or_slug}", response_model=SuccessResponse[CategoryResponse])
async def get_category(id_or_slug: str, service: CatalogService = Depends(get_catalog_service)):
    category = await service.get_category(id_or_slug)
    count = await service.db.products.count_documents({"category_id": str(category["_id"]), "is_active": True})
    return SuccessResponse(data=category_response(category, count))


@router.post("/categories", response_model=SuccessResponse[CategoryResponse])
async def create_category(
    category: CategoryCreate,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    created = await service.create_category(category)
    return SuccessResponse(data=category_response(created), message="Category created successfully")


@router.patch("/categories/{category_id}", response_model=SuccessResponse[CategoryResponse])
async def update_category(
    category_id: str,
    category_update: CategoryUpdate,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    updated = await service.update_category(category_id, category_update)
    return SuccessResponse(data=category_response(updated), message="Category updated successfully")


@router.delete("/categories/{category_id}", response_model=SuccessResponse[dict])
async def delete_category(
    category_id: str,
    admin: dict = Depends(require_admin),
    service: CatalogService = Depends(get_catalog_service),
):
    moved = await service.delete_category(category_id)
    return SuccessResponse(
        data={"id": category_id, "moved_products": moved},
        message="Category deleted successfully",
    )
