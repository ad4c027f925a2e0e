"""Checkout: cart snapshot -> pending order -> paid, stock-committed order.

An order is created PENDING/PENDING without touching stock or the cart.
Only ``confirm_payment`` commits it: the order is claimed with a
conditional update so a second confirmation can never run the stock
decrement again, and every stock decrement is itself conditional on the
remaining stock so two orders can never oversell the same unit.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.utils import (
    settings, SuccessResponse, BadRequestException, NotFoundException, ConflictException,
)
from storefront.auth import get_current_user, require_admin, is_admin
from storefront.cart import CartService, get_cart_service
from storefront.database import get_database, str_to_oid, maybe_oid, serialize
from storefront.models import (
    AddressDB, AppliedOfferDB, OrderDB, OrderItemDB, OrderStatus, PaymentStatus, to_mongo,
)
from storefront.notifications import EmailService, get_email_service
from storefront.offers import OfferService, get_offer_service
from storefront.pricing import ZERO, compute_totals, generate_order_number, quantize, to_decimal
from storefront.schemas import OrderCreate, OrderUpdate, OrderStatusUpdate, OrderResponse

logger = logging.getLogger("storefront.orders")

router = APIRouter(prefix="/orders", tags=["orders"])


def order_response(doc: dict) -> OrderResponse:
    return OrderResponse(**serialize(doc))


def snapshot_name(item: dict) -> str:
    if item.get("variant_name"):
        return f"{item['product_name']} - {item['variant_name']}"
    return item["product_name"]


def is_awaiting_payment(order: dict) -> bool:
    return (
        order["status"] == OrderStatus.PENDING.value
        and order["payment_status"] == PaymentStatus.PENDING.value
    )


class OrderService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        cart_service: CartService,
        offer_service: OfferService,
        email_service: EmailService,
    ):
        self.db = db
        self.cart = cart_service
        self.offers = offer_service
        self.email_service = email_service

    async def create(self, user_id: str, data: OrderCreate) -> dict:
        lines = await self.cart.load_lines(user_id)
        if not lines:
            raise BadRequestException("Cart is empty")

        for line in lines:
            if not line.available:
                raise BadRequestException(f"{line.name} is no longer available")
            if line.stock < line.quantity:
                raise BadRequestException(f"Insufficient stock for {line.name}")

        subtotal = self.cart.subtotal(lines)

        discount = ZERO
        applied_offer = None
        claimed_offer = None
        if data.offer_code:
            result, offer = await self.offers.evaluate(data.offer_code, subtotal)
            if not result.valid:
                raise BadRequestException(result.message)
            if not await self.offers.claim_usage(offer):
                raise BadRequestException("This coupon has reached its usage limit")
            claimed_offer = offer
            discount = result.discount
            applied_offer = AppliedOfferDB(
                id=str(offer["_id"]),
                code=offer["code"],
                name=offer["name"],
                type=offer["type"],
                value=to_decimal(offer["value"]),
            )

        items = [
            OrderItemDB(
                product_id=line.item["product_id"],
                variant_id=line.item.get("variant_id"),
                product_name=line.product["name"],
                variant_name=line.variant["name"] if line.variant else None,
                quantity=line.quantity,
                price=quantize(line.unit_price),
            )
            for line in lines
        ]
        totals = compute_totals(subtotal, discount)
        shipping_address = AddressDB(**data.shipping_address.model_dump())
        billing_address = (
            AddressDB(**data.billing_address.model_dump()) if data.billing_address else shipping_address
        )

        try:
            order_id = await self._insert_order(dict(
                user_id=user_id,
                items=items,
                shipping_address=shipping_address,
                billing_address=billing_address,
                payment_intent_id=data.payment_intent_id,
                notes=data.notes,
                offer=applied_offer,
                **totals,
            ))
        except Exception:
            if claimed_offer:
                await self.offers.release_usage(claimed_offer["_id"])
            raise

        order = await self.db.orders.find_one({"_id": order_id})
        logger.info(
            "Order created",
            extra={"order_id": str(order_id), "order_number": order["order_number"], "user_id": user_id},
        )
        return order

    async def _insert_order(self, fields: dict):
        # The unique index on order_number turns a collision into a retry
        for attempt in range(settings.ORDER_NUMBER_MAX_ATTEMPTS):
            order_db = OrderDB(order_number=generate_order_number(), **fields)
            try:
                result = await self.db.orders.insert_one(to_mongo(order_db))
            except DuplicateKeyError:
                logger.warning(
                    f"Order number collision on attempt {attempt + 1}",
                    extra={"order_number": order_db.order_number},
                )
                continue
            return result.inserted_id
        raise ConflictException("Could not allocate a unique order number, please retry")

    async def find_all(self, user_id: Optional[str] = None) -> List[dict]:
        query = {"user_id": user_id} if user_id else {}
        cursor = self.db.orders.find(query).sort("created_at", -1)
        return await cursor.to_list(length=None)

    async def find_one(self, order_id: str, user_id: Optional[str] = None) -> dict:
        query = {"_id": str_to_oid(order_id)}
        if user_id:
            query["user_id"] = user_id
        order = await self.db.orders.find_one(query)
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def update(self, order_id: str, data: OrderUpdate, user_id: Optional[str] = None) -> dict:
        """Attach a payment reference; on a PENDING order this is the payment confirmation."""
        order = await self.find_one(order_id, user_id)

        if data.payment_intent_id and is_awaiting_payment(order):
            return await self.confirm_payment(order_id, data.payment_intent_id)

        if data.payment_intent_id:
            await self.db.orders.update_one(
                {"_id": order["_id"]},
                {"$set": {"payment_intent_id": data.payment_intent_id, "updated_at": datetime.utcnow()}},
            )
        return await self.db.orders.find_one({"_id": order["_id"]})

    async def confirm_payment(self, order_id: str, payment_reference: str) -> dict:
        oid = str_to_oid(order_id)
        now = datetime.utcnow()

        claimed = await self.db.orders.find_one_and_update(
            {
                "_id": oid,
                "status": OrderStatus.PENDING.value,
                "payment_status": PaymentStatus.PENDING.value,
                "confirming": {"$ne": True},
            },
            {"$set": {"confirming": True, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not claimed:
            order = await self.db.orders.find_one({"_id": oid})
            if not order:
                raise NotFoundException("Order not found")
            if is_awaiting_payment(order):
                raise ConflictException("Payment confirmation already in progress for this order")
            # Already paid: keep the reference, never decrement twice
            logger.info(
                "Order already paid, storing payment reference only",
                extra={"order_id": order_id, "order_number": order["order_number"]},
            )
            return await self.db.orders.find_one_and_update(
                {"_id": oid},
                {"$set": {"payment_intent_id": payment_reference, "updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )

        confirmed = None
        committed = False
        try:
            await self._commit_stock(claimed["items"])
            committed = True
            confirmed = await self.db.orders.find_one_and_update(
                {"_id": oid},
                {"$set": {
                    "status": OrderStatus.PROCESSING.value,
                    "payment_status": PaymentStatus.PAID.value,
                    "payment_intent_id": payment_reference,
                    "confirming": False,
                    "updated_at": datetime.utcnow(),
                }},
                return_document=ReturnDocument.AFTER,
            )
        finally:
            if confirmed is None:
                # The order stays PENDING and can be confirmed again
                if committed:
                    await self._restock(claimed["items"])
                await self.db.orders.update_one({"_id": oid}, {"$set": {"confirming": False}})

        logger.info(
            "Order payment confirmed",
            extra={"order_id": order_id, "order_number": confirmed["order_number"], "user_id": confirmed["user_id"]},
        )

        await self._clear_owner_cart(confirmed)
        await self._notify_owner(confirmed, "confirmation")
        return confirmed

    def _stock_target(self, item: dict):
        if item.get("variant_id"):
            return self.db.product_variants, maybe_oid(item["variant_id"])
        return self.db.products, maybe_oid(item["product_id"])

    async def _commit_stock(self, items: List[dict]):
        # Nothing is mutated until every line has been checked
        await self._check_stock(items)
        await self._decrement_stock(items)

    async def _check_stock(self, items: List[dict]):
        for item in items:
            collection, oid = self._stock_target(item)
            doc = await collection.find_one({"_id": oid})
            if not doc or doc.get("stock", 0) < item["quantity"]:
                raise BadRequestException(f"Insufficient stock for {snapshot_name(item)}")

    async def _decrement_stock(self, items: List[dict]):
        """Conditionally decrement every line; on the first miss, put back what was already taken."""
        applied = []
        try:
            for item in items:
                collection, oid = self._stock_target(item)
                result = await collection.update_one(
                    {"_id": oid, "stock": {"$gte": item["quantity"]}},
                    {"$inc": {"stock": -item["quantity"]}},
                )
                if result.modified_count != 1:
                    raise BadRequestException(f"Insufficient stock for {snapshot_name(item)}")
                applied.append(item)
        except Exception:
            await self._restock(applied)
            raise

    async def _restock(self, items: List[dict]):
        for item in reversed(items):
            collection, oid = self._stock_target(item)
            await collection.update_one({"_id": oid}, {"$inc": {"stock": item["quantity"]}})
        logger.warning(f"Stock commit aborted, reverted {len(items)} decrements")

    async def _clear_owner_cart(self, order: dict):
        try:
            await self.cart.clear_cart(order["user_id"])
        except Exception:
            # The order is already paid; leftover cart lines are harmless
            logger.warning(
                "Cart clear after payment failed",
                extra={"order_id": str(order["_id"]), "user_id": order["user_id"]},
                exc_info=True,
            )

    async def update_status(self, order_id: str, data: OrderStatusUpdate) -> dict:
        order = await self.find_one(order_id)

        update_data = {}
        if data.status is not None:
            update_data["status"] = data.status.value
        if data.payment_status is not None:
            update_data["payment_status"] = data.payment_status.value
        if not update_data:
            return order

        update_data["updated_at"] = datetime.utcnow()
        updated = await self.db.orders.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(
            f"Order status set to {updated['status']}/{updated['payment_status']}",
            extra={"order_id": order_id, "order_number": updated["order_number"]},
        )

        if data.status is not None and data.status.value != order["status"]:
            await self._notify_owner(updated, "status")
        return updated

    async def _notify_owner(self, order: dict, kind: str):
        try:
            user = await self.db.users.find_one({"_id": maybe_oid(order["user_id"])})
            if not user:
                return
            if kind == "confirmation":
                await self.email_service.send_order_confirmation(user["email"], order)
            else:
                await self.email_service.send_order_status_update(user["email"], order["order_number"], order["status"])
        except Exception:
            # Email is best-effort; the order change is already committed
            logger.warning(
                f"Order {kind} email failed",
                extra={"order_id": str(order["_id"]), "order_number": order["order_number"]},
                exc_info=True,
            )


# --- Dependencies ---

def get_order_service(
    db: AsyncIOMotorDatabase = Depends(get_database),
    cart_service: CartService = Depends(get_cart_service),
    offer_service: OfferService = Depends(get_offer_service),
    email_service: EmailService = Depends(get_email_service),
) -> OrderService:
    return OrderService(db, cart_service, offer_service, email_service)


# --- Endpoints ---

@router.post("", response_model=SuccessResponse[OrderResponse])
async def create_order(
    body: OrderCreate,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = await service.create(user["id"], body)
    return SuccessResponse(data=order_response(order), message="Order created successfully")


@router.get("", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(user: dict = Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    orders = await service.find_all(user["id"])
    return SuccessResponse(data=[order_response(o) for o in orders])


@router.get("/all", response_model=SuccessResponse[List[OrderResponse]])
async def list_all_orders(admin: dict = Depends(require_admin), service: OrderService = Depends(get_order_service)):
    orders = await service.find_all()
    return SuccessResponse(data=[order_response(o) for o in orders])


@router.get("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = await service.find_one(order_id, None if is_admin(user) else user["id"])
    return SuccessResponse(data=order_response(order))


@router.patch("/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_status(order_id, body)
    return SuccessResponse(data=order_response(order), message="Order status updated")


@router.patch("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def update_order(
    order_id: str,
    body: OrderUpdate,
    user: dict = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    order = await service.update(order_id, body, None if is_admin(user) else user["id"])
    return SuccessResponse(data=order_response(order))
