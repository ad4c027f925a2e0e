import asyncio
from decimal import Decimal
from unittest import mock

import pytest

from shared.utils import BadRequestException, ConflictException, NotFoundException
from storefront import orders as orders_module
from storefront.cart import CartService
from storefront.models import Role
from storefront.offers import OfferService
from storefront.orders import OrderService
from storefront.schemas import Address, OrderCreate, OrderStatusUpdate, OrderUpdate

from conftest import (
    ADDRESS, add_to_cart, auth_headers, create_category, create_offer, create_product, create_user, create_variant,
    money,
)


def make_service(db, emails):
    return OrderService(db, CartService(db), OfferService(db), emails)


def checkout(**fields) -> OrderCreate:
    return OrderCreate(shipping_address=Address(**ADDRESS), **fields)


@pytest.fixture
async def shop(db):
    category = await create_category(db)
    user = await create_user(db)
    product = await create_product(db, category, price_usd="10.00", stock=5)
    return {"user": user, "user_id": str(user["_id"]), "category": category, "product": product}


async def stock_of(db, doc, collection="products"):
    return (await db[collection].find_one({"_id": doc["_id"]}))["stock"]


# --- create ---

async def test_create_order_totals_and_snapshot(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)

    order = await make_service(db, emails).create(shop["user_id"], checkout())

    assert order["status"] == "PENDING"
    assert order["payment_status"] == "PENDING"
    assert order["order_number"].startswith("ORD-")
    assert money(order["subtotal"]) == Decimal("20.00")
    assert money(order["shipping"]) == Decimal("5.99")
    assert money(order["tax"]) == Decimal("0")
    assert money(order["total"]) == Decimal("25.99")
    assert order["items"][0]["product_name"] == "Hot Sauce"
    assert money(order["items"][0]["price"]) == Decimal("10.00")
    assert order["billing_address"] == order["shipping_address"]


async def test_create_order_leaves_stock_and_cart_untouched(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)

    await make_service(db, emails).create(shop["user_id"], checkout())

    assert await stock_of(db, shop["product"]) == 5
    assert await db.cart_items.count_documents({"user_id": shop["user_id"]}) == 1


async def test_price_snapshot_survives_later_price_change(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    order = await make_service(db, emails).create(shop["user_id"], checkout())

    await db.products.update_one({"_id": shop["product"]["_id"]}, {"$set": {"price_usd": 99.0}})

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert money(stored["items"][0]["price"]) == Decimal("10.00")
    assert money(stored["total"]) == Decimal("15.99")


async def test_create_order_with_variant_line(db, emails, shop):
    variant = await create_variant(db, shop["product"], name="Large", price_usd="15.00", stock=3)
    await add_to_cart(db, shop["user"], shop["product"], quantity=1, variant=variant)

    order = await make_service(db, emails).create(shop["user_id"], checkout())

    item = order["items"][0]
    assert item["variant_id"] == str(variant["_id"])
    assert item["variant_name"] == "Large"
    assert money(item["price"]) == Decimal("15.00")


async def test_create_order_empty_cart(db, emails, shop):
    with pytest.raises(BadRequestException) as exc:
        await make_service(db, emails).create(shop["user_id"], checkout())
    assert exc.value.detail == "Cart is empty"
    assert await db.orders.count_documents({}) == 0


async def test_create_order_insufficient_stock(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=6)

    with pytest.raises(BadRequestException) as exc:
        await make_service(db, emails).create(shop["user_id"], checkout())
    assert exc.value.detail == "Insufficient stock for Hot Sauce"


async def test_create_order_unavailable_product(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    await db.products.update_one({"_id": shop["product"]["_id"]}, {"$set": {"is_active": False}})

    with pytest.raises(BadRequestException) as exc:
        await make_service(db, emails).create(shop["user_id"], checkout())
    assert exc.value.detail == "Hot Sauce is no longer available"


async def test_create_order_with_coupon(db, emails, shop):
    offer = await create_offer(db, code="SAVE10", value="10", usage_limit=5)
    await add_to_cart(db, shop["user"], shop["product"], quantity=5)

    order = await make_service(db, emails).create(shop["user_id"], checkout(offer_code="save10"))

    assert money(order["discount"]) == Decimal("5.00")
    assert money(order["shipping"]) == Decimal("0")
    assert money(order["total"]) == Decimal("45.00")
    assert order["offer"]["code"] == "SAVE10"
    assert (await db.offers.find_one({"_id": offer["_id"]}))["usage_count"] == 1


async def test_create_order_with_invalid_coupon(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)

    with pytest.raises(BadRequestException) as exc:
        await make_service(db, emails).create(shop["user_id"], checkout(offer_code="NOPE"))
    assert exc.value.detail == "Coupon not found"


async def test_coupon_limit_race_admits_one_order(db, emails, shop):
    offer = await create_offer(db, code="LAST", usage_limit=1)
    other = await create_user(db, email="other@example.com")
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    await add_to_cart(db, other, shop["product"], quantity=1)
    service = make_service(db, emails)

    results = await asyncio.gather(
        service.create(shop["user_id"], checkout(offer_code="LAST")),
        service.create(str(other["_id"]), checkout(offer_code="LAST")),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if isinstance(r, BadRequestException)]
    assert len(created) == 1
    assert len(failed) == 1
    assert (await db.offers.find_one({"_id": offer["_id"]}))["usage_count"] == 1


async def test_order_number_collision_is_retried(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    service = make_service(db, emails)
    first = await service.create(shop["user_id"], checkout())

    numbers = iter([first["order_number"], "ORD-1-FRESHNUMB"])
    with mock.patch.object(orders_module, "generate_order_number", lambda: next(numbers)):
        second = await service.create(shop["user_id"], checkout())

    assert second["order_number"] == "ORD-1-FRESHNUMB"


async def test_order_number_exhaustion_releases_coupon(db, emails, shop):
    offer = await create_offer(db, code="SAVE10")
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    service = make_service(db, emails)

    first = await service.create(shop["user_id"], checkout())

    with mock.patch.object(orders_module, "generate_order_number", lambda: first["order_number"]):
        with pytest.raises(ConflictException):
            await service.create(shop["user_id"], checkout(offer_code="SAVE10"))

    assert (await db.offers.find_one({"_id": offer["_id"]}))["usage_count"] == 0
    assert await db.orders.count_documents({}) == 1


# --- confirm ---

async def test_confirm_payment_commits_stock_and_clears_cart(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    confirmed = await service.confirm_payment(str(order["_id"]), "pi_123")

    assert confirmed["status"] == "PROCESSING"
    assert confirmed["payment_status"] == "PAID"
    assert confirmed["payment_intent_id"] == "pi_123"
    assert confirmed["confirming"] is False
    assert await stock_of(db, shop["product"]) == 3
    assert await db.cart_items.count_documents({"user_id": shop["user_id"]}) == 0
    assert [m["order_number"] for m in emails.of_kind("confirmation")] == [order["order_number"]]


async def test_confirm_payment_twice_decrements_once(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    await service.confirm_payment(str(order["_id"]), "pi_1")
    again = await service.confirm_payment(str(order["_id"]), "pi_2")

    assert again["status"] == "PROCESSING"
    assert again["payment_intent_id"] == "pi_2"
    assert await stock_of(db, shop["product"]) == 3
    assert len(emails.of_kind("confirmation")) == 1


async def test_paid_order_moved_back_to_pending_is_not_committed_again(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())
    await service.confirm_payment(str(order["_id"]), "pi_1")
    assert await stock_of(db, shop["product"]) == 3

    await service.update_status(str(order["_id"]), OrderStatusUpdate(status="PENDING"))
    again = await service.update(str(order["_id"]), OrderUpdate(payment_intent_id="pi_2"), shop["user_id"])

    assert again["payment_status"] == "PAID"
    assert again["payment_intent_id"] == "pi_2"
    assert await stock_of(db, shop["product"]) == 3
    assert len(emails.of_kind("confirmation")) == 1


async def test_cart_clear_failure_does_not_strand_the_order(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    with mock.patch.object(CartService, "clear_cart", mock.AsyncMock(side_effect=RuntimeError("db blip"))):
        confirmed = await service.confirm_payment(str(order["_id"]), "pi_1")

    assert confirmed["payment_status"] == "PAID"
    assert confirmed["confirming"] is False
    assert await stock_of(db, shop["product"]) == 3

    again = await service.confirm_payment(str(order["_id"]), "pi_1")
    assert again["status"] == "PROCESSING"
    assert await stock_of(db, shop["product"]) == 3


async def test_cancelled_confirmation_releases_claim(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    with mock.patch.object(OrderService, "_check_stock", mock.AsyncMock(side_effect=asyncio.CancelledError)):
        with pytest.raises(asyncio.CancelledError):
            await service.confirm_payment(str(order["_id"]), "pi_1")

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "PENDING"
    assert stored["confirming"] is False
    assert await stock_of(db, shop["product"]) == 5

    confirmed = await service.confirm_payment(str(order["_id"]), "pi_1")
    assert confirmed["payment_status"] == "PAID"
    assert await stock_of(db, shop["product"]) == 3


async def test_concurrent_confirmations_of_same_order_decrement_once(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    results = await asyncio.gather(
        service.confirm_payment(str(order["_id"]), "pi_a"),
        service.confirm_payment(str(order["_id"]), "pi_b"),
        return_exceptions=True,
    )

    assert any(isinstance(r, dict) and r["payment_status"] == "PAID" for r in results)
    assert all(isinstance(r, (dict, ConflictException)) for r in results)
    assert await stock_of(db, shop["product"]) == 3


async def test_last_unit_sold_to_exactly_one_order(db, emails, shop):
    await db.products.update_one({"_id": shop["product"]["_id"]}, {"$set": {"stock": 1}})
    other = await create_user(db, email="other@example.com")
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    await add_to_cart(db, other, shop["product"], quantity=1)
    service = make_service(db, emails)
    first = await service.create(shop["user_id"], checkout())
    second = await service.create(str(other["_id"]), checkout())

    results = await asyncio.gather(
        service.confirm_payment(str(first["_id"]), "pi_1"),
        service.confirm_payment(str(second["_id"]), "pi_2"),
        return_exceptions=True,
    )

    paid = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, BadRequestException)]
    assert len(paid) == 1
    assert len(rejected) == 1
    assert await stock_of(db, shop["product"]) == 0
    assert await db.orders.count_documents({"payment_status": "PAID"}) == 1
    assert await db.orders.count_documents({"status": "PENDING", "confirming": False}) == 1


async def test_failed_line_reverts_earlier_decrements(db, emails, shop):
    second = await create_product(db, shop["category"], name="Second", stock=4)
    await add_to_cart(db, shop["user"], shop["product"], quantity=2)
    await add_to_cart(db, shop["user"], second, quantity=3)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    # Another checkout took the second line's stock after the pre-check passed
    await db.products.update_one({"_id": second["_id"]}, {"$set": {"stock": 1}})

    with mock.patch.object(OrderService, "_check_stock", mock.AsyncMock()):
        with pytest.raises(BadRequestException) as exc:
            await service.confirm_payment(str(order["_id"]), "pi_1")

    assert exc.value.detail == "Insufficient stock for Second"
    assert await stock_of(db, shop["product"]) == 5
    assert await stock_of(db, second) == 1
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "PENDING"
    assert stored["confirming"] is False
    assert await db.cart_items.count_documents({"user_id": shop["user_id"]}) == 2


async def test_confirm_fails_when_stock_ran_out_after_creation(db, emails, shop):
    variant = await create_variant(db, shop["product"], stock=2)
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    await add_to_cart(db, shop["user"], shop["product"], quantity=2, variant=variant)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())
    await db.product_variants.update_one({"_id": variant["_id"]}, {"$set": {"stock": 1}})

    with pytest.raises(BadRequestException) as exc:
        await service.confirm_payment(str(order["_id"]), "pi_1")

    assert exc.value.detail == "Insufficient stock for Hot Sauce - Large"
    assert await stock_of(db, shop["product"]) == 5
    assert await stock_of(db, variant, "product_variants") == 1


async def test_confirm_unknown_order(db, emails):
    with pytest.raises(NotFoundException):
        await make_service(db, emails).confirm_payment("000000000000000000000000", "pi_1")


async def test_confirmation_email_failure_does_not_undo_payment(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    with mock.patch.object(emails, "send_order_confirmation", side_effect=RuntimeError("relay down")):
        confirmed = await service.confirm_payment(str(order["_id"]), "pi_1")

    assert confirmed["payment_status"] == "PAID"


# --- update / status / reads ---

async def test_update_with_payment_reference_confirms_pending_order(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    updated = await service.update(str(order["_id"]), OrderUpdate(payment_intent_id="pi_9"), shop["user_id"])

    assert updated["payment_status"] == "PAID"
    assert await stock_of(db, shop["product"]) == 4


async def test_update_foreign_order_is_not_found(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())
    other = await create_user(db, email="other@example.com")

    with pytest.raises(NotFoundException):
        await service.update(str(order["_id"]), OrderUpdate(payment_intent_id="pi_9"), str(other["_id"]))


async def test_update_status_overwrites_and_notifies_on_change(db, emails, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    service = make_service(db, emails)
    order = await service.create(shop["user_id"], checkout())

    shipped = await service.update_status(str(order["_id"]), OrderStatusUpdate(status="SHIPPED"))
    assert shipped["status"] == "SHIPPED"
    assert shipped["payment_status"] == "PENDING"

    # No transition rules: straight back to PENDING is accepted
    back = await service.update_status(str(order["_id"]), OrderStatusUpdate(status="PENDING"))
    assert back["status"] == "PENDING"

    await service.update_status(str(order["_id"]), OrderStatusUpdate(status="PENDING"))
    assert [m["status"] for m in emails.of_kind("status")] == ["SHIPPED", "PENDING"]


async def test_find_all_is_scoped_to_user(db, emails, shop):
    other = await create_user(db, email="other@example.com")
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    await add_to_cart(db, other, shop["product"], quantity=1)
    service = make_service(db, emails)
    await service.create(shop["user_id"], checkout())
    await service.create(str(other["_id"]), checkout())

    assert len(await service.find_all(shop["user_id"])) == 1
    assert len(await service.find_all()) == 2


# --- HTTP ---

async def test_checkout_over_http(client, db, shop):
    headers = auth_headers(shop["user"])
    resp = await client.post("/cart", json={"product_id": str(shop["product"]["_id"]), "quantity": 2}, headers=headers)
    assert resp.status_code == 200

    resp = await client.post("/orders", json={"shipping_address": ADDRESS}, headers=headers)
    assert resp.status_code == 200
    order = resp.json()["data"]
    assert money(order["total"]) == Decimal("25.99")
    assert "confirming" not in order

    resp = await client.patch(f"/orders/{order['id']}", json={"payment_intent_id": "pi_http"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "PROCESSING"

    resp = await client.get("/orders", headers=headers)
    assert [o["id"] for o in resp.json()["data"]] == [order["id"]]


async def test_orders_http_access_rules(client, db, shop):
    await add_to_cart(db, shop["user"], shop["product"], quantity=1)
    resp = await client.post("/orders", json={"shipping_address": ADDRESS}, headers=auth_headers(shop["user"]))
    order_id = resp.json()["data"]["id"]
    other = await create_user(db, email="other@example.com")
    admin = await create_user(db, email="admin@example.com", role=Role.ADMIN)

    assert (await client.post("/orders", json={"shipping_address": ADDRESS})).status_code == 401
    assert (await client.get(f"/orders/{order_id}", headers=auth_headers(other))).status_code == 404
    assert (await client.get(f"/orders/{order_id}", headers=auth_headers(admin))).status_code == 200
    assert (await client.get("/orders/all", headers=auth_headers(shop["user"]))).status_code == 403

    resp = await client.patch(f"/orders/{order_id}/status", json={"status": "CANCELLED"}, headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "CANCELLED"


async def test_empty_cart_checkout_over_http(client, shop):
    resp = await client.post("/orders", json={"shipping_address": ADDRESS}, headers=auth_headers(shop["user"]))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cart is empty"
