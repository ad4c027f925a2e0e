from datetime import datetime
from decimal import Decimal

import pytest

from shared.utils import BadRequestException, NotFoundException
from storefront.models import Role
from storefront.schemas import UserAdminUpdate
from storefront.users import UserService

from conftest import PASSWORD, auth_headers, create_user, money


@pytest.fixture
async def user(db):
    return await create_user(db, email="ada@example.com")


@pytest.fixture
async def admin(db):
    return await create_user(db, email="admin@example.com", role=Role.ADMIN)


async def insert_order(db, user, total, payment_status, created_at):
    await db.orders.insert_one({
        "order_number": f"ORD-{created_at.timestamp()}",
        "user_id": str(user["_id"]),
        "items": [],
        "total": total,
        "status": "PROCESSING" if payment_status == "PAID" else "PENDING",
        "payment_status": payment_status,
        "created_at": created_at,
    })


async def test_update_own_profile(client, user):
    resp = await client.patch(
        "/users/me",
        json={"first_name": "<b>Ada</b>", "city": "London", "zip_code": "N1 9GU"},
        headers=auth_headers(user),
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["first_name"] == "&lt;b&gt;Ada&lt;/b&gt;"
    assert data["city"] == "London"
    assert data["email"] == "ada@example.com"

    resp = await client.get("/users/me", headers=auth_headers(user))
    assert resp.json()["data"]["zip_code"] == "N1 9GU"


async def test_profile_update_cannot_change_role(client, user):
    resp = await client.patch("/users/me", json={"role": "ADMIN"}, headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["data"]["role"] == "USER"


async def test_admin_user_endpoints_require_admin(client, user):
    headers = auth_headers(user)
    assert (await client.get("/users", headers=headers)).status_code == 403
    assert (await client.get("/users/admin/customers", headers=headers)).status_code == 403
    assert (await client.get(f"/users/{user['_id']}", headers=headers)).status_code == 403


async def test_admin_deactivation_revokes_sessions(client, db, user, admin):
    tokens = (await client.post("/auth/login", json={"email": "ada@example.com", "password": PASSWORD})).json()["data"]

    resp = await client.patch(f"/users/{user['_id']}", json={"is_active": False}, headers=auth_headers(admin))

    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is False
    assert await db.refresh_tokens.count_documents({"user_id": str(user["_id"])}) == 0
    assert (await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})).status_code == 401
    assert (await client.get("/users/me", headers=auth_headers(user))).status_code == 401


async def test_admin_can_promote_user(db, user):
    updated = await UserService(db).update(str(user["_id"]), UserAdminUpdate(role=Role.ADMIN))
    assert updated["role"] == "ADMIN"


async def test_delete_user_removes_personal_data(client, db, user, admin):
    user_id = str(user["_id"])
    await db.cart_items.insert_one({"user_id": user_id, "product_id": "p1", "quantity": 1})
    await db.wishlist_items.insert_one({"user_id": user_id, "product_id": "p1"})
    await insert_order(db, user, 10.0, "PAID", datetime(2024, 1, 1))

    resp = await client.delete(f"/users/{user_id}", headers=auth_headers(admin))

    assert resp.status_code == 200
    assert await db.users.count_documents({"_id": user["_id"]}) == 0
    assert await db.cart_items.count_documents({"user_id": user_id}) == 0
    assert await db.wishlist_items.count_documents({"user_id": user_id}) == 0
    assert await db.orders.count_documents({"user_id": user_id}) == 1
    assert (await client.get(f"/users/{user_id}", headers=auth_headers(admin))).status_code == 404


async def test_admin_cannot_delete_self(db, admin):
    with pytest.raises(BadRequestException):
        await UserService(db).delete(str(admin["_id"]), str(admin["_id"]))


async def test_missing_user(db):
    with pytest.raises(NotFoundException):
        await UserService(db).get("000000000000000000000000")


async def test_customers_with_order_stats(db, user, admin):
    other = await create_user(db, email="bob@example.com")
    await insert_order(db, user, 30.0, "PAID", datetime(2024, 3, 1))
    await insert_order(db, user, 12.5, "PAID", datetime(2024, 5, 1))
    await insert_order(db, user, 99.0, "PENDING", datetime(2024, 4, 1))

    result = await UserService(db).list_customers()

    assert result.total == 2
    by_email = {c.email: c for c in result.customers}
    assert "admin@example.com" not in by_email
    ada = by_email["ada@example.com"]
    assert ada.total_orders == 3
    assert ada.total_spent == Decimal("42.50")
    assert ada.last_order_at == datetime(2024, 5, 1)
    bob = by_email[other["email"]]
    assert bob.total_orders == 0
    assert bob.last_order_at is None


async def test_customer_search_over_http(client, db, user, admin):
    await create_user(db, email="bob@example.com")

    resp = await client.get("/users/admin/customers", params={"search": "ADA"}, headers=auth_headers(admin))

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["total"] == 1
    assert data["customers"][0]["email"] == "ada@example.com"
    assert money(data["customers"][0]["total_spent"]) == Decimal("0")
