from datetime import datetime, timedelta

import pytest

from shared.utils import BadRequestException
from storefront.banners import BannerService
from storefront.models import Role
from storefront.schemas import BannerCreate, BannerUpdate

from conftest import auth_headers, create_user


@pytest.fixture
async def admin(db):
    return await create_user(db, email="admin@example.com", role=Role.ADMIN)


async def test_public_list_shows_live_banners_in_order(client, db):
    service = BannerService(db)
    now = datetime.utcnow()
    await service.create(BannerCreate(title="Second", image="/b.png", order=2))
    await service.create(BannerCreate(title="First", image="/a.png", order=1, end_date=now + timedelta(days=1)))
    await service.create(BannerCreate(title="Hidden", image="/c.png", is_active=False))
    await service.create(BannerCreate(title="Upcoming", image="/d.png", start_date=now + timedelta(days=2)))
    await service.create(BannerCreate(title="Over", image="/e.png", end_date=now - timedelta(days=1)))

    resp = await client.get("/banners")

    assert resp.status_code == 200
    assert [b["title"] for b in resp.json()["data"]] == ["First", "Second"]


async def test_admin_list_includes_inactive(client, db, admin):
    service = BannerService(db)
    await service.create(BannerCreate(title="Live", image="/a.png"))
    await service.create(BannerCreate(title="Hidden", image="/b.png", is_active=False))

    resp = await client.get("/banners/admin", headers=auth_headers(admin))

    assert resp.status_code == 200
    assert {b["title"] for b in resp.json()["data"]} == {"Live", "Hidden"}


async def test_banner_crud(client, admin):
    headers = auth_headers(admin)
    resp = await client.post(
        "/banners",
        json={"title": "Summer heat", "image": "/summer.png", "link": "/products?category=sauces"},
        headers=headers,
    )
    assert resp.status_code == 200
    banner_id = resp.json()["data"]["id"]

    resp = await client.patch(f"/banners/{banner_id}", json={"order": 3, "is_active": False}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["order"] == 3
    assert data["is_active"] is False
    assert data["updated_at"] is not None

    assert (await client.get(f"/banners/{banner_id}")).json()["data"]["title"] == "Summer heat"

    assert (await client.delete(f"/banners/{banner_id}", headers=headers)).status_code == 200
    assert (await client.get(f"/banners/{banner_id}")).status_code == 404


async def test_banner_writes_require_admin(client, db):
    user = await create_user(db)
    resp = await client.post("/banners", json={"title": "Nope", "image": "/x.png"}, headers=auth_headers(user))
    assert resp.status_code == 403


async def test_banner_window_must_be_ordered(client, db, admin):
    now = datetime.utcnow()
    resp = await client.post(
        "/banners",
        json={
            "title": "Backwards",
            "image": "/x.png",
            "start_date": now.isoformat(),
            "end_date": (now - timedelta(days=1)).isoformat(),
        },
        headers=auth_headers(admin),
    )
    assert resp.status_code == 422

    service = BannerService(db)
    banner = await service.create(BannerCreate(title="Weekend", image="/w.png", start_date=now))
    with pytest.raises(BadRequestException):
        await service.update(str(banner["_id"]), BannerUpdate(end_date=now - timedelta(hours=1)))
