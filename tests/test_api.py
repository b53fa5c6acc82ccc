"""Tests for the HTTP surface."""

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from storefront.documents import ORDERS
from storefront.main import app, get_registry


@pytest_asyncio.fixture
async def client(registry):
    app.dependency_overrides[get_registry] = lambda: registry
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def open_session(client, token=None) -> str:
    resp = await client.post("/sessions", json={"token": token})
    assert resp.status_code == 201
    return resp.json()["session_id"]


async def test_health(client):
    resp = await client.get("/health")

    assert resp.json() == {"status": "ok", "service": "storefront"}


async def test_unknown_session_is_404(client):
    resp = await client.get("/sessions/nope")

    assert resp.status_code == 404


async def test_bad_token_session_is_loading(client):
    resp = await client.post("/sessions", json={"token": "forged"})

    assert resp.status_code == 201
    assert resp.json()["surface"] == "loading"


async def test_shopper_checkout_flow(client, seeded_catalog):
    sid = await open_session(client)

    await client.post(f"/sessions/{sid}/cart/items", json={"product_id": "p1"})
    await client.post(f"/sessions/{sid}/cart/items/p1/increment")
    resp = await client.put(f"/sessions/{sid}/cart/items/p1", json={"quantity": "2.6"})
    assert resp.json()["nav"]["cart_count"] == 3

    await client.post(f"/sessions/{sid}/navigate", json={"surface": "cart"})
    resp = await client.post(f"/sessions/{sid}/checkout")
    assert resp.json()["body"]["checkout"]["state"] == "CollectingDetails"

    await client.patch(f"/sessions/{sid}/checkout/details", json={"name": "A"})
    resp = await client.post(
        f"/sessions/{sid}/checkout/submit",
        json={"email": "a@x", "address": "1 St", "payment_method": "Cash"},
    )

    body = resp.json()
    assert resp.status_code == 200
    assert body["surface"] == "shop"
    assert body["notification"]["message"] == "Order Placed! Thank you for your purchase."
    doc = await seeded_catalog.get(ORDERS, body["order_id"])
    assert doc["totalAmount"] == 10.5
    assert doc["customerDetails"]["name"] == "A"


async def test_submit_without_details_is_rejected(client, seeded_catalog):
    sid = await open_session(client)
    await client.post(f"/sessions/{sid}/cart/items", json={"product_id": "p1"})
    await client.post(f"/sessions/{sid}/checkout")

    resp = await client.post(f"/sessions/{sid}/checkout/submit", json={"name": "A"})

    assert resp.json()["order_id"] is None
    assert resp.json()["notification"]["message"] == "Please fill out all shipping fields."


async def test_submit_before_checkout_is_conflict(client, seeded_catalog):
    sid = await open_session(client)

    resp = await client.post(f"/sessions/{sid}/checkout/submit", json={})

    assert resp.status_code == 409


async def test_remove_from_cart(client, seeded_catalog):
    sid = await open_session(client)
    await client.post(f"/sessions/{sid}/cart/items", json={"product_id": "p2"})

    resp = await client.delete(f"/sessions/{sid}/cart/items/p2")

    assert resp.json()["nav"]["cart_count"] == 0
    assert resp.json()["notification"]["message"] == "Item removed from cart."


async def test_shopper_admin_mutation_is_forbidden(client, seeded_catalog):
    sid = await open_session(client)

    resp = await client.post(f"/sessions/{sid}/admin/products/form")

    assert resp.status_code == 403
    assert resp.json()["uid"]


async def test_operator_adds_product(client, operator_token, seeded_catalog):
    sid = await open_session(client, operator_token)

    await client.post(f"/sessions/{sid}/admin/products/form")
    resp = await client.post(
        f"/sessions/{sid}/admin/products/form/submit",
        json={"name": "Melon", "description": "Big", "price": "4.25", "stock": 3},
    )

    assert resp.json()["notification"]["message"] == "Product added successfully!"
    names = [d["name"] for d in await seeded_catalog.list_documents("products")]
    assert "Melon" in names


async def test_operator_delete_requires_confirmation(client, operator_token, seeded_catalog):
    sid = await open_session(client, operator_token)

    await client.post(f"/sessions/{sid}/navigate", json={"surface": "admin"})
    resp = await client.post(f"/sessions/{sid}/admin/products/p1/delete")
    assert resp.json()["body"]["pending_delete"] == {"id": "p1", "name": "Slice"}
    assert await seeded_catalog.get("products", "p1") is not None

    await client.post(f"/sessions/{sid}/admin/products/delete/confirm")

    assert await seeded_catalog.get("products", "p1") is None


async def test_edit_unknown_product_is_404(client, operator_token, seeded_catalog):
    sid = await open_session(client, operator_token)

    resp = await client.post(f"/sessions/{sid}/admin/products/gone/form")

    assert resp.status_code == 404


async def test_close_session(client):
    sid = await open_session(client)

    assert (await client.delete(f"/sessions/{sid}")).status_code == 204
    assert (await client.get(f"/sessions/{sid}")).status_code == 404
