import httpx
import pytest

from bookshop_orders.config import Settings
from bookshop_orders.main import create_app
from conftest import stock_of


@pytest.fixture
async def client(database_url, engine, redis, seeded):
    app = create_app(Settings(database_url=database_url), redis=redis)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "order-service"}


async def test_post_order_creates_order(client, session_factory, redis):
    resp = await client.post(
        "/orders",
        json={"purchaser_id": "user-1", "lines": [{"book_id": "book-b", "quantity": 3}]},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["total_price"] == 30.0
    assert body["items"][0]["subtotal_price"] == 30.0
    assert await stock_of(session_factory, "book-b") == 2
    assert redis.published[0][1]["data"]["order_id"] == body["id"]


async def test_post_order_with_idempotency_key_replays(client, session_factory):
    payload = {"purchaser_id": "user-1", "lines": [{"book_id": "book-b", "quantity": 1}]}
    headers = {"Idempotency-Key": "checkout-42"}

    first = await client.post("/orders", json=payload, headers=headers)
    second = await client.post("/orders", json=payload, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert await stock_of(session_factory, "book-b") == 4


async def test_insufficient_stock_names_the_line(client):
    resp = await client.post(
        "/orders",
        json={"purchaser_id": "user-1", "lines": [{"book_id": "book-h", "quantity": 9}]},
    )

    assert resp.status_code == 409
    assert resp.json()["error"] == {
        "kind": "InsufficientStock",
        "message": "Insufficient stock for book: A Short History. Available: 3, Requested: 9",
        "retryable": False,
        "book_id": "book-h",
        "available": 3,
        "requested": 9,
    }


@pytest.mark.parametrize(
    "payload, status, kind",
    [
        ({"purchaser_id": "user-1", "lines": []}, 400, "InvalidRequest"),
        ({"purchaser_id": "user-1", "lines": [{"book_id": "book-b", "quantity": "2"}]}, 400, "InvalidRequest"),
        ({"lines": [{"book_id": "book-b", "quantity": 1}]}, 400, "InvalidRequest"),
        (
            {
                "purchaser_id": "user-1",
                "lines": [{"book_id": "book-b", "quantity": 1}, {"book_id": "book-b", "quantity": 2}],
            },
            400,
            "DuplicateLineItem",
        ),
        ({"purchaser_id": "ghost", "lines": [{"book_id": "book-b", "quantity": 1}]}, 404, "UserNotFound"),
        ({"purchaser_id": "user-1", "lines": [{"book_id": "nope", "quantity": 1}]}, 404, "BookNotFound"),
    ],
)
async def test_post_order_errors(client, payload, status, kind):
    resp = await client.post("/orders", json=payload)

    assert resp.status_code == status
    assert resp.json()["error"]["kind"] == kind


async def test_get_order_by_id(client):
    created = await client.post(
        "/orders",
        json={"purchaser_id": "user-2", "lines": [{"book_id": "book-c", "quantity": 2}]},
    )
    order_id = created.json()["id"]

    first = await client.get(f"/orders/{order_id}")
    second = await client.get(f"/orders/{order_id}")

    assert first.status_code == 200
    assert first.json() == second.json()
    assert first.json()["items"][0]["book_title"] == "Cold Orchard"


async def test_get_unknown_order_is_404(client):
    resp = await client.get("/orders/does-not-exist")

    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "OrderNotFound"


async def test_list_orders_and_statistics(client):
    for purchaser_id, book_id, quantity in [
        ("user-1", "book-b", 2),
        ("user-2", "book-c", 3),
        ("user-1", "book-h", 1),
    ]:
        await client.post(
            "/orders",
            json={"purchaser_id": purchaser_id, "lines": [{"book_id": book_id, "quantity": quantity}]},
        )

    listing = await client.get("/orders", params={"limit": 2, "order_by_amount": "asc"})
    stats = await client.get("/orders/statistics")

    assert listing.status_code == 200
    assert [item["total_quantity"] for item in listing.json()["items"]] == [1, 2]
    assert listing.json()["meta"]["total"] == 3
    assert stats.status_code == 200
    assert stats.json()["total_orders"] == 3
    assert stats.json()["average_order_value"] == 25.83
    assert stats.json()["best_selling_genre"] == "Fiction"
    assert stats.json()["worst_selling_genre"] == "History"


async def test_list_orders_rejects_bad_limit(client):
    resp = await client.get("/orders", params={"limit": 500})

    assert resp.status_code == 400
    assert resp.json()["error"]["kind"] == "InvalidRequest"


async def test_empty_idempotency_key_header_places_new_orders(client, session_factory):
    payload = {"purchaser_id": "user-1", "lines": [{"book_id": "book-c", "quantity": 1}]}
    headers = {"Idempotency-Key": ""}

    first = await client.post("/orders", json=payload, headers=headers)
    second = await client.post("/orders", json=payload, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["id"] != second.json()["id"]
    assert await stock_of(session_factory, "book-c") == 8


async def test_overlong_idempotency_key_header_is_rejected(client, session_factory):
    resp = await client.post(
        "/orders",
        json={"purchaser_id": "user-1", "lines": [{"book_id": "book-c", "quantity": 1}]},
        headers={"Idempotency-Key": "k" * 201},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["kind"] == "InvalidRequest"
    assert await stock_of(session_factory, "book-c") == 10
