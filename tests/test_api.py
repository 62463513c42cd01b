import pytest
from fastapi.testclient import TestClient

from shopcore.main import Services, app, get_services

USER = {"X-User-ID": "alice"}
GUEST = {"X-Session-ID": "sess-9"}


@pytest.fixture
def client(redis_client):
    services = Services(redis_client)
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def add(client, headers, product_id, quantity=1):
    return client.post("/cart/items", json={"product_id": product_id, "quantity": quantity}, headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["redis"]["status"] == "healthy"
    assert "X-Response-Time-Ms" in response.headers


def test_cart_requires_owner(client):
    assert client.get("/cart").status_code == 400


def test_cart_round_trip(client):
    assert add(client, USER, "P1", 2).json()["quantity"] == 2
    add(client, USER, "P2")

    cart = client.get("/cart", headers=USER).json()
    assert cart["owner_key"] == "user:alice"
    assert cart["total_quantity"] == 3

    assert client.put("/cart/items/P1", json={"quantity": 5}, headers=USER).json()["quantity"] == 5
    assert client.delete("/cart/items/P2", headers=USER).status_code == 200
    assert client.delete("/cart/items/P2", headers=USER).status_code == 404

    client.delete("/cart", headers=USER)
    assert client.get("/cart", headers=USER).json()["lines"] == []


def test_invalid_cart_requests(client):
    assert add(client, USER, "P1", 0).status_code == 422
    assert add(client, USER, "P1", -1).status_code == 400


def test_merge(client, stock):
    stock("P1", 4)
    add(client, GUEST, "P1", 2)
    add(client, USER, "P1", 3)

    response = client.post("/cart/merge", json={"guest_session_id": "sess-9", "user_id": "alice"})

    assert response.status_code == 200
    assert response.json()["capped"] == 1
    assert client.get("/cart", headers=USER).json()["total_quantity"] == 4
    assert client.get("/cart", headers=GUEST).json()["lines"] == []


def test_inventory_endpoints(client, stock):
    stock("P1", 3, reorder_level=5)

    record = client.get("/inventory/P1").json()
    assert record["quantity_available"] == 3
    assert client.get("/inventory/P1/availability", params={"quantity": 4}).json()["available"] is False
    assert [r["product_id"] for r in client.get("/inventory/low-stock").json()] == ["P1"]
    assert client.get("/inventory/statistics").json()["product_count"] == 1
    assert client.get("/inventory/ghost").status_code == 404


def test_checkout_and_lifecycle(client, stock):
    stock("P1", 10, price="12.50")
    add(client, USER, "P1", 2)

    created = client.post("/orders", headers=USER)
    assert created.status_code == 201
    body = created.json()
    order_id = body["order"]["id"]
    assert body["order"]["status"] == "PENDING"
    assert body["total_quantity"] == 2

    assert client.get(f"/orders/{order_id}").json()["order"]["id"] == order_id
    assert [o["order"]["id"] for o in client.get("/orders", headers=USER).json()] == [order_id]
    assert len(client.get("/orders/cancellable", headers=USER).json()) == 1

    invalid = client.post(f"/orders/{order_id}/transitions", json={"target_status": "SHIPPED"})
    assert invalid.status_code == 409

    for status in ("CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED"):
        response = client.post(f"/orders/{order_id}/transitions", json={"target_status": status, "actor": "ops"})
        assert response.status_code == 200

    assert client.get("/inventory/P1").json()["quantity_reserved"] == 0
    assert client.post(f"/orders/{order_id}/payment", json={"payment_status": "PAID"}).status_code == 200
    assert len(client.get("/orders/refundable", headers=USER).json()) == 1

    history = client.get(f"/orders/{order_id}/history").json()
    assert [entry["to_status"] for entry in history] == [
        "PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED",
    ]
    assert client.get("/orders/statistics").json()["DELIVERED"] == 1


def test_checkout_errors(client, stock):
    assert client.post("/orders", headers=USER).status_code == 409

    stock("P1", 1)
    add(client, USER, "P1", 2)
    response = client.post("/orders", headers=USER)
    assert response.status_code == 409
    assert response.json()["product_id"] == "P1"


def test_unknown_order(client):
    assert client.get("/orders/missing").status_code == 404
    assert client.get("/orders/missing/history").status_code == 404


def test_attention(client, stock):
    stock("P1", 10)
    add(client, USER, "P1", 1)
    order_id = client.post("/orders", headers=USER).json()["order"]["id"]

    attention = client.get("/orders/attention").json()
    assert [o["order"]["id"] for o in attention] == [order_id]


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"
    assert client.get("/health").headers["X-Request-ID"]


def test_inventory_administration(client):
    created = client.post("/inventory", json={"product_id": "P9", "quantity": 2, "reorder_level": 1})
    assert created.status_code == 201
    assert client.post("/inventory", json={"product_id": "P9"}).status_code == 409

    assert client.post("/inventory/P9/receive", json={"quantity": 5}).json()["quantity_available"] == 7
    assert client.post("/inventory/P9/write-off", json={"quantity": 3}).json()["quantity_available"] == 4
    assert client.post("/inventory/P9/write-off", json={"quantity": 10}).status_code == 409
    assert client.post("/inventory/ghost/receive", json={"quantity": 1}).status_code == 404

    record = client.put("/inventory/P9/reorder-level", json={"reorder_level": 6}).json()
    assert record["reorder_level"] == 6
    assert record["is_low_stock"] is True


def test_purge_guest_carts(client):
    add(client, GUEST, "P1")
    response = client.post("/maintenance/guest-carts/purge")
    assert response.json() == {"removed_lines": 0, "older_than_days": 30}
    assert client.get("/cart", headers=GUEST).json()["total_quantity"] == 1


def test_order_filters_and_reports(client, stock):
    stock("P1", 10, price="12.50")
    stock("P2", 10, price="4.00")
    add(client, USER, "P1", 2)
    shipped_id = client.post("/orders", headers=USER).json()["order"]["id"]
    add(client, USER, "P2", 1)
    pending_id = client.post("/orders", headers=USER).json()["order"]["id"]

    for status in ("CONFIRMED", "PROCESSING", "SHIPPED"):
        client.post(f"/orders/{shipped_id}/transitions", json={"target_status": status})

    filtered = client.get("/orders", params={"status": "PENDING"}, headers=USER).json()
    assert [o["order"]["id"] for o in filtered] == [pending_id]
    assert client.get("/orders", params={"since": "2099-01-01T00:00:00"}, headers=USER).json() == []
    assert len(client.get("/orders/recent", headers=USER).json()) == 2
    assert client.get("/orders/recent", params={"days": 0}, headers=USER).status_code == 422

    stats = client.get("/reports/orders").json()
    assert stats["total_orders"] == 2
    assert stats["orders_by_status"]["SHIPPED"] == 1
    assert stats["orders_by_status"]["PENDING"] == 1
    assert stats["total_revenue"] == "25.00"
    assert stats["average_order_value"] == "12.50"

    sales = client.get("/reports/sales").json()
    assert sales["total_sales"] == "25.00"
    assert sales["total_orders"] == 1
    assert [p["product_id"] for p in sales["top_products"]] == ["P1"]
    assert sum(day["orders"] for day in sales["daily"]) == 1

    bad_range = client.get("/reports/sales", params={"start": "2026-02-01T00:00:00", "end": "2026-01-01T00:00:00"})
    assert bad_range.status_code == 400
