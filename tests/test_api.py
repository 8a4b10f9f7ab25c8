"""HTTP tests: the FastAPI app over an in-process ASGI transport."""

import httpx
import pytest

from checkout_service.config import settings
from checkout_service.domain.models import CartItem
from checkout_service.main import app
from checkout_service.presentation.api import get_cart_service, get_payment_providers, get_unit_of_work

from factories import completed, get_product, make_product, pending, seed

ADDRESS = {
    "name": "Jane Wanjiru",
    "phone": "0712345678",
    "street": "Moi Avenue 12",
    "city": "Nairobi",
    "county": "Nairobi",
}
USER = {"X-User-Id": "u1"}
OPERATOR = {"X-API-Key": "operator-secret"}


@pytest.fixture
async def client(uow, cart, providers, monkeypatch):
    monkeypatch.setattr(settings, "API_TOKEN", "operator-secret")
    app.dependency_overrides[get_unit_of_work] = lambda: uow
    app.dependency_overrides[get_cart_service] = lambda: cart
    app.dependency_overrides[get_payment_providers] = lambda: providers
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def placed_order(uow, cart, client):
    await seed(uow, make_product("p1", price="1000", stock=10))
    cart.put("u1", CartItem(product_id="p1", quantity=2))
    response = await client.post(
        "/api/checkout/initiate", json={"shipping_address": ADDRESS, "payment_method": "mpesa"}, headers=USER
    )
    assert response.status_code == 201
    return response.json()["order"]


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_initiate_checkout(placed_order):
    assert placed_order["status"] == "pending_payment"
    assert placed_order["total_amount"] == "2620.00"
    assert placed_order["payment_status"] == "pending"


async def test_initiate_requires_user_header(client):
    response = await client.post(
        "/api/checkout/initiate", json={"shipping_address": ADDRESS, "payment_method": "mpesa"}
    )

    assert response.status_code == 422


async def test_empty_cart_is_bad_request(client):
    response = await client.post(
        "/api/checkout/initiate", json={"shipping_address": ADDRESS, "payment_method": "mpesa"}, headers=USER
    )

    assert response.status_code == 400
    assert "empty" in response.json()["detail"].lower()


async def test_out_of_stock_is_conflict(uow, cart, client):
    await seed(uow, make_product("p1", stock=1))
    cart.put("u1", CartItem(product_id="p1", quantity=5))

    response = await client.post(
        "/api/checkout/initiate", json={"shipping_address": ADDRESS, "payment_method": "mpesa"}, headers=USER
    )

    assert response.status_code == 409
    items = response.json()["detail"]["items"]
    assert items == [{
        "product_id": "p1", "product_name": "Product p1", "target": "main",
        "requested": 5, "available": 1, "reason": "insufficient stock",
    }]


async def test_summary(uow, cart, client):
    await seed(uow, make_product("p1", price="1000", stock=10))
    cart.put("u1", CartItem(product_id="p1", quantity=2))

    response = await client.get("/api/checkout/summary", params={"shipping_method": "standard"}, headers=USER)

    assert response.status_code == 200
    assert response.json()["pricing"]["total_amount"] == "2620.00"
    assert (await get_product(uow, "p1")).reserved == 0


async def test_mpesa_payment_round_trip(client, mpesa, placed_order):
    mpesa.initiate_results.append(pending("ws_CO_api"))

    paid = await client.post(
        f"/api/checkout/payment/{placed_order['id']}",
        json={"payment_data": {"phone_number": "0712345678"}}, headers=USER,
    )
    assert paid.status_code == 200
    assert paid.json()["status"] == "pending"

    status = await client.get(f"/api/checkout/status/{placed_order['id']}", headers=USER)
    assert status.json()["correlation_id"] == "ws_CO_api"

    ack = await client.post("/api/checkout/payment/callback", json={
        "outcome": "completed", "correlation_id": "ws_CO_api", "provider_refs": {"mpesa_receipt": "QK1"},
    })
    assert ack.json() == {"status": "ok"}

    status = await client.get(f"/api/checkout/status/{placed_order['id']}", headers=USER)
    assert status.json()["status"] == "confirmed"
    assert status.json()["payment_status"] == "completed"


async def test_callback_with_garbage_body_is_acknowledged(client):
    response = await client.post("/api/checkout/payment/callback", content=b"not json")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_unknown_provider_callback_is_not_found(client):
    response = await client.post("/api/checkout/payment/callback/bitcoin", json={})

    assert response.status_code == 404


async def test_order_is_private(client, placed_order):
    own = await client.get(f"/api/orders/{placed_order['id']}", headers=USER)
    other = await client.get(f"/api/orders/{placed_order['id']}", headers={"X-User-Id": "u2"})
    missing = await client.get("/api/orders/nope", headers=USER)

    assert own.status_code == 200
    assert own.json()["order_number"] == placed_order["order_number"]
    assert other.status_code == 403
    assert missing.status_code == 404


async def test_customer_cancel_restores_stock(uow, client, placed_order):
    response = await client.post(
        f"/api/orders/{placed_order['id']}/cancel", json={"reason": "ordered by mistake"}, headers=USER
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["status_history"][-1]["reason"] == "ordered by mistake"
    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved) == (10, 0)

    again = await client.post(f"/api/orders/{placed_order['id']}/cancel", headers=USER)
    assert again.status_code == 409


async def test_cancelling_paid_order_raises_refund_alert(uow, client, mpesa, placed_order, caplog):
    order_id = placed_order["id"]
    mpesa.initiate_results.append(completed("ws_CO_paid", receipt="QK1"))
    await client.post(f"/api/checkout/payment/{order_id}", json={"payment_data": {}}, headers=USER)

    response = await client.post(f"/api/orders/{order_id}/cancel", json={"reason": "changed my mind"}, headers=USER)

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    product = await get_product(uow, "p1")
    assert (product.stock, product.reserved) == (10, 0)
    alerts = [r for r in caplog.records if r.levelname == "CRITICAL"]
    assert len(alerts) == 1
    assert "refund required" in alerts[0].getMessage()
    assert order_id in alerts[0].getMessage()


async def test_cancelling_unpaid_order_raises_no_alert(client, placed_order, caplog):
    await client.post(f"/api/orders/{placed_order['id']}/cancel", headers=USER)

    assert not [r for r in caplog.records if r.levelname == "CRITICAL"]


async def test_operator_fulfilment(client, mpesa, placed_order):
    order_id = placed_order["id"]
    url = f"/api/orders/{order_id}/status"
    mpesa.initiate_results.append(completed("ws_CO_op"))
    await client.post(f"/api/checkout/payment/{order_id}", json={"payment_data": {}}, headers=USER)

    assert (await client.patch(url, json={"action": "process"})).status_code == 422
    assert (await client.patch(url, json={"action": "process"}, headers={"X-API-Key": "wrong"})).status_code == 401

    processed = await client.patch(url, json={"action": "process"}, headers=OPERATOR)
    assert processed.json()["status"] == "processing"

    no_tracking = await client.patch(url, json={"action": "ship"}, headers=OPERATOR)
    assert no_tracking.status_code == 400

    shipped = await client.patch(
        url, json={"action": "ship", "tracking_number": "TRK123", "carrier": "G4S"}, headers=OPERATOR
    )
    assert shipped.json()["status"] == "shipped"
    assert shipped.json()["tracking"]["tracking_number"] == "TRK123"

    cancel = await client.post(f"/api/orders/{order_id}/cancel", headers=USER)
    assert cancel.status_code == 409

    delivered = await client.patch(url, json={"action": "deliver"}, headers=OPERATOR)
    assert delivered.json()["status"] == "delivered"
