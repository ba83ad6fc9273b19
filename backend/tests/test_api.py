"""
End-to-end flows through the HTTP API.
"""
import json
import time

import pytest
from sqlalchemy import select

from marketpay.config import settings
from marketpay.db.models import OrderModel, PaymentModel, WebhookEventModel
from marketpay.mocks import payment_gateway
from marketpay.services.webhook_service import compute_signature

from conftest import headers_for


@pytest.fixture
async def shop(seed):
    seller = await seed.seller("Kebede", business_name="Kebede Honey Co")
    product = await seed.product(seller, name="Forest Honey 5kg", price=2500, quantity=20)
    buyer = await seed.user("Ngozi")
    return {"seller": seller, "product": product, "buyer": buyer}


async def _start_checkout(client, shop, quantity=2, idempotency_key=None):
    headers = headers_for(shop["buyer"])
    response = await client.post(
        "/api/cart/items",
        json={"product_id": shop["product"].id, "quantity": quantity},
        headers=headers,
    )
    assert response.status_code == 200

    body = {"amount": 2500 * quantity, "currency": "ETB", "payment_type": "order"}
    if idempotency_key:
        body["idempotency_key"] = idempotency_key
    response = await client.post("/api/payments/initialize", json=body, headers=headers)
    assert response.status_code == 200
    return response.json()


def _signed(payload: dict):
    raw = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Gateway-Signature": "sha256=" + compute_signature(raw, settings.webhook_secret),
        "X-Gateway-Timestamp": str(int(time.time() * 1000)),
    }
    return raw, headers


async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_checkout_then_verify_creates_orders(client, read, seed, shop):
    started = await _start_checkout(client, shop)

    assert started["success"] is True
    assert started["cached"] is False
    assert started["checkout_url"].startswith(settings.gateway_checkout_base_url)

    response = await client.get("/api/payments/verify", params={"tx_ref": started["tx_ref"]})

    assert response.status_code == 200
    verified = response.json()
    assert verified["status"] == "success"
    assert verified["data"]["amount"] == 5000

    orders = await read(select(OrderModel))
    assert len(orders) == 1
    assert orders[0].amount == 5000
    assert (await seed.get_product(shop["product"].id)).quantity == 18

    response = await client.get("/api/orders/purchases", headers=headers_for(shop["buyer"]))
    assert [o["id"] for o in response.json()["orders"]] == [orders[0].id]

    response = await client.get(f"/api/payments/by-ref/{started['tx_ref']}")
    assert response.json()["order_id"] == orders[0].id


async def test_repeated_initialize_with_key_is_cached(client, read, shop):
    first = await _start_checkout(client, shop, quantity=1, idempotency_key="btn-1")

    response = await client.post(
        "/api/payments/initialize",
        json={"amount": 2500, "payment_type": "order", "idempotency_key": "btn-1"},
        headers=headers_for(shop["buyer"]),
    )

    second = response.json()
    assert second["cached"] is True
    assert second["tx_ref"] == first["tx_ref"]
    assert second["checkout_url"] == first["checkout_url"]
    assert len(await read(select(PaymentModel))) == 1


async def test_signed_webhook_processed_once(client, read, seed, shop):
    started = await _start_checkout(client, shop)
    raw, headers = _signed({"tx_ref": started["tx_ref"], "status": "success", "trx_ref": "GW-77"})

    first = await client.post("/api/payments/webhook", content=raw, headers=headers)
    second = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert first.status_code == 200
    assert first.json()["message"] == "Webhook processed successfully"
    assert first.headers["cache-control"] == "no-store"
    assert second.status_code == 200
    assert second.json()["message"] == "Already processed"

    payment = (await read(select(PaymentModel)))[0]
    assert payment.status == "success"
    assert payment.gateway_ref == "GW-77"
    assert len(await read(select(OrderModel))) == 1
    assert len(await read(select(WebhookEventModel))) == 1
    assert (await seed.get_product(shop["product"].id)).quantity == 18


async def test_webhook_then_poll_does_not_duplicate(client, read, shop):
    started = await _start_checkout(client, shop)
    raw, headers = _signed({"tx_ref": started["tx_ref"], "status": "success"})

    await client.post("/api/payments/webhook", content=raw, headers=headers)
    response = await client.post("/api/payments/verify", json={"tx_ref": started["tx_ref"]})

    assert response.json()["status"] == "success"
    assert len(await read(select(OrderModel))) == 1


async def test_webhook_with_bad_signature_is_rejected(client, read, shop):
    started = await _start_checkout(client, shop)
    raw, headers = _signed({"tx_ref": started["tx_ref"], "status": "success"})
    headers["X-Gateway-Signature"] = "0" * 64

    response = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert response.status_code == 401
    assert response.json()["error_code"] == "webhook:signature_invalid"
    assert (await read(select(PaymentModel)))[0].status == "pending"
    assert await read(select(WebhookEventModel)) == []


async def test_webhook_for_failed_payment(client, read, shop, monkeypatch):
    monkeypatch.setattr(settings, "demo_mode", False)
    started = await _start_checkout(client, shop)
    payment_gateway.complete_payment(started["tx_ref"], "failed")
    raw, headers = _signed({"tx_ref": started["tx_ref"], "status": "failed"})

    response = await client.post("/api/payments/webhook", content=raw, headers=headers)

    assert response.status_code == 200
    assert (await read(select(PaymentModel)))[0].status == "failed"
    assert await read(select(OrderModel)) == []


async def test_redirect_callback_asks_the_gateway(client, read, shop, monkeypatch):
    monkeypatch.setattr(settings, "demo_mode", False)
    started = await _start_checkout(client, shop)

    # Query string claims success but the gateway still says pending
    response = await client.get(
        "/api/payments/webhook", params={"trx_ref": started["tx_ref"], "status": "success"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert (await read(select(PaymentModel)))[0].status == "pending"


async def test_anonymous_initialize_is_rejected(client):
    response = await client.post("/api/payments/initialize", json={"amount": 100, "payment_type": "order"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "auth:not_authenticated"


async def test_empty_cart_error_body(client, seed):
    buyer = await seed.user("Empty Cart")

    response = await client.post(
        "/api/payments/initialize",
        json={"amount": 100, "payment_type": "order"},
        headers=headers_for(buyer),
    )

    assert response.status_code == 400
    body = response.json()
    assert set(body) == {"error_code", "message", "details"}
    assert body["error_code"] == "cart:empty"


async def test_refund_requires_admin(client, seed, shop):
    started = await _start_checkout(client, shop)
    await client.get("/api/payments/verify", params={"tx_ref": started["tx_ref"]})

    response = await client.post(
        "/api/admin/refunds",
        json={"payment_id": started["payment_id"]},
        headers=headers_for(shop["buyer"]),
    )
    assert response.status_code == 403

    admin = await seed.user("Admin", role="admin")
    response = await client.post(
        "/api/admin/refunds",
        json={"payment_id": started["payment_id"], "amount": 1000, "reason": "Late delivery"},
        headers=headers_for(admin),
    )
    assert response.status_code == 200
    assert response.json()["refund"]["amount"] == 1000

    response = await client.get(f"/api/payments/by-ref/{started['tx_ref']}")
    assert response.json()["status"] == "partially_refunded"


async def test_admin_maintenance_endpoints(client, seed):
    admin = await seed.user("Admin", role="admin")

    response = await client.post("/api/admin/maintenance/webhook-cleanup", headers=headers_for(admin))
    assert response.json() == {"deleted": 0, "has_more": False}

    response = await client.post(
        "/api/admin/maintenance/expire-pending",
        params={"older_than_minutes": 60},
        headers=headers_for(admin),
    )
    assert response.json() == {"expired": 0}


async def test_subscription_checkout_and_activation(client, read, seed):
    owner = await seed.seller("Lulit", business_name="Lulit Ceramics")
    plan = await seed.plan("Growth", monthly_price=50000)

    response = await client.post(
        "/api/subscriptions/checkout",
        json={"plan_id": plan.id, "billing_cycle": "monthly"},
        headers=headers_for(owner),
    )
    assert response.status_code == 200
    tx_ref = response.json()["tx_ref"]

    await client.get("/api/payments/verify", params={"tx_ref": tx_ref})

    response = await client.get("/api/subscriptions/current", headers=headers_for(owner))
    current = response.json()["subscription"]
    assert current["plan_id"] == plan.id
    assert current["status"] == "active"


async def test_retry_after_failed_payment_opens_new_checkout(client, read, shop, monkeypatch):
    monkeypatch.setattr(settings, "demo_mode", False)
    first = await _start_checkout(client, shop, quantity=1, idempotency_key="btn-2")
    payment_gateway.complete_payment(first["tx_ref"], "failed")
    await client.get("/api/payments/verify", params={"tx_ref": first["tx_ref"]})

    response = await client.post(
        "/api/payments/initialize",
        json={"amount": 2500, "payment_type": "order", "idempotency_key": "btn-2"},
        headers=headers_for(shop["buyer"]),
    )

    retry = response.json()
    assert response.status_code == 200
    assert retry["cached"] is False
    assert retry["tx_ref"] != first["tx_ref"]
    assert len(await read(select(PaymentModel))) == 2
