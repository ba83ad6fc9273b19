#!/usr/bin/env python3
"""
Walk a running server through one cart checkout.

Adds a product to the cart, opens a payment, delivers the signed gateway
webhook twice and prints what the buyer ends up with.

Usage:
    python demo_checkout.py <product_id> [quantity]
"""
import hashlib
import hmac
import json
import os
import sys
import time

import requests

BASE_URL = os.environ.get("MARKETPAY_URL", "http://localhost:8000")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "webhook_secret_demo_only_change_me")

BUYER = {
    "X-User-Id": "demo_buyer_001",
    "X-User-Email": "buyer@example.com",
    "X-User-Name": "Demo Buyer",
}


def _check(response: requests.Response) -> dict:
    if response.status_code != 200:
        print(f"❌ HTTP {response.status_code}: {response.text}")
        sys.exit(1)
    return response.json()


def send_webhook(tx_ref: str) -> dict:
    raw = json.dumps({"tx_ref": tx_ref, "status": "success"}).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    response = requests.post(
        f"{BASE_URL}/api/payments/webhook",
        data=raw,
        headers={
            "Content-Type": "application/json",
            "X-Gateway-Signature": f"sha256={signature}",
            "X-Gateway-Timestamp": str(int(time.time() * 1000)),
        },
        timeout=30,
    )
    return _check(response)


def run_checkout(product_id: str, quantity: int) -> None:
    print(f"🛒 Adding {quantity} x {product_id} to cart")
    _check(requests.post(
        f"{BASE_URL}/api/cart/items",
        json={"product_id": product_id, "quantity": quantity},
        headers=BUYER,
        timeout=30,
    ))

    cart = _check(requests.get(f"{BASE_URL}/api/cart", headers=BUYER, timeout=30))
    print(f"   Cart total: {cart['total']}")

    started = _check(requests.post(
        f"{BASE_URL}/api/payments/initialize",
        json={
            "amount": cart["total"],
            "payment_type": "order",
            "idempotency_key": f"demo-{int(time.time())}",
        },
        headers=BUYER,
        timeout=30,
    ))
    print(f"💳 Payment {started['tx_ref']} -> {started['checkout_url']}")

    print("📡 Delivering webhook")
    print(f"   {send_webhook(started['tx_ref'])['message']}")
    print("📡 Delivering the same webhook again")
    print(f"   {send_webhook(started['tx_ref'])['message']}")

    purchases = _check(requests.get(f"{BASE_URL}/api/orders/purchases", headers=BUYER, timeout=30))
    print("=" * 70)
    for order in purchases["orders"]:
        print(f"📦 {order['id']}: {order['title']} - {order['amount']} ({order['status']})")
    print(f"✅ {purchases['count']} order(s)")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python demo_checkout.py <product_id> [quantity]")
        sys.exit(1)

    try:
        run_checkout(sys.argv[1], int(sys.argv[2]) if len(sys.argv) > 2 else 1)
    except requests.exceptions.ConnectionError:
        print("❌ Connection error - is the server running?")
        sys.exit(1)
