"""Shared fixtures: an in-memory motor database, the stores on top of it and a
lifecycle engine whose Razorpay gateway talks to an httpx MockTransport."""
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from app.gateways import RazorpayGateway, StripeGateway
from app.lifecycle import OrderLifecycleEngine
from app.models import CartItemDB, PaymentProvider, ShippingAddress, to_money
from app.repository import CartStore, OrderStore, WebhookLogStore
from app.stock import StockLedger
from app.webhooks import WebhookIngestion

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"

USER = {"sub": "user-1", "email": "user@test.com", "role": "user"}
OTHER_USER = {"sub": "user-2", "email": "other@test.com", "role": "user"}
ADMIN = {"sub": "admin-1", "email": "admin@test.com", "role": "admin"}


def razorpay_signature(body: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def razorpay_event(event: str, provider_order_id: str, payment_id: str = "pay_1", **entity) -> bytes:
    return json.dumps({
        "id": f"evt_{payment_id}",
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "order_id": provider_order_id,
            **entity,
        }}},
    }).encode()


@pytest.fixture
def db():
    return AsyncMongoMockClient()["orders_test"]


@pytest.fixture
def order_store(db):
    return OrderStore(db.orders)


@pytest.fixture
def cart_store(db):
    return CartStore(db.carts)


@pytest.fixture
def log_store(db):
    return WebhookLogStore(db.webhook_logs)


@pytest.fixture
def ledger(db):
    return StockLedger(db.products)


@pytest.fixture
def razorpay_calls():
    """Requests seen by the mocked Razorpay API."""
    return []


@pytest.fixture
def razorpay_transport(razorpay_calls):
    def handler(request: httpx.Request) -> httpx.Response:
        razorpay_calls.append(request)
        body = json.loads(request.content)
        return httpx.Response(200, json={
            "id": f"order_rzp_{len(razorpay_calls)}",
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "status": "created",
        })

    return httpx.MockTransport(handler)


@pytest.fixture
def razorpay(razorpay_transport):
    return RazorpayGateway(
        key_id=RAZORPAY_KEY_ID,
        key_secret=RAZORPAY_KEY_SECRET,
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        api_url="https://razorpay.test/v1",
        transport=razorpay_transport,
    )


@pytest.fixture
def stripe_gateway():
    return StripeGateway(secret_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET)


@pytest.fixture
def gateways(razorpay, stripe_gateway):
    return {PaymentProvider.RAZORPAY: razorpay, PaymentProvider.STRIPE: stripe_gateway}


@pytest.fixture
def make_engine(order_store, cart_store, ledger, gateways):
    def factory(auto_complete=False, default_provider=PaymentProvider.RAZORPAY):
        return OrderLifecycleEngine(
            orders=order_store,
            carts=cart_store,
            stock=ledger,
            gateways=gateways,
            default_provider=default_provider,
            auto_complete=auto_complete,
        )

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def ingestion(engine, gateways, log_store):
    return WebhookIngestion(engine, gateways, log_store)


@pytest.fixture
def shipping_address():
    return ShippingAddress(
        full_name="Asha Rao",
        phone="+91 9876543210",
        address_line1="12 MG Road",
        city="Pune",
        state="MH",
        pincode="411001",
    )


@pytest.fixture
def add_product(db):
    async def factory(title="Notebook", price=100.0, stock=5, is_active=True):
        res = await db.products.insert_one({
            "_id": ObjectId(),
            "title": title,
            "price": price,
            "stock": stock,
            "is_active": is_active,
        })
        return str(res.inserted_id)

    return factory


@pytest.fixture
def fill_cart(cart_store):
    """Put `(product_id, qty, cart_price)` lines in a user's cart."""
    async def factory(user_id, lines):
        items = [
            CartItemDB(
                product_id=pid,
                title=f"cart-{pid}",
                price=Decimal(str(price)),
                qty=qty,
                subtotal=to_money(Decimal(str(price)) * qty),
            )
            for pid, qty, price in lines
        ]
        return await cart_store.save_items(user_id, items)

    return factory
