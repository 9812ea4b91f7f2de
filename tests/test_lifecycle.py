"""Tests for checkout, status changes and payment outcomes on the lifecycle engine."""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from bson import ObjectId

from app.errors import (
    EmptyCart, InvalidStatus, InvalidStatusValue, InvalidTransition, NotCODOrder,
    NotOnlineOrder, OrderNotFound, PaymentMismatch, SignatureError, StockValidationFailed
)
from app.gateways import PaymentOutcome, RazorpayGateway
from app.models import OrderStatus, PaymentMethod, PaymentProvider

from conftest import ADMIN, OTHER_USER, RAZORPAY_KEY_SECRET, USER, razorpay_signature


async def checkout(engine, shipping_address, method=PaymentMethod.COD, user=USER):
    return await engine.create_order_from_cart(user["sub"], shipping_address, method, "Leave at door")


# --- Checkout ---

async def test_cod_checkout_reserves_stock_and_confirms(engine, add_product, fill_cart, shipping_address, ledger, cart_store):
    pid = await add_product(price=100.0, stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 100.0)])

    result = await checkout(engine, shipping_address)

    order = result.order
    assert order.status == OrderStatus.COD_CONFIRMED
    assert order.total_amount == Decimal("200.00")
    assert order.delivery_notes == "Leave at door"
    assert order.completed_at is None
    assert result.payment_data is None
    assert await ledger.current_stock(pid) == 3
    assert (await cart_store.get(USER["sub"])).items == []


async def test_checkout_rejects_short_stock_without_mutation(engine, add_product, fill_cart, shipping_address, ledger, cart_store, order_store):
    pid = await add_product(stock=1)
    await fill_cart(USER["sub"], [(pid, 2, 100.0)])

    with pytest.raises(StockValidationFailed) as exc:
        await checkout(engine, shipping_address)

    assert [i.issue for i in exc.value.issues] == ["Only 1 items available"]
    assert exc.value.issues[0].available_stock == 1
    assert await ledger.current_stock(pid) == 1
    assert len((await cart_store.get(USER["sub"])).items) == 1
    orders, total = await order_store.find_page({}, 1, 10)
    assert total == 0


async def test_checkout_lists_every_failing_line(engine, add_product, fill_cart, shipping_address, ledger):
    short = await add_product(title="Short", stock=1)
    inactive = await add_product(title="Gone", stock=10, is_active=False)
    fine = await add_product(title="Fine", stock=10)
    await fill_cart(USER["sub"], [(short, 3, 10.0), (inactive, 1, 10.0), (fine, 1, 10.0)])

    with pytest.raises(StockValidationFailed) as exc:
        await checkout(engine, shipping_address)

    issues = {i.product_id: i.issue for i in exc.value.issues}
    assert issues == {short: "Only 1 items available", inactive: "Product not available"}
    assert exc.value.details["issues"][0]["product_id"] == short
    assert await ledger.current_stock(fine) == 10


async def test_checkout_with_missing_product(engine, fill_cart, shipping_address):
    await fill_cart(USER["sub"], [("does-not-exist", 1, 10.0)])

    with pytest.raises(StockValidationFailed) as exc:
        await checkout(engine, shipping_address)

    assert exc.value.issues[0].issue == "Product not available"


async def test_checkout_with_empty_cart(engine, shipping_address):
    with pytest.raises(EmptyCart):
        await checkout(engine, shipping_address)


async def test_checkout_freezes_prices_from_products(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(title="Lamp", price=100.0, stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 50.0)])

    order = (await checkout(engine, shipping_address)).order

    assert order.items[0].price == Decimal("100.00")
    assert order.items[0].title == "Lamp"
    assert order.items[0].subtotal == Decimal("200.00")
    assert order.total_amount == Decimal("200.00")


async def test_online_checkout_creates_provider_order(engine, add_product, fill_cart, shipping_address, razorpay_calls, ledger):
    pid = await add_product(price=99.99, stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 99.99)])

    result = await checkout(engine, shipping_address, PaymentMethod.ONLINE)

    order = result.order
    assert order.status == OrderStatus.PENDING
    assert order.payment_provider == PaymentProvider.RAZORPAY
    assert order.provider_ref.order_id == "order_rzp_1"
    assert result.payment_data["amount"] == 19998
    assert result.payment_data["key_id"] == "rzp_test_key"
    assert len(razorpay_calls) == 1
    assert await ledger.current_stock(pid) == 3


async def test_provider_failure_keeps_order_pending(engine, gateways, razorpay, add_product, fill_cart, shipping_address, ledger, cart_store):
    gateways[PaymentProvider.RAZORPAY] = RazorpayGateway(
        key_id="k", key_secret="s", webhook_secret="w",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "down"})),
    )
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])

    result = await checkout(engine, shipping_address, PaymentMethod.ONLINE)

    assert result.order.status == OrderStatus.PENDING
    assert result.order.provider_ref.order_id is None
    assert result.payment_data is None
    assert await ledger.current_stock(pid) == 4
    assert (await cart_store.get(USER["sub"])).items == []

    # Retry once the provider is back
    gateways[PaymentProvider.RAZORPAY] = razorpay
    retried = await engine.retry_payment(result.order.order_id, USER)
    assert retried.order.provider_ref.order_id == "order_rzp_1"
    assert retried.payment_data["order_id"] == "order_rzp_1"


async def test_retry_payment_rules(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    cod = (await checkout(engine, shipping_address)).order
    with pytest.raises(NotOnlineOrder):
        await engine.retry_payment(cod.order_id, USER)

    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    online = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order
    await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, online.provider_ref.order_id, PaymentOutcome.SUCCESS, "pay_1")
    with pytest.raises(InvalidStatus):
        await engine.retry_payment(online.order_id, USER)


async def test_malformed_provider_reply_keeps_order_pending(engine, gateways, add_product, fill_cart, shipping_address, ledger, cart_store, order_store):
    gateways[PaymentProvider.RAZORPAY] = RazorpayGateway(
        key_id="k", key_secret="s", webhook_secret="w",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>")),
    )
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])

    result = await checkout(engine, shipping_address, PaymentMethod.ONLINE)

    assert result.order.status == OrderStatus.PENDING
    assert result.payment_data is None
    assert await ledger.current_stock(pid) == 4
    assert (await cart_store.get(USER["sub"])).items == []
    orders, total = await order_store.find_page({}, 1, 10)
    assert total == 1


async def test_cart_cleared_even_when_payment_step_blows_up(engine, gateways, add_product, fill_cart, shipping_address, cart_store, order_store):
    gateways[PaymentProvider.RAZORPAY] = Mock(create_remote_order=AsyncMock(side_effect=RuntimeError("boom")))
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])

    with pytest.raises(RuntimeError):
        await checkout(engine, shipping_address, PaymentMethod.ONLINE)

    assert (await cart_store.get(USER["sub"])).items == []
    orders, total = await order_store.find_page({}, 1, 10)
    assert orders[0].status == OrderStatus.PENDING


async def test_retry_keeps_earlier_provider_order_payable(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order

    retried = (await engine.retry_payment(order.order_id, USER)).order
    assert retried.provider_ref.order_id == "order_rzp_2"
    assert retried.provider_ref.previous_order_ids == ["order_rzp_1"]

    # The customer paid the first provider order after all
    result = await engine.apply_payment_outcome(
        PaymentProvider.RAZORPAY, "order_rzp_1", PaymentOutcome.SUCCESS, "pay_late",
    )
    assert result.applied
    assert result.order.status == OrderStatus.PAID
    assert result.order.provider_ref.payment_id == "pay_late"


async def test_failure_on_replaced_provider_order_is_ignored(engine, add_product, fill_cart, shipping_address, ledger):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order
    await engine.retry_payment(order.order_id, USER)

    result = await engine.apply_payment_outcome(
        PaymentProvider.RAZORPAY, "order_rzp_1", PaymentOutcome.FAILURE, failure_reason="Expired",
    )

    assert not result.applied
    assert result.order.status == OrderStatus.PENDING
    assert await ledger.current_stock(pid) == 4


async def test_order_total_survives_later_price_change(engine, db, add_product, fill_cart, shipping_address, order_store):
    pid = await add_product(price=100.0, stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 100.0)])
    order = (await checkout(engine, shipping_address)).order

    await db.products.update_one({"_id": ObjectId(pid)}, {"$set": {"price": 999}})
    stored = await order_store.get(order.order_id)

    assert stored.items[0].price == Decimal("100.00")
    assert stored.items[0].subtotal == Decimal("200.00")
    assert stored.total_amount == Decimal("200.00")
    assert stored.total_amount == sum(item.subtotal for item in stored.items)


# --- Admin and COD transitions ---

async def test_admin_walks_cod_order_to_completion(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address)).order

    updated = await engine.apply_admin_status_change(order.order_id, "COMPLETED")

    assert updated.status == OrderStatus.COMPLETED
    assert updated.completed_at is not None


async def test_admin_illegal_transition_reports_allowed(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address)).order

    with pytest.raises(InvalidTransition) as exc:
        await engine.apply_admin_status_change(order.order_id, "PENDING")

    assert exc.value.details == {
        "current_status": "COD_CONFIRMED",
        "allowed_transitions": ["COMPLETED", "CANCELLED"],
    }


async def test_admin_unknown_status_value(engine):
    with pytest.raises(InvalidStatusValue) as exc:
        await engine.apply_admin_status_change("ORD-1", "SHIPPED")
    assert "PENDING" in exc.value.details["valid_statuses"]


async def test_admin_change_on_missing_order(engine):
    with pytest.raises(OrderNotFound):
        await engine.apply_admin_status_change("ORD-missing", "CANCELLED")


async def test_cancellation_restores_stock_once(engine, add_product, fill_cart, shipping_address, ledger):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 100.0)])
    order = (await checkout(engine, shipping_address)).order
    assert await ledger.current_stock(pid) == 3

    cancelled = await engine.apply_admin_status_change(order.order_id, "CANCELLED")
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert await ledger.current_stock(pid) == 5

    with pytest.raises(InvalidTransition):
        await engine.apply_admin_status_change(order.order_id, "CANCELLED")
    assert await ledger.current_stock(pid) == 5


async def test_concurrent_cancels_restore_once(engine, add_product, fill_cart, shipping_address, ledger):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 100.0)])
    order = (await checkout(engine, shipping_address)).order

    results = await asyncio.gather(
        engine.apply_admin_status_change(order.order_id, "CANCELLED"),
        engine.apply_admin_status_change(order.order_id, "CANCELLED"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InvalidTransition)) == 1
    assert await ledger.current_stock(pid) == 5


async def test_confirm_cod(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address)).order

    with pytest.raises(OrderNotFound):
        await engine.confirm_cod(order.order_id, OTHER_USER)

    completed = await engine.confirm_cod(order.order_id, USER)
    assert completed.status == OrderStatus.COMPLETED

    with pytest.raises(InvalidStatus):
        await engine.confirm_cod(order.order_id, USER)


async def test_confirm_cod_rejects_online_order(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order

    with pytest.raises(NotCODOrder):
        await engine.confirm_cod(order.order_id, USER)


# --- Payment outcomes ---

async def test_success_outcome_marks_paid(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order

    result = await engine.apply_payment_outcome(
        PaymentProvider.RAZORPAY, order.provider_ref.order_id, PaymentOutcome.SUCCESS, "pay_abc",
    )
    assert result.applied
    assert result.order.status == OrderStatus.PAID
    assert result.order.provider_ref.payment_id == "pay_abc"

    replay = await engine.apply_payment_outcome(
        PaymentProvider.RAZORPAY, order.provider_ref.order_id, PaymentOutcome.SUCCESS, "pay_abc",
    )
    assert not replay.applied
    assert replay.order.status == OrderStatus.PAID


async def test_duplicate_failure_restores_stock_once(engine, add_product, fill_cart, shipping_address, ledger):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 2, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order
    ref = order.provider_ref.order_id

    first = await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, ref, PaymentOutcome.FAILURE, "pay_1", "Card declined")
    second = await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, ref, PaymentOutcome.FAILURE, "pay_1", "Card declined")

    assert first.applied and not second.applied
    assert first.order.status == OrderStatus.CANCELLED
    assert first.order.failure_reason == "Card declined"
    assert await ledger.current_stock(pid) == 5


async def test_late_failure_does_not_cancel_paid_order(engine, add_product, fill_cart, shipping_address, ledger):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order
    ref = order.provider_ref.order_id

    await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, ref, PaymentOutcome.SUCCESS, "pay_1")
    late = await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, ref, PaymentOutcome.FAILURE)

    assert not late.applied
    assert late.order.status == OrderStatus.PAID
    assert await ledger.current_stock(pid) == 4


async def test_outcome_for_unknown_provider_order(engine):
    with pytest.raises(OrderNotFound):
        await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, "order_unknown", PaymentOutcome.SUCCESS)
    with pytest.raises(OrderNotFound):
        await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, None, PaymentOutcome.SUCCESS)


# --- Auto-complete ---

async def test_auto_complete_cod(make_engine, add_product, fill_cart, shipping_address):
    engine = make_engine(auto_complete=True)
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])

    order = (await checkout(engine, shipping_address)).order

    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at is not None


async def test_auto_complete_online_success(make_engine, add_product, fill_cart, shipping_address):
    engine = make_engine(auto_complete=True)
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order

    result = await engine.apply_payment_outcome(
        PaymentProvider.RAZORPAY, order.provider_ref.order_id, PaymentOutcome.SUCCESS, "pay_1",
    )

    assert result.order.status == OrderStatus.COMPLETED
    assert result.order.completed_at is not None


# --- Client-side payment confirmation ---

async def test_record_client_payment(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order
    ref = order.provider_ref.order_id
    signature = razorpay_signature(f"{ref}|pay_9".encode(), RAZORPAY_KEY_SECRET)

    with pytest.raises(PaymentMismatch):
        await engine.record_client_payment(order.order_id, USER, "order_other", "pay_9", signature)
    with pytest.raises(SignatureError):
        await engine.record_client_payment(order.order_id, USER, ref, "pay_9", "bad")

    updated = await engine.record_client_payment(order.order_id, USER, ref, "pay_9", signature)
    assert updated.provider_ref.payment_id == "pay_9"
    assert updated.provider_ref.signature == signature
    assert updated.status == OrderStatus.PENDING


async def test_client_payment_does_not_overwrite_settled_order(engine, add_product, fill_cart, shipping_address, order_store):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address, PaymentMethod.ONLINE)).order
    ref = order.provider_ref.order_id
    await engine.apply_payment_outcome(PaymentProvider.RAZORPAY, ref, PaymentOutcome.SUCCESS, "pay_webhook")
    signature = razorpay_signature(f"{ref}|pay_client".encode(), RAZORPAY_KEY_SECRET)

    returned = await engine.record_client_payment(order.order_id, USER, ref, "pay_client", signature)

    assert returned.status == OrderStatus.PAID
    assert returned.provider_ref.payment_id == "pay_webhook"
    assert (await order_store.record_client_payment(order.order_id, "pay_client", signature)) is None
    assert (await order_store.get(order.order_id)).provider_ref.payment_id == "pay_webhook"


# --- Reads ---

async def test_get_order_visibility(engine, add_product, fill_cart, shipping_address):
    pid = await add_product(stock=5)
    await fill_cart(USER["sub"], [(pid, 1, 100.0)])
    order = (await checkout(engine, shipping_address)).order

    assert (await engine.get_order(order.order_id, USER)).order_id == order.order_id
    assert (await engine.get_order(order.order_id, ADMIN)).order_id == order.order_id
    with pytest.raises(OrderNotFound):
        await engine.get_order(order.order_id, OTHER_USER)
