"""
Order lifecycle: the status machine plus the side effects attached to each
transition (stock reservation/restoration, timestamps, provider linkage).

Every status write is a compare-and-set on ``(order_id, current status)``.
Whoever wins the write owns the side effects, so a cancellation restores
stock exactly once no matter how many callers race on the same order.
"""
import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from app.errors import (
    EmptyCart, InvalidStatus, InvalidStatusValue, InvalidTransition, NotCODOrder,
    NotOnlineOrder, OrderNotFound, PaymentMismatch, ProviderError, SignatureError,
    StockValidationFailed
)
from app.gateways import PaymentGatewayAdapter, PaymentOutcome, RazorpayGateway
from app.models import (
    OrderDB, OrderItemDB, OrderStatus, PaymentMethod, PaymentProvider,
    ShippingAddress, to_money
)
from app.repository import CartStore, OrderStore
from app.schemas import StockIssue
from app.stock import StockLedger
from shared.utils import is_admin

logger = logging.getLogger("orders-service.lifecycle")

# --- State machine ---
ALLOWED_TRANSITIONS: Dict[OrderStatus, tuple] = {
    OrderStatus.PENDING: (OrderStatus.PAID, OrderStatus.COD_CONFIRMED, OrderStatus.CANCELLED),
    OrderStatus.PAID: (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
    OrderStatus.COD_CONFIRMED: (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
    OrderStatus.COMPLETED: (),
    OrderStatus.CANCELLED: (),
}


def allowed_transitions(current: OrderStatus) -> List[OrderStatus]:
    return list(ALLOWED_TRANSITIONS[OrderStatus(current)])


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def generate_order_id() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


@dataclass
class CheckoutResult:
    order: OrderDB
    payment_data: Optional[Dict[str, Any]] = None


@dataclass
class OutcomeResult:
    order: OrderDB
    applied: bool


class OrderLifecycleEngine:
    def __init__(
        self,
        orders: OrderStore,
        carts: CartStore,
        stock: StockLedger,
        gateways: Dict[PaymentProvider, PaymentGatewayAdapter],
        default_provider: PaymentProvider = PaymentProvider.RAZORPAY,
        auto_complete: bool = False,
    ):
        self.orders = orders
        self.carts = carts
        self.stock = stock
        self.gateways = gateways
        self.default_provider = PaymentProvider(default_provider)
        self.auto_complete = auto_complete

    # --- Transitions ---
    @staticmethod
    def _check_path(current: OrderStatus, path: Sequence[OrderStatus]) -> None:
        for target in path:
            if not can_transition(current, target):
                raise InvalidTransition(
                    current.value, target.value,
                    [s.value for s in allowed_transitions(current)],
                )
            current = target

    async def _advance(self, order: OrderDB, path: Sequence[OrderStatus], fields: Optional[dict] = None) -> OrderDB:
        """Move `order` along `path` (one or more hops) in a single write."""
        self._check_path(order.status, path)

        final = path[-1]
        now = datetime.utcnow()
        updates = dict(fields or {})
        updates.update({"status": final, "updated_at": now})
        if final == OrderStatus.COMPLETED:
            updates["completed_at"] = now
        elif final == OrderStatus.CANCELLED:
            updates["cancelled_at"] = now

        updated = await self.orders.compare_and_set(order.order_id, order.status, updates)
        if updated is None:
            latest = await self.orders.get(order.order_id)
            if latest is None:
                raise OrderNotFound()
            # Someone else moved the order first; report against what is stored now
            raise InvalidTransition(
                latest.status.value, final.value,
                [s.value for s in allowed_transitions(latest.status)],
            )

        logger.info(
            "Order status changed",
            extra={"order_id": order.order_id, "from_status": order.status.value, "to_status": final.value},
        )
        if final == OrderStatus.CANCELLED:
            await self.stock.restore_order_stock(updated)
        return updated

    # --- Checkout ---
    async def create_order_from_cart(
        self,
        user_id: str,
        shipping_address: ShippingAddress,
        payment_method: PaymentMethod,
        delivery_notes: Optional[str] = None,
    ) -> CheckoutResult:
        cart = await self.carts.get(user_id)
        if not cart.items:
            raise EmptyCart()

        issues: List[StockIssue] = []
        items: List[OrderItemDB] = []
        for line in cart.items:
            product = await self.stock.get_product(line.product_id)
            if product is None or not product.is_active:
                issues.append(StockIssue(
                    product_id=line.product_id, title=line.title, issue="Product not available",
                ))
            elif product.stock < line.qty:
                issues.append(StockIssue(
                    product_id=line.product_id, title=line.title,
                    issue=f"Only {product.stock} items available",
                    available_stock=product.stock,
                ))
            else:
                # Freeze title/price from the product record, not the cart snapshot
                items.append(OrderItemDB(
                    product_id=line.product_id,
                    title=product.title,
                    price=product.price,
                    qty=line.qty,
                    subtotal=to_money(product.price * line.qty),
                ))

        if issues:
            raise StockValidationFailed(issues)

        reservation = [(item.product_id, item.qty) for item in items]
        await self.stock.reserve(reservation)

        order = OrderDB(
            order_id=generate_order_id(),
            user_id=user_id,
            items=items,
            shipping_address=ShippingAddress(**shipping_address.model_dump()),
            payment_method=payment_method,
            total_amount=sum((item.subtotal for item in items), to_money(0)),
            delivery_notes=delivery_notes or None,
        )
        if payment_method == PaymentMethod.COD:
            path = [OrderStatus.COD_CONFIRMED]
            if self.auto_complete:
                path.append(OrderStatus.COMPLETED)
            self._check_path(OrderStatus.PENDING, path)
            order.status = path[-1]
            if order.status == OrderStatus.COMPLETED:
                order.completed_at = order.created_at

        try:
            order = await self.orders.insert(order)
        except Exception:
            await self.stock.release(reservation)
            raise

        # The cart is cleared once the order exists
        payment_data = None
        try:
            if payment_method == PaymentMethod.ONLINE:
                try:
                    order, payment_data = await self._create_remote_payment(order)
                except ProviderError as e:
                    # The order stays PENDING and can be retried
                    logger.error(
                        f"Payment provider order creation failed: {e.message}",
                        extra={"order_id": order.order_id, "provider": self.default_provider.value},
                    )
        finally:
            await self.carts.clear(user_id)

        logger.info("Order created", extra={"order_id": order.order_id, "user_id": user_id})
        return CheckoutResult(order=order, payment_data=payment_data)

    async def _create_remote_payment(self, order: OrderDB):
        gateway = self.gateways.get(self.default_provider)
        if gateway is None:
            raise ProviderError(f"Payment provider {self.default_provider.value} not configured")

        payload = await gateway.create_remote_order(order)
        updated = await self.orders.attach_provider_order(
            order.order_id, payload.provider, payload.external_order_id,
            previous_order_id=order.provider_ref.order_id,
        )
        if updated is None:
            raise InvalidStatus("Order is no longer awaiting payment")
        return updated, payload.client_data

    async def retry_payment(self, order_id: str, user: dict) -> CheckoutResult:
        order = await self.get_order(order_id, user)
        if order.payment_method != PaymentMethod.ONLINE:
            raise NotOnlineOrder()
        if order.status != OrderStatus.PENDING:
            raise InvalidStatus(f"Order is {order.status.value}, payment cannot be retried")

        order, payment_data = await self._create_remote_payment(order)
        return CheckoutResult(order=order, payment_data=payment_data)

    # --- Direct API transitions ---
    async def confirm_cod(self, order_id: str, user: dict) -> OrderDB:
        order = await self.get_order(order_id, user)
        if order.payment_method != PaymentMethod.COD:
            raise NotCODOrder()
        if order.status != OrderStatus.COD_CONFIRMED:
            raise InvalidStatus("Order is not in COD_CONFIRMED status")
        return await self._advance(order, [OrderStatus.COMPLETED])

    async def apply_admin_status_change(self, order_id: str, target_status: str) -> OrderDB:
        try:
            target = OrderStatus(target_status)
        except ValueError:
            raise InvalidStatusValue(target_status, [s.value for s in OrderStatus])

        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound()
        return await self._advance(order, [target])

    # --- Webhook-driven transitions ---
    async def apply_payment_outcome(
        self,
        provider: PaymentProvider,
        provider_order_ref: str,
        outcome: PaymentOutcome,
        provider_payment_ref: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> OutcomeResult:
        order = None
        if provider_order_ref:
            order = await self.orders.find_by_provider_ref(provider, provider_order_ref)
        if order is None:
            raise OrderNotFound(f"Order not found for provider order {provider_order_ref}")

        # Outcomes only settle a pending order; anything else is a replay or a late delivery
        if order.status != OrderStatus.PENDING:
            logger.info(
                f"Ignoring {outcome.value} outcome for order in {order.status.value}",
                extra={"order_id": order.order_id, "provider": provider.value},
            )
            return OutcomeResult(order=order, applied=False)

        # A failed provider order that a retry already replaced does not cancel the order
        if outcome == PaymentOutcome.FAILURE and order.provider_ref.order_id != provider_order_ref:
            logger.info(
                "Ignoring failure for superseded provider order",
                extra={"order_id": order.order_id, "provider": provider.value},
            )
            return OutcomeResult(order=order, applied=False)

        if outcome == PaymentOutcome.SUCCESS:
            path = [OrderStatus.PAID]
            if self.auto_complete:
                path.append(OrderStatus.COMPLETED)
            fields = {"provider_ref.payment_id": provider_payment_ref}
        else:
            path = [OrderStatus.CANCELLED]
            fields = {
                "provider_ref.payment_id": provider_payment_ref,
                "failure_reason": failure_reason or "Payment failed",
            }

        try:
            updated = await self._advance(order, path, fields)
        except InvalidTransition:
            latest = await self.orders.get(order.order_id)
            logger.info(
                "Payment outcome lost a race with another transition",
                extra={"order_id": order.order_id, "provider": provider.value},
            )
            return OutcomeResult(order=latest or order, applied=False)
        return OutcomeResult(order=updated, applied=True)

    # --- Client-side payment confirmation ---
    async def record_client_payment(
        self,
        order_id: str,
        user: dict,
        provider_order_id: str,
        provider_payment_id: str,
        signature: str,
    ) -> OrderDB:
        order = await self.get_order(order_id, user)
        gateway = self.gateways.get(PaymentProvider.RAZORPAY)
        if order.payment_provider != PaymentProvider.RAZORPAY or not isinstance(gateway, RazorpayGateway):
            raise PaymentMismatch("Client payment verification is only available for Razorpay orders")
        known = [order.provider_ref.order_id, *order.provider_ref.previous_order_ids]
        if provider_order_id not in known:
            raise PaymentMismatch()
        if not gateway.verify_payment_signature(provider_order_id, provider_payment_id, signature):
            raise SignatureError()

        # Status is left to the webhook; this only records what the client saw
        if order.status != OrderStatus.PENDING:
            return order
        updated = await self.orders.record_client_payment(order_id, provider_payment_id, signature)
        return updated or await self.orders.get(order_id)

    # --- Reads ---
    async def get_order(self, order_id: str, user: dict) -> OrderDB:
        order = await self.orders.get(order_id)
        if order is None or (order.user_id != user["sub"] and not is_admin(user)):
            raise OrderNotFound()
        return order
