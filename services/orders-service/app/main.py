from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import Optional, List
import math
import os
import sys
import httpx

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse, HealthResponse,
    AppException, NotFoundException, UnauthorizedException, ForbiddenException, is_admin
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import SecurityHeadersMiddleware

from app.errors import CommerceError, ProductNotFound
from app.gateways import build_gateways
from app.lifecycle import OrderLifecycleEngine
from app.models import CartDB, CartItemDB, OrderDB, OrderStatus, PaymentProvider, to_money
from app.repository import CartStore, OrderStore, WebhookLogStore
from app.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse, CheckoutRequest, CheckoutResponse,
    ClientPaymentVerification, OrderListResponse, OrderResponse, OrderStatsResponse,
    OrderStatusUpdate, Pagination, WebhookAck
)
from app.stock import StockLedger
from app.webhooks import WebhookIngestion

# Setup Logging
logger = setup_logging("orders-service")

app = FastAPI(title="Orders Service")

# Security Setup
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="orders-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def wire_services(db, gateways=None) -> None:
    """Build the stores, the lifecycle engine and the webhook ingestion on app.state."""
    gateways = gateways if gateways is not None else build_gateways(settings)
    app.state.orders = OrderStore(db.orders)
    app.state.carts = CartStore(db.carts)
    app.state.webhook_logs = WebhookLogStore(db.webhook_logs)
    app.state.stock = StockLedger(db.products)
    app.state.engine = OrderLifecycleEngine(
        orders=app.state.orders,
        carts=app.state.carts,
        stock=app.state.stock,
        gateways=gateways,
        default_provider=PaymentProvider(settings.DEFAULT_PAYMENT_PROVIDER),
        auto_complete=settings.AUTO_COMPLETE_ORDERS,
    )
    app.state.webhooks = WebhookIngestion(app.state.engine, gateways, app.state.webhook_logs)

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    wire_services(app.mongodb)
    # Indexes
    await app.state.orders.create_indexes()
    await app.state.carts.create_indexes()
    await app.state.webhook_logs.create_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra={"request_id": getattr(request.state, "request_id", None)})
    body = ErrorResponse(error=exc.message, code=exc.code, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))

# --- Dependencies ---
async def get_current_user(request: Request, authorization: Optional[str] = Header(None)):
    if not authorization:
        raise UnauthorizedException("Missing authorization header")
    async with httpx.AsyncClient() as client:
        try:
            headers = {"Authorization": authorization}
            request_id = getattr(request.state, "request_id", None)
            if request_id:
                headers["X-Request-ID"] = request_id

            response = await client.get(f"{settings.AUTH_SERVICE_URL}/verify", headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.RequestError:
            raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Auth service unavailable")
        except httpx.HTTPStatusError:
            raise UnauthorizedException("Invalid authentication credentials")

    if not data.get("success"):
        raise UnauthorizedException("Invalid token")
    request.state.user_id = data["data"].get("sub")
    return data["data"]

async def require_admin(user: dict = Depends(get_current_user)):
    if not is_admin(user):
        raise ForbiddenException()
    return user

def get_engine(request: Request) -> OrderLifecycleEngine:
    return request.app.state.engine

# --- Helpers ---
def order_response(order: OrderDB) -> OrderResponse:
    return OrderResponse(**order.model_dump(exclude={"id"}))

def cart_response(cart: CartDB) -> CartResponse:
    return CartResponse(
        user_id=cart.user_id,
        items=[item.model_dump() for item in cart.items],
        total=cart.total,
        updated_at=cart.updated_at,
    )

def page_of(orders: List[OrderDB], total: int, page: int, limit: int, status_counts=None) -> OrderListResponse:
    return OrderListResponse(
        orders=[order_response(o) for o in orders],
        pagination=Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
        status_counts=status_counts,
    )

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(request: Request, user: dict = Depends(get_current_user)):
    cart = await request.app.state.carts.get(user["sub"])
    return SuccessResponse(data=cart_response(cart))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(item: CartItemAdd, request: Request, user: dict = Depends(get_current_user)):
    carts: CartStore = request.app.state.carts
    product = await request.app.state.stock.get_product(item.product_id)
    if product is None:
        raise ProductNotFound()
    if not product.is_active:
        raise HTTPException(status_code=400, detail="Product is not active")

    cart = await carts.get(user["sub"])
    items = list(cart.items)
    existing = next((i for i in items if i.product_id == item.product_id), None)
    qty = item.qty + (existing.qty if existing else 0)
    if product.stock < qty:
        raise HTTPException(status_code=400, detail=f"Only {product.stock} items available")

    line = CartItemDB(
        product_id=item.product_id,
        title=product.title,
        price=product.price,
        qty=qty,
        subtotal=to_money(product.price * qty),
    )
    if existing:
        items[items.index(existing)] = line
    else:
        items.append(line)

    cart = await carts.save_items(user["sub"], items)
    return SuccessResponse(data=cart_response(cart), message="Item added to cart")

@app.put("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(product_id: str, update: CartItemUpdate, request: Request, user: dict = Depends(get_current_user)):
    carts: CartStore = request.app.state.carts
    cart = await carts.get(user["sub"])
    items = list(cart.items)
    for i, line in enumerate(items):
        if line.product_id == product_id:
            items[i] = line.model_copy(update={
                "qty": update.qty,
                "subtotal": to_money(line.price * update.qty),
            })
            break
    else:
        raise NotFoundException("Item not found in cart")

    cart = await carts.save_items(user["sub"], items)
    return SuccessResponse(data=cart_response(cart))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(product_id: str, request: Request, user: dict = Depends(get_current_user)):
    carts: CartStore = request.app.state.carts
    cart = await carts.get(user["sub"])
    items = [line for line in cart.items if line.product_id != product_id]
    cart = await carts.save_items(user["sub"], items)
    return SuccessResponse(data=cart_response(cart))

@app.delete("/cart", response_model=SuccessResponse[dict])
async def clear_cart(request: Request, user: dict = Depends(get_current_user)):
    await request.app.state.carts.clear(user["sub"])
    return SuccessResponse(message="Cart cleared")

# Checkout
@app.post(
    "/checkout/create-order",
    response_model=SuccessResponse[CheckoutResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    checkout: CheckoutRequest,
    user: dict = Depends(get_current_user),
    engine: OrderLifecycleEngine = Depends(get_engine),
):
    result = await engine.create_order_from_cart(
        user["sub"],
        checkout.shipping_address,
        checkout.payment_method,
        checkout.delivery_notes,
    )
    return SuccessResponse(
        data=CheckoutResponse(order=order_response(result.order), payment_data=result.payment_data),
        message="Order created successfully",
    )

@app.post("/checkout/confirm-cod/{order_id}", response_model=SuccessResponse[OrderResponse])
async def confirm_cod_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    engine: OrderLifecycleEngine = Depends(get_engine),
):
    order = await engine.confirm_cod(order_id, user)
    return SuccessResponse(data=order_response(order), message="COD order confirmed and completed")

@app.post("/checkout/retry-payment/{order_id}", response_model=SuccessResponse[CheckoutResponse])
async def retry_payment(
    order_id: str,
    user: dict = Depends(get_current_user),
    engine: OrderLifecycleEngine = Depends(get_engine),
):
    result = await engine.retry_payment(order_id, user)
    return SuccessResponse(
        data=CheckoutResponse(order=order_response(result.order), payment_data=result.payment_data),
        message="Payment order created",
    )

@app.post("/checkout/verify-payment", response_model=SuccessResponse[OrderResponse])
async def verify_payment(
    verification: ClientPaymentVerification,
    user: dict = Depends(get_current_user),
    engine: OrderLifecycleEngine = Depends(get_engine),
):
    order = await engine.record_client_payment(
        verification.order_id,
        user,
        verification.provider_order_id,
        verification.provider_payment_id,
        verification.signature,
    )
    return SuccessResponse(data=order_response(order), message="Payment details verified")

# Orders
@app.get("/orders/my", response_model=SuccessResponse[OrderListResponse])
async def list_my_orders(
    request: Request,
    user: dict = Depends(get_current_user),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    query = {"user_id": user["sub"]}
    if status_filter:
        query["status"] = status_filter.value
    orders, total = await request.app.state.orders.find_page(query, page, limit)
    return SuccessResponse(data=page_of(orders, total, page, limit))

@app.get("/orders", response_model=SuccessResponse[OrderListResponse])
async def list_all_orders(
    request: Request,
    admin: dict = Depends(require_admin),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    store: OrderStore = request.app.state.orders
    query = {"status": status_filter.value} if status_filter else {}
    orders, total = await store.find_page(query, page, limit)
    return SuccessResponse(data=page_of(orders, total, page, limit, await store.status_counts()))

@app.get("/orders/admin/stats", response_model=SuccessResponse[OrderStatsResponse])
async def order_stats(request: Request, admin: dict = Depends(require_admin)):
    stats = await request.app.state.orders.stats()
    return SuccessResponse(data=OrderStatsResponse(**stats))

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    engine: OrderLifecycleEngine = Depends(get_engine),
):
    order = await engine.get_order(order_id, user)
    return SuccessResponse(data=order_response(order))

@app.patch("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    engine: OrderLifecycleEngine = Depends(get_engine),
):
    order = await engine.apply_admin_status_change(order_id, status_update.status)
    return SuccessResponse(data=order_response(order), message="Order status updated successfully")

# Webhooks (no auth, signature verified on the raw body)
async def ingest_webhook(request: Request, provider: PaymentProvider) -> SuccessResponse:
    ingestion: WebhookIngestion = request.app.state.webhooks
    gateway = ingestion.gateways.get(provider)
    signature = request.headers.get(gateway.signature_header) if gateway else None
    raw_body = await request.body()
    result = await ingestion.ingest(provider, raw_body, signature)
    return SuccessResponse(
        data=WebhookAck(log_id=result.log_id, event_type=result.event_type, action=result.action),
        message="Webhook processed successfully",
    )

@app.post("/webhooks/razorpay", response_model=SuccessResponse[WebhookAck])
async def razorpay_webhook(request: Request):
    return await ingest_webhook(request, PaymentProvider.RAZORPAY)

@app.post("/webhooks/stripe", response_model=SuccessResponse[WebhookAck])
async def stripe_webhook(request: Request):
    return await ingest_webhook(request, PaymentProvider.STRIPE)

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"
    auth_status = "unknown"

    # Check DB
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    # Check Auth Service
    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{settings.AUTH_SERVICE_URL}/health", timeout=2.0)
            auth_status = "healthy" if resp.status_code == 200 else "unhealthy"
        except Exception:
            auth_status = "unreachable"

    overall_status = "healthy" if db_status == "connected" and auth_status == "healthy" else "unhealthy"

    if overall_status == "unhealthy":
        logger.error(f"Health Check Failed: DB={db_status}, Auth={auth_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="orders-service",
        status=overall_status,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={
            "auth-service": auth_status
        }
    )
