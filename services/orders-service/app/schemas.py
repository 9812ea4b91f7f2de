from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Any, Dict
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input

from app.models import (
    OrderStatus, PaymentMethod, PaymentProvider, ShippingAddress,
    ProviderReference
)

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    qty: int = Field(..., gt=0)

class CartItemUpdate(BaseModel):
    qty: int = Field(..., gt=0)

class CartItemResponse(BaseModel):
    product_id: str
    title: str
    price: Decimal
    qty: int
    subtotal: Decimal

class CartResponse(BaseModel):
    user_id: str
    items: List[CartItemResponse]
    total: Decimal
    updated_at: datetime

# --- Checkout ---
class ShippingAddressIn(ShippingAddress):
    full_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=r"^\+?[0-9 \-]{7,15}$")
    pincode: str = Field(..., pattern=r"^[0-9A-Za-z \-]{3,10}$")

    @field_validator("full_name", "address_line1", "address_line2", "city", "state")
    def sanitize_text(cls, v):
        return sanitize_input(v)

class CheckoutRequest(BaseModel):
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod
    delivery_notes: Optional[str] = Field(None, max_length=500)

    @field_validator("delivery_notes")
    def sanitize_notes(cls, v):
        return sanitize_input(v)

class StockIssue(BaseModel):
    product_id: str
    title: Optional[str] = None
    issue: str
    available_stock: Optional[int] = None

class ClientPaymentVerification(BaseModel):
    order_id: str
    provider_order_id: str
    provider_payment_id: str
    signature: str

# --- Orders ---
class OrderItemResponse(BaseModel):
    product_id: str
    title: str
    price: Decimal
    qty: int
    subtotal: Decimal

class OrderResponse(BaseModel):
    order_id: str
    user_id: str
    items: List[OrderItemResponse]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_provider: Optional[PaymentProvider] = None
    provider_ref: ProviderReference
    status: OrderStatus
    total_amount: Decimal
    delivery_notes: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

class CheckoutResponse(BaseModel):
    order: OrderResponse
    payment_data: Optional[Dict[str, Any]] = None

class OrderStatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    def sanitize_status(cls, v):
        return sanitize_input(v)

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination
    status_counts: Optional[Dict[str, int]] = None

class TopProduct(BaseModel):
    product_id: str
    title: Optional[str] = None
    total_quantity_sold: int
    total_revenue: Decimal

class OrderStatsResponse(BaseModel):
    total_orders: int
    today_orders: int
    week_orders: int
    month_orders: int
    status_breakdown: Dict[str, int]
    total_revenue: Decimal
    average_order_value: Decimal
    total_paid_orders: int
    top_products: List[TopProduct]

# --- Webhooks ---
class WebhookAck(BaseModel):
    log_id: str
    event_type: str
    action: Optional[str] = None
