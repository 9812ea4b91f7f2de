from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, Any
from pydantic import BaseModel, Field, field_validator

CENTS = Decimal("0.01")

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    COD_CONFIRMED = "COD_CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class PaymentMethod(str, Enum):
    ONLINE = "ONLINE"
    COD = "COD"

class PaymentProvider(str, Enum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"

class WebhookStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

def to_money(value: Any) -> Decimal:
    # Restore decimal from the float Mongo hands back
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)

def to_document(value: Any) -> Any:
    """Prepare a model dump for Mongo: Decimals become floats, enums plain values."""
    if isinstance(value, dict):
        return {k: to_document(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_document(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value

class MoneyModel(BaseModel):
    @field_validator("price", "subtotal", "total", "total_amount", mode="before", check_fields=False)
    @classmethod
    def parse_money(cls, v):
        return to_money(v) if v is not None else v

# --- Cart ---
class CartItemDB(MoneyModel):
    product_id: str
    title: str
    price: Decimal # Snapshot at add time, informational only
    qty: int
    subtotal: Decimal

class CartDB(MoneyModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartItemDB] = []
    total: Decimal = Decimal("0")
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

# --- Orders ---
class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str

class OrderItemDB(MoneyModel):
    product_id: str
    title: str
    price: Decimal
    qty: int
    subtotal: Decimal

class ProviderReference(BaseModel):
    order_id: Optional[str] = None
    previous_order_ids: List[str] = Field(default_factory=list) # Superseded by a payment retry
    payment_id: Optional[str] = None
    signature: Optional[str] = None

class OrderDB(MoneyModel):
    id: Optional[str] = Field(None, alias="_id")
    order_id: str
    user_id: str
    items: List[OrderItemDB]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_provider: Optional[PaymentProvider] = None
    provider_ref: ProviderReference = Field(default_factory=ProviderReference)
    status: OrderStatus = OrderStatus.PENDING
    total_amount: Decimal
    delivery_notes: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

    def to_mongo(self) -> dict:
        return to_document(self.model_dump(by_alias=True, exclude={"id"}))

# --- Webhook audit trail ---
class WebhookLogDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    provider: PaymentProvider
    event_type: str = "unknown"
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    status: WebhookStatus = WebhookStatus.PENDING
    action: Optional[str] = None # applied, ignored, no_action
    raw_payload: Any = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    def to_mongo(self) -> dict:
        return to_document(self.model_dump(by_alias=True, exclude={"id"}))
