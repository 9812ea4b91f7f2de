"""
Domain errors raised by the order lifecycle.

Each error carries an HTTP status, a machine-readable code and optional
details; the service turns them into an ErrorResponse at the API boundary.
"""
from typing import Any, Iterable, List, Optional

from fastapi import status


class CommerceError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details or None
        super().__init__(self.message)


# --- Validation ---
class ValidationError(CommerceError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class InvalidStatusValue(ValidationError):
    code = "INVALID_STATUS_VALUE"
    default_message = "Invalid status"

    def __init__(self, value: str, valid_statuses: Iterable[str]):
        super().__init__(
            f"Invalid status: {value}",
            valid_statuses=list(valid_statuses),
        )


# --- Not found ---
class NotFoundError(CommerceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class OrderNotFound(NotFoundError):
    code = "ORDER_NOT_FOUND"
    default_message = "Order not found"


class ProductNotFound(NotFoundError):
    code = "PRODUCT_NOT_FOUND"
    default_message = "Product not found"


# --- State ---
class StateError(CommerceError):
    code = "INVALID_STATE"
    default_message = "Operation not allowed in the current state"


class InvalidTransition(StateError):
    code = "INVALID_TRANSITION"

    def __init__(self, current_status: str, target_status: str, allowed: List[str]):
        self.current_status = current_status
        self.target_status = target_status
        self.allowed_transitions = allowed
        super().__init__(
            f"Cannot transition from {current_status} to {target_status}",
            current_status=current_status,
            allowed_transitions=allowed,
        )


class InvalidStatus(StateError):
    code = "INVALID_STATUS"
    default_message = "Order is not in the required status"


class NotCODOrder(StateError):
    code = "NOT_COD_ORDER"
    default_message = "This is not a COD order"


class NotOnlineOrder(StateError):
    code = "NOT_ONLINE_ORDER"
    default_message = "This is not an online payment order"


class EmptyCart(StateError):
    code = "EMPTY_CART"
    default_message = "Cart is empty"


class PaymentMismatch(StateError):
    code = "PAYMENT_MISMATCH"
    default_message = "Payment does not belong to this order"


# --- Stock ---
class StockError(CommerceError):
    code = "STOCK_ERROR"
    default_message = "Insufficient stock"


class StockValidationFailed(StockError):
    code = "STOCK_VALIDATION_FAILED"
    default_message = "Stock validation failed"

    def __init__(self, issues: list):
        self.issues = issues
        super().__init__(
            issues=[issue.model_dump(exclude_none=True) for issue in issues]
        )


# --- Payments ---
class SignatureError(CommerceError):
    code = "INVALID_SIGNATURE"
    default_message = "Invalid signature"


class ProviderError(CommerceError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "PROVIDER_ERROR"
    default_message = "Payment provider request failed"


class WebhookProcessingError(CommerceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "WEBHOOK_PROCESSING_FAILED"
    default_message = "Webhook processing failed"
