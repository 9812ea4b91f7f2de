"""
Payment gateway adapters.

Each adapter is built once at startup from Settings and injected into the
lifecycle engine and the webhook ingestion; nothing here is a module-level
client.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import stripe

from app.errors import ProviderError
from app.models import OrderDB, PaymentProvider

logger = logging.getLogger("orders-service.gateways")


class PaymentOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ProviderPayload:
    provider: PaymentProvider
    external_order_id: str
    client_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifiedEvent:
    provider: PaymentProvider
    event_type: str
    payload: Dict[str, Any]
    event_id: Optional[str] = None
    outcome: Optional[PaymentOutcome] = None
    provider_order_ref: Optional[str] = None
    provider_payment_ref: Optional[str] = None
    order_id: Optional[str] = None
    failure_reason: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class PaymentGatewayAdapter(ABC):
    provider: PaymentProvider
    signature_header: str

    @abstractmethod
    async def create_remote_order(self, order: OrderDB) -> ProviderPayload:
        """Create the provider-side payment object for `order`."""

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[VerifiedEvent]:
        """Return the decoded event, or None when the delivery is not authentic."""


class RazorpayGateway(PaymentGatewayAdapter):
    provider = PaymentProvider.RAZORPAY
    signature_header = "X-Razorpay-Signature"

    EVENT_OUTCOMES = {
        "payment.captured": PaymentOutcome.SUCCESS,
        "payment.failed": PaymentOutcome.FAILURE,
    }

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        api_url: str = "https://api.razorpay.com/v1",
        currency: str = "INR",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    async def create_remote_order(self, order: OrderDB) -> ProviderPayload:
        if not self.key_id or not self.key_secret:
            raise ProviderError("Razorpay credentials not configured")

        body = {
            "amount": to_minor_units(order.total_amount),
            "currency": self.currency,
            "receipt": order.order_id,
            "notes": {"order_id": order.order_id, "user_id": order.user_id},
        }
        async with httpx.AsyncClient(
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            try:
                response = await client.post(f"{self.api_url}/orders", json=body)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                raise ProviderError(
                    f"Failed to create Razorpay order: HTTP {e.response.status_code}"
                ) from e
            except httpx.RequestError as e:
                raise ProviderError(f"Failed to create Razorpay order: {e}") from e
            except ValueError as e:
                raise ProviderError("Razorpay returned a malformed order response") from e

        if not isinstance(data, dict) or not data.get("id"):
            raise ProviderError("Razorpay order response has no id")

        return ProviderPayload(
            provider=self.provider,
            external_order_id=data["id"],
            client_data={
                "order_id": data["id"],
                "amount": data.get("amount", body["amount"]),
                "currency": data.get("currency", self.currency),
                "key_id": self.key_id,
                "receipt": data.get("receipt", order.order_id),
            },
        )

    @staticmethod
    def _hmac_hex(secret: str, message: bytes) -> str:
        return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[VerifiedEvent]:
        if not self.webhook_secret:
            logger.error("Razorpay webhook secret not configured")
            return None
        if not signature:
            return None

        expected = self._hmac_hex(self.webhook_secret, raw_body)
        if not hmac.compare_digest(expected, signature):
            return None

        try:
            body = json.loads(raw_body)
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None

        event_type = body.get("event", "unknown")
        payment = ((body.get("payload") or {}).get("payment") or {}).get("entity") or {}
        notes = payment.get("notes") or {}
        return VerifiedEvent(
            provider=self.provider,
            event_type=event_type,
            payload=body,
            event_id=body.get("id"),
            outcome=self.EVENT_OUTCOMES.get(event_type),
            provider_order_ref=payment.get("order_id"),
            provider_payment_ref=payment.get("id"),
            order_id=notes.get("order_id") if isinstance(notes, dict) else None,
            failure_reason=payment.get("error_description"),
        )

    def verify_payment_signature(self, provider_order_id: str, provider_payment_id: str, signature: str) -> bool:
        """Check the signature Razorpay Checkout hands the client after payment."""
        if not self.key_secret or not signature:
            return False
        message = f"{provider_order_id}|{provider_payment_id}".encode()
        return hmac.compare_digest(self._hmac_hex(self.key_secret, message), signature)


class StripeGateway(PaymentGatewayAdapter):
    provider = PaymentProvider.STRIPE
    signature_header = "Stripe-Signature"

    EVENT_OUTCOMES = {
        "payment_intent.succeeded": PaymentOutcome.SUCCESS,
        "payment_intent.payment_failed": PaymentOutcome.FAILURE,
    }

    def __init__(self, secret_key: str, webhook_secret: str, currency: str = "INR"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()

    async def create_remote_order(self, order: OrderDB) -> ProviderPayload:
        if not self.secret_key:
            raise ProviderError("Stripe secret key not configured")

        def create():
            return stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=to_minor_units(order.total_amount),
                currency=self.currency,
                metadata={"order_id": order.order_id, "user_id": order.user_id},
                automatic_payment_methods={"enabled": True},
            )

        try:
            intent = await asyncio.get_event_loop().run_in_executor(None, create)
        except stripe.StripeError as e:
            raise ProviderError(f"Failed to create Stripe payment intent: {e}") from e
        except Exception as e:
            raise ProviderError(f"Unexpected Stripe response: {e}") from e
        if not getattr(intent, "id", None):
            raise ProviderError("Stripe payment intent has no id")

        return ProviderPayload(
            provider=self.provider,
            external_order_id=intent.id,
            client_data={
                "client_secret": intent.client_secret,
                "payment_intent_id": intent.id,
            },
        )

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[VerifiedEvent]:
        if not self.webhook_secret:
            logger.error("Stripe webhook secret not configured")
            return None
        if not signature:
            return None

        try:
            stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Stripe signature verification failed", extra={"provider": "stripe"}, exc_info=e)
            return None

        # Authentic from here on; read the plain JSON rather than SDK objects
        body = json.loads(raw_body)
        event_type = body.get("type", "unknown")
        intent = (body.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        last_error = intent.get("last_payment_error") or {}
        return VerifiedEvent(
            provider=self.provider,
            event_type=event_type,
            payload=body,
            event_id=body.get("id"),
            outcome=self.EVENT_OUTCOMES.get(event_type),
            provider_order_ref=intent.get("id"),
            provider_payment_ref=intent.get("latest_charge") or intent.get("id"),
            order_id=metadata.get("order_id"),
            failure_reason=last_error.get("message"),
        )


def build_gateways(settings) -> Dict[PaymentProvider, PaymentGatewayAdapter]:
    return {
        PaymentProvider.RAZORPAY: RazorpayGateway(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            api_url=settings.RAZORPAY_API_URL,
            currency=settings.PAYMENT_CURRENCY,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        ),
        PaymentProvider.STRIPE: StripeGateway(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            currency=settings.PAYMENT_CURRENCY,
        ),
    }
