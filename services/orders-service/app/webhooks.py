"""
Inbound payment-provider webhooks.

One WebhookLog row per delivery, written before the signature is checked so
forged deliveries leave a trace too. Failures are terminal for the delivery:
the provider's own retry schedule redelivers later.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from app.errors import SignatureError, WebhookProcessingError
from app.gateways import PaymentGatewayAdapter
from app.lifecycle import OrderLifecycleEngine
from app.models import PaymentProvider, WebhookLogDB, WebhookStatus
from app.repository import WebhookLogStore

logger = logging.getLogger("orders-service.webhooks")


@dataclass
class WebhookResult:
    log_id: str
    event_type: str
    action: str


def decode_payload(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except ValueError:
        return raw_body.decode("utf-8", errors="replace")


def declared_event_type(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("event") or payload.get("type") or "unknown")
    return "unknown"


class WebhookIngestion:
    def __init__(
        self,
        engine: OrderLifecycleEngine,
        gateways: Dict[PaymentProvider, PaymentGatewayAdapter],
        logs: WebhookLogStore,
    ):
        self.engine = engine
        self.gateways = gateways
        self.logs = logs

    async def ingest(self, provider: PaymentProvider, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        payload = decode_payload(raw_body)
        log_id = await self.logs.create(WebhookLogDB(
            provider=provider,
            event_type=declared_event_type(payload),
            signature=signature,
            raw_payload=payload,
        ))

        gateway = self.gateways.get(provider)
        event = gateway.verify_webhook(raw_body, signature) if gateway else None
        if event is None:
            await self.logs.update(
                log_id,
                status=WebhookStatus.FAILED,
                error_message="Invalid signature",
                processed_at=datetime.utcnow(),
            )
            logger.warning("Webhook signature rejected", extra={"provider": provider.value})
            raise SignatureError()

        log_fields = {
            "event_type": event.event_type,
            "event_id": event.event_id,
            "order_id": event.order_id,
            "payment_id": event.provider_payment_ref,
        }
        extra = {"provider": provider.value, "event_type": event.event_type, "event_id": event.event_id}

        if event.outcome is None:
            await self.logs.update(
                log_id,
                status=WebhookStatus.SUCCESS,
                action="no_action",
                processed_at=datetime.utcnow(),
                **log_fields,
            )
            logger.info("Webhook event needs no action", extra=extra)
            return WebhookResult(log_id=log_id, event_type=event.event_type, action="no_action")

        try:
            result = await self.engine.apply_payment_outcome(
                provider,
                event.provider_order_ref,
                event.outcome,
                provider_payment_ref=event.provider_payment_ref,
                failure_reason=event.failure_reason,
            )
        except Exception as e:
            await self.logs.update(
                log_id,
                status=WebhookStatus.FAILED,
                error_message=str(e),
                processed_at=datetime.utcnow(),
                **log_fields,
            )
            logger.exception("Webhook processing failed", extra=extra)
            raise WebhookProcessingError() from e

        action = "applied" if result.applied else "ignored"
        log_fields["order_id"] = result.order.order_id
        await self.logs.update(
            log_id,
            status=WebhookStatus.SUCCESS,
            action=action,
            processed_at=datetime.utcnow(),
            **log_fields,
        )
        logger.info(f"Webhook processed ({action})", extra={**extra, "order_id": result.order.order_id})
        return WebhookResult(log_id=log_id, event_type=event.event_type, action=action)
