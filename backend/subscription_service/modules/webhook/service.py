"""Webhook ingestion service.

Authenticates gateway deliveries and funnels successful payments into the
subscription state machine. Any delivery that is authentic and parseable is
acknowledged, including ones for orders this service does not know, so the
gateway stops redelivering them.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.config import settings
from subscription_service.core.logging import log_info, log_warning
from subscription_service.core.metrics import WEBHOOK_DELIVERIES_TOTAL
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.payment_gateway.interface import GatewayPaymentStatus
from subscription_service.modules.plans.catalog import PlanCatalog
from subscription_service.modules.subscription.exceptions import (
    NotFoundError,
    SignatureError,
    ValidationError,
)
from subscription_service.modules.subscription.state_machine import SubscriptionStateMachine
from subscription_service.modules.webhook.signature import verify_signature

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS_EVENT = "PAYMENT_SUCCESS_WEBHOOK"


@dataclass
class WebhookEvent:
    event_type: str
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    amount: Optional[float] = None


def _text_field(name: str, value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Webhook field {name} must be a string")
    return value


def parse_event(payload: Any) -> WebhookEvent:
    """Extract the fields we use from a webhook payload.

    Accepts both the flat ``data.{order_id, payment_status, cf_payment_id}``
    shape and the nested ``data.order`` / ``data.payment`` shape.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook data must be a JSON object")

    order = data.get("order") if isinstance(data.get("order"), dict) else {}
    payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}

    payment_id = data.get("cf_payment_id") or payment.get("cf_payment_id")
    amount = data.get("payment_amount") or payment.get("payment_amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, (int, float))):
        raise ValidationError("Webhook field payment_amount must be a number")
    return WebhookEvent(
        event_type=str(payload.get("type", "")),
        order_id=_text_field("order_id", data.get("order_id") or order.get("order_id")),
        payment_status=_text_field(
            "payment_status", data.get("payment_status") or payment.get("payment_status")
        ),
        gateway_payment_id=str(payment_id) if payment_id is not None else None,
        amount=amount,
    )


class WebhookService:
    """Verify and apply gateway webhook deliveries."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        dispatcher: Optional[NotificationDispatcher] = None,
        secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        self.state_machine = SubscriptionStateMachine(session, catalog, dispatcher)
        self.secret = secret if secret is not None else settings.CASHFREE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            settings.WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
        )

    async def handle(
        self,
        raw_body: bytes,
        timestamp: Optional[str],
        signature: Optional[str],
        now: Optional[datetime] = None,
    ) -> str:
        """Process one delivery.

        Returns:
            ``processed``, ``ignored`` or ``orphaned``

        Raises:
            SignatureError: Missing or wrong signature; nothing was read
            ValidationError: Authentic but unparseable payload, or a field
                of the wrong type
            PersistenceError: Storage failed; the gateway should redeliver
        """
        if not verify_signature(
            raw_body, timestamp, signature, self.secret, tolerance_seconds=self.tolerance_seconds
        ):
            WEBHOOK_DELIVERIES_TOTAL.labels(result="rejected").inc()
            log_warning(logger, "Webhook rejected: invalid signature")
            raise SignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            WEBHOOK_DELIVERIES_TOTAL.labels(result="rejected").inc()
            raise ValidationError("Malformed webhook payload") from e
        try:
            event = parse_event(payload)
        except ValidationError:
            WEBHOOK_DELIVERIES_TOTAL.labels(result="rejected").inc()
            raise

        if event.event_type != PAYMENT_SUCCESS_EVENT:
            WEBHOOK_DELIVERIES_TOTAL.labels(result="ignored").inc()
            log_info(logger, f"Webhook {event.event_type or 'without type'} ignored")
            return "ignored"

        if not event.order_id:
            # Redelivery cannot add the missing id
            WEBHOOK_DELIVERIES_TOTAL.labels(result="orphaned").inc()
            log_warning(logger, "Webhook without order_id acknowledged")
            return "orphaned"

        payment = GatewayPaymentStatus(
            order_id=event.order_id,
            payment_status=(event.payment_status or "SUCCESS").upper(),
            gateway_payment_id=event.gateway_payment_id,
            amount=event.amount,
        )
        try:
            result = await self.state_machine.apply_outcome(
                event.order_id, payment, source="webhook", now=now
            )
        except NotFoundError:
            WEBHOOK_DELIVERIES_TOTAL.labels(result="orphaned").inc()
            log_warning(
                logger,
                f"Webhook for unknown order {event.order_id} acknowledged",
                order_id=event.order_id,
            )
            return "orphaned"

        WEBHOOK_DELIVERIES_TOTAL.labels(result="processed").inc()
        log_info(
            logger,
            f"Webhook for order {event.order_id} processed (applied={result.applied})",
            order_id=event.order_id,
            order_status=result.order_status,
        )
        return "processed"
