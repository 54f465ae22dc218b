"""Cashfree payment gateway implementation.

Uses the Cashfree PG REST API: ``POST /orders`` to create a hosted checkout
session and ``GET /orders/{order_id}/payments`` to read payment attempts.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from subscription_service.core.config import settings
from subscription_service.core.metrics import GATEWAY_REQUEST_DURATION_SECONDS
from subscription_service.core.tracing import create_span
from subscription_service.modules.payment_gateway.exceptions import GatewayError
from subscription_service.modules.payment_gateway.interface import (
    CreateOrderDTO,
    GatewayOrder,
    GatewayPaymentStatus,
    PaymentGatewayInterface,
)

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class CashfreeGateway(PaymentGatewayInterface):
    """Cashfree hosted checkout gateway for India.

    Supports cards, net banking, UPI and wallets.
    """

    provider = "cashfree"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        api_version: str = "2023-08-01",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={
                "x-client-id": client_id,
                "x-client-secret": client_secret,
                "x-api-version": api_version,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_settings(cls) -> "CashfreeGateway":
        return cls(
            client_id=settings.CASHFREE_CLIENT_ID,
            client_secret=settings.CASHFREE_CLIENT_SECRET,
            base_url=settings.cashfree_base_url,
            api_version=settings.CASHFREE_API_VERSION,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _make_request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
    ) -> Any:
        """Make an authenticated request to the Cashfree API.

        Raises:
            GatewayError: On timeouts, transport failures and non-2xx responses
        """
        start = time.perf_counter()
        try:
            response = await self._client.request(method, endpoint, json=data)
        except httpx.TimeoutException as e:
            raise GatewayError("timeout", f"Cashfree {operation} timed out", retriable=True) from e
        except httpx.TransportError as e:
            raise GatewayError("network_error", str(e), retriable=True) from e
        finally:
            GATEWAY_REQUEST_DURATION_SECONDS.labels(operation=operation).observe(
                time.perf_counter() - start
            )

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise GatewayError(
                code=body.get("code") or f"http_{response.status_code}",
                message=body.get("message") or response.text or response.reason_phrase,
                status_code=response.status_code,
                retriable=response.status_code >= 500 or response.status_code == 429,
            )

        return response.json() if response.content else {}

    async def create_order(self, data: CreateOrderDTO) -> GatewayOrder:
        """Create a Cashfree order and return its payment session."""
        payload = {
            "order_id": data.order_id,
            "order_amount": data.amount,
            "order_currency": data.currency.upper(),
            "customer_details": {
                "customer_id": data.customer.customer_id,
                "customer_name": data.customer.name,
                "customer_email": data.customer.email,
                "customer_phone": data.customer.phone,
            },
            "order_meta": {
                "return_url": data.return_url,
                "notify_url": data.notify_url,
                "payment_methods": ",".join(data.payment_methods),
            },
            "order_note": data.note,
        }

        with create_span("cashfree.create_order", {"order_id": data.order_id}):
            response = await self._make_request("create_order", "POST", "/orders", payload)

        session_id = response.get("payment_session_id")
        if not session_id:
            raise GatewayError(
                "invalid_response",
                "Cashfree order response has no payment_session_id",
            )

        logger.info(
            f"Cashfree order created: {data.order_id}",
            extra={"order_id": data.order_id, "cf_order_id": response.get("cf_order_id")},
        )
        return GatewayOrder(
            order_id=response.get("order_id", data.order_id),
            payment_session_id=session_id,
            gateway_order_id=str(response["cf_order_id"]) if response.get("cf_order_id") else None,
            payment_link=response.get("payment_link"),
            order_status=response.get("order_status"),
            gateway_response=response,
        )

    async def fetch_payment_status(self, order_id: str) -> GatewayPaymentStatus:
        """Fetch payment attempts for an order.

        A successful attempt wins over any failed ones. Otherwise the most
        recent attempt is reported. An order with no attempts is reported as
        ``NOT_ATTEMPTED``.
        """
        with create_span("cashfree.fetch_payment_status", {"order_id": order_id}):
            payments = await self._make_request(
                "fetch_payment_status", "GET", f"/orders/{order_id}/payments"
            )

        if not isinstance(payments, list) or not payments:
            return GatewayPaymentStatus(order_id=order_id, payment_status="NOT_ATTEMPTED")

        chosen = next(
            (p for p in payments if str(p.get("payment_status", "")).upper() == "SUCCESS"),
            None,
        )
        if chosen is None:
            chosen = max(
                payments,
                key=lambda p: p.get("payment_time") or "",
            )

        return GatewayPaymentStatus(
            order_id=order_id,
            payment_status=str(chosen.get("payment_status", "")).upper(),
            gateway_payment_id=str(chosen["cf_payment_id"]) if chosen.get("cf_payment_id") else None,
            amount=chosen.get("payment_amount"),
            paid_at=_parse_timestamp(
                chosen.get("payment_completion_time") or chosen.get("payment_time")
            ),
            gateway_response=chosen,
        )
