"""Process-wide gateway instance used by the API and the Celery tasks."""

from typing import Optional

from subscription_service.modules.payment_gateway.gateways.cashfree import CashfreeGateway
from subscription_service.modules.payment_gateway.interface import PaymentGatewayInterface

_gateway: Optional[PaymentGatewayInterface] = None


def get_gateway() -> PaymentGatewayInterface:
    """FastAPI dependency returning the configured gateway."""
    global _gateway
    if _gateway is None:
        _gateway = CashfreeGateway.from_settings()
    return _gateway


async def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
