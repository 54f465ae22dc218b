"""Payment gateway module."""

from subscription_service.modules.payment_gateway.exceptions import GatewayError
from subscription_service.modules.payment_gateway.interface import (
    CreateOrderDTO,
    CustomerDetails,
    GatewayOrder,
    GatewayPaymentStatus,
    PaymentGatewayInterface,
    PaymentOutcome,
    outcome_from_status,
)

__all__ = [
    "CreateOrderDTO",
    "CustomerDetails",
    "GatewayError",
    "GatewayOrder",
    "GatewayPaymentStatus",
    "PaymentGatewayInterface",
    "PaymentOutcome",
    "outcome_from_status",
]
