"""Payment gateway implementations."""

from subscription_service.modules.payment_gateway.gateways.cashfree import CashfreeGateway

__all__ = ["CashfreeGateway"]
