"""Payment Gateway Interface - abstract base class for gateway implementations.

Defines the contract the order and reconciliation services rely on: register
an order for hosted checkout, and ask for the payment status of an order.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class PaymentOutcome(str, Enum):
    """Normalized result of a payment attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


# Provider payment statuses that end an order unsuccessfully. Anything not
# listed here and not SUCCESS means the customer may still pay.
TERMINAL_FAILURE_STATUSES = frozenset({"FAILED", "USER_DROPPED", "CANCELLED", "VOID"})


def outcome_from_status(payment_status: Optional[str]) -> PaymentOutcome:
    """Map a provider ``payment_status`` string to a PaymentOutcome."""
    normalized = (payment_status or "").upper()
    if normalized == "SUCCESS":
        return PaymentOutcome.SUCCESS
    if normalized in TERMINAL_FAILURE_STATUSES:
        return PaymentOutcome.FAILED
    return PaymentOutcome.PENDING


@dataclass
class CustomerDetails:
    customer_id: str
    name: str
    email: str
    phone: str


@dataclass
class CreateOrderDTO:
    """Data transfer object for registering an order with the gateway."""
    order_id: str
    amount: float
    currency: str
    customer: CustomerDetails
    return_url: str
    notify_url: str
    note: str = ""
    payment_methods: list[str] = field(
        default_factory=lambda: ["cc", "dc", "nb", "upi", "wallet"]
    )


@dataclass
class GatewayOrder:
    """Result from order registration."""
    order_id: str
    payment_session_id: str
    gateway_order_id: Optional[str] = None
    payment_link: Optional[str] = None
    order_status: Optional[str] = None
    gateway_response: Optional[dict] = None


@dataclass
class GatewayPaymentStatus:
    """Payment status of an order as reported by the gateway."""
    order_id: str
    payment_status: str
    gateway_payment_id: Optional[str] = None
    amount: Optional[float] = None
    paid_at: Optional[datetime] = None
    gateway_response: Optional[dict] = None

    @property
    def outcome(self) -> PaymentOutcome:
        return outcome_from_status(self.payment_status)


class PaymentGatewayInterface(ABC):
    """Abstract interface for hosted-checkout payment gateways.

    Implementations raise ``GatewayError`` for every failure, including
    timeouts, instead of returning failure DTOs.
    """

    provider: str = ""

    @abstractmethod
    async def create_order(self, data: CreateOrderDTO) -> GatewayOrder:
        """Register an order for hosted checkout.

        Args:
            data: Order, customer and redirect details

        Returns:
            GatewayOrder with the payment session to hand to the client
        """

    @abstractmethod
    async def fetch_payment_status(self, order_id: str) -> GatewayPaymentStatus:
        """Return the current payment status of an order.

        Args:
            order_id: Merchant order id used at creation

        Returns:
            GatewayPaymentStatus for the most relevant payment attempt
        """

    async def aclose(self) -> None:
        """Release network resources held by the gateway."""
