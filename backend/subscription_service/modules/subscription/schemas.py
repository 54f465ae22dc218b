"""Pydantic schemas for the payments API."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from subscription_service.modules.plans.catalog import PlanCatalog
from subscription_service.modules.subscription.models import Account, PaymentOrder


class SubscriptionSnapshot(BaseModel):
    """The subscription state of one account at a point in time."""

    user_id: uuid.UUID
    plan: str
    plan_name: str
    status: str
    expiry: Optional[datetime] = None
    days_remaining: int = 0
    is_in_trial: bool = False
    is_trial_expired: bool = False
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    usage: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_account(
        cls,
        account: Account,
        catalog: PlanCatalog,
        now: Optional[datetime] = None,
    ) -> "SubscriptionSnapshot":
        now = now or datetime.utcnow()
        return cls(
            user_id=account.id,
            plan=account.plan,
            plan_name=catalog.plan_name(account.plan),
            status=account.plan_status,
            expiry=account.plan_expiry,
            days_remaining=account.days_remaining(now),
            is_in_trial=account.is_in_trial(now),
            is_trial_expired=account.is_trial_expired(now),
            trial_start=account.trial_start,
            trial_end=account.trial_end,
            usage=dict(account.usage or {}),
        )


class SubscriptionDetail(SubscriptionSnapshot):
    price_monthly: int = 0
    price_yearly: int = 0
    features: dict[str, Any] = Field(default_factory=dict)


class PlanResponse(BaseModel):
    id: str
    name: str
    price_monthly: int
    price_yearly: int
    features: dict[str, Any]
    trial_limits: dict[str, Any]
    is_current_plan: bool = False


class PlansListResponse(BaseModel):
    success: bool = True
    plans: list[PlanResponse]
    current_plan: Optional[str] = None
    trial_days_remaining: int = 0


class CreateOrderRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)
    billing_cycle: str = "monthly"


class CreateOrderResponse(BaseModel):
    success: bool = True
    message: str
    order_id: Optional[str] = None
    payment_session_id: Optional[str] = None
    payment_link: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    reused: bool = False
    subscription: Optional[SubscriptionSnapshot] = None


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class VerifyPaymentResponse(BaseModel):
    success: bool
    message: str
    order_id: str
    order_status: str
    subscription: SubscriptionSnapshot


class SubscriptionResponse(BaseModel):
    success: bool = True
    message: str = ""
    subscription: SubscriptionDetail


class CancelResponse(BaseModel):
    success: bool = True
    message: str
    subscription: SubscriptionSnapshot


class PaymentOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    plan: str
    plan_name: str = ""
    billing_cycle: str
    amount: float
    currency: str
    status: str
    gateway_payment_id: Optional[str] = None
    error_code: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: PaymentOrder, catalog: PlanCatalog) -> "PaymentOrderResponse":
        response = cls.model_validate(order)
        response.plan_name = catalog.plan_name(order.plan)
        return response


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: list[PaymentOrderResponse]


class TrialStatusResponse(BaseModel):
    success: bool = True
    is_in_trial: bool
    is_trial_expired: bool
    trial_days_remaining: int
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    plan_status: str
    plan: str


class ExtendTrialRequest(BaseModel):
    user_id: uuid.UUID
    days: int = Field(..., gt=0, le=365)


class ExtendTrialResponse(BaseModel):
    success: bool = True
    message: str
    trial_end: datetime


class WebhookAck(BaseModel):
    success: bool = True
    message: str = "Webhook received"


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    code: Optional[str] = None
