"""API Router for the payments and subscription endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.database import get_session
from subscription_service.modules.auth.jwt import get_current_user, require_admin
from subscription_service.modules.notification.dispatcher import (
    NotificationDispatcher,
    get_dispatcher,
)
from subscription_service.modules.payment_gateway.interface import PaymentGatewayInterface
from subscription_service.modules.payment_gateway.registry import get_gateway
from subscription_service.modules.plans.catalog import PlanCatalog, get_catalog
from subscription_service.modules.subscription.models import Account, OrderStatus
from subscription_service.modules.subscription.orders import OrderService
from subscription_service.modules.subscription.schemas import (
    CancelResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    ExtendTrialRequest,
    ExtendTrialResponse,
    PaymentHistoryResponse,
    PlansListResponse,
    SubscriptionResponse,
    TrialStatusResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAck,
)
from subscription_service.modules.subscription.service import SubscriptionService
from subscription_service.modules.webhook.service import WebhookService

router = APIRouter(prefix="/payments", tags=["payments"])


# ==================== Plans & Subscription ====================

@router.get("/plans", response_model=PlansListResponse)
async def get_plans(
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """List all plans, marking the caller's current one."""
    service = SubscriptionService(session, catalog)
    return await service.list_plans(current_user.id)


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Get the caller's current subscription and usage."""
    service = SubscriptionService(session, catalog)
    return SubscriptionResponse(subscription=await service.get_subscription(current_user.id))


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Cancel the caller's subscription. Access continues until expiry."""
    service = SubscriptionService(session, catalog)
    snapshot = await service.cancel(current_user.id)
    return CancelResponse(
        message="Subscription cancelled. You keep access until it expires.",
        subscription=snapshot,
    )


@router.get("/history", response_model=PaymentHistoryResponse)
async def get_payment_history(
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """List the caller's payment orders, newest first."""
    service = SubscriptionService(session, catalog)
    return PaymentHistoryResponse(payments=await service.payment_history(current_user.id))


# ==================== Trial ====================

@router.get("/trial-status", response_model=TrialStatusResponse)
async def get_trial_status(
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    service = SubscriptionService(session, catalog)
    return await service.trial_status(current_user.id)


@router.post("/extend-trial", response_model=ExtendTrialResponse)
async def extend_trial(
    data: ExtendTrialRequest,
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Extend another account's trial (admin only)."""
    service = SubscriptionService(session, catalog)
    trial_end = await service.extend_trial(data.user_id, data.days)
    return ExtendTrialResponse(
        message=f"Trial extended by {data.days} days",
        trial_end=trial_end,
    )


# ==================== Checkout ====================

@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    data: CreateOrderRequest,
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
    gateway: PaymentGatewayInterface = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Start a plan purchase.

    Paid plans return a gateway payment session for hosted checkout. Free
    plans are activated immediately and return the new subscription.
    """
    service = OrderService(session, catalog, gateway, dispatcher)
    result = await service.create_order(current_user.id, data.plan_id, data.billing_cycle)

    if result.is_free_tier:
        return CreateOrderResponse(
            message="Starter plan activated",
            subscription=result.subscription,
        )
    if result.reused and not result.payment_session_id:
        message = "Order is still being created, retry shortly"
    elif result.reused:
        message = "Existing order returned"
    else:
        message = "Order created"
    return CreateOrderResponse(
        message=message,
        order_id=result.order_id,
        payment_session_id=result.payment_session_id,
        payment_link=result.payment_link,
        amount=result.amount,
        currency=result.currency,
        reused=result.reused,
    )


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    data: VerifyPaymentRequest,
    current_user: Account = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
    gateway: PaymentGatewayInterface = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Check an order with the gateway after the checkout redirect."""
    service = SubscriptionService(session, catalog, gateway, dispatcher)
    result = await service.verify_order(current_user.id, data.order_id)

    if result.order_status == OrderStatus.SUCCESS.value:
        message = "Payment successful. Subscription activated."
    elif result.order_status == OrderStatus.FAILED.value:
        message = "Payment failed"
    else:
        message = "Payment is still pending"

    return VerifyPaymentResponse(
        success=result.order_status == OrderStatus.SUCCESS.value,
        message=message,
        order_id=result.order_id,
        order_status=result.order_status,
        subscription=result.snapshot,
    )


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    catalog: PlanCatalog = Depends(get_catalog),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Receive gateway payment notifications.

    The body is read raw so the signature is checked over the exact bytes
    the gateway signed.
    """
    raw_body = await request.body()
    service = WebhookService(session, catalog, dispatcher)
    await service.handle(
        raw_body,
        timestamp=request.headers.get("x-webhook-timestamp"),
        signature=request.headers.get("x-webhook-signature"),
    )
    return WebhookAck()
