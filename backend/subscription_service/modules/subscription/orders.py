"""Order creation with idempotent local bookkeeping.

A pending order is committed locally before the gateway hears about it, so
every order id the gateway can ever report back (by redirect, webhook or
status poll) already exists here. If the gateway call fails the order is
kept and marked ``failed`` for the audit trail.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.config import settings
from subscription_service.core.logging import log_error, log_info, log_warning
from subscription_service.core.metrics import PAYMENT_ORDERS_CREATED_TOTAL
from subscription_service.core.tracing import create_span
from subscription_service.modules.notification.dispatcher import NotificationDispatcher
from subscription_service.modules.payment_gateway.exceptions import GatewayError
from subscription_service.modules.payment_gateway.interface import (
    CreateOrderDTO,
    CustomerDetails,
    PaymentGatewayInterface,
)
from subscription_service.modules.plans.catalog import PlanCatalog
from subscription_service.modules.subscription.exceptions import (
    NotFoundError,
    OrderCreationError,
    PersistenceError,
)
from subscription_service.modules.subscription.models import (
    Account,
    OrderStatus,
    PaymentOrder,
)
from subscription_service.modules.subscription.repository import AccountRepository
from subscription_service.modules.subscription.schemas import SubscriptionSnapshot
from subscription_service.modules.subscription.state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_PHONE = "9999999999"

OrderIdFactory = Callable[[uuid.UUID, datetime], str]


def generate_order_id(account_id: uuid.UUID, now: datetime) -> str:
    """``order_<account-hex12>_<epoch-ms>_<random-hex6>``."""
    epoch_ms = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"order_{account_id.hex[:12]}_{epoch_ms}_{secrets.token_hex(3)}"


@dataclass
class CreateOrderResult:
    """Either a gateway checkout session or, for free plans, the new state."""
    plan_id: str
    billing_cycle: str
    order_id: Optional[str] = None
    payment_session_id: Optional[str] = None
    payment_link: Optional[str] = None
    amount: float = 0
    currency: str = ""
    reused: bool = False
    subscription: Optional[SubscriptionSnapshot] = None

    @property
    def is_free_tier(self) -> bool:
        return self.order_id is None


class OrderService:
    """Create payment orders for plan purchases."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PlanCatalog,
        gateway: PaymentGatewayInterface,
        dispatcher: Optional[NotificationDispatcher] = None,
        order_id_factory: OrderIdFactory = generate_order_id,
        max_attempts: Optional[int] = None,
        reuse_window: Optional[timedelta] = None,
    ):
        self.repository = AccountRepository(session)
        self.catalog = catalog
        self.gateway = gateway
        self.state_machine = SubscriptionStateMachine(session, catalog, dispatcher)
        self.order_id_factory = order_id_factory
        self.max_attempts = max_attempts or settings.ORDER_ID_MAX_ATTEMPTS
        self.reuse_window = (
            reuse_window
            if reuse_window is not None
            else timedelta(minutes=settings.ORDER_REUSE_WINDOW_MINUTES)
        )

    async def create_order(
        self,
        account_id: uuid.UUID,
        plan_id: str,
        billing_cycle: str,
        now: Optional[datetime] = None,
    ) -> CreateOrderResult:
        """Start a purchase of ``plan_id`` for ``billing_cycle``.

        Free plans are activated directly. Paid plans get a pending local
        order, then a gateway checkout session.

        Raises:
            ValidationError: Unknown plan or billing cycle
            NotFoundError: Unknown account
            OrderCreationError: No unused order id within the attempt budget
            GatewayError: The gateway refused or timed out; the order is failed
            PersistenceError: The database failed
        """
        now = now or datetime.utcnow()
        plan = self.catalog.get(plan_id)
        cycle = self.catalog.parse_cycle(billing_cycle)

        if plan.is_free:
            snapshot = await self.state_machine.grant_free_tier(account_id, plan.id, now=now)
            return CreateOrderResult(
                plan_id=plan.id,
                billing_cycle=cycle.value,
                subscription=snapshot,
            )

        account = await self.repository.find_user_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found")

        customer = CustomerDetails(
            customer_id=account.id.hex,
            name=account.name or account.email.split("@")[0],
            email=account.email,
            phone=account.phone or DEFAULT_CUSTOMER_PHONE,
        )
        known_ids = {o.order_id for o in account.orders}
        amount = plan.price_for(cycle)
        order, reused = await self._persist_pending_order(
            account_id, known_ids, plan.id, cycle.value, amount, now
        )
        if reused:
            log_info(
                logger,
                f"Reusing pending order {order.order_id}",
                order_id=order.order_id,
                account_id=str(account_id),
            )
            return self._result(order, reused=True)
        order_id = order.order_id
        currency = order.currency

        dto = CreateOrderDTO(
            order_id=order_id,
            amount=amount,
            currency=currency,
            customer=customer,
            return_url=f"{settings.FRONTEND_URL}/payment/success?order_id={order_id}",
            notify_url=settings.webhook_url,
            note=f"Subscription for {plan.name} plan",
        )

        try:
            with create_span("orders.gateway_create", {"order_id": order_id}):
                gateway_order = await self.gateway.create_order(dto)
        except GatewayError as e:
            log_error(
                logger,
                f"Gateway rejected order {order_id}: {e.code}",
                exception=e,
                order_id=order_id,
                gateway_code=e.code,
            )
            await self._mark_failed(account_id, order_id, e, now)
            raise

        def attach_session(acc: Account) -> bool:
            stored = acc.get_order(order_id)
            if stored is None:
                return False
            stored.payment_session_id = gateway_order.payment_session_id
            stored.payment_link = gateway_order.payment_link
            return True

        account, _ = await self.repository.modify(
            lambda: self.repository.find_user_by_id(account_id),
            attach_session,
            now=now,
        )
        PAYMENT_ORDERS_CREATED_TOTAL.labels(plan=plan.id, billing_cycle=cycle.value).inc()
        log_info(
            logger,
            f"Order {order_id} created for {plan.id}/{cycle.value}",
            order_id=order_id,
            account_id=str(account_id),
            amount=amount,
        )
        return self._result(account.get_order(order_id))

    def _find_reusable(
        self,
        account: Account,
        plan_id: str,
        billing_cycle: str,
        now: datetime,
    ) -> Optional[PaymentOrder]:
        if self.reuse_window <= timedelta(0):
            return None
        for order in reversed(account.orders):
            if (
                order.is_pending
                and order.plan == plan_id
                and order.billing_cycle == billing_cycle
                and now - order.created_at <= self.reuse_window
            ):
                return order
        return None

    async def _persist_pending_order(
        self,
        account_id: uuid.UUID,
        known_ids: set[str],
        plan_id: str,
        billing_cycle: str,
        amount: float,
        now: datetime,
    ) -> tuple[PaymentOrder, bool]:
        """Commit a new pending order under a fresh, unused id.

        The same-purchase check runs on the account being written. Of two
        concurrent purchases, the one that loses the version check reloads,
        finds the other's order and returns it with ``True`` instead of
        adding a second one. That order may not have a checkout session yet.
        """
        for attempt in range(1, self.max_attempts + 1):
            order_id = self.order_id_factory(account_id, now)
            if order_id in known_ids or await self.repository.order_id_exists(order_id):
                log_warning(
                    logger,
                    f"Order id collision on attempt {attempt}: {order_id}",
                    order_id=order_id,
                    attempt=attempt,
                )
                known_ids.add(order_id)
                continue

            created: dict[str, PaymentOrder] = {}

            def add_order(acc: Account) -> bool:
                existing = self._find_reusable(acc, plan_id, billing_cycle, now)
                if existing is not None:
                    created["reused"] = existing
                    return False
                order = PaymentOrder(
                    order_id=order_id,
                    account_id=acc.id,
                    plan=plan_id,
                    billing_cycle=billing_cycle,
                    amount=amount,
                    currency=settings.BILLING_CURRENCY,
                    status=OrderStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
                acc.orders.append(order)
                created["order"] = order
                return True

            try:
                await self.repository.modify(
                    lambda: self.repository.find_user_by_id(account_id),
                    add_order,
                    now=now,
                )
            except PersistenceError as e:
                if e.code != "integrity_error":
                    raise
                # Another writer took the id between the check and the insert
                log_warning(
                    logger,
                    f"Order id taken concurrently on attempt {attempt}: {order_id}",
                    order_id=order_id,
                    attempt=attempt,
                )
                known_ids.add(order_id)
                continue
            if "reused" in created:
                return created["reused"], True
            return created["order"], False

        raise OrderCreationError(
            f"Could not generate a unique order id after {self.max_attempts} attempts"
        )

    async def _mark_failed(
        self,
        account_id: uuid.UUID,
        order_id: str,
        error: GatewayError,
        now: datetime,
    ) -> None:
        def fail(acc: Account) -> bool:
            stored = acc.get_order(order_id)
            if stored is None or not stored.is_pending:
                return False
            stored.status = OrderStatus.FAILED.value
            stored.error_code = error.code
            stored.error_message = error.message
            stored.updated_at = now
            return True

        try:
            await self.repository.modify(
                lambda: self.repository.find_user_by_id(account_id),
                fail,
                now=now,
            )
        except PersistenceError as e:
            # The order stays pending; the reconciliation sweep re-checks it
            log_error(
                logger,
                f"Could not mark order {order_id} as failed",
                exception=e,
                order_id=order_id,
            )

    @staticmethod
    def _result(order: PaymentOrder, reused: bool = False) -> CreateOrderResult:
        return CreateOrderResult(
            plan_id=order.plan,
            billing_cycle=order.billing_cycle,
            order_id=order.order_id,
            payment_session_id=order.payment_session_id,
            payment_link=order.payment_link,
            amount=order.amount,
            currency=order.currency,
            reused=reused,
        )
