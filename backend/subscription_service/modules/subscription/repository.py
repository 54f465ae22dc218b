"""Repository for account and payment order persistence."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from subscription_service.core.config import settings
from subscription_service.core.logging import log_warning
from subscription_service.modules.subscription.exceptions import (
    ConcurrentUpdateError,
    NotFoundError,
    PersistenceError,
)
from subscription_service.modules.subscription.models import (
    Account,
    OrderStatus,
    PaymentOrder,
    SubscriptionStatus,
    empty_usage,
)

logger = logging.getLogger(__name__)


class AccountRepository:
    """Load and store account documents (the account row plus its orders)."""

    def __init__(self, session: AsyncSession, timeout: Optional[float] = None):
        self.session = session
        self.timeout = settings.DB_OPERATION_TIMEOUT_SECONDS if timeout is None else timeout

    async def _run(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self.session.rollback()
            raise PersistenceError("Database operation timed out", code="timeout") from e

    async def _scalars(self, stmt) -> list[Account]:
        try:
            result = await self._run(
                self.session.execute(stmt.execution_options(populate_existing=True))
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed: {e}") from e
        return list(result.scalars().unique().all())

    async def create_account(
        self,
        email: str,
        name: str = "",
        phone: Optional[str] = None,
        role: str = "user",
        trial_days: Optional[int] = None,
        default_plan: str = "starter",
        now: Optional[datetime] = None,
    ) -> Account:
        """Create an account on a fresh free trial."""
        now = now or datetime.utcnow()
        trial_days = settings.TRIAL_DURATION_DAYS if trial_days is None else trial_days
        account = Account(
            id=uuid.uuid4(),
            email=email,
            name=name,
            phone=phone,
            role=role,
            plan=default_plan,
            plan_status=SubscriptionStatus.TRIALING.value,
            trial_start=now,
            trial_end=now + timedelta(days=trial_days),
            usage=empty_usage(),
            expiry_reminders=[],
            orders=[],
            created_at=now,
            updated_at=now,
        )
        self.session.add(account)
        await self.save(account, now=now)
        return account

    async def find_user_by_id(self, account_id: uuid.UUID) -> Optional[Account]:
        accounts = await self._scalars(select(Account).where(Account.id == account_id))
        return accounts[0] if accounts else None

    async def find_user_by_order_id(self, order_id: str) -> Optional[Account]:
        accounts = await self._scalars(
            select(Account)
            .join(PaymentOrder, PaymentOrder.account_id == Account.id)
            .where(PaymentOrder.order_id == order_id)
        )
        return accounts[0] if accounts else None

    async def order_id_exists(self, order_id: str) -> bool:
        try:
            result = await self._run(
                self.session.execute(
                    select(PaymentOrder.id).where(PaymentOrder.order_id == order_id)
                )
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed: {e}") from e
        return result.first() is not None

    async def find_users_with_expiry_in_range(
        self,
        start: datetime,
        end: datetime,
        statuses: Iterable[str] = (SubscriptionStatus.ACTIVE.value,),
        exclude_plans: Iterable[str] = (),
    ) -> list[Account]:
        """Accounts whose plan expiry falls in ``[start, end]``."""
        conditions = [
            Account.plan_status.in_(list(statuses)),
            Account.plan_expiry.is_not(None),
            Account.plan_expiry >= start,
            Account.plan_expiry <= end,
        ]
        excluded = list(exclude_plans)
        if excluded:
            conditions.append(Account.plan.not_in(excluded))
        return await self._scalars(
            select(Account).where(and_(*conditions)).order_by(Account.plan_expiry)
        )

    async def find_users_expired_before(
        self,
        now: datetime,
        statuses: Iterable[str],
        exclude_plans: Iterable[str] = (),
    ) -> list[Account]:
        """Accounts whose plan expiry is strictly before ``now``."""
        conditions = [
            Account.plan_status.in_(list(statuses)),
            Account.plan_expiry.is_not(None),
            Account.plan_expiry < now,
        ]
        excluded = list(exclude_plans)
        if excluded:
            conditions.append(Account.plan.not_in(excluded))
        return await self._scalars(select(Account).where(and_(*conditions)))

    async def find_trials_ended_before(self, now: datetime) -> list[Account]:
        return await self._scalars(
            select(Account).where(
                Account.plan_status == SubscriptionStatus.TRIALING.value,
                Account.trial_end.is_not(None),
                Account.trial_end < now,
            )
        )

    async def find_users_with_pending_orders(
        self,
        created_before: datetime,
        created_after: datetime,
    ) -> list[tuple[uuid.UUID, str]]:
        """(account id, order id) pairs of pending orders created in the window."""
        try:
            result = await self._run(
                self.session.execute(
                    select(PaymentOrder.account_id, PaymentOrder.order_id)
                    .where(
                        PaymentOrder.status == OrderStatus.PENDING.value,
                        PaymentOrder.created_at < created_before,
                        PaymentOrder.created_at > created_after,
                    )
                    .order_by(PaymentOrder.created_at)
                )
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database read failed: {e}") from e
        return [(row.account_id, row.order_id) for row in result.all()]

    async def iter_account_ids(self, batch_size: int = 500) -> AsyncIterator[uuid.UUID]:
        """Yield every account id in stable batches."""
        last_id: Optional[uuid.UUID] = None
        while True:
            stmt = select(Account.id).order_by(Account.id).limit(batch_size)
            if last_id is not None:
                stmt = stmt.where(Account.id > last_id)
            try:
                result = await self._run(self.session.execute(stmt))
            except SQLAlchemyError as e:
                raise PersistenceError(f"Database read failed: {e}") from e
            ids = list(result.scalars().all())
            if not ids:
                return
            for account_id in ids:
                yield account_id
            last_id = ids[-1]

    async def save(self, account: Account, now: Optional[datetime] = None) -> Account:
        """Commit the account document atomically.

        The account row is always touched so its version is checked and
        bumped even when only an order changed.

        Raises:
            ConcurrentUpdateError: If another writer committed first
            PersistenceError: On any other database failure or timeout
        """
        account_id = account.id
        account.updated_at = now or datetime.utcnow()
        flag_modified(account, "updated_at")
        self.session.add(account)
        try:
            await self._run(self.session.commit())
        except StaleDataError as e:
            await self.session.rollback()
            raise ConcurrentUpdateError(
                f"Account {account_id} was modified concurrently"
            ) from e
        except IntegrityError as e:
            await self.session.rollback()
            raise PersistenceError(f"Constraint violated: {e.orig}", code="integrity_error") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Database write failed: {e}") from e
        return account

    async def rollback(self) -> None:
        await self.session.rollback()

    async def modify(
        self,
        load: Callable[[], Awaitable[Optional[Account]]],
        mutate: Callable[[Account], bool],
        now: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> tuple[Account, bool]:
        """Read-modify-write an account, retrying on concurrent updates.

        ``mutate`` inspects the freshly loaded account, applies its change
        and returns True, or returns False to leave the account untouched.
        Each retry reloads the account, so ``mutate`` always decides on the
        latest committed state.

        Returns:
            The account and whether it was changed

        Raises:
            NotFoundError: If ``load`` finds nothing
            ConcurrentUpdateError: If every attempt lost the race
        """
        attempts = max_retries or settings.STATE_TRANSITION_MAX_RETRIES
        for attempt in range(1, attempts + 1):
            account = await load()
            if account is None:
                raise NotFoundError("Account not found")
            account_id = account.id
            if not mutate(account):
                return account, False
            try:
                await self.save(account, now=now)
            except ConcurrentUpdateError:
                log_warning(
                    logger,
                    f"Concurrent update on account {account_id}, attempt {attempt}/{attempts}",
                    account_id=str(account_id),
                    attempt=attempt,
                )
                if attempt == attempts:
                    raise
                continue
            return account, True
        raise ConcurrentUpdateError("Retries exhausted")
