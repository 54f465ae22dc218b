"""Account and payment order models.

An account row and its orders form one document: every change to an order
goes through ``AccountRepository.save`` which bumps the account version, so
concurrent writers of the same account are detected at commit.
"""

import math
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subscription_service.core.database import Base


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    TRIALING = "trialing"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OrderStatus(str, Enum):
    """Payment order status values. Only PENDING may change."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


# Usage counter -> the plan limit it is checked against
USAGE_COUNTERS = {
    "emails_sent": "emails_per_month",
    "whatsapp_sent": "whatsapp_messages",
    "scraper_runs": "scraper_runs",
    "email_validations": "email_validations",
}


def empty_usage() -> dict:
    return {counter: 0 for counter in USAGE_COUNTERS}


def days_until(moment: Optional[datetime], now: datetime) -> int:
    """Whole days from ``now`` until ``moment``, rounded up, never negative."""
    if moment is None:
        return 0
    seconds = (moment - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


class Account(Base):
    """A customer account holding exactly one subscription."""

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.USER.value)

    # Subscription
    plan: Mapped[str] = mapped_column(String(50), nullable=False, default="starter", index=True)
    plan_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.TRIALING.value, index=True
    )
    plan_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    trial_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Usage for the current period
    usage: Mapped[dict] = mapped_column(JSON, nullable=False, default=empty_usage)
    usage_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # "<expiry-iso>:<days>" keys of expiry warnings already sent
    expiry_reminders: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    orders: Mapped[list["PaymentOrder"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PaymentOrder.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, plan={self.plan}, status={self.plan_status})>"

    def get_order(self, order_id: str) -> Optional["PaymentOrder"]:
        for order in self.orders:
            if order.order_id == order_id:
                return order
        return None

    def pending_orders(self) -> list["PaymentOrder"]:
        return [o for o in self.orders if o.status == OrderStatus.PENDING.value]

    def is_in_trial(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return (
            self.plan_status == SubscriptionStatus.TRIALING.value
            and self.trial_end is not None
            and now < self.trial_end
        )

    def is_trial_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.trial_end is not None and now >= self.trial_end and self.plan_status in (
            SubscriptionStatus.TRIALING.value,
            SubscriptionStatus.EXPIRED.value,
        )

    def trial_days_remaining(self, now: Optional[datetime] = None) -> int:
        if self.plan_status != SubscriptionStatus.TRIALING.value:
            return 0
        return days_until(self.trial_end, now or datetime.utcnow())

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        return days_until(self.plan_expiry, now or datetime.utcnow())

    def reminder_key(self, days: int) -> str:
        expiry = self.plan_expiry.isoformat() if self.plan_expiry else "none"
        return f"{expiry}:{days}"

    def has_reminder(self, days: int) -> bool:
        return self.reminder_key(days) in (self.expiry_reminders or [])

    def add_reminder(self, days: int) -> None:
        # Reassign so the JSON column is flagged dirty
        self.expiry_reminders = [*(self.expiry_reminders or []), self.reminder_key(days)]


class PaymentOrder(Base):
    """One checkout attempt for a plan purchase."""

    __tablename__ = "payment_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    plan: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )

    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_session_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    account: Mapped[Account] = relationship(back_populates="orders")

    __table_args__ = (
        Index("ix_payment_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PaymentOrder(order_id={self.order_id}, status={self.status})>"

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING.value
