"""Subscription — one per account; holds plan limits and usage counters.

invoices_sent / clients_created only ever go up inside a billing period
and are the sole gate on creating invoices and clients.  They are
incremented with a conditional UPDATE (see services.quota), never by
read-modify-write in Python.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint, DateTime, Enum as SAEnum, Integer, Numeric, String,
)
from sqlalchemy.orm import Mapped, mapped_column

from invoicer.database import Base
from invoicer.utils.clock import utcnow


class SubscriptionPlan(str, enum.Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("invoices_sent >= 0", name="ck_subscriptions_invoices_nonneg"),
        CheckConstraint("clients_created >= 0", name="ck_subscriptions_clients_nonneg"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, index=True
    )

    # ── Plan ─────────────────────────────────────────────────
    plan: Mapped[SubscriptionPlan] = mapped_column(
        SAEnum(
            SubscriptionPlan,
            name="subscription_plan",
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=SubscriptionPlan.FREE,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SAEnum(
            SubscriptionStatus,
            name="subscription_status",
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=SubscriptionStatus.ACTIVE,
    )
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))

    # ── Limits / usage ───────────────────────────────────────
    invoice_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    client_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    invoices_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clients_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # ── Billing period ───────────────────────────────────────
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self):
        return (
            f"<Subscription(owner_id={self.owner_id}, plan='{self.plan.value}', "
            f"invoices={self.invoices_sent}/{self.invoice_limit}, "
            f"clients={self.clients_created}/{self.client_limit})>"
        )
