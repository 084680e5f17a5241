"""Subscription quota enforcer.

Usage counters live on the subscription row and are bumped with a single
conditional UPDATE:

    UPDATE subscriptions
       SET invoices_sent = invoices_sent + 1
     WHERE owner_id = :owner AND invoices_sent < invoice_limit

The row lock the UPDATE takes serialises concurrent reservations, so two
requests can never both take the last slot.  A reservation commits or
rolls back with the caller's transaction; counters are never decremented
when an invoice or client is later deleted.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from invoicer.middleware.exceptions import NoSubscription, QuotaExceeded, ResourceNotFoundError
from invoicer.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from invoicer.utils.clock import utcnow

logger = logging.getLogger(__name__)

BILLING_PERIOD = timedelta(days=30)


@dataclass(frozen=True)
class PlanLimits:
    invoice_limit: int
    client_limit: int
    monthly_price: Decimal


PLAN_LIMITS: dict[SubscriptionPlan, PlanLimits] = {
    SubscriptionPlan.FREE: PlanLimits(5, 5, Decimal("0.00")),
    SubscriptionPlan.BASIC: PlanLimits(50, 25, Decimal("9.99")),
    SubscriptionPlan.PRO: PlanLimits(200, 100, Decimal("29.99")),
    SubscriptionPlan.ENTERPRISE: PlanLimits(999999, 999999, Decimal("99.99")),
}

INVOICE = "invoice"
CLIENT = "client"

# resource → (counter column, limit column)
_COUNTERS = {
    INVOICE: (Subscription.invoices_sent, Subscription.invoice_limit),
    CLIENT: (Subscription.clients_created, Subscription.client_limit),
}


@dataclass(frozen=True)
class Reservation:
    """One slot taken from an owner's quota."""
    owner_id: str
    resource: str
    used: int
    limit: int


def _columns(resource: str):
    try:
        return _COUNTERS[resource]
    except KeyError:
        raise ValueError(f"Unknown quota resource: {resource!r}") from None


async def _load(db: AsyncSession, owner_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def _load_or_raise(db: AsyncSession, owner_id: str) -> Subscription:
    sub = await _load(db, owner_id)
    if sub is None:
        raise ResourceNotFoundError("Subscription", owner_id)
    return sub


# ── Reservation ────────────────────────────────────────────────


async def reserve_quota(db: AsyncSession, owner_id: str, resource: str) -> Reservation:
    """Take one unit of `resource` ("invoice" or "client") from the owner's quota.

    Must run inside the transaction that creates the resource, so that a
    failed create releases the slot on rollback.

    Raises:
        NoSubscription: the account has no subscription row
        QuotaExceeded: counter already at the plan limit (left unchanged)
    """
    counter, limit = _columns(resource)

    result = await db.execute(
        update(Subscription)
        .where(Subscription.owner_id == owner_id, counter < limit)
        .values({counter: counter + 1, Subscription.updated_at: utcnow()})
        .execution_options(synchronize_session=False)
    )

    row = (
        await db.execute(
            select(counter, limit, Subscription.plan).where(
                Subscription.owner_id == owner_id
            )
        )
    ).one_or_none()

    if row is None:
        raise NoSubscription(owner_id)

    used, cap, plan = row
    if result.rowcount == 0:
        logger.warning(
            f"Quota exceeded for {owner_id}: {resource} {used}/{cap} on plan '{plan.value}'"
        )
        raise QuotaExceeded(resource, cap, plan.value)

    logger.info(f"Reserved {resource} for {owner_id}: {used}/{cap}")
    return Reservation(owner_id=owner_id, resource=resource, used=used, limit=cap)


# ── Account / plan management ──────────────────────────────────


async def open_account(db: AsyncSession, owner_id: str) -> Subscription:
    """Create the free-tier subscription for a new account (idempotent)."""
    existing = await _load(db, owner_id)
    if existing is not None:
        return existing

    limits = PLAN_LIMITS[SubscriptionPlan.FREE]
    now = utcnow()
    sub = Subscription(
        owner_id=owner_id,
        plan=SubscriptionPlan.FREE,
        status=SubscriptionStatus.ACTIVE,
        monthly_price=limits.monthly_price,
        invoice_limit=limits.invoice_limit,
        client_limit=limits.client_limit,
        invoices_sent=0,
        clients_created=0,
        current_period_start=now,
        current_period_end=now + BILLING_PERIOD,
    )
    db.add(sub)
    await db.flush()
    logger.info(f"Opened account {owner_id} on the free plan")
    return sub


async def get_subscription(db: AsyncSession, owner_id: str) -> Subscription:
    return await _load_or_raise(db, owner_id)


async def update_plan(db: AsyncSession, owner_id: str, plan) -> Subscription:
    """Switch plan: rewrite limits and price, reactivate.  Counters are kept."""
    plan = SubscriptionPlan(plan)
    sub = await _load(db, owner_id)
    if sub is None:
        raise NoSubscription(owner_id)

    limits = PLAN_LIMITS[plan]
    old_plan = sub.plan
    sub.plan = plan
    sub.invoice_limit = limits.invoice_limit
    sub.client_limit = limits.client_limit
    sub.monthly_price = limits.monthly_price
    sub.status = SubscriptionStatus.ACTIVE
    await db.flush()

    logger.info(f"Plan change for {owner_id}: {old_plan.value} → {plan.value}")
    return sub


async def check_limits(db: AsyncSession, owner_id: str) -> dict:
    sub = await _load_or_raise(db, owner_id)
    return {
        "plan": sub.plan,
        "status": sub.status,
        "can_create_invoices": sub.invoices_sent < sub.invoice_limit,
        "can_create_clients": sub.clients_created < sub.client_limit,
        "remaining_invoices": max(0, sub.invoice_limit - sub.invoices_sent),
        "remaining_clients": max(0, sub.client_limit - sub.clients_created),
    }


async def set_status(db: AsyncSession, owner_id: str, status: SubscriptionStatus) -> Subscription:
    sub = await _load_or_raise(db, owner_id)
    sub.status = status
    await db.flush()
    logger.info(f"Subscription {owner_id} is now {status.value}")
    return sub


async def reset_usage(db: AsyncSession, owner_id: str) -> Subscription:
    """Zero both counters and start a new billing period.

    Called by the billing job at period rollover, never by the ledger.
    """
    sub = await _load_or_raise(db, owner_id)
    now = utcnow()
    await db.execute(
        update(Subscription)
        .where(Subscription.id == sub.id)
        .values(
            invoices_sent=0,
            clients_created=0,
            current_period_start=now,
            current_period_end=now + BILLING_PERIOD,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(sub)
    logger.info(f"Usage reset for {owner_id}")
    return sub
