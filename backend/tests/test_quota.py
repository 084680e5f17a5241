"""Subscription quota enforcer tests."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from invoicer.middleware.exceptions import NoSubscription, QuotaExceeded, ResourceNotFoundError
from invoicer.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from invoicer.schemas.client import ClientCreate
from invoicer.services import quota
from invoicer.utils.clock import today


async def _set_usage(session_factory, owner_id, **values):
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Subscription).where(Subscription.owner_id == owner_id).values(**values)
            )


@pytest.mark.integration
@pytest.mark.asyncio
class TestOpenAccount:

    async def test_free_plan_limits(self, ledger, owner_id):
        sub = await ledger.open_account(owner_id)

        assert sub.plan == SubscriptionPlan.FREE
        assert sub.status == SubscriptionStatus.ACTIVE
        assert (sub.invoice_limit, sub.client_limit) == (5, 5)
        assert (sub.invoices_sent, sub.clients_created) == (0, 0)
        assert sub.monthly_price == Decimal("0.00")

    async def test_idempotent(self, ledger, owner_id):
        first = await ledger.open_account(owner_id)
        second = await ledger.open_account(owner_id)
        assert first.id == second.id


@pytest.mark.integration
@pytest.mark.asyncio
class TestReserveQuota:

    async def test_increments_counter(self, ledger, owner_id, account):
        reservation = await ledger.reserve_quota(owner_id, quota.INVOICE)

        assert reservation.used == 1
        assert reservation.limit == 5
        sub = await ledger.get_subscription(owner_id)
        assert sub.invoices_sent == 1
        assert sub.clients_created == 0

    async def test_no_subscription(self, ledger, owner_id):
        with pytest.raises(NoSubscription):
            await ledger.reserve_quota(owner_id, quota.INVOICE)

    async def test_at_limit_is_rejected_and_counter_unchanged(
        self, ledger, session_factory, owner_id, account
    ):
        await _set_usage(session_factory, owner_id, invoices_sent=5)

        with pytest.raises(QuotaExceeded) as exc:
            await ledger.reserve_quota(owner_id, quota.INVOICE)

        assert exc.value.status_code == 403
        assert exc.value.error_code == "QUOTA_EXCEEDED"
        sub = await ledger.get_subscription(owner_id)
        assert sub.invoices_sent == 5

    async def test_create_invoice_at_limit(
        self, ledger, session_factory, owner_id, customer, make_invoice
    ):
        await _set_usage(session_factory, owner_id, invoices_sent=5)

        with pytest.raises(QuotaExceeded):
            await make_invoice()

        sub = await ledger.get_subscription(owner_id)
        assert sub.invoices_sent == 5

    async def test_failed_create_releases_slot(self, ledger, owner_id, customer, sample_items):
        with pytest.raises(ResourceNotFoundError):
            await ledger.create_invoice(
                owner_id=owner_id,
                client_id="no-such-client",
                items=sample_items,
                due_date=today() + timedelta(days=7),
            )

        sub = await ledger.get_subscription(owner_id)
        assert sub.invoices_sent == 0

    async def test_client_quota(self, ledger, owner_id, account):
        for n in range(5):
            await ledger.create_client(owner_id, ClientCreate(name=f"Client {n}"))

        with pytest.raises(QuotaExceeded) as exc:
            await ledger.create_client(owner_id, ClientCreate(name="One too many"))
        assert exc.value.resource == "client"

        sub = await ledger.get_subscription(owner_id)
        assert sub.clients_created == 5

    async def test_unknown_resource(self, db_session, owner_id):
        with pytest.raises(ValueError):
            await quota.reserve_quota(db_session, owner_id, "widgets")

    async def test_subscription_status_does_not_gate(self, ledger, owner_id, account):
        await ledger.cancel_subscription(owner_id)
        reservation = await ledger.reserve_quota(owner_id, quota.CLIENT)
        assert reservation.used == 1


@pytest.mark.integration
@pytest.mark.asyncio
class TestPlanManagement:

    async def test_update_plan_keeps_counters(self, ledger, session_factory, owner_id, account):
        await _set_usage(session_factory, owner_id, invoices_sent=5, clients_created=3)

        sub = await ledger.update_plan(owner_id, SubscriptionPlan.BASIC)

        assert (sub.invoice_limit, sub.client_limit) == (50, 25)
        assert sub.monthly_price == Decimal("9.99")
        assert (sub.invoices_sent, sub.clients_created) == (5, 3)

        reservation = await ledger.reserve_quota(owner_id, quota.INVOICE)
        assert reservation.used == 6

    async def test_update_plan_reactivates(self, ledger, owner_id, account):
        await ledger.cancel_subscription(owner_id)
        sub = await ledger.update_plan(owner_id, "pro")
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.invoice_limit == 200

    async def test_update_plan_without_subscription(self, ledger, owner_id):
        with pytest.raises(NoSubscription):
            await ledger.update_plan(owner_id, SubscriptionPlan.PRO)

    async def test_cancel_and_reactivate(self, ledger, owner_id, account):
        assert (await ledger.cancel_subscription(owner_id)).status == SubscriptionStatus.CANCELLED
        assert (await ledger.reactivate_subscription(owner_id)).status == SubscriptionStatus.ACTIVE

    async def test_check_limits(self, ledger, session_factory, owner_id, account):
        await _set_usage(session_factory, owner_id, invoices_sent=5, clients_created=2)

        limits = await ledger.check_limits(owner_id)

        assert limits["can_create_invoices"] is False
        assert limits["can_create_clients"] is True
        assert limits["remaining_invoices"] == 0
        assert limits["remaining_clients"] == 3

    async def test_reset_usage(self, ledger, session_factory, owner_id, account):
        await _set_usage(session_factory, owner_id, invoices_sent=4, clients_created=4)

        sub = await ledger.reset_usage(owner_id)

        assert (sub.invoices_sent, sub.clients_created) == (0, 0)
        assert sub.current_period_end > sub.current_period_start
