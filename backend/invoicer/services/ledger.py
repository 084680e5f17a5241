"""Ledger service: the single entry point for invoice, payment and quota work.

Every mutating operation is one read-validate-write unit run in its own
transaction.  The invoice row is read FOR UPDATE (PostgreSQL) and carries
an optimistic version counter, so a writer that raced another one fails
with StaleDataError, a lock timeout or a serialization failure.  The
whole unit is then rolled back and re-run with exponential backoff; after
settings.max_retries attempts the caller gets Contention.

Payment writes lock the owning invoice first and the payment row second;
payments carry their own version counter, so a payment settled or deleted
by a concurrent writer is re-read on retry rather than overwritten.

Reads open a plain session and take no locks.
"""

import asyncio
import logging
import random
from datetime import date
from decimal import Decimal
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from invoicer.config import settings
from invoicer.database import apply_lock_timeout, get_session_factory
from invoicer.middleware.exceptions import (
    Contention,
    InvoiceImmutable,
    ResourceNotFoundError,
    TotalBelowAmountPaid,
)
from invoicer.models.client import Client
from invoicer.models.invoice import OVERDUE, Invoice, InvoiceLineItem, InvoiceStatus
from invoicer.models.payment import Payment, PaymentMethod, PaymentStatus
from invoicer.models.subscription import Subscription, SubscriptionStatus
from invoicer.schemas.client import ClientCreate
from invoicer.services import clients as client_service
from invoicer.services import payments as payment_engine
from invoicer.services import quota
from invoicer.services.status import mark_viewed as view_transition
from invoicer.services.status import parse_status, transition
from invoicer.services.totals import ZERO, Totals, calculate_totals, to_money
from invoicer.utils.clock import today
from invoicer.utils.locks import get_invoice_locks
from invoicer.utils.numbering import generate_invoice_number

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL: serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
RETRYABLE_MESSAGES = ("database is locked", "lock timeout", "could not obtain lock")

INVOICE_SCALAR_FIELDS = ("issue_date", "due_date", "currency", "notes", "terms")
TOTALS_FIELDS = {"items", "tax_rate", "discount_amount"}


def _is_retryable(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    message = str(orig or exc).lower()
    return any(m in message for m in RETRYABLE_MESSAGES)


def _plain_items(items) -> list[dict]:
    """Line items as dicts, whether given as schemas, dataclasses or dicts."""
    plain = []
    for item in items:
        if hasattr(item, "model_dump"):
            plain.append(item.model_dump())
        elif isinstance(item, dict):
            plain.append(dict(item))
        else:
            plain.append(dict(vars(item)))
    return plain


class LedgerService:
    """Invoice/payment ledger operations for all owners."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries or settings.max_retries
        self.retry_backoff_seconds = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else settings.retry_backoff_seconds
        )

    # ── Transaction runners ──────────────────────────────────

    async def _write(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `work` in a fresh transaction, retrying lost races."""
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await apply_lock_timeout(session)
                        return await work(session)
            except StaleDataError:
                reason = "stale version"
            except DBAPIError as exc:
                if not _is_retryable(exc):
                    raise
                reason = str(getattr(exc, "orig", exc))

            if attempt < self.max_retries:
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                delay *= 1 + random.random()
                logger.warning(
                    f"{operation}: attempt {attempt}/{self.max_retries} lost a race "
                    f"({reason}); retrying in {delay:.3f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"{operation}: giving up after {self.max_retries} attempts")
        raise Contention(operation, self.max_retries)

    async def _read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.session_factory() as session:
            return await work(session)

    # ── Loaders ──────────────────────────────────────────────

    @staticmethod
    async def _invoice(
        session: AsyncSession,
        invoice_id: str,
        owner_id: str | None,
        for_update: bool = False,
        refresh: bool = False,
    ) -> Invoice:
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if owner_id is not None:
            stmt = stmt.where(Invoice.owner_id == owner_id)
        if for_update:
            stmt = stmt.with_for_update()
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        invoice = (await session.execute(stmt)).scalar_one_or_none()
        if invoice is None:
            raise ResourceNotFoundError("Invoice", invoice_id)
        return invoice

    async def _reload(self, session: AsyncSession, invoice: Invoice) -> Invoice:
        """Flush and re-read so every column and relationship is current."""
        await session.flush()
        return await self._invoice(session, invoice.id, None, refresh=True)

    async def _locked_payment(
        self, session: AsyncSession, payment_id: str, owner_id: str
    ) -> tuple[Invoice, Payment]:
        """Lock the owning invoice, then the payment, always in that order."""
        invoice_id = (await session.execute(
            select(Payment.invoice_id)
            .join(Invoice, Invoice.id == Payment.invoice_id)
            .where(Payment.id == payment_id, Invoice.owner_id == owner_id)
        )).scalar_one_or_none()
        if invoice_id is None:
            raise ResourceNotFoundError("Payment", payment_id)

        invoice = await self._invoice(session, invoice_id, owner_id, for_update=True)
        payment = await self._load_payment(session, payment_id)
        return invoice, payment

    @staticmethod
    async def _load_payment(session: AsyncSession, payment_id: str) -> Payment:
        result = await session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise ResourceNotFoundError("Payment", payment_id)
        return payment

    @staticmethod
    async def _require_client(session: AsyncSession, client_id: str, owner_id: str) -> None:
        if not await client_service.client_belongs_to(session, client_id, owner_id):
            raise ResourceNotFoundError("Client", client_id)

    # ── Totals ───────────────────────────────────────────────

    @staticmethod
    def preview_totals(items, discount_amount=ZERO, tax_rate=ZERO) -> Totals:
        return calculate_totals(items, discount_amount, tax_rate)

    @staticmethod
    def _line_items(items, totals: Totals) -> list[InvoiceLineItem]:
        rows = []
        for position, (item, amount) in enumerate(zip(items, totals.line_amounts), start=1):
            rows.append(InvoiceLineItem(
                position=position,
                description=item.get("description", ""),
                quantity=Decimal(str(item["quantity"])),
                rate=Decimal(str(item["rate"])),
                amount=amount,
            ))
        return rows

    # ── Invoices ─────────────────────────────────────────────

    async def create_invoice(
        self,
        owner_id: str,
        client_id: str,
        items: list,
        tax_rate=ZERO,
        discount_amount=ZERO,
        issue_date: date | None = None,
        due_date: date | None = None,
        currency: str | None = None,
        notes: str | None = None,
        terms: str | None = None,
    ) -> Invoice:
        """Create a draft invoice, consuming one unit of invoice quota.

        Raises:
            InvalidLineItem / InvalidDiscount / InvalidTaxRate: bad amounts
            NoSubscription / QuotaExceeded: quota
            ResourceNotFoundError: client missing or owned by someone else
        """
        items = _plain_items(items)
        totals = calculate_totals(items, discount_amount, tax_rate)
        issue_date = issue_date or today()
        due_date = due_date or issue_date

        async def work(session: AsyncSession) -> Invoice:
            # First write: queues concurrent creates for this owner on the
            # subscription row, which also serialises invoice numbering.
            await quota.reserve_quota(session, owner_id, quota.INVOICE)
            await self._require_client(session, client_id, owner_id)

            invoice = Invoice(
                invoice_number=await generate_invoice_number(session, owner_id),
                owner_id=owner_id,
                client_id=client_id,
                issue_date=issue_date,
                due_date=due_date,
                currency=currency or settings.default_currency,
                tax_rate=to_money(tax_rate or 0),
                discount_amount=to_money(discount_amount or 0),
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                total=totals.total,
                amount_paid=ZERO,
                amount_due=totals.total,
                status=InvoiceStatus.DRAFT,
                notes=notes,
                terms=terms,
                items=self._line_items(items, totals),
            )
            session.add(invoice)
            return await self._reload(session, invoice)

        invoice = await self._write("create_invoice", work)
        logger.info(
            f"Invoice {invoice.invoice_number} created for {owner_id}: total {invoice.total}"
        )
        return invoice

    async def update_invoice(self, invoice_id: str, owner_id: str, patch: dict) -> Invoice:
        """Apply a partial update and recompute totals when money inputs change.

        Raises:
            InvoiceImmutable: invoice is paid
            TotalBelowAmountPaid: new total would be less than what was paid
        """
        patch = dict(patch)
        if patch.get("items") is not None:
            patch["items"] = _plain_items(patch["items"])

        async def work(session: AsyncSession) -> Invoice:
            invoice = await self._invoice(session, invoice_id, owner_id, for_update=True)

            locks = get_invoice_locks(invoice)
            if locks.is_locked:
                raise InvoiceImmutable(invoice.invoice_number, details=locks.describe(patch))

            client_id = patch.get("client_id")
            if client_id is not None and client_id != invoice.client_id:
                await self._require_client(session, client_id, owner_id)
                invoice.client_id = client_id

            for field_name in INVOICE_SCALAR_FIELDS:
                if field_name in patch and (
                    patch[field_name] is not None or field_name in ("notes", "terms")
                ):
                    setattr(invoice, field_name, patch[field_name])

            if TOTALS_FIELDS & patch.keys():
                items = patch.get("items")
                if items is None:
                    items = [
                        {"description": i.description, "quantity": i.quantity, "rate": i.rate}
                        for i in invoice.items
                    ]
                discount = patch.get("discount_amount")
                discount = invoice.discount_amount if discount is None else discount
                tax_rate = patch.get("tax_rate")
                tax_rate = invoice.tax_rate if tax_rate is None else tax_rate

                totals = calculate_totals(items, discount, tax_rate)
                amount_due = totals.total - invoice.amount_paid
                if amount_due < 0:
                    raise TotalBelowAmountPaid(totals.total, invoice.amount_paid)

                if patch.get("items") is not None:
                    invoice.items = self._line_items(items, totals)
                invoice.discount_amount = to_money(discount)
                invoice.tax_rate = to_money(tax_rate)
                invoice.subtotal = totals.subtotal
                invoice.tax_amount = totals.tax_amount
                invoice.total = totals.total
                invoice.amount_due = to_money(amount_due)

                if invoice.amount_due == ZERO and invoice.amount_paid > ZERO:
                    transition(invoice, InvoiceStatus.PAID)

            return await self._reload(session, invoice)

        invoice = await self._write("update_invoice", work)
        logger.info(f"Invoice {invoice.invoice_number} updated: {sorted(patch)}")
        return invoice

    async def delete_invoice(self, invoice_id: str, owner_id: str) -> None:
        async def work(session: AsyncSession) -> str:
            invoice = await self._invoice(session, invoice_id, owner_id, for_update=True)
            locks = get_invoice_locks(invoice)
            if locks.is_locked:
                raise InvoiceImmutable(invoice.invoice_number, "delete", locks.describe())
            await session.delete(invoice)
            await session.flush()
            return invoice.invoice_number

        number = await self._write("delete_invoice", work)
        logger.info(f"Invoice {number} deleted by {owner_id}")

    async def transition_status(self, invoice_id: str, owner_id: str, target_status) -> Invoice:
        """Owner-requested status change.

        Marking an invoice paid by hand books any outstanding balance as a
        completed payment first, so payments keep summing to amount_paid.
        """
        async def work(session: AsyncSession) -> Invoice:
            invoice = await self._invoice(session, invoice_id, owner_id, for_update=True)
            if invoice.status == InvoiceStatus.PAID:
                raise InvoiceImmutable(invoice.invoice_number, "change the status of")

            target = parse_status(invoice.status, target_status)
            if target == InvoiceStatus.PAID:
                payment_engine.settle_remaining(invoice)
            transition(invoice, target)
            return await self._reload(session, invoice)

        return await self._write("transition_status", work)

    async def send_invoice(self, invoice_id: str, owner_id: str) -> Invoice:
        return await self.transition_status(invoice_id, owner_id, InvoiceStatus.SENT)

    async def mark_paid(self, invoice_id: str, owner_id: str) -> Invoice:
        return await self.transition_status(invoice_id, owner_id, InvoiceStatus.PAID)

    async def mark_viewed(self, invoice_id: str) -> Invoice:
        """Public view link: no ownership check, touches only status/viewed_at."""
        async def work(session: AsyncSession) -> Invoice:
            invoice = await self._invoice(session, invoice_id, None, for_update=True)
            if view_transition(invoice):
                return await self._reload(session, invoice)
            return invoice

        return await self._write("mark_viewed", work)

    async def get_invoice(self, invoice_id: str, owner_id: str) -> Invoice:
        return await self._read(lambda s: self._invoice(s, invoice_id, owner_id))

    async def list_invoices(
        self,
        owner_id: str,
        status: str | None = None,
        client_id: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        """Filtered page of an owner's invoices, newest first.

        status may be any stored status or the derived "overdue".
        """
        filters = [Invoice.owner_id == owner_id]
        if status == OVERDUE:
            filters += [Invoice.status != InvoiceStatus.PAID, Invoice.due_date < today()]
        elif status:
            filters.append(Invoice.status == InvoiceStatus(status))
        if client_id:
            filters.append(Invoice.client_id == client_id)
        if start_date:
            filters.append(Invoice.issue_date >= start_date)
        if end_date:
            filters.append(Invoice.issue_date <= end_date)

        async def work(session: AsyncSession):
            total = (
                await session.execute(select(func.count(Invoice.id)).where(*filters))
            ).scalar() or 0
            rows = (
                await session.execute(
                    select(Invoice)
                    .where(*filters)
                    .order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()
            return list(rows), total

        return await self._read(work)

    async def list_overdue_invoices(self, owner_id: str) -> list[Invoice]:
        async def work(session: AsyncSession):
            rows = (
                await session.execute(
                    select(Invoice)
                    .where(
                        Invoice.owner_id == owner_id,
                        Invoice.status != InvoiceStatus.PAID,
                        Invoice.due_date < today(),
                    )
                    .order_by(Invoice.due_date.asc())
                )
            ).scalars().all()
            return list(rows)

        return await self._read(work)

    async def invoice_stats(self, owner_id: str) -> dict:
        async def work(session: AsyncSession):
            return (
                await session.execute(
                    select(
                        Invoice.status, Invoice.due_date, Invoice.total,
                        Invoice.amount_paid, Invoice.amount_due,
                    ).where(Invoice.owner_id == owner_id)
                )
            ).all()

        rows = await self._read(work)
        stats = {
            "total_invoices": len(rows),
            "draft": 0, "sent": 0, "viewed": 0, "paid": 0, "overdue": 0,
            "total_invoiced": ZERO, "total_paid": ZERO,
            "total_outstanding": ZERO, "overdue_amount": ZERO,
        }
        current = today()
        for status, due_date, total, amount_paid, amount_due in rows:
            stats[status.value] += 1
            stats["total_invoiced"] += total
            stats["total_paid"] += amount_paid
            stats["total_outstanding"] += amount_due
            if status != InvoiceStatus.PAID and due_date < current:
                stats["overdue"] += 1
                stats["overdue_amount"] += amount_due
        for key in ("total_invoiced", "total_paid", "total_outstanding", "overdue_amount"):
            stats[key] = to_money(stats[key])
        return stats

    # ── Payments ─────────────────────────────────────────────

    async def apply_payment(
        self,
        invoice_id: str,
        owner_id: str,
        amount,
        method: PaymentMethod,
        payment_date: date | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> Payment:
        """Record a completed payment and apply it, all or nothing.

        Raises:
            InvoiceAlreadyPaid, PaymentExceedsAmountDue, InvalidPaymentAmount
        """
        async def work(session: AsyncSession) -> Payment:
            invoice = await self._invoice(session, invoice_id, owner_id, for_update=True)
            payment = payment_engine.apply_payment(
                invoice, amount, method, payment_date, reference_number, notes
            )
            await session.flush()
            return payment

        return await self._write("apply_payment", work)

    async def record_payment(
        self,
        invoice_id: str,
        owner_id: str,
        amount,
        method: PaymentMethod,
        payment_date: date | None = None,
        reference_number: str | None = None,
        notes: str | None = None,
        status: PaymentStatus = PaymentStatus.COMPLETED,
    ) -> Payment:
        if PaymentStatus(status) == PaymentStatus.COMPLETED:
            return await self.apply_payment(
                invoice_id, owner_id, amount, method, payment_date, reference_number, notes
            )

        async def work(session: AsyncSession) -> Payment:
            invoice = await self._invoice(session, invoice_id, owner_id, for_update=True)
            payment = payment_engine.record_pending(
                invoice, amount, method, payment_date, reference_number, notes
            )
            await session.flush()
            return payment

        return await self._write("record_payment", work)

    async def complete_payment(self, payment_id: str, owner_id: str) -> Payment:
        async def work(session: AsyncSession) -> Payment:
            invoice, payment = await self._locked_payment(session, payment_id, owner_id)
            payment_engine.complete_payment(invoice, payment)
            await session.flush()
            return payment

        return await self._write("complete_payment", work)

    async def fail_payment(self, payment_id: str, owner_id: str, reason: str | None = None) -> Payment:
        async def work(session: AsyncSession) -> Payment:
            _, payment = await self._locked_payment(session, payment_id, owner_id)
            payment_engine.fail_payment(payment, reason)
            await session.flush()
            return payment

        return await self._write("fail_payment", work)

    async def update_payment(self, payment_id: str, owner_id: str, patch: dict) -> Payment:
        async def work(session: AsyncSession) -> Payment:
            _, payment = await self._locked_payment(session, payment_id, owner_id)
            payment_engine.update_payment(payment, patch)
            await session.flush()
            return payment

        return await self._write("update_payment", work)

    async def delete_payment(self, payment_id: str, owner_id: str) -> None:
        async def work(session: AsyncSession) -> None:
            _, payment = await self._locked_payment(session, payment_id, owner_id)
            payment_engine.check_deletable(payment)
            await session.delete(payment)
            await session.flush()

        await self._write("delete_payment", work)
        logger.info(f"Payment {payment_id} deleted by {owner_id}")

    async def list_payments(
        self,
        owner_id: str,
        status: PaymentStatus | None = None,
        method: PaymentMethod | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Payment], int]:
        filters = [Invoice.owner_id == owner_id]
        if status:
            filters.append(Payment.status == PaymentStatus(status))
        if method:
            filters.append(Payment.method == PaymentMethod(method))

        async def work(session: AsyncSession):
            base = select(Payment).join(Invoice, Invoice.id == Payment.invoice_id).where(*filters)
            total = (
                await session.execute(select(func.count()).select_from(base.subquery()))
            ).scalar() or 0
            rows = (
                await session.execute(
                    base.order_by(Payment.created_at.desc()).limit(limit).offset(offset)
                )
            ).scalars().all()
            return list(rows), total

        return await self._read(work)

    async def list_invoice_payments(self, invoice_id: str, owner_id: str) -> list[Payment]:
        async def work(session: AsyncSession):
            invoice = await self._invoice(session, invoice_id, owner_id)
            return list(invoice.payments)

        return await self._read(work)

    async def payment_stats(self, owner_id: str) -> dict:
        """Counts by status; amounts cover completed payments only."""
        async def work(session: AsyncSession):
            return (
                await session.execute(
                    select(Payment.status, Payment.amount)
                    .join(Invoice, Invoice.id == Payment.invoice_id)
                    .where(Invoice.owner_id == owner_id)
                )
            ).all()

        rows = await self._read(work)
        counts = {s: 0 for s in PaymentStatus}
        completed_total = ZERO
        for status, amount in rows:
            counts[status] += 1
            if status == PaymentStatus.COMPLETED:
                completed_total += amount
        completed = counts[PaymentStatus.COMPLETED]
        return {
            "total_payments": len(rows),
            "total_amount": to_money(completed_total),
            "completed_payments": completed,
            "pending_payments": counts[PaymentStatus.PENDING],
            "failed_payments": counts[PaymentStatus.FAILED],
            "average_payment_amount": to_money(completed_total / completed) if completed else ZERO,
        }

    # ── Subscriptions / quota ────────────────────────────────

    async def open_account(self, owner_id: str) -> Subscription:
        try:
            return await self._write("open_account", lambda s: quota.open_account(s, owner_id))
        except IntegrityError:
            # Lost a race with a concurrent open for the same owner
            return await self.get_subscription(owner_id)

    async def get_subscription(self, owner_id: str) -> Subscription:
        return await self._read(lambda s: quota.get_subscription(s, owner_id))

    async def check_limits(self, owner_id: str) -> dict:
        return await self._read(lambda s: quota.check_limits(s, owner_id))

    async def reserve_quota(self, owner_id: str, resource: str) -> quota.Reservation:
        return await self._write(
            "reserve_quota", lambda s: quota.reserve_quota(s, owner_id, resource)
        )

    async def update_plan(self, owner_id: str, plan) -> Subscription:
        return await self._write("update_plan", lambda s: quota.update_plan(s, owner_id, plan))

    async def cancel_subscription(self, owner_id: str) -> Subscription:
        return await self._write(
            "cancel_subscription",
            lambda s: quota.set_status(s, owner_id, SubscriptionStatus.CANCELLED),
        )

    async def reactivate_subscription(self, owner_id: str) -> Subscription:
        return await self._write(
            "reactivate_subscription",
            lambda s: quota.set_status(s, owner_id, SubscriptionStatus.ACTIVE),
        )

    async def reset_usage(self, owner_id: str) -> Subscription:
        return await self._write("reset_usage", lambda s: quota.reset_usage(s, owner_id))

    # ── Clients ──────────────────────────────────────────────

    async def create_client(self, owner_id: str, body: ClientCreate) -> Client:
        return await self._write(
            "create_client", lambda s: client_service.create_client(s, owner_id, body)
        )

    async def client_belongs_to(self, client_id: str, owner_id: str) -> bool:
        return await self._read(
            lambda s: client_service.client_belongs_to(s, client_id, owner_id)
        )


def get_ledger() -> LedgerService:
    """FastAPI dependency; overridden in tests to point at a test database."""
    return LedgerService(get_session_factory())
