"""Invoice status state machine.

    draft ──send──▶ sent ──view──▶ viewed
      │               │               │
      └───────────────┴──── pay ──────┴──▶ paid   (terminal)

Every status change, whether requested by the owner, triggered by the
public view link, or caused by a payment settling the balance, goes
through transition().  Functions mutate the ORM object in place; the
caller owns the transaction.
"""

import logging
from datetime import datetime

from invoicer.middleware.exceptions import InvalidStatusTransition, InvoiceImmutable
from invoicer.models.invoice import OVERDUE, Invoice, InvoiceStatus
from invoicer.services.totals import ZERO
from invoicer.utils.clock import utcnow

logger = logging.getLogger(__name__)

# target → statuses it may be entered from
ALLOWED_SOURCES: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.SENT: {InvoiceStatus.DRAFT},
    InvoiceStatus.VIEWED: {InvoiceStatus.SENT, InvoiceStatus.VIEWED},
    InvoiceStatus.PAID: {InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.VIEWED},
}


def parse_status(current: InvoiceStatus, target) -> InvoiceStatus:
    """Map a requested status to InvoiceStatus, rejecting derived/unknown ones."""
    if isinstance(target, InvoiceStatus):
        return target
    value = str(target).strip().lower()
    if value == OVERDUE:
        raise InvalidStatusTransition(current.value, value)
    try:
        return InvoiceStatus(value)
    except ValueError:
        raise InvalidStatusTransition(current.value, value) from None


def transition(invoice: Invoice, target, now: datetime | None = None) -> bool:
    """Move invoice to target, applying timestamp side effects.

    Returns True if anything changed (re-viewing is a no-op).

    Raises:
        InvoiceImmutable: invoice is already paid
        InvalidStatusTransition: target not reachable from current status
    """
    current = invoice.status
    if current == InvoiceStatus.PAID:
        raise InvoiceImmutable(invoice.invoice_number, "change the status of")

    target = parse_status(current, target)
    if current not in ALLOWED_SOURCES.get(target, set()):
        raise InvalidStatusTransition(current.value, target.value)

    now = now or utcnow()

    if target == InvoiceStatus.SENT:
        invoice.status = InvoiceStatus.SENT
        invoice.sent_at = now

    elif target == InvoiceStatus.VIEWED:
        if current == InvoiceStatus.VIEWED:
            return False
        invoice.status = InvoiceStatus.VIEWED
        if invoice.viewed_at is None:
            invoice.viewed_at = now

    elif target == InvoiceStatus.PAID:
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = now
        invoice.amount_paid = invoice.total
        invoice.amount_due = ZERO

    logger.info(
        f"Invoice {invoice.invoice_number}: {current.value} → {target.value}"
    )
    return True


def mark_viewed(invoice: Invoice, now: datetime | None = None) -> bool:
    """Public view-link hook.

    sent → viewed on first view; viewed and paid invoices are left alone.
    A draft has not been delivered, so viewing it is rejected.
    """
    if invoice.status in (InvoiceStatus.VIEWED, InvoiceStatus.PAID):
        return False
    if invoice.status != InvoiceStatus.SENT:
        raise InvalidStatusTransition(invoice.status.value, InvoiceStatus.VIEWED.value)
    return transition(invoice, InvoiceStatus.VIEWED, now)
