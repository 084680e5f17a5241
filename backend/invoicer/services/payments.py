"""Payment application engine.

Validates a payment against an invoice and applies it: the Payment row,
amount_paid/amount_due and (when the balance reaches zero) the paid
transition all change together, inside the caller's transaction, on an
invoice row the caller has loaded for update.

Only completed payments count.  Pending payments sit beside the invoice
without touching its totals until complete_payment() pushes them through
the same checks as a direct payment.
"""

import logging
from datetime import date
from decimal import Decimal

from invoicer.middleware.exceptions import (
    InvalidPaymentAmount,
    InvoiceAlreadyPaid,
    PaymentExceedsAmountDue,
    PaymentImmutable,
    PaymentNotPending,
)
from invoicer.models.invoice import Invoice, InvoiceStatus
from invoicer.models.payment import Payment, PaymentMethod, PaymentStatus
from invoicer.services.status import transition
from invoicer.services.totals import ZERO, to_money
from invoicer.utils.clock import today
from invoicer.utils.locks import get_payment_locks

logger = logging.getLogger(__name__)


def _validate(invoice: Invoice, amount) -> Decimal:
    if invoice.status == InvoiceStatus.PAID:
        raise InvoiceAlreadyPaid(invoice.invoice_number)
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidPaymentAmount(amount)
    if amount > invoice.amount_due:
        raise PaymentExceedsAmountDue(amount, invoice.amount_due)
    return amount


def _settle(invoice: Invoice, amount) -> None:
    """Book a completed amount against the invoice, paying it off at zero."""
    invoice.amount_paid = to_money(invoice.amount_paid + amount)
    invoice.amount_due = to_money(invoice.total - invoice.amount_paid)
    if invoice.amount_due == ZERO:
        transition(invoice, InvoiceStatus.PAID)


def apply_payment(
    invoice: Invoice,
    amount,
    method: PaymentMethod,
    payment_date: date | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
) -> Payment:
    """Record a completed payment and apply it to the invoice.

    Raises:
        InvoiceAlreadyPaid: invoice is paid
        InvalidPaymentAmount: amount <= 0
        PaymentExceedsAmountDue: amount > amount_due (never capped)
    """
    amount = _validate(invoice, amount)

    payment = Payment(
        amount=amount,
        currency=invoice.currency,
        method=PaymentMethod(method),
        status=PaymentStatus.COMPLETED,
        payment_date=payment_date or today(),
        reference_number=reference_number,
        notes=notes,
    )
    invoice.payments.append(payment)
    _settle(invoice, amount)

    logger.info(
        f"Payment of {amount} applied to {invoice.invoice_number}; "
        f"due {invoice.amount_due}, status {invoice.status.value}"
    )
    return payment


def record_pending(
    invoice: Invoice,
    amount,
    method: PaymentMethod,
    payment_date: date | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
) -> Payment:
    """Store a pending payment; totals are untouched until it completes."""
    amount = _validate(invoice, amount)

    payment = Payment(
        amount=amount,
        currency=invoice.currency,
        method=PaymentMethod(method),
        status=PaymentStatus.PENDING,
        payment_date=payment_date or today(),
        reference_number=reference_number,
        notes=notes,
    )
    invoice.payments.append(payment)
    logger.info(f"Pending payment of {amount} recorded on {invoice.invoice_number}")
    return payment


def complete_payment(invoice: Invoice, payment: Payment) -> Payment:
    """Promote a pending payment, re-validating it against the current balance."""
    if payment.status == PaymentStatus.COMPLETED:
        raise PaymentImmutable(payment.id, "complete")
    if payment.status != PaymentStatus.PENDING:
        raise PaymentNotPending(payment.id, payment.status.value)

    amount = _validate(invoice, payment.amount)
    payment.status = PaymentStatus.COMPLETED
    _settle(invoice, amount)

    logger.info(
        f"Payment {payment.id} completed on {invoice.invoice_number}; "
        f"due {invoice.amount_due}, status {invoice.status.value}"
    )
    return payment


def fail_payment(payment: Payment, reason: str | None = None) -> Payment:
    if payment.status == PaymentStatus.COMPLETED:
        raise PaymentImmutable(payment.id, "fail")
    if payment.status == PaymentStatus.FAILED:
        return payment

    payment.status = PaymentStatus.FAILED
    if reason:
        payment.notes = f"{payment.notes}\n{reason}" if payment.notes else reason
    logger.info(f"Payment {payment.id} marked failed")
    return payment


def update_payment(payment: Payment, patch: dict) -> Payment:
    """Edit a pending or failed payment.  Completed payments are frozen."""
    locks = get_payment_locks(payment)
    if locks.is_locked:
        raise PaymentImmutable(payment.id, details=locks.describe(patch))

    if patch.get("amount") is not None:
        amount = to_money(patch["amount"])
        if amount <= 0:
            raise InvalidPaymentAmount(amount)
        patch = {**patch, "amount": amount}
    if patch.get("method") is not None:
        patch = {**patch, "method": PaymentMethod(patch["method"])}

    for key, value in patch.items():
        if key in ("amount", "method", "payment_date") and value is None:
            continue
        setattr(payment, key, value)
    return payment


def check_deletable(payment: Payment) -> None:
    locks = get_payment_locks(payment)
    if locks.is_locked:
        raise PaymentImmutable(payment.id, "delete", locks.describe())


def settle_remaining(invoice: Invoice) -> Payment | None:
    """Owner marks an invoice paid by hand.

    Any outstanding balance is booked as a completed payment (method
    ``other``) so the completed payments still sum to amount_paid.
    """
    if invoice.status == InvoiceStatus.PAID:
        return None

    payment = None
    if invoice.amount_due > ZERO:
        payment = Payment(
            amount=invoice.amount_due,
            currency=invoice.currency,
            method=PaymentMethod.OTHER,
            status=PaymentStatus.COMPLETED,
            payment_date=today(),
            notes="Balance settled when the invoice was marked paid",
        )
        invoice.payments.append(payment)
        invoice.amount_paid = to_money(invoice.amount_paid + invoice.amount_due)
        invoice.amount_due = ZERO
    return payment
