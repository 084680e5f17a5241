"""Edit locks for settled ledger rows.

A paid invoice and a completed payment are final, so every editable field
on them is locked.  The get_*_locks() helpers only report; the ledger
rejects any change to a locked row and attaches describe() to the error
as its details.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from invoicer.models.invoice import InvoiceStatus
from invoicer.models.payment import PaymentStatus

INVOICE_LOCKED_FIELDS = (
    "client_id", "items", "tax_rate", "discount_amount",
    "issue_date", "due_date", "currency", "notes", "terms", "status",
)

PAYMENT_LOCKED_FIELDS = (
    "amount", "method", "payment_date", "reference_number", "notes", "status",
)


@dataclass(frozen=True)
class FieldLock:
    field: str
    reason: str
    blocker_ref: str    # invoice number or payment id
    unlock_hint: str


@dataclass
class LockInfo:
    locked_fields: dict[str, FieldLock] = field(default_factory=dict)

    @property
    def is_locked(self) -> bool:
        return bool(self.locked_fields)

    def check_update(self, updating_fields: Iterable[str]) -> FieldLock | None:
        """First locked field the update touches (alphabetical), or None."""
        conflicts = sorted(set(updating_fields) & self.locked_fields.keys())
        return self.locked_fields[conflicts[0]] if conflicts else None

    def locked_field_names(self) -> list[str]:
        return sorted(self.locked_fields)

    def describe(self, updating_fields: Iterable[str] = ()) -> dict:
        """Error details for a rejected change: what is locked and how to move on."""
        names = self.locked_field_names()
        details: dict = {"locked_fields": names}
        conflict = self.check_update(updating_fields)
        if conflict is not None:
            details["field"] = conflict.field
            details["reason"] = conflict.reason
        lock = conflict or (self.locked_fields[names[0]] if names else None)
        if lock is not None:
            details["blocker_ref"] = lock.blocker_ref
            details["unlock_hint"] = lock.unlock_hint
        return details


def _freeze(field_names: Iterable[str], blocker_ref: str, reason: str, unlock_hint: str) -> LockInfo:
    return LockInfo({
        name: FieldLock(name, f"{name} is locked: {reason}", blocker_ref, unlock_hint)
        for name in field_names
    })


def get_invoice_locks(invoice) -> LockInfo:
    if invoice.status != InvoiceStatus.PAID:
        return LockInfo()
    return _freeze(
        INVOICE_LOCKED_FIELDS,
        invoice.invoice_number,
        reason=f"invoice {invoice.invoice_number} is paid",
        unlock_hint="Paid invoices are final. Issue a new invoice instead.",
    )


def get_payment_locks(payment) -> LockInfo:
    if payment.status != PaymentStatus.COMPLETED:
        return LockInfo()
    return _freeze(
        PAYMENT_LOCKED_FIELDS,
        payment.id,
        reason=f"payment {payment.id} is completed",
        unlock_hint="Completed payments are final. Record a correcting payment instead.",
    )
