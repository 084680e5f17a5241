"""Pydantic schemas for invoices, line items and totals previews.

Quantity/rate/discount bounds are checked by the totals calculator, not
here, so bad money input surfaces as INVALID_LINE_ITEM / INVALID_DISCOUNT
rather than a generic validation error.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, field_validator

from invoicer.models.invoice import InvoiceStatus


# ── Line items ───────────────────────────────────────────────


class LineItemIn(BaseModel):
    description: str
    quantity: Decimal
    rate: Decimal

    @field_validator("description")
    @classmethod
    def description_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Description is required")
        return v


class LineItemOut(BaseModel):
    id: str
    position: int
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal

    model_config = {"from_attributes": True}


# ── Totals preview ───────────────────────────────────────────


class TotalsPreviewIn(BaseModel):
    items: list[LineItemIn]
    discount_amount: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")


class TotalsOut(BaseModel):
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    line_amounts: list[Decimal] = []


# ── Invoice CRUD ─────────────────────────────────────────────


def _check_tax_rate(v: Decimal | None) -> Decimal | None:
    if v is not None and (v < 0 or v > 100):
        raise ValueError("tax_rate must be between 0 and 100")
    return v


def _check_currency(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip().upper()
    if len(v) != 3 or not v.isalpha():
        raise ValueError("currency must be a 3-letter ISO code")
    return v


class InvoiceCreate(BaseModel):
    client_id: str
    items: list[LineItemIn]
    tax_rate: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    issue_date: date | None = None
    due_date: date
    currency: str | None = None
    notes: str | None = None
    terms: str | None = None

    @field_validator("tax_rate")
    @classmethod
    def valid_tax_rate(cls, v: Decimal) -> Decimal:
        return _check_tax_rate(v)

    @field_validator("currency")
    @classmethod
    def valid_currency(cls, v: str | None) -> str | None:
        return _check_currency(v)


class InvoiceUpdate(BaseModel):
    """Patch body.  Only fields explicitly sent are applied.

    amount_paid, amount_due and status are deliberately absent: they move
    only through payments and status transitions.
    """
    client_id: str | None = None
    items: list[LineItemIn] | None = None
    tax_rate: Decimal | None = None
    discount_amount: Decimal | None = None
    issue_date: date | None = None
    due_date: date | None = None
    currency: str | None = None
    notes: str | None = None
    terms: str | None = None

    @field_validator("tax_rate")
    @classmethod
    def valid_tax_rate(cls, v: Decimal | None) -> Decimal | None:
        return _check_tax_rate(v)

    @field_validator("currency")
    @classmethod
    def valid_currency(cls, v: str | None) -> str | None:
        return _check_currency(v)


class StatusTransitionIn(BaseModel):
    status: str


class InvoiceOut(BaseModel):
    id: str
    invoice_number: str
    owner_id: str
    client_id: str
    client_name: str | None = None
    issue_date: date
    due_date: date
    currency: str
    tax_rate: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    status: InvoiceStatus
    display_status: str
    is_overdue: bool
    sent_at: datetime | None = None
    viewed_at: datetime | None = None
    paid_at: datetime | None = None
    notes: str | None = None
    terms: str | None = None
    version: int
    items: list[LineItemOut] = []
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_invoice(cls, invoice) -> "InvoiceOut":
        out = cls.model_validate(invoice)
        if invoice.client is not None:
            out.client_name = invoice.client.name
        return out


class InvoiceStats(BaseModel):
    total_invoices: int
    draft: int
    sent: int
    viewed: int
    paid: int
    overdue: int
    total_invoiced: Decimal
    total_paid: Decimal
    total_outstanding: Decimal
    overdue_amount: Decimal
