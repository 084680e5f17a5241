"""Pydantic schemas for recording and settling payments."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, field_validator

from invoicer.models.payment import PaymentMethod, PaymentStatus


class PaymentCreate(BaseModel):
    """Apply a payment.  status=pending stores it without touching totals."""
    invoice_id: str
    amount: Decimal
    method: PaymentMethod
    payment_date: date | None = None
    reference_number: str | None = None
    notes: str | None = None
    status: PaymentStatus = PaymentStatus.COMPLETED

    @field_validator("status")
    @classmethod
    def valid_initial_status(cls, v: PaymentStatus) -> PaymentStatus:
        if v == PaymentStatus.FAILED:
            raise ValueError("status must be 'completed' or 'pending'")
        return v


class PaymentUpdate(BaseModel):
    amount: Decimal | None = None
    method: PaymentMethod | None = None
    payment_date: date | None = None
    reference_number: str | None = None
    notes: str | None = None


class PaymentFailIn(BaseModel):
    reason: str | None = None


class PaymentOut(BaseModel):
    id: str
    invoice_id: str
    amount: Decimal
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    payment_date: date
    reference_number: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentStats(BaseModel):
    total_payments: int
    total_amount: Decimal
    completed_payments: int
    pending_payments: int
    failed_payments: int
    average_payment_amount: Decimal
