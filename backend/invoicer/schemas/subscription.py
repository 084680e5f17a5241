"""Pydantic schemas for subscriptions and quota reporting."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from invoicer.models.subscription import SubscriptionPlan, SubscriptionStatus


class PlanChange(BaseModel):
    plan: SubscriptionPlan


class SubscriptionOut(BaseModel):
    id: str
    owner_id: str
    plan: SubscriptionPlan
    status: SubscriptionStatus
    monthly_price: Decimal
    invoice_limit: int
    client_limit: int
    invoices_sent: int
    clients_created: int
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class LimitsOut(BaseModel):
    plan: SubscriptionPlan
    status: SubscriptionStatus
    can_create_invoices: bool
    can_create_clients: bool
    remaining_invoices: int
    remaining_clients: int


class ReservationOut(BaseModel):
    owner_id: str
    resource: str
    used: int
    limit: int
