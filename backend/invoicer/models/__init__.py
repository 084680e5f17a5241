"""Ledger models.

Importing this package registers every table on Base.metadata, which
Alembic autogenerate and the test fixtures rely on.
"""

from invoicer.models.client import Client
from invoicer.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus
from invoicer.models.payment import Payment, PaymentMethod, PaymentStatus
from invoicer.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus

__all__ = [
    "Client",
    "Invoice", "InvoiceLineItem", "InvoiceStatus",
    "Payment", "PaymentMethod", "PaymentStatus",
    "Subscription", "SubscriptionPlan", "SubscriptionStatus",
]
