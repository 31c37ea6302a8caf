"""Subscription billing: Robokassa payments, callback reconciliation, entitlement."""

from billing.models import (
    BillingError,
    InvoiceId,
    IssueStatus,
    PaymentRequest,
    SubscriberId,
    ValidationError,
)
from billing.service import (
    BillingService,
    CallbackOutcome,
    CallbackStatus,
    Notifier,
    get_billing_service,
)
from billing.settings import BillingSettings

__all__ = [
    "BillingError",
    "BillingService",
    "BillingSettings",
    "CallbackOutcome",
    "CallbackStatus",
    "InvoiceId",
    "IssueStatus",
    "Notifier",
    "PaymentRequest",
    "SubscriberId",
    "ValidationError",
    "get_billing_service",
]
