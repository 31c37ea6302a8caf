"""Billing domain models used by billing module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

AMOUNT_QUANTUM = Decimal("0.01")


class BillingError(RuntimeError):
    """Base billing domain error."""


class ValidationError(BillingError):
    """Raised when input/state is invalid."""


def format_amount(value: Decimal | int | str) -> str:
    """Render money as canonical fixed-point text, e.g. ``"149.00"``."""
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as error:
        raise ValidationError(f"Invalid amount: {value!r}") from error
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid amount: {value!r}")
    return str(amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP))


def _parse_positive_int(raw: object, kind: str) -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid {kind}: {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw or "").strip()
        if not text.isdecimal():
            raise ValidationError(f"Invalid {kind}: {raw!r}")
        value = int(text)
    if value <= 0:
        raise ValidationError(f"Invalid {kind}: {raw!r}")
    return value


@dataclass(frozen=True, slots=True)
class SubscriberId:
    """Telegram user id; stored and compared as its decimal string."""

    value: int

    @classmethod
    def parse(cls, raw: object) -> SubscriberId:
        if isinstance(raw, SubscriberId):
            return raw
        return cls(_parse_positive_int(raw, "subscriber id"))

    @property
    def telegram_id(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True, slots=True)
class InvoiceId:
    """Provider-facing invoice number (Robokassa ``InvId``)."""

    value: int

    @classmethod
    def parse(cls, raw: object) -> InvoiceId:
        if isinstance(raw, InvoiceId):
            return raw
        return cls(_parse_positive_int(raw, "invoice id"))

    def __str__(self) -> str:
        return str(self.value)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class ActivationSource(str, Enum):
    WEBHOOK = "webhook"
    FALLBACK = "fallback"


@dataclass(slots=True)
class PaymentIntent:
    id: InvoiceId
    subscriber_id: SubscriberId
    amount: str
    status: PaymentStatus
    created_at: datetime
    paid_at: datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.status is PaymentStatus.PAID


@dataclass(slots=True)
class SubscriptionRecord:
    subscriber_id: SubscriberId
    status: str
    expires_at: datetime
    source: str | None = None
    invoice_id: InvoiceId | None = None
    activated_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.status == "active" and self.expires_at > now


class IssueStatus(str, Enum):
    CREATED = "created"
    REUSED = "reused"
    BLOCKED = "blocked"
    MISCONFIGURED = "misconfigured"


@dataclass(frozen=True, slots=True)
class PaymentRequest:
    """Outcome of a payment request for the payment-prompt UI."""

    status: IssueStatus
    invoice_id: InvoiceId | None = None
    redirect_url: str | None = None
    amount: str | None = None
    expires_at: datetime | None = None

    @property
    def has_link(self) -> bool:
        return self.status in {IssueStatus.CREATED, IssueStatus.REUSED}
