"""Subscription billing use-cases: issuing payments, reconciling callbacks, entitlement."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Protocol

import aiosqlite

from billing.models import (
    ActivationSource,
    InvoiceId,
    IssueStatus,
    PaymentIntent,
    PaymentRequest,
    SubscriberId,
    SubscriptionRecord,
    ValidationError,
)
from billing.payments import build_payment_url, extract_callback
from billing.repository import BillingRepository, utc_now
from billing.settings import BillingSettings
from billing.signature import verify
from database import SubscriberDirectory

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Outbound chat messages; implementations must never raise."""

    async def send_message(self, subscriber_id: SubscriberId, text: str) -> bool:
        """Deliver text, return whether it was sent."""


class InvoiceIdSource:
    """Millisecond wall clock, strictly increasing within the process."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last = 0

    def next_id(self) -> InvoiceId:
        candidate = int(self._clock() * 1000)
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return InvoiceId(candidate)


class CallbackStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"
    INVALID_INVOICE = "invalid_invoice"
    BAD_SIGNATURE = "bad_signature"
    UNKNOWN_INVOICE = "unknown_invoice"
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass(frozen=True)
class CallbackOutcome:
    status: CallbackStatus
    invoice_id: InvoiceId | None = None
    subscriber_id: SubscriberId | None = None
    subscription: SubscriptionRecord | None = None

    @property
    def acknowledged(self) -> bool:
        return self.status in {CallbackStatus.ACCEPTED, CallbackStatus.DUPLICATE}


def _same_amount(raw: str, stored: str) -> bool:
    try:
        return Decimal(raw) == Decimal(stored)
    except InvalidOperation:
        return False


class BillingService:
    """Robokassa subscription billing for one fixed-price product."""

    def __init__(
        self,
        repository: BillingRepository,
        directory: SubscriberDirectory,
        settings: BillingSettings,
        *,
        notifier: Notifier | None = None,
        invoice_ids: InvoiceIdSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.settings = settings
        self.notifier = notifier
        self.invoice_ids = invoice_ids or InvoiceIdSource()
        self._now = clock

    # ---- Entitlement ----

    async def get_active_subscription(self, subscriber_id: SubscriberId | int) -> SubscriptionRecord | None:
        """Current entitlement, repaired from payment history if the record is stale."""
        subscriber_id = SubscriberId.parse(subscriber_id)
        now = self._now()
        subscription = await self.repository.get_subscription(subscriber_id)
        if subscription and subscription.is_active(now):
            return subscription

        payment = await self.repository.get_latest_paid_payment(subscriber_id)
        if payment is None:
            return None
        window_end = (payment.paid_at or payment.created_at) + self.settings.duration
        if window_end <= now:
            return None

        logger.warning(
            "Fallback activation: subscriber=%s invoice=%s is paid but subscription is %s",
            subscriber_id,
            payment.id,
            "expired" if subscription else "missing",
        )
        return await self.repository.upsert_subscription(
            subscriber_id=subscriber_id,
            expires_at=window_end,
            source=ActivationSource.FALLBACK.value,
            invoice_id=payment.id,
            activated_at=now,
        )

    async def is_entitled(self, subscriber_id: SubscriberId | int) -> bool:
        return await self.get_active_subscription(subscriber_id) is not None

    # ---- Issuing ----

    def payment_url(self, payment: PaymentIntent) -> str:
        return build_payment_url(self.settings, payment.id, payment.amount)

    async def _create_pending_payment(self, subscriber_id: SubscriberId) -> PaymentIntent:
        amount = self.settings.amount
        invoice_id = self.invoice_ids.next_id()
        try:
            return await self.repository.create_payment(
                invoice_id=invoice_id,
                subscriber_id=subscriber_id,
                amount=amount,
                created_at=self._now(),
            )
        except aiosqlite.IntegrityError:
            retry_id = self.invoice_ids.next_id()
            logger.warning("Invoice id %s already taken, retrying with %s", invoice_id, retry_id)
            return await self.repository.create_payment(
                invoice_id=retry_id,
                subscriber_id=subscriber_id,
                amount=amount,
                created_at=self._now(),
            )

    async def request_payment(self, subscriber_id: SubscriberId | int) -> PaymentRequest:
        """Payment link for the subscriber, reusing the pending one if it exists."""
        subscriber_id = SubscriberId.parse(subscriber_id)

        active = await self.get_active_subscription(subscriber_id)
        if active is not None:
            logger.info("Payment not needed: subscriber=%s active until %s", subscriber_id, active.expires_at)
            return PaymentRequest(status=IssueStatus.BLOCKED, expires_at=active.expires_at)

        if not self.settings.can_issue:
            logger.error("Robokassa is not configured: merchant login or password #1 is empty")
            return PaymentRequest(status=IssueStatus.MISCONFIGURED)

        pending = await self.repository.get_pending_payment(subscriber_id)
        if pending is not None:
            logger.info("Reusing pending invoice %s for subscriber=%s", pending.id, subscriber_id)
            return PaymentRequest(
                status=IssueStatus.REUSED,
                invoice_id=pending.id,
                redirect_url=self.payment_url(pending),
                amount=pending.amount,
            )

        payment = await self._create_pending_payment(subscriber_id)
        logger.info("Invoice %s created for subscriber=%s amount=%s", payment.id, subscriber_id, payment.amount)
        return PaymentRequest(
            status=IssueStatus.CREATED,
            invoice_id=payment.id,
            redirect_url=self.payment_url(payment),
            amount=payment.amount,
        )

    # ---- Callback reconciliation ----

    async def apply_callback(self, params: Mapping[str, str]) -> CallbackOutcome:
        """Apply a Robokassa ResultURL callback at most once per invoice.

        Storage errors propagate; the caller answers 5xx so Robokassa retries.
        """
        callback = extract_callback(params)
        if callback is None:
            logger.warning(
                "Callback rejected: missing fields OutSum=%r InvId=%r SignatureValue=%s",
                params.get("OutSum"),
                params.get("InvId"),
                "present" if params.get("SignatureValue") else "missing",
            )
            return CallbackOutcome(CallbackStatus.MALFORMED)

        try:
            invoice_id = InvoiceId.parse(callback.inv_id)
        except ValidationError:
            logger.warning("Callback rejected: invalid InvId=%r", callback.inv_id)
            return CallbackOutcome(CallbackStatus.INVALID_INVOICE)

        if not verify(
            callback.out_sum,
            invoice_id,
            self.settings.password_2,
            callback.signature,
            algorithm=self.settings.hash_algorithm,
        ):
            logger.warning(
                "Callback rejected: bad signature OutSum=%s InvId=%s SignatureValue=%s",
                callback.out_sum,
                invoice_id,
                callback.signature,
            )
            return CallbackOutcome(CallbackStatus.BAD_SIGNATURE, invoice_id=invoice_id)

        payment = await self.repository.get_payment(invoice_id)
        if payment is None:
            logger.warning("Callback rejected: invoice %s not found", invoice_id)
            return CallbackOutcome(CallbackStatus.UNKNOWN_INVOICE, invoice_id=invoice_id)

        if not _same_amount(callback.out_sum, payment.amount):
            logger.warning(
                "Callback rejected: invoice %s amount %s differs from stored %s",
                invoice_id,
                callback.out_sum,
                payment.amount,
            )
            return CallbackOutcome(CallbackStatus.AMOUNT_MISMATCH, invoice_id=invoice_id)

        if payment.is_paid:
            logger.info("Invoice %s already paid, acknowledging redelivery", invoice_id)
            return CallbackOutcome(CallbackStatus.DUPLICATE, invoice_id=invoice_id, subscriber_id=payment.subscriber_id)

        subscriber_id = payment.subscriber_id
        # Payment may arrive before the user finished onboarding.
        await self.directory.create_subscriber_if_absent(subscriber_id.telegram_id, onboarding_completed=False)

        now = self._now()
        expires_at = now + self.settings.duration
        applied = await self.repository.mark_paid_and_activate(
            invoice_id=invoice_id,
            subscriber_id=subscriber_id,
            paid_at=now,
            expires_at=expires_at,
            source=ActivationSource.WEBHOOK.value,
        )
        if not applied:
            logger.info("Invoice %s was paid by a concurrent delivery", invoice_id)
            return CallbackOutcome(CallbackStatus.DUPLICATE, invoice_id=invoice_id, subscriber_id=subscriber_id)

        logger.info(
            "Invoice %s paid: subscriber=%s subscription active until %s",
            invoice_id,
            subscriber_id,
            expires_at.isoformat(),
        )
        return CallbackOutcome(
            CallbackStatus.ACCEPTED,
            invoice_id=invoice_id,
            subscriber_id=subscriber_id,
            subscription=SubscriptionRecord(
                subscriber_id=subscriber_id,
                status="active",
                expires_at=expires_at,
                source=ActivationSource.WEBHOOK.value,
                invoice_id=invoice_id,
                activated_at=now,
            ),
        )

    async def notify_activation(self, subscriber_id: SubscriberId) -> bool:
        if self.notifier is None:
            return False
        text = f"✅ Подписка активирована на {int(self.settings.subscription_days)} дней"
        return await self.notifier.send_message(subscriber_id, text)


def get_billing_service(notifier: Notifier | None = None) -> BillingService:
    """Service wired to the configured database and Robokassa merchant."""
    from config import DB_PATH

    return BillingService(
        BillingRepository(DB_PATH),
        SubscriberDirectory(DB_PATH),
        BillingSettings.from_config(),
        notifier=notifier,
    )
