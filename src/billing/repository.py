"""Persistence helpers for payment and subscription ledgers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import aiosqlite

from billing.models import (
    InvoiceId,
    PaymentIntent,
    PaymentStatus,
    SubscriberId,
    SubscriptionRecord,
    format_amount,
)
from database import (
    WRITE_RETRY_ATTEMPTS,
    WRITE_RETRY_BASE_DELAY_SEC,
    execute_write_with_retry,
    is_lock_error,
    open_db,
)

logger = logging.getLogger(__name__)

PAYMENT_COLUMNS = "id, telegram_id, amount, status, created_at, paid_at"
SUBSCRIPTION_COLUMNS = "telegram_id, status, expires_at, source, invoice_id, activated_at"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso_utc(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    text = str(raw_value).strip()
    # Rows written by the previous bot version use the "...Z" suffix.
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _row_to_payment(row: aiosqlite.Row) -> PaymentIntent:
    created_at = parse_iso_utc(row["created_at"])
    if created_at is None:
        raise ValueError(f"Payment {row['id']} has invalid created_at: {row['created_at']!r}")
    return PaymentIntent(
        id=InvoiceId(int(row["id"])),
        subscriber_id=SubscriberId.parse(row["telegram_id"]),
        amount=format_amount(row["amount"]),
        status=PaymentStatus(str(row["status"])),
        created_at=created_at,
        paid_at=parse_iso_utc(row["paid_at"]),
    )


def _row_to_subscription(row: aiosqlite.Row) -> SubscriptionRecord | None:
    expires_at = parse_iso_utc(row["expires_at"])
    if expires_at is None:
        logger.warning("Subscription of %s has unreadable expires_at=%r", row["telegram_id"], row["expires_at"])
        return None
    invoice_id = row["invoice_id"]
    return SubscriptionRecord(
        subscriber_id=SubscriberId.parse(row["telegram_id"]),
        status=str(row["status"]),
        expires_at=expires_at,
        source=row["source"],
        invoice_id=InvoiceId(int(invoice_id)) if invoice_id else None,
        activated_at=parse_iso_utc(row["activated_at"]),
    )


class BillingRepository:
    """Payment ledger (``payments``) and subscription ledger (``subscriptions``)."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def get_payment(self, invoice_id: InvoiceId) -> PaymentIntent | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE id = ?",
                (invoice_id.value,),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_payment(row) if row else None

    async def get_pending_payment(self, subscriber_id: SubscriberId) -> PaymentIntent | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"""SELECT {PAYMENT_COLUMNS}
                      FROM payments
                     WHERE telegram_id = ? AND status = 'pending'
                     ORDER BY id DESC
                     LIMIT 1""",
                (str(subscriber_id),),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_payment(row) if row else None

    async def get_latest_paid_payment(self, subscriber_id: SubscriberId) -> PaymentIntent | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"""SELECT {PAYMENT_COLUMNS}
                      FROM payments
                     WHERE telegram_id = ? AND status = 'paid'
                     ORDER BY COALESCE(paid_at, created_at) DESC, id DESC
                     LIMIT 1""",
                (str(subscriber_id),),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_payment(row) if row else None

    async def create_payment(
        self,
        *,
        invoice_id: InvoiceId,
        subscriber_id: SubscriberId,
        amount: str,
        created_at: datetime,
    ) -> PaymentIntent:
        """Insert a pending intent; ``aiosqlite.IntegrityError`` on id collision."""
        async with open_db(self.db_path) as db:
            await execute_write_with_retry(
                db,
                """INSERT INTO payments(id, telegram_id, amount, status, created_at, paid_at)
                   VALUES(?, ?, ?, 'pending', ?, NULL)""",
                (invoice_id.value, str(subscriber_id), format_amount(amount), to_iso(created_at)),
            )
        return PaymentIntent(
            id=invoice_id,
            subscriber_id=subscriber_id,
            amount=format_amount(amount),
            status=PaymentStatus.PENDING,
            created_at=created_at,
        )

    async def mark_paid_and_activate(
        self,
        *,
        invoice_id: InvoiceId,
        subscriber_id: SubscriberId,
        paid_at: datetime,
        expires_at: datetime,
        source: str,
    ) -> bool:
        """Flip pending -> paid and overwrite the subscription in one transaction.

        Returns False (and writes nothing) when the intent is no longer pending,
        so a concurrent redelivery can never extend the subscription twice.
        """
        for attempt in range(WRITE_RETRY_ATTEMPTS):
            try:
                async with open_db(self.db_path) as db:
                    await db.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = await db.execute(
                            """UPDATE payments
                                  SET status = 'paid', paid_at = ?
                                WHERE id = ? AND status = 'pending'""",
                            (to_iso(paid_at), invoice_id.value),
                        )
                        if cursor.rowcount != 1:
                            await db.rollback()
                            return False
                        await db.execute(
                            f"""INSERT OR REPLACE INTO subscriptions({SUBSCRIPTION_COLUMNS})
                                VALUES(?, 'active', ?, ?, ?, ?)""",
                            (str(subscriber_id), to_iso(expires_at), source, invoice_id.value, to_iso(paid_at)),
                        )
                        await db.commit()
                        return True
                    except BaseException:
                        await db.rollback()
                        raise
            except aiosqlite.OperationalError as error:
                if not is_lock_error(error) or attempt >= WRITE_RETRY_ATTEMPTS - 1:
                    raise
                await asyncio.sleep(WRITE_RETRY_BASE_DELAY_SEC * (2**attempt))
        raise RuntimeError("Unexpected retry loop state")

    async def get_subscription(self, subscriber_id: SubscriberId) -> SubscriptionRecord | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE telegram_id = ?",
                (str(subscriber_id),),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_subscription(row) if row else None

    async def upsert_subscription(
        self,
        *,
        subscriber_id: SubscriberId,
        expires_at: datetime,
        source: str,
        invoice_id: InvoiceId | None,
        activated_at: datetime,
    ) -> SubscriptionRecord:
        async with open_db(self.db_path) as db:
            await execute_write_with_retry(
                db,
                f"""INSERT OR REPLACE INTO subscriptions({SUBSCRIPTION_COLUMNS})
                    VALUES(?, 'active', ?, ?, ?, ?)""",
                (
                    str(subscriber_id),
                    to_iso(expires_at),
                    source,
                    invoice_id.value if invoice_id else None,
                    to_iso(activated_at),
                ),
            )
        return SubscriptionRecord(
            subscriber_id=subscriber_id,
            status="active",
            expires_at=expires_at,
            source=source,
            invoice_id=invoice_id,
            activated_at=activated_at,
        )
