"""SQLite schema, connection helpers and the subscriber directory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import aiosqlite

SQLITE_BUSY_TIMEOUT_MS = 5000
WRITE_RETRY_ATTEMPTS = 3
WRITE_RETRY_BASE_DELAY_SEC = 0.05

logger = logging.getLogger(__name__)


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """Apply SQLite settings for concurrent access from bot and webhook."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")


@asynccontextmanager
async def open_db(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    """Open connection with row access by column name and required PRAGMAs."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        await apply_sqlite_pragmas(db)
        yield db


def is_lock_error(error: Exception) -> bool:
    return "database is locked" in str(error).lower()


async def execute_write_with_retry(
    db: aiosqlite.Connection,
    query: str,
    params: Sequence[Any] = (),
) -> aiosqlite.Cursor:
    """Execute write query with lightweight retry on lock contention."""
    for attempt in range(WRITE_RETRY_ATTEMPTS):
        try:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor
        except aiosqlite.OperationalError as error:
            if not is_lock_error(error) or attempt >= WRITE_RETRY_ATTEMPTS - 1:
                raise
            backoff = WRITE_RETRY_BASE_DELAY_SEC * (2**attempt)
            logger.warning("SQLite locked, retrying write in %.2fs (attempt %s)", backoff, attempt + 1)
            await asyncio.sleep(backoff)
    raise RuntimeError("Unexpected retry loop state")


async def _table_columns(db: aiosqlite.Connection, table: str) -> list[dict[str, Any]]:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
        return [dict(row) for row in rows]


async def _add_column_if_missing(db: aiosqlite.Connection, table: str, column: str, ddl: str) -> None:
    columns = {col["name"] for col in await _table_columns(db, table)}
    if column in columns:
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    logger.info("Schema upgrade: added %s.%s", table, column)


PAYMENTS_DDL = """CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY,
    telegram_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    paid_at TEXT DEFAULT NULL
)"""


async def init_db(db_path: str) -> None:
    """Create tables and upgrade the schema left by earlier bot versions."""
    async with open_db(db_path) as db:
        await db.execute(
            """CREATE TABLE IF NOT EXISTS users (
                telegram_id INTEGER PRIMARY KEY,
                sign TEXT,
                timezone TEXT,
                onboarding_completed INTEGER DEFAULT 0,
                created_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER)),
                updated_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER))
            )"""
        )
        await _add_column_if_missing(db, "users", "onboarding_completed", "INTEGER DEFAULT 0")
        # ALTER TABLE accepts only constant defaults.
        for column in ("created_at", "updated_at"):
            await _add_column_if_missing(db, "users", column, "INTEGER DEFAULT NULL")

        await db.execute(
            """CREATE TABLE IF NOT EXISTS subscriptions (
                telegram_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                source TEXT DEFAULT NULL,
                invoice_id INTEGER DEFAULT NULL,
                activated_at TEXT DEFAULT NULL
            )"""
        )
        for column in ("source", "activated_at"):
            await _add_column_if_missing(db, "subscriptions", column, "TEXT DEFAULT NULL")
        await _add_column_if_missing(db, "subscriptions", "invoice_id", "INTEGER DEFAULT NULL")

        # The first bot version keyed payments by invoice_id; those rows can't be mapped, recreate.
        payment_columns = await _table_columns(db, "payments")
        if any(col["name"] == "invoice_id" and col["pk"] for col in payment_columns):
            logger.warning("Legacy payments table with invoice_id primary key found, recreating")
            await db.execute("DROP TABLE payments")
        await db.execute(PAYMENTS_DDL)
        await _add_column_if_missing(db, "payments", "paid_at", "TEXT DEFAULT NULL")
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_payments_telegram_status ON payments (telegram_id, status, id)"
        )
        await db.commit()


@dataclass(slots=True)
class Subscriber:
    telegram_id: int
    sign: str | None = None
    timezone: str | None = None
    onboarding_completed: bool = False
    created_at: int | None = None


def _row_to_subscriber(row: aiosqlite.Row) -> Subscriber:
    return Subscriber(
        telegram_id=int(row["telegram_id"]),
        sign=row["sign"] or None,
        timezone=row["timezone"] or None,
        onboarding_completed=bool(row["onboarding_completed"]),
        created_at=row["created_at"],
    )


class SubscriberDirectory:
    """Chat users known to the bot."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def get_subscriber(self, telegram_id: int) -> Subscriber | None:
        async with open_db(self.db_path) as db:
            async with db.execute(
                """SELECT telegram_id, sign, timezone, onboarding_completed, created_at
                     FROM users
                    WHERE telegram_id = ?""",
                (int(telegram_id),),
            ) as cur:
                row = await cur.fetchone()
                return _row_to_subscriber(row) if row else None

    async def create_subscriber_if_absent(
        self,
        telegram_id: int,
        *,
        sign: str | None = None,
        timezone: str | None = None,
        onboarding_completed: bool = False,
    ) -> Subscriber:
        async with open_db(self.db_path) as db:
            cursor = await execute_write_with_retry(
                db,
                """INSERT OR IGNORE INTO users(telegram_id, sign, timezone, onboarding_completed)
                   VALUES(?, ?, ?, ?)""",
                (int(telegram_id), sign, timezone, 1 if onboarding_completed else 0),
            )
            if cursor.rowcount:
                logger.info("Subscriber %s created", telegram_id)
        subscriber = await self.get_subscriber(telegram_id)
        if subscriber is None:
            raise RuntimeError("Failed to read subscriber after insert")
        return subscriber

