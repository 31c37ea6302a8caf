#!/usr/bin/env python3
"""
Dynamic smoke test: init_db() upgrade of databases left by older bot versions.

Goal:
- the very first `payments` table (invoice_id primary key) is recreated in
  the current shape;
- the intermediate `payments` table (AUTOINCREMENT id, INTEGER amount, no
  paid_at) keeps its rows and gains `paid_at`;
- a minimal `subscriptions` table gains source/invoice_id/activated_at and
  keeps existing rows readable;
- init_db() is idempotent.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sqlite3
import sys
import tempfile
from pathlib import Path


REQUIRED_PAYMENT_COLUMNS = {"id", "telegram_id", "amount", "status", "created_at", "paid_at"}
REQUIRED_SUBSCRIPTION_COLUMNS = {"telegram_id", "status", "expires_at", "source", "invoice_id", "activated_at"}


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.extend([Path.cwd(), Path("/app"), Path("/workspace")])
    for root in candidates:
        if (root / "src").exists() and (root / "pyproject.toml").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with src/ and pyproject.toml")


REPO_ROOT = _resolve_repo_root()


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _seed_first_version(db_path: Path) -> None:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            """
            CREATE TABLE payments (
                invoice_id INTEGER PRIMARY KEY,
                telegram_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                status TEXT NOT NULL
            )
            """
        )
        conn.execute("INSERT INTO payments VALUES(1, '42', 149, 'pending')")
        conn.commit()
    finally:
        conn.close()


def _seed_intermediate_version(db_path: Path) -> None:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            """
            CREATE TABLE users (
                telegram_id INTEGER PRIMARY KEY,
                sign TEXT,
                timezone TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                telegram_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE subscriptions (
                telegram_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """
        )
        conn.execute("INSERT INTO users(telegram_id, sign) VALUES(42, 'leo')")
        conn.execute(
            "INSERT INTO payments(id, telegram_id, amount, status, created_at) "
            "VALUES(1700000000000, '42', 149, 'paid', '2026-02-20T10:00:00.000Z')"
        )
        conn.execute(
            "INSERT INTO subscriptions VALUES('42', 'active', '2099-03-22T10:00:00.000Z')"
        )
        conn.commit()
    finally:
        conn.close()


def _columns(db_path: Path, table: str) -> dict[str, tuple]:
    conn = sqlite3.connect(db_path)
    try:
        return {str(row[1]): row for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    finally:
        conn.close()


def _count(db_path: Path, table: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
    finally:
        conn.close()


async def _run_checks(tmpdir: Path) -> None:
    from billing.models import InvoiceId, PaymentStatus, SubscriberId  # noqa: WPS433
    from billing.repository import BillingRepository  # noqa: WPS433
    from database import SubscriberDirectory, init_db  # noqa: WPS433

    # First version: invoice_id primary key -> table recreated.
    first_db = tmpdir / "first.sqlite"
    _seed_first_version(first_db)
    await init_db(str(first_db))
    columns = _columns(first_db, "payments")
    _assert(set(columns) == REQUIRED_PAYMENT_COLUMNS, f"unexpected payments columns: {sorted(columns)}")
    _assert(_count(first_db, "payments") == 0, "legacy invoice_id rows must be dropped")

    # Intermediate version: rows preserved, columns added.
    db_path = tmpdir / "intermediate.sqlite"
    _seed_intermediate_version(db_path)
    await init_db(str(db_path))
    await init_db(str(db_path))

    _assert(REQUIRED_PAYMENT_COLUMNS <= set(_columns(db_path, "payments")), "payments must gain paid_at")
    _assert(
        REQUIRED_SUBSCRIPTION_COLUMNS <= set(_columns(db_path, "subscriptions")),
        "subscriptions must gain audit columns",
    )
    _assert("onboarding_completed" in _columns(db_path, "users"), "users must gain onboarding_completed")

    repository = BillingRepository(str(db_path))
    payment = await repository.get_payment(InvoiceId(1700000000000))
    _assert(payment is not None, "intermediate payment row must survive")
    _assert(payment.amount == "149.00" and payment.status is PaymentStatus.PAID, f"unexpected payment {payment}")
    _assert(payment.paid_at is None, "legacy payment has no paid_at")

    subscription = await repository.get_subscription(SubscriberId(42))
    _assert(subscription is not None and subscription.expires_at.year == 2099, "legacy subscription must be readable")
    _assert(subscription.source is None and subscription.invoice_id is None, "new columns default to NULL")

    subscriber = await SubscriberDirectory(str(db_path)).get_subscriber(42)
    _assert(subscriber is not None and subscriber.sign == "leo", "legacy user must be readable")
    _assert(subscriber.onboarding_completed is False, "onboarding flag defaults to 0")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="legacy-schema-smoke-"))
    try:
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")

        if str(REPO_ROOT / "src") not in sys.path:
            sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(tmpdir))
        print("OK: init_db legacy schema smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
