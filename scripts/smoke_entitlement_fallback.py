#!/usr/bin/env python3
"""
Smoke test for entitlement resolution (`BillingService.is_entitled`).

Goal:
- an unexpired subscription grants access and is left untouched;
- a paid intent without a live subscription (lost activation) grants access
  and repairs the subscription with source `fallback`, expiring at
  paid_at + duration;
- a paid intent whose window has elapsed grants nothing and writes nothing;
- rows left by the previous bot version (integer amounts, NULL paid_at,
  "...Z" timestamps) are understood.

Run:
  python3 scripts/smoke_entitlement_fallback.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sqlite3
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.extend([Path.cwd(), Path("/app"), Path("/workspace")])
    for root in candidates:
        if (root / "pyproject.toml").exists() and (root / "src").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with pyproject.toml and src/")


REPO_ROOT = _resolve_repo_root()
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _iso(value: datetime) -> str:
    return value.isoformat()


def _seed(db_path: Path) -> None:
    conn = sqlite3.connect(db_path)
    try:
        payments = [
            # (id, telegram_id, amount, status, created_at, paid_at)
            (3001, "101", "149.00", "paid", _iso(NOW - timedelta(days=2, hours=1)), _iso(NOW - timedelta(days=2))),
            (3002, "102", "149.00", "paid", _iso(NOW - timedelta(days=5)), _iso(NOW - timedelta(days=5))),
            (3003, "103", "149.00", "paid", _iso(NOW - timedelta(days=40)), _iso(NOW - timedelta(days=40))),
            (3004, "104", 149, "paid", "2026-02-28T12:00:00.000Z", None),
            (3005, "105", "149.00", "pending", _iso(NOW - timedelta(days=1)), None),
            (3006, "106", "149.00", "paid", _iso(NOW - timedelta(days=10)), _iso(NOW - timedelta(days=10))),
            (3007, "106", "149.00", "paid", _iso(NOW - timedelta(days=35)), _iso(NOW - timedelta(days=35))),
        ]
        conn.executemany(
            "INSERT INTO payments(id, telegram_id, amount, status, created_at, paid_at) VALUES(?, ?, ?, ?, ?, ?)",
            payments,
        )
        subscriptions = [
            # (telegram_id, status, expires_at, source, invoice_id, activated_at)
            ("102", "active", _iso(NOW - timedelta(days=1)), "webhook", 3000, _iso(NOW - timedelta(days=31))),
            ("106", "active", _iso(NOW + timedelta(days=20)), "webhook", 3006, _iso(NOW - timedelta(days=10))),
            ("107", "active", "2099-01-01T00:00:00.000Z", None, None, None),
        ]
        conn.executemany(
            """INSERT INTO subscriptions(telegram_id, status, expires_at, source, invoice_id, activated_at)
               VALUES(?, ?, ?, ?, ?, ?)""",
            subscriptions,
        )
        conn.commit()
    finally:
        conn.close()


def _subscription_row(db_path: Path, telegram_id: str) -> tuple | None:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(
            "SELECT status, expires_at, source, invoice_id FROM subscriptions WHERE telegram_id = ?",
            (telegram_id,),
        ).fetchone()
    finally:
        conn.close()


async def _run_checks(db_path: Path) -> None:
    from billing.models import SubscriberId  # noqa: WPS433
    from billing.repository import BillingRepository, parse_iso_utc  # noqa: WPS433
    from billing.service import BillingService  # noqa: WPS433
    from billing.settings import BillingSettings  # noqa: WPS433
    from database import SubscriberDirectory, init_db  # noqa: WPS433

    await init_db(str(db_path))
    _seed(db_path)

    repository = BillingRepository(str(db_path))
    service = BillingService(
        repository,
        SubscriberDirectory(str(db_path)),
        BillingSettings(merchant_login="demo", password_1="p1", password_2="p2"),
        clock=lambda: NOW,
    )

    # Never paid: nothing granted, nothing written.
    _assert(not await service.is_entitled(100), "unknown subscriber must not be entitled")
    _assert(_subscription_row(db_path, "100") is None, "no subscription must be written for 100")

    # Paid, activation lost: repaired from the payment.
    _assert(await service.is_entitled(101), "paid subscriber without subscription must be entitled")
    status, expires_at, source, invoice_id = _subscription_row(db_path, "101")
    _assert(status == "active" and source == "fallback" and invoice_id == 3001, f"unexpected repair: {status, source, invoice_id}")
    _assert(
        parse_iso_utc(expires_at) == NOW - timedelta(days=2) + timedelta(days=30),
        f"fallback expiry must be paid_at + 30 days, got {expires_at}",
    )

    # Expired subscription, newer payment: extended to the payment window.
    _assert(await service.is_entitled(SubscriberId(102)), "expired subscription with fresh payment must be entitled")
    _, expires_at, source, invoice_id = _subscription_row(db_path, "102")
    _assert(source == "fallback" and invoice_id == 3002, "expired subscription must be repaired from 3002")
    _assert(parse_iso_utc(expires_at) == NOW + timedelta(days=25), f"unexpected expiry {expires_at}")

    # Old payment: window elapsed, nothing written.
    _assert(not await service.is_entitled(103), "payment older than the duration must not grant access")
    _assert(_subscription_row(db_path, "103") is None, "elapsed payment must not create a subscription")

    # Legacy row: integer amount, NULL paid_at, "Z" timestamp.
    _assert(await service.is_entitled("104"), "legacy paid row must be honoured")
    _, expires_at, source, _ = _subscription_row(db_path, "104")
    _assert(
        parse_iso_utc(expires_at) == datetime(2026, 3, 30, 12, 0, tzinfo=timezone.utc),
        f"legacy fallback must count from created_at, got {expires_at}",
    )
    legacy_payment = await repository.get_latest_paid_payment(SubscriberId(104))
    _assert(legacy_payment.amount == "149.00", "legacy integer amount must read canonically")

    # Pending only: not entitled.
    _assert(not await service.is_entitled(105), "pending payment must not grant access")

    # Active subscription wins and is not rewritten.
    before = _subscription_row(db_path, "106")
    _assert(await service.is_entitled(106), "active subscription must grant access")
    _assert(_subscription_row(db_path, "106") == before, "active subscription must stay untouched")

    # Subscription written by the previous bot version.
    active = await service.get_active_subscription(107)
    _assert(active is not None and active.expires_at.year == 2099, "'Z' suffixed expiry must parse")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="entitlement-smoke-"))
    try:
        db_path = tmpdir / "db.sqlite"
        os.environ["DB_PATH"] = str(db_path)
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")

        if str(REPO_ROOT / "src") not in sys.path:
            sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: entitlement fallback smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
