#!/usr/bin/env python3
"""
Smoke test for payment issuance (`BillingService.request_payment`).

Goal:
- missing merchant credentials give `misconfigured` and write nothing;
- first request creates one pending intent, repeated requests reuse it;
- an active subscriber is blocked from paying again;
- an invoice id collision is retried exactly once;
- invoice ids from the clock never repeat inside one process.

Run:
  python3 scripts/smoke_payment_issuer.py
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
from urllib.parse import parse_qs, urlsplit


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


class ScriptedInvoiceIds:
    def __init__(self, *ids: int) -> None:
        self._ids = list(ids)

    def next_id(self):
        from billing.models import InvoiceId  # noqa: WPS433

        return InvoiceId(self._ids.pop(0))


def _payment_rows(db_path: Path) -> list[tuple]:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute("SELECT id, telegram_id, amount, status FROM payments ORDER BY id").fetchall()
    finally:
        conn.close()


async def _run_checks(db_path: Path) -> None:
    import aiosqlite  # noqa: WPS433

    from billing.models import InvoiceId, IssueStatus, SubscriberId, ValidationError  # noqa: WPS433
    from billing.repository import BillingRepository  # noqa: WPS433
    from billing.service import BillingService, InvoiceIdSource  # noqa: WPS433
    from billing.settings import BillingSettings  # noqa: WPS433
    from billing.signature import callback_signature, sign  # noqa: WPS433
    from database import SubscriberDirectory, init_db  # noqa: WPS433

    await init_db(str(db_path))
    repository = BillingRepository(str(db_path))
    directory = SubscriberDirectory(str(db_path))
    settings = BillingSettings(merchant_login="demo", password_1="p1", password_2="p2")

    def build(service_settings: BillingSettings, *ids: int) -> BillingService:
        return BillingService(
            repository,
            directory,
            service_settings,
            invoice_ids=ScriptedInvoiceIds(*ids),
            clock=lambda: NOW,
        )

    # 1) Misconfigured merchant: no link, nothing written.
    for broken in (
        BillingSettings(merchant_login="", password_1="p1", password_2="p2"),
        BillingSettings(merchant_login="demo", password_1="", password_2="p2"),
    ):
        result = await build(broken, 1).request_payment(42)
        _assert(result.status is IssueStatus.MISCONFIGURED, f"expected misconfigured, got {result}")
        _assert(not result.has_link and result.redirect_url is None, "misconfigured result must not carry a link")
    _assert(_payment_rows(db_path) == [], "misconfigured issuance must not write payments")

    # 2) First request creates the intent.
    service = build(settings, 1001, 1002)
    created = await service.request_payment(42)
    _assert(created.status is IssueStatus.CREATED, f"expected created, got {created}")
    _assert(created.invoice_id is not None and created.invoice_id.value == 1001, "invoice id must come from the source")
    _assert(created.amount == "149.00", "amount must be canonical")
    query = {key: values[0] for key, values in parse_qs(urlsplit(created.redirect_url).query).items()}
    _assert(query["InvId"] == "1001" and query["OutSum"] == "149.00", f"unexpected link params: {query}")
    _assert(query["SignatureValue"] == sign("demo", "149.00", 1001, "p1"), "link must be signed with password #1")
    _assert(_payment_rows(db_path) == [(1001, "42", "149.00", "pending")], f"rows: {_payment_rows(db_path)}")

    # 3) Repeated request reuses the pending intent with an identical link.
    reused = await service.request_payment("42")
    _assert(reused.status is IssueStatus.REUSED, f"expected reused, got {reused}")
    _assert(reused.invoice_id == created.invoice_id, "pending intent must be reused")
    _assert(reused.redirect_url == created.redirect_url, "reused link must be rebuilt identically")
    _assert(len(_payment_rows(db_path)) == 1, "reuse must not insert a new intent")

    # 4) After payment the subscriber is blocked from paying again.
    outcome = await service.apply_callback(
        {"OutSum": "149.00", "InvId": "1001", "SignatureValue": callback_signature("149.00", 1001, "p2")}
    )
    _assert(outcome.acknowledged, f"callback must be accepted: {outcome}")
    blocked = await service.request_payment(42)
    _assert(blocked.status is IssueStatus.BLOCKED, f"expected blocked, got {blocked}")
    _assert(blocked.expires_at == NOW + timedelta(days=30), "blocked result must carry the expiry")
    _assert(blocked.redirect_url is None, "blocked result must not carry a link")
    _assert(len(_payment_rows(db_path)) == 1, "blocked issuance must not write payments")

    # 5) Collision on the generated id is retried once.
    await repository.create_payment(
        invoice_id=InvoiceId(2001),
        subscriber_id=SubscriberId(77),
        amount="149.00",
        created_at=NOW,
    )
    retried = await build(settings, 2001, 2002).request_payment(43)
    _assert(retried.status is IssueStatus.CREATED, f"expected created after retry, got {retried}")
    _assert(retried.invoice_id.value == 2002, "retry must use a fresh id")

    double_collision = build(settings, 2001, 2002)
    try:
        await double_collision.request_payment(44)
    except aiosqlite.IntegrityError:
        pass
    else:
        raise AssertionError("second collision must propagate")

    # 6) Invalid subscriber id.
    try:
        await service.request_payment("not-a-user")
    except ValidationError:
        pass
    else:
        raise AssertionError("invalid subscriber id must raise ValidationError")

    # 7) Clock-derived ids stay unique within the process.
    source = InvoiceIdSource(clock=lambda: 5)
    ids = [source.next_id().value for _ in range(3)]
    _assert(ids == [5000, 5001, 5002], f"ids must be strictly increasing: {ids}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="payment-issuer-smoke-"))
    try:
        db_path = tmpdir / "db.sqlite"
        os.environ["DB_PATH"] = str(db_path)
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")

        if str(REPO_ROOT / "src") not in sys.path:
            sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: payment issuer smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
