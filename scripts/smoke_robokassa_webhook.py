#!/usr/bin/env python3
"""
Smoke test for the Robokassa ResultURL webhook (POST /webhook/robokassa).

Goal:
- invoice 1001 / 149.00: webhook answers OK1001, marks the intent paid and
  activates 30 days; a replay answers OK1001 without touching expires_at;
- a forged 150.00 callback is rejected with 400 and the intent stays pending;
- malformed / unknown / badly signed callbacks map to 400 / 404 / 400;
- body fields win over query string fields, JSON bodies are accepted;
- storage failures answer 500 so Robokassa retries, and a later retry applies;
- notification failures never change the acknowledgement.

Run:
  python3 scripts/smoke_robokassa_webhook.py
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
WEBHOOK = "/webhook/robokassa"


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


class ScriptedInvoiceIds:
    def __init__(self, *ids: int) -> None:
        self._ids = list(ids)

    def next_id(self):
        from billing.models import InvoiceId  # noqa: WPS433

        return InvoiceId(self._ids.pop(0))


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []

    async def send_message(self, subscriber_id, text: str) -> bool:
        self.sent.append((subscriber_id.telegram_id, text))
        return True


class ExplodingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def send_message(self, subscriber_id, text: str) -> bool:
        self.calls += 1
        raise RuntimeError("telegram is down")


def _payment_status(db_path: Path, invoice_id: int) -> str | None:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT status FROM payments WHERE id = ?", (invoice_id,)).fetchone()
        return row[0] if row else None
    finally:
        conn.close()


async def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


async def _run_checks(db_path: Path) -> None:
    from aiohttp.test_utils import TestClient, TestServer  # noqa: WPS433

    from api_server import create_api_app  # noqa: WPS433
    from billing.models import SubscriberId  # noqa: WPS433
    from billing.repository import BillingRepository  # noqa: WPS433
    from billing.service import BillingService, CallbackStatus  # noqa: WPS433
    from billing.settings import BillingSettings  # noqa: WPS433
    from billing.signature import callback_signature  # noqa: WPS433
    from database import SubscriberDirectory, init_db  # noqa: WPS433

    await init_db(str(db_path))
    clock = {"now": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)}
    notifier = RecordingNotifier()
    repository = BillingRepository(str(db_path))
    directory = SubscriberDirectory(str(db_path))
    service = BillingService(
        repository,
        directory,
        BillingSettings(merchant_login="demo", password_1="p1", password_2="p2"),
        notifier=notifier,
        invoice_ids=ScriptedInvoiceIds(1001, 1002, 1003, 1004, 1005, 1006),
        clock=lambda: clock["now"],
    )

    def signed(out_sum: str, inv_id: int | str) -> dict[str, str]:
        return {
            "OutSum": out_sum,
            "InvId": str(inv_id),
            "SignatureValue": callback_signature(out_sum, int(inv_id), "p2").upper(),
        }

    for user_id in (42, 43, 44, 45, 46, 47):
        await service.request_payment(user_id)
    _assert(_payment_status(db_path, 1001) == "pending", "invoice 1001 must start pending")

    app = create_api_app(service)
    async with TestClient(TestServer(app)) as client:
        # Health endpoints.
        for path in ("/health", "/"):
            resp = await client.get(path)
            body = await resp.json()
            _assert(resp.status == 200 and body["status"] == "ok", f"{path} must report ok: {body}")

        # 1) Happy path: OK1001, paid, 30 days, subscriber row created, notice sent.
        _assert(await directory.get_subscriber(42) is None, "payment must not need a prior /start")
        paid_at = clock["now"]
        resp = await client.post(WEBHOOK, data=signed("149.00", 1001))
        _assert(resp.status == 200, f"expected 200, got {resp.status}")
        _assert(await resp.text() == "OK1001", "acknowledgement must be OK1001")
        _assert(resp.content_type == "text/plain", f"unexpected content type {resp.content_type}")
        _assert(_payment_status(db_path, 1001) == "paid", "invoice 1001 must be paid")
        subscription = await repository.get_subscription(SubscriberId(42))
        _assert(subscription is not None, "subscription must be created")
        _assert(subscription.expires_at == paid_at + timedelta(days=30), "subscription must last 30 days")
        _assert(subscription.source == "webhook", "activation source must be webhook")
        _assert(subscription.invoice_id is not None and subscription.invoice_id.value == 1001, "invoice must be linked")
        _assert(await directory.get_subscriber(42) is not None, "subscriber row must be created")
        _assert(await _wait_for(lambda: len(notifier.sent) == 1), "activation notice must be sent")
        _assert(notifier.sent[0][0] == 42 and "30 дней" in notifier.sent[0][1], f"unexpected notice: {notifier.sent}")

        # 2) Replay later: same answer, expiry unchanged, no second notice.
        clock["now"] = paid_at + timedelta(days=3)
        resp = await client.post(WEBHOOK, data=signed("149.00", 1001))
        _assert(resp.status == 200 and await resp.text() == "OK1001", "replay must be acknowledged")
        replayed = await repository.get_subscription(SubscriberId(42))
        _assert(replayed.expires_at == subscription.expires_at, "replay must not extend the subscription")
        await asyncio.sleep(0.05)
        _assert(len(notifier.sent) == 1, "replay must not notify again")

        # 3) Forged 150.00: signature of the real amount does not verify.
        forged = signed("149.00", 1002)
        forged["OutSum"] = "150.00"
        resp = await client.post(WEBHOOK, data=forged)
        _assert(resp.status == 400, f"forged callback must be rejected, got {resp.status}")
        _assert(_payment_status(db_path, 1002) == "pending", "forged callback must not mark paid")

        # A validly signed but different amount is rejected too.
        resp = await client.post(WEBHOOK, data=signed("150.00", 1002))
        _assert(resp.status == 400, "amount mismatch must be rejected")
        _assert(_payment_status(db_path, 1002) == "pending", "amount mismatch must not mark paid")
        _assert(await repository.get_subscription(SubscriberId(43)) is None, "no subscription on rejection")

        # 4) Malformed and unknown callbacks.
        resp = await client.post(WEBHOOK, data={"OutSum": "149.00", "InvId": "1002"})
        _assert(resp.status == 400, "missing SignatureValue must be rejected")
        resp = await client.post(WEBHOOK)
        _assert(resp.status == 400, "empty callback must be rejected")
        for bad_id in ("abc", "-5", "0"):
            resp = await client.post(
                WEBHOOK,
                data={"OutSum": "149.00", "InvId": bad_id, "SignatureValue": "X"},
            )
            _assert(resp.status == 400, f"InvId={bad_id!r} must be rejected")
        resp = await client.post(WEBHOOK, data=signed("149.00", 9999))
        _assert(resp.status == 404, f"unknown invoice must be 404, got {resp.status}")
        resp = await client.post(
            WEBHOOK,
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        _assert(resp.status == 400, "unreadable JSON body must be rejected")

        # 5) Body wins over the query string; OutSum with extra zeros still matches the stored amount.
        resp = await client.post(WEBHOOK, params={"InvId": "9999"}, data=signed("149.000000", 1002))
        _assert(resp.status == 200 and await resp.text() == "OK1002", "body InvId must take precedence")
        _assert(_payment_status(db_path, 1002) == "paid", "invoice 1002 must be paid")

        # 6) JSON body.
        resp = await client.post(WEBHOOK, json=signed("149.00", 1003))
        _assert(resp.status == 200 and await resp.text() == "OK1003", "JSON body must be accepted")

        # 7) Query-only delivery with a failing notifier still acknowledges.
        exploding = ExplodingNotifier()
        service.notifier = exploding
        resp = await client.post(WEBHOOK, params=signed("149.00", 1004))
        _assert(resp.status == 200 and await resp.text() == "OK1004", "query-only callback must be accepted")
        _assert(await _wait_for(lambda: exploding.calls == 1), "failing notifier must still be invoked")
        _assert(_payment_status(db_path, 1004) == "paid", "notifier failure must not undo payment")
        service.notifier = notifier

        # 8) Storage failure: 500, nothing applied, retry succeeds.
        original = repository.mark_paid_and_activate

        async def broken_mark_paid(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        repository.mark_paid_and_activate = broken_mark_paid
        try:
            resp = await client.post(WEBHOOK, data=signed("149.00", 1005))
            _assert(resp.status == 500, f"storage failure must be 500, got {resp.status}")
        finally:
            repository.mark_paid_and_activate = original
        _assert(_payment_status(db_path, 1005) == "pending", "failed delivery must leave the intent pending")
        resp = await client.post(WEBHOOK, data=signed("149.00", 1005))
        _assert(resp.status == 200 and await resp.text() == "OK1005", "retry after failure must apply")
        _assert(_payment_status(db_path, 1005) == "paid", "retry must mark paid")

    # 9) Concurrent deliveries of one pending invoice apply exactly once.
    outcomes = await asyncio.gather(
        *(service.apply_callback(signed("149.00", 1006)) for _ in range(3))
    )
    _assert(all(outcome.acknowledged for outcome in outcomes), "all deliveries must be acknowledged")
    accepted = [outcome for outcome in outcomes if outcome.status is CallbackStatus.ACCEPTED]
    _assert(len(accepted) == 1, f"exactly one delivery must apply: {[o.status for o in outcomes]}")
    _assert(_payment_status(db_path, 1006) == "paid", "invoice 1006 must be paid")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="robokassa-webhook-smoke-"))
    try:
        db_path = tmpdir / "db.sqlite"
        os.environ["DB_PATH"] = str(db_path)
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")

        if str(REPO_ROOT / "src") not in sys.path:
            sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: robokassa webhook smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
