#!/usr/bin/env python3
"""
Smoke test for the subscription chat flow (handlers.py).

Goal:
- /start registers the subscriber;
- /subscribe and the `pay` button show a Robokassa link, reusing the same
  pending invoice;
- misconfigured merchant shows "payment temporarily unavailable";
- show_paywall() lets entitled users through and prompts everyone else;
- /status and /subscribe reflect an activated subscription.

Run:
  python3 scripts/smoke_subscribe_handler_flow.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
import types
from datetime import datetime, timezone
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


class FakeMessage:
    def __init__(self, user_id: int) -> None:
        self.from_user = types.SimpleNamespace(id=user_id, username="astro", first_name="Ann", last_name=None)
        self.chat = types.SimpleNamespace(id=user_id)
        self.answers: list[tuple[str, object]] = []

    async def answer(self, text: str, reply_markup=None, **kwargs):
        self.answers.append((text, reply_markup))
        return types.SimpleNamespace(message_id=len(self.answers))


class FakeCallback:
    def __init__(self, user_id: int, message: FakeMessage) -> None:
        self.from_user = types.SimpleNamespace(id=user_id)
        self.message = message
        self.data = "pay"
        self.answered = 0

    async def answer(self, *args, **kwargs):
        self.answered += 1


def _button_url(markup) -> str | None:
    if markup is None:
        return None
    return markup.inline_keyboard[0][0].url


async def _run_checks(db_path: Path) -> None:
    import handlers  # noqa: WPS433
    from billing.models import SubscriberId  # noqa: WPS433
    from billing.payments import MERCHANT_URL  # noqa: WPS433
    from billing.repository import BillingRepository  # noqa: WPS433
    from billing.service import BillingService, InvoiceIdSource  # noqa: WPS433
    from billing.settings import BillingSettings  # noqa: WPS433
    from billing.signature import callback_signature  # noqa: WPS433
    from database import SubscriberDirectory, init_db  # noqa: WPS433

    await init_db(str(db_path))
    directory = SubscriberDirectory(str(db_path))

    def build(settings: BillingSettings) -> BillingService:
        return BillingService(
            BillingRepository(str(db_path)),
            directory,
            settings,
            invoice_ids=InvoiceIdSource(clock=lambda: 1_772_366_400),
            clock=lambda: NOW,
        )

    service = build(BillingSettings(merchant_login="demo", password_1="p1", password_2="p2"))
    broken = build(BillingSettings(merchant_login="", password_1="", password_2=""))

    # /start registers the user.
    start_msg = FakeMessage(501)
    await handlers.cmd_start(start_msg, billing_service=service)
    _assert(await directory.get_subscriber(501) is not None, "/start must create the subscriber")
    _assert(start_msg.answers and start_msg.answers[0][1] is not None, "/start must offer the subscribe button")
    _assert(
        start_msg.answers[0][1].inline_keyboard[0][0].callback_data == handlers.PAY_CALLBACK,
        "subscribe button must trigger the pay callback",
    )

    # Misconfigured merchant.
    broken_msg = FakeMessage(501)
    await handlers.cmd_subscribe(broken_msg, billing_service=broken)
    _assert(broken_msg.answers == [(handlers.PAYMENT_UNAVAILABLE_TEXT, None)], f"unexpected: {broken_msg.answers}")

    # /subscribe shows a link.
    sub_msg = FakeMessage(501)
    await handlers.cmd_subscribe(sub_msg, billing_service=service)
    text, markup = sub_msg.answers[0]
    url = _button_url(markup)
    _assert(url is not None and url.startswith(MERCHANT_URL), f"payment button must link to Robokassa: {url}")
    _assert("149 ₽" in text and "30 дней" in text, f"offer must show price and duration: {text}")
    _assert("🔒" not in text, "plain /subscribe must not use the locked header")

    # `pay` button reuses the same invoice.
    cb_msg = FakeMessage(501)
    callback = FakeCallback(501, cb_msg)
    await handlers.cb_pay(callback, billing_service=service)
    _assert(callback.answered == 1, "callback must be answered")
    _assert(_button_url(cb_msg.answers[0][1]) == url, "pay button must reuse the pending invoice link")

    # Paywall for a non-subscriber.
    wall_msg = FakeMessage(501)
    _assert(not await handlers.show_paywall(wall_msg, 501, service), "non-subscriber must hit the paywall")
    _assert("🔒" in wall_msg.answers[0][0], "paywall must use the locked header")

    status_msg = FakeMessage(501)
    await handlers.cmd_status(status_msg, billing_service=service)
    _assert(status_msg.answers[0][0] == "Подписка не активна.", f"unexpected status: {status_msg.answers}")

    # Pay and check again.
    pending = await service.repository.get_pending_payment(SubscriberId(501))
    outcome = await service.apply_callback(
        {"OutSum": pending.amount, "InvId": str(pending.id), "SignatureValue": callback_signature(pending.amount, pending.id, "p2")}
    )
    _assert(outcome.acknowledged, f"payment must be applied: {outcome}")

    open_msg = FakeMessage(501)
    _assert(await handlers.show_paywall(open_msg, 501, service), "subscriber must pass the paywall")
    _assert(open_msg.answers == [], "paywall must stay silent for subscribers")

    status_msg = FakeMessage(501)
    await handlers.cmd_status(status_msg, billing_service=service)
    _assert(status_msg.answers[0][0] == "✅ Подписка активна до 31.03.2026.", f"unexpected status: {status_msg.answers}")

    again_msg = FakeMessage(501)
    await handlers.cmd_subscribe(again_msg, billing_service=service)
    _assert(again_msg.answers[0][0].startswith("✅ Подписка уже активна до 31.03.2026"), f"unexpected: {again_msg.answers}")
    _assert(again_msg.answers[0][1] is None, "active subscriber must not get a payment button")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="subscribe-flow-smoke-"))
    try:
        db_path = tmpdir / "db.sqlite"
        os.environ["DB_PATH"] = str(db_path)
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")

        if str(REPO_ROOT / "src") not in sys.path:
            sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: subscribe handler flow smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
