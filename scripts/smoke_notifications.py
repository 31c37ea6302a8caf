#!/usr/bin/env python3
"""
Smoke test for best-effort Telegram delivery (`notifications.safe_send_message`).

Goal:
- delivery errors (bot blocked, chat not found, network, anything else)
  are logged and reported as False, never raised;
- a rate limit is retried once after `retry_after`;
- the activation notice goes to the subscriber's chat.

Run:
  python3 scripts/smoke_notifications.py
"""

from __future__ import annotations

import asyncio
import os
import sys
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


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


class FakeBot:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[int, str]] = []

    async def send_message(self, chat_id: int, text: str, **kwargs):
        self.calls.append((chat_id, text))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


async def _run_checks() -> None:
    from aiogram.exceptions import (  # noqa: WPS433
        TelegramBadRequest,
        TelegramForbiddenError,
        TelegramNetworkError,
        TelegramRetryAfter,
    )
    from aiogram.methods import SendMessage  # noqa: WPS433

    from billing.models import SubscriberId  # noqa: WPS433
    from billing.repository import BillingRepository  # noqa: WPS433
    from billing.service import BillingService  # noqa: WPS433
    from billing.settings import BillingSettings  # noqa: WPS433
    from database import SubscriberDirectory  # noqa: WPS433
    from notifications import TelegramNotifier, safe_send_message  # noqa: WPS433

    method = SendMessage(chat_id=1, text="x")

    ok_bot = FakeBot(None)
    _assert(await safe_send_message(ok_bot, 1, "hello") is True, "successful send must return True")
    _assert(ok_bot.calls == [(1, "hello")], "send must target the chat id")

    failures = [
        TelegramForbiddenError(method=method, message="Forbidden: bot was blocked by the user"),
        TelegramBadRequest(method=method, message="Bad Request: chat not found"),
        TelegramBadRequest(method=method, message="Bad Request: message text is empty"),
        TelegramNetworkError(method=method, message="Request timeout error"),
        asyncio.TimeoutError(),
        RuntimeError("unexpected"),
    ]
    for error in failures:
        bot = FakeBot(error)
        result = await safe_send_message(bot, 2, "hi")
        _assert(result is False, f"{type(error).__name__} must be reported as False")
        _assert(len(bot.calls) == 1, f"{type(error).__name__} must not be retried")

    flaky = FakeBot(TelegramRetryAfter(method=method, message="Too Many Requests", retry_after=0), None)
    _assert(await safe_send_message(flaky, 3, "hi") is True, "rate limit must be retried")
    _assert(len(flaky.calls) == 2, "rate limit must be retried exactly once")

    limited = FakeBot(
        TelegramRetryAfter(method=method, message="Too Many Requests", retry_after=0),
        TelegramRetryAfter(method=method, message="Too Many Requests", retry_after=0),
        None,
    )
    _assert(await safe_send_message(limited, 4, "hi") is False, "persistent rate limit must give up")
    _assert(len(limited.calls) == 2, "persistent rate limit must stop after one retry")

    # Activation notice through the notifier.
    bot = FakeBot(None)
    service = BillingService(
        BillingRepository(":memory:"),
        SubscriberDirectory(":memory:"),
        BillingSettings(merchant_login="demo", password_1="p1", password_2="p2"),
        notifier=TelegramNotifier(bot),
    )
    _assert(await service.notify_activation(SubscriberId(555)) is True, "activation notice must be sent")
    _assert(bot.calls[0][0] == 555, "notice must go to the subscriber")
    _assert(bot.calls[0][1] == "✅ Подписка активирована на 30 дней", f"unexpected text {bot.calls[0][1]!r}")

    blocked_bot = FakeBot(TelegramForbiddenError(method=method, message="Forbidden: bot was blocked by the user"))
    silent = BillingService(
        BillingRepository(":memory:"),
        SubscriberDirectory(":memory:"),
        BillingSettings(merchant_login="demo", password_1="p1", password_2="p2"),
        notifier=TelegramNotifier(blocked_bot),
    )
    _assert(await silent.notify_activation(SubscriberId(556)) is False, "blocked bot must not raise")

    no_notifier = BillingService(
        BillingRepository(":memory:"),
        SubscriberDirectory(":memory:"),
        BillingSettings(merchant_login="demo", password_1="p1", password_2="p2"),
    )
    _assert(await no_notifier.notify_activation(SubscriberId(557)) is False, "missing notifier must be a no-op")


def main() -> None:
    os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
    if str(REPO_ROOT / "src") not in sys.path:
        sys.path.insert(0, str(REPO_ROOT / "src"))
    asyncio.run(_run_checks())
    print("OK: notifications smoke test passed.")


if __name__ == "__main__":
    main()
