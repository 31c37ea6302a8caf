#!/usr/bin/env python3
"""
Smoke test for env configuration and logging setup.

Goal:
- ROBOKASSA_* / SUBSCRIPTION_* env values reach BillingSettings, with quotes
  stripped and comma decimals accepted;
- defaults give 149 RUB for 30 days, md5, Culture=ru;
- get_billing_service() wires the configured DB path;
- configure_logging() writes to a rotating file under LOG_DIR.

Run:
  python3 scripts/smoke_config_logging.py
"""

from __future__ import annotations

import importlib
import logging
import os
import shutil
import sys
import tempfile
from decimal import Decimal
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
ENV_KEYS = (
    "BOT_TOKEN",
    "DB_PATH",
    "ROBOKASSA_MERCHANT_LOGIN",
    "ROBOKASSA_PASSWORD_1",
    "ROBOKASSA_PASSWORD_2",
    "ROBOKASSA_TEST",
    "ROBOKASSA_HASH_ALGORITHM",
    "SUBSCRIPTION_PRICE",
    "SUBSCRIPTION_DAYS",
    "LOG_DIR",
    "LOG_LEVEL",
)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _reload_config():
    import config  # noqa: WPS433

    return importlib.reload(config)


def _run_checks(tmpdir: Path) -> None:
    from billing.settings import BillingSettings  # noqa: WPS433

    # Defaults.
    for key in ENV_KEYS[2:]:
        os.environ.pop(key, None)
    config = _reload_config()
    _assert(not config.is_robokassa_configured(), "empty credentials must not count as configured")
    defaults = BillingSettings.from_config()
    _assert(defaults.amount == "149.00" and defaults.subscription_days == 30, f"unexpected defaults {defaults}")
    _assert(defaults.hash_algorithm == "md5" and defaults.culture == "ru", "md5 and ru must be the defaults")
    _assert(not defaults.test_mode and not defaults.can_issue, "defaults must not be able to issue")

    # Explicit values.
    os.environ["DB_PATH"] = str(tmpdir / "configured.sqlite")
    os.environ["ROBOKASSA_MERCHANT_LOGIN"] = ' "astro-shop" '
    os.environ["ROBOKASSA_PASSWORD_1"] = "'first'"
    os.environ["ROBOKASSA_PASSWORD_2"] = "second"
    os.environ["ROBOKASSA_TEST"] = "yes"
    os.environ["ROBOKASSA_HASH_ALGORITHM"] = "SHA256"
    os.environ["SUBSCRIPTION_PRICE"] = "199,5"
    os.environ["SUBSCRIPTION_DAYS"] = "7"
    config = _reload_config()
    _assert(config.is_robokassa_configured(), "login and password #1 must count as configured")
    settings = BillingSettings.from_config()
    _assert(settings.merchant_login == "astro-shop", f"quotes must be stripped: {settings.merchant_login!r}")
    _assert(settings.password_1 == "first" and settings.password_2 == "second", "passwords must be read")
    _assert(settings.test_mode, "ROBOKASSA_TEST=yes must enable test mode")
    _assert(settings.hash_algorithm == "sha256", "algorithm must be normalised")
    _assert(settings.price == Decimal("199.5") and settings.amount == "199.50", f"unexpected price {settings.price}")
    _assert(settings.description == "Подписка на 7 дней", f"unexpected description {settings.description}")

    from billing import get_billing_service  # noqa: WPS433

    service = get_billing_service()
    _assert(service.repository.db_path == str(tmpdir / "configured.sqlite"), "service must use DB_PATH")
    _assert(service.settings == settings, "service must use configured settings")
    _assert(service.notifier is None, "notifier is optional")

    # Logging to a rotating file.
    from logging_setup import configure_logging  # noqa: WPS433

    log_dir = tmpdir / "logs"
    os.environ["LOG_DIR"] = str(log_dir)
    os.environ["LOG_LEVEL"] = "debug"
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("astroguide-smoke")
        logging.getLogger("billing.smoke").info("invoice %s paid", 1001)
        for handler in root.handlers:
            handler.flush()
        log_file = log_dir / "astroguide-smoke.log"
        _assert(log_file.exists(), "log file must be created")
        content = log_file.read_text(encoding="utf-8")
        _assert("INFO:billing.smoke:invoice 1001 paid" in content, f"unexpected log content: {content!r}")
        _assert(root.level == logging.DEBUG, "LOG_LEVEL must be applied")
        _assert(logging.getLogger("aiohttp.access").level == logging.WARNING, "access log must be quiet")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="config-logging-smoke-"))
    saved_env = {key: os.environ.get(key) for key in ENV_KEYS}
    try:
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        if str(REPO_ROOT / "src") not in sys.path:
            sys.path.insert(0, str(REPO_ROOT / "src"))
        _run_checks(tmpdir)
        print("OK: config and logging smoke test passed.")
    finally:
        for key, value in saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
