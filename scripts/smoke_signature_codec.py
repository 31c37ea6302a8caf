#!/usr/bin/env python3
"""
Smoke test for the Robokassa signature codec and payment link builder.

Goal:
- outbound links are signed over MerchantLogin:OutSum:InvId:Password1;
- callback signatures verify over OutSum:InvId:Password2 case-insensitively,
  and any single-field change (amount text, invoice id, secret) fails;
- bad input never raises from `verify`, only returns False.

Run:
  python3 scripts/smoke_signature_codec.py
"""

from __future__ import annotations

import hashlib
import os
import sys
from decimal import Decimal
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


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _expect_validation_error(fn, msg: str) -> None:
    from billing.models import ValidationError  # noqa: WPS433

    try:
        fn()
    except ValidationError:
        return
    raise AssertionError(msg)


def _run_checks() -> None:
    from billing.models import InvoiceId, SubscriberId, format_amount  # noqa: WPS433
    from billing.payments import (  # noqa: WPS433
        MERCHANT_URL,
        build_payment_url,
        extract_callback,
        merge_callback_params,
        success_response_text,
    )
    from billing.settings import BillingSettings  # noqa: WPS433
    from billing.signature import callback_signature, sign, verify  # noqa: WPS433

    # Outbound: exact md5 over the colon-joined fields.
    expected = hashlib.md5(b"demo:149.00:1001:p1").hexdigest()
    _assert(sign("demo", "149.00", 1001, "p1") == expected, "outbound signature must be md5 of login:sum:id:pass1")
    _assert(sign("demo", "149.00", InvoiceId(1001), "p1") == expected, "InvoiceId and int must sign the same")

    # Inbound round-trip.
    digest = callback_signature("149.00", 1001, "p2")
    _assert(digest == hashlib.md5(b"149.00:1001:p2").hexdigest(), "callback signature must be md5 of sum:id:pass2")
    _assert(verify("149.00", 1001, "p2", digest), "callback signature must verify")
    _assert(verify("149.00", 1001, "p2", digest.upper()), "verification must be case-insensitive")
    _assert(verify("149.00", 1001, "p2", f"  {digest} "), "surrounding whitespace must be ignored")

    # Any single-field change fails.
    _assert(not verify("150.00", 1001, "p2", digest), "changed amount must fail")
    _assert(not verify("149.000000", 1001, "p2", digest), "amount text is hashed verbatim")
    _assert(not verify("149.00", 1002, "p2", digest), "changed invoice id must fail")
    _assert(not verify("149.00", 1001, "p1", digest), "wrong secret must fail")
    _assert(not verify("149.00", 1001, "p2", digest[:-1] + ("0" if digest[-1] != "0" else "1")), "changed digest must fail")

    # Degenerate input returns False instead of raising.
    _assert(not verify("149.00", 1001, "p2", ""), "empty candidate must fail")
    _assert(not verify("149.00", 1001, "", callback_signature("149.00", 1001, "")), "empty secret must fail")
    _assert(not verify("149.00", 1001, "p2", "подпись"), "non-ascii candidate must fail")

    # Other algorithms.
    sha = callback_signature("149.00", 1001, "p2", algorithm="SHA256")
    _assert(sha == hashlib.sha256(b"149.00:1001:p2").hexdigest(), "sha256 must be supported")
    _assert(verify("149.00", 1001, "p2", sha, algorithm="sha256"), "sha256 signature must verify")
    _expect_validation_error(lambda: sign("demo", "1", 1, "p", algorithm="crc32"), "unknown algorithm must be rejected")

    # Amount canonicalisation and typed ids.
    _assert(format_amount(149) == "149.00", "int amount must render with two decimals")
    _assert(format_amount(Decimal("149.005")) == "149.01", "amount must round half up")
    _assert(format_amount(" 99.9 ") == "99.90", "string amount must be trimmed")
    _expect_validation_error(lambda: format_amount(0), "zero amount must be rejected")
    _expect_validation_error(lambda: format_amount("abc"), "non-numeric amount must be rejected")
    _assert(InvoiceId.parse("1001") == InvoiceId(1001), "invoice id must parse from text")
    _assert(str(SubscriberId.parse(" 42 ")) == "42", "subscriber id must render canonically")
    for bad in ("abc", "-1", "0", "12a", "", None, True, 1.5):
        _expect_validation_error(lambda bad=bad: InvoiceId.parse(bad), f"invoice id {bad!r} must be rejected")

    # Payment link.
    settings = BillingSettings(merchant_login="demo", password_1="p1", password_2="p2")
    url = build_payment_url(settings, InvoiceId(1001), settings.amount)
    parts = urlsplit(url)
    _assert(f"{parts.scheme}://{parts.netloc}{parts.path}" == MERCHANT_URL, f"unexpected merchant url: {url}")
    query = {key: values[0] for key, values in parse_qs(parts.query).items()}
    _assert(query["MerchantLogin"] == "demo", "MerchantLogin must be set")
    _assert(query["OutSum"] == "149.00", "OutSum must be the canonical amount")
    _assert(query["InvId"] == "1001", "InvId must be set")
    _assert(query["Description"] == "Подписка на 30 дней", "Description must name the product")
    _assert(query["SignatureValue"] == expected, "SignatureValue must match outbound signature")
    _assert(query["Culture"] == "ru", "Culture must default to ru")
    _assert("IsTest" not in query and "Email" not in query, "IsTest/Email must be omitted by default")

    test_settings = BillingSettings(
        merchant_login="demo",
        password_1="p1",
        password_2="p2",
        test_mode=True,
        email="buyer@example.com",
    )
    test_query = parse_qs(urlsplit(build_payment_url(test_settings, InvoiceId(7), "149.00")).query)
    _assert(test_query.get("IsTest") == ["1"], "test mode must add IsTest=1")
    _assert(test_query.get("Email") == ["buyer@example.com"], "configured email must be passed")

    # Callback parameter handling.
    merged = merge_callback_params(
        {"InvId": "9999", "OutSum": "149.00"},
        {"InvId": "1001", "SignatureValue": "abc", "Nested": {"x": 1}},
    )
    _assert(merged == {"InvId": "1001", "OutSum": "149.00", "SignatureValue": "abc"}, f"body must win: {merged}")
    _assert(extract_callback({"OutSum": "149.00", "InvId": "1001"}) is None, "missing signature must be rejected")
    _assert(extract_callback({"OutSum": " ", "InvId": "1", "SignatureValue": "x"}) is None, "blank field must be rejected")
    callback = extract_callback({"OutSum": "149.000000", "InvId": "1001", "SignatureValue": "ABC"})
    _assert(callback is not None and callback.out_sum == "149.000000", "OutSum must be kept verbatim")
    _assert(success_response_text(InvoiceId(1001)) == "OK1001", "acknowledgement must be OK<InvId>")


def main() -> None:
    os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
    if str(REPO_ROOT / "src") not in sys.path:
        sys.path.insert(0, str(REPO_ROOT / "src"))
    _run_checks()
    print("OK: robokassa signature codec smoke test passed.")


if __name__ == "__main__":
    main()
