"""Robokassa Merchant API helpers: payment links and ResultURL callbacks."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from billing.models import InvoiceId
from billing.settings import BillingSettings
from billing.signature import sign

PROVIDER_NAME = "robokassa"
MERCHANT_URL = "https://auth.robokassa.ru/Merchant/Index.aspx"
CALLBACK_FIELDS = ("OutSum", "InvId", "SignatureValue")
SUCCESS_PREFIX = "OK"


@dataclass(frozen=True)
class RobokassaCallback:
    """Raw ResultURL fields; ``out_sum`` is kept verbatim for verification."""

    out_sum: str
    inv_id: str
    signature: str


def build_payment_url(settings: BillingSettings, invoice_id: InvoiceId, amount: str) -> str:
    """Signed redirect to the Robokassa payment page."""
    signature = sign(
        settings.merchant_login,
        amount,
        invoice_id,
        settings.password_1,
        algorithm=settings.hash_algorithm,
    )
    params: dict[str, str] = {
        "MerchantLogin": settings.merchant_login,
        "OutSum": amount,
        "InvId": str(invoice_id),
        "Description": settings.description,
        "SignatureValue": signature,
        "Culture": settings.culture,
    }
    if settings.email:
        params["Email"] = settings.email
    if settings.test_mode:
        params["IsTest"] = "1"
    return f"{MERCHANT_URL}?{urlencode(params)}"


def merge_callback_params(query: Mapping[str, Any], body: Mapping[str, Any]) -> dict[str, str]:
    """Merge query string and body fields; the body wins on conflict."""
    merged: dict[str, str] = {}
    for source in (query, body):
        for key, value in source.items():
            if value is None or isinstance(value, (dict, list)):
                continue
            merged[str(key)] = str(value)
    return merged


def extract_callback(params: Mapping[str, str]) -> RobokassaCallback | None:
    """Return callback fields, or None when any required field is missing."""
    values = [str(params.get(name) or "").strip() for name in CALLBACK_FIELDS]
    if not all(values):
        return None
    out_sum, inv_id, signature = values
    return RobokassaCallback(out_sum=out_sum, inv_id=inv_id, signature=signature)


def success_response_text(invoice_id: InvoiceId) -> str:
    """Acknowledgement Robokassa expects; without it the callback is redelivered."""
    return f"{SUCCESS_PREFIX}{invoice_id}"
