"""Payment provider helpers for subscription billing."""

from .robokassa import (
    MERCHANT_URL,
    PROVIDER_NAME,
    RobokassaCallback,
    build_payment_url,
    extract_callback,
    merge_callback_params,
    success_response_text,
)

__all__ = [
    "MERCHANT_URL",
    "PROVIDER_NAME",
    "RobokassaCallback",
    "build_payment_url",
    "extract_callback",
    "merge_callback_params",
    "success_response_text",
]
