"""Robokassa signature codec.

Outbound payment links are signed with password #1 over
``MerchantLogin:OutSum:InvId:Password1``; ResultURL callbacks are verified
with password #2 over ``OutSum:InvId:Password2``. ``OutSum`` must be the exact
text the other side hashed: ``"149.00"`` and ``"149.000000"`` give different
digests, so callbacks are verified with the raw string from the request.
"""

from __future__ import annotations

import hashlib
import hmac

from billing.models import InvoiceId, ValidationError

DEFAULT_HASH_ALGORITHM = "md5"
SUPPORTED_HASH_ALGORITHMS = frozenset({"md5", "sha1", "sha256", "sha384", "sha512"})
FIELD_DELIMITER = ":"


def _normalize_algorithm(algorithm: str | None) -> str:
    normalized = str(algorithm or DEFAULT_HASH_ALGORITHM).strip().lower()
    if normalized not in SUPPORTED_HASH_ALGORITHMS:
        raise ValidationError(f"Unsupported signature algorithm: {algorithm!r}")
    return normalized


def _digest(parts: list[str], algorithm: str) -> str:
    data = FIELD_DELIMITER.join(parts).encode("utf-8")
    return hashlib.new(_normalize_algorithm(algorithm), data).hexdigest()


def sign(
    merchant_id: str,
    amount: str,
    invoice_id: InvoiceId | int,
    outbound_secret: str,
    *,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> str:
    """Signature for an outbound payment link, lowercase hex."""
    return _digest([str(merchant_id), str(amount), str(InvoiceId.parse(invoice_id)), str(outbound_secret)], algorithm)


def callback_signature(
    amount: str,
    invoice_id: InvoiceId | int,
    inbound_secret: str,
    *,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> str:
    """Signature Robokassa puts into ResultURL callbacks, lowercase hex."""
    return _digest([str(amount), str(InvoiceId.parse(invoice_id)), str(inbound_secret)], algorithm)


def verify(
    amount: str,
    invoice_id: InvoiceId | int,
    inbound_secret: str,
    candidate_digest: str,
    *,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> bool:
    """Check a callback signature; case-insensitive, constant-time."""
    candidate = str(candidate_digest or "").strip().lower()
    if not candidate or not inbound_secret:
        return False
    expected = callback_signature(amount, invoice_id, inbound_secret, algorithm=algorithm)
    return hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8"))
