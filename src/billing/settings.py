"""Subscription product and merchant settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from billing.models import format_amount
from billing.signature import DEFAULT_HASH_ALGORITHM


@dataclass(frozen=True)
class BillingSettings:
    merchant_login: str
    password_1: str
    password_2: str
    price: Decimal = Decimal("149")
    subscription_days: int = 30
    test_mode: bool = False
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    culture: str = "ru"
    email: str = ""

    @classmethod
    def from_config(cls) -> BillingSettings:
        from config import CFG

        return cls(
            merchant_login=CFG.robokassa_merchant_login,
            password_1=CFG.robokassa_password_1,
            password_2=CFG.robokassa_password_2,
            price=CFG.subscription_price,
            subscription_days=CFG.subscription_days,
            test_mode=CFG.robokassa_test_mode,
            hash_algorithm=CFG.robokassa_hash_algorithm,
            culture=CFG.robokassa_culture,
            email=CFG.robokassa_email,
        )

    @property
    def amount(self) -> str:
        return format_amount(self.price)

    @property
    def duration(self) -> timedelta:
        return timedelta(days=int(self.subscription_days))

    @property
    def can_issue(self) -> bool:
        return bool(self.merchant_login and self.password_1)

    @property
    def can_verify(self) -> bool:
        return bool(self.password_2)

    @property
    def description(self) -> str:
        return f"Подписка на {int(self.subscription_days)} дней"
