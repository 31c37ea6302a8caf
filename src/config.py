import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

from dotenv import load_dotenv

# Завантажуємо .env з робочого каталогу (там де запускається скрипт)
env_path = Path.cwd() / ".env"
load_dotenv(env_path)


@dataclass
class Config:
    token: str
    # API сервер (webhook Robokassa)
    api_port: int
    # Robokassa
    robokassa_merchant_login: str
    robokassa_password_1: str  # підпис вихідних посилань
    robokassa_password_2: str  # перевірка ResultURL callback
    robokassa_test_mode: bool
    robokassa_hash_algorithm: str
    robokassa_culture: str
    robokassa_email: str
    # Продукт: одна підписка з фіксованою ціною та тривалістю
    subscription_price: Decimal
    subscription_days: int


def _clean(value: str | None, default: str = "") -> str:
    """Strip whitespace and wrapping quotes from env value."""
    if value is None:
        return default
    return value.strip().strip('"').strip("'")


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Парсить булеве значення з env."""
    if value is None:
        return default
    value = _clean(value).lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_int(value: str | None, default: int) -> int:
    """Парсить int з env."""
    cleaned = _clean(value)
    if not cleaned:
        return default
    return int(cleaned)


def parse_decimal(value: str | None, default: str) -> Decimal:
    """Parse a money value; comma decimal separator is accepted."""
    cleaned = _clean(value).replace(",", ".") or default
    try:
        return Decimal(cleaned)
    except InvalidOperation as error:
        raise ValueError(f"Invalid decimal value: {value!r}") from error


CFG = Config(
    token=_clean(os.environ["BOT_TOKEN"]),
    api_port=parse_int(os.getenv("API_PORT") or os.getenv("PORT"), 3000),
    robokassa_merchant_login=_clean(os.getenv("ROBOKASSA_MERCHANT_LOGIN")),
    robokassa_password_1=_clean(os.getenv("ROBOKASSA_PASSWORD_1")),
    robokassa_password_2=_clean(os.getenv("ROBOKASSA_PASSWORD_2")),
    robokassa_test_mode=parse_bool(os.getenv("ROBOKASSA_TEST")),
    robokassa_hash_algorithm=_clean(os.getenv("ROBOKASSA_HASH_ALGORITHM"), "md5").lower() or "md5",
    robokassa_culture=_clean(os.getenv("ROBOKASSA_CULTURE"), "ru") or "ru",
    robokassa_email=_clean(os.getenv("ROBOKASSA_EMAIL")),
    subscription_price=parse_decimal(os.getenv("SUBSCRIPTION_PRICE"), "149"),
    subscription_days=parse_int(os.getenv("SUBSCRIPTION_DAYS"), 30),
)

# Шлях до БД: з env або відносно робочого каталогу
DB_PATH = _clean(os.getenv("DB_PATH")) or str(Path.cwd() / "db.sqlite")


def is_robokassa_configured() -> bool:
    """Payment links can be issued only with merchant login and password #1."""
    return bool(CFG.robokassa_merchant_login and CFG.robokassa_password_1)
