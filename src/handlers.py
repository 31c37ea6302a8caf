from aiogram import Router, F
from aiogram.filters import Command
from aiogram.types import (
    Message, CallbackQuery, InlineKeyboardMarkup, InlineKeyboardButton, User
)
import logging
from datetime import datetime
from decimal import Decimal

from billing import BillingService, IssueStatus, PaymentRequest

router = Router()
logger = logging.getLogger(__name__)

PAY_CALLBACK = "pay"
PAYMENT_UNAVAILABLE_TEXT = "⚠️ Оплата временно недоступна. Попробуйте позже."


def format_user_label(user: User | None, fallback_id: int | None = None) -> str:
    """Читабельний формат користувача: @username (First Last) - id."""
    if not user:
        return str(fallback_id) if fallback_id is not None else "unknown"
    first = (user.first_name or "").strip()
    last = (user.last_name or "").strip()
    name = " ".join([part for part in [first, last] if part]).strip()

    if user.username and name:
        return f"@{user.username} ({name}) - {user.id}"
    if user.username:
        return f"@{user.username} - {user.id}"
    if name:
        return f"{name} - {user.id}"
    return str(user.id)


def format_date(value: datetime) -> str:
    return value.strftime("%d.%m.%Y")


def get_subscribe_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💳 Оформить подписку", callback_data=PAY_CALLBACK)],
    ])


def get_payment_keyboard(redirect_url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💳 Оплатить", url=redirect_url)],
    ])


def payment_offer_text(billing_service: BillingService, *, locked: bool) -> str:
    settings = billing_service.settings
    price = Decimal(settings.amount).normalize()
    header = "🔒 <b>Эта функция доступна по подписке</b>" if locked else "💳 <b>Подписка</b>"
    return (
        f"{header}\n\n"
        f"Подписка на {settings.subscription_days} дней — <b>{price:f} ₽</b>\n\n"
        "Полный доступ ко всем функциям бота."
    )


async def send_payment_prompt(
    message: Message,
    user_id: int,
    billing_service: BillingService,
    *,
    locked: bool = False,
) -> PaymentRequest:
    """Показати посилання на оплату (або пояснити, чому його немає)."""
    request = await billing_service.request_payment(user_id)

    if request.status is IssueStatus.BLOCKED:
        await message.answer(f"✅ Подписка уже активна до {format_date(request.expires_at)}.")
    elif request.status is IssueStatus.MISCONFIGURED:
        await message.answer(PAYMENT_UNAVAILABLE_TEXT)
    else:
        await message.answer(
            payment_offer_text(billing_service, locked=locked),
            reply_markup=get_payment_keyboard(request.redirect_url),
        )
    return request


async def show_paywall(message: Message, user_id: int, billing_service: BillingService) -> bool:
    """
    Перевірка доступу для платних функцій.

    True - підписка активна, можна показувати контент.
    False - користувачу вже показано пропозицію оплати.
    """
    if await billing_service.is_entitled(user_id):
        return True
    await send_payment_prompt(message, user_id, billing_service, locked=True)
    return False


@router.message(Command("start"))
async def cmd_start(message: Message, billing_service: BillingService):
    """Зареєструвати користувача та показати привітання."""
    user = message.from_user
    user_id = user.id if user else message.chat.id
    await billing_service.directory.create_subscriber_if_absent(user_id)
    logger.info("User %s started bot", format_user_label(user, message.chat.id))

    await message.answer(
        "✨ <b>Добро пожаловать!</b>\n\n"
        "Ежедневные гороскопы и персональные прогнозы.\n"
        "Полный доступ открывается по подписке.",
        reply_markup=get_subscribe_keyboard(),
    )


@router.message(Command("subscribe"))
async def cmd_subscribe(message: Message, billing_service: BillingService):
    """Показати пропозицію оплати підписки."""
    user_id = message.from_user.id if message.from_user else message.chat.id
    await send_payment_prompt(message, user_id, billing_service)


@router.callback_query(F.data == PAY_CALLBACK)
async def cb_pay(callback: CallbackQuery, billing_service: BillingService):
    await callback.answer()
    if not callback.message:
        return
    await send_payment_prompt(callback.message, callback.from_user.id, billing_service)


@router.message(Command("status"))
async def cmd_status(message: Message, billing_service: BillingService):
    """Показати стан підписки."""
    user_id = message.from_user.id if message.from_user else message.chat.id
    subscription = await billing_service.get_active_subscription(user_id)
    if subscription is None:
        await message.answer("Подписка не активна.", reply_markup=get_subscribe_keyboard())
        return
    await message.answer(f"✅ Подписка активна до {format_date(subscription.expires_at)}.")
