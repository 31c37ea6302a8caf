import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage

from config import CFG, DB_PATH, is_robokassa_configured
from logging_setup import configure_logging

configure_logging("astroguide")

from database import init_db
from billing import get_billing_service
from handlers import router
from notifications import TelegramNotifier
from api_server import create_api_app, start_api_server, stop_api_server

logger = logging.getLogger(__name__)


async def main():
    """Точка входу в застосунок."""
    await init_db(DB_PATH)

    if not is_robokassa_configured():
        logger.warning("Robokassa credentials are missing: payment links are disabled")

    bot = Bot(
        token=CFG.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    billing_service = get_billing_service(notifier=TelegramNotifier(bot))

    dp = Dispatcher(storage=MemoryStorage())
    dp["billing_service"] = billing_service
    dp.include_router(router)

    # API сервер для Robokassa ResultURL
    api_app = create_api_app(billing_service)
    api_runner = await start_api_server(api_app, CFG.api_port)

    try:
        await dp.start_polling(bot)
    finally:
        await stop_api_server(api_runner)
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
