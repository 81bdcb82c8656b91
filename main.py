import asyncio
import logging
import aiohttp
from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage
from backend import build_backend
from bot.handlers import router
from bot.sessions import AuthSessions, WizardSessions
from config import Settings
from database import init_db

logger = logging.getLogger(__name__)

async def main():
    # Завантаження змінних оточення (.env)
    settings = Settings.from_env()

    # Налаштування логування
    logging.basicConfig(level=settings.log_level)

    # Отримання токена Telegram-бота
    if not settings.bot_token:
        logger.error("Помилка: BOT_TOKEN не знайдено у файлі .env!")
        return

    # Локальний бекенд працює на SQLite, перевіряємо БД при старті
    if settings.backend == "local":
        init_db(settings.db_path)

    bot = Bot(token=settings.bot_token)
    dp = Dispatcher(storage=MemoryStorage())
    sessions = WizardSessions()

    async with aiohttp.ClientSession() as http_session:
        # Колаборатори передаються хендлерам явно, через workflow data диспетчера
        dp["settings"] = settings
        dp["backend"] = build_backend(settings, http_session)
        dp["sessions"] = sessions
        dp["auth_sessions"] = AuthSessions()

        # Реєстрація роутерів
        dp.include_router(router)

        logger.info("Exchangezo bot успішно запущений та готовий до роботи.")
        try:
            # Запуск polling
            await dp.start_polling(bot)
        finally:
            sessions.close_all()
            await bot.session.close()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Бот зупинено.")
