"""Entry point for the autonomous trading service."""

import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler

import config
from telegram.ext import Application

from bot.notifier import TelegramNotifier
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL, TELEGRAM_BOT_TOKEN
from database.db import Storage
from monitor.dexscreener import DexScreenerMarketData
from trading.chain import Web3Chain
from trading.live_executor import LiveSwapExecutor
from trading.scheduler import AutonomousScheduler
from trading.verifier import TradeVerifier
from trading.wallets import StaticWalletProvider


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)


logger = logging.getLogger(__name__)


def build_scheduler(application: Application, storage: Storage) -> AutonomousScheduler:
    if not config.PERSONAL_TELEGRAM_ID:
        raise RuntimeError("PERSONAL_TELEGRAM_ID is not set")
    user = storage.get_or_create_user(config.PERSONAL_TELEGRAM_ID)
    market_data = DexScreenerMarketData()
    application.bot_data["market_data"] = market_data
    return AutonomousScheduler(
        storage=storage,
        market_data=market_data,
        swap_provider=LiveSwapExecutor(),
        verifier=TradeVerifier(Web3Chain()),
        notifier=TelegramNotifier(application.bot, storage),
        wallets=StaticWalletProvider.from_config(user.id),
    )


async def reconcile_loop(scheduler: AutonomousScheduler) -> None:
    interval = float(config.AUTONOMOUS_RECONCILE_SECONDS)
    while True:
        try:
            await scheduler.reconcile()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("AUTO_RECONCILE sweep failed")
        await asyncio.sleep(interval)


async def post_init(application: Application) -> None:
    storage: Storage = application.bot_data["storage"]
    scheduler = build_scheduler(application, storage)
    application.bot_data["scheduler"] = scheduler
    # First pass runs immediately and restarts users that were enabled before the restart.
    application.bot_data["reconcile_task"] = asyncio.create_task(reconcile_loop(scheduler))
    logger.info("AUTO_SERVICE started tick=%ss reconcile=%ss", config.AUTONOMOUS_TICK_SECONDS, config.AUTONOMOUS_RECONCILE_SECONDS)


async def post_shutdown(application: Application) -> None:
    task = application.bot_data.get("reconcile_task")
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    scheduler: AutonomousScheduler | None = application.bot_data.get("scheduler")
    if scheduler:
        await scheduler.shutdown()

    market_data: DexScreenerMarketData | None = application.bot_data.get("market_data")
    if market_data:
        await market_data.close()

    storage: Storage | None = application.bot_data.get("storage")
    if storage:
        storage.close()
    logger.info("AUTO_SERVICE stopped")


def main() -> None:
    configure_logging()
    storage = Storage()
    storage.init_db()

    if not TELEGRAM_BOT_TOKEN:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")

    app = Application.builder().token(TELEGRAM_BOT_TOKEN).post_init(post_init).post_shutdown(post_shutdown).build()
    app.bot_data["storage"] = storage
    # run_polling installs SIGINT/SIGTERM handlers and runs post_shutdown on exit.
    app.run_polling()


if __name__ == "__main__":
    main()
