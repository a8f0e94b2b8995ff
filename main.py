import asyncio
import hashlib
import logging
import os
import signal
import uuid

# Configure logging FIRST (before any other imports that may log)
# WARNING and below → stdout, ERROR/CRITICAL → stderr
from app.core.logging_config import setup_logging, stop_logging
setup_logging()

from aiogram import Bot

import config
import database
from app.core.redis_client import check_redis_health, close_redis_client
from app.services import notifications
from app.services.subscriptions.plans import get_plan_table
from app.utils.logging_helpers import log_operation
from app.workers.jobs import build_scheduler

# ====================================================================================
# PROCESS LIFECYCLE
# ====================================================================================
# 1. logging (above), config (import time)
# 2. plan table load: a broken PLANS_FILE fails the start, not the first activation
# 3. database pool + migrations
# 4. optional Bot for notifications, optional Redis for job leases
# 5. scheduler start, wait for SIGINT / SIGTERM
# 6. scheduler stop, then bot session, Redis and pool close in that order
# ====================================================================================

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still reaches asyncio.run
            logger.debug("Signal handlers not supported on this platform")


async def main():
    instance_id = os.getenv("INSTANCE_ID", str(uuid.uuid4()))
    logger.info("ENGINE_INSTANCE_STARTED pid=%s instance_id=%s env=%s", os.getpid(), instance_id, config.APP_ENV)

    plan_table = get_plan_table()
    logger.info("PLAN_TABLE version=%s plans=%s", plan_table.version, sorted(plan_table.keys()))

    if not await database.init_db():
        logger.critical("DB_INIT_FAILED - exiting")
        raise SystemExit(1)

    bot = None
    if config.BOT_TOKEN:
        bot = Bot(token=config.BOT_TOKEN)
        bot_token_hash = hashlib.sha256(config.BOT_TOKEN.encode()).hexdigest()[:8]
        logger.info("BOT_TOKEN_HASH=%s (first 8 chars of sha256)", bot_token_hash)
    else:
        logger.warning("NOTIFICATIONS_DISABLED reason=no_bot_token")
    notifications.set_bot(bot)

    if config.REDIS_URL:
        await check_redis_health()

    scheduler = build_scheduler()
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        scheduler.start()
        log_operation("lifecycle", "startup", "success", instance_id=instance_id)
        await stop_event.wait()
        logger.info("SHUTDOWN_SIGNAL_RECEIVED")
    finally:
        log_operation("lifecycle", "shutdown_start", "success", instance_id=instance_id)

        await scheduler.stop()

        if bot is not None:
            try:
                await bot.session.close()
                logger.info("Bot session closed")
            except Exception as e:
                logger.debug(f"Error closing bot session: {e}")
        notifications.set_bot(None)

        await close_redis_client()

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        log_operation("lifecycle", "shutdown_completed", "success", instance_id=instance_id)
        stop_logging()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")
