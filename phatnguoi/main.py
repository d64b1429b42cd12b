"""
phatnguoi worker: entry point.

Builds the OCR pool, captcha solver, lookup pipeline and scheduler, starts
Telegram polling, and runs until interrupted.
"""

import asyncio
import logging

from phatnguoi.bot import BotHandler, TelegramPoller
from phatnguoi.config import settings
from phatnguoi.execution import CronJobExecutor
from phatnguoi.lookup import create_lookup_service
from phatnguoi.ocr import RecognitionPool, build_engine
from phatnguoi.scheduler import ViolationScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("phatnguoi")


def build_worker() -> tuple[RecognitionPool | None, ViolationScheduler, TelegramPoller | None]:
    pool = RecognitionPool(build_engine()) if settings.captcha_method == "ocr" else None
    lookup_service = create_lookup_service(pool)
    executor = CronJobExecutor(lookup_service)
    scheduler = ViolationScheduler(executor)
    poller = None
    if settings.telegram_polling_enabled and settings.telegram_bot_token:
        poller = TelegramPoller(BotHandler(lookup_service))
    return pool, scheduler, poller


async def run() -> None:
    logger.info("phatnguoi worker starting...")
    pool, scheduler, poller = build_worker()
    poller_task: asyncio.Task | None = None

    if pool is not None:
        pool.start()
    scheduler.start()
    if poller is not None:
        poller_task = asyncio.create_task(poller.run())

    try:
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, SystemExit):
        logger.info("phatnguoi worker received shutdown signal.")
    except Exception:
        logger.critical("phatnguoi worker crashed with unexpected error", exc_info=True)
    finally:
        if poller is not None:
            poller.stop()
        if poller_task is not None:
            # Only the getUpdates long poll is cancelled; message handlers are separate tasks.
            poller_task.cancel()
            try:
                await poller_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.warning("Telegram poller exited with an error", exc_info=True)

        try:
            await scheduler.stop()
        except Exception:
            logger.warning("Failed to stop scheduler cleanly", exc_info=True)

        if poller is not None:
            await poller.wait_for_handlers(settings.telegram_shutdown_grace_seconds)

        if pool is not None:
            try:
                await pool.stop()
            except Exception:
                logger.warning("Failed to stop OCR pool", exc_info=True)

        logger.info("phatnguoi worker stopped.")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
