"""Scheduler process entry point."""

import asyncio
import logging
import signal

from sms_scheduler.app import build_app
from sms_scheduler.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


async def run() -> None:
    """Start the scheduler and keep it running until SIGINT/SIGTERM."""
    app = build_app(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await app.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await app.stop()


def main() -> None:
    logger.info(
        "Starting SMS scheduler (db=%s, provider=%s)",
        settings.database_path,
        settings.sms_provider,
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
