"""
Review Worker - runs the adaptive review scheduler outside the API server

Run this with:
    python -m src.tasks.review_worker

Set REVIEW_SCHEDULER_IN_API=false for the API server when this worker runs,
otherwise two schedulers compete for the same review slot.
"""

import asyncio
import signal

from loguru import logger

from config.config import validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import check_connection, dispose_engine
from src.services.review.factory import build_pipeline


async def main():
    """
    Worker entry point
    """
    logger.info("=" * 80)
    logger.info("Review Worker - Starting")
    logger.info("=" * 80)

    if not await check_connection():
        logger.error("Database unreachable, aborting")
        return

    pipeline = build_pipeline()
    state = await pipeline.controller.restore()
    logger.info(f"Restored scheduler state: {state.to_dict()}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: rely on KeyboardInterrupt
            pass

    pipeline.scheduler.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Review Worker - Stopping")
        pipeline.scheduler.stop()
        await pipeline.controller.wait_idle()

        close = getattr(pipeline.market, "close", None)
        if close is not None:
            await close()

        await dispose_engine()
        logger.info("Review Worker - Stopped")


if __name__ == "__main__":
    setup_logging("worker")
    validate_config()
    init_sentry()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
