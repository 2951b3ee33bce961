# read_aggregator/worker.py
"""Standalone consumer process: `python -m read_aggregator.worker`."""
import asyncio
import logging
import signal

from read_aggregator.config import Settings, setup_logging
from read_aggregator.runtime import Runtime

logger = logging.getLogger(__name__)


async def run(settings: Settings):
    runtime = await Runtime.build(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.request_stop)

    logger.info("Analytics processor started")
    await runtime.start()
    try:
        await runtime.wait_closed()
    finally:
        logger.info("Shutting down analytics processor...")
        await runtime.close()


def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
