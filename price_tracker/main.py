"""Application entry point.

Builds the container, starts the scrape queue worker and the scheduler, and
runs until interrupted. Queue state is in memory only; on restart the
scheduler's first due check re-enqueues whatever is due.
"""

import asyncio
import logging
import signal

from .config import config
from .core.container import Container

# Logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)


def create_container() -> Container:
    """Container configured from the global configuration."""
    container = Container()
    container.config.from_dict(config.as_dict())
    return container


async def run(container: Container) -> None:
    """Run the queue and scheduler until SIGINT or SIGTERM."""
    queue = container.queue()
    scheduler = container.scheduler()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    queue.start()
    if config.scheduler.enabled:
        scheduler.start()
    else:
        logger.warning("Scheduler disabled; only manual jobs will run")

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        await scheduler.stop()
        await queue.stop()


def main() -> None:
    """Main application entry point."""
    asyncio.run(run(create_container()))


if __name__ == "__main__":
    main()
