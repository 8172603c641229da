"""Time capsule delivery service entry point."""

import asyncio
import logging
import signal

from timecapsule.capsules.store import CapsuleStore
from timecapsule.config import settings
from timecapsule.delivery.email_channel import EmailChannel
from timecapsule.scheduler.engine import DeliveryScheduler

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper()),
)
# APScheduler logs every job execution at INFO
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def serve() -> int:
    """Run the delivery scheduler until SIGINT/SIGTERM, then drain and stop."""
    store = CapsuleStore.get()
    channel = EmailChannel()
    if channel.validate_config():
        logger.warning("Email delivery is not configured, due capsules will stay pending")

    scheduler = DeliveryScheduler(store, channel)
    if not await scheduler.start():
        logger.error("Delivery scheduler failed to start")
        return 1

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    logger.info("Time capsule service running (database=%s)", settings.database_path)
    await stop_requested.wait()
    await scheduler.stop()
    return 0


def main() -> None:
    """Start the delivery service."""
    raise SystemExit(asyncio.run(serve()))


if __name__ == "__main__":
    main()
