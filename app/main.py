"""Entry point: initialize services, start the notification pipeline and the scheduler."""

import asyncio
import signal

import structlog
from config.logging_config import setup_logging
from notifications.bus import EventBus
from notifications.service import NotificationService
from scheduler.scheduler import Scheduler
from storage.database import close_pool, get_pool, run_migrations

log = structlog.get_logger(__name__)


async def start_worker(stop_event: asyncio.Event | None = None) -> None:
    """Initialize all services and run until a shutdown signal arrives."""
    setup_logging()
    log.info("starting_notification_worker")

    # Initialize database
    pool = await get_pool()
    applied = await run_migrations(pool)
    if applied:
        log.info("migrations_applied", files=applied)

    bus = EventBus()
    service = NotificationService(bus, pool)
    scheduler = Scheduler(bus, pool)

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await service.start()
        scheduler.start()
        await stop_event.wait()
    finally:
        log.info("shutting_down")
        await scheduler.stop()
        await service.stop()
        await close_pool()


def main() -> None:
    """Run the notification worker."""
    asyncio.run(start_worker())


if __name__ == "__main__":
    main()
