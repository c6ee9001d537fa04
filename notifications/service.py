"""Bus-facing notification pipeline.

The bus listener only enqueues; one supervised worker task drains the queue,
resolves recipients and runs the dispatcher for each of them. Failures are
logged here and never travel back to whoever emitted the event.
"""

import asyncio
from typing import Any

import asyncpg
import structlog
from config.constants import NOTIFICATION_TOPIC, EventType
from config.settings import settings
from notifications.bus import EventBus
from notifications.dispatcher import NotificationDispatcher
from notifications.events import Event
from notifications.recipients import RecipientResolver
from notifications.types import NotificationRecord

log = structlog.get_logger(__name__)


class NotificationService:
    def __init__(
        self,
        bus: EventBus,
        db_pool: asyncpg.Pool,
        queue_size: int | None = None,
    ) -> None:
        self._bus = bus
        self.resolver = RecipientResolver(db_pool)
        self.dispatcher = NotificationDispatcher(db_pool)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(
            maxsize=queue_size or settings.notification_queue_size
        )
        self._worker: asyncio.Task | None = None
        self._attached = False
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def attach(self) -> None:
        """Register the pipeline and the watch listeners on the bus."""
        if self._attached:
            return
        self._bus.subscribe(NOTIFICATION_TOPIC, self.enqueue)
        self._bus.subscribe(EventType.SUBSCRIPTION_EXPIRING_TODAY, self._watch_expiring_today)
        self._bus.subscribe(EventType.SECURITY_ALERT, self._watch_security_alert)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self._bus.unsubscribe(NOTIFICATION_TOPIC, self.enqueue)
        self._bus.unsubscribe(EventType.SUBSCRIPTION_EXPIRING_TODAY, self._watch_expiring_today)
        self._bus.unsubscribe(EventType.SECURITY_ALERT, self._watch_security_alert)
        self._attached = False

    async def start(self) -> None:
        self.attach()
        self._stopping = False
        self._spawn_worker()
        log.info("notification_service_started", queue_size=self._queue.maxsize)

    async def stop(self, drain_timeout: float | None = 5.0) -> None:
        """Stop accepting events, give queued ones a chance to finish, then cancel the worker."""
        self.detach()
        self._stopping = True
        if self._worker is None:
            return
        if drain_timeout:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                log.warning("notification_service_drain_timeout", pending=self._queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        log.info("notification_service_stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    def enqueue(self, event: Event) -> bool:
        """Bus listener: hand the event to the worker without blocking the emitter."""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            log.error("notification_queue_full", event_type=event.name, event_id=event.event_id)
            return False

    def _spawn_worker(self) -> None:
        self._worker = asyncio.create_task(self._run(), name="notification-worker")
        self._worker.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        log.error("notification_worker_crashed", error=str(exc) if exc else None)
        self._spawn_worker()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process_event(event)
            except Exception as e:
                log.error("notification_event_error", event_type=event.name, event_id=event.event_id, error=str(e))
            finally:
                self._queue.task_done()

    async def process_event(self, event: Event) -> list[NotificationRecord]:
        """Fan one event out to its recipients. One recipient's failure never stops the rest."""
        recipients = await self.resolver.resolve(event)
        created: list[NotificationRecord] = []
        for user in recipients:
            try:
                record = await self.dispatcher.send_to_user(event, user)
            except Exception as e:
                log.error(
                    "notification_recipient_error",
                    event_type=event.name,
                    user_id=user.get("id"),
                    error=str(e),
                )
                continue
            if record is not None:
                created.append(record)

        log.info(
            "event_processed",
            event_type=event.name,
            event_id=event.event_id,
            recipients=len(recipients),
            created=len(created),
        )
        return created

    def _watch_expiring_today(self, event: Event) -> None:
        log.warning(
            "subscription_expiring_today",
            user_id=event.payload.get("user_id"),
            subscription_id=event.payload.get("subscription_id"),
        )

    def _watch_security_alert(self, event: Event) -> None:
        payload: dict[str, Any] = event.payload
        log.warning(
            "security_alert_emitted",
            user_id=payload.get("user_id"),
            alert_type=payload.get("alert_type"),
        )
