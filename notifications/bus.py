"""In-process publish/subscribe bus for notification events.

One instance is built by the composition root and passed to producers and to
the notification service. Listeners run synchronously, in registration order,
before ``emit`` returns; a listener that raises is logged and skipped so the
remaining listeners still see the event. Listeners must return quickly: the
notification service only enqueues the event for its background worker.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import structlog
from config.constants import NOTIFICATION_TOPIC, Channel, Priority
from notifications.events import (
    Event,
    EventMetadata,
    EventType,
    coerce_event_type,
    defaults_for,
    event_name,
)

log = structlog.get_logger(__name__)

Listener = Callable[[Event], Any]

# Channel spellings accepted from producers besides the enum values
CHANNEL_ALIASES = {"inApp": Channel.IN_APP, "in-app": Channel.IN_APP}


def _coerce_priority(value: Priority | str | None, default: Priority) -> Priority:
    if not value:
        return default
    try:
        return Priority(value)
    except ValueError:
        log.warning("unknown_priority", priority=str(value), fallback=default.value)
        return default


def _coerce_channels(values: Iterable[Channel | str]) -> tuple[Channel, ...]:
    """Known channels in request order, duplicates removed; unknown names are logged and dropped."""
    channels: list[Channel] = []
    for value in values:
        channel = CHANNEL_ALIASES.get(value) if isinstance(value, str) else None
        if channel is None:
            try:
                channel = Channel(value)
            except ValueError:
                log.warning("unknown_channel_dropped", channel=str(value))
                continue
        channels.append(channel)
    return tuple(dict.fromkeys(channels))


class EventBus:
    """Topic-keyed listener registry with per-listener error isolation."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, topic: "EventType | str", listener: Listener) -> None:
        """Register a listener for one event type, or for the catch-all topic."""
        self._listeners[event_name(topic)].append(listener)

    def unsubscribe(self, topic: "EventType | str", listener: Listener) -> bool:
        try:
            self._listeners[event_name(topic)].remove(listener)
            return True
        except ValueError:
            return False

    def listener_count(self, topic: "EventType | str") -> int:
        return len(self._listeners.get(event_name(topic), []))

    def clear(self) -> None:
        self._listeners.clear()

    def emit(
        self,
        event_type: "EventType | str",
        payload: dict[str, Any] | None = None,
        *,
        priority: Priority | str | None = None,
        channels: Iterable[Channel | str] | None = None,
        source: str = "system",
        retryable: bool = True,
        expires_at: datetime | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Build an Event, publish it on its own topic and on the catch-all topic.

        Unknown event type strings are accepted and forwarded; they simply never
        map to a deliverable notification downstream.
        """
        resolved_type = coerce_event_type(event_type)
        if not isinstance(resolved_type, EventType):
            log.warning("unknown_event_type", event_type=str(event_type))

        defaults = defaults_for(resolved_type)
        event = Event(
            event_type=resolved_type,
            payload=dict(payload or {}),
            priority=_coerce_priority(priority, defaults.priority),
            channels=_coerce_channels(channels) if channels is not None else defaults.channels,
            metadata=EventMetadata(
                source=source,
                retryable=retryable,
                expires_at=expires_at,
                idempotency_key=idempotency_key,
                extra=dict(metadata or {}),
            ),
        )
        self.publish(event)
        return event

    def publish(self, event: Event) -> int:
        """Deliver an already-built event. Returns the number of listeners called."""
        log.debug("event_emitted", event_type=event.name, event_id=event.event_id)
        called = 0
        for topic in (event.name, NOTIFICATION_TOPIC):
            # Copy so a listener may unsubscribe itself mid-delivery
            for listener in list(self._listeners.get(topic, [])):
                called += 1
                try:
                    listener(event)
                except Exception as e:
                    log.error(
                        "event_listener_error",
                        event_type=event.name,
                        topic=topic,
                        listener=getattr(listener, "__qualname__", repr(listener)),
                        error=str(e),
                    )
        return called
