"""Event records and the per-type delivery defaults."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from config.constants import Channel, EventType, Priority

E = EventType
EMAIL, PUSH, SMS, IN_APP = Channel.EMAIL, Channel.PUSH, Channel.SMS, Channel.IN_APP


@dataclass(frozen=True)
class EventDefaults:
    priority: Priority
    channels: tuple[Channel, ...]


FALLBACK_DEFAULTS = EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP))

# Default priority and requested channels per event type. Every EventType has
# an entry; tests/test_events.py checks the table stays exhaustive.
EVENT_DEFAULTS: dict[EventType, EventDefaults] = {
    E.SUBSCRIPTION_CREATED: EventDefaults(Priority.HIGH, (EMAIL, IN_APP)),
    E.SUBSCRIPTION_GRANTED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.SUBSCRIPTION_UPGRADED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.SUBSCRIPTION_DOWNGRADED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.SUBSCRIPTION_RENEWED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.SUBSCRIPTION_EXTENDED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.SUBSCRIPTION_CANCELLED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.SUBSCRIPTION_EXPIRED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.SUBSCRIPTION_EXPIRING_SOON: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.SUBSCRIPTION_EXPIRING_TODAY: EventDefaults(Priority.CRITICAL, (EMAIL, PUSH, IN_APP, SMS)),
    E.SUBSCRIPTION_EXPIRED_REMINDER: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.SUBSCRIPTION_RENEWAL_REMINDER: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.TRIAL_STARTED: EventDefaults(Priority.HIGH, (EMAIL, IN_APP)),
    E.TRIAL_ENDING_SOON: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.TRIAL_ENDED: EventDefaults(Priority.HIGH, (EMAIL, IN_APP)),
    E.TRIAL_CONVERTED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.INSIGHT_PUBLISHED: EventDefaults(Priority.MEDIUM, (EMAIL, PUSH, IN_APP)),
    E.INSIGHT_PREMIUM_PUBLISHED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.INSIGHT_FREE_PUBLISHED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.INSIGHT_UPDATED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.INSIGHT_UNPUBLISHED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.INSIGHT_DELETED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.INSIGHT_FEATURED: EventDefaults(Priority.MEDIUM, (PUSH, IN_APP)),
    E.INSIGHT_UNFEATURED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.NEW_CONTENT_AVAILABLE: EventDefaults(Priority.LOW, (IN_APP, EMAIL)),
    E.RECOMMENDED_CONTENT: EventDefaults(Priority.LOW, (IN_APP,)),
    E.TRENDING_CONTENT: EventDefaults(Priority.LOW, (IN_APP,)),
    E.PERSONALIZED_DIGEST: EventDefaults(Priority.LOW, (EMAIL,)),
    E.WEEKLY_DIGEST: EventDefaults(Priority.LOW, (EMAIL,)),
    E.INSIGHT_REQUEST_SUBMITTED: EventDefaults(Priority.HIGH, (EMAIL, IN_APP)),
    E.INSIGHT_REQUEST_APPROVED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.INSIGHT_REQUEST_REJECTED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.INSIGHT_LIKED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.INSIGHT_COMMENTED: EventDefaults(Priority.MEDIUM, (PUSH, IN_APP)),
    E.COMMENT_REPLIED: EventDefaults(Priority.MEDIUM, (PUSH, EMAIL, IN_APP)),
    E.USER_FOLLOWED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.AUTHOR_NEW_POST: EventDefaults(Priority.MEDIUM, (PUSH, IN_APP)),
    E.PREMIUM_ACCESS_GRANTED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.PREMIUM_ACCESS_DENIED: EventDefaults(Priority.LOW, (IN_APP,)),
    E.PREMIUM_CONTENT_UNLOCKED: EventDefaults(Priority.HIGH, (EMAIL, PUSH, IN_APP)),
    E.PREMIUM_FEATURE_AVAILABLE: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.WELCOME_NEW_USER: EventDefaults(Priority.HIGH, (EMAIL, IN_APP)),
    E.ACCOUNT_VERIFIED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.PASSWORD_RESET_REQUEST: EventDefaults(Priority.CRITICAL, (EMAIL,)),
    E.SECURITY_ALERT: EventDefaults(Priority.CRITICAL, (EMAIL, PUSH, SMS, IN_APP)),
    E.SYSTEM_ANNOUNCEMENT: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.MAINTENANCE_SCHEDULED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.PAYMENT_SUCCESS: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.PAYMENT_FAILED: EventDefaults(Priority.CRITICAL, (EMAIL, PUSH, IN_APP)),
    E.PAYMENT_REFUNDED: EventDefaults(Priority.MEDIUM, (EMAIL, IN_APP)),
    E.INVOICE_GENERATED: EventDefaults(Priority.LOW, (EMAIL,)),
    E.PAYMENT_METHOD_EXPIRING: EventDefaults(Priority.HIGH, (EMAIL, IN_APP)),
}


def coerce_event_type(value: "EventType | str") -> "EventType | str":
    """Return the EventType member for a wire name, or the raw string if unknown."""
    if isinstance(value, EventType):
        return value
    try:
        return EventType(value)
    except ValueError:
        return value


def defaults_for(event_type: "EventType | str") -> EventDefaults:
    if isinstance(event_type, EventType):
        return EVENT_DEFAULTS.get(event_type, FALLBACK_DEFAULTS)
    return FALLBACK_DEFAULTS


def event_name(event_type: "EventType | str") -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


@dataclass(frozen=True)
class EventMetadata:
    source: str = "system"
    retryable: bool = True
    expires_at: datetime | None = None
    idempotency_key: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Event:
    """A transient domain event; never persisted."""
    event_type: EventType | str
    payload: dict[str, Any]
    priority: Priority
    channels: tuple[Channel, ...]
    metadata: EventMetadata = field(default_factory=EventMetadata)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def name(self) -> str:
        return event_name(self.event_type)

    @property
    def is_known(self) -> bool:
        return isinstance(self.event_type, EventType)

    @property
    def is_critical(self) -> bool:
        return self.priority == Priority.CRITICAL

    def __str__(self) -> str:
        return f"Event({self.name}, id={self.event_id[:8]}, priority={self.priority.value})"
