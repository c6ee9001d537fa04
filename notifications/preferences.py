"""Per-user notification preferences and the delivery gates built on them.

The preference document is a closed record: every category, notification type
and channel is an explicit field, so a lookup for a name that does not exist
fails loudly instead of silently reading an empty map.
"""

from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field
from config.constants import DEFAULT_DAILY_LIMITS, Channel, EventType, Priority
from utils.time_utils import ensure_aware, local_hour, next_local_midnight, resolve_zone, utc_now

log = structlog.get_logger(__name__)

E = EventType


class Category(str, Enum):
    SUBSCRIPTION = "subscription"
    CONTENT = "content"
    ENGAGEMENT = "engagement"
    PREMIUM = "premium"
    SYSTEM = "system"
    MARKETING = "marketing"


# ── Document model ──


class ChannelFlags(BaseModel):
    email: bool = False
    push: bool = False
    sms: bool = False
    in_app: bool = False
    webhook: bool = False

    def get(self, channel: Channel) -> bool:
        return getattr(self, Channel(channel).value)


def _flags(*channels: Channel) -> ChannelFlags:
    return ChannelFlags(**{c.value: True for c in channels})


def _type(model: type["TypePreference"], *channels: Channel, enabled: bool = True) -> Any:
    """Field whose default is ``model`` with the given channels switched on."""
    return Field(default_factory=lambda: model(enabled=enabled, channels=_flags(*channels)))


class TypePreference(BaseModel):
    enabled: bool = True
    channels: ChannelFlags = Field(default_factory=ChannelFlags)


class ReminderPreference(TypePreference):
    days_before_expiry: list[int] = Field(default_factory=lambda: [7, 3, 1])


class NewInsightsPreference(TypePreference):
    frequency: Literal["instant", "hourly", "daily", "weekly"] = "instant"
    # Empty means every category
    categories: list[str] = Field(default_factory=list)
    premium_only: bool = False


class TrendingPreference(TypePreference):
    frequency: Literal["instant", "daily", "weekly"] = "daily"


class DigestPreference(TypePreference):
    frequency: Literal["daily", "weekly", "monthly"] = "weekly"
    day_of_week: int = Field(default=0, ge=0, le=6)  # Monday
    time_of_day: str = Field(default="09:00", pattern=r"^\d{2}:\d{2}$")


class NewsletterPreference(TypePreference):
    frequency: Literal["weekly", "monthly"] = "weekly"


EMAIL, PUSH, SMS, IN_APP = Channel.EMAIL, Channel.PUSH, Channel.SMS, Channel.IN_APP


class SubscriptionPreferences(BaseModel):
    lifecycle: TypePreference = _type(TypePreference, EMAIL, IN_APP)
    reminders: ReminderPreference = _type(ReminderPreference, EMAIL, PUSH, IN_APP)
    renewals: TypePreference = _type(TypePreference, EMAIL, IN_APP)


class ContentPreferences(BaseModel):
    new_insights: NewInsightsPreference = _type(NewInsightsPreference, PUSH, IN_APP)
    featured_insights: TypePreference = _type(TypePreference, PUSH, IN_APP)
    trending_content: TrendingPreference = _type(TrendingPreference, IN_APP)
    personalized_digest: DigestPreference = _type(DigestPreference, EMAIL)


class EngagementPreferences(BaseModel):
    likes: TypePreference = _type(TypePreference, IN_APP)
    comments: TypePreference = _type(TypePreference, PUSH, IN_APP)
    replies: TypePreference = _type(TypePreference, PUSH, EMAIL, IN_APP)
    followers: TypePreference = _type(TypePreference, IN_APP)


class PremiumPreferences(BaseModel):
    new_premium_content: TypePreference = _type(TypePreference, EMAIL, PUSH, IN_APP)
    exclusive_offers: TypePreference = _type(TypePreference, EMAIL, IN_APP)


class SystemPreferences(BaseModel):
    security_alerts: TypePreference = _type(TypePreference, EMAIL, PUSH, SMS, IN_APP)
    announcements: TypePreference = _type(TypePreference, EMAIL, IN_APP)
    product_updates: TypePreference = _type(TypePreference, EMAIL, enabled=False)


class MarketingPreferences(BaseModel):
    promotional: TypePreference = _type(TypePreference, EMAIL, enabled=False)
    newsletter: NewsletterPreference = _type(NewsletterPreference, EMAIL)


class QuietHours(BaseModel):
    enabled: bool = False
    start_hour: int = Field(default=22, ge=0, le=23)
    end_hour: int = Field(default=8, ge=0, le=23)
    timezone: str = "UTC"
    exclude_critical: bool = True


class GlobalSettings(BaseModel):
    """Per-channel master switches plus quiet hours."""
    email_enabled: bool = True
    push_enabled: bool = True
    sms_enabled: bool = False
    in_app_enabled: bool = True
    webhook_enabled: bool = False
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    phone_number: str | None = None
    webhook_url: str | None = None

    def channel_enabled(self, channel: Channel) -> bool:
        return getattr(self, f"{Channel(channel).value}_enabled")


class DailyLimit(BaseModel):
    # None = unlimited, 0 = channel blocked
    max: int | None = Field(default=None, ge=0)
    sent_today: int = Field(default=0, ge=0)
    reset_at: datetime | None = None


def _limit(channel: Channel) -> Any:
    return Field(default_factory=lambda: DailyLimit(max=DEFAULT_DAILY_LIMITS[channel]))


class DailyLimits(BaseModel):
    email: DailyLimit = _limit(EMAIL)
    push: DailyLimit = _limit(PUSH)
    sms: DailyLimit = _limit(SMS)
    in_app: DailyLimit = _limit(IN_APP)
    webhook: DailyLimit = _limit(Channel.WEBHOOK)

    def get(self, channel: Channel) -> DailyLimit:
        return getattr(self, Channel(channel).value)


class NotificationPreference(BaseModel):
    """One user's notification settings. Created lazily with these defaults."""

    user_id: str
    subscription: SubscriptionPreferences = Field(default_factory=SubscriptionPreferences)
    content: ContentPreferences = Field(default_factory=ContentPreferences)
    engagement: EngagementPreferences = Field(default_factory=EngagementPreferences)
    premium: PremiumPreferences = Field(default_factory=PremiumPreferences)
    system: SystemPreferences = Field(default_factory=SystemPreferences)
    marketing: MarketingPreferences = Field(default_factory=MarketingPreferences)
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)
    daily_limits: DailyLimits = Field(default_factory=DailyLimits)

    def type_preference(self, category: "Category | str", notification_type: str) -> TypePreference:
        """Look up one notification type. Raises ValueError for names outside the document."""
        group = getattr(self, Category(category).value)
        if notification_type not in type(group).model_fields:
            raise ValueError(f"unknown notification type {category}.{notification_type}")
        return getattr(group, notification_type)

    def settings_document(self) -> dict[str, Any]:
        """The JSON document persisted for this user. Counters live in their own table."""
        doc = self.model_dump(mode="json", exclude={"user_id"})
        doc["daily_limits"] = {ch: {"max": v["max"]} for ch, v in doc["daily_limits"].items()}
        return doc

    @classmethod
    def from_document(cls, user_id: str, document: dict[str, Any] | None) -> "NotificationPreference":
        return cls.model_validate({**(document or {}), "user_id": user_id})


def merge_settings(prefs: NotificationPreference, changes: dict[str, Any]) -> NotificationPreference:
    """Deep-merge a partial settings update and re-validate the whole document."""
    merged = _deep_merge(prefs.model_dump(mode="json"), changes)
    merged["user_id"] = prefs.user_id
    return NotificationPreference.model_validate(merged)


def _deep_merge(base: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ── Event -> (category, notification type) ──

# Event types missing here are never delivered (analytics-only or retraction events).
CATEGORY_MAP: dict[EventType, tuple[Category, str]] = {
    E.SUBSCRIPTION_CREATED: (Category.SUBSCRIPTION, "lifecycle"),
    E.SUBSCRIPTION_GRANTED: (Category.SUBSCRIPTION, "lifecycle"),
    E.SUBSCRIPTION_UPGRADED: (Category.SUBSCRIPTION, "lifecycle"),
    E.SUBSCRIPTION_DOWNGRADED: (Category.SUBSCRIPTION, "lifecycle"),
    E.SUBSCRIPTION_CANCELLED: (Category.SUBSCRIPTION, "lifecycle"),
    E.SUBSCRIPTION_EXPIRED: (Category.SUBSCRIPTION, "lifecycle"),
    E.SUBSCRIPTION_RENEWED: (Category.SUBSCRIPTION, "renewals"),
    E.SUBSCRIPTION_EXTENDED: (Category.SUBSCRIPTION, "renewals"),
    E.SUBSCRIPTION_EXPIRING_SOON: (Category.SUBSCRIPTION, "reminders"),
    E.SUBSCRIPTION_EXPIRING_TODAY: (Category.SUBSCRIPTION, "reminders"),
    E.SUBSCRIPTION_EXPIRED_REMINDER: (Category.SUBSCRIPTION, "reminders"),
    E.SUBSCRIPTION_RENEWAL_REMINDER: (Category.SUBSCRIPTION, "reminders"),
    E.TRIAL_STARTED: (Category.SUBSCRIPTION, "lifecycle"),
    E.TRIAL_ENDING_SOON: (Category.SUBSCRIPTION, "reminders"),
    E.TRIAL_ENDED: (Category.SUBSCRIPTION, "lifecycle"),
    E.TRIAL_CONVERTED: (Category.SUBSCRIPTION, "lifecycle"),
    E.INSIGHT_PUBLISHED: (Category.CONTENT, "new_insights"),
    E.INSIGHT_FREE_PUBLISHED: (Category.CONTENT, "new_insights"),
    E.INSIGHT_UPDATED: (Category.CONTENT, "new_insights"),
    E.INSIGHT_PREMIUM_PUBLISHED: (Category.PREMIUM, "new_premium_content"),
    E.INSIGHT_FEATURED: (Category.CONTENT, "featured_insights"),
    E.NEW_CONTENT_AVAILABLE: (Category.CONTENT, "new_insights"),
    E.RECOMMENDED_CONTENT: (Category.CONTENT, "trending_content"),
    E.TRENDING_CONTENT: (Category.CONTENT, "trending_content"),
    E.PERSONALIZED_DIGEST: (Category.CONTENT, "personalized_digest"),
    E.WEEKLY_DIGEST: (Category.CONTENT, "personalized_digest"),
    E.INSIGHT_REQUEST_SUBMITTED: (Category.SYSTEM, "announcements"),
    E.INSIGHT_REQUEST_APPROVED: (Category.CONTENT, "new_insights"),
    E.INSIGHT_REQUEST_REJECTED: (Category.CONTENT, "new_insights"),
    E.INSIGHT_LIKED: (Category.ENGAGEMENT, "likes"),
    E.INSIGHT_COMMENTED: (Category.ENGAGEMENT, "comments"),
    E.COMMENT_REPLIED: (Category.ENGAGEMENT, "replies"),
    E.USER_FOLLOWED: (Category.ENGAGEMENT, "followers"),
    E.AUTHOR_NEW_POST: (Category.CONTENT, "new_insights"),
    E.PREMIUM_ACCESS_GRANTED: (Category.PREMIUM, "new_premium_content"),
    E.PREMIUM_CONTENT_UNLOCKED: (Category.PREMIUM, "new_premium_content"),
    E.PREMIUM_FEATURE_AVAILABLE: (Category.PREMIUM, "exclusive_offers"),
    E.WELCOME_NEW_USER: (Category.SYSTEM, "announcements"),
    E.ACCOUNT_VERIFIED: (Category.SYSTEM, "announcements"),
    E.PASSWORD_RESET_REQUEST: (Category.SYSTEM, "security_alerts"),
    E.SECURITY_ALERT: (Category.SYSTEM, "security_alerts"),
    E.SYSTEM_ANNOUNCEMENT: (Category.SYSTEM, "announcements"),
    E.MAINTENANCE_SCHEDULED: (Category.SYSTEM, "announcements"),
    E.PAYMENT_SUCCESS: (Category.SUBSCRIPTION, "renewals"),
    E.PAYMENT_REFUNDED: (Category.SUBSCRIPTION, "renewals"),
    E.INVOICE_GENERATED: (Category.SUBSCRIPTION, "renewals"),
    E.PAYMENT_FAILED: (Category.SUBSCRIPTION, "reminders"),
    E.PAYMENT_METHOD_EXPIRING: (Category.SUBSCRIPTION, "reminders"),
}


def category_for(event_type: "EventType | str") -> tuple[Category, str] | None:
    if not isinstance(event_type, EventType):
        return None
    return CATEGORY_MAP.get(event_type)


# ── Gates ──


def is_enabled(
    prefs: NotificationPreference,
    category: "Category | str",
    notification_type: str,
    channel: Channel,
) -> bool:
    """True only when the type is enabled, its channel flag is set and the channel's global switch is on."""
    pref = prefs.type_preference(category, notification_type)
    if not pref.enabled or not pref.channels.get(channel):
        return False
    return prefs.global_settings.channel_enabled(channel)


def user_zone(prefs: NotificationPreference):
    return resolve_zone(prefs.global_settings.quiet_hours.timezone)


def is_in_quiet_hours(
    prefs: NotificationPreference,
    bypass_for_critical: bool = False,
    now: datetime | None = None,
) -> bool:
    """Whether the user's local hour falls in [start_hour, end_hour), wrapping past midnight.

    ``bypass_for_critical`` short-circuits to False when the user allows
    critical notifications through quiet hours. A window with equal start and
    end hours is empty.
    """
    quiet = prefs.global_settings.quiet_hours
    if not quiet.enabled:
        return False
    if bypass_for_critical and quiet.exclude_critical:
        return False

    hour = local_hour(user_zone(prefs), now)
    start, end = quiet.start_hour, quiet.end_hour
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def _roll_daily_limit(prefs: NotificationPreference, channel: Channel, now: datetime) -> DailyLimit:
    limit = prefs.daily_limits.get(channel)
    if limit.reset_at is None or now >= ensure_aware(limit.reset_at):
        limit.sent_today = 0
        limit.reset_at = next_local_midnight(user_zone(prefs), now)
    return limit


def has_reached_daily_limit(
    prefs: NotificationPreference,
    channel: Channel,
    now: datetime | None = None,
) -> bool:
    """Compare today's count with the channel cap, resetting the count once ``reset_at`` has passed."""
    limit = _roll_daily_limit(prefs, channel, ensure_aware(now or utc_now()))
    if limit.max is None:
        return False
    return limit.sent_today >= limit.max


def record_send(prefs: NotificationPreference, channel: Channel, now: datetime | None = None) -> int:
    """Count one send against the in-memory snapshot. Returns the new count."""
    limit = _roll_daily_limit(prefs, channel, ensure_aware(now or utc_now()))
    limit.sent_today += 1
    return limit.sent_today


def filter_channels(
    prefs: NotificationPreference,
    category: "Category | str",
    notification_type: str,
    requested: Iterable[Channel],
    priority: Priority,
    now: datetime | None = None,
) -> list[Channel]:
    """Apply every preference gate to the requested channels, keeping request order.

    Gates: global switch, quiet hours, type/channel flag, daily cap. Critical
    events always skip the quiet-hours gate; ``exclude_critical`` only shapes
    what ``is_in_quiet_hours`` reports.
    """
    now = ensure_aware(now or utc_now())
    if priority != Priority.CRITICAL and is_in_quiet_hours(prefs, now=now):
        log.debug("notification_quiet_hours", user_id=prefs.user_id, priority=priority.value)
        return []

    enabled: list[Channel] = []
    for channel in dict.fromkeys(requested):
        if not prefs.global_settings.channel_enabled(channel):
            continue
        if not is_enabled(prefs, category, notification_type, channel):
            continue
        if has_reached_daily_limit(prefs, channel, now):
            log.info("daily_limit_reached", user_id=prefs.user_id, channel=channel.value)
            continue
        enabled.append(channel)
    return enabled
