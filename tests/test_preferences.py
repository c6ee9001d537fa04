"""Tests for notifications/preferences.py: document model and delivery gates."""

import pytest
from datetime import UTC, datetime, timedelta
from pydantic import ValidationError
from config.constants import Channel, EventType, Priority
from notifications.preferences import (
    CATEGORY_MAP,
    Category,
    NotificationPreference,
    category_for,
    filter_channels,
    has_reached_daily_limit,
    is_enabled,
    is_in_quiet_hours,
    merge_settings,
    record_send,
)


def at_hour(hour: int) -> datetime:
    return datetime(2025, 6, 11, hour, 15, tzinfo=UTC)


def quiet(prefs, start=22, end=7, tz="UTC", exclude_critical=True):
    q = prefs.global_settings.quiet_hours
    q.enabled = True
    q.start_hour = start
    q.end_hour = end
    q.timezone = tz
    q.exclude_critical = exclude_critical
    return prefs


class TestDocumentDefaults:
    def test_global_switches(self, prefs):
        g = prefs.global_settings
        assert g.email_enabled and g.push_enabled and g.in_app_enabled
        assert not g.sms_enabled
        assert not g.webhook_enabled
        assert not g.quiet_hours.enabled

    def test_daily_limit_defaults(self, prefs):
        assert prefs.daily_limits.email.max == 10
        assert prefs.daily_limits.push.max == 20
        assert prefs.daily_limits.sms.max is None
        assert prefs.daily_limits.in_app.max is None

    def test_type_defaults(self, prefs):
        lifecycle = prefs.subscription.lifecycle
        assert lifecycle.enabled
        assert lifecycle.channels.email and lifecycle.channels.in_app
        assert not lifecycle.channels.sms
        assert prefs.subscription.reminders.days_before_expiry == [7, 3, 1]
        assert prefs.content.personalized_digest.frequency == "weekly"
        assert prefs.content.personalized_digest.day_of_week == 0

    def test_marketing_promotional_off_by_default(self, prefs):
        assert not prefs.marketing.promotional.enabled
        assert not prefs.system.product_updates.enabled

    def test_defaults_are_not_shared(self):
        a = NotificationPreference(user_id="a")
        b = NotificationPreference(user_id="b")
        a.subscription.lifecycle.channels.email = False
        assert b.subscription.lifecycle.channels.email is True


class TestTypePreference:
    def test_lookup(self, prefs):
        assert prefs.type_preference(Category.CONTENT, "new_insights") is prefs.content.new_insights
        assert prefs.type_preference("system", "security_alerts") is prefs.system.security_alerts

    def test_unknown_type_raises(self, prefs):
        with pytest.raises(ValueError):
            prefs.type_preference(Category.CONTENT, "nonexistent")

    def test_unknown_category_raises(self, prefs):
        with pytest.raises(ValueError):
            prefs.type_preference("astrology", "lifecycle")


class TestDocumentPersistence:
    def test_settings_document_keeps_only_caps(self, prefs, now):
        record_send(prefs, Channel.EMAIL, now)
        doc = prefs.settings_document()
        assert "user_id" not in doc
        assert doc["daily_limits"]["email"] == {"max": 10}
        assert doc["daily_limits"]["sms"] == {"max": None}

    def test_from_document(self):
        prefs = NotificationPreference.from_document("u9", {
            "global_settings": {"sms_enabled": True, "phone_number": "+15550100"},
            "daily_limits": {"email": {"max": 2, "sent_today": 1}},
        })
        assert prefs.user_id == "u9"
        assert prefs.global_settings.sms_enabled
        assert prefs.daily_limits.email.max == 2
        assert prefs.daily_limits.email.sent_today == 1
        # Untouched sections keep their defaults
        assert prefs.daily_limits.push.max == 20

    def test_from_empty_document(self):
        assert NotificationPreference.from_document("u9", None).content.new_insights.enabled


class TestMergeSettings:
    def test_deep_merge_keeps_siblings(self, prefs):
        updated = merge_settings(prefs, {"global_settings": {"quiet_hours": {"enabled": True, "start_hour": 23}}})
        q = updated.global_settings.quiet_hours
        assert q.enabled and q.start_hour == 23
        assert q.end_hour == 8
        assert updated.global_settings.email_enabled

    def test_user_id_cannot_change(self, prefs):
        assert merge_settings(prefs, {"user_id": "evil"}).user_id == "u1"

    def test_invalid_value_rejected(self, prefs):
        with pytest.raises(ValidationError):
            merge_settings(prefs, {"global_settings": {"quiet_hours": {"start_hour": 25}}})

    def test_invalid_frequency_rejected(self, prefs):
        with pytest.raises(ValidationError):
            merge_settings(prefs, {"content": {"personalized_digest": {"frequency": "hourly"}}})


class TestCategoryMap:
    def test_every_mapping_points_at_a_real_type(self, prefs):
        for event_type, (category, notification_type) in CATEGORY_MAP.items():
            prefs.type_preference(category, notification_type)

    def test_reminders(self):
        assert category_for(EventType.SUBSCRIPTION_EXPIRING_SOON) == (Category.SUBSCRIPTION, "reminders")

    def test_premium_published_maps_to_premium(self):
        assert category_for(EventType.INSIGHT_PREMIUM_PUBLISHED) == (Category.PREMIUM, "new_premium_content")

    @pytest.mark.parametrize("event_type", [
        EventType.PREMIUM_ACCESS_DENIED,
        EventType.INSIGHT_UNPUBLISHED,
        EventType.INSIGHT_DELETED,
        EventType.INSIGHT_UNFEATURED,
    ])
    def test_analytics_only_events_unmapped(self, event_type):
        assert category_for(event_type) is None

    def test_unknown_string_unmapped(self):
        assert category_for("custom:thing") is None


class TestIsEnabled:
    @pytest.mark.parametrize("type_flag,global_flag,expected", [
        (False, False, False),
        (True, False, False),
        (False, True, False),
        (True, True, True),
    ])
    def test_requires_both_flags(self, prefs, type_flag, global_flag, expected):
        prefs.subscription.lifecycle.channels.email = type_flag
        prefs.global_settings.email_enabled = global_flag
        assert is_enabled(prefs, Category.SUBSCRIPTION, "lifecycle", Channel.EMAIL) is expected

    def test_disabled_type_blocks_every_channel(self, prefs):
        prefs.subscription.lifecycle.enabled = False
        for channel in Channel:
            assert not is_enabled(prefs, Category.SUBSCRIPTION, "lifecycle", channel)

    def test_sms_off_globally_by_default(self, prefs):
        assert not is_enabled(prefs, Category.SYSTEM, "security_alerts", Channel.SMS)
        prefs.global_settings.sms_enabled = True
        assert is_enabled(prefs, Category.SYSTEM, "security_alerts", Channel.SMS)


class TestQuietHours:
    def test_disabled_never_quiet(self, prefs):
        assert not is_in_quiet_hours(prefs, now=at_hour(23))

    @pytest.mark.parametrize("hour,expected", [(23, True), (3, True), (22, True), (7, False), (10, False), (21, False)])
    def test_wraparound_window(self, prefs, hour, expected):
        quiet(prefs, 22, 7)
        assert is_in_quiet_hours(prefs, now=at_hour(hour)) is expected

    @pytest.mark.parametrize("hour,expected", [(13, True), (16, True), (17, False), (12, False)])
    def test_same_day_window(self, prefs, hour, expected):
        quiet(prefs, 13, 17)
        assert is_in_quiet_hours(prefs, now=at_hour(hour)) is expected

    def test_equal_start_end_is_empty(self, prefs):
        quiet(prefs, 5, 5)
        assert not any(is_in_quiet_hours(prefs, now=at_hour(h)) for h in range(24))

    def test_critical_bypass(self, prefs):
        quiet(prefs, 22, 7)
        for hour in (22, 23, 0, 3, 6):
            assert not is_in_quiet_hours(prefs, bypass_for_critical=True, now=at_hour(hour))

    def test_bypass_respects_exclude_critical_off(self, prefs):
        quiet(prefs, 22, 7, exclude_critical=False)
        assert is_in_quiet_hours(prefs, bypass_for_critical=True, now=at_hour(23))

    def test_uses_user_timezone(self, prefs):
        # 12:15 UTC is 21:15 in Tokyo (UTC+9); 22:00 local is 13:00 UTC
        quiet(prefs, 22, 7, tz="Asia/Tokyo")
        assert not is_in_quiet_hours(prefs, now=at_hour(12))
        assert is_in_quiet_hours(prefs, now=at_hour(13))

    def test_invalid_timezone_falls_back(self, prefs):
        quiet(prefs, 22, 7, tz="Not/AZone")
        assert is_in_quiet_hours(prefs, now=at_hour(23))


class TestDailyLimit:
    def test_unlimited_channel(self, prefs, now):
        for _ in range(100):
            record_send(prefs, Channel.IN_APP, now)
        assert not has_reached_daily_limit(prefs, Channel.IN_APP, now)

    def test_cap_reached_after_max_sends(self, prefs, now):
        prefs.daily_limits.email.max = 3
        for i in range(3):
            assert not has_reached_daily_limit(prefs, Channel.EMAIL, now)
            assert record_send(prefs, Channel.EMAIL, now) == i + 1
        assert has_reached_daily_limit(prefs, Channel.EMAIL, now)

    def test_resets_after_reset_at(self, prefs, now):
        prefs.daily_limits.email.max = 1
        record_send(prefs, Channel.EMAIL, now)
        assert has_reached_daily_limit(prefs, Channel.EMAIL, now)
        reset_at = prefs.daily_limits.email.reset_at
        assert reset_at == datetime(2025, 6, 12, tzinfo=UTC)
        assert not has_reached_daily_limit(prefs, Channel.EMAIL, reset_at + timedelta(seconds=1))
        assert prefs.daily_limits.email.sent_today == 0

    def test_reset_at_is_local_midnight(self, prefs, now):
        prefs.global_settings.quiet_hours.timezone = "America/New_York"
        record_send(prefs, Channel.EMAIL, now)
        # Midnight EDT (UTC-4) on 12 June
        assert prefs.daily_limits.email.reset_at == datetime(2025, 6, 12, 4, tzinfo=UTC)

    def test_zero_cap_blocks(self, prefs, now):
        prefs.daily_limits.push.max = 0
        assert has_reached_daily_limit(prefs, Channel.PUSH, now)


class TestFilterChannels:
    requested = (Channel.EMAIL, Channel.PUSH, Channel.IN_APP, Channel.SMS)

    def test_default_reminders(self, prefs, now):
        channels = filter_channels(prefs, Category.SUBSCRIPTION, "reminders", self.requested, Priority.HIGH, now)
        assert channels == [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]

    def test_keeps_request_order_and_dedupes(self, prefs, now):
        channels = filter_channels(
            prefs, Category.SUBSCRIPTION, "reminders",
            [Channel.IN_APP, Channel.EMAIL, Channel.IN_APP], Priority.HIGH, now,
        )
        assert channels == [Channel.IN_APP, Channel.EMAIL]

    def test_quiet_hours_suppress_non_critical(self, prefs):
        quiet(prefs, 22, 7)
        channels = filter_channels(prefs, Category.SUBSCRIPTION, "reminders", self.requested, Priority.HIGH, at_hour(23))
        assert channels == []

    def test_critical_bypasses_quiet_hours(self, prefs):
        quiet(prefs, 22, 7)
        channels = filter_channels(prefs, Category.SUBSCRIPTION, "reminders", self.requested, Priority.CRITICAL, at_hour(23))
        assert channels == [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]

    def test_critical_delivered_when_exclude_critical_off(self, prefs):
        quiet(prefs, 22, 7, exclude_critical=False)
        channels = filter_channels(prefs, Category.SUBSCRIPTION, "reminders", self.requested, Priority.CRITICAL, at_hour(23))
        assert channels == [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]

    def test_critical_still_subject_to_daily_limit(self, prefs):
        quiet(prefs, 22, 7)
        now = at_hour(23)
        prefs.daily_limits.email.max = 1
        record_send(prefs, Channel.EMAIL, now)
        channels = filter_channels(prefs, Category.SUBSCRIPTION, "reminders", self.requested, Priority.CRITICAL, now)
        assert channels == [Channel.PUSH, Channel.IN_APP]

    def test_everything_disabled(self, prefs, now):
        prefs.subscription.lifecycle.enabled = False
        channels = filter_channels(prefs, Category.SUBSCRIPTION, "lifecycle", self.requested, Priority.HIGH, now)
        assert channels == []
