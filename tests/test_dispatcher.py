"""Tests for notifications/dispatcher.py: per-recipient pipeline and delivery results."""

import pytest
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from config.constants import Channel, ChannelStatus, EventType, JobType, OverallStatus
from notifications.dispatcher import NotificationDispatcher


class TestNotificationDispatcher:
    @pytest.fixture
    def dispatcher(self, fake_pool, mock_preference_repo, mock_notification_repo, mock_job_repo):
        d = NotificationDispatcher(fake_pool)
        d.preference_repo = mock_preference_repo
        d.notification_repo = mock_notification_repo
        d.job_repo = mock_job_repo
        return d


class TestSendToUser(TestNotificationDispatcher):
    async def test_granted_end_to_end(self, dispatcher, bus, user, prefs, now):
        prefs.subscription.lifecycle.channels.push = True
        event = bus.emit(
            EventType.SUBSCRIPTION_GRANTED,
            {"user_id": "u1", "tier": "premium", "end_date": now + timedelta(days=30), "days_until_expiry": 30},
            channels=["email", "push", "in_app"],
        )

        record = await dispatcher.send_to_user(event, user, now)

        assert record is not None
        assert record.id == 101
        assert record.recipient_id == "u1"
        assert record.enabled_channels == [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]
        assert record.channels[Channel.IN_APP].status == ChannelStatus.UNREAD
        assert record.channels[Channel.IN_APP].sent_at == now
        assert record.channels[Channel.EMAIL].status == ChannelStatus.PENDING
        assert record.title == "Premium Access Granted! 🎉"
        assert "30-day" in record.body

        dispatcher.notification_repo.create.assert_awaited_once()
        dispatcher.notification_repo.transition_channel.assert_awaited_once_with(
            101, Channel.IN_APP, [ChannelStatus.PENDING], ChannelStatus.UNREAD, now
        )

        specs = dispatcher.job_repo.create_bulk_jobs.call_args[0][0]
        assert [s.job_type for s in specs] == [JobType.EMAIL, JobType.PUSH]
        assert all(s.priority == 7 for s in specs)
        assert specs[0].payload == {"notification_id": 101, "user_id": "u1", "channel": "email"}
        assert specs[0].job_id == "notification-101-email"
        dispatcher.notification_repo.refresh_overall_status.assert_awaited_once_with(101, now)

    async def test_record_keeps_every_requested_channel(self, dispatcher, bus, user, now):
        event = bus.emit(EventType.SUBSCRIPTION_GRANTED, {"user_id": "u1"}, channels=["email", "push", "in_app"])
        record = await dispatcher.send_to_user(event, user, now)
        # Lifecycle defaults to email + in-app; push stays on the record, disabled
        assert set(record.channels) == {Channel.EMAIL, Channel.PUSH, Channel.IN_APP}
        assert record.channels[Channel.PUSH].enabled is False
        specs = dispatcher.job_repo.create_bulk_jobs.call_args[0][0]
        assert [s.job_type for s in specs] == [JobType.EMAIL]

    async def test_metadata(self, dispatcher, bus, user, now):
        expires = now + timedelta(days=1)
        event = bus.emit(
            EventType.SUBSCRIPTION_EXPIRING_SOON,
            {"user_id": "u1", "days_remaining": 3},
            source="scheduler",
            expires_at=expires,
            idempotency_key="s1:expiring-soon:3:2025-06-11",
            metadata={"batch": "b1"},
        )
        record = await dispatcher.send_to_user(event, user, now)
        assert record.idempotency_key == "s1:expiring-soon:3:2025-06-11"
        assert record.expires_at == expires
        assert record.metadata["event_id"] == event.event_id
        assert record.metadata["source"] == "scheduler"
        assert record.metadata["category"] == "subscription"
        assert record.metadata["notification_type"] == "reminders"
        assert record.metadata["event_data"] == {"user_id": "u1", "days_remaining": 3}
        assert record.metadata["batch"] == "b1"

    async def test_no_channels_creates_nothing(self, dispatcher, bus, user, prefs, now):
        prefs.subscription.lifecycle.enabled = False
        event = bus.emit(EventType.SUBSCRIPTION_GRANTED, {"user_id": "u1"})
        assert await dispatcher.send_to_user(event, user, now) is None
        dispatcher.notification_repo.create.assert_not_awaited()
        dispatcher.job_repo.create_bulk_jobs.assert_not_awaited()

    async def test_globally_disabled_channels_create_nothing(self, dispatcher, bus, user, prefs, now):
        g = prefs.global_settings
        g.email_enabled = g.push_enabled = g.in_app_enabled = False
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRED, {"user_id": "u1"})
        assert await dispatcher.send_to_user(event, user, now) is None
        dispatcher.notification_repo.create.assert_not_awaited()

    async def test_unmapped_event(self, dispatcher, bus, user, now):
        event = bus.emit(EventType.PREMIUM_ACCESS_DENIED, {"user_id": "u1"})
        assert await dispatcher.send_to_user(event, user, now) is None
        dispatcher.preference_repo.get_or_create_for_user.assert_not_awaited()

    async def test_in_app_only_enqueues_no_jobs(self, dispatcher, bus, user, now):
        event = bus.emit(EventType.INSIGHT_LIKED, {"user_id": "u1"})
        record = await dispatcher.send_to_user(event, user, now)
        assert record.enabled_channels == [Channel.IN_APP]
        dispatcher.job_repo.create_bulk_jobs.assert_not_awaited()
        dispatcher.notification_repo.refresh_overall_status.assert_awaited_once()

    async def test_overall_status_from_store(self, dispatcher, bus, user, now):
        dispatcher.notification_repo.refresh_overall_status = AsyncMock(return_value=OverallStatus.PARTIAL)
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRED, {"user_id": "u1"})
        record = await dispatcher.send_to_user(event, user, now)
        assert record.overall_status == OverallStatus.PARTIAL

    async def test_job_enqueue_failure_keeps_record(self, dispatcher, bus, user, now):
        dispatcher.job_repo.create_bulk_jobs = AsyncMock(side_effect=ConnectionError("queue down"))
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRED, {"user_id": "u1"})
        record = await dispatcher.send_to_user(event, user, now)
        assert record is not None
        assert record.channels[Channel.EMAIL].status == ChannelStatus.PENDING
        dispatcher.notification_repo.refresh_overall_status.assert_awaited_once()

    async def test_record_creation_failure_propagates(self, dispatcher, bus, user, now):
        dispatcher.notification_repo.create = AsyncMock(side_effect=RuntimeError("db down"))
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRED, {"user_id": "u1"})
        with pytest.raises(RuntimeError):
            await dispatcher.send_to_user(event, user, now)


class TestDailySlots(TestNotificationDispatcher):
    async def test_only_capped_channels_reserve(self, dispatcher, bus, user, now):
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_SOON, {"user_id": "u1", "days_remaining": 3})
        await dispatcher.send_to_user(event, user, now)
        calls = dispatcher.preference_repo.reserve_daily_slot.call_args_list
        assert [c[0][1] for c in calls] == [Channel.EMAIL, Channel.PUSH]
        user_id, channel, limit, next_reset, at = calls[0][0]
        assert (user_id, limit, at) == ("u1", 10, now)
        assert next_reset == datetime(2025, 6, 12, tzinfo=UTC)

    async def test_full_channel_dropped(self, dispatcher, bus, user, now):
        dispatcher.preference_repo.reserve_daily_slot = AsyncMock(
            side_effect=lambda user_id, channel, *a: channel != Channel.EMAIL
        )
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_SOON, {"user_id": "u1", "days_remaining": 3})
        record = await dispatcher.send_to_user(event, user, now)
        assert record.enabled_channels == [Channel.PUSH, Channel.IN_APP]
        assert record.channels[Channel.EMAIL].enabled is False

    async def test_all_full_creates_nothing(self, dispatcher, bus, user, now):
        dispatcher.preference_repo.reserve_daily_slot = AsyncMock(return_value=False)
        event = bus.emit(EventType.PAYMENT_SUCCESS, {"user_id": "u1"}, channels=["email"])
        assert await dispatcher.send_to_user(event, user, now) is None

    async def test_failed_insert_gives_slots_back(self, dispatcher, bus, user, now):
        dispatcher.notification_repo.create = AsyncMock(side_effect=RuntimeError("db down"))
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_SOON, {"user_id": "u1", "days_remaining": 3})
        with pytest.raises(RuntimeError):
            await dispatcher.send_to_user(event, user, now)
        calls = dispatcher.preference_repo.release_daily_slot.call_args_list
        assert [c[0] for c in calls] == [("u1", Channel.EMAIL, now), ("u1", Channel.PUSH, now)]

    async def test_cap_in_snapshot_skips_reservation(self, dispatcher, bus, user, prefs, now):
        prefs.daily_limits.email.sent_today = 10
        prefs.daily_limits.email.reset_at = now + timedelta(hours=2)
        event = bus.emit(EventType.PAYMENT_SUCCESS, {"user_id": "u1"}, channels=["email", "in_app"])
        record = await dispatcher.send_to_user(event, user, now)
        assert record.enabled_channels == [Channel.IN_APP]
        dispatcher.preference_repo.reserve_daily_slot.assert_not_awaited()


class TestCriticalDuringQuietHours(TestNotificationDispatcher):
    async def test_expiring_today_bypasses_quiet_hours(self, dispatcher, bus, user, prefs, now):
        quiet = prefs.global_settings.quiet_hours
        quiet.enabled, quiet.start_hour, quiet.end_hour = True, 10, 14
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_TODAY, {"user_id": "u1"})
        record = await dispatcher.send_to_user(event, user, now)
        assert record.enabled_channels == [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]
        specs = dispatcher.job_repo.create_bulk_jobs.call_args[0][0]
        assert all(s.priority == 10 for s in specs)

    async def test_critical_delivered_when_exclude_critical_off(self, dispatcher, bus, user, prefs, now):
        quiet = prefs.global_settings.quiet_hours
        quiet.enabled, quiet.start_hour, quiet.end_hour = True, 10, 14
        quiet.exclude_critical = False
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_TODAY, {"user_id": "u1"})
        record = await dispatcher.send_to_user(event, user, now)
        assert record.enabled_channels == [Channel.EMAIL, Channel.PUSH, Channel.IN_APP]

    async def test_critical_still_capped(self, dispatcher, bus, user, prefs, now):
        quiet = prefs.global_settings.quiet_hours
        quiet.enabled, quiet.start_hour, quiet.end_hour = True, 10, 14
        dispatcher.preference_repo.reserve_daily_slot = AsyncMock(
            side_effect=lambda user_id, channel, *a: channel != Channel.EMAIL
        )
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_TODAY, {"user_id": "u1"})
        record = await dispatcher.send_to_user(event, user, now)
        assert Channel.EMAIL not in record.enabled_channels
        assert Channel.PUSH in record.enabled_channels

    async def test_non_critical_suppressed(self, dispatcher, bus, user, prefs, now):
        quiet = prefs.global_settings.quiet_hours
        quiet.enabled, quiet.start_hour, quiet.end_hour = True, 10, 14
        event = bus.emit(EventType.SUBSCRIPTION_EXPIRING_SOON, {"user_id": "u1", "days_remaining": 3})
        assert await dispatcher.send_to_user(event, user, now) is None


class TestDeliveryResults(TestNotificationDispatcher):
    async def test_success(self, dispatcher, now):
        dispatcher.notification_repo.refresh_overall_status = AsyncMock(return_value=OverallStatus.SENT)
        status = await dispatcher.apply_delivery_result(101, "email", True, now=now)
        assert status == OverallStatus.SENT
        dispatcher.notification_repo.transition_channel.assert_awaited_once_with(
            101, Channel.EMAIL, [ChannelStatus.PENDING, ChannelStatus.FAILED], ChannelStatus.SENT, now, error=None
        )

    async def test_failure_sanitizes_error(self, dispatcher, now):
        await dispatcher.apply_delivery_result(101, Channel.SMS, False, error="bad token=abc", now=now)
        kwargs = dispatcher.notification_repo.transition_channel.call_args[1]
        args = dispatcher.notification_repo.transition_channel.call_args[0]
        assert args[3] == ChannelStatus.FAILED
        assert kwargs["error"] == "bad token=[REDACTED]"

    async def test_ignored_transition(self, dispatcher, now):
        dispatcher.notification_repo.transition_channel = AsyncMock(return_value=False)
        assert await dispatcher.apply_delivery_result(101, "push", True, now=now) is None
        dispatcher.notification_repo.refresh_overall_status.assert_not_awaited()

    async def test_in_app_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            await dispatcher.apply_delivery_result(101, Channel.IN_APP, True)

    async def test_unknown_channel_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            await dispatcher.apply_delivery_result(101, "pigeon", True)

    async def test_mark_in_app_read(self, dispatcher, now):
        assert await dispatcher.mark_in_app_read(101, now) is True
        dispatcher.notification_repo.transition_channel.assert_awaited_once_with(
            101, Channel.IN_APP, [ChannelStatus.UNREAD], ChannelStatus.READ, now
        )
        dispatcher.notification_repo.refresh_overall_status.assert_awaited_once_with(101, now)

    async def test_mark_in_app_read_not_unread(self, dispatcher, now):
        dispatcher.notification_repo.transition_channel = AsyncMock(return_value=False)
        assert await dispatcher.mark_in_app_read(101, now) is False
        dispatcher.notification_repo.refresh_overall_status.assert_not_awaited()
