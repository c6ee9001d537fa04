"""Cron schedules for reminder producers and maintenance sweeps.

Each entry is keyword arguments for an APScheduler ``CronTrigger``, evaluated in
``settings.scheduler_timezone``.
"""

from typing import Any

# Subscription reminders
EXPIRING_SOON_CRON: dict[str, Any] = {"hour": 9, "minute": 0}          # daily 09:00
EXPIRING_TODAY_CRON: dict[str, Any] = {"minute": 0}                     # hourly
EXPIRED_REMINDER_CRON: dict[str, Any] = {"hour": 10, "minute": 0}       # daily 10:00
WEEKLY_DIGEST_CRON: dict[str, Any] = {"day_of_week": "mon", "hour": 9, "minute": 0}

# Maintenance
MARK_EXPIRED_CRON: dict[str, Any] = {"minute": 5}                       # hourly
STUCK_PENDING_CRON: dict[str, Any] = {"minute": 30}                     # hourly
RESET_STUCK_JOBS_CRON: dict[str, Any] = {"minute": "*/15"}
CLEANUP_JOBS_CRON: dict[str, Any] = {"day_of_week": "sun", "hour": 3, "minute": 0}
CLEANUP_NOTIFICATIONS_CRON: dict[str, Any] = {"day_of_week": "sun", "hour": 3, "minute": 30}

# Seconds a missed run may still fire after its scheduled time
MISFIRE_GRACE_SECONDS = 300
