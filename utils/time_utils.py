"""Timezone handling and day-window helpers."""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from config.settings import settings

log = structlog.get_logger(__name__)


def utc_now() -> datetime:
    """Get current time in UTC."""
    return datetime.now(UTC)


def resolve_zone(name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for a user's timezone name, or the default zone.

    A missing or unknown name falls back to ``settings.default_timezone``.
    """
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("invalid_timezone", timezone=name, fallback=settings.default_timezone)
    return ZoneInfo(settings.default_timezone)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def local_hour(zone: ZoneInfo, now: datetime | None = None) -> int:
    now = ensure_aware(now or utc_now())
    return now.astimezone(zone).hour


def next_local_midnight(zone: ZoneInfo, now: datetime | None = None) -> datetime:
    """The next midnight in ``zone`` after ``now``, returned in UTC."""
    now = ensure_aware(now or utc_now())
    local_today = now.astimezone(zone).date()
    midnight = datetime.combine(local_today + timedelta(days=1), time.min, tzinfo=zone)
    return midnight.astimezone(UTC)


def start_of_utc_day(now: datetime | None = None) -> datetime:
    now = ensure_aware(now or utc_now()).astimezone(UTC)
    return datetime.combine(now.date(), time.min, tzinfo=UTC)


def utc_day_window(offset_days: int, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Half-open [start, end) window covering the UTC day ``offset_days`` from today.

    Negative offsets address past days (e.g. -3 is the day three days ago).
    """
    start = start_of_utc_day(now) + timedelta(days=offset_days)
    return start, start + timedelta(days=1)


def utc_date(now: datetime | None = None) -> date:
    return ensure_aware(now or utc_now()).astimezone(UTC).date()


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole UTC calendar days from ``earlier`` to ``later`` (negative if reversed)."""
    return (utc_date(later) - utc_date(earlier)).days


def format_date(dt: datetime | date | None) -> str:
    """Format a date for notification copy."""
    if dt is None:
        return "N/A"
    return dt.strftime("%b %d, %Y")
