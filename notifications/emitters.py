"""Typed emit helpers used by subscription, content and account code.

Each helper shapes the payload for one event type and emits it on the given
bus. They return the emitted Event (or events) so callers can log the id.
"""

import math
from datetime import datetime
from typing import Any

from config.constants import PREMIUM_TIER, EventType
from notifications.bus import EventBus
from notifications.events import Event
from utils.time_utils import ensure_aware, utc_now

E = EventType


def _days_until(end: datetime | None, start: datetime) -> int | None:
    if end is None:
        return None
    seconds = (ensure_aware(end) - ensure_aware(start)).total_seconds()
    return math.ceil(seconds / 86400)


def _clean(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


# ── Subscription lifecycle ──


def emit_subscription_created(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    tier: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    source: str | None = None,
) -> Event:
    return bus.emit(E.SUBSCRIPTION_CREATED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "tier": tier,
        "start_date": start_date,
        "end_date": end_date,
        "subscription_source": source,
    }))


def emit_subscription_granted(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    tier: str = PREMIUM_TIER,
    end_date: datetime | None = None,
    granted_by: str | None = None,
    now: datetime | None = None,
) -> Event:
    """Admin-granted access. No end date means lifetime access."""
    now = now or utc_now()
    return bus.emit(E.SUBSCRIPTION_GRANTED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "tier": tier,
        "end_date": end_date,
        "granted_by": granted_by,
        "granted_at": now,
        "is_lifetime": end_date is None,
        "days_until_expiry": _days_until(end_date, now),
        "cta_url": "/insights/premium",
    }))


def emit_subscription_upgraded(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    old_tier: str,
    new_tier: str,
    end_date: datetime | None = None,
) -> Event:
    return bus.emit(E.SUBSCRIPTION_UPGRADED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "old_tier": old_tier,
        "new_tier": new_tier,
        "end_date": end_date,
        "direction": "upgrade",
    }))


def emit_subscription_downgraded(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    old_tier: str,
    new_tier: str,
    reason: str | None = None,
) -> Event:
    return bus.emit(E.SUBSCRIPTION_DOWNGRADED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "old_tier": old_tier,
        "new_tier": new_tier,
        "reason": reason,
        "direction": "downgrade",
    }))


def emit_subscription_renewed(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    old_end_date: datetime | None,
    new_end_date: datetime,
) -> Event:
    days = _days_until(new_end_date, old_end_date) if old_end_date else None
    return bus.emit(E.SUBSCRIPTION_RENEWED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "old_end_date": old_end_date,
        "end_date": new_end_date,
        "days_extended": days,
    }))


def emit_subscription_extended(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    old_end_date: datetime,
    new_end_date: datetime,
    reason: str | None = None,
    extended_by: str | None = None,
) -> Event:
    return bus.emit(E.SUBSCRIPTION_EXTENDED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "old_end_date": old_end_date,
        "end_date": new_end_date,
        "extended_days": _days_until(new_end_date, old_end_date),
        "reason": reason,
        "extended_by": extended_by,
    }))


def emit_subscription_cancelled(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    end_date: datetime | None = None,
    reason: str | None = None,
) -> Event:
    return bus.emit(E.SUBSCRIPTION_CANCELLED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "end_date": end_date,
        "reason": reason,
        "renew_url": "/subscriptions/reactivate",
    }))


def emit_subscription_expired(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    tier: str | None = None,
    expired_at: datetime | None = None,
) -> Event:
    return bus.emit(E.SUBSCRIPTION_EXPIRED, _clean({
        "user_id": user_id,
        "subscription_id": subscription_id,
        "tier": tier,
        "expired_at": expired_at or utc_now(),
        "renew_url": "/subscriptions/renew",
    }))


# ── Reminders ──


def emit_subscription_expiring_soon(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    end_date: datetime,
    days_remaining: int,
    auto_renew: bool = False,
    idempotency_key: str | None = None,
) -> Event:
    return bus.emit(
        E.SUBSCRIPTION_EXPIRING_SOON,
        {
            "user_id": user_id,
            "subscription_id": subscription_id,
            "end_date": end_date,
            "days_remaining": days_remaining,
            "auto_renew": auto_renew,
            "renew_url": "/subscriptions/renew",
        },
        source="scheduler",
        idempotency_key=idempotency_key,
    )


def emit_subscription_expiring_today(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    end_date: datetime,
    idempotency_key: str | None = None,
) -> Event:
    return bus.emit(
        E.SUBSCRIPTION_EXPIRING_TODAY,
        {
            "user_id": user_id,
            "subscription_id": subscription_id,
            "end_date": end_date,
            "renew_url": "/subscriptions/renew",
        },
        source="scheduler",
        idempotency_key=idempotency_key,
    )


def emit_subscription_expired_reminder(
    bus: EventBus,
    user_id: str,
    subscription_id: str,
    days_expired: int,
    special_offer: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> Event:
    return bus.emit(
        E.SUBSCRIPTION_EXPIRED_REMINDER,
        _clean({
            "user_id": user_id,
            "subscription_id": subscription_id,
            "days_expired": days_expired,
            "special_offer": special_offer,
            "renew_url": "/subscriptions/renew",
        }),
        source="scheduler",
        idempotency_key=idempotency_key,
    )


# ── Content ──


def emit_insight_published(bus: EventBus, insight: dict[str, Any]) -> list[Event]:
    """Emit ``insight:published`` plus the premium or free variant.

    The generic event is for listeners that care about any publication; the
    variant is what reaches subscribers' inboxes.
    """
    insight_id = insight.get("id")
    payload = _clean({
        "insight_id": insight_id,
        "title": insight.get("title"),
        "excerpt": insight.get("excerpt"),
        "type": insight.get("type", "free"),
        "category": insight.get("category"),
        "author_id": insight.get("author_id"),
        "author_name": insight.get("author_name"),
        "published_at": insight.get("published_at") or utc_now(),
        "url": insight.get("url") or f"/insights/{insight_id}",
        "cover_image": insight.get("cover_image"),
    })
    events = [bus.emit(E.INSIGHT_PUBLISHED, payload)]
    if payload["type"] == "premium":
        events.append(bus.emit(E.INSIGHT_PREMIUM_PUBLISHED, {
            **payload,
            "upgrade_url": "/subscriptions/upgrade",
        }))
    else:
        events.append(bus.emit(E.INSIGHT_FREE_PUBLISHED, payload))
    return events


def emit_insight_updated(bus: EventBus, insight_id: str, title: str, changes: list[str] | None = None) -> Event:
    return bus.emit(E.INSIGHT_UPDATED, {
        "insight_id": insight_id,
        "title": title,
        "changes": changes or [],
        "url": f"/insights/{insight_id}",
    })


def emit_insight_featured(bus: EventBus, insight: dict[str, Any]) -> Event:
    insight_id = insight.get("id")
    return bus.emit(E.INSIGHT_FEATURED, _clean({
        "insight_id": insight_id,
        "title": insight.get("title"),
        "excerpt": insight.get("excerpt"),
        "category": insight.get("category"),
        "cover_image": insight.get("cover_image"),
        "url": f"/insights/{insight_id}",
    }))


def emit_weekly_digest(
    bus: EventBus,
    user_id: str,
    insights: list[dict[str, Any]],
    period_start: datetime,
    period_end: datetime,
    idempotency_key: str | None = None,
) -> Event:
    return bus.emit(
        E.WEEKLY_DIGEST,
        {
            "user_id": user_id,
            "period": "weekly",
            "period_start": period_start,
            "period_end": period_end,
            "insights": [
                _clean({
                    "id": i.get("id"),
                    "title": i.get("title"),
                    "excerpt": i.get("excerpt"),
                    "category": i.get("category"),
                    "type": i.get("type"),
                })
                for i in insights
            ],
        },
        source="scheduler",
        idempotency_key=idempotency_key,
    )


# ── Premium access ──


def emit_premium_content_unlocked(bus: EventBus, user_id: str, insight_id: str, title: str) -> Event:
    return bus.emit(E.PREMIUM_CONTENT_UNLOCKED, {
        "user_id": user_id,
        "insight_id": insight_id,
        "title": title,
        "cta_url": f"/insights/{insight_id}",
    })


def emit_premium_access_denied(bus: EventBus, user_id: str, insight_id: str, reason: str) -> Event:
    """Analytics-only: never turns into a notification."""
    return bus.emit(E.PREMIUM_ACCESS_DENIED, {
        "user_id": user_id,
        "insight_id": insight_id,
        "reason": reason,
    })


# ── Account and system ──


def emit_welcome_new_user(bus: EventBus, user_id: str, user_name: str | None = None) -> Event:
    return bus.emit(E.WELCOME_NEW_USER, _clean({
        "user_id": user_id,
        "user_name": user_name,
        "cta_url": "/insights",
    }))


def emit_security_alert(
    bus: EventBus, user_id: str, alert_type: str, message: str, ip_address: str | None = None
) -> Event:
    return bus.emit(E.SECURITY_ALERT, _clean({
        "user_id": user_id,
        "alert_type": alert_type,
        "message": message,
        "ip_address": ip_address,
    }))


# ── Insight requests ──


def emit_insight_request_submitted(
    bus: EventBus, request_id: str, title: str, requester_id: str, requester_name: str | None = None
) -> Event:
    """Goes to admins. The requester id is kept under its own key so it is not taken as the recipient."""
    return bus.emit(E.INSIGHT_REQUEST_SUBMITTED, _clean({
        "request_id": request_id,
        "title": title,
        "requester_id": requester_id,
        "user_name": requester_name,
        "admin_url": f"/admin/insight-requests/{request_id}",
    }))


def emit_insight_request_approved(
    bus: EventBus, user_id: str, request_id: str, title: str, insight_id: str | None = None
) -> Event:
    return bus.emit(E.INSIGHT_REQUEST_APPROVED, _clean({
        "user_id": user_id,
        "request_id": request_id,
        "title": title,
        "cta_url": f"/insights/{insight_id}" if insight_id else None,
    }))


def emit_insight_request_rejected(
    bus: EventBus, user_id: str, request_id: str, title: str, reason: str | None = None
) -> Event:
    return bus.emit(E.INSIGHT_REQUEST_REJECTED, _clean({
        "user_id": user_id,
        "request_id": request_id,
        "title": title,
        "reason": reason,
    }))


# ── Payments ──


def emit_payment_succeeded(bus: EventBus, user_id: str, amount: float, currency: str = "USD", payment_id: str | None = None) -> Event:
    return bus.emit(E.PAYMENT_SUCCESS, _clean({
        "user_id": user_id,
        "amount": amount,
        "currency": currency,
        "payment_id": payment_id,
    }))


def emit_payment_failed(
    bus: EventBus, user_id: str, amount: float, currency: str = "USD", reason: str | None = None
) -> Event:
    return bus.emit(E.PAYMENT_FAILED, _clean({
        "user_id": user_id,
        "amount": amount,
        "currency": currency,
        "reason": reason,
    }))
