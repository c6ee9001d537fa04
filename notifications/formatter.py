"""Title/body/call-to-action builders for each notification type."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import orjson
from config.constants import MAX_BODY_LENGTH, MAX_TITLE_LENGTH, EventType
from notifications.events import coerce_event_type
from notifications.types import RenderedContent, RichContent
from utils.formatting import first_present, format_currency, pluralize, titleize, truncate
from utils.time_utils import format_date

Payload = dict[str, Any]
Recipient = dict[str, Any]
Template = Callable[[Payload, Recipient], RenderedContent]

E = EventType

RENEW_URL = "/subscriptions/renew"
PREMIUM_URL = "/insights/premium"
BILLING_URL = "/account/billing"


def render(event_type: "EventType | str", payload: Payload, recipient: Recipient | None = None) -> RenderedContent:
    """Build channel-ready content. Unknown types get the generic template, never an error."""
    formatter = TEMPLATES.get(coerce_event_type(event_type), _format_default)
    content = formatter(payload or {}, recipient or {})
    content.title = truncate(content.title, MAX_TITLE_LENGTH)
    content.body = truncate(content.body, MAX_BODY_LENGTH)
    return content


def _name(recipient: Recipient) -> str:
    return recipient.get("name") or "there"


def _date(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return format_date(value)


def _cta(payload: Payload, default_url: str, text: str, *url_keys: str, image_url: str | None = None) -> RichContent:
    return RichContent(
        action_url=first_present(payload, *url_keys, default=default_url),
        action_text=text,
        image_url=image_url,
    )


# ── Subscription ──


def _format_subscription_granted(payload: Payload, recipient: Recipient) -> RenderedContent:
    if payload.get("is_lifetime"):
        access = "lifetime"
    elif payload.get("days_until_expiry") is not None:
        access = f"{payload['days_until_expiry']}-day"
    else:
        access = titleize(payload.get("tier")) or "premium"
    return RenderedContent(
        title="Premium Access Granted! 🎉",
        body=f"Congratulations {_name(recipient)}! You now have {access} premium access.",
        rich_content=_cta(payload, PREMIUM_URL, "Explore Premium Content", "cta_url"),
    )


def _format_subscription_created(payload: Payload, recipient: Recipient) -> RenderedContent:
    tier = titleize(payload.get("tier")) or "Premium"
    return RenderedContent(
        title=f"Welcome to {tier}!",
        body=f"Hi {_name(recipient)}, your {tier} subscription is now active.",
        rich_content=_cta(payload, PREMIUM_URL, "Explore Premium Content", "cta_url"),
    )


def _format_tier_change(payload: Payload, recipient: Recipient) -> RenderedContent:
    old_tier = titleize(payload.get("old_tier")) or "your previous plan"
    new_tier = titleize(payload.get("new_tier") or payload.get("tier")) or "a new plan"
    upgraded = payload.get("direction", "upgrade") == "upgrade"
    return RenderedContent(
        title="Subscription Upgraded ⬆️" if upgraded else "Subscription Changed",
        body=f"Your subscription moved from {old_tier} to {new_tier}.",
        rich_content=_cta(payload, "/account/subscription", "View Subscription", "cta_url"),
    )


def _format_subscription_renewed(payload: Payload, recipient: Recipient) -> RenderedContent:
    end_date = payload.get("end_date")
    until = f" It is now valid until {_date(end_date)}." if end_date else ""
    verb = "extended" if payload.get("extended_days") else "renewed"
    return RenderedContent(
        title=f"Subscription {verb.title()}",
        body=f"Your subscription has been {verb}.{until}",
        rich_content=_cta(payload, "/account/subscription", "View Subscription", "cta_url"),
    )


def _format_subscription_cancelled(payload: Payload, recipient: Recipient) -> RenderedContent:
    end_date = payload.get("end_date")
    access = f" You keep access until {_date(end_date)}." if end_date else ""
    return RenderedContent(
        title="Subscription Cancelled",
        body=f"Your subscription has been cancelled.{access}",
        rich_content=_cta(payload, RENEW_URL, "Reactivate", "renew_url"),
    )


def _format_subscription_expired(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Subscription Expired",
        body="Your premium subscription has expired. Renew now to regain access to premium insights.",
        rich_content=_cta(payload, RENEW_URL, "Renew Subscription", "renew_url"),
    )


def _format_expiring_soon(payload: Payload, recipient: Recipient) -> RenderedContent:
    days = int(payload.get("days_remaining", 0))
    return RenderedContent(
        title="Subscription Expiring Soon ⏰",
        body=f"Your premium subscription expires in {pluralize(days, 'day')}. Renew now to keep your access!",
        rich_content=_cta(payload, RENEW_URL, "Renew Now", "renew_url"),
    )


def _format_expiring_today(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Your Subscription Expires Today ⚠️",
        body="Your premium access ends today. Renew now to avoid losing access to premium insights.",
        rich_content=_cta(payload, RENEW_URL, "Renew Now", "renew_url"),
    )


def _format_expired_reminder(payload: Payload, recipient: Recipient) -> RenderedContent:
    days = int(payload.get("days_expired", 0))
    return RenderedContent(
        title="We Miss You!",
        body=f"Your premium subscription expired {pluralize(days, 'day')} ago. Come back to keep reading premium insights.",
        rich_content=_cta(payload, RENEW_URL, "Renew Subscription", "renew_url"),
    )


def _format_renewal_reminder(payload: Payload, recipient: Recipient) -> RenderedContent:
    end_date = _date(payload["end_date"]) if payload.get("end_date") else "soon"
    return RenderedContent(
        title="Upcoming Renewal",
        body=f"Your subscription renews automatically on {end_date}.",
        rich_content=_cta(payload, "/account/subscription", "Manage Subscription", "cta_url"),
    )


# ── Trials ──


def _format_trial(payload: Payload, recipient: Recipient, event_type: EventType) -> RenderedContent:
    days = payload.get("days_remaining")
    copy = {
        E.TRIAL_STARTED: ("Your Free Trial Has Started", "Enjoy full premium access during your trial."),
        E.TRIAL_ENDING_SOON: (
            "Your Trial Ends Soon",
            f"Your trial ends in {pluralize(int(days), 'day')}." if days is not None else "Your trial ends soon.",
        ),
        E.TRIAL_ENDED: ("Your Trial Has Ended", "Subscribe to keep your premium access."),
        E.TRIAL_CONVERTED: ("Thanks for Subscribing!", "Your trial has been converted to a full subscription."),
    }
    title, body = copy[event_type]
    return RenderedContent(title=title, body=body, rich_content=_cta(payload, PREMIUM_URL, "View Plans", "cta_url"))


# ── Content ──


def _format_insight(payload: Payload, recipient: Recipient, prefix: str = "New Insight", fallback: str = "A new insight has been published.") -> RenderedContent:
    title = payload.get("title") or "Untitled"
    return RenderedContent(
        title=f"{prefix}: {title}",
        body=payload.get("excerpt") or fallback,
        rich_content=_cta(payload, "/insights", "Read Now", "url", image_url=payload.get("cover_image")),
    )


def _format_insight_published(payload: Payload, recipient: Recipient) -> RenderedContent:
    return _format_insight(payload, recipient)


def _format_premium_published(payload: Payload, recipient: Recipient) -> RenderedContent:
    return _format_insight(payload, recipient, "🌟 New Premium Insight", "Exclusive premium content now available.")


def _format_insight_updated(payload: Payload, recipient: Recipient) -> RenderedContent:
    return _format_insight(payload, recipient, "Insight Updated", "An insight you follow has been updated.")


def _format_insight_featured(payload: Payload, recipient: Recipient) -> RenderedContent:
    return _format_insight(payload, recipient, "⭐ Featured", "An insight has been featured by our editors.")


def _format_insight_withdrawn(payload: Payload, recipient: Recipient, event_type: EventType) -> RenderedContent:
    title = payload.get("title") or "An insight"
    copy = {
        E.INSIGHT_UNPUBLISHED: ("Insight Unpublished", f"{title} is no longer published."),
        E.INSIGHT_DELETED: ("Insight Removed", f"{title} has been removed."),
        E.INSIGHT_UNFEATURED: ("Insight No Longer Featured", f"{title} is no longer featured."),
    }
    heading, body = copy[event_type]
    return RenderedContent(title=heading, body=body, rich_content=_cta(payload, "/insights", "Browse Insights"))


def _format_recommended(payload: Payload, recipient: Recipient) -> RenderedContent:
    return _format_insight(payload, recipient, "Recommended for You", "We found something you might like.")


def _format_trending(payload: Payload, recipient: Recipient) -> RenderedContent:
    return _format_insight(payload, recipient, "🔥 Trending", "This insight is trending right now.")


def _format_digest(payload: Payload, recipient: Recipient) -> RenderedContent:
    insights = payload.get("insights") or []
    lines = [f"• {item.get('title', 'Untitled')}" for item in insights[:10]]
    body = "\n".join(lines) if lines else "No new insights this week."
    period = payload.get("period", "weekly")
    return RenderedContent(
        title=f"Your {titleize(period)} Digest: {pluralize(len(insights), 'new insight')}",
        body=body,
        rich_content=_cta(payload, "/insights", "Read Digest", "url"),
    )


# ── Insight requests ──


def _format_request_submitted(payload: Payload, recipient: Recipient) -> RenderedContent:
    requester = payload.get("user_name") or "a user"
    return RenderedContent(
        title="New Insight Request 📝",
        body=f"A new insight request has been submitted by {requester}: {payload.get('title', '')}",
        rich_content=_cta(payload, "/admin/insight-requests", "Review Request", "admin_url"),
    )


def _format_request_approved(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Insight Request Approved! 🎉",
        body=f'Congratulations! Your insight request "{payload.get("title", "")}" has been approved.',
        rich_content=_cta(payload, "/insights", "View Content", "cta_url"),
    )


def _format_request_rejected(payload: Payload, recipient: Recipient) -> RenderedContent:
    reason = payload.get("reason") or "No reason given"
    return RenderedContent(
        title="Insight Request Update",
        body=f'Your insight request "{payload.get("title", "")}" was not approved. Reason: {reason}',
        rich_content=_cta(payload, "/", "Close"),
    )


# ── Engagement ──


def _format_engagement(payload: Payload, recipient: Recipient, event_type: EventType) -> RenderedContent:
    actor = payload.get("actor_name") or "Someone"
    target = payload.get("insight_title") or payload.get("title") or "your insight"
    copy = {
        E.INSIGHT_LIKED: ("New Like ❤️", f"{actor} liked {target}."),
        E.INSIGHT_COMMENTED: ("New Comment 💬", f"{actor} commented on {target}."),
        E.COMMENT_REPLIED: ("New Reply 💬", f"{actor} replied to your comment on {target}."),
        E.USER_FOLLOWED: ("New Follower", f"{actor} started following you."),
        E.AUTHOR_NEW_POST: ("New Post", f"{actor} published {target}."),
    }
    title, body = copy[event_type]
    return RenderedContent(title=title, body=body, rich_content=_cta(payload, "/", "View", "url"))


# ── Premium ──


def _format_premium_access(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Premium Access Unlocked 🔓",
        body=payload.get("message") or "You now have access to premium insights.",
        rich_content=_cta(payload, PREMIUM_URL, "Explore Premium Content", "cta_url"),
    )


def _format_premium_denied(payload: Payload, recipient: Recipient) -> RenderedContent:
    title = payload.get("insight_title") or payload.get("title")
    target = f'"{title}"' if title else "This content"
    return RenderedContent(
        title="Premium Content",
        body=f"{target} is available to premium members.",
        rich_content=_cta(payload, PREMIUM_URL, "Upgrade to Premium", "upgrade_url"),
    )


def _format_premium_feature(payload: Payload, recipient: Recipient) -> RenderedContent:
    feature = payload.get("feature_name") or "A new premium feature"
    return RenderedContent(
        title=f"New Premium Feature: {feature}",
        body=payload.get("description") or f"{feature} is now available to premium members.",
        rich_content=_cta(payload, PREMIUM_URL, "Try It", "cta_url"),
    )


# ── System ──


def _format_welcome(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Welcome! 👋",
        body=f"Hi {_name(recipient)}, thanks for joining. Start exploring the latest insights.",
        rich_content=_cta(payload, "/insights", "Get Started", "cta_url"),
    )


def _format_account_verified(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Account Verified ✅",
        body="Your account has been verified.",
        rich_content=_cta(payload, "/account", "View Account", "cta_url"),
    )


def _format_password_reset(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Password Reset Request",
        body="We received a request to reset your password. If this wasn't you, secure your account now.",
        rich_content=_cta(payload, "/account/security", "Reset Password", "reset_url"),
    )


def _format_security_alert(payload: Payload, recipient: Recipient) -> RenderedContent:
    detail = payload.get("message") or "Unusual activity was detected on your account."
    return RenderedContent(
        title="🔒 Security Alert",
        body=detail,
        rich_content=_cta(payload, "/account/security", "Review Activity", "cta_url"),
    )


def _format_announcement(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title=payload.get("title") or "Announcement",
        body=payload.get("message") or "",
        rich_content=_cta(payload, "/", "Learn More", "cta_url", "url"),
    )


def _format_maintenance(payload: Payload, recipient: Recipient) -> RenderedContent:
    window = payload.get("scheduled_for") or "soon"
    duration = payload.get("duration")
    extra = f" Expected duration: {duration}." if duration else ""
    return RenderedContent(
        title="Scheduled Maintenance 🛠️",
        body=f"The platform will undergo maintenance {window}.{extra}",
        rich_content=_cta(payload, "/status", "View Status", "url"),
    )


# ── Payments ──


def _amount(payload: Payload) -> str:
    return format_currency(payload.get("amount"), payload.get("currency") or "USD")


def _format_payment_success(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Payment Received",
        body=f"We received your payment of {_amount(payload)}. Thank you!",
        rich_content=_cta(payload, BILLING_URL, "View Receipt", "receipt_url"),
    )


def _format_payment_failed(payload: Payload, recipient: Recipient) -> RenderedContent:
    reason = payload.get("reason")
    suffix = f" Reason: {reason}" if reason else ""
    return RenderedContent(
        title="Payment Failed ❗",
        body=f"Your payment of {_amount(payload)} could not be processed.{suffix}",
        rich_content=_cta(payload, BILLING_URL, "Update Payment Method", "cta_url"),
    )


def _format_payment_refunded(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Refund Issued",
        body=f"A refund of {_amount(payload)} has been issued to your payment method.",
        rich_content=_cta(payload, BILLING_URL, "View Billing", "cta_url"),
    )


def _format_invoice(payload: Payload, recipient: Recipient) -> RenderedContent:
    number = payload.get("invoice_number")
    label = f"Invoice {number}" if number else "Your invoice"
    return RenderedContent(
        title="New Invoice",
        body=f"{label} for {_amount(payload)} is ready.",
        rich_content=_cta(payload, BILLING_URL, "View Invoice", "invoice_url"),
    )


def _format_method_expiring(payload: Payload, recipient: Recipient) -> RenderedContent:
    last4 = payload.get("last4")
    card = f"ending in {last4} " if last4 else ""
    return RenderedContent(
        title="Payment Method Expiring",
        body=f"Your card {card}expires soon. Update it to avoid interruption.",
        rich_content=_cta(payload, BILLING_URL, "Update Payment Method", "cta_url"),
    )


def _format_default(payload: Payload, recipient: Recipient) -> RenderedContent:
    return RenderedContent(
        title="Notification",
        body=orjson.dumps(payload, default=str).decode(),
        rich_content=RichContent(action_url="/", action_text="View"),
    )


def _bind(formatter: Callable[[Payload, Recipient, EventType], RenderedContent], event_type: EventType) -> Template:
    return lambda payload, recipient: formatter(payload, recipient, event_type)


TEMPLATES: dict[EventType, Template] = {
    E.SUBSCRIPTION_CREATED: _format_subscription_created,
    E.SUBSCRIPTION_GRANTED: _format_subscription_granted,
    E.SUBSCRIPTION_UPGRADED: _format_tier_change,
    E.SUBSCRIPTION_DOWNGRADED: _format_tier_change,
    E.SUBSCRIPTION_RENEWED: _format_subscription_renewed,
    E.SUBSCRIPTION_EXTENDED: _format_subscription_renewed,
    E.SUBSCRIPTION_CANCELLED: _format_subscription_cancelled,
    E.SUBSCRIPTION_EXPIRED: _format_subscription_expired,
    E.SUBSCRIPTION_EXPIRING_SOON: _format_expiring_soon,
    E.SUBSCRIPTION_EXPIRING_TODAY: _format_expiring_today,
    E.SUBSCRIPTION_EXPIRED_REMINDER: _format_expired_reminder,
    E.SUBSCRIPTION_RENEWAL_REMINDER: _format_renewal_reminder,
    E.TRIAL_STARTED: _bind(_format_trial, E.TRIAL_STARTED),
    E.TRIAL_ENDING_SOON: _bind(_format_trial, E.TRIAL_ENDING_SOON),
    E.TRIAL_ENDED: _bind(_format_trial, E.TRIAL_ENDED),
    E.TRIAL_CONVERTED: _bind(_format_trial, E.TRIAL_CONVERTED),
    E.INSIGHT_PUBLISHED: _format_insight_published,
    E.INSIGHT_FREE_PUBLISHED: _format_insight_published,
    E.INSIGHT_PREMIUM_PUBLISHED: _format_premium_published,
    E.INSIGHT_UPDATED: _format_insight_updated,
    E.INSIGHT_FEATURED: _format_insight_featured,
    E.INSIGHT_UNPUBLISHED: _bind(_format_insight_withdrawn, E.INSIGHT_UNPUBLISHED),
    E.INSIGHT_DELETED: _bind(_format_insight_withdrawn, E.INSIGHT_DELETED),
    E.INSIGHT_UNFEATURED: _bind(_format_insight_withdrawn, E.INSIGHT_UNFEATURED),
    E.NEW_CONTENT_AVAILABLE: _format_insight_published,
    E.RECOMMENDED_CONTENT: _format_recommended,
    E.TRENDING_CONTENT: _format_trending,
    E.PERSONALIZED_DIGEST: _format_digest,
    E.WEEKLY_DIGEST: _format_digest,
    E.INSIGHT_REQUEST_SUBMITTED: _format_request_submitted,
    E.INSIGHT_REQUEST_APPROVED: _format_request_approved,
    E.INSIGHT_REQUEST_REJECTED: _format_request_rejected,
    E.INSIGHT_LIKED: _bind(_format_engagement, E.INSIGHT_LIKED),
    E.INSIGHT_COMMENTED: _bind(_format_engagement, E.INSIGHT_COMMENTED),
    E.COMMENT_REPLIED: _bind(_format_engagement, E.COMMENT_REPLIED),
    E.USER_FOLLOWED: _bind(_format_engagement, E.USER_FOLLOWED),
    E.AUTHOR_NEW_POST: _bind(_format_engagement, E.AUTHOR_NEW_POST),
    E.PREMIUM_ACCESS_GRANTED: _format_premium_access,
    E.PREMIUM_CONTENT_UNLOCKED: _format_premium_access,
    E.PREMIUM_ACCESS_DENIED: _format_premium_denied,
    E.PREMIUM_FEATURE_AVAILABLE: _format_premium_feature,
    E.WELCOME_NEW_USER: _format_welcome,
    E.ACCOUNT_VERIFIED: _format_account_verified,
    E.PASSWORD_RESET_REQUEST: _format_password_reset,
    E.SECURITY_ALERT: _format_security_alert,
    E.SYSTEM_ANNOUNCEMENT: _format_announcement,
    E.MAINTENANCE_SCHEDULED: _format_maintenance,
    E.PAYMENT_SUCCESS: _format_payment_success,
    E.PAYMENT_FAILED: _format_payment_failed,
    E.PAYMENT_REFUNDED: _format_payment_refunded,
    E.INVOICE_GENERATED: _format_invoice,
    E.PAYMENT_METHOD_EXPIRING: _format_method_expiring,
}
