"""Match events to the users who should receive them."""

from datetime import datetime
from typing import Any

import asyncpg
import structlog
from config.constants import ADMIN_ROLES, EventType
from notifications.events import Event
from notifications.preferences import Category, NotificationPreference
from storage.repositories.preference_repo import PreferenceRepository
from storage.repositories.subscription_repo import SubscriptionRepository
from storage.repositories.user_repo import UserRepository
from utils.time_utils import utc_now

log = structlog.get_logger(__name__)

E = EventType

# Admin-facing events go to every active user holding one of these roles
ROLE_BROADCAST_EVENTS: dict[EventType, tuple[str, ...]] = {
    E.INSIGHT_REQUEST_SUBMITTED: ADMIN_ROLES,
}

# Content events fanned out to users opted into new-insight notifications.
# insight:published always travels with a premium/free variant, so only the
# variant is delivered.
BROADCAST_INTERESTED_EVENTS = frozenset({
    E.INSIGHT_PREMIUM_PUBLISHED,
    E.INSIGHT_FREE_PUBLISHED,
    E.INSIGHT_FEATURED,
    E.NEW_CONTENT_AVAILABLE,
    E.TRENDING_CONTENT,
})

PREMIUM_CONTENT_EVENTS = frozenset({E.INSIGHT_PREMIUM_PUBLISHED})


class RecipientResolver:
    """Resolve an event to a list of user records (each carries ``id``)."""

    def __init__(self, db_pool: asyncpg.Pool) -> None:
        self._pool = db_pool
        self.user_repo = UserRepository(db_pool)
        self.preference_repo = PreferenceRepository(db_pool)
        self.subscription_repo = SubscriptionRepository(db_pool)

    async def resolve(self, event: Event, now: datetime | None = None) -> list[dict[str, Any]]:
        """Role-broadcast, then direct (payload ``user_id``), then broadcast-interested.

        Anything unresolvable yields an empty list rather than an error.
        """
        if not event.is_known:
            return []
        event_type = event.event_type
        payload = event.payload

        roles = ROLE_BROADCAST_EVENTS.get(event_type)
        if roles:
            return await self.user_repo.find_by_roles(roles, active_only=True)

        user_id = payload.get("user_id")
        if user_id:
            user = await self.user_repo.find_by_id(str(user_id))
            if user is None or not user.get("is_active", True):
                log.debug("recipient_unavailable", user_id=user_id, event_type=event.name)
                return []
            return [user]

        if event_type in BROADCAST_INTERESTED_EVENTS:
            return await self._interested_users(event, now or utc_now())

        log.debug("no_recipients", event_type=event.name)
        return []

    async def _interested_users(self, event: Event, now: datetime) -> list[dict[str, Any]]:
        candidates = await self.preference_repo.find_users_opted_into(Category.CONTENT, "new_insights")
        category = event.payload.get("category")
        matched = [
            (user, prefs) for user, prefs in candidates if _matches_category(prefs, category)
        ]

        if event.event_type in PREMIUM_CONTENT_EVENTS:
            # Users without the premium-only opt-in only hear about premium
            # content while they can actually read it.
            need_check = [u["id"] for u, p in matched if not p.content.new_insights.premium_only]
            premium_ids = await self.subscription_repo.premium_user_ids(need_check, now)
            matched = [
                (user, prefs)
                for user, prefs in matched
                if prefs.content.new_insights.premium_only or user["id"] in premium_ids
            ]

        return [user for user, _ in matched]


def _matches_category(prefs: NotificationPreference, category: str | None) -> bool:
    wanted = prefs.content.new_insights.categories
    if not wanted or not category:
        return True
    return category in wanted
