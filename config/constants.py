"""Constants used across the application."""

from enum import Enum


# Event taxonomy (closed set). Values are the wire names producers emit.
class EventType(str, Enum):
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription:created"
    SUBSCRIPTION_GRANTED = "subscription:granted"
    SUBSCRIPTION_UPGRADED = "subscription:upgraded"
    SUBSCRIPTION_DOWNGRADED = "subscription:downgraded"
    SUBSCRIPTION_RENEWED = "subscription:renewed"
    SUBSCRIPTION_EXTENDED = "subscription:extended"
    SUBSCRIPTION_CANCELLED = "subscription:cancelled"
    SUBSCRIPTION_EXPIRED = "subscription:expired"

    # Subscription reminders
    SUBSCRIPTION_EXPIRING_SOON = "subscription:expiring-soon"
    SUBSCRIPTION_EXPIRING_TODAY = "subscription:expiring-today"
    SUBSCRIPTION_EXPIRED_REMINDER = "subscription:expired-reminder"
    SUBSCRIPTION_RENEWAL_REMINDER = "subscription:renewal-reminder"

    # Trials
    TRIAL_STARTED = "trial:started"
    TRIAL_ENDING_SOON = "trial:ending-soon"
    TRIAL_ENDED = "trial:ended"
    TRIAL_CONVERTED = "trial:converted"

    # Content publishing
    INSIGHT_PUBLISHED = "insight:published"
    INSIGHT_PREMIUM_PUBLISHED = "insight:premium-published"
    INSIGHT_FREE_PUBLISHED = "insight:free-published"
    INSIGHT_UPDATED = "insight:updated"
    INSIGHT_UNPUBLISHED = "insight:unpublished"
    INSIGHT_DELETED = "insight:deleted"
    INSIGHT_FEATURED = "insight:featured"
    INSIGHT_UNFEATURED = "insight:unfeatured"

    # Content recommendations
    NEW_CONTENT_AVAILABLE = "content:new-available"
    RECOMMENDED_CONTENT = "content:recommended"
    TRENDING_CONTENT = "content:trending"
    PERSONALIZED_DIGEST = "content:digest"
    WEEKLY_DIGEST = "content:weekly-digest"

    # Insight requests
    INSIGHT_REQUEST_SUBMITTED = "insight_request:submitted"
    INSIGHT_REQUEST_APPROVED = "insight_request:approved"
    INSIGHT_REQUEST_REJECTED = "insight_request:rejected"

    # Engagement
    INSIGHT_LIKED = "engagement:insight-liked"
    INSIGHT_COMMENTED = "engagement:insight-commented"
    COMMENT_REPLIED = "engagement:comment-replied"
    USER_FOLLOWED = "engagement:user-followed"
    AUTHOR_NEW_POST = "engagement:author-new-post"

    # Premium access
    PREMIUM_ACCESS_GRANTED = "premium:access-granted"
    PREMIUM_ACCESS_DENIED = "premium:access-denied"
    PREMIUM_CONTENT_UNLOCKED = "premium:content-unlocked"
    PREMIUM_FEATURE_AVAILABLE = "premium:feature-available"

    # System
    WELCOME_NEW_USER = "system:welcome"
    ACCOUNT_VERIFIED = "system:account-verified"
    PASSWORD_RESET_REQUEST = "system:password-reset"
    SECURITY_ALERT = "system:security-alert"
    SYSTEM_ANNOUNCEMENT = "system:announcement"
    MAINTENANCE_SCHEDULED = "system:maintenance"

    # Payments
    PAYMENT_SUCCESS = "payment:success"
    PAYMENT_FAILED = "payment:failed"
    PAYMENT_REFUNDED = "payment:refunded"
    INVOICE_GENERATED = "payment:invoice"
    PAYMENT_METHOD_EXPIRING = "payment:method-expiring"


class Channel(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ChannelStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    UNREAD = "unread"
    READ = "read"


class OverallStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    SENT = "sent"
    FAILED = "failed"
    EXPIRED = "expired"


class JobType(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    WEBHOOK = "webhook"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


# Catch-all topic every emitted event is also published on
NOTIFICATION_TOPIC = "notification"

# Event priority -> job queue priority (0-10, higher runs first)
JOB_PRIORITY = {
    Priority.CRITICAL: 10,
    Priority.HIGH: 7,
    Priority.MEDIUM: 5,
    Priority.LOW: 2,
}
DEFAULT_JOB_PRIORITY = 5

# Channels delivered by a background job, with their retry budget
CHANNEL_JOB_TYPES = {
    Channel.EMAIL: JobType.EMAIL,
    Channel.PUSH: JobType.PUSH,
    Channel.SMS: JobType.SMS,
    Channel.WEBHOOK: JobType.WEBHOOK,
}
JOB_MAX_ATTEMPTS = {
    JobType.EMAIL: 3,
    JobType.PUSH: 3,
    JobType.SMS: 2,  # SMS is billed per attempt
    JobType.WEBHOOK: 3,
}

# Job retry backoff: 2^attempts minutes, capped
JOB_BACKOFF_BASE_SECONDS = 60
JOB_BACKOFF_MAX_SECONDS = 3600

# Per-channel daily caps applied to new preference documents (None = unlimited)
DEFAULT_DAILY_LIMITS: dict[Channel, int | None] = {
    Channel.EMAIL: 10,
    Channel.PUSH: 20,
    Channel.SMS: None,
    Channel.IN_APP: None,
    Channel.WEBHOOK: None,
}

# Roles that receive admin-facing events
ADMIN_ROLES = ("admin", "superadmin")

# Only premium subscriptions generate expiry reminders
PREMIUM_TIER = "premium"

# Content limits on persisted notifications
MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 1000
