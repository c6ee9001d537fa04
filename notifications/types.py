"""Notification record types and status derivation."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from config.constants import Channel, ChannelStatus, OverallStatus, Priority

DELIVERED = {ChannelStatus.SENT, ChannelStatus.READ}
WAITING = {ChannelStatus.PENDING, ChannelStatus.UNREAD}


@dataclass
class RichContent:
    action_url: str | None = None
    action_text: str | None = None
    image_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_url": self.action_url,
            "action_text": self.action_text,
            "image_url": self.image_url,
        }


@dataclass
class RenderedContent:
    """Channel-ready copy for one (event, recipient) pair."""
    title: str
    body: str
    rich_content: RichContent = field(default_factory=RichContent)


@dataclass
class ChannelState:
    enabled: bool
    status: ChannelStatus = ChannelStatus.PENDING
    sent_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "status": self.status.value,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelState":
        sent_at = data.get("sent_at")
        if isinstance(sent_at, str):
            sent_at = datetime.fromisoformat(sent_at)
        return cls(
            enabled=bool(data.get("enabled")),
            status=ChannelStatus(data.get("status", ChannelStatus.PENDING.value)),
            sent_at=sent_at,
            error=data.get("error"),
        )


def derive_overall_status(channels: dict[Channel, ChannelState]) -> OverallStatus:
    """Aggregate per-channel statuses over the enabled channels.

    No enabled channel -> failed; all sent/read -> sent; all failed -> failed;
    all still pending or unread -> pending; any other mix -> partial.
    """
    statuses = [state.status for state in channels.values() if state.enabled]
    if not statuses:
        return OverallStatus.FAILED
    if all(s in DELIVERED for s in statuses):
        return OverallStatus.SENT
    if all(s == ChannelStatus.FAILED for s in statuses):
        return OverallStatus.FAILED
    if all(s in WAITING for s in statuses):
        return OverallStatus.PENDING
    return OverallStatus.PARTIAL


def channels_to_json(channels: dict[Channel, ChannelState]) -> dict[str, dict[str, Any]]:
    return {Channel(ch).value: state.to_dict() for ch, state in channels.items()}


def channels_from_json(data: dict[str, Any] | None) -> dict[Channel, ChannelState]:
    return {Channel(ch): ChannelState.from_dict(state) for ch, state in (data or {}).items()}


@dataclass
class NotificationRecord:
    """One persisted notification for one recipient of one event."""
    recipient_id: str
    event_type: str
    priority: Priority
    title: str
    body: str
    channels: dict[Channel, ChannelState]
    rich_content: RichContent = field(default_factory=RichContent)
    overall_status: OverallStatus = OverallStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    expires_at: datetime | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def enabled_channels(self) -> list[Channel]:
        return [ch for ch, state in self.channels.items() if state.enabled]

    def refresh_overall_status(self) -> OverallStatus:
        self.overall_status = derive_overall_status(self.channels)
        return self.overall_status

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "NotificationRecord":
        rich = row.get("rich_content") or {}
        return cls(
            id=row["id"],
            recipient_id=row["recipient_id"],
            event_type=row["event_type"],
            priority=Priority(row["priority"]),
            title=row["title"],
            body=row["body"],
            channels=channels_from_json(row.get("channels")),
            rich_content=RichContent(
                action_url=rich.get("action_url"),
                action_text=rich.get("action_text"),
                image_url=rich.get("image_url"),
            ),
            overall_status=OverallStatus(row["overall_status"]),
            metadata=row.get("metadata") or {},
            idempotency_key=row.get("idempotency_key"),
            expires_at=row.get("expires_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
