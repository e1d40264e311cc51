"""
Change-feed and notification event models.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional
import json


class ChangeType(str, Enum):
    """Row-level operation carried by a change event."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionStatus(str, Enum):
    """Lifecycle of one table subscription."""

    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    FAILED = "FAILED"  # gave up after bounded retries

    @property
    def is_loss(self) -> bool:
        """Whether this status means the feed can no longer be trusted."""
        return self in (SubscriptionStatus.CLOSED, SubscriptionStatus.CHANNEL_ERROR)


@dataclass
class WebSocketEvent:
    """Base class for pushed events."""

    event_type: str

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(asdict(self))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class ChangeEvent(WebSocketEvent):
    """
    One row-level change from the store.

    `new` is the full row after INSERT/UPDATE, `old` the row before
    UPDATE/DELETE. Delivery may repeat or reorder; consumers merge
    idempotently.
    """

    event_type: str = "change"
    table: str = ""
    change_type: str = ChangeType.INSERT.value
    new: Optional[dict] = None
    old: Optional[dict] = None
    committed_at: str = ""

    @property
    def change(self) -> ChangeType:
        return ChangeType(self.change_type)

    @property
    def row_id(self) -> Optional[str]:
        """Primary key of the affected row."""
        row = self.old if self.change is ChangeType.DELETE else self.new
        return (row or self.new or self.old or {}).get("id")

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeEvent":
        return cls(
            table=data.get("table", ""),
            change_type=data.get("change_type", ChangeType.INSERT.value),
            new=data.get("new"),
            old=data.get("old"),
            committed_at=data.get("committed_at", ""),
        )


@dataclass
class StatusEvent(WebSocketEvent):
    """Subscription status line on the streaming feed."""

    event_type: str = "status"
    table: str = ""
    status: str = SubscriptionStatus.SUBSCRIBED.value


@dataclass
class HeartbeatEvent(WebSocketEvent):
    """Keepalive line on an otherwise idle feed."""

    event_type: str = "heartbeat"
    table: str = ""


@dataclass
class Notice(WebSocketEvent):
    """
    User-visible outcome of an action.
    Level is one of: success, warning, error.
    """

    event_type: str = "notice"
    level: str = "success"
    message: str = ""
    code: str = ""
    entity_id: Optional[str] = None


@dataclass
class ConnectionEvent(WebSocketEvent):
    """
    Sent when a dashboard client connects.
    Provides initial state.
    """

    event_type: str = "connected"
    tables: List[str] = field(default_factory=list)
    queue_length: int = 0
    server_version: str = "1.0.0"
