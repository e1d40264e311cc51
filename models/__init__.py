"""Data models for the request/vote sync engine."""

from .song import Song, SetList
from .request import Request, Requester, Vote, QueueStatus
from .context import User, ClientContext
from .events import (
    WebSocketEvent,
    ChangeEvent,
    ChangeType,
    StatusEvent,
    HeartbeatEvent,
    SubscriptionStatus,
    Notice,
    ConnectionEvent,
)

__all__ = [
    "Song",
    "SetList",
    "Request",
    "Requester",
    "Vote",
    "QueueStatus",
    "User",
    "ClientContext",
    "WebSocketEvent",
    "ChangeEvent",
    "ChangeType",
    "StatusEvent",
    "HeartbeatEvent",
    "SubscriptionStatus",
    "Notice",
    "ConnectionEvent",
]
