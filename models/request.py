"""
Request, Requester and Vote data models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .rows import parse_timestamp, to_iso


class QueueStatus(str, Enum):
    """Lifecycle of a request in the queue. PLAYED is terminal."""

    PENDING = "pending"
    LOCKED = "locked"
    PLAYED = "played"

    @classmethod
    def of(cls, is_played: bool, is_locked: bool) -> "QueueStatus":
        if is_played:
            return cls.PLAYED
        if is_locked:
            return cls.LOCKED
        return cls.PENDING


@dataclass
class Requester:
    """One attendee attached to a request."""

    id: str
    request_id: str
    name: str
    photo: str = ""
    message: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Requester":
        return cls(
            id=row["id"],
            request_id=row.get("request_id") or "",
            name=row.get("name") or "Anonymous",
            photo=row.get("photo") or "",
            message=row.get("message") or "",
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "name": self.name,
            "photo": self.photo,
            "message": self.message,
        }

    def to_dict(self) -> dict:
        result = self.to_row()
        result["created_at"] = to_iso(self.created_at)
        return result


@dataclass
class Request:
    """
    A live, voteable request for a song.

    Title and artist are denormalized so free-text requests work even when
    the song is not in the catalog.
    """

    id: str
    title: str
    artist: str = ""
    votes: int = 0
    is_locked: bool = False
    is_played: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    requesters: List[Requester] = field(default_factory=list)

    @property
    def status(self) -> QueueStatus:
        return QueueStatus.of(self.is_played, self.is_locked)

    @classmethod
    def from_row(cls, row: dict) -> "Request":
        """
        Build from a requests row.
        Embedded requesters (if any) keep attachment order.
        """
        requesters = [Requester.from_row(r) for r in (row.get("requesters") or []) if r]
        votes = row.get("votes")
        return cls(
            id=row["id"],
            title=row.get("title") or "Unknown Title",
            artist=row.get("artist") or "",
            votes=votes if isinstance(votes, int) and votes > 0 else 0,
            is_locked=bool(row.get("is_locked")),
            is_played=bool(row.get("is_played")),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            requesters=requesters,
        )

    def to_row(self) -> dict:
        """The requests row, without requesters."""
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "votes": self.votes,
            "is_locked": self.is_locked,
            "is_played": self.is_played,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = self.to_row()
        result["status"] = self.status.value
        result["created_at"] = to_iso(self.created_at)
        result["requesters"] = [r.to_dict() for r in self.requesters]
        return result

    def to_queue_item(self, position: int) -> dict:
        """Convert to simplified queue item for display."""
        return {
            "position": position,
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "votes": self.votes,
            "is_locked": self.is_locked,
            "requesters": [r.name for r in self.requesters],
        }


@dataclass
class Vote:
    """Marks that a user has voted for a request. Unique per pair."""

    request_id: str
    user_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Vote":
        return cls(
            request_id=row["request_id"],
            user_id=row["user_id"],
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> dict:
        return {"request_id": self.request_id, "user_id": self.user_id}
