"""
Per-client session context.

Holds the signed-in attendee and what they have voted for. One context
is created per client process and handed to the engine explicitly.
"""

from dataclasses import dataclass, field
from typing import Optional, Set


@dataclass
class User:
    """An attendee (or staff member) using one client."""

    id: str
    name: str
    photo: str = ""


@dataclass
class ClientContext:
    """Explicit replacement for ambient 'current user' state."""

    user: Optional[User] = None
    voted_request_ids: Set[str] = field(default_factory=set)
    is_staff: bool = False

    @property
    def is_signed_in(self) -> bool:
        return self.user is not None

    def login(self, user: User, is_staff: bool = False) -> None:
        """Start a session. A different user replaces the voted set."""
        if self.user is not None and self.user.id != user.id:
            self.voted_request_ids.clear()
        self.user = user
        self.is_staff = is_staff

    def logout(self) -> None:
        """Tear down everything tied to the signed-in user."""
        self.user = None
        self.is_staff = False
        self.voted_request_ids.clear()

    def has_voted(self, request_id: str) -> bool:
        return request_id in self.voted_request_ids

    def record_vote(self, request_id: str) -> None:
        self.voted_request_ids.add(request_id)

    def forget_votes(self) -> None:
        """Called after a queue reset purges every vote."""
        self.voted_request_ids.clear()
