"""
Vote commit protocol.

One vote per (request, user). The preferred path is the store's atomic
add_vote routine. Stores without it get the two-step path: insert the
vote row (guarded by the uniqueness constraint), then read-increment-write
the counter. The two-step path can lose increments when voters race and
is only a fallback; recount() repairs the drift.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Set

from config.settings import Settings, get_settings
from models.request import Request
from .errors import (
    DuplicateVoteError,
    NotFoundError,
    RequestPlayedError,
    ValidationFailure,
)
from .retry import with_backoff
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class VoteResult:
    """Outcome of one cast_vote call."""

    accepted: bool
    request_id: str
    user_id: str
    request: Optional[Request] = None  # fresh row after the vote, when known
    degraded: bool = False

    @property
    def votes(self) -> Optional[int]:
        return self.request.votes if self.request else None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "votes": self.votes,
            "degraded": self.degraded,
        }


class VoteService:
    """Records votes without double counting."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self._warned_degraded = False

    @property
    def is_atomic(self) -> bool:
        """Whether votes go through the atomic routine."""
        return self.settings.prefer_atomic_votes and self.store.supports("add_vote")

    async def _fetch(self, request_id: str) -> Request:
        rows = await with_backoff(
            lambda: self.store.select("requests", {"id": request_id}),
            f"load request {request_id}",
            self.settings,
        )
        if not rows:
            raise NotFoundError("Request", request_id)
        return Request.from_row(rows[0])

    async def cast_vote(self, request_id: str, user_id: str) -> VoteResult:
        """
        Record one vote.

        Returns accepted=False when the user already voted. Safe to call
        again after a network failure: the uniqueness constraint makes a
        repeat a no-op.

        Raises:
            ValidationFailure: missing user or request id
            NotFoundError: request does not exist
            RequestPlayedError: request is already played
            NetworkFailure: store unreachable after retries
        """
        if not user_id or not user_id.strip():
            raise ValidationFailure("user_id", "Please sign in to vote.")
        if not request_id:
            raise ValidationFailure("request_id", "No request selected.")

        request = await self._fetch(request_id)
        if request.is_played:
            raise RequestPlayedError(request_id)

        if self.is_atomic:
            accepted = await with_backoff(
                lambda: self.store.rpc("add_vote", request_id=request_id, user_id=user_id),
                f"add_vote {request_id}",
                self.settings,
            )
            degraded = False
        else:
            accepted = await self._two_step(request_id, user_id)
            degraded = True

        fresh = await self._fetch(request_id)
        if accepted:
            logger.info(f"Vote accepted: {user_id} -> '{fresh.title}' ({fresh.votes} votes)")
        else:
            logger.info(f"Vote rejected: {user_id} already voted for '{fresh.title}'")

        return VoteResult(
            accepted=bool(accepted),
            request_id=request_id,
            user_id=user_id,
            request=fresh,
            degraded=degraded,
        )

    async def _two_step(self, request_id: str, user_id: str) -> bool:
        """Insert-then-increment. Not linearizable."""
        if not self._warned_degraded:
            logger.warning(
                "Store has no atomic add_vote routine; using two-step vote commit "
                "(concurrent voters may lose increments, run recount() to repair)"
            )
            self._warned_degraded = True

        try:
            # the insert alone is idempotent under the uniqueness constraint
            await with_backoff(
                lambda: self.store.insert("user_votes", {"request_id": request_id, "user_id": user_id}),
                f"insert vote {request_id}",
                self.settings,
            )
        except DuplicateVoteError:
            return False

        # read-increment-write: a repeat after a lost response would double count
        current = await self._fetch(request_id)
        await self.store.update("requests", {"votes": current.votes + 1}, {"id": request_id})
        return True

    async def recount(self, request_id: str) -> int:
        """Rewrite Request.votes to the number of vote rows. Returns the count."""
        votes = await with_backoff(
            lambda: self.store.select("user_votes", {"request_id": request_id}),
            f"count votes {request_id}",
            self.settings,
        )
        request = await self._fetch(request_id)
        count = len(votes)
        if request.votes != count:
            logger.warning(f"Vote drift on '{request.title}': stored {request.votes}, counted {count}")
            await self.store.update("requests", {"votes": count}, {"id": request_id})
        return count

    async def has_voted(self, request_id: str, user_id: str) -> bool:
        rows = await with_backoff(
            lambda: self.store.select("user_votes", {"request_id": request_id, "user_id": user_id}),
            "check vote",
            self.settings,
        )
        return bool(rows)

    async def voted_request_ids(self, user_id: str) -> Set[str]:
        """Every request this user has a vote row for."""
        rows = await with_backoff(
            lambda: self.store.select("user_votes", {"user_id": user_id}),
            f"load votes for {user_id}",
            self.settings,
        )
        return {row["request_id"] for row in rows}
