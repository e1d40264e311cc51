"""
Queue management service.
Handles song requests and the pending -> locked -> played lifecycle.
"""

import base64
import logging
import zlib
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from config.settings import Settings, get_settings
from models.request import Request, Requester
from .audit_log import AuditLog
from .errors import (
    ConstraintViolation,
    NotFoundError,
    RequestPlayedError,
    ValidationFailure,
)
from .retry import with_backoff
from .store import Store

logger = logging.getLogger(__name__)

PENDING_TITLE_CONSTRAINT = "requests_title_pending_key"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Requester helpers
# -----------------------------------------------------------------------------

def default_avatar(name: str) -> str:
    """
    Initials avatar as an SVG data URL.
    The pastel background hue is derived from the name, so it is stable.
    """
    initials = "".join(part[0].upper() for part in name.split() if part)[:2] or "?"
    hue = zlib.crc32(name.encode("utf-8")) % 360
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100 100" width="200" height="200">'
        f'<rect width="100" height="100" fill="hsl({hue}, 70%, 80%)" />'
        '<text x="50" y="50" font-family="Arial, sans-serif" font-size="40" font-weight="bold" '
        f'fill="#333" text-anchor="middle" dominant-baseline="central">{initials}</text>'
        "</svg>"
    )
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")


def photo_size(photo: str) -> int:
    """Approximate decoded size in bytes of an inline photo."""
    if photo.startswith("data:") and ";base64," in photo:
        payload = photo.split(";base64,", 1)[1]
        return len(payload) * 3 // 4 - payload.count("=")
    return len(photo.encode("utf-8"))


def prepare_requester(
    name: str,
    photo: Optional[str],
    message: Optional[str],
    settings: Settings,
) -> dict:
    """
    Validate and normalise requester fields.

    Raises:
        ValidationFailure: empty name or oversized photo
    """
    name = (name or "").strip()
    if not name:
        raise ValidationFailure("name", "Please enter your name.")

    if photo and photo_size(photo) > settings.max_photo_bytes:
        limit_kb = settings.max_photo_bytes // 1024
        raise ValidationFailure("photo", f"Profile photo is too large. Please use a smaller image (max {limit_kb}KB).")

    message = (message or "").strip()[: settings.max_message_length]
    return {
        "name": name,
        "photo": photo or default_avatar(name),
        "message": message,
    }


# -----------------------------------------------------------------------------
# Transition planning (pure)
# -----------------------------------------------------------------------------

def queue_order(requests: Iterable[Request]) -> List[Request]:
    """Locked first, then most votes, then oldest."""
    return sorted(
        requests,
        key=lambda r: (not r.is_locked, -r.votes, r.created_at or _EPOCH, r.id),
    )


def _find(requests: Iterable[Request], request_id: str) -> Request:
    for request in requests:
        if request.id == request_id:
            return request
    raise NotFoundError("Request", request_id)


def plan_lock(requests: Iterable[Request], request_id: str) -> Dict[str, dict]:
    """
    Patches for toggling the lock on one request.

    Locking unlocks every other locked request first, so at most one
    request is locked. Unlocking touches only the target.
    """
    requests = list(requests)
    target = _find(requests, request_id)
    if target.is_played:
        raise RequestPlayedError(request_id)

    if target.is_locked:
        return {request_id: {"is_locked": False}}

    patches = {
        r.id: {"is_locked": False}
        for r in requests
        if r.is_locked and r.id != request_id
    }
    patches[request_id] = {"is_locked": True}
    return patches


def plan_mark_played(request: Request) -> Dict[str, dict]:
    """Patch for finalising a request. Empty when already finalised."""
    if request.is_played and not request.is_locked:
        return {}
    return {request.id: {"is_played": True, "is_locked": False}}


def plan_reset(requests: Iterable[Request]) -> Dict[str, dict]:
    """Patches finalising every pending or locked request."""
    return {
        r.id: {"is_played": True, "is_locked": False, "votes": 0}
        for r in requests
        if not r.is_played
    }


class QueueService:
    """
    Manages the shared request queue.
    Every write is one store round trip or one atomic routine.
    """

    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLog] = None,
    ):
        """
        Initialize queue service.

        Args:
            store: Shared store
            settings: Engine settings (defaults to get_settings())
            audit: Optional audit log for queue resets
        """
        self.store = store
        self.settings = settings or get_settings()
        self.audit = audit

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_queue(self, include_played: bool = False) -> List[Request]:
        """Requests in queue order, with requesters embedded."""
        filters = None if include_played else {"is_played": False}
        rows = await with_backoff(
            lambda: self.store.select("requests", filters, order_by="created_at", embed=("requesters",)),
            "load queue",
            self.settings,
        )
        requests = [Request.from_row(row) for row in rows]
        for request in requests:
            request.requesters.sort(key=lambda r: (r.created_at or _EPOCH, r.id))
        return queue_order(requests)

    async def get_request(self, request_id: str) -> Request:
        """
        Raises:
            NotFoundError: no such request
        """
        rows = await with_backoff(
            lambda: self.store.select("requests", {"id": request_id}, embed=("requesters",)),
            f"load request {request_id}",
            self.settings,
        )
        if not rows:
            raise NotFoundError("Request", request_id)
        request = Request.from_row(rows[0])
        request.requesters.sort(key=lambda r: (r.created_at or _EPOCH, r.id))
        return request

    async def get_requests(self, request_ids: List[str]) -> List[Request]:
        """Several requests at once; unknown ids are skipped."""
        rows = await with_backoff(
            lambda: self.store.select("requests", {"id": list(request_ids)}),
            "load requests",
            self.settings,
        )
        return [Request.from_row(row) for row in rows]

    async def _pending_by_title(self, title: str) -> Optional[dict]:
        rows = await with_backoff(
            lambda: self.store.select("requests", {"title": title, "is_played": False}),
            "check existing request",
            self.settings,
        )
        return rows[0] if rows else None

    # -------------------------------------------------------------------------
    # Request Submission
    # -------------------------------------------------------------------------

    async def submit_request(
        self,
        title: str,
        artist: str,
        requester_name: str,
        photo: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Request:
        """
        Request a song, or join the pending request for the same title.

        Titles match exactly. When two clients create the same title at
        once, the loser of the race attaches to the winner's request.

        Returns:
            The request with its requesters

        Raises:
            ValidationFailure: empty title/name or oversized photo
            DuplicateRequesterError: this name already requested the title
        """
        title = (title or "").strip()
        if not title:
            raise ValidationFailure("title", "Please enter a song title.")
        artist = (artist or "").strip()
        requester = prepare_requester(requester_name, photo, message, self.settings)

        existing = await self._pending_by_title(title)
        if existing is None:
            try:
                created = await self.store.insert("requests", {"title": title, "artist": artist})
                request_id = created[0]["id"]
                logger.info(f"Created request: '{title}' by {artist or 'unknown artist'}")
            except ConstraintViolation as e:
                if e.constraint != PENDING_TITLE_CONSTRAINT:
                    raise
                existing = await self._pending_by_title(title)
                if existing is None:
                    raise
                logger.info(f"Lost creation race for '{title}', joining existing request")
                request_id = existing["id"]
        else:
            request_id = existing["id"]

        await self.store.insert("requesters", {"request_id": request_id, **requester})
        logger.info(f"{requester['name']} requested '{title}'")

        return await self.get_request(request_id)

    # -------------------------------------------------------------------------
    # State Transitions
    # -------------------------------------------------------------------------

    async def lock(self, request_id: str) -> Request:
        """
        Toggle the "next up" lock. Locking unlocks every other request.
        Not retried: repeating a toggle could undo it.

        Raises:
            NotFoundError, RequestPlayedError
        """
        target = await self.get_request(request_id)
        if target.is_played:
            raise RequestPlayedError(request_id)

        if self.store.supports("lock_request") and self.store.supports("unlock_request"):
            routine = "unlock_request" if target.is_locked else "lock_request"
            await self.store.rpc(routine, request_id=request_id)
        else:
            locked = await self.store.select("requests", {"is_locked": True, "is_played": False})
            current = [Request.from_row(row) for row in locked]
            if all(r.id != request_id for r in current):
                current.append(target)
            patches = plan_lock(current, request_id)
            others = [rid for rid in patches if rid != request_id]
            if others:
                await self.store.update("requests", {"is_locked": False}, {"id": others})
            await self.store.update("requests", patches[request_id], {"id": request_id})

        result = await self.get_request(request_id)
        logger.info(f"{'Locked' if result.is_locked else 'Unlocked'}: '{result.title}'")
        return result

    async def mark_played(self, request_id: str) -> Request:
        """
        Finalise a request. Idempotent: a played request is returned as is.

        Raises:
            NotFoundError
        """
        target = await self.get_request(request_id)
        patches = plan_mark_played(target)
        if not patches:
            return target

        await with_backoff(
            lambda: self.store.update("requests", patches[request_id], {"id": request_id}),
            f"mark played {request_id}",
            self.settings,
        )
        logger.info(f"Marked played: '{target.title}'")
        return await self.get_request(request_id)

    async def reset_queue(self) -> int:
        """
        End of set: every pending/locked request becomes played with zero
        votes, and all vote rows are purged.

        Returns:
            Number of requests cleared
        """
        if self.store.supports("reset_queue"):
            cleared = int(await self.store.rpc("reset_queue"))
        else:
            rows = await self.store.update(
                "requests",
                {"is_played": True, "is_locked": False, "votes": 0},
                {"is_played": False},
            )
            await self.store.delete("user_votes", None)
            cleared = len(rows)

        logger.info(f"Queue reset ({cleared} requests cleared)")
        if self.audit:
            await self.audit.record("reset_queue", None, cleared)
        return cleared
