"""
Client-side request engine.

The callback surface a UI calls: every action is applied optimistically
to the mirrored state, committed through the services, then confirmed or
rolled back. Failures never escape as exceptions; they are logged and
published as Notices, and the action returns False.
"""

import logging
from typing import Callable, List, Optional, Sequence

from config.settings import Settings, get_settings
from models.context import ClientContext, User
from models.events import Notice
from models.request import Request
from models.song import SetList, Song
from .audit_log import AuditLog
from .errors import (
    ConstraintViolation,
    EngineError,
    NotFoundError,
    ValidationFailure,
)
from .library_service import LibraryService
from .optimistic import OptimisticView
from .queue_service import QueueService, plan_lock, plan_mark_played, plan_reset, queue_order
from .setlist_service import SetListService, resolve_active
from .store import Store
from .sync import RequestSync, SetListSync, SongSync, as_row
from .vote_service import VoteService

logger = logging.getLogger(__name__)

NoticeHandler = Callable[[Notice], None]


class RequestEngine:
    """
    One client's view of the shared queue, set lists and catalog.

    The ClientContext is passed in rather than held globally; logout()
    tears down everything tied to the user.
    """

    def __init__(
        self,
        store: Store,
        context: Optional[ClientContext] = None,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.context = context or ClientContext()
        self.settings = settings or get_settings()

        self.votes = VoteService(store, self.settings)
        self.queue = QueueService(store, self.settings, audit)
        self.set_lists = SetListService(store, self.settings, audit)
        self.library = LibraryService(store, self.settings)

        self.request_sync = RequestSync(store, self.settings, on_notice=self._publish)
        self.set_list_sync = SetListSync(store, self.settings, on_notice=self._publish)
        self.song_sync = SongSync(store, self.settings, on_notice=self._publish)

        self.requests_view: OptimisticView[Request] = OptimisticView(self.request_sync.collection)
        self.set_lists_view: OptimisticView[SetList] = OptimisticView(self.set_list_sync.collection)

        self.notices: List[Notice] = []
        self._notice_handlers: List[NoticeHandler] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def syncs(self):
        return (self.request_sync, self.set_list_sync, self.song_sync)

    async def start(self) -> None:
        """Load snapshots and go live."""
        try:
            await self.store.connect()
        except EngineError as e:
            self._fail("connect", e)
        for sync in self.syncs:
            try:
                await sync.start()
            except EngineError as e:
                self._fail(f"load {sync.table}", e)
        if self.context.user is not None:
            await self._load_votes()

    async def stop(self) -> None:
        for sync in self.syncs:
            await sync.stop()

    async def login(self, user: User, is_staff: bool = False) -> None:
        self.context.login(user, is_staff)
        await self._load_votes()
        logger.info(f"Signed in: {user.name}{' (staff)' if is_staff else ''}")

    def logout(self) -> None:
        if self.context.user is not None:
            logger.info(f"Signed out: {self.context.user.name}")
        self.context.logout()

    async def _load_votes(self) -> None:
        try:
            voted = await self.votes.voted_request_ids(self.context.user.id)
        except EngineError as e:
            self._fail("load votes", e)
            return
        self.context.voted_request_ids |= voted

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    async def notify_offline(self) -> None:
        for sync in self.syncs:
            await sync.notify_offline()

    async def notify_online(self) -> None:
        for sync in self.syncs:
            await sync.notify_online()

    async def notify_visibility(self, visible: bool) -> None:
        for sync in self.syncs:
            await sync.notify_visibility(visible)

    # -------------------------------------------------------------------------
    # Notices
    # -------------------------------------------------------------------------

    def on_notice(self, handler: NoticeHandler) -> None:
        self._notice_handlers.append(handler)

    def _publish(self, notice: Notice) -> None:
        self.notices.append(notice)
        for handler in self._notice_handlers:
            try:
                handler(notice)
            except Exception:
                logger.exception("Notice handler failed")

    def _success(self, message: str, entity_id: Optional[str] = None) -> None:
        self._publish(Notice(level="success", message=message, code="OK", entity_id=entity_id))

    def _fail(self, action: str, error: EngineError, entity_id: Optional[str] = None) -> None:
        if isinstance(error, (ConstraintViolation, ValidationFailure)):
            logger.warning(f"{action} rejected: {error}")
            level = "warning"
        else:
            logger.error(f"{action} failed: {error}")
            level = "error"
        self._publish(Notice(level=level, message=error.user_message, code=error.code, entity_id=entity_id))

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def current_queue(self) -> List[Request]:
        """Pending and locked requests in queue order, guesses applied."""
        return queue_order(r for r in self.requests_view.items() if not r.is_played)

    def current_set_lists(self) -> List[SetList]:
        return self.set_lists_view.items()

    def active_set_list(self) -> Optional[SetList]:
        return resolve_active(self.set_lists_view.items())

    def songs(self) -> List[Song]:
        return self.song_sync.collection.items()

    # -------------------------------------------------------------------------
    # Attendee Actions
    # -------------------------------------------------------------------------

    async def submit_request(
        self,
        title: str,
        artist: str,
        requester_name: Optional[str] = None,
        photo: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        user = self.context.user
        name = requester_name or (user.name if user else "")
        photo = photo or (user.photo if user else None)
        try:
            request = await self.queue.submit_request(title, artist, name, photo, message)
        except EngineError as e:
            self._fail("submit request", e)
            return False

        self.request_sync.collection.upsert(as_row(request))
        self._success("Your request has been added to the queue!", request.id)
        return True

    async def vote(self, request_id: str) -> bool:
        if not self.context.is_signed_in:
            self._fail("vote", ValidationFailure("user_id", "Please sign in to vote."), request_id)
            return False
        user = self.context.user
        if self.context.has_voted(request_id):
            self._publish(Notice(
                level="warning",
                message="You have already voted for this request",
                code="ALREADY_VOTED",
                entity_id=request_id,
            ))
            return False

        current = self.requests_view.get(request_id)
        if current is None:
            self._fail("vote", NotFoundError("Request", request_id), request_id)
            return False

        try:
            token = self.requests_view.begin({request_id: {"votes": current.votes + 1}}, "vote")
        except EngineError as e:
            self._fail("vote", e, request_id)
            return False
        self.context.record_vote(request_id)

        try:
            result = await self.votes.cast_vote(request_id, user.id)
        except EngineError as e:
            self.requests_view.reject(token)
            self.context.voted_request_ids.discard(request_id)
            self._fail("vote", e, request_id)
            return False

        if not result.accepted:
            self.requests_view.reject(token)
            self._publish(Notice(
                level="warning",
                message="You have already voted for this request",
                code="ALREADY_VOTED",
                entity_id=request_id,
            ))
            return False

        self.requests_view.confirm(token, [as_row(result.request)] if result.request else None)
        self._success("Vote counted!", request_id)
        return True

    # -------------------------------------------------------------------------
    # Staff Actions
    # -------------------------------------------------------------------------

    async def _optimistic(self, view: OptimisticView, action: str, guesses: dict, commit, entity_id=None):
        """Apply guesses, run commit(), confirm with its rows or roll back."""
        try:
            token = view.begin(guesses, action)
        except EngineError as e:
            self._fail(action, e, entity_id)
            return None
        try:
            rows = await commit()
        except EngineError as e:
            view.reject(token)
            self._fail(action, e, entity_id)
            return None
        view.confirm(token, rows)
        return rows

    async def lock_request(self, request_id: str) -> bool:
        try:
            guesses = plan_lock(self.requests_view.items(), request_id)
        except EngineError as e:
            self._fail("lock", e, request_id)
            return False

        async def commit():
            await self.queue.lock(request_id)
            # every guessed row, so no guess is dropped before its row lands
            return [as_row(r) for r in await self.queue.get_requests(list(guesses))]

        rows = await self._optimistic(self.requests_view, "lock", guesses, commit, request_id)
        return rows is not None

    async def mark_played(self, request_id: str) -> bool:
        current = self.requests_view.get(request_id)
        if current is None:
            self._fail("mark played", NotFoundError("Request", request_id), request_id)
            return False
        guesses = plan_mark_played(current)
        if not guesses:
            return True

        async def commit():
            return [as_row(await self.queue.mark_played(request_id))]

        rows = await self._optimistic(self.requests_view, "mark played", guesses, commit, request_id)
        return rows is not None

    async def reset_queue(self) -> bool:
        guesses = plan_reset(self.requests_view.items())
        cleared = []

        async def commit():
            cleared.append(await self.queue.reset_queue())
            # authoritative rows follow on the feed
            for request_id, patch in guesses.items():
                self.request_sync.collection.patch(request_id, patch)
            return []

        if await self._optimistic(self.requests_view, "reset queue", guesses, commit) is None:
            return False
        self.context.forget_votes()
        self._success(f"Queue cleared ({cleared[0]} requests)")
        return True

    async def create_set_list(
        self,
        name: str,
        date: Optional[str] = None,
        notes: str = "",
        song_ids: Sequence[str] = (),
    ) -> bool:
        try:
            set_list = await self.set_lists.create_set_list(name, date, notes, song_ids)
        except EngineError as e:
            self._fail("create set list", e)
            return False
        self.set_list_sync.collection.upsert(as_row(set_list), merge=False)
        self._success(f"Set list '{set_list.name}' created", set_list.id)
        return True

    async def update_set_list(
        self,
        set_list_id: str,
        name: Optional[str] = None,
        date: Optional[str] = None,
        notes: Optional[str] = None,
        song_ids: Optional[Sequence[str]] = None,
    ) -> bool:
        guess = {k: v for k, v in (("name", name), ("date", date), ("notes", notes)) if v is not None}

        async def commit():
            return [as_row(await self.set_lists.update_set_list(set_list_id, name, date, notes, song_ids))]

        rows = await self._optimistic(self.set_lists_view, "update set list", {set_list_id: guess}, commit, set_list_id)
        return rows is not None

    async def delete_set_list(self, set_list_id: str) -> bool:
        try:
            await self.set_lists.delete_set_list(set_list_id)
        except EngineError as e:
            self._fail("delete set list", e, set_list_id)
            return False
        self.set_list_sync.collection.remove(set_list_id)
        self._success("Set list deleted", set_list_id)
        return True

    async def set_active(self, set_list_id: str) -> bool:
        current = self.set_lists_view.get(set_list_id)
        if current is None:
            self._fail("set active", NotFoundError("Set list", set_list_id), set_list_id)
            return False

        async def commit():
            return [as_row(await self.set_lists.set_active(set_list_id))]

        guesses = {set_list_id: {"is_active": not current.is_active}}
        rows = await self._optimistic(self.set_lists_view, "set active", guesses, commit, set_list_id)
        return rows is not None

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    async def add_song(self, title: str, artist: str, genres: Sequence[str] = (), album_art_url: Optional[str] = None) -> bool:
        try:
            song = await self.library.add_song(title, artist, genres, album_art_url)
        except EngineError as e:
            self._fail("add song", e)
            return False
        self.song_sync.collection.upsert(as_row(song))
        return True

    async def update_song(self, song_id: str, **fields) -> bool:
        try:
            song = await self.library.update_song(song_id, **fields)
        except EngineError as e:
            self._fail("update song", e, song_id)
            return False
        self.song_sync.collection.upsert(as_row(song))
        return True

    async def delete_song(self, song_id: str) -> bool:
        try:
            await self.library.delete_song(song_id)
        except EngineError as e:
            self._fail("delete song", e, song_id)
            return False
        self.song_sync.collection.remove(song_id)
        return True
