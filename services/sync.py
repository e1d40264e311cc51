"""
Realtime sync.

Each RealtimeSync keeps an EntityCollection mirroring one table: a full
snapshot, then insert/update/delete events from the change feed. Events
that arrive while the snapshot is loading are buffered and replayed on
top of it. Losing the feed triggers a full re-fetch and resubscribe with
bounded backoff; after the last attempt the sync reports FAILED and
waits for notify_online() or reconnect().
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from config.settings import Settings, get_settings
from models.events import ChangeEvent, ChangeType, Notice, SubscriptionStatus
from models.request import Request
from models.rows import parse_timestamp, to_iso
from models.song import SetList, Song
from .errors import EngineError, NetworkFailure
from .retry import backoff_delay
from .store import Store, Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[str, Optional[dict]], None]


def as_row(value: Any) -> dict:
    """
    Store row for an entity (or a row, unchanged).
    Keeps timestamps and embedded children so it can be mirrored.
    """
    if isinstance(value, dict):
        return value
    row = value.to_row()
    row["created_at"] = to_iso(getattr(value, "created_at", None))
    if hasattr(value, "updated_at"):
        row["updated_at"] = to_iso(value.updated_at)
    # requests loaded without the embed leave the mirrored requesters alone
    if isinstance(value, Request) and value.requesters:
        row["requesters"] = [r.to_dict() for r in value.requesters]
    elif isinstance(value, SetList):
        row["set_list_songs"] = [
            {"set_list_id": value.id, "song_id": song.id, "position": position, "songs": song.to_dict()}
            for position, song in enumerate(value.songs)
        ]
    return row


def _stamp(row: Optional[dict]) -> Optional[datetime]:
    if not row:
        return None
    return parse_timestamp(row.get("updated_at"))


class EntityCollection(Generic[T]):
    """
    Local mirror of one table, keyed by id.

    Merges are idempotent: inserting a known id updates it, updating an
    unknown id inserts it, deleting an unknown id does nothing. A row
    never replaces a mirrored row whose updated_at is strictly newer,
    and a deleted id is not resurrected by a stale event.
    """

    def __init__(self, from_row: Callable[[dict], T], sort_key: Optional[Callable[[T], Any]] = None):
        self._from_row = from_row
        self._sort_key = sort_key
        self._rows: Dict[str, dict] = {}
        self._tombstones: Dict[str, Optional[datetime]] = {}
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._rows

    @property
    def ids(self) -> List[str]:
        return list(self._rows)

    def add_listener(self, listener: Listener) -> None:
        """listener(entity_id, row) after every change; row is None on removal."""
        self._listeners.append(listener)

    def _notify(self, entity_id: str, row: Optional[dict]) -> None:
        for listener in self._listeners:
            try:
                listener(entity_id, row)
            except Exception:
                logger.exception(f"Collection listener failed for {entity_id}")

    def row(self, entity_id: str) -> Optional[dict]:
        row = self._rows.get(entity_id)
        return dict(row) if row is not None else None

    def get(self, entity_id: str) -> Optional[T]:
        row = self._rows.get(entity_id)
        return self._from_row(row) if row is not None else None

    def build(self, row: dict) -> T:
        return self._from_row(row)

    def ordered(self, entities: List[T]) -> List[T]:
        if self._sort_key is not None:
            entities.sort(key=self._sort_key)
        return entities

    def items(self) -> List[T]:
        return self.ordered([self._from_row(row) for row in self._rows.values()])

    def replace_all(self, rows: List[dict]) -> None:
        """Swap in a fresh snapshot."""
        old_ids = set(self._rows)
        self._rows = {row["id"]: dict(row) for row in rows}
        self._tombstones.clear()
        for entity_id in old_ids - set(self._rows):
            self._notify(entity_id, None)
        for entity_id, row in self._rows.items():
            self._notify(entity_id, row)

    def upsert(self, row: dict, merge: bool = True) -> bool:
        """
        Insert or update. With merge, keys missing from `row` (such as
        embedded children) are kept from the mirrored row.

        Returns False when the row was stale and ignored.
        """
        entity_id = row["id"]
        incoming = _stamp(row)
        current = self._rows.get(entity_id)

        if current is None and entity_id in self._tombstones:
            deleted_at = self._tombstones[entity_id]
            if incoming is None or deleted_at is None or incoming <= deleted_at:
                return False

        if current is not None:
            mirrored = _stamp(current)
            if incoming is not None and mirrored is not None and mirrored > incoming:
                return False

        merged = {**current, **row} if (merge and current is not None) else dict(row)
        self._rows[entity_id] = merged
        self._tombstones.pop(entity_id, None)
        self._notify(entity_id, merged)
        return True

    def patch(self, entity_id: str, fields: dict) -> bool:
        """Change fields of a mirrored row without touching its timestamp."""
        current = self._rows.get(entity_id)
        if current is None:
            return False
        current.update(fields)
        self._notify(entity_id, current)
        return True

    def remove(self, entity_id: str, deleted_at: Optional[datetime] = None) -> bool:
        self._tombstones[entity_id] = deleted_at
        if self._rows.pop(entity_id, None) is None:
            return False
        self._notify(entity_id, None)
        return True


class RealtimeSync:
    """
    Mirror of one table kept live from the change feed.

    Subclasses name the table, the embeds for the snapshot, and any child
    tables whose events affect the parent rows.
    """

    table: str = ""
    embed: Tuple[str, ...] = ()
    child_tables: Tuple[str, ...] = ()

    def __init__(
        self,
        store: Store,
        collection: EntityCollection,
        settings: Optional[Settings] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ):
        self.store = store
        self.collection = collection
        self.settings = settings or get_settings()
        self.on_notice = on_notice

        self.status = SubscriptionStatus.CLOSED
        self._subscriptions: List[Subscription] = []
        # bumped on every teardown; statuses from older subscriptions are ignored
        self._generation = 0
        self._buffer: Optional[List[ChangeEvent]] = None
        self._recovery: Optional[asyncio.Task] = None
        self._live = asyncio.Event()
        self._started = False
        self._stopped = False
        self._offline = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_live(self) -> bool:
        return self.status is SubscriptionStatus.SUBSCRIBED

    async def start(self) -> None:
        """Initial snapshot + subscription, retried like a reconnect."""
        if self._started:
            return
        self._started = True
        self._stopped = False
        await self._recover(immediate=True)

    async def stop(self) -> None:
        """Tear down. Safe before start() finished and safe to repeat."""
        self._stopped = True
        await self._cancel_recovery()
        await self._unsubscribe_all()
        self._started = False
        self._set_status(SubscriptionStatus.CLOSED)

    async def wait_for_recovery(self) -> None:
        """Wait for a background reconnect to finish, whatever its outcome."""
        task = self._recovery
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_until_live(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._live.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # -------------------------------------------------------------------------
    # Connectivity Signals
    # -------------------------------------------------------------------------

    async def notify_offline(self) -> None:
        """The network went away: drop the feed and stop retrying."""
        self._offline = True
        await self._cancel_recovery()
        await self._unsubscribe_all()
        self._set_status(SubscriptionStatus.CLOSED)

    async def notify_online(self) -> None:
        """The network is back: re-fetch and resubscribe."""
        self._offline = False
        if self._started and not self._stopped and not self.is_live:
            await self.reconnect()

    async def notify_visibility(self, visible: bool) -> None:
        """A view became visible again; events may have been missed while hidden."""
        if visible and self._started and not self._stopped and not self._offline:
            await self.reconnect()

    async def reconnect(self) -> None:
        """Full re-fetch and resubscribe now, with bounded retries."""
        if self._stopped:
            return
        await self._cancel_recovery()
        await self._recover(immediate=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _set_status(self, status: SubscriptionStatus) -> None:
        if status is not self.status:
            logger.debug(f"[{self.table}] {self.status.value} -> {status.value}")
        self.status = status
        if status is SubscriptionStatus.SUBSCRIBED:
            self._live.set()
        else:
            self._live.clear()

    async def _cancel_recovery(self) -> None:
        task, self._recovery = self._recovery, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _notice(self, level: str, message: str, code: str) -> None:
        if self.on_notice is not None:
            self.on_notice(Notice(level=level, message=message, code=code))

    async def _unsubscribe_all(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        self._buffer = None
        self._generation += 1
        for subscription in subscriptions:
            try:
                await subscription.unsubscribe()
            except EngineError as e:
                logger.warning(f"[{self.table}] unsubscribe failed: {e}")

    async def _recover(self, immediate: bool = False) -> None:
        """Reconnect loop: bounded attempts, then FAILED."""
        attempts = self.settings.retry_attempts
        for attempt in range(1, attempts + 1):
            if self._stopped or self._offline:
                return
            if attempt > 1 or not immediate:
                await asyncio.sleep(
                    backoff_delay(attempt, self.settings.retry_base_delay, self.settings.retry_max_delay)
                )
            try:
                await self._connect()
                return
            except NetworkFailure as e:
                logger.warning(f"[{self.table}] connect failed (attempt {attempt}/{attempts}): {e}")
                await self._unsubscribe_all()

        self._set_status(SubscriptionStatus.FAILED)
        logger.error(f"[{self.table}] gave up reconnecting after {attempts} attempts")
        self._notice("error", "Live updates are unavailable. Check your connection.", "SYNC_FAILED")

    async def _connect(self) -> None:
        """Subscribe (buffering), snapshot, replay buffer, go live."""
        await self._unsubscribe_all()
        self._set_status(SubscriptionStatus.CONNECTING)
        self._buffer = []
        on_status = functools.partial(self._on_status, self._generation)

        for table in (self.table,) + self.child_tables:
            subscription = await self.store.subscribe(
                table,
                on_insert=self._on_event,
                on_update=self._on_event,
                on_delete=self._on_event,
                on_status=on_status,
            )
            self._subscriptions.append(subscription)
            if self._stopped:
                await self._unsubscribe_all()
                return

        rows = await self.store.select(self.table, order_by="created_at", embed=self.embed)
        if self._stopped:
            await self._unsubscribe_all()
            return
        self.collection.replace_all(rows)

        buffered, self._buffer = self._buffer or [], None
        for event in buffered:
            await self._apply(event)

        self._set_status(SubscriptionStatus.SUBSCRIBED)
        logger.info(f"[{self.table}] live ({len(self.collection)} rows, {len(buffered)} replayed)")

    async def _on_event(self, event: ChangeEvent) -> None:
        if self._buffer is not None:
            self._buffer.append(event)
            return
        await self._apply(event)

    def _on_status(self, generation: int, status: SubscriptionStatus) -> None:
        if not status.is_loss or self._stopped or self._offline:
            return
        if generation != self._generation:
            logger.debug(f"[{self.table}] ignoring {status.value} from a replaced subscription")
            return
        logger.warning(f"[{self.table}] feed lost ({status.value}), re-fetching")
        self._set_status(status)
        if self._recovery is None or self._recovery.done():
            self._recovery = asyncio.create_task(self._recover_after_loss())

    async def _recover_after_loss(self) -> None:
        await self._unsubscribe_all()
        await self._recover()

    async def _apply(self, event: ChangeEvent) -> None:
        if event.table != self.table:
            await self._apply_child(event)
            return
        if event.change is ChangeType.DELETE:
            if event.row_id:
                self.collection.remove(event.row_id, parse_timestamp(event.committed_at))
            return
        if event.new:
            self.collection.upsert(event.new)

    async def _apply_child(self, event: ChangeEvent) -> None:
        """Child-table events; ignored unless a subclass cares."""


class SongSync(RealtimeSync):
    """Catalog mirror."""

    table = "songs"

    def __init__(self, store: Store, settings: Optional[Settings] = None, on_notice=None):
        collection = EntityCollection(Song.from_row, sort_key=lambda s: (s.title.lower(), s.id))
        super().__init__(store, collection, settings, on_notice)


class RequestSync(RealtimeSync):
    """
    Request mirror with requesters embedded.
    Requester events are folded into their parent row; requesters that
    arrive before their parent are held until it shows up.
    """

    table = "requests"
    embed = ("requesters",)
    child_tables = ("requesters",)

    def __init__(self, store: Store, settings: Optional[Settings] = None, on_notice=None):
        collection = EntityCollection(Request.from_row)
        super().__init__(store, collection, settings, on_notice)
        self._orphans: Dict[str, Dict[str, dict]] = {}

    def _adopt(self, request_id: str) -> None:
        orphans = self._orphans.pop(request_id, None)
        if orphans and request_id in self.collection:
            for requester in orphans.values():
                self._merge_requester(requester)

    def _merge_requester(self, requester: dict) -> None:
        parent = self.collection.row(requester["request_id"])
        if parent is None:
            self._orphans.setdefault(requester["request_id"], {})[requester["id"]] = requester
            return
        requesters = [r for r in parent.get("requesters") or [] if r.get("id") != requester["id"]]
        requesters.append(requester)
        requesters.sort(key=lambda r: (r.get("created_at") or "", r.get("id")))
        self.collection.patch(parent["id"], {"requesters": requesters})

    async def _apply(self, event: ChangeEvent) -> None:
        await super()._apply(event)
        if event.table == self.table and event.change is not ChangeType.DELETE and event.row_id:
            self._adopt(event.row_id)
        elif event.table == self.table and event.row_id:
            self._orphans.pop(event.row_id, None)

    async def _apply_child(self, event: ChangeEvent) -> None:
        if event.change is ChangeType.DELETE:
            old = event.old or {}
            self._orphans.get(old.get("request_id", ""), {}).pop(old.get("id"), None)
            parent = self.collection.row(old.get("request_id", ""))
            if parent is not None:
                requesters = [r for r in parent.get("requesters") or [] if r.get("id") != old.get("id")]
                self.collection.patch(parent["id"], {"requesters": requesters})
            return
        if event.new:
            self._merge_requester(event.new)

    async def _connect(self) -> None:
        self._orphans.clear()
        await super()._connect()


class SetListSync(RealtimeSync):
    """
    Set-list mirror with songs embedded in position order.
    A change to the position rows re-reads the owning set list, since
    re-saving replaces every position at once.
    """

    table = "set_lists"
    embed = ("set_list_songs.songs",)
    child_tables = ("set_list_songs",)

    def __init__(self, store: Store, settings: Optional[Settings] = None, on_notice=None):
        collection = EntityCollection(
            SetList.from_row,
            sort_key=lambda s: (s.created_at.isoformat() if s.created_at else "", s.id),
        )
        super().__init__(store, collection, settings, on_notice)

    async def _apply_child(self, event: ChangeEvent) -> None:
        row = event.new or event.old or {}
        set_list_id = row.get("set_list_id")
        if not set_list_id:
            return
        try:
            rows = await self.store.select(self.table, {"id": set_list_id}, embed=self.embed)
        except NetworkFailure as e:
            logger.warning(f"[{self.table}] refresh of {set_list_id} failed: {e}")
            return
        if rows:
            self.collection.upsert(rows[0], merge=False)
