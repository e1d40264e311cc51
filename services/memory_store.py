"""
In-process store.

Behaves like the shared database the engine expects: uniqueness
constraints, cascading deletes, store-owned timestamps, atomic routines
and an asynchronous per-table change feed. Every call is a suspension
point, and the whole mutation happens between suspensions, so each call
(and each routine) is atomic with respect to other tasks.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from models.events import ChangeEvent, ChangeType, SubscriptionStatus
from models.rows import utc_now
from .errors import NetworkFailure, StoreError
from .store import (
    RELATIONS,
    ROUTINES,
    TABLES,
    EventHandler,
    Filters,
    StatusHandler,
    Store,
    Subscription,
    dispatch_change,
    matches,
    maybe_await,
    violation_for,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UniqueConstraint:
    """Unique index over columns, optionally partial."""

    name: str
    table: str
    columns: Tuple[str, ...]
    where: Optional[Callable[[dict], bool]] = None

    def key(self, row: dict) -> Optional[tuple]:
        if self.where is not None and not self.where(row):
            return None
        return tuple(row.get(c) for c in self.columns)


CONSTRAINTS = (
    UniqueConstraint("user_votes_request_id_user_id_key", "user_votes", ("request_id", "user_id")),
    UniqueConstraint("requesters_request_id_name_key", "requesters", ("request_id", "name")),
    # one pending request per title
    UniqueConstraint(
        "requests_title_pending_key", "requests", ("title",),
        where=lambda row: not row.get("is_played"),
    ),
    UniqueConstraint(
        "set_list_songs_set_list_id_position_key", "set_list_songs", ("set_list_id", "position"),
    ),
)

# child table, column, parent table -- rows cascade-delete with the parent
FOREIGN_KEYS = (
    ("requesters", "request_id", "requests"),
    ("user_votes", "request_id", "requests"),
    ("set_list_songs", "set_list_id", "set_lists"),
    ("set_list_songs", "song_id", "songs"),
)

DEFAULTS: Dict[str, dict] = {
    "songs": {"genre": None, "album_art_url": None},
    "requests": {"artist": "", "votes": 0, "is_locked": False, "is_played": False},
    "requesters": {"photo": "", "message": ""},
    "user_votes": {},
    "set_lists": {"date": None, "notes": "", "is_active": False},
    "set_list_songs": {},
}


class MemorySubscription(Subscription):
    """
    Feed subscription backed by a queue and a pump task.
    Status changes travel through the same queue as row events, so a
    consumer sees them in commit order.
    """

    def __init__(
        self,
        store: "MemoryStore",
        table: str,
        on_insert: Optional[EventHandler],
        on_update: Optional[EventHandler],
        on_delete: Optional[EventHandler],
        on_status: Optional[StatusHandler],
    ):
        super().__init__(table)
        self._store = store
        self._on_insert = on_insert
        self._on_update = on_update
        self._on_delete = on_delete
        self._on_status = on_status
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self._task: Optional[asyncio.Task] = None

    def _start(self) -> None:
        self._task = asyncio.create_task(self._pump())
        self._status = SubscriptionStatus.SUBSCRIBED
        self._put(SubscriptionStatus.SUBSCRIBED)

    @property
    def has_pending(self) -> bool:
        return self._task is not None and not self._task.done() and self._pending > 0

    async def drain(self) -> None:
        await self._queue.join()

    def _put(self, item) -> None:
        self._pending += 1
        self._queue.put_nowait(item)

    def _publish(self, event: ChangeEvent) -> None:
        if self._status is SubscriptionStatus.SUBSCRIBED:
            self._put(event)

    def _drop(self, status: SubscriptionStatus) -> None:
        """Transport-level loss: tell the consumer, then stop."""
        if not self.is_active:
            return
        self._status = status
        self._put(status)

    async def _pump(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, SubscriptionStatus):
                    if self._on_status is not None:
                        await maybe_await(self._on_status(item))
                    if item.is_loss:
                        return
                else:
                    await dispatch_change(item, self._on_insert, self._on_update, self._on_delete)
            except Exception:
                logger.exception(f"Feed handler failed on '{self.table}'")
            finally:
                self._pending -= 1
                self._queue.task_done()

    async def unsubscribe(self) -> None:
        already_closed = self._status is SubscriptionStatus.CLOSED
        self._status = SubscriptionStatus.CLOSED
        self._store._detach(self)
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # release anyone waiting in drain()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._pending -= 1
            self._queue.task_done()
        if not already_closed:
            logger.debug(f"Unsubscribed from '{self.table}'")


class MemoryStore(Store):
    """
    Shared in-process store.

    Args:
        routines: names of atomic routines to offer (None = all). Pass an
            empty tuple to model a store without server-side routines.
        latency: seconds each call suspends for.
    """

    def __init__(self, routines: Optional[Iterable[str]] = None, latency: float = 0.0):
        self._tables: Dict[str, Dict[str, dict]] = {name: {} for name in TABLES}
        self._routines = tuple(ROUTINES if routines is None else routines)
        self._subscribers: Dict[str, List[MemorySubscription]] = {name: [] for name in TABLES}
        self._feeds: List[MemorySubscription] = []
        self._faults: Deque[Exception] = deque()
        self._last_stamp = utc_now()
        self.latency = latency
        self.online = True
        self.calls: List[str] = []

    # -------------------------------------------------------------------------
    # Fault Injection
    # -------------------------------------------------------------------------

    def fail_next(self, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next `times` calls raise `error` (NetworkFailure by default)."""
        for _ in range(times):
            self._faults.append(error or NetworkFailure("Simulated network failure"))

    def drop_subscriptions(
        self,
        table: Optional[str] = None,
        status: SubscriptionStatus = SubscriptionStatus.CHANNEL_ERROR,
    ) -> int:
        """Simulate the feed transport failing. Returns subscriptions dropped."""
        dropped = 0
        for name, subs in self._subscribers.items():
            if table is not None and name != table:
                continue
            for sub in list(subs):
                sub._drop(status)
                subs.remove(sub)
                dropped += 1
        return dropped

    def go_offline(self) -> None:
        """All calls fail and every open subscription closes."""
        self.online = False
        self.drop_subscriptions(status=SubscriptionStatus.CLOSED)

    def go_online(self) -> None:
        self.online = True

    async def flush(self) -> None:
        """Wait until every queued change has been delivered."""
        idle = 0
        while idle < 3:
            busy = [sub for sub in self._feeds if sub.has_pending]
            if busy:
                idle = 0
                await asyncio.gather(*(sub.drain() for sub in busy))
            else:
                # let handlers that just issued store calls run to their next event
                idle += 1
                await asyncio.sleep(0)

    async def _io(self, operation: str) -> None:
        """One round trip: suspend, then fail if the network says so."""
        self.calls.append(operation)
        await asyncio.sleep(self.latency)
        if self._faults:
            raise self._faults.popleft()
        if not self.online:
            raise NetworkFailure(f"{operation}: store unreachable")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _rows(self, table: str) -> Dict[str, dict]:
        if table not in self._tables:
            raise StoreError(f"Unknown table '{table}'", status_code=404)
        return self._tables[table]

    def _stamp(self) -> str:
        """Strictly increasing commit timestamp."""
        now = utc_now()
        if now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat()

    def _check_unique(self, table: str, candidates: List[dict], replacing: Iterable[str] = ()) -> None:
        """Raise if any candidate collides with stored rows or with another candidate."""
        skip = set(replacing) | {c["id"] for c in candidates}
        for constraint in CONSTRAINTS:
            if constraint.table != table:
                continue
            seen = {}
            for row_id, row in self._tables[table].items():
                if row_id in skip:
                    continue
                key = constraint.key(row)
                if key is not None:
                    seen[key] = row_id
            for candidate in candidates:
                key = constraint.key(candidate)
                if key is None:
                    continue
                if key in seen:
                    raise violation_for(constraint.name, candidate)
                seen[key] = candidate["id"]

    def _check_foreign_keys(self, table: str, candidates: List[dict]) -> None:
        for child, column, parent in FOREIGN_KEYS:
            if child != table:
                continue
            for candidate in candidates:
                ref = candidate.get(column)
                if ref is None or ref not in self._tables[parent]:
                    raise StoreError(
                        f"{table}.{column} references missing {parent} row {ref}",
                        status_code=409,
                    )

    def _emit(
        self,
        table: str,
        change: ChangeType,
        new: Optional[dict],
        old: Optional[dict],
        committed_at: str,
    ) -> None:
        subs = self._subscribers[table]
        if not subs:
            return
        event = ChangeEvent(
            table=table,
            change_type=change.value,
            new=dict(new) if new is not None else None,
            old=dict(old) if old is not None else None,
            committed_at=committed_at,
        )
        for sub in subs:
            sub._publish(event)

    def _insert_now(self, table: str, rows: List[dict]) -> List[dict]:
        stored = self._rows(table)
        stamp = self._stamp()
        prepared = []
        for row in rows:
            record = dict(DEFAULTS.get(table, {}))
            record.update({k: v for k, v in row.items() if v is not None or k not in record})
            record["id"] = record.get("id") or str(uuid.uuid4())
            if record["id"] in stored:
                raise violation_for(f"{table}_pkey", record)
            record.setdefault("created_at", stamp)
            record["created_at"] = record["created_at"] or stamp
            record["updated_at"] = stamp
            prepared.append(record)
        self._check_unique(table, prepared)
        self._check_foreign_keys(table, prepared)
        for record in prepared:
            stored[record["id"]] = record
            self._emit(table, ChangeType.INSERT, record, None, stamp)
        return [dict(r) for r in prepared]

    def _update_now(self, table: str, patch: dict, filters: Optional[Filters]) -> List[dict]:
        stored = self._rows(table)
        patch = {k: v for k, v in patch.items() if k not in ("id", "created_at", "updated_at")}
        targets = [row for row in stored.values() if matches(row, filters)]
        if not targets or not patch:
            return [dict(r) for r in targets]
        stamp = self._stamp()
        candidates = [{**row, **patch, "updated_at": stamp} for row in targets]
        self._check_unique(table, candidates)
        self._check_foreign_keys(table, candidates)
        for old, new in zip(targets, candidates):
            stored[new["id"]] = new
            self._emit(table, ChangeType.UPDATE, new, old, stamp)
        return [dict(r) for r in candidates]

    def _delete_now(self, table: str, filters: Optional[Filters], stamp: Optional[str] = None) -> int:
        stored = self._rows(table)
        stamp = stamp or self._stamp()
        victims = [row for row in stored.values() if matches(row, filters)]
        for row in victims:
            for child, column, parent in FOREIGN_KEYS:
                if parent == table:
                    self._delete_now(child, {column: row["id"]}, stamp)
            del stored[row["id"]]
            self._emit(table, ChangeType.DELETE, None, row, stamp)
        return len(victims)

    def _embed(self, table: str, rows: List[dict], paths: Iterable[str]) -> List[dict]:
        tree: Dict[str, list] = {}
        for path in paths:
            head, _, rest = path.partition(".")
            tree.setdefault(head, [])
            if rest:
                tree[head].append(rest)
        for name, nested in tree.items():
            relation = RELATIONS.get(table, {}).get(name)
            if relation is None:
                raise StoreError(f"No relation '{name}' on '{table}'", status_code=400)
            child_table, column, cardinality = relation
            children = list(self._tables[child_table].values())
            for row in rows:
                if cardinality == "many":
                    found = [dict(c) for c in children if c.get(column) == row["id"]]
                    row[name] = self._embed(child_table, found, nested)
                else:
                    target = self._tables[child_table].get(row.get(column))
                    row[name] = self._embed(child_table, [dict(target)], nested)[0] if target else None
        return rows

    # -------------------------------------------------------------------------
    # Store API
    # -------------------------------------------------------------------------

    def available_routines(self) -> Sequence[str]:
        return self._routines

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        embed: Iterable[str] = (),
    ) -> List[dict]:
        await self._io(f"select:{table}")
        rows = [dict(row) for row in self._rows(table).values() if matches(row, filters)]
        if order_by:
            # None sorts first ascending, last descending
            rows.sort(
                key=lambda r: (r.get(order_by) is not None, r.get(order_by)),
                reverse=descending,
            )
        return self._embed(table, rows, embed)

    async def insert(self, table: str, rows: Union[dict, List[dict]]) -> List[dict]:
        await self._io(f"insert:{table}")
        batch = [rows] if isinstance(rows, dict) else list(rows)
        return self._insert_now(table, batch)

    async def update(self, table: str, patch: dict, filters: Optional[Filters]) -> List[dict]:
        await self._io(f"update:{table}")
        return self._update_now(table, patch, filters)

    async def delete(self, table: str, filters: Optional[Filters]) -> int:
        await self._io(f"delete:{table}")
        return self._delete_now(table, filters)

    async def rpc(self, name: str, **params: Any) -> Any:
        await self._io(f"rpc:{name}")
        if name not in self._routines:
            raise StoreError(f"Routine '{name}' not available", status_code=404)
        routine = getattr(self, f"_rpc_{name}")
        try:
            return routine(**params)
        except TypeError as e:
            raise StoreError(f"Bad arguments for '{name}': {e}", status_code=400)

    async def subscribe(
        self,
        table: str,
        on_insert: Optional[EventHandler] = None,
        on_update: Optional[EventHandler] = None,
        on_delete: Optional[EventHandler] = None,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        await self._io(f"subscribe:{table}")
        self._rows(table)
        sub = MemorySubscription(self, table, on_insert, on_update, on_delete, on_status)
        self._subscribers[table].append(sub)
        self._feeds.append(sub)
        sub._start()
        return sub

    def _detach(self, sub: MemorySubscription) -> None:
        if sub in self._subscribers.get(sub.table, []):
            self._subscribers[sub.table].remove(sub)
        if sub in self._feeds:
            self._feeds.remove(sub)

    async def close(self) -> None:
        for sub in list(self._feeds):
            await sub.unsubscribe()

    # -------------------------------------------------------------------------
    # Atomic Routines
    # -------------------------------------------------------------------------

    def _rpc_add_vote(self, request_id: str, user_id: str) -> bool:
        """Insert the vote and bump the counter, or do nothing."""
        request = self._tables["requests"].get(request_id)
        if request is None or request.get("is_played"):
            return False
        key = (request_id, user_id)
        if any((v["request_id"], v["user_id"]) == key for v in self._tables["user_votes"].values()):
            return False
        self._insert_now("user_votes", [{"request_id": request_id, "user_id": user_id}])
        self._update_now("requests", {"votes": request.get("votes", 0) + 1}, {"id": request_id})
        return True

    def _rpc_lock_request(self, request_id: str) -> int:
        """Unlock every other request and lock this one, in one step."""
        request = self._tables["requests"].get(request_id)
        if request is None or request.get("is_played"):
            return 0
        changed = 0
        for row in list(self._tables["requests"].values()):
            if row["id"] != request_id and row.get("is_locked"):
                changed += len(self._update_now("requests", {"is_locked": False}, {"id": row["id"]}))
        if not request.get("is_locked"):
            changed += len(self._update_now("requests", {"is_locked": True}, {"id": request_id}))
        return changed

    def _rpc_unlock_request(self, request_id: str) -> int:
        return len(self._update_now("requests", {"is_locked": False}, {"id": request_id, "is_locked": True}))

    def _rpc_reset_queue(self) -> int:
        """End of set: finalize every pending request and purge votes."""
        cleared = self._update_now(
            "requests",
            {"is_played": True, "is_locked": False, "votes": 0},
            {"is_played": False},
        )
        self._delete_now("user_votes", None)
        return len(cleared)

    def _rpc_activate_set_list(self, set_list_id: str) -> bool:
        if set_list_id not in self._tables["set_lists"]:
            return False
        for row in list(self._tables["set_lists"].values()):
            if row["id"] != set_list_id and row.get("is_active"):
                self._update_now("set_lists", {"is_active": False}, {"id": row["id"]})
        self._update_now("set_lists", {"is_active": True}, {"id": set_list_id})
        return True

    def _rpc_replace_set_list_songs(self, set_list_id: str, song_ids: List[str]) -> int:
        if set_list_id not in self._tables["set_lists"]:
            return 0
        rows = [
            {"set_list_id": set_list_id, "song_id": song_id, "position": position}
            for position, song_id in enumerate(song_ids)
        ]
        # validate before touching anything so a bad song id leaves the list intact
        self._check_foreign_keys("set_list_songs", rows)
        self._delete_now("set_list_songs", {"set_list_id": set_list_id})
        self._insert_now("set_list_songs", rows)
        # touch the parent so feeds see the new ordering
        self._update_now("set_lists", {"notes": self._tables["set_lists"][set_list_id].get("notes", "")},
                         {"id": set_list_id})
        return len(rows)
