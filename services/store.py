"""
Abstract store interface.

The engine never owns storage: it talks to a shared store through
request/response calls and a per-table change feed. Implementations:
MemoryStore (in-process) and HttpStore (remote host).
"""

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

from models.events import ChangeEvent, ChangeType, SubscriptionStatus
from .errors import ConstraintViolation, DuplicateRequesterError, DuplicateVoteError

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
StatusHandler = Callable[[SubscriptionStatus], Union[None, Awaitable[None]]]
Filters = Dict[str, Any]

TABLES = (
    "songs",
    "requests",
    "requesters",
    "user_votes",
    "set_lists",
    "set_list_songs",
)

# parent table -> {embed name: (child table, join column, cardinality)}
# "many": child.<join column> == parent.id
# "one":  parent.<join column> == child.id
RELATIONS: Dict[str, Dict[str, tuple]] = {
    "requests": {"requesters": ("requesters", "request_id", "many")},
    "set_lists": {"set_list_songs": ("set_list_songs", "set_list_id", "many")},
    "set_list_songs": {"songs": ("songs", "song_id", "one")},
}

# Server-side routines a store may offer. Each is atomic.
ROUTINES = (
    "add_vote",
    "lock_request",
    "unlock_request",
    "reset_queue",
    "activate_set_list",
    "replace_set_list_songs",
)


def matches(row: dict, filters: Optional[Filters]) -> bool:
    """
    Equality filter. A list/tuple/set value means membership.
    An empty or missing filter matches every row.
    """
    if not filters:
        return True
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def violation_for(constraint: Optional[str], row: Optional[dict] = None) -> ConstraintViolation:
    """Map a constraint name to the most specific error class."""
    row = row or {}
    if constraint == "user_votes_request_id_user_id_key":
        return DuplicateVoteError(row.get("request_id", ""), row.get("user_id", ""))
    if constraint == "requesters_request_id_name_key":
        return DuplicateRequesterError(row.get("request_id", ""), row.get("name", ""))
    return ConstraintViolation(
        f"Constraint {constraint} violated",
        "That already exists.",
        constraint=constraint,
    )


async def maybe_await(result: Any) -> Any:
    """Allow handlers to be plain functions or coroutines."""
    if inspect.isawaitable(result):
        return await result
    return result


async def dispatch_change(
    event: ChangeEvent,
    on_insert: Optional[EventHandler],
    on_update: Optional[EventHandler],
    on_delete: Optional[EventHandler],
) -> None:
    """Route one change event to the matching handler."""
    handler = {
        ChangeType.INSERT: on_insert,
        ChangeType.UPDATE: on_update,
        ChangeType.DELETE: on_delete,
    }[event.change]
    if handler is not None:
        await maybe_await(handler(event))


class Subscription(ABC):
    """A live change-feed subscription for one table."""

    def __init__(self, table: str):
        self.table = table
        self._status = SubscriptionStatus.CONNECTING

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status in (SubscriptionStatus.CONNECTING, SubscriptionStatus.SUBSCRIBED)

    @abstractmethod
    async def unsubscribe(self) -> None:
        """
        Stop delivery. Safe before the subscription is established and
        safe to call more than once.
        """


class Store(ABC):
    """Request/response store plus change feed."""

    def supports(self, routine: str) -> bool:
        """Whether the named server-side routine is available."""
        return routine in self.available_routines()

    @abstractmethod
    def available_routines(self) -> Sequence[str]:
        """Names of the atomic routines this store offers."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        embed: Iterable[str] = (),
    ) -> List[dict]:
        """
        Read rows. `embed` names relations from RELATIONS; dotted paths
        embed further levels (e.g. "set_list_songs.songs").
        """

    @abstractmethod
    async def insert(self, table: str, rows: Union[dict, List[dict]]) -> List[dict]:
        """Insert rows all-or-nothing. Raises ConstraintViolation."""

    @abstractmethod
    async def update(self, table: str, patch: dict, filters: Optional[Filters]) -> List[dict]:
        """Patch matching rows; returns the updated rows."""

    @abstractmethod
    async def delete(self, table: str, filters: Optional[Filters]) -> int:
        """Delete matching rows (with cascades); returns the count."""

    @abstractmethod
    async def rpc(self, name: str, **params: Any) -> Any:
        """Call an atomic server-side routine."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        on_insert: Optional[EventHandler] = None,
        on_update: Optional[EventHandler] = None,
        on_delete: Optional[EventHandler] = None,
        on_status: Optional[StatusHandler] = None,
    ) -> Subscription:
        """Subscribe to row changes for one table."""

    async def connect(self) -> None:
        """Prepare the transport (e.g. discover routines)."""

    async def close(self) -> None:
        """Release transport resources."""
