"""Services module for the request/vote sync engine."""

from .errors import (
    EngineError,
    ConstraintViolation,
    DuplicateVoteError,
    DuplicateRequesterError,
    NetworkFailure,
    StoreError,
    ValidationFailure,
    NotFoundError,
    InvariantViolation,
    RequestPlayedError,
    ActiveSetListError,
    MutationInFlightError,
)
from .store import Store, Subscription
from .memory_store import MemoryStore
from .http_store import HttpStore
from .retry import with_backoff
from .vote_service import VoteService, VoteResult
from .queue_service import QueueService
from .setlist_service import SetListService, resolve_active
from .library_service import LibraryService
from .optimistic import OptimisticView, EntityState
from .sync import EntityCollection, RealtimeSync, RequestSync, SetListSync, SongSync
from .audit_log import AuditLog
from .engine import RequestEngine

__all__ = [
    "EngineError",
    "ConstraintViolation",
    "DuplicateVoteError",
    "DuplicateRequesterError",
    "NetworkFailure",
    "StoreError",
    "ValidationFailure",
    "NotFoundError",
    "InvariantViolation",
    "RequestPlayedError",
    "ActiveSetListError",
    "MutationInFlightError",
    "Store",
    "Subscription",
    "MemoryStore",
    "HttpStore",
    "with_backoff",
    "VoteService",
    "VoteResult",
    "QueueService",
    "SetListService",
    "resolve_active",
    "LibraryService",
    "OptimisticView",
    "EntityState",
    "EntityCollection",
    "RealtimeSync",
    "RequestSync",
    "SetListSync",
    "SongSync",
    "AuditLog",
    "RequestEngine",
]
