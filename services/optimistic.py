"""
Optimistic updates over a mirrored collection.

The collection holds authoritative rows (snapshot + feed). This layer
keeps an overlay of guessed field values for entities with a mutation
in flight. Each entity is IDLE, IN_FLIGHT or REVERTING, and at most one
mutation may be in flight per entity.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from .errors import MutationInFlightError
from .sync import EntityCollection, as_row

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EntityState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    REVERTING = "reverting"


@dataclass
class PendingMutation:
    """One user action's guesses, possibly spanning several entities."""

    token: str
    guesses: Dict[str, dict]
    description: str = ""
    settled: set = field(default_factory=set)  # entity ids already cleared

    @property
    def open_ids(self) -> List[str]:
        return [eid for eid in self.guesses if eid not in self.settled]


class OptimisticView(Generic[T]):
    """
    Authoritative collection plus in-flight guesses.

    begin() applies guesses immediately. confirm() folds the store's answer
    into the collection and drops the guesses; reject() drops them so the
    last authoritative value shows again. When the feed delivers a row
    that already matches a guess, that entity is cleared early, so a later
    duplicate confirmation or rejection has nothing left to undo.
    """

    def __init__(self, collection: EntityCollection):
        self.collection = collection
        self._mutations: Dict[str, PendingMutation] = {}
        self._owner: Dict[str, str] = {}  # entity id -> token
        self._states: Dict[str, EntityState] = {}
        self._revert_listeners: List[Callable[[List[str]], None]] = []
        collection.add_listener(self._observe)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def state(self, entity_id: str) -> EntityState:
        return self._states.get(entity_id, EntityState.IDLE)

    def is_in_flight(self, entity_id: str) -> bool:
        return self.state(entity_id) is EntityState.IN_FLIGHT

    def _overlay(self, entity_id: str) -> Optional[dict]:
        token = self._owner.get(entity_id)
        if token is None:
            return None
        return self._mutations[token].guesses.get(entity_id)

    def row(self, entity_id: str) -> Optional[dict]:
        row = self.collection.row(entity_id)
        overlay = self._overlay(entity_id)
        if row is None or overlay is None:
            return row
        return {**row, **overlay}

    def get(self, entity_id: str) -> Optional[T]:
        row = self.row(entity_id)
        return self.collection.build(row) if row is not None else None

    def items(self) -> List[T]:
        if not self._owner:
            return self.collection.items()
        rows = [self.row(entity_id) for entity_id in self.collection.ids]
        return self.collection.ordered([self.collection.build(row) for row in rows if row is not None])

    def on_revert(self, listener: Callable[[List[str]], None]) -> None:
        """listener(entity_ids) while reverted entities are REVERTING."""
        self._revert_listeners.append(listener)

    # -------------------------------------------------------------------------
    # Mutation Lifecycle
    # -------------------------------------------------------------------------

    def begin(self, guesses: Dict[str, dict], description: str = "") -> str:
        """
        Apply guesses now. Returns a token for confirm()/reject().

        Raises:
            MutationInFlightError: an affected entity is still in flight
        """
        for entity_id in guesses:
            if self.state(entity_id) is not EntityState.IDLE:
                raise MutationInFlightError(entity_id)

        token = uuid.uuid4().hex
        self._mutations[token] = PendingMutation(token, {k: dict(v) for k, v in guesses.items()}, description)
        for entity_id in guesses:
            self._owner[entity_id] = token
            self._states[entity_id] = EntityState.IN_FLIGHT
        logger.debug(f"Optimistic {description or 'mutation'} on {list(guesses)}")
        return token

    def confirm(self, token: str, rows: Optional[list] = None) -> None:
        """
        The store accepted the mutation. `rows` (rows or entities) are the
        authoritative results; they land in the collection before the
        guesses are dropped, so nothing flickers.
        """
        for value in rows or []:
            self.collection.upsert(as_row(value))
        mutation = self._mutations.pop(token, None)
        if mutation is None:
            return
        self._settle(mutation, mutation.open_ids)

    def reject(self, token: str) -> List[str]:
        """
        The store refused or failed. Drops the remaining guesses and
        returns the ids that visibly reverted.
        """
        mutation = self._mutations.pop(token, None)
        if mutation is None:
            return []
        reverted = mutation.open_ids
        for entity_id in reverted:
            self._states[entity_id] = EntityState.REVERTING
        if reverted:
            logger.info(f"Rolled back {mutation.description or 'mutation'} on {reverted}")
            for listener in self._revert_listeners:
                try:
                    listener(reverted)
                except Exception:
                    logger.exception("Revert listener failed")
        self._settle(mutation, reverted)
        return reverted

    def _settle(self, mutation: PendingMutation, entity_ids: List[str]) -> None:
        for entity_id in entity_ids:
            mutation.settled.add(entity_id)
            if self._owner.get(entity_id) == mutation.token:
                del self._owner[entity_id]
                self._states.pop(entity_id, None)

    def _observe(self, entity_id: str, row: Optional[dict]) -> None:
        """Feed delivered a row: clear the guess early if it already matches."""
        token = self._owner.get(entity_id)
        if token is None or row is None:
            return
        mutation = self._mutations[token]
        guess = mutation.guesses[entity_id]
        if all(row.get(key) == value for key, value in guess.items()):
            self._settle(mutation, [entity_id])
            logger.debug(f"Feed already reflects guess for {entity_id}")
            if not mutation.open_ids:
                self._mutations.pop(token, None)
