"""
Set list service.
CRUD for set lists plus the single-active activation guard.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from config.settings import Settings, get_settings
from models.song import SetList
from .audit_log import AuditLog
from .errors import ActiveSetListError, NotFoundError, ValidationFailure
from .retry import with_backoff
from .store import Store

logger = logging.getLogger(__name__)

SONGS_EMBED = ("set_list_songs.songs",)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def resolve_active(set_lists: Iterable[SetList]) -> Optional[SetList]:
    """
    The de-facto active set list.

    Several rows can be flagged active after a race; the most recently
    updated one wins (ties broken by newest created_at, then id).
    """
    active = [s for s in set_lists if s.is_active]
    if not active:
        return None
    return max(active, key=lambda s: (s.updated_at or _EPOCH, s.created_at or _EPOCH, s.id))


async def replace_songs(store: Store, set_list_id: str, song_ids: Sequence[str]) -> None:
    """Full replacement of a set list's song positions (never a partial patch)."""
    if store.supports("replace_set_list_songs"):
        await store.rpc("replace_set_list_songs", set_list_id=set_list_id, song_ids=list(song_ids))
        return
    await store.delete("set_list_songs", {"set_list_id": set_list_id})
    if song_ids:
        await store.insert(
            "set_list_songs",
            [
                {"set_list_id": set_list_id, "song_id": song_id, "position": position}
                for position, song_id in enumerate(song_ids)
            ],
        )


class SetListService:
    """Manages set lists and which one is active."""

    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.audit = audit

    @property
    def atomic_activation(self) -> bool:
        return self.settings.atomic_set_list_activation and self.store.supports("activate_set_list")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_set_lists(self) -> List[SetList]:
        """All set lists, newest first, songs in position order."""
        rows = await with_backoff(
            lambda: self.store.select("set_lists", order_by="created_at", descending=True, embed=SONGS_EMBED),
            "load set lists",
            self.settings,
        )
        return [SetList.from_row(row) for row in rows]

    async def get_set_list(self, set_list_id: str) -> SetList:
        rows = await with_backoff(
            lambda: self.store.select("set_lists", {"id": set_list_id}, embed=SONGS_EMBED),
            f"load set list {set_list_id}",
            self.settings,
        )
        if not rows:
            raise NotFoundError("Set list", set_list_id)
        return SetList.from_row(rows[0])

    async def get_active(self) -> Optional[SetList]:
        rows = await with_backoff(
            lambda: self.store.select("set_lists", {"is_active": True}, embed=SONGS_EMBED),
            "load active set list",
            self.settings,
        )
        return resolve_active(SetList.from_row(row) for row in rows)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_set_list(
        self,
        name: str,
        date: Optional[str] = None,
        notes: str = "",
        song_ids: Sequence[str] = (),
    ) -> SetList:
        """
        Raises:
            ValidationFailure: empty name
        """
        name = (name or "").strip()
        if not name:
            raise ValidationFailure("name", "Please give the set list a name.")

        created = await self.store.insert(
            "set_lists",
            {"name": name, "date": date, "notes": notes or "", "is_active": False},
        )
        set_list_id = created[0]["id"]
        if song_ids:
            await replace_songs(self.store, set_list_id, song_ids)

        logger.info(f"Created set list '{name}' ({len(song_ids)} songs)")
        return await self.get_set_list(set_list_id)

    async def update_set_list(
        self,
        set_list_id: str,
        name: Optional[str] = None,
        date: Optional[str] = None,
        notes: Optional[str] = None,
        song_ids: Optional[Sequence[str]] = None,
    ) -> SetList:
        """
        Patch the named fields. When song_ids is given the song order is
        replaced wholesale.
        """
        await self.get_set_list(set_list_id)

        patch = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationFailure("name", "Please give the set list a name.")
            patch["name"] = name
        if date is not None:
            patch["date"] = date
        if notes is not None:
            patch["notes"] = notes

        if patch:
            await self.store.update("set_lists", patch, {"id": set_list_id})
        if song_ids is not None:
            await replace_songs(self.store, set_list_id, song_ids)

        logger.info(f"Updated set list {set_list_id}")
        return await self.get_set_list(set_list_id)

    async def delete_set_list(self, set_list_id: str) -> None:
        """
        Raises:
            NotFoundError: no such set list
            ActiveSetListError: the set list is active
        """
        set_list = await self.get_set_list(set_list_id)
        if set_list.is_active:
            raise ActiveSetListError(set_list_id)

        await self.store.delete("set_lists", {"id": set_list_id})
        logger.info(f"Deleted set list '{set_list.name}'")

    async def set_active(self, set_list_id: str) -> SetList:
        """
        Toggle a set list's active flag.

        Activation deactivates every other set list in one routine when
        the store offers it. Otherwise only the target's flag changes and
        resolve_active() settles which one counts.
        Not retried: repeating a toggle could undo it.
        """
        set_list = await self.get_set_list(set_list_id)

        if set_list.is_active:
            await self.store.update("set_lists", {"is_active": False}, {"id": set_list_id})
            action = "deactivate_set_list"
        elif self.atomic_activation:
            await self.store.rpc("activate_set_list", set_list_id=set_list_id)
            action = "activate_set_list"
        else:
            await self.store.update("set_lists", {"is_active": True}, {"id": set_list_id})
            action = "activate_set_list"

        result = await self.get_set_list(set_list_id)
        logger.info(f"Set list '{result.name}' is now {'active' if result.is_active else 'inactive'}")
        if self.audit:
            await self.audit.record(action, set_list_id, 1, result.name)
        return result
