"""
Song catalog service.
"""

import logging
from typing import Iterable, List, Optional

from config.settings import Settings, get_settings
from models.song import Song
from .errors import NotFoundError, ValidationFailure
from .retry import with_backoff
from .setlist_service import replace_songs
from .store import Store

logger = logging.getLogger(__name__)


class LibraryService:
    """CRUD for catalog songs."""

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def list_songs(self) -> List[Song]:
        rows = await with_backoff(
            lambda: self.store.select("songs", order_by="title"),
            "load songs",
            self.settings,
        )
        return [Song.from_row(row) for row in rows]

    async def get_song(self, song_id: str) -> Song:
        rows = await with_backoff(
            lambda: self.store.select("songs", {"id": song_id}),
            f"load song {song_id}",
            self.settings,
        )
        if not rows:
            raise NotFoundError("Song", song_id)
        return Song.from_row(rows[0])

    async def add_song(
        self,
        title: str,
        artist: str,
        genres: Iterable[str] = (),
        album_art_url: Optional[str] = None,
    ) -> Song:
        title = (title or "").strip()
        artist = (artist or "").strip()
        if not title:
            raise ValidationFailure("title", "Please enter a song title.")
        if not artist:
            raise ValidationFailure("artist", "Please enter an artist.")

        created = await self.store.insert(
            "songs",
            {
                "title": title,
                "artist": artist,
                "genre": Song.join_genres(genres),
                "album_art_url": album_art_url or None,
            },
        )
        logger.info(f"Added song: '{title}' by {artist}")
        return Song.from_row(created[0])

    async def update_song(
        self,
        song_id: str,
        title: Optional[str] = None,
        artist: Optional[str] = None,
        genres: Optional[Iterable[str]] = None,
        album_art_url: Optional[str] = None,
    ) -> Song:
        await self.get_song(song_id)

        patch = {}
        if title is not None:
            if not title.strip():
                raise ValidationFailure("title", "Please enter a song title.")
            patch["title"] = title.strip()
        if artist is not None:
            if not artist.strip():
                raise ValidationFailure("artist", "Please enter an artist.")
            patch["artist"] = artist.strip()
        if genres is not None:
            patch["genre"] = Song.join_genres(genres)
        if album_art_url is not None:
            patch["album_art_url"] = album_art_url or None

        if not patch:
            return await self.get_song(song_id)
        rows = await self.store.update("songs", patch, {"id": song_id})
        logger.info(f"Updated song {song_id}")
        return Song.from_row(rows[0])

    async def delete_song(self, song_id: str) -> None:
        """
        Remove a song. Set lists that contain it are re-packed first so
        their positions stay dense.
        """
        song = await self.get_song(song_id)

        entries = await self.store.select("set_list_songs", {"song_id": song_id})
        for set_list_id in {entry["set_list_id"] for entry in entries}:
            remaining = await self.store.select(
                "set_list_songs", {"set_list_id": set_list_id}, order_by="position"
            )
            song_ids = [e["song_id"] for e in remaining if e["song_id"] != song_id]
            await replace_songs(self.store, set_list_id, song_ids)

        await self.store.delete("songs", {"id": song_id})
        logger.info(f"Deleted song: '{song.title}'")
