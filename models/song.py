"""
Song and SetList data models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from .rows import parse_timestamp, to_iso


@dataclass(frozen=True)
class Song:
    """Catalog entry. Referenced (not owned) by set lists and requests."""

    id: str
    title: str
    artist: str
    genre: Optional[str] = None  # comma-joined tag list
    album_art_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def genres(self) -> List[str]:
        """Genre tags as a list."""
        if not self.genre:
            return []
        return [g.strip() for g in self.genre.split(",") if g.strip()]

    @staticmethod
    def join_genres(tags: Iterable[str]) -> Optional[str]:
        """Join tags into the stored comma-separated form."""
        cleaned = [t.strip() for t in tags if t and t.strip()]
        return ", ".join(cleaned) if cleaned else None

    @classmethod
    def from_row(cls, row: dict) -> "Song":
        return cls(
            id=row["id"],
            title=row.get("title") or "",
            artist=row.get("artist") or "",
            genre=row.get("genre") or None,
            album_art_url=row.get("album_art_url") or None,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> dict:
        """Convert to a store row (timestamps are owned by the store)."""
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "genre": self.genre,
            "album_art_url": self.album_art_url,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = self.to_row()
        result["genres"] = self.genres
        return result


@dataclass
class SetList:
    """
    Staff-curated ordered song list for a performance.

    Song order is the list order; positions are dense and zero-based
    when written back to the store.
    """

    id: str
    name: str
    date: Optional[str] = None  # ISO date (YYYY-MM-DD)
    notes: str = ""
    is_active: bool = False
    songs: List[Song] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "SetList":
        """
        Build from a set_lists row.
        If the row embeds set_list_songs (each embedding its song), they
        are ordered by position.
        """
        entries = sorted(
            row.get("set_list_songs") or [],
            key=lambda entry: entry.get("position", 0),
        )
        songs = [Song.from_row(entry["songs"]) for entry in entries if entry.get("songs")]
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            date=row.get("date"),
            notes=row.get("notes") or "",
            is_active=bool(row.get("is_active")),
            songs=songs,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> dict:
        """The set_lists row, without song positions."""
        return {
            "id": self.id,
            "name": self.name,
            "date": self.date,
            "notes": self.notes,
            "is_active": self.is_active,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = self.to_row()
        result["songs"] = [song.to_dict() for song in self.songs]
        result["created_at"] = to_iso(self.created_at)
        result["updated_at"] = to_iso(self.updated_at)
        return result
