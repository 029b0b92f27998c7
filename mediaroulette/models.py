"""
Library data model: sources, items and the library index document.
"""
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

VIDEO_EXTENSIONS: Set[str] = {".mp4", ".mkv", ".avi", ".mov", ".wmv", ".mpg", ".mpeg"}
PHOTO_EXTENSIONS: Set[str] = {
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp",
    ".tiff", ".tif", ".heic", ".heif", ".avif",
}
MEDIA_EXTENSIONS: Set[str] = VIDEO_EXTENSIONS | PHOTO_EXTENSIONS

# Category id of tags that belong to no category
UNCATEGORIZED_ID = ""


def path_key(path: str) -> str:
    """Case-insensitive comparison key for a file path."""
    return str(path).casefold()


def tag_key(tag: str) -> str:
    """Case-insensitive comparison key for a tag name."""
    return tag.strip().casefold()


class MediaType(Enum):
    VIDEO = "Video"
    PHOTO = "Photo"

    @classmethod
    def from_path(cls, path: str) -> "MediaType":
        suffix = os.path.splitext(path)[1].lower()
        return cls.VIDEO if suffix in VIDEO_EXTENSIONS else cls.PHOTO


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_flag(value: Any, default: bool) -> bool:
    """Read a JSON boolean, keeping the default for anything else."""
    return value if isinstance(value, bool) else default


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Source:
    """An imported root folder."""

    root_path: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    display_name: Optional[str] = None
    is_enabled: bool = True

    @property
    def name(self) -> str:
        """Display name, falling back to the folder name."""
        if self.display_name:
            return self.display_name
        return os.path.basename(os.path.normpath(self.root_path))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rootPath": self.root_path,
            "displayName": self.display_name,
            "isEnabled": self.is_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            root_path=str(data["rootPath"]),
            id=str(data.get("id") or uuid.uuid4()),
            display_name=data.get("displayName"),
            is_enabled=parse_flag(data.get("isEnabled"), True),
        )


@dataclass
class Item:
    """One indexed media file with its metadata.

    Attributes:
        source_id: Id of the owning Source
        full_path: Absolute path, the unique key (case-insensitive)
        relative_path: Path relative to the source root
        file_name: Base name of the file
        media_type: Video or Photo
        duration: Duration in seconds, None if unknown
        has_audio: Whether the file has an audio stream, None if unknown
        integrated_loudness: Mean volume in dB, None if unknown
        peak_db: Peak volume in dB, None if unknown
    """

    source_id: str
    full_path: str
    relative_path: str = ""
    file_name: str = ""
    media_type: MediaType = MediaType.VIDEO
    is_favorite: bool = False
    is_blacklisted: bool = False
    play_count: int = 0
    last_played_utc: Optional[datetime] = None
    duration: Optional[float] = None
    has_audio: Optional[bool] = None
    integrated_loudness: Optional[float] = None
    peak_db: Optional[float] = None
    tags: Set[str] = field(default_factory=set)

    @property
    def key(self) -> str:
        return path_key(self.full_path)

    def has_tag(self, tag: str) -> bool:
        wanted = tag_key(tag)
        return any(tag_key(t) == wanted for t in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "fullPath": self.full_path,
            "relativePath": self.relative_path,
            "fileName": self.file_name,
            "mediaType": self.media_type.value,
            "isFavorite": self.is_favorite,
            "isBlacklisted": self.is_blacklisted,
            "playCount": self.play_count,
            "lastPlayedUtc": self.last_played_utc.isoformat() if self.last_played_utc else None,
            "duration": self.duration,
            "hasAudio": self.has_audio,
            "integratedLoudness": self.integrated_loudness,
            "peakDb": self.peak_db,
            "tags": sorted(self.tags, key=tag_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        try:
            media_type = MediaType(data.get("mediaType", MediaType.VIDEO.value))
        except ValueError:
            media_type = MediaType.from_path(str(data["fullPath"]))
        has_audio = data.get("hasAudio")
        return cls(
            source_id=str(data.get("sourceId", "")),
            full_path=str(data["fullPath"]),
            relative_path=str(data.get("relativePath", "")),
            file_name=str(data.get("fileName", "")),
            media_type=media_type,
            is_favorite=parse_flag(data.get("isFavorite"), False),
            is_blacklisted=parse_flag(data.get("isBlacklisted"), False),
            play_count=max(0, int(data.get("playCount") or 0)),
            last_played_utc=parse_time(data.get("lastPlayedUtc")),
            duration=_optional_float(data.get("duration")),
            has_audio=has_audio if isinstance(has_audio, bool) else None,
            integrated_loudness=_optional_float(data.get("integratedLoudness")),
            peak_db=_optional_float(data.get("peakDb")),
            tags=set(data.get("tags") or []),
        )


@dataclass
class TagCategory:
    """A group of tags such as Genre or People."""

    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sort_order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "sortOrder": self.sort_order}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TagCategory":
        sort_order = data.get("sortOrder", 0)
        return cls(
            name=str(data["name"]),
            id=str(data["id"]),
            sort_order=sort_order if isinstance(sort_order, int) and not isinstance(sort_order, bool) else 0,
        )


@dataclass
class LibraryIndex:
    """All sources, items, tag names and tag categories, persisted as one document.

    Attributes:
        tag_categories: Category id per tag, keyed by tag_key(). Tags missing
            here are uncategorized.
    """

    sources: List[Source] = field(default_factory=list)
    items: List[Item] = field(default_factory=list)
    available_tags: List[str] = field(default_factory=list)
    categories: List[TagCategory] = field(default_factory=list)
    tag_categories: Dict[str, str] = field(default_factory=dict)

    def find_source(self, source_id: str) -> Optional[Source]:
        for source in self.sources:
            if source.id == source_id:
                return source
        return None

    def find_category(self, category_id: str) -> Optional[TagCategory]:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    def category_of(self, tag: str) -> str:
        return self.tag_categories.get(tag_key(tag), UNCATEGORIZED_ID)

    def enabled_source_ids(self) -> Set[str]:
        return {s.id for s in self.sources if s.is_enabled}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sources": [s.to_dict() for s in self.sources],
            "items": [i.to_dict() for i in self.items],
            "categories": [c.to_dict() for c in self.categories],
            "tags": [{"name": t, "categoryId": self.category_of(t)} for t in self.available_tags],
            "availableTags": list(self.available_tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LibraryIndex":
        """Build an index from a document, dropping orphaned items.

        Tags pointing at an unknown category are kept as uncategorized.
        """
        sources = [Source.from_dict(s) for s in data.get("sources") or []]
        source_ids = {s.id for s in sources}
        items = []
        seen = set()
        for raw in data.get("items") or []:
            item = Item.from_dict(raw)
            if item.source_id not in source_ids or item.key in seen:
                continue
            seen.add(item.key)
            items.append(item)

        categories = [TagCategory.from_dict(c) for c in data.get("categories") or []]
        category_ids = {c.id for c in categories}
        available_tags = [str(t) for t in data.get("availableTags") or []]
        known = {tag_key(t) for t in available_tags}
        tag_categories = {}
        for raw in data.get("tags") or []:
            name = str(raw["name"])
            if tag_key(name) not in known:
                available_tags.append(name)
                known.add(tag_key(name))
            category_id = str(raw.get("categoryId") or UNCATEGORIZED_ID)
            if category_id in category_ids:
                tag_categories[tag_key(name)] = category_id

        return cls(
            sources=sources,
            items=items,
            available_tags=available_tags,
            categories=categories,
            tag_categories=tag_categories,
        )


@dataclass
class RefreshResult:
    """Counts reported by a source refresh."""
    added: int = 0
    removed: int = 0
    updated: int = 0


@dataclass
class SourceStatistics:
    """Aggregate numbers for one source."""
    total_videos: int = 0
    total_photos: int = 0
    total_media: int = 0
    videos_with_audio: int = 0
    videos_without_audio: int = 0
    total_duration: float = 0.0
    average_duration: Optional[float] = None

    @property
    def total_duration_formatted(self) -> str:
        minutes_total = int(self.total_duration // 60)
        if minutes_total == 0:
            return "0m"
        hours, minutes = divmod(minutes_total, 60)
        if hours:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"
