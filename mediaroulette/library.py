"""
Library index management: importing folders, refreshing sources and
keeping per-item metadata.
"""
import os
import shutil
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from mediaroulette.logging_config import (
    get_logger,
    DirectoryUnavailableError,
    NotFoundError,
    PersistenceError,
)
from mediaroulette.models import (
    MEDIA_EXTENSIONS,
    UNCATEGORIZED_ID,
    Item,
    LibraryIndex,
    MediaType,
    RefreshResult,
    Source,
    SourceStatistics,
    TagCategory,
    path_key,
    tag_key,
)
from mediaroulette.persistence import atomic_write_json, load_json

logger = get_logger('library')

DirectoryEnumerator = Callable[[str], Iterable[str]]

BACKUP_PREFIX = "library.json.backup."
BACKUP_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"


def walk_directory(root: str) -> List[str]:
    """List every file below a directory as absolute paths.

    Symlinked directories are not followed.

    Args:
        root: Directory to walk

    Returns:
        Sorted list of absolute file paths

    Raises:
        DirectoryUnavailableError: If root is not a directory
    """
    if not os.path.isdir(root):
        raise DirectoryUnavailableError(f"Directory not found: {root}")

    def _on_error(error: OSError) -> None:
        logger.warning(f"Skipping unreadable directory: {error}")

    paths = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_on_error):
        for name in filenames:
            paths.append(os.path.abspath(os.path.join(dirpath, name)))
    paths.sort()
    return paths


def select_media_files(paths: Iterable[str], extensions: Set[str] = MEDIA_EXTENSIONS) -> List[str]:
    """Keep only paths whose extension is recognized."""
    return [p for p in paths if os.path.splitext(p)[1].lower() in extensions]


def _copy_item(item: Item) -> Item:
    return replace(item, tags=set(item.tags))


def _relative_path(root: str, full_path: str) -> str:
    try:
        return os.path.relpath(full_path, root)
    except ValueError:
        # Different drives on Windows
        return os.path.basename(full_path)


class LibraryService:
    """Owns the in-memory library index and its persisted document.

    One lock guards the index. Saving uses a second lock so a slow write
    only serializes against other saves, never against mutations.
    """

    def __init__(
        self,
        library_path: Optional[Union[str, Path]] = None,
        enumerator: Optional[DirectoryEnumerator] = None,
    ):
        self.library_path = Path(library_path) if library_path else None
        self._enumerator = enumerator or walk_directory
        self._index = LibraryIndex()
        self._by_key: Dict[str, Item] = {}
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load_library(self) -> bool:
        """Load the library document.

        A missing or corrupt document leaves an empty index.

        Returns:
            True if a document was loaded
        """
        index = LibraryIndex()
        loaded = False
        if self.library_path is not None:
            data = load_json(self.library_path)
            if isinstance(data, dict):
                try:
                    index = LibraryIndex.from_dict(data)
                    loaded = True
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Library document is corrupt, starting empty: {e}")
            elif data is not None:
                logger.warning("Library document has unexpected shape, starting empty")

        with self._lock:
            self._index = index
            self._by_key = {item.key: item for item in index.items}

        logger.info(f"Library loaded: {len(index.items)} items, {len(index.sources)} sources")
        return loaded

    def save_library(self) -> None:
        """Save the library document atomically.

        Raises:
            PersistenceError: If no path is configured or the write fails
        """
        if self.library_path is None:
            raise PersistenceError("No library path configured")

        with self._save_lock:
            with self._lock:
                document = self._index.to_dict()
            atomic_write_json(self.library_path, document)
            logger.debug(
                f"Library saved: {len(document['items'])} items, "
                f"{len(document['sources'])} sources"
            )

    def create_backup_if_needed(
        self,
        enabled: bool,
        minimum_gap_minutes: int,
        number_of_backups: int,
        now: Optional[datetime] = None,
    ) -> Optional[Path]:
        """Copy the saved library document into a rotating backup set.

        When the set is full, the newest backup is replaced if it is
        younger than the minimum gap, otherwise the oldest is dropped.
        Failures are logged, never raised.

        Returns:
            Path of the new backup, or None if none was written
        """
        if not enabled or self.library_path is None:
            return None

        now = now or datetime.now()
        backup_dir = self.library_path.parent / "backups"
        try:
            if not self.library_path.exists():
                logger.debug("No library document to back up")
                return None

            backups = self._list_backups(backup_dir)
            if len(backups) >= max(1, number_of_backups):
                newest_time = backups[-1][0]
                if now - newest_time < timedelta(minutes=minimum_gap_minutes):
                    doomed = backups.pop()[1]
                    logger.info(f"Replacing recent backup {doomed.name}")
                else:
                    doomed = backups.pop(0)[1]
                    logger.info(f"Dropping oldest backup {doomed.name}")
                doomed.unlink()

            backup_dir.mkdir(parents=True, exist_ok=True)
            target = backup_dir / f"{BACKUP_PREFIX}{now.strftime(BACKUP_TIME_FORMAT)}"
            shutil.copy2(self.library_path, target)
            logger.info(f"Created library backup {target.name}")
            return target
        except OSError as e:
            logger.error(f"Library backup failed: {e}")
            return None

    @staticmethod
    def _list_backups(backup_dir: Path) -> List[tuple]:
        if not backup_dir.is_dir():
            return []
        backups = []
        for entry in backup_dir.iterdir():
            if not entry.name.startswith(BACKUP_PREFIX):
                continue
            try:
                stamp = datetime.strptime(entry.name[len(BACKUP_PREFIX):], BACKUP_TIME_FORMAT)
            except ValueError:
                continue
            backups.append((stamp, entry))
        backups.sort(key=lambda b: b[0])
        return backups

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def snapshot(self) -> LibraryIndex:
        """Return a detached copy of the index for lock-free readers."""
        with self._lock:
            return LibraryIndex(
                sources=[replace(s) for s in self._index.sources],
                items=[_copy_item(i) for i in self._index.items],
                available_tags=list(self._index.available_tags),
                categories=[replace(c) for c in self._index.categories],
                tag_categories=dict(self._index.tag_categories),
            )

    def find_item_by_path(self, path: str) -> Optional[Item]:
        with self._lock:
            item = self._by_key.get(path_key(path))
            return _copy_item(item) if item else None

    def get_items_by_source(self, source_id: Optional[str] = None) -> List[Item]:
        with self._lock:
            return [
                _copy_item(i) for i in self._index.items
                if source_id is None or i.source_id == source_id
            ]

    def get_sources(self) -> List[Source]:
        with self._lock:
            return [replace(s) for s in self._index.sources]

    def get_source(self, source_id: str) -> Source:
        with self._lock:
            return replace(self._require_source(source_id))

    def get_available_tags(self) -> List[str]:
        with self._lock:
            return list(self._index.available_tags)

    def get_source_statistics(self, source_id: str) -> SourceStatistics:
        """Aggregate counts and durations for one source."""
        with self._lock:
            self._require_source(source_id)
            items = [i for i in self._index.items if i.source_id == source_id]

        videos = [i for i in items if i.media_type == MediaType.VIDEO]
        stats = SourceStatistics(
            total_videos=len(videos),
            total_photos=len(items) - len(videos),
            total_media=len(items),
            videos_with_audio=sum(1 for i in videos if i.has_audio is True),
            videos_without_audio=sum(1 for i in videos if i.has_audio is False),
        )
        durations = [i.duration for i in videos if i.duration is not None]
        if durations:
            stats.total_duration = float(sum(durations))
            stats.average_duration = stats.total_duration / len(durations)
        return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._index.items)

    # ------------------------------------------------------------------
    # Import and refresh
    # ------------------------------------------------------------------
    def _enumerate_media(self, root: str) -> List[str]:
        if not os.path.isdir(root):
            logger.error(f"Directory not found: {root}")
            raise DirectoryUnavailableError(f"Directory not found: {root}")
        try:
            return select_media_files(self._enumerator(root))
        except OSError as e:
            raise DirectoryUnavailableError(f"Cannot list {root}: {e}") from e

    def import_folder(self, root_path: str, display_name: Optional[str] = None) -> int:
        """Import a folder, creating items for newly discovered files.

        Existing items keep their favorite, blacklist, stats, tags and
        duration; only their path fields are refreshed.

        Args:
            root_path: Folder to import
            display_name: Optional display name for the source

        Returns:
            Number of newly created items

        Raises:
            DirectoryUnavailableError: If the folder does not exist
        """
        root = os.path.abspath(os.path.expanduser(root_path))
        files = self._enumerate_media(root)
        logger.info(f"Importing {root}: {len(files)} media files found")

        with self._lock:
            source = next(
                (s for s in self._index.sources if path_key(s.root_path) == path_key(root)),
                None,
            )
            if source is None:
                source = Source(root_path=root, display_name=display_name)
                self._index.sources.append(source)
                logger.info(f"Created source {source.id} for {root}")
            elif display_name:
                source.display_name = display_name

            imported = 0
            updated = 0
            for file_path in files:
                existing = self._by_key.get(path_key(file_path))
                if existing is not None:
                    existing.source_id = source.id
                    self._set_path_fields(existing, source.root_path, file_path)
                    updated += 1
                else:
                    item = Item(source_id=source.id, full_path=file_path)
                    self._set_path_fields(item, source.root_path, file_path)
                    self._index.items.append(item)
                    self._by_key[item.key] = item
                    imported += 1

        logger.info(f"Import finished: {imported} new items, {updated} existing items updated")
        return imported

    def refresh_source(self, source_id: str) -> RefreshResult:
        """Re-scan a source folder for added, removed and renamed files.

        Raises:
            NotFoundError: If the source is unknown
            DirectoryUnavailableError: If its folder is gone
        """
        with self._lock:
            root = self._require_source(source_id).root_path

        on_disk = {path_key(p): p for p in self._enumerate_media(root)}
        result = RefreshResult()

        with self._lock:
            source = self._require_source(source_id)
            current = [i for i in self._index.items if i.source_id == source_id]
            current_keys = {i.key for i in current}

            for key, file_path in on_disk.items():
                if key in current_keys or key in self._by_key:
                    continue
                item = Item(source_id=source.id, full_path=file_path)
                self._set_path_fields(item, source.root_path, file_path)
                self._index.items.append(item)
                self._by_key[key] = item
                result.added += 1

            vanished = {i.key for i in current if i.key not in on_disk}
            if vanished:
                self._index.items = [i for i in self._index.items if i.key not in vanished]
                for key in vanished:
                    self._by_key.pop(key, None)
                result.removed = len(vanished)

            for item in current:
                new_path = on_disk.get(item.key)
                if new_path is not None and new_path != item.full_path:
                    self._set_path_fields(item, source.root_path, new_path)
                    result.updated += 1

        logger.info(
            f"Refreshed source {source_id}: added {result.added}, "
            f"removed {result.removed}, updated {result.updated}"
        )
        return result

    @staticmethod
    def _set_path_fields(item: Item, root: str, file_path: str) -> None:
        item.full_path = file_path
        item.relative_path = _relative_path(root, file_path)
        item.file_name = os.path.basename(file_path)
        item.media_type = MediaType.from_path(file_path)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    def _require_source(self, source_id: str) -> Source:
        source = self._index.find_source(source_id)
        if source is None:
            logger.error(f"Source not found: {source_id}")
            raise NotFoundError(f"Source not found: {source_id}")
        return source

    def remove_source(self, source_id: str) -> int:
        """Remove a source together with all of its items.

        Returns:
            Number of items removed
        """
        with self._lock:
            self._require_source(source_id)
            doomed = [i for i in self._index.items if i.source_id == source_id]
            self._index.items = [i for i in self._index.items if i.source_id != source_id]
            for item in doomed:
                self._by_key.pop(item.key, None)
            self._index.sources = [s for s in self._index.sources if s.id != source_id]

        logger.info(f"Removed source {source_id} and {len(doomed)} items")
        return len(doomed)

    def update_source(self, source: Source) -> None:
        """Replace a source record (rename, enable or disable)."""
        with self._lock:
            for idx, existing in enumerate(self._index.sources):
                if existing.id == source.id:
                    self._index.sources[idx] = replace(source)
                    logger.info(
                        f"Updated source {source.id}: name={source.name}, enabled={source.is_enabled}"
                    )
                    return
        logger.error(f"Source not found: {source.id}")
        raise NotFoundError(f"Source not found: {source.id}")

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def _require_item(self, path: str) -> Item:
        item = self._by_key.get(path_key(path))
        if item is None:
            raise NotFoundError(f"Item not found: {path}")
        return item

    def update_item(self, item: Item) -> None:
        """Replace an item with the same path, or add it."""
        if item is None:
            raise ValueError("item is required")

        with self._lock:
            self._require_source(item.source_id)
            stored = _copy_item(item)
            existing = self._by_key.get(stored.key)
            if existing is not None:
                idx = next(i for i, it in enumerate(self._index.items) if it is existing)
                self._index.items[idx] = stored
                logger.debug(f"Updated item {stored.file_name}")
            else:
                self._index.items.append(stored)
                logger.debug(f"Added item {stored.file_name}")
            self._by_key[stored.key] = stored

    def remove_item(self, path: str) -> None:
        """Remove one item by path.

        Raises:
            NotFoundError: If no item has that path
        """
        if not path:
            raise ValueError("path is required")

        with self._lock:
            item = self._require_item(path)
            self._index.items.remove(item)
            del self._by_key[item.key]
        logger.debug(f"Removed item {path}")

    def set_favorite(self, path: str, is_favorite: bool) -> Item:
        with self._lock:
            item = self._require_item(path)
            item.is_favorite = is_favorite
            return _copy_item(item)

    def set_blacklisted(self, path: str, is_blacklisted: bool) -> Item:
        with self._lock:
            item = self._require_item(path)
            item.is_blacklisted = is_blacklisted
            return _copy_item(item)

    def record_playback(self, path: str, when: Optional[datetime] = None) -> Item:
        """Increment an item's play count and stamp the play time."""
        with self._lock:
            item = self._require_item(path)
            item.play_count += 1
            item.last_played_utc = when or datetime.now(timezone.utc)
            return _copy_item(item)

    def clear_playback_stats(self) -> None:
        """Reset play counts and last-played times for every item."""
        with self._lock:
            for item in self._index.items:
                item.play_count = 0
                item.last_played_utc = None
        logger.info("Playback stats cleared")

    def apply_cached_metadata(self, duration_cache=None, loudness_cache=None) -> int:
        """Copy scan results from the caches onto items.

        Returns:
            Number of items that changed
        """
        changed = 0
        with self._lock:
            for item in self._index.items:
                dirty = False
                if duration_cache is not None:
                    seconds = duration_cache.get(item.full_path)
                    if seconds is not None and item.duration != seconds:
                        item.duration = float(seconds)
                        dirty = True
                if loudness_cache is not None:
                    info = loudness_cache.get(item.full_path)
                    if info is not None and (
                        item.integrated_loudness != info.mean_volume_db
                        or item.peak_db != info.peak_db
                        or item.has_audio != info.has_audio
                    ):
                        item.integrated_loudness = info.mean_volume_db
                        item.peak_db = info.peak_db
                        item.has_audio = info.has_audio
                        dirty = True
                if dirty:
                    changed += 1
        if changed:
            logger.info(f"Applied cached metadata to {changed} items")
        return changed

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------
    def _find_tag(self, name: str) -> Optional[int]:
        wanted = tag_key(name)
        for idx, tag in enumerate(self._index.available_tags):
            if tag_key(tag) == wanted:
                return idx
        return None

    def _require_category(self, category_id: str) -> TagCategory:
        category = self._index.find_category(category_id)
        if category is None:
            raise NotFoundError(f"Category not found: {category_id}")
        return category

    def get_tag_category(self, name: str) -> str:
        """Category id of a tag, UNCATEGORIZED_ID if it has none."""
        with self._lock:
            return self._index.category_of(name)

    def add_tag(self, name: str, category_id: Optional[str] = None) -> bool:
        """Register a tag name. Returns False if it already exists.

        Raises:
            NotFoundError: If category_id names no category
        """
        name = name.strip()
        if not name:
            raise ValueError("Tag name cannot be empty")
        with self._lock:
            if category_id:
                self._require_category(category_id)
            if self._find_tag(name) is not None:
                return False
            self._index.available_tags.append(name)
            if category_id:
                self._index.tag_categories[tag_key(name)] = category_id
        logger.debug(f"Added tag {name}")
        return True

    def rename_tag(self, old_name: str, new_name: str) -> int:
        """Rename a tag everywhere, merging into an existing tag of that name.

        A renamed tag keeps its category; a merged one takes the category
        of the tag it merges into.

        Returns:
            Number of items that carried the tag
        """
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("Tag name cannot be empty")

        with self._lock:
            idx = self._find_tag(old_name)
            if idx is None:
                raise NotFoundError(f"Tag not found: {old_name}")
            target = self._find_tag(new_name)
            category_id = self._index.tag_categories.pop(tag_key(old_name), None)
            if target is None or target == idx:
                self._index.available_tags[idx] = new_name
                if category_id is not None:
                    self._index.tag_categories[tag_key(new_name)] = category_id
            else:
                del self._index.available_tags[idx]

            touched = 0
            old_key = tag_key(old_name)
            for item in self._index.items:
                matching = {t for t in item.tags if tag_key(t) == old_key}
                if matching:
                    item.tags -= matching
                    if not item.has_tag(new_name):
                        item.tags.add(new_name)
                    touched += 1

        logger.info(f"Renamed tag {old_name} -> {new_name} on {touched} items")
        return touched

    def remove_tag(self, name: str) -> int:
        """Delete a tag from the library and from every item."""
        with self._lock:
            idx = self._find_tag(name)
            if idx is None:
                raise NotFoundError(f"Tag not found: {name}")
            del self._index.available_tags[idx]

            touched = 0
            key = tag_key(name)
            self._index.tag_categories.pop(key, None)
            for item in self._index.items:
                matching = {t for t in item.tags if tag_key(t) == key}
                if matching:
                    item.tags -= matching
                    touched += 1

        logger.info(f"Removed tag {name} from {touched} items")
        return touched

    def set_item_tags(self, path: str, tags: Iterable[str]) -> Item:
        """Replace an item's tags, registering unknown tag names."""
        cleaned = {t.strip() for t in tags if t and t.strip()}
        with self._lock:
            item = self._require_item(path)
            for tag in cleaned:
                if self._find_tag(tag) is None:
                    self._index.available_tags.append(tag)
            item.tags = cleaned
            return _copy_item(item)

    def set_tag_category(self, name: str, category_id: Optional[str]) -> None:
        """Move a tag into a category, or out of all of them when None.

        Raises:
            NotFoundError: If the tag or the category does not exist
        """
        with self._lock:
            if self._find_tag(name) is None:
                raise NotFoundError(f"Tag not found: {name}")
            if not category_id or category_id == UNCATEGORIZED_ID:
                self._index.tag_categories.pop(tag_key(name), None)
            else:
                self._require_category(category_id)
                self._index.tag_categories[tag_key(name)] = category_id
        logger.debug(f"Tag {name} moved to category {category_id or 'Uncategorized'}")

    # ------------------------------------------------------------------
    # Tag categories
    # ------------------------------------------------------------------
    def get_categories(self) -> List[TagCategory]:
        """Categories in display order."""
        with self._lock:
            return [replace(c) for c in sorted(self._index.categories, key=lambda c: c.sort_order)]

    def add_category(self, name: str, sort_order: Optional[int] = None) -> TagCategory:
        """Create a category. Without a sort order it goes last.

        Raises:
            ValueError: If the name is empty or already used
        """
        name = name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        with self._lock:
            if any(c.name.casefold() == name.casefold() for c in self._index.categories):
                raise ValueError(f"Category already exists: {name}")
            if sort_order is None:
                sort_order = max((c.sort_order for c in self._index.categories), default=-1) + 1
            category = TagCategory(name=name, sort_order=sort_order)
            self._index.categories.append(category)
        logger.info(f"Added tag category {name}")
        return replace(category)

    def rename_category(self, category_id: str, new_name: str) -> None:
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("Category name cannot be empty")
        with self._lock:
            category = self._require_category(category_id)
            if any(
                c.name.casefold() == new_name.casefold() and c.id != category_id
                for c in self._index.categories
            ):
                raise ValueError(f"Category already exists: {new_name}")
            category.name = new_name

    def remove_category(self, category_id: str) -> int:
        """Delete a category. Its tags become uncategorized.

        Returns:
            Number of tags that lost their category
        """
        with self._lock:
            category = self._require_category(category_id)
            self._index.categories.remove(category)
            moved = [k for k, cid in self._index.tag_categories.items() if cid == category_id]
            for key in moved:
                del self._index.tag_categories[key]
        logger.info(f"Removed tag category {category.name}, {len(moved)} tags uncategorized")
        return len(moved)
