"""
Application facade: owns the services and routes every change that can
affect which items are eligible.
"""
import os
import random
from dataclasses import replace
from typing import Callable, Iterable, List, Optional

from mediaroulette.caches import DurationCache, LoudnessCache
from mediaroulette.config import ConfigManager, get_config_manager
from mediaroulette.filters import FilterService
from mediaroulette.history import PlaybackHistory
from mediaroulette.library import DirectoryEnumerator, LibraryService
from mediaroulette.logging_config import get_logger, NotFoundError, PersistenceError
from mediaroulette.models import Item, RefreshResult, TagCategory
from mediaroulette.normalizer import NormalizationMode, volume_for_mode
from mediaroulette.playqueue import PlayQueue
from mediaroulette.probe import ToolRunner
from mediaroulette.scanner import ProgressSink, ScanOrchestrator, ScanResult, ScanSession, StatusSink
from mediaroulette.state import (
    FilterPreset,
    FilterState,
    PlaybackSettings,
    PresetStore,
    load_filter_state,
    load_playback_settings,
    save_filter_state,
    save_playback_settings,
)

logger = get_logger('controller')

LIBRARY_FILE = "library.json"
FILTER_STATE_FILE = "filterState.json"
PRESETS_FILE = "filterPresets.json"
DURATIONS_FILE = "durations.json"
LOUDNESS_FILE = "loudnessStats.json"
SETTINGS_FILE = "playbackSettings.json"
HISTORY_FILE = "history.json"

SHUTDOWN_SCAN_WAIT = 10.0


class MediaController:
    """Wires the library, caches, filters, queue and scanner together."""

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        runner: Optional[ToolRunner] = None,
        enumerator: Optional[DirectoryEnumerator] = None,
        status_sink: Optional[StatusSink] = None,
        progress_sink: Optional[ProgressSink] = None,
        file_exists: Callable[[str], bool] = os.path.isfile,
        rng: Optional[random.Random] = None,
    ):
        self.config_manager = config_manager or get_config_manager()
        config = self.config_manager.config
        data_path = self.config_manager.get_data_path

        self._file_exists = file_exists
        self._current_root: Optional[str] = None

        self.library = LibraryService(data_path(LIBRARY_FILE), enumerator=enumerator)
        self.duration_cache = DurationCache(data_path(DURATIONS_FILE))
        self.loudness_cache = LoudnessCache(data_path(LOUDNESS_FILE))
        self.presets = PresetStore(data_path(PRESETS_FILE))
        self.history = PlaybackHistory(data_path(HISTORY_FILE), config.history_size)
        self.filter_service = FilterService(self.duration_cache, self.loudness_cache, file_exists=file_exists)
        self.filter_state = FilterState()
        self.playback_settings = PlaybackSettings()
        self.queue = PlayQueue(self._queue_pool, no_repeat=self.playback_settings.no_repeat_mode, rng=rng)
        self.scanner = ScanOrchestrator(
            self.duration_cache,
            self.loudness_cache,
            runner=runner,
            ffprobe_path=config.ffprobe_path,
            ffmpeg_path=config.ffmpeg_path,
            workers=self.config_manager.get_scan_workers(),
            checkpoint_batch_size=config.checkpoint_batch_size,
            duration_timeout=config.duration_timeout,
            loudness_timeout=config.loudness_timeout,
            enumerator=enumerator,
            root_provider=self.current_root,
            progress_sink=progress_sink,
            status_sink=status_sink,
            on_complete=self._on_scan_complete,
        )

    # ------------------------------------------------------------------
    # Startup and shutdown
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Load every persisted document. Missing or corrupt ones start empty."""
        config = self.config_manager.config
        self.config_manager.validate_config()
        self.library.load_library()
        self.library.create_backup_if_needed(
            config.backup_enabled, config.backup_minimum_gap_minutes, config.backup_count
        )
        self.duration_cache.load()
        self.loudness_cache.load()
        self.filter_state = load_filter_state(self.config_manager.get_data_path(FILTER_STATE_FILE))
        self.playback_settings = load_playback_settings(self.config_manager.get_data_path(SETTINGS_FILE))
        self.presets.load()
        self.history.load()

        self.library.apply_cached_metadata(self.duration_cache, self.loudness_cache)
        self.queue.set_no_repeat(self.playback_settings.no_repeat_mode)
        self.queue.invalidate()
        logger.info(f"Loaded library with {len(self.library)} items")

    def shutdown(self) -> None:
        """Stop any scan and save every document.

        Raises:
            PersistenceError: The first save failure, after all saves ran
        """
        session = self.scanner.current_session
        if session is not None:
            session.cancel()
            if session.wait(SHUTDOWN_SCAN_WAIT) is None:
                logger.warning("Scan did not stop in time, saving anyway")

        failures = []
        savers = [
            self.library.save_library,
            self.duration_cache.save,
            self.loudness_cache.save,
            self._save_filter_state,
            self._save_settings,
            self.presets.save,
            self.history.save,
        ]
        for save in savers:
            try:
                save()
            except PersistenceError as e:
                logger.error(f"Save failed during shutdown: {e}")
                failures.append(e)
        if failures:
            raise failures[0]
        logger.info("Shutdown complete")

    def _save_filter_state(self) -> None:
        save_filter_state(self.config_manager.get_data_path(FILTER_STATE_FILE), self.filter_state)

    def _save_settings(self) -> None:
        save_playback_settings(self.config_manager.get_data_path(SETTINGS_FILE), self.playback_settings)

    def _library_changed(self) -> None:
        # The queue is invalidated even when the save below fails
        self.queue.invalidate()
        self.library.save_library()

    # ------------------------------------------------------------------
    # Filters and presets
    # ------------------------------------------------------------------
    def _queue_pool(self) -> List[Item]:
        return self.filter_service.build_eligible_set(
            self.filter_state, self.library.snapshot(), check_file_exists=False
        )

    def eligible_items(self, check_file_exists: bool = True) -> List[Item]:
        return self.filter_service.build_eligible_set(
            self.filter_state, self.library.snapshot(), check_file_exists
        )

    def eligible_count(self) -> int:
        return self.filter_service.count_eligible(self.filter_state, self.library.snapshot())

    def set_filter_state(self, filter_state: FilterState) -> None:
        self.filter_state = filter_state
        self.queue.invalidate()
        logger.debug(f"Filter state changed: {filter_state}")
        self._save_filter_state()

    def update_filter(self, **changes) -> FilterState:
        """Apply field changes to the current filter state."""
        self.set_filter_state(self.filter_state.with_changes(**changes))
        return self.filter_state

    def save_preset(self, name: str) -> FilterPreset:
        preset = self.presets.upsert(name, self.filter_state)
        self.presets.save()
        return preset

    def apply_preset(self, name: str) -> FilterState:
        self.set_filter_state(self.presets.get(name).filter_state)
        logger.info(f"Applied preset {name}")
        return self.filter_state

    def delete_preset(self, name: str) -> None:
        self.presets.delete(name)
        self.presets.save()

    # ------------------------------------------------------------------
    # Library mutations
    # ------------------------------------------------------------------
    def import_folder(self, root_path: str, display_name: Optional[str] = None) -> int:
        count = self.library.import_folder(root_path, display_name)
        self._current_root = os.path.abspath(os.path.expanduser(root_path))
        self.library.apply_cached_metadata(self.duration_cache, self.loudness_cache)
        self._library_changed()
        return count

    def refresh_source(self, source_id: str) -> RefreshResult:
        result = self.library.refresh_source(source_id)
        self.library.apply_cached_metadata(self.duration_cache, self.loudness_cache)
        self._library_changed()
        return result

    def remove_source(self, source_id: str) -> int:
        doomed = self.library.get_items_by_source(source_id)
        removed = self.library.remove_source(source_id)
        for item in doomed:
            self.queue.remove(item.full_path)
        self._library_changed()
        return removed

    def set_source_enabled(self, source_id: str, enabled: bool) -> None:
        source = self.library.get_source(source_id)
        self.library.update_source(replace(source, is_enabled=enabled))
        self._library_changed()

    def toggle_favorite(self, path: str) -> Item:
        item = self.library.find_item_by_path(path)
        if item is None:
            raise NotFoundError(f"Item not found: {path}")
        updated = self.library.set_favorite(path, not item.is_favorite)
        self._library_changed()
        return updated

    def set_blacklisted(self, path: str, blacklisted: bool) -> Item:
        updated = self.library.set_blacklisted(path, blacklisted)
        if blacklisted:
            self.queue.remove(path)
        self._library_changed()
        return updated

    def set_item_tags(self, path: str, tags: Iterable[str]) -> Item:
        updated = self.library.set_item_tags(path, tags)
        self._library_changed()
        return updated

    def add_category(self, name: str) -> TagCategory:
        category = self.library.add_category(name)
        self._library_changed()
        return category

    def remove_category(self, category_id: str) -> int:
        moved = self.library.remove_category(category_id)
        self._library_changed()
        return moved

    def set_tag_category(self, tag: str, category_id: Optional[str]) -> None:
        self.library.set_tag_category(tag, category_id)
        self._library_changed()

    def remove_item(self, path: str) -> None:
        self.library.remove_item(path)
        self.queue.remove(path)
        self._library_changed()

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------
    def next_item(self) -> Optional[Item]:
        """Draw the next playable item and record that it was played.

        Items whose file has vanished are skipped.
        """
        attempts = max(1, len(self.library))
        for _ in range(attempts):
            item = self.queue.draw()
            if item is None:
                return None
            if not self._file_exists(item.full_path):
                logger.info(f"Skipping missing file {item.full_path}")
                continue
            try:
                played = self.library.record_playback(item.full_path)
            except NotFoundError:
                continue
            self.history.add(played.full_path, played.last_played_utc)
            return played
        logger.warning("No playable item found")
        return None

    def volume_for(self, item: Item) -> int:
        """Volume percent for an item under the current normalization mode."""
        config = self.config_manager.config
        info = self.loudness_cache.get(item.full_path)
        mean_db = info.mean_volume_db if info is not None else item.integrated_loudness
        return volume_for_mode(
            self.playback_settings.normalization_mode,
            self.playback_settings.volume,
            mean_db,
            config.target_loudness_db,
            config.max_gain_db,
        )

    def set_volume(self, percent: int) -> int:
        self.playback_settings.volume = percent
        self.playback_settings.clamp()
        self._save_settings()
        return self.playback_settings.volume

    def set_normalization_mode(self, mode: NormalizationMode) -> None:
        self.playback_settings.normalization_mode = mode
        self._save_settings()

    def set_no_repeat(self, enabled: bool) -> None:
        self.playback_settings.no_repeat_mode = enabled
        self.queue.set_no_repeat(enabled)
        self._save_settings()

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------
    def current_root(self) -> Optional[str]:
        """Folder scanned when no root is given: the last imported source,
        else the first enabled one."""
        sources = self.library.get_sources()
        if self._current_root and any(
            os.path.normcase(s.root_path) == os.path.normcase(self._current_root) and s.is_enabled
            for s in sources
        ):
            return self._current_root
        for source in sources:
            if source.is_enabled:
                return source.root_path
        return None

    def start_duration_scan(self, root: Optional[str] = None) -> Optional[ScanSession]:
        return self.scanner.start_duration_scan(root)

    def start_loudness_scan(self, root: Optional[str] = None) -> Optional[ScanSession]:
        return self.scanner.start_loudness_scan(root)

    def cancel_scan(self) -> bool:
        return self.scanner.cancel()

    def _on_scan_complete(self, result: ScanResult) -> None:
        changed = self.library.apply_cached_metadata(self.duration_cache, self.loudness_cache)
        if changed:
            try:
                self.library.save_library()
            except PersistenceError as e:
                logger.error(f"Could not save library after {result.kind} scan: {e}")
        self.queue.invalidate()
