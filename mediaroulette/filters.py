"""
Eligibility filtering: which library items pass the current filter state.
"""
import os
from typing import Callable, Dict, List, Optional, Set, Tuple

from mediaroulette.caches import DurationCache, LoudnessCache, LoudnessInfo
from mediaroulette.logging_config import get_logger, FilterError
from mediaroulette.models import Item, LibraryIndex, MediaType, tag_key
from mediaroulette.state import AudioFilterMode, FilterState, MediaTypeFilter, TagMatchMode

logger = get_logger('filters')


class FilterService:
    """Evaluates a FilterState against a library index.

    When built with caches, an item whose own duration, loudness or audio
    presence is still unknown counts as known once a scan has cached a
    value for its path.
    Evaluation never mutates items, caches or the index.
    """

    def __init__(
        self,
        duration_cache: Optional[DurationCache] = None,
        loudness_cache: Optional[LoudnessCache] = None,
        file_exists: Callable[[str], bool] = os.path.isfile,
    ):
        self.duration_cache = duration_cache
        self.loudness_cache = loudness_cache
        self._file_exists = file_exists

    def duration_of(self, item: Item) -> Optional[float]:
        if item.duration is not None:
            return item.duration
        if self.duration_cache is not None:
            cached = self.duration_cache.get(item.full_path)
            if cached is not None:
                return float(cached)
        return None

    def _cached_loudness(self, item: Item) -> Optional[LoudnessInfo]:
        if self.loudness_cache is None:
            return None
        return self.loudness_cache.get(item.full_path)

    def has_known_loudness(self, item: Item) -> bool:
        if item.integrated_loudness is not None:
            return True
        info = self._cached_loudness(item)
        return info is not None and info.has_audio

    def has_audio_of(self, item: Item) -> Optional[bool]:
        if item.has_audio is not None:
            return item.has_audio
        info = self._cached_loudness(item)
        return info.has_audio if info is not None else None

    def build_eligible_set(
        self,
        filter_state: FilterState,
        library_index: LibraryIndex,
        check_file_exists: bool = True,
    ) -> List[Item]:
        """Compute the items passing every active predicate, in index order.

        Args:
            filter_state: Filter to apply
            library_index: Index to filter
            check_file_exists: Drop items whose file is gone. Queue priming
                skips this and validates at play time instead.

        Raises:
            FilterError: If either input is None
        """
        if filter_state is None:
            raise FilterError("filter_state is required")
        if library_index is None:
            raise FilterError("library_index is required")

        enabled_sources = library_index.enabled_source_ids()
        tag_groups = self._tag_groups(filter_state, library_index)
        excluded = {tag_key(t) for t in filter_state.excluded_tags}

        eligible = []
        for item in library_index.items:
            if item.source_id not in enabled_sources:
                continue
            if check_file_exists and not self._file_exists(item.full_path):
                continue
            if self._passes(item, filter_state, tag_groups, excluded):
                eligible.append(item)

        logger.debug(f"Eligible set: {len(eligible)} of {len(library_index.items)} items")
        return eligible

    @staticmethod
    def _tag_groups(fs: FilterState, library_index: LibraryIndex) -> List[Tuple[Set[str], TagMatchMode]]:
        """Selected tag keys grouped for matching, each with its match mode.

        A library without categories yields a single group using
        tag_match_mode. Otherwise tags group by category, uncategorized
        and unknown tags sharing one group.
        """
        if not fs.selected_tags:
            return []
        if not library_index.categories:
            return [({tag_key(t) for t in fs.selected_tags}, fs.tag_match_mode)]

        grouped: Dict[str, Set[str]] = {}
        for tag in fs.selected_tags:
            grouped.setdefault(library_index.category_of(tag), set()).add(tag_key(tag))
        return [
            (keys, fs.category_local_match_modes.get(category_id, TagMatchMode.AND))
            for category_id, keys in grouped.items()
        ]

    @staticmethod
    def _group_matches(keys: Set[str], mode: TagMatchMode, item_tags: Set[str]) -> bool:
        if mode == TagMatchMode.AND:
            return keys <= item_tags
        return bool(keys & item_tags)

    def _passes(self, item: Item, fs: FilterState, tag_groups: list, excluded: set) -> bool:
        if fs.exclude_blacklisted and item.is_blacklisted:
            return False
        if fs.favorites_only and not item.is_favorite:
            return False
        if fs.only_never_played and item.play_count != 0:
            return False

        if fs.audio_filter != AudioFilterMode.PLAY_ALL:
            has_audio = self.has_audio_of(item)
            if fs.audio_filter == AudioFilterMode.WITH_AUDIO_ONLY and has_audio is not True:
                return False
            if fs.audio_filter == AudioFilterMode.WITHOUT_AUDIO_ONLY and has_audio is not False:
                return False

        duration = None
        if fs.min_duration is not None or fs.max_duration is not None or fs.only_known_duration:
            duration = self.duration_of(item)
            if duration is None:
                return False
            if fs.min_duration is not None and duration < fs.min_duration:
                return False
            if fs.max_duration is not None and duration > fs.max_duration:
                return False

        if fs.only_known_loudness and not self.has_known_loudness(item):
            return False

        if tag_groups or excluded:
            item_tags = {tag_key(t) for t in item.tags}
            if tag_groups:
                matches = [self._group_matches(keys, mode, item_tags) for keys, mode in tag_groups]
                combine = all if fs.global_match_mode == TagMatchMode.AND else any
                if not combine(matches):
                    return False
            if excluded & item_tags:
                return False

        if fs.media_type_filter == MediaTypeFilter.VIDEOS_ONLY and item.media_type != MediaType.VIDEO:
            return False
        if fs.media_type_filter == MediaTypeFilter.PHOTOS_ONLY and item.media_type != MediaType.PHOTO:
            return False

        return True

    def count_eligible(
        self,
        filter_state: FilterState,
        library_index: LibraryIndex,
        check_file_exists: bool = False,
    ) -> int:
        return len(self.build_eligible_set(filter_state, library_index, check_file_exists))
