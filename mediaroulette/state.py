"""
Persisted user state: filter state, filter presets and playback settings.
"""
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from mediaroulette.logging_config import get_logger, NotFoundError
from mediaroulette.models import parse_flag
from mediaroulette.normalizer import NormalizationMode
from mediaroulette.persistence import atomic_write_json, load_json

logger = get_logger('state')


class AudioFilterMode(Enum):
    PLAY_ALL = "PlayAll"
    WITH_AUDIO_ONLY = "WithAudioOnly"
    WITHOUT_AUDIO_ONLY = "WithoutAudioOnly"


class TagMatchMode(Enum):
    AND = "And"
    OR = "Or"


class MediaTypeFilter(Enum):
    ALL = "All"
    VIDEOS_ONLY = "VideosOnly"
    PHOTOS_ONLY = "PhotosOnly"


def _enum_value(enum_cls, raw, default):
    try:
        return enum_cls(raw)
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value {raw!r}, using {default.value}")
        return default


def _optional_seconds(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def _category_modes(raw: Any) -> Dict[str, TagMatchMode]:
    if not isinstance(raw, dict):
        return {}
    modes = {}
    for category_id, value in raw.items():
        try:
            modes[str(category_id)] = TagMatchMode(value)
        except ValueError:
            logger.warning(f"Unknown match mode {value!r} for category {category_id}, using And")
    return modes


@dataclass(frozen=True)
class FilterState:
    """Declarative filter over the library. Never mutated in place.

    Durations are in seconds. Once the library has tag categories,
    selected tags are matched per category using category_local_match_modes
    (AND when a category has no entry) and the per-category results are
    combined with global_match_mode. Without categories, tag_match_mode
    applies to all selected tags.
    """

    favorites_only: bool = False
    exclude_blacklisted: bool = True
    only_never_played: bool = False
    audio_filter: AudioFilterMode = AudioFilterMode.PLAY_ALL
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    selected_tags: FrozenSet[str] = frozenset()
    tag_match_mode: TagMatchMode = TagMatchMode.AND
    excluded_tags: FrozenSet[str] = frozenset()
    only_known_duration: bool = False
    only_known_loudness: bool = False
    media_type_filter: MediaTypeFilter = MediaTypeFilter.ALL
    category_local_match_modes: Mapping[str, TagMatchMode] = field(default_factory=dict, hash=False)
    global_match_mode: TagMatchMode = TagMatchMode.AND

    def __post_init__(self):
        # Accept any iterable of tags but always hold a frozenset
        object.__setattr__(self, "selected_tags", frozenset(self.selected_tags))
        object.__setattr__(self, "excluded_tags", frozenset(self.excluded_tags))
        object.__setattr__(
            self, "category_local_match_modes", MappingProxyType(dict(self.category_local_match_modes))
        )

    def with_changes(self, **changes) -> "FilterState":
        """Return a copy with some fields replaced.

        Raises:
            TypeError: For unknown field names
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown filter fields: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "favoritesOnly": self.favorites_only,
            "excludeBlacklisted": self.exclude_blacklisted,
            "onlyNeverPlayed": self.only_never_played,
            "audioFilter": self.audio_filter.value,
            "minDuration": self.min_duration,
            "maxDuration": self.max_duration,
            "selectedTags": sorted(self.selected_tags),
            "tagMatchMode": self.tag_match_mode.value,
            "excludedTags": sorted(self.excluded_tags),
            "onlyKnownDuration": self.only_known_duration,
            "onlyKnownLoudness": self.only_known_loudness,
            "mediaTypeFilter": self.media_type_filter.value,
            "categoryLocalMatchModes": {
                category_id: mode.value for category_id, mode in self.category_local_match_modes.items()
            },
            "globalMatchMode": self.global_match_mode == TagMatchMode.AND,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterState":
        defaults = cls()
        return cls(
            favorites_only=parse_flag(data.get("favoritesOnly"), defaults.favorites_only),
            exclude_blacklisted=parse_flag(data.get("excludeBlacklisted"), defaults.exclude_blacklisted),
            only_never_played=parse_flag(data.get("onlyNeverPlayed"), defaults.only_never_played),
            audio_filter=_enum_value(
                AudioFilterMode, data.get("audioFilter", defaults.audio_filter.value), defaults.audio_filter
            ),
            min_duration=_optional_seconds(data.get("minDuration")),
            max_duration=_optional_seconds(data.get("maxDuration")),
            selected_tags=frozenset(str(t) for t in data.get("selectedTags") or []),
            tag_match_mode=_enum_value(
                TagMatchMode, data.get("tagMatchMode", defaults.tag_match_mode.value), defaults.tag_match_mode
            ),
            excluded_tags=frozenset(str(t) for t in data.get("excludedTags") or []),
            only_known_duration=parse_flag(data.get("onlyKnownDuration"), defaults.only_known_duration),
            only_known_loudness=parse_flag(data.get("onlyKnownLoudness"), defaults.only_known_loudness),
            media_type_filter=_enum_value(
                MediaTypeFilter,
                data.get("mediaTypeFilter", defaults.media_type_filter.value),
                defaults.media_type_filter,
            ),
            category_local_match_modes=_category_modes(data.get("categoryLocalMatchModes")),
            global_match_mode=(
                TagMatchMode.AND
                if parse_flag(data.get("globalMatchMode"), True)
                else TagMatchMode.OR
            ),
        )


def load_filter_state(path: Union[str, Path]) -> FilterState:
    """Load the filter state, falling back to defaults."""
    data = load_json(path)
    if not isinstance(data, dict):
        return FilterState()
    try:
        return FilterState.from_dict(data)
    except (TypeError, ValueError) as e:
        logger.warning(f"Filter state is corrupt, using defaults: {e}")
        return FilterState()


def save_filter_state(path: Union[str, Path], filter_state: FilterState) -> None:
    atomic_write_json(path, filter_state.to_dict())


@dataclass(frozen=True)
class FilterPreset:
    """A named, saved filter state."""
    name: str
    filter_state: FilterState = field(default_factory=FilterState)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "filterState": self.filter_state.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilterPreset":
        return cls(
            name=str(data["name"]),
            filter_state=FilterState.from_dict(data.get("filterState") or {}),
        )


class PresetStore:
    """Ordered list of filter presets with case-insensitive unique names."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._presets: List[FilterPreset] = []

    def _index_of(self, name: str) -> Optional[int]:
        wanted = name.strip().casefold()
        for idx, preset in enumerate(self._presets):
            if preset.name.casefold() == wanted:
                return idx
        return None

    def load(self) -> int:
        presets = []
        data = load_json(self.path) if self.path else None
        if isinstance(data, list):
            for raw in data:
                try:
                    preset = FilterPreset.from_dict(raw)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.debug(f"Skipping bad preset: {e}")
                    continue
                if any(p.name.casefold() == preset.name.casefold() for p in presets):
                    continue
                presets.append(preset)
        self._presets = presets
        logger.info(f"Loaded {len(presets)} filter presets")
        return len(presets)

    def save(self) -> None:
        if self.path is not None:
            atomic_write_json(self.path, [p.to_dict() for p in self._presets])

    def names(self) -> List[str]:
        return [p.name for p in self._presets]

    def get(self, name: str) -> FilterPreset:
        idx = self._index_of(name)
        if idx is None:
            raise NotFoundError(f"Preset not found: {name}")
        return self._presets[idx]

    def upsert(self, name: str, filter_state: FilterState) -> FilterPreset:
        """Save a preset, replacing one with the same name."""
        name = name.strip()
        if not name:
            raise ValueError("Preset name cannot be empty")
        preset = FilterPreset(name=name, filter_state=filter_state)
        idx = self._index_of(name)
        if idx is None:
            self._presets.append(preset)
        else:
            self._presets[idx] = preset
        logger.debug(f"Saved preset {name}")
        return preset

    def rename(self, old_name: str, new_name: str) -> None:
        new_name = new_name.strip()
        idx = self._index_of(old_name)
        if idx is None:
            raise NotFoundError(f"Preset not found: {old_name}")
        clash = self._index_of(new_name)
        if not new_name or (clash is not None and clash != idx):
            raise ValueError(f"Invalid or duplicate preset name: {new_name!r}")
        self._presets[idx] = replace(self._presets[idx], name=new_name)

    def delete(self, name: str) -> None:
        idx = self._index_of(name)
        if idx is None:
            raise NotFoundError(f"Preset not found: {name}")
        del self._presets[idx]

    def __len__(self) -> int:
        return len(self._presets)


@dataclass
class PlaybackSettings:
    """Playback preferences. Out of range values are clamped on load."""

    volume: int = 100
    normalization_mode: NormalizationMode = NormalizationMode.OFF
    no_repeat_mode: bool = True
    seek_step_seconds: int = 5
    volume_step: int = 5

    def clamp(self) -> List[str]:
        """Clamp fields into range.

        Returns:
            Names of the fields that were adjusted
        """
        adjusted = []
        limits = {
            "volume": (0, 200),
            "seek_step_seconds": (1, 60),
            "volume_step": (1, 20),
        }
        for name, (low, high) in limits.items():
            value = getattr(self, name)
            clamped = max(low, min(high, value))
            if clamped != value:
                setattr(self, name, clamped)
                adjusted.append(name)
        if adjusted:
            logger.warning(f"Playback settings out of range, clamped: {adjusted}")
        return adjusted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "volume": self.volume,
            "normalizationMode": self.normalization_mode.value,
            "noRepeatMode": self.no_repeat_mode,
            "seekStepSeconds": self.seek_step_seconds,
            "volumeStep": self.volume_step,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlaybackSettings":
        defaults = cls()

        def _int(key: str, default: int) -> int:
            raw = data.get(key, default)
            if isinstance(raw, bool):
                return default
            try:
                return int(raw)
            except (TypeError, ValueError):
                return default

        settings = cls(
            volume=_int("volume", defaults.volume),
            normalization_mode=_enum_value(
                NormalizationMode,
                data.get("normalizationMode", defaults.normalization_mode.value),
                defaults.normalization_mode,
            ),
            no_repeat_mode=parse_flag(data.get("noRepeatMode"), defaults.no_repeat_mode),
            seek_step_seconds=_int("seekStepSeconds", defaults.seek_step_seconds),
            volume_step=_int("volumeStep", defaults.volume_step),
        )
        settings.clamp()
        return settings


def load_playback_settings(path: Union[str, Path]) -> PlaybackSettings:
    data = load_json(path)
    if not isinstance(data, dict):
        return PlaybackSettings()
    return PlaybackSettings.from_dict(data)


def save_playback_settings(path: Union[str, Path], settings: PlaybackSettings) -> None:
    atomic_write_json(path, settings.to_dict())
