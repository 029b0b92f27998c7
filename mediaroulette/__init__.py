"""
mediaroulette - Local media library with filtering, scanning and a no-repeat shuffle queue.
"""

__version__ = "1.0.0"
__author__ = "MediaRoulette Team"
__description__ = "Indexes folders of videos and photos, scans durations and loudness with ffmpeg, and serves a filtered no-repeat shuffle."

from .logging_config import (
    setup_logging,
    get_logger,
    MediaRouletteError,
    NotFoundError,
    DirectoryUnavailableError,
    ToolUnavailableError,
    PerFileFailure,
    DecodeTimeoutError,
    ParseFailureError,
    ProcessError,
    ScanCancelledError,
    PersistenceError,
    FilterError,
    ConfigurationError,
)
from .config import AppConfig, ConfigManager, get_config_manager, load_config
from .models import Item, LibraryIndex, MediaType, RefreshResult, Source, SourceStatistics, TagCategory
from .library import LibraryService
from .caches import DurationCache, LoudnessCache, LoudnessInfo
from .state import (
    AudioFilterMode,
    FilterPreset,
    FilterState,
    MediaTypeFilter,
    PlaybackSettings,
    PresetStore,
    TagMatchMode,
)
from .filters import FilterService
from .probe import ToolRunner, ToolResult
from .scanner import CancellationContext, ScanOrchestrator, ScanResult, ScanSession, ScanState
from .playqueue import PlayQueue
from .normalizer import NormalizationMode, compute_gain, volume_for_mode
from .history import HistoryEntry, PlaybackHistory
from .controller import MediaController

# Re-export key classes and functions
__all__ = [
    # Logging and errors
    'setup_logging',
    'get_logger',
    'MediaRouletteError',
    'NotFoundError',
    'DirectoryUnavailableError',
    'ToolUnavailableError',
    'PerFileFailure',
    'DecodeTimeoutError',
    'ParseFailureError',
    'ProcessError',
    'ScanCancelledError',
    'PersistenceError',
    'FilterError',
    'ConfigurationError',

    # Config
    'AppConfig',
    'ConfigManager',
    'get_config_manager',
    'load_config',

    # Library
    'Item',
    'LibraryIndex',
    'MediaType',
    'RefreshResult',
    'Source',
    'SourceStatistics',
    'TagCategory',
    'LibraryService',

    # Caches
    'DurationCache',
    'LoudnessCache',
    'LoudnessInfo',

    # Filtering
    'AudioFilterMode',
    'FilterPreset',
    'FilterState',
    'MediaTypeFilter',
    'PlaybackSettings',
    'PresetStore',
    'TagMatchMode',
    'FilterService',

    # Scanning
    'ToolRunner',
    'ToolResult',
    'CancellationContext',
    'ScanOrchestrator',
    'ScanResult',
    'ScanSession',
    'ScanState',

    # Playback
    'PlayQueue',
    'NormalizationMode',
    'compute_gain',
    'volume_for_mode',
    'HistoryEntry',
    'PlaybackHistory',
    'MediaController',
]
