"""
Loudness normalization: turning a measured loudness into a playback volume.
"""
from enum import Enum
from typing import Optional

DEFAULT_TARGET_LOUDNESS_DB = -18.0
DEFAULT_MAX_GAIN_DB = 6.0

MIN_VOLUME_PERCENT = 0
MAX_VOLUME_PERCENT = 200


class NormalizationMode(Enum):
    OFF = "Off"
    SIMPLE = "Simple"
    LIBRARY_AWARE = "LibraryAware"


def _clamp(value, low, high):
    return max(low, min(high, value))


def compute_gain(
    target_db: float,
    measured_mean_db: Optional[float],
    max_gain_db: float,
    slider_linear: float,
) -> int:
    """Compute the final volume percent for one item.

    The correction towards the target is capped at +/- max_gain_db, applied
    to the slider as a linear factor and clamped to 0.0-2.0 before being
    scaled to a percent.

    Args:
        target_db: Loudness the library is normalized to
        measured_mean_db: Measured mean volume of the item, None if unknown
        max_gain_db: Largest boost or cut allowed
        slider_linear: User volume as a factor, 0.0-2.0

    Returns:
        Volume percent in [0, 200]
    """
    if measured_mean_db is None:
        final = round(slider_linear * 100)
        return int(_clamp(final, MIN_VOLUME_PERCENT, MAX_VOLUME_PERCENT))

    max_gain_db = abs(max_gain_db)
    diff = _clamp(target_db - measured_mean_db, -max_gain_db, max_gain_db)
    gain_linear = 10 ** (diff / 20)
    normalized = _clamp(slider_linear * gain_linear, 0.0, 2.0)
    final = round(normalized * 100)
    return int(_clamp(final, MIN_VOLUME_PERCENT, MAX_VOLUME_PERCENT))


def volume_for_mode(
    mode: NormalizationMode,
    slider_percent: int,
    measured_mean_db: Optional[float] = None,
    target_db: float = DEFAULT_TARGET_LOUDNESS_DB,
    max_gain_db: float = DEFAULT_MAX_GAIN_DB,
) -> int:
    """Volume percent to use for an item under a normalization mode.

    Off and Simple leave the slider value alone; LibraryAware applies the
    per-item gain.
    """
    slider_percent = int(_clamp(slider_percent, MIN_VOLUME_PERCENT, MAX_VOLUME_PERCENT))
    if mode != NormalizationMode.LIBRARY_AWARE:
        return slider_percent
    return compute_gain(target_db, measured_mean_db, max_gain_db, slider_percent / 100.0)
