"""
Configuration management for mediaroulette.
"""
import os
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List

from mediaroulette.logging_config import get_logger, PersistenceError
from mediaroulette.persistence import atomic_write_json, load_json

logger = get_logger('config')


def default_scan_workers() -> int:
    """Worker count for scans derived from available parallelism."""
    cpus = os.cpu_count() or 1
    return max(2, min(8, cpus // 2))


@dataclass
class AppConfig:
    """Application configuration settings."""

    # Storage
    data_directory: str = "~/.local/share/mediaroulette"

    # External tools
    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"

    # Scanning
    scan_workers: int = 0  # 0 = derive from CPU count
    checkpoint_batch_size: int = 50
    duration_timeout: float = 10.0
    loudness_timeout: float = 300.0

    # Volume normalization
    target_loudness_db: float = -18.0
    max_gain_db: float = 6.0

    # Library backups
    backup_enabled: bool = True
    backup_minimum_gap_minutes: int = 60
    backup_count: int = 5

    # History
    history_size: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None


class ConfigManager:
    """Manages configuration loading, saving, and validation."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self._get_default_config_path()
        self.config: AppConfig = AppConfig()
        self._load_config()

    def _get_default_config_path(self) -> Path:
        """Get default configuration file path."""
        xdg_config = os.environ.get("XDG_CONFIG_HOME")
        if xdg_config:
            return Path(xdg_config) / "mediaroulette" / "config.json"
        return Path.home() / ".config" / "mediaroulette" / "config.json"

    def _load_config(self) -> None:
        """Load configuration from file."""
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            self._create_default_config()
            return

        data = load_json(self.config_path)
        if isinstance(data, dict):
            self._apply_config_data(data)
            logger.info(f"Loaded configuration from {self.config_path}")
        else:
            logger.info("Using default configuration")

    def _create_default_config(self) -> None:
        """Create a default configuration file."""
        try:
            atomic_write_json(self.config_path, asdict(self.config))
            logger.info(f"Created default config at {self.config_path}")
        except PersistenceError as e:
            logger.warning(f"Failed to create default config: {e}")

    def _apply_config_data(self, data: Dict[str, Any]) -> None:
        """Apply configuration data to AppConfig object."""
        defaults = AppConfig()
        for key, value in data.items():
            if not hasattr(self.config, key):
                logger.debug(f"Ignoring unknown config key: {key}")
                continue
            expected = type(getattr(defaults, key))
            if value is not None and expected in (int, float) and isinstance(value, bool):
                logger.warning(f"Invalid config value for {key}: {value}")
                continue
            if value is not None and expected is float and isinstance(value, int):
                value = float(value)
            if value is not None and getattr(defaults, key) is not None and not isinstance(value, expected):
                logger.warning(f"Invalid config value for {key}: {value} (expected {expected.__name__})")
                continue
            setattr(self.config, key, value)

    def save_config(self) -> bool:
        """Save current configuration to file."""
        try:
            atomic_write_json(self.config_path, asdict(self.config))
            logger.info(f"Configuration saved to {self.config_path}")
            return True
        except PersistenceError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return getattr(self.config, key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        if hasattr(self.config, key):
            setattr(self.config, key, value)
            logger.debug(f"Config updated: {key} = {value}")

    def validate_config(self) -> List[str]:
        """Validate current configuration.

        Returns:
            List of human readable issues, empty when valid
        """
        issues = []

        if not (0 <= self.config.scan_workers <= 64):
            issues.append(f"Scan workers must be 0-64, got {self.config.scan_workers}")

        if self.config.checkpoint_batch_size < 1:
            issues.append(f"Checkpoint batch size must be positive, got {self.config.checkpoint_batch_size}")

        if self.config.duration_timeout <= 0 or self.config.loudness_timeout <= 0:
            issues.append("Tool timeouts must be positive")

        if self.config.max_gain_db < 0:
            issues.append(f"Max gain must not be negative, got {self.config.max_gain_db}")

        if self.config.backup_count < 1:
            issues.append(f"Backup count must be at least 1, got {self.config.backup_count}")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.config.log_level not in valid_levels:
            issues.append(f"Invalid log level: {self.config.log_level}")

        if issues:
            logger.warning(f"Configuration validation issues: {issues}")

        return issues

    def reset_to_defaults(self) -> None:
        """Reset configuration to defaults."""
        self.config = AppConfig()
        logger.info("Configuration reset to defaults")

    def get_data_directory_path(self) -> Path:
        """Get the actual path to the data directory."""
        return Path(self.config.data_directory).expanduser()

    def get_data_path(self, name: str) -> Path:
        """Get the path of a document inside the data directory."""
        return self.get_data_directory_path() / name

    def get_scan_workers(self) -> int:
        """Get the effective worker count for scans."""
        if self.config.scan_workers > 0:
            return self.config.scan_workers
        return default_scan_workers()


# Global configuration manager
_config_manager = None


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def load_config(config_path: Optional[Path] = None) -> ConfigManager:
    """Load configuration and return manager."""
    return ConfigManager(config_path)
