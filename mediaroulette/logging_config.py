"""
Logging configuration for mediaroulette.
"""
import logging
import sys
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'        # Reset
    }

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        reset = self.COLORS['RESET']
        levelname = record.levelname
        record.levelname = f"{color}{levelname}{reset}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Setup logging configuration for mediaroulette.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
    """
    logger = logging.getLogger('mediaroulette')
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))
    console_formatter = ColoredFormatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(funcName)s:%(lineno)d - %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module.

    Args:
        name: Module name

    Returns:
        Logger instance
    """
    return logging.getLogger(f'mediaroulette.{name}')


class MediaRouletteError(Exception):
    """Base exception for mediaroulette."""
    pass


class NotFoundError(MediaRouletteError):
    """A source, item or root folder does not exist."""
    pass


class DirectoryUnavailableError(NotFoundError):
    """A root directory is missing or cannot be listed."""
    pass


class ToolUnavailableError(MediaRouletteError):
    """The external decoding tool could not be found or executed."""
    pass


class PerFileFailure(MediaRouletteError):
    """A single file could not be probed. Never fatal to a scan."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{message}: {path}")
        self.path = path


class DecodeTimeoutError(PerFileFailure):
    """The tool did not finish within the per-file timeout."""
    pass


class ParseFailureError(PerFileFailure):
    """The tool output did not contain the expected values."""
    pass


class ProcessError(PerFileFailure):
    """The tool exited with an error or could not be started."""
    pass


class ScanCancelledError(MediaRouletteError):
    """Raised inside a scan when its cancellation context fires."""
    pass


class PersistenceError(MediaRouletteError):
    """Writing a document to disk failed."""
    pass


class FilterError(MediaRouletteError):
    """Filter evaluation received invalid input."""
    pass


class ConfigurationError(MediaRouletteError):
    """Configuration related errors."""
    pass
