"""
JSON document persistence with atomic replace-on-save.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from mediaroulette.logging_config import get_logger, PersistenceError

logger = get_logger('persistence')


def atomic_write_json(path: Union[str, Path], data: Any) -> None:
    """Write a JSON document so readers never see a truncated file.

    The document is written to a temporary file in the target directory,
    flushed to disk and then renamed over the previous document.

    Args:
        path: Destination file
        data: JSON-serializable document

    Raises:
        PersistenceError: If the document could not be written
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
        logger.debug(f"Saved {path}")
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save {path}: {e}")
        raise PersistenceError(f"Failed to save {path}: {e}") from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass


def load_json(path: Union[str, Path]) -> Optional[Any]:
    """Load a JSON document.

    Missing and unreadable documents are not errors: the caller starts
    from its defaults instead.

    Args:
        path: Document to read

    Returns:
        Parsed document, or None if missing or corrupt
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"No document at {path}")
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logger.warning(f"Failed to load {path}, starting empty: {e}")
        return None
