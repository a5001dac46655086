"""Persistence of the per-target SyncState baseline."""

import json
import logging
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .constants import STATE_DIR, STATE_FILE, STATE_SCHEMA_VERSION
from .core import SyncState
from .errors import StateWriteFailedError, SyncStateError
from .utils import atomic_write_text

logger = logging.getLogger(__name__)


def state_path(target_dir: Path) -> Path:
    """Location of the state file for a target directory."""
    return Path(target_dir) / STATE_DIR / STATE_FILE


def load_state(target_dir: Path) -> Optional[SyncState]:
    """
    Load the baseline for ``target_dir``.

    A missing or unreadable state file yields None, so every file is treated as
    having no baseline.

    Raises:
        SyncStateError: If the file was written by a newer schema version
    """
    path = state_path(target_dir)
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable sync state %s: %s", path, e)
        return None

    if not isinstance(data, dict) or not isinstance(data.get("schema_version", 0), int):
        logger.warning("Ignoring invalid sync state %s: not a versioned state object", path)
        return None

    if data.get("schema_version", 0) > STATE_SCHEMA_VERSION:
        raise SyncStateError(
            f"Sync state {path} has schema version {data['schema_version']}; "
            f"this tool supports up to {STATE_SCHEMA_VERSION}"
        )

    try:
        return SyncState(**data)
    except (TypeError, ValidationError) as e:
        logger.warning("Ignoring invalid sync state %s: %s", path, e)
        return None


def save_state(target_dir: Path, state: SyncState) -> Path:
    """
    Save sync state atomically.

    Raises:
        StateWriteFailedError: If the file cannot be written
    """
    path = state_path(target_dir)
    state_text = json.dumps(state.model_dump(), indent=2, sort_keys=True)
    try:
        atomic_write_text(path, state_text)
    except OSError as e:
        raise StateWriteFailedError(path, e) from e
    return path


def clear_state(target_dir: Path) -> bool:
    """Remove the state file. Returns True if one was removed."""
    path = state_path(target_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("Could not remove sync state %s: %s", path, e)
        return False
    return True


def state_age_seconds(state: SyncState, now: Optional[float] = None) -> float:
    return max(0.0, (now if now is not None else time.time()) - state.timestamp)
