"""Utility functions for leyline-sync."""

from datetime import datetime, timezone
from pathlib import Path
import logging
import os
import tempfile

logger = logging.getLogger(__name__)


def fsync_dir(path: Path) -> None:
    """Fsync a directory to ensure directory entry updates are durable.

    This is a best-effort operation that may not work on all platforms/filesystems.
    Windows and some filesystems don't support directory fsync.
    """
    try:
        # Use O_DIRECTORY flag if available (Linux)
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY

        fd = os.open(str(path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Expected on Windows or filesystems that don't support directory fsync
        logger.debug("Directory fsync not supported for %s", path)


def atomic_write_bytes(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Atomically write bytes to file with crash safety.

    1. Writes to temp file in the same directory, fsynced
    2. Atomic rename to target path (appears all-at-once)
    3. Fsync parent directory to ensure rename is durable

    Readers never observe a partially written file under ``path``.

    Args:
        path: Target file path
        data: Content to write
        mode: Permission bits applied before the rename
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="wb",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.tmp-",
        suffix=""
    ) as f:
        tmp = Path(f.name)
        try:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        except BaseException:
            f.close()
            tmp.unlink(missing_ok=True)
            raise

    try:
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        # Clean up temp file on any error
        tmp.unlink(missing_ok=True)
        raise

    fsync_dir(path.parent)


def atomic_write_text(path: Path, text: str) -> None:
    """Atomically write UTF-8 text to file (see ``atomic_write_bytes``)."""
    atomic_write_bytes(path, text.encode("utf-8"))


def humanize_size(size: float) -> str:
    """Convert bytes to human-readable format."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def format_timestamp(ts: float) -> str:
    """Render a Unix timestamp as a UTC date for display."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def humanize_age(seconds: float) -> str:
    """Convert an age in seconds to human-readable relative time.

    Examples:
        30 -> "just now"
        7200 -> "2 hours ago"
    """
    if seconds < 60:
        return "just now"
    elif seconds < 3600:  # Less than 1 hour
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:  # Less than 1 day
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"
