"""Custom exceptions for leyline-sync.

This module defines typed exceptions for the sync engine. Only
``TargetWriteError`` is fatal to a sync run; the rest are recorded against the
file or category they belong to and the run continues.
"""

from typing import List, Optional


class LeylineSyncError(RuntimeError):
    """Base class for all leyline-sync errors."""
    pass


# Cache Errors
class CacheError(LeylineSyncError):
    """Base class for local cache errors."""
    pass


class CacheUnavailableError(CacheError):
    """Cache directory cannot be used (disk full, permissions, missing mount)."""

    def __init__(self, root, cause: Optional[BaseException] = None):
        self.root = root
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Cache at {root} is unavailable{detail}")


class CacheCorruptionError(CacheError):
    """Stored object bytes do not hash to the digest they are filed under."""

    def __init__(self, digest: str, actual: str):
        self.digest = digest
        self.actual = actual
        super().__init__(
            f"Cache object {digest[:19]}... is corrupt (content hashes to {actual[:19]}...)"
        )


# Fetch Errors
class FetchError(LeylineSyncError):
    """Base class for remote retrieval errors."""
    pass


class FetchFailedError(FetchError):
    """Remote content for one file (or one category manifest) could not be retrieved."""

    def __init__(self, path: str, reason: str, category: Optional[str] = None):
        self.path = path
        self.reason = reason
        self.category = category
        super().__init__(f"Failed to fetch {path}: {reason}")


class DigestMismatchError(FetchError):
    """Fetched bytes don't match the digest promised by the manifest."""

    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest verification failed for {path}\n"
            f"  Expected: {expected}\n"
            f"  Got:      {actual}\n"
            f"The remote content may have changed during the fetch."
        )


class GitNotAvailableError(FetchError):
    """The git binary could not be found."""

    def __init__(self):
        super().__init__("Git binary not found. Please install git and ensure it is in your PATH.")


class GitCommandError(FetchError):
    """A git command exited unsuccessfully."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 exit_status: Optional[int] = None):
        self.command = command
        self.exit_status = exit_status
        super().__init__(message)


# State Errors
class StateError(LeylineSyncError):
    """Base class for sync state persistence errors."""
    pass


class SyncStateError(StateError):
    """Sync state file is malformed or from an incompatible version."""
    pass


class StateWriteFailedError(StateError):
    """Sync state could not be persisted after a successful sync."""

    def __init__(self, path, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        super().__init__(f"Could not write sync state to {path}: {cause}")


# Target Errors
class TargetWriteError(LeylineSyncError):
    """The target directory cannot be written. Aborts the sync run."""

    def __init__(self, path, cause: OSError):
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot write to target {path}: {cause}")


# Conflict Errors
class ConflictDetectedError(LeylineSyncError):
    """Local and remote both changed and the caller did not force an overwrite."""

    def __init__(self, conflicts: List[str]):
        self.conflicts = list(conflicts)
        file_list = ", ".join(self.conflicts[:3])
        if len(self.conflicts) > 3:
            file_list += f" and {len(self.conflicts) - 3} more"
        super().__init__(
            f"{len(self.conflicts)} conflicting file(s): {file_list}. "
            f"Use --force to accept the remote version."
        )


# Configuration Errors
class ConfigError(LeylineSyncError):
    """Invalid project or environment configuration."""
    pass
