"""Core data models for leyline-sync.

Baseline-Aware Classification:
------------------------------
A file on disk can differ from the remote for two very different reasons: the
user edited it, or the remote moved on. The SyncState recorded at the end of
the last successful sync is the baseline that tells these apart:

1. local == remote                      -> unchanged
2. local == baseline, remote moved      -> remote updated (safe to overwrite)
3. remote == baseline, local moved      -> locally modified (keep)
4. both moved away from the baseline    -> conflict (keep, report)

Only ``missing`` and ``remote_updated`` files are written by default.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from threading import Event
from typing import Any, Dict, List, Optional
import time

from pydantic import BaseModel, Field, field_validator

from .constants import DEFAULT_FETCH_TIMEOUT, DEFAULT_FETCH_WORKERS, STATE_SCHEMA_VERSION, TOOL_VERSION
from .hashing import validate_digest


def _validate_relative_path(value: str) -> str:
    """Reject absolute paths and parent traversal in manifest paths."""
    if not value or value.startswith("/") or "\\" in value:
        raise ValueError(f"Invalid relative path: {value!r}")
    if ".." in PurePosixPath(value).parts:
        raise ValueError(f"Parent directory traversal not allowed: {value!r}")
    return value


# ============= Cache =============

class CacheEntry(BaseModel):
    """Metadata for one stored object (sidecar of the object file)."""

    digest: str
    size_bytes: int
    stored_at: float = Field(default_factory=time.time)
    last_accessed_at: float = Field(default_factory=time.time)


# ============= File Descriptors =============

class RemoteFileDescriptor(BaseModel):
    """One file of the remote manifest, as the fetcher reports it."""

    relative_path: str
    expected_digest: str
    category: str
    size: Optional[int] = None

    @field_validator("relative_path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        return _validate_relative_path(v)

    @field_validator("expected_digest")
    @classmethod
    def _check_digest(cls, v: str) -> str:
        validate_digest(v)
        return v


class LocalFileRecord(BaseModel):
    """Observed state of a file currently on disk."""

    relative_path: str
    observed_digest: str
    mtime: float
    size: int = 0


# ============= Classification =============

class FileStatus(str, Enum):
    """Comparison of a local file against remote and baseline."""

    UNCHANGED = "unchanged"
    LOCALLY_MODIFIED = "locally_modified"
    REMOTE_UPDATED = "remote_updated"
    CONFLICT = "conflict"
    MISSING = "missing"


class SyncOutcome(str, Enum):
    """What the syncer did with one file."""

    CACHE_HIT = "cache_hit"
    CACHE_MISS_FETCHED = "cache_miss_fetched"
    ALREADY_CURRENT = "already_current"
    LOCALLY_MODIFIED_SKIPPED = "locally_modified_skipped"
    CONFLICT_SKIPPED = "conflict_skipped"
    FETCH_FAILED = "fetch_failed"


WRITTEN_OUTCOMES = (SyncOutcome.CACHE_HIT, SyncOutcome.CACHE_MISS_FETCHED)
SKIPPED_OUTCOMES = (
    SyncOutcome.ALREADY_CURRENT,
    SyncOutcome.LOCALLY_MODIFIED_SKIPPED,
    SyncOutcome.CONFLICT_SKIPPED,
)


class ErrorKind(str, Enum):
    """Error taxonomy used in reports."""

    CACHE_UNAVAILABLE = "cache_unavailable"
    CACHE_CORRUPTION = "cache_corruption"
    FETCH_FAILED = "fetch_failed"
    CONFLICT = "conflict"
    STATE_WRITE_FAILED = "state_write_failed"


class ErrorRecord(BaseModel):
    """A non-fatal error attributed to a file and/or category."""

    kind: ErrorKind
    message: str
    path: Optional[str] = None
    category: Optional[str] = None


# ============= Options =============

@dataclass
class SyncOptions:
    """Per-invocation knobs for ``FileSyncer.sync``."""

    reference: Optional[str] = None
    force: bool = False
    max_workers: int = DEFAULT_FETCH_WORKERS
    fetch_timeout: Optional[float] = DEFAULT_FETCH_TIMEOUT
    cancel_event: Optional[Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


# ============= Results =============

class FileResult(BaseModel):
    """Outcome of syncing a single file."""

    path: str
    category: str
    outcome: SyncOutcome
    status: Optional[FileStatus] = None
    digest: Optional[str] = None
    error: Optional[str] = None


class SyncReport(BaseModel):
    """Result of a completed (or aborted) sync run."""

    reference: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    target_dir: str = ""
    results: List[FileResult] = Field(default_factory=list)
    errors: List[ErrorRecord] = Field(default_factory=list)
    elapsed_seconds: float = 0.0
    state_persisted: bool = False
    cancelled: bool = False
    cache_enabled: bool = True

    @property
    def counts(self) -> Dict[str, int]:
        """Get counts by outcome."""
        counts: Dict[str, int] = {}
        for result in self.results:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts

    def _count(self, *outcomes: SyncOutcome) -> int:
        return sum(1 for r in self.results if r.outcome in outcomes)

    @property
    def cache_hits(self) -> int:
        return self._count(SyncOutcome.CACHE_HIT)

    @property
    def cache_misses(self) -> int:
        return self._count(SyncOutcome.CACHE_MISS_FETCHED)

    @property
    def written(self) -> int:
        return self._count(*WRITTEN_OUTCOMES)

    @property
    def skipped(self) -> int:
        return self._count(*SKIPPED_OUTCOMES)

    @property
    def failed(self) -> int:
        return self._count(SyncOutcome.FETCH_FAILED)

    @property
    def conflicts(self) -> List[str]:
        return [r.path for r in self.results if r.outcome == SyncOutcome.CONFLICT_SKIPPED]

    @property
    def hit_ratio(self) -> float:
        """cache_hit / (cache_hit + cache_miss_fetched); 0.0 when nothing was looked up."""
        lookups = self.cache_hits + self.cache_misses
        if lookups == 0:
            return 0.0
        return self.cache_hits / lookups

    @property
    def success(self) -> bool:
        return not self.cancelled and self.failed == 0 and not self.conflicts and not any(
            e.kind == ErrorKind.FETCH_FAILED for e in self.errors
        )

    def summary(self) -> str:
        """Get human-readable summary."""
        parts = [f"✓ {self.written} written", f"{self.skipped} skipped"]
        if self.failed:
            parts.append(f"✗ {self.failed} failed")
        if self.conflicts:
            parts.append(f"⚠ {len(self.conflicts)} conflicts")
        if self.cache_hits + self.cache_misses:
            parts.append(f"hit ratio {self.hit_ratio * 100:.1f}%")
        if self.cancelled:
            parts.append("cancelled")
        return ", ".join(parts)


# ============= State Management =============

class SyncState(BaseModel):
    """
    Sync state (stored in <target>/.leyline-sync/state.json).

    The last-known-good baseline: what every file looked like right after the
    last fully successful sync.
    """

    schema_version: int = STATE_SCHEMA_VERSION
    reference: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    files: Dict[str, str] = Field(default_factory=dict)  # path -> digest
    timestamp: float = Field(default_factory=time.time)
    tool_version: str = TOOL_VERSION
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("files")
    @classmethod
    def _check_files(cls, v: Dict[str, str]) -> Dict[str, str]:
        for path, digest in v.items():
            _validate_relative_path(path)
            validate_digest(digest)
        return v

    def baseline_for(self, path: str) -> Optional[str]:
        return self.files.get(path)

    def update_after_sync(
        self,
        reference: Optional[str],
        categories: List[str],
        descriptors: List[RemoteFileDescriptor],
        hit_ratio: Optional[float] = None,
        duration_ms: Optional[float] = None,
    ) -> None:
        """Replace the baseline with the manifest that was just synced."""
        self.reference = reference
        self.categories = sorted(set(categories))
        self.timestamp = time.time()
        self.tool_version = TOOL_VERSION
        self.files = {d.relative_path: d.expected_digest for d in descriptors}
        self.metadata = {"total_files": len(self.files)}
        if hit_ratio is not None:
            self.metadata["cache_hit_ratio"] = hit_ratio
        if duration_ms is not None:
            self.metadata["sync_duration_ms"] = round(duration_ms, 2)


# ============= Read-only Reports =============

class StatusEntry(BaseModel):
    """Classification of a single file for status display."""

    path: str
    category: str
    status: FileStatus
    local_digest: Optional[str] = None
    remote_digest: Optional[str] = None
    baseline_digest: Optional[str] = None


class StatusReport(BaseModel):
    """Result of ``StatusReporter.status``."""

    reference: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    entries: List[StatusEntry] = Field(default_factory=list)
    remote_checked: bool = True
    state_exists: bool = False
    last_sync: Optional[float] = None

    @property
    def summary(self) -> Dict[FileStatus, int]:
        """Get summary counts by status."""
        counts: Dict[FileStatus, int] = {}
        for entry in self.entries:
            counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts

    def paths_with(self, status: FileStatus) -> List[str]:
        return sorted(e.path for e in self.entries if e.status == status)

    @property
    def has_conflicts(self) -> bool:
        return any(e.status == FileStatus.CONFLICT for e in self.entries)

    @property
    def is_synced(self) -> bool:
        return all(e.status == FileStatus.UNCHANGED for e in self.entries)

    def summary_text(self) -> str:
        """Get human-readable summary."""
        if not self.entries:
            return "No files"
        counts = self.summary
        parts = [f"{counts.get(status, 0)} {status.value.replace('_', ' ')}"
                 for status in FileStatus if counts.get(status)]
        return ", ".join(parts)


class FileDiff(BaseModel):
    """Text diff between the local file and the remote version."""

    path: str
    status: FileStatus
    diff: str = ""
    binary: bool = False


class DiffReport(BaseModel):
    """Result of ``StatusReporter.diff``."""

    diffs: List[FileDiff] = Field(default_factory=list)
    errors: List[ErrorRecord] = Field(default_factory=list)

    @property
    def has_differences(self) -> bool:
        return bool(self.diffs)


class UpdatePreview(BaseModel):
    """What a sync would do right now, computed without writing anything."""

    reference: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    force: bool = False
    will_write: List[RemoteFileDescriptor] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
    locally_modified: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)

    @property
    def has_blocking_conflicts(self) -> bool:
        return bool(self.conflicts) and not self.force

    def summary(self) -> str:
        """Get human-readable summary."""
        parts = []
        if self.will_write:
            parts.append(f"↓ {len(self.will_write)} files to write")
        else:
            parts.append("No changes")
        if self.conflicts:
            parts.append(f"⚠ {len(self.conflicts)} conflicts")
        if self.locally_modified:
            parts.append(f"{len(self.locally_modified)} locally modified")
        return ", ".join(parts)
