"""Local content-addressed storage (CAS) for fetched documents.

Objects are stored by the SHA256 digest of their bytes. The store computes the
digest itself on ``put`` and re-verifies it on every ``get``, so an entry can
never be served under the wrong name.

Key Features:
- Content-addressed storage with SHA256 digests
- Atomic stage-then-rename writes with fsync for durability
- Cross-process per-object locking via portalocker
- Self-healing reads: corrupt objects are deleted and reported as missing
- Size/age-bounded eviction that never touches this session's objects

Technical Considerations:
- Objects are made read-only (0o444) before they become visible
- Lock files persist to avoid inode coordination issues (OS cleans up on crash)
- Disk and permission failures surface as ``CacheUnavailableError`` so callers
  can fall back to uncached operation
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Set

import platformdirs
import portalocker
from pydantic import BaseModel, ValidationError

from .core import CacheEntry
from .errors import CacheCorruptionError, CacheUnavailableError
from .hashing import compute_digest, validate_digest
from .utils import fsync_dir

if TYPE_CHECKING:
    from .metrics import MetricsCollector

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
LOCK_SUFFIX = ".lock"
EVICTION_MARKER = ".last_eviction"
SHARD_WIDTH = 2


def default_cache_dir() -> Path:
    """Get platform-appropriate cache directory."""
    return Path(platformdirs.user_cache_dir("leyline-sync", "leyline"))


def shard_path(objdir: Path, digest: str) -> Path:
    """Map a digest to its object path: ``<objdir>/<hex[:2]>/<hex[2:]>``.

    Pure function of its inputs; the first two hex characters bound the fan-out
    of ``objdir`` to 256 shard directories.

    Raises:
        ValueError: If digest format is invalid
    """
    hex_part = validate_digest(digest)
    return objdir / hex_part[:SHARD_WIDTH] / hex_part[SHARD_WIDTH:]


def _fsync_file(path: Path) -> None:
    """Fsync a file to ensure durability."""
    with open(path, "rb") as f:
        os.fsync(f.fileno())


def _is_object_file(path: Path) -> bool:
    name = path.name
    return (
        path.is_file()
        and not name.startswith(".")
        and not name.endswith(META_SUFFIX)
        and not name.endswith(LOCK_SUFFIX)
    )


@dataclass
class EvictionPolicy:
    """Bounds applied by ``CacheStore.evict``.

    Every field is optional; a policy with no bound set evicts nothing.
    ``interval_seconds`` throttles ``maybe_evict`` so the directory walk does
    not run on every sync.
    """

    max_bytes: Optional[int] = None
    max_age_seconds: Optional[float] = None
    interval_seconds: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.max_bytes is not None or self.max_age_seconds is not None


class CacheDirectoryStats(BaseModel):
    """Size and occupancy of the cache directory."""

    path: str
    size: int = 0
    file_count: int = 0
    max_bytes: Optional[int] = None

    @property
    def utilization_percent(self) -> Optional[float]:
        if not self.max_bytes:
            return None
        return round(self.size / self.max_bytes * 100, 1)


class CacheStore:
    """Durable, sharded, content-addressed object store on local disk.

    Directory Structure:
        <cache_root>/objects/sha256/ab/<remaining 62 hex chars>
        <cache_root>/objects/sha256/ab/<remaining 62 hex chars>.meta.json

    Attributes:
        root: Cache root directory
        objdir: Object storage directory (root/objects/sha256)
        policy: Eviction policy used by ``evict``/``maybe_evict``
        corruptions: Number of corrupt objects discarded by this instance

    Thread Safety:
        Writes are staged and renamed under a per-object file lock, so
        concurrent writers of the same digest (threads or processes) are safe.
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        policy: Optional[EvictionPolicy] = None,
        metrics: Optional["MetricsCollector"] = None,
        lock_timeout: float = 60.0,
    ):
        """Initialize the store, creating its directories.

        Raises:
            CacheUnavailableError: If the directory cannot be created
        """
        self.root = Path(root) if root else default_cache_dir()
        self.objdir = self.root / "objects" / "sha256"
        self.policy = policy or EvictionPolicy()
        self.metrics = metrics
        self.lock_timeout = lock_timeout
        self.corruptions = 0
        self._session: Set[str] = set()
        self._lock = threading.Lock()
        try:
            self.objdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheUnavailableError(self.root, e) from e

    # ---- addressing ---------------------------------------------------------

    def path_for(self, digest: str) -> Path:
        """Get cache path for a digest (validated, see ``shard_path``)."""
        return shard_path(self.objdir, digest)

    @staticmethod
    def _meta_path(obj_path: Path) -> Path:
        return obj_path.with_name(obj_path.name + META_SUFFIX)

    def _digest_for_path(self, obj_path: Path) -> str:
        return f"sha256:{obj_path.parent.name}{obj_path.name}"

    def _mark_session(self, digest: str) -> None:
        with self._lock:
            self._session.add(digest)

    @property
    def session_digests(self) -> Set[str]:
        """Digests written or read through this instance (protected from eviction)."""
        with self._lock:
            return set(self._session)

    # ---- core contract ------------------------------------------------------

    def contains(self, digest: str) -> bool:
        """Check if object exists in cache (without verifying it)."""
        try:
            return self.path_for(digest).exists()
        except ValueError:
            return False

    def put(self, data: bytes) -> str:
        """Store bytes and return their digest.

        Idempotent: storing bytes that are already present only refreshes
        their access time. An existing file that fails verification is
        replaced.

        Raises:
            CacheUnavailableError: On disk-full, permission, or lock failures
        """
        digest = compute_digest(data)
        dst = self.path_for(digest)
        self._mark_session(digest)

        try:
            if self._verified(dst, digest):
                self._record_access(digest, dst, len(data))
                return digest

            dst.parent.mkdir(parents=True, exist_ok=True)
            lock_path = dst.with_name(dst.name + LOCK_SUFFIX)

            with portalocker.Lock(str(lock_path), "w", timeout=self.lock_timeout):
                # Re-check after acquiring lock (TOCTOU fix)
                if self._verified(dst, digest):
                    self._record_access(digest, dst, len(data))
                    return digest
                self._promote(dst, data)
                now = time.time()
                self._write_meta(dst, CacheEntry(
                    digest=digest, size_bytes=len(data), stored_at=now, last_accessed_at=now
                ))
        except (OSError, portalocker.LockException) as e:
            logger.warning("Cache write failed for %s: %s", digest[:19], e)
            if self.metrics:
                self.metrics.record_error_pattern("cache_unavailable", "cache_store")
            raise CacheUnavailableError(self.root, e) from e

        logger.debug("CAS promoted: %s", dst)
        return digest

    def get(self, digest: str) -> Optional[bytes]:
        """Return the bytes stored under ``digest``, or None if absent.

        The bytes are re-hashed before they are returned. A mismatch means the
        entry is corrupt: it is deleted and None is returned.

        Raises:
            ValueError: If digest format is invalid
            CacheUnavailableError: If the object exists but cannot be read
        """
        path = self.path_for(digest)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            if self.metrics:
                self.metrics.record_error_pattern("cache_unavailable", "cache_store")
            raise CacheUnavailableError(self.root, e) from e

        actual = compute_digest(data)
        if actual != digest:
            self._discard_corrupt(CacheCorruptionError(digest, actual), path)
            return None

        self._mark_session(digest)
        self._record_access(digest, path, len(data))
        return data

    def entry(self, digest: str) -> Optional[CacheEntry]:
        """Get metadata for a stored object."""
        try:
            path = self.path_for(digest)
        except ValueError:
            return None
        if not path.exists():
            return None
        return self._read_meta(path)

    def entries(self) -> Iterator[CacheEntry]:
        """Iterate metadata of every stored object."""
        for obj_path in self._object_paths():
            try:
                yield self._read_meta(obj_path)
            except FileNotFoundError:
                # Removed concurrently
                continue

    # ---- eviction -----------------------------------------------------------

    def evict(self, policy: Optional[EvictionPolicy] = None) -> int:
        """Remove entries beyond the policy's age and size bounds.

        Age-expired entries go first; then least-recently-accessed entries are
        removed until the total size fits ``max_bytes``. Objects written or read
        by this instance are never removed.

        Returns:
            Number of objects removed
        """
        policy = policy or self.policy
        if not policy.enabled:
            return 0

        protected = self.session_digests
        now = time.time()
        removed = 0
        survivors: List[CacheEntry] = []

        for entry in self.entries():
            if entry.digest in protected:
                survivors.append(entry)
                continue
            if policy.max_age_seconds is not None and entry.last_accessed_at < now - policy.max_age_seconds:
                if self._remove(entry.digest):
                    removed += 1
                continue
            survivors.append(entry)

        if policy.max_bytes is not None:
            total = sum(e.size_bytes for e in survivors)
            for entry in sorted(survivors, key=lambda e: e.last_accessed_at):
                if total <= policy.max_bytes:
                    break
                if entry.digest in protected:
                    continue
                if self._remove(entry.digest):
                    total -= entry.size_bytes
                    removed += 1

        self._touch_eviction_marker()
        if removed:
            logger.info("Evicted %d cache object(s) from %s", removed, self.root)
        return removed

    def maybe_evict(self) -> int:
        """Run ``evict`` if a policy is configured and the last pass is old enough."""
        if not self.policy.enabled:
            return 0
        interval = self.policy.interval_seconds
        marker = self.root / EVICTION_MARKER
        if interval and marker.exists() and time.time() - marker.stat().st_mtime < interval:
            return 0
        return self.evict()

    def clear(self) -> int:
        """Remove every object in the cache. Returns number removed."""
        removed = 0
        for obj_path in list(self._object_paths()):
            if self._remove(self._digest_for_path(obj_path)):
                removed += 1
        return removed

    # ---- introspection ------------------------------------------------------

    def stats(self) -> CacheDirectoryStats:
        """Compute cache directory size and object count."""
        stats = CacheDirectoryStats(path=str(self.root), max_bytes=self.policy.max_bytes)
        for obj_path in self._object_paths():
            try:
                stats.size += obj_path.stat().st_size
                stats.file_count += 1
            except FileNotFoundError:
                continue
        return stats

    def health(self) -> List[Dict[str, str]]:
        """Report problems with the cache directory (empty list when healthy)."""
        issues: List[Dict[str, str]] = []
        if not self.objdir.is_dir():
            issues.append({"type": "missing_directory", "path": str(self.objdir)})
            return issues
        if not os.access(self.objdir, os.R_OK):
            issues.append({"type": "not_readable", "path": str(self.objdir)})
        if not os.access(self.objdir, os.W_OK):
            issues.append({"type": "not_writable", "path": str(self.objdir)})
        if self.policy.max_bytes is not None:
            size = self.stats().size
            if size > self.policy.max_bytes:
                issues.append({"type": "over_budget", "path": str(self.root), "size": str(size)})
        return issues

    # ---- internals ----------------------------------------------------------

    def _object_paths(self) -> Iterator[Path]:
        if not self.objdir.exists():
            return
        for shard in sorted(self.objdir.iterdir()):
            if not shard.is_dir():
                continue
            for obj_path in shard.iterdir():
                if _is_object_file(obj_path):
                    yield obj_path

    def _verified(self, path: Path, digest: str) -> bool:
        """True if ``path`` exists and its content hashes to ``digest``."""
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return False
        if compute_digest(data) == digest:
            return True
        self._discard_corrupt(CacheCorruptionError(digest, compute_digest(data)), path)
        return False

    def _promote(self, dst: Path, data: bytes) -> None:
        """Stage ``data`` in the shard directory and atomically rename it to ``dst``."""
        with tempfile.NamedTemporaryFile(prefix=".cas-", dir=str(dst.parent), delete=False) as tmp:
            tmppath = Path(tmp.name)
        try:
            tmppath.write_bytes(data)
            # Ensure content is durable BEFORE changing permissions
            _fsync_file(tmppath)
            # Immutable from the moment it becomes visible
            os.chmod(tmppath, 0o444)
            os.replace(str(tmppath), str(dst))
            fsync_dir(dst.parent)
        except BaseException:
            with contextlib.suppress(OSError):
                tmppath.unlink()
            raise

    def _discard_corrupt(self, error: CacheCorruptionError, path: Path) -> None:
        logger.warning("%s; removing it", error)
        with self._lock:
            self.corruptions += 1
        if self.metrics:
            self.metrics.record_error_pattern("cache_corruption", "cache_store")
        for p in (path, self._meta_path(path)):
            try:
                self._unlink(p)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove corrupt cache file %s: %s", p, e)

    def _record_access(self, digest: str, obj_path: Path, size: int) -> None:
        """Refresh ``last_accessed_at``; access time only drives eviction order."""
        try:
            entry = self._read_meta(obj_path)
            entry.last_accessed_at = time.time()
            entry.size_bytes = size
            self._write_meta(obj_path, entry)
        except OSError as e:
            logger.debug("Could not update access time for %s: %s", digest[:19], e)

    def _read_meta(self, obj_path: Path) -> CacheEntry:
        meta_path = self._meta_path(obj_path)
        try:
            return CacheEntry.model_validate_json(meta_path.read_bytes())
        except (FileNotFoundError, ValidationError, ValueError):
            # Missing or unreadable sidecar: rebuild from the object's stat
            st = obj_path.stat()
            return CacheEntry(
                digest=self._digest_for_path(obj_path),
                size_bytes=st.st_size,
                stored_at=st.st_mtime,
                last_accessed_at=st.st_mtime,
            )

    def _write_meta(self, obj_path: Path, entry: CacheEntry) -> None:
        meta_path = self._meta_path(obj_path)
        with tempfile.NamedTemporaryFile(
            mode="w", prefix=".meta-", dir=str(obj_path.parent), delete=False
        ) as tmp:
            json.dump(entry.model_dump(), tmp)
            tmppath = Path(tmp.name)
        try:
            os.replace(str(tmppath), str(meta_path))
        except OSError:
            with contextlib.suppress(OSError):
                tmppath.unlink()
            raise

    def _remove(self, digest: str) -> bool:
        obj_path = self.path_for(digest)
        try:
            self._unlink(obj_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug("Could not remove %s: %s", obj_path, e)
            return False
        with contextlib.suppress(FileNotFoundError):
            self._unlink(self._meta_path(obj_path))
        logger.debug("Removed cache object: %s", obj_path)
        return True

    @staticmethod
    def _unlink(path: Path) -> None:
        # Read-only objects need write permission to be removed on Windows
        with contextlib.suppress(OSError):
            os.chmod(path, 0o644)
        path.unlink()

    def _touch_eviction_marker(self) -> None:
        marker = self.root / EVICTION_MARKER
        try:
            marker.touch()
        except OSError as e:
            logger.debug("Could not update eviction marker: %s", e)
