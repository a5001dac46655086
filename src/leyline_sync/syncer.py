"""Cache-aware synchronization of remote corpus files into a target directory.

For each file in the remote manifest the syncer decides, in order:

1. Leave it alone? (unchanged, locally modified, or conflicting without force)
2. Can the bytes come from the local cache? (cache hit)
3. Otherwise fetch, verify, cache, and write. (cache miss)

Only a fully successful pass (no fetch failures, no unresolved conflicts, not
cancelled) replaces the persisted baseline.
"""

import logging
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from .comparator import FileComparator
from .constants import DEFAULT_CACHE_THRESHOLD
from .core import (
    ErrorKind,
    ErrorRecord,
    FileResult,
    FileStatus,
    RemoteFileDescriptor,
    SyncOptions,
    SyncOutcome,
    SyncReport,
    SyncState,
)
from .errors import (
    CacheUnavailableError,
    DigestMismatchError,
    FetchError,
    FetchFailedError,
    StateWriteFailedError,
    TargetWriteError,
)
from .fetchers import Fetcher, normalize_categories
from .hashing import compute_digest
from .state import clear_state, load_state, save_state
from .utils import atomic_write_bytes

if TYPE_CHECKING:
    from .local_cache import CacheStore
    from .metrics import MetricsCollector

logger = logging.getLogger(__name__)


class FileSyncer:
    """
    Synchronize remote files into ``target_dir`` through a content cache.

    Attributes:
        fetcher: Remote collaborator providing manifest and bytes
        target_dir: Directory files are written into
        cache: CacheStore, or None to always fetch
        metrics: Optional MetricsCollector (observational only)
        cache_threshold: Hit ratio below which a warning is logged

    A FileSyncer runs one ``sync`` at a time. Two syncs writing into the same
    target directory from different processes race per file; the cache itself
    stays consistent because entries are immutable and promoted atomically.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        target_dir: Path,
        cache: Optional["CacheStore"] = None,
        metrics: Optional["MetricsCollector"] = None,
        comparator: Optional[FileComparator] = None,
        cache_threshold: float = DEFAULT_CACHE_THRESHOLD,
    ):
        self.fetcher = fetcher
        self.target_dir = Path(target_dir)
        self.cache = cache
        self.metrics = metrics
        self.comparator = comparator or FileComparator()
        self.cache_threshold = cache_threshold

        self._lock = threading.Lock()
        self._cache_disabled = False
        self._errors: List[ErrorRecord] = []
        self._abort = threading.Event()

    # ---- public API ---------------------------------------------------------

    def sync(self, categories: Sequence[str], options: Optional[SyncOptions] = None) -> SyncReport:
        """
        Bring ``target_dir`` up to date with the remote for ``categories``.

        Args:
            categories: Requested categories (``core`` is always included)
            options: Reference, force flag, pool size, timeout, cancel event

        Returns:
            SyncReport with per-file outcomes and recorded errors

        Raises:
            TargetWriteError: If the target directory or a target file cannot be written
            SyncStateError: If the persisted state comes from a newer schema
            ConfigError: If a category name is invalid
        """
        options = options or SyncOptions()
        categories = normalize_categories(categories)
        started = time.perf_counter()
        self._reset()

        report = SyncReport(
            reference=options.reference,
            categories=categories,
            target_dir=str(self.target_dir),
            cache_enabled=self.cache is not None,
        )

        descriptors = self._manifest(categories, options)
        if descriptors is None:
            report.errors = list(self._errors)
            report.elapsed_seconds = time.perf_counter() - started
            return report

        self._ensure_target()
        state = load_state(self.target_dir)
        baseline: Dict[str, str] = dict(state.files) if state else {}

        logger.info("Syncing %d file(s) into %s", len(descriptors), self.target_dir)
        report.results = self._run_pool(descriptors, baseline, options)
        report.cancelled = options.cancelled
        report.cache_enabled = self.cache is not None and not self._cache_disabled

        self._check_hit_ratio(report)

        elapsed = time.perf_counter() - started
        if self._can_persist(report):
            self._persist(state, categories, descriptors, report, elapsed)
            self._maybe_evict()
        else:
            logger.info("Sync incomplete; keeping previous baseline")

        report.errors = list(self._errors)
        report.elapsed_seconds = time.perf_counter() - started
        logger.info("Sync finished: %s", report.summary())
        return report

    # ---- phases -------------------------------------------------------------

    def _reset(self) -> None:
        self._cache_disabled = False
        self._errors = []
        self._abort.clear()

    def _record_error(self, kind: ErrorKind, message: str, path: Optional[str] = None,
                      category: Optional[str] = None) -> None:
        with self._lock:
            self._errors.append(ErrorRecord(kind=kind, message=message, path=path, category=category))
        if self.metrics:
            self.metrics.record_error_pattern(kind.value, category or "sync", {"path": path} if path else None)

    def _manifest(self, categories: List[str], options: SyncOptions) -> Optional[List[RemoteFileDescriptor]]:
        """Fetch and filter the manifest; None (with errors recorded) if it failed."""
        if self.metrics:
            self.metrics.start_timer("manifest")
        try:
            descriptors = self.fetcher.manifest(options.reference, categories)
        except (FetchError, OSError) as e:
            if self.metrics:
                self.metrics.end_timer("manifest", success=False)
            logger.error("Could not obtain manifest: %s", e)
            for category in categories:
                self._record_error(ErrorKind.FETCH_FAILED, f"Manifest unavailable: {e}", category=category)
            return None
        if self.metrics:
            self.metrics.end_timer("manifest", files=len(descriptors))

        wanted = set(categories)
        return [d for d in descriptors if d.category in wanted]

    def _ensure_target(self) -> None:
        """Create the target directory and prove it is writable."""
        try:
            self.target_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryFile(dir=self.target_dir):
                pass
        except OSError as e:
            if self.metrics:
                self.metrics.record_error_pattern("target_write_failed", "target")
            raise TargetWriteError(self.target_dir, e) from e

    def _run_pool(
        self,
        descriptors: List[RemoteFileDescriptor],
        baseline: Dict[str, str],
        options: SyncOptions,
    ) -> List[FileResult]:
        results: List[FileResult] = []
        workers = max(1, options.max_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="leyline-sync") as pool:
            futures = [
                pool.submit(self._sync_file, d, baseline.get(d.relative_path), options)
                for d in descriptors
            ]
            try:
                for future in futures:
                    result = future.result()
                    if result is not None:
                        results.append(result)
            except TargetWriteError:
                self._abort.set()
                raise
        return results

    def _sync_file(
        self,
        descriptor: RemoteFileDescriptor,
        baseline_digest: Optional[str],
        options: SyncOptions,
    ) -> Optional[FileResult]:
        """Sync one file. Returns None if the run was cancelled before it started."""
        if options.cancelled or self._abort.is_set():
            return None

        path = descriptor.relative_path
        key = f"sync_file:{path}"
        if self.metrics:
            self.metrics.start_timer("sync_file", key=key)

        result = self._decide_and_apply(descriptor, baseline_digest, options)

        if self.metrics:
            self.metrics.end_timer(
                "sync_file",
                success=result.outcome != SyncOutcome.FETCH_FAILED,
                key=key,
                outcome=result.outcome.value,
            )
            self.metrics.increment_counter("sync_outcome", labels={"outcome": result.outcome.value})
        logger.debug("%s: %s", path, result.outcome.value)
        return result

    def _decide_and_apply(
        self,
        descriptor: RemoteFileDescriptor,
        baseline_digest: Optional[str],
        options: SyncOptions,
    ) -> FileResult:
        path = descriptor.relative_path
        local_path = self.target_dir / path

        try:
            status, _ = self.comparator.compare(local_path, descriptor, baseline_digest)
        except OSError as e:
            raise TargetWriteError(local_path, e) from e

        def result(outcome: SyncOutcome, error: Optional[str] = None) -> FileResult:
            return FileResult(
                path=path,
                category=descriptor.category,
                outcome=outcome,
                status=status,
                digest=descriptor.expected_digest,
                error=error,
            )

        if status == FileStatus.UNCHANGED:
            return result(SyncOutcome.ALREADY_CURRENT)
        if status == FileStatus.LOCALLY_MODIFIED and not options.force:
            return result(SyncOutcome.LOCALLY_MODIFIED_SKIPPED)
        if status == FileStatus.CONFLICT and not options.force:
            self._record_error(
                ErrorKind.CONFLICT,
                "Local and remote both changed; keeping local file",
                path=path,
                category=descriptor.category,
            )
            return result(SyncOutcome.CONFLICT_SKIPPED)

        data = self._cache_get(descriptor)
        if data is not None:
            self._write_target(local_path, data)
            return result(SyncOutcome.CACHE_HIT)

        try:
            data = self._fetch(descriptor, options.fetch_timeout)
        except (FetchError, OSError) as e:
            logger.warning("Fetch failed for %s: %s", path, e)
            self._record_error(ErrorKind.FETCH_FAILED, str(e), path=path, category=descriptor.category)
            return result(SyncOutcome.FETCH_FAILED, str(e))

        self._cache_put(data)
        self._write_target(local_path, data)
        return result(SyncOutcome.CACHE_MISS_FETCHED)

    # ---- cache bulkhead -----------------------------------------------------

    def _disable_cache(self, error: CacheUnavailableError) -> None:
        with self._lock:
            if self._cache_disabled:
                return
            self._cache_disabled = True
            # CacheStore already tallied the error pattern
            self._errors.append(ErrorRecord(kind=ErrorKind.CACHE_UNAVAILABLE, message=str(error)))
        logger.warning("%s; continuing without cache", error)

    def _cache_get(self, descriptor: RemoteFileDescriptor) -> Optional[bytes]:
        if self.cache is None or self._cache_disabled:
            return None
        digest = descriptor.expected_digest
        try:
            present = self.cache.contains(digest)
            data = self.cache.get(digest)
        except CacheUnavailableError as e:
            self._disable_cache(e)
            return None
        if present and data is None:
            with self._lock:
                self._errors.append(ErrorRecord(
                    kind=ErrorKind.CACHE_CORRUPTION,
                    message=f"Corrupt cache entry {digest[:19]}... discarded; refetching",
                    path=descriptor.relative_path,
                    category=descriptor.category,
                ))
        return data

    def _cache_put(self, data: bytes) -> None:
        if self.cache is None or self._cache_disabled:
            return
        try:
            self.cache.put(data)
        except CacheUnavailableError as e:
            self._disable_cache(e)

    # ---- fetch and write ----------------------------------------------------

    def _fetch(self, descriptor: RemoteFileDescriptor, timeout: Optional[float]) -> bytes:
        """Fetch and verify bytes for one descriptor within ``timeout`` seconds.

        Each fetch runs on its own daemon thread, so the clock starts when the
        fetch starts and a fetch that never returns holds up neither later
        fetches nor interpreter exit.
        """
        path = descriptor.relative_path
        outcome: Dict[str, object] = {}

        def run() -> None:
            try:
                outcome["data"] = self.fetcher.fetch(descriptor)
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=run, name=f"leyline-fetch:{path}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            raise FetchFailedError(path, f"timed out after {timeout}s", category=descriptor.category)
        if "error" in outcome:
            raise outcome["error"]

        data = outcome["data"]
        actual = compute_digest(data)
        if actual != descriptor.expected_digest:
            raise DigestMismatchError(path, descriptor.expected_digest, actual)
        return data

    def _write_target(self, path: Path, data: bytes) -> None:
        try:
            atomic_write_bytes(path, data)
        except OSError as e:
            if self.metrics:
                self.metrics.record_error_pattern("target_write_failed", "target")
            raise TargetWriteError(path, e) from e

    # ---- completion ---------------------------------------------------------

    def _check_hit_ratio(self, report: SyncReport) -> None:
        lookups = report.cache_hits + report.cache_misses
        if self.metrics:
            self.metrics.increment_counter("cache_hits", report.cache_hits)
            self.metrics.increment_counter("cache_misses", report.cache_misses)
        if lookups and report.cache_enabled and report.hit_ratio < self.cache_threshold:
            logger.warning(
                "Cache hit ratio %.1f%% is below threshold %.1f%%",
                report.hit_ratio * 100,
                self.cache_threshold * 100,
            )

    def _can_persist(self, report: SyncReport) -> bool:
        if report.cancelled or report.failed or report.conflicts:
            return False
        return not any(e.kind == ErrorKind.FETCH_FAILED for e in self._errors)

    def _persist(
        self,
        state: Optional[SyncState],
        categories: List[str],
        descriptors: List[RemoteFileDescriptor],
        report: SyncReport,
        elapsed: float,
    ) -> None:
        state = state or SyncState()
        lookups = report.cache_hits + report.cache_misses
        state.update_after_sync(
            report.reference,
            categories,
            descriptors,
            hit_ratio=report.hit_ratio if lookups else None,
            duration_ms=elapsed * 1000,
        )
        try:
            save_state(self.target_dir, state)
        except StateWriteFailedError as e:
            logger.error("%s", e)
            self._record_error(ErrorKind.STATE_WRITE_FAILED, str(e))
            # A stale baseline would misclassify files on the next run
            clear_state(self.target_dir)
            report.state_persisted = False
            return
        report.state_persisted = True

    def _maybe_evict(self) -> None:
        if self.cache is None or self._cache_disabled:
            return
        try:
            self.cache.maybe_evict()
        except (CacheUnavailableError, OSError) as e:
            logger.warning("Cache eviction skipped: %s", e)
