"""Read-only views of a target directory: status, diff and update preview.

Nothing in this module writes to the target, the cache or the sync state.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .comparator import FileComparator
from .constants import CORE_CATEGORY
from .core import (
    DiffReport,
    ErrorKind,
    ErrorRecord,
    FileDiff,
    FileStatus,
    RemoteFileDescriptor,
    StatusEntry,
    StatusReport,
    SyncState,
    UpdatePreview,
)
from .errors import DigestMismatchError, FetchError
from .fetchers import Fetcher, category_for, normalize_categories
from .hashing import compute_digest
from .state import load_state

logger = logging.getLogger(__name__)


class StatusReporter:
    """Classify the target directory against remote and baseline without side effects."""

    def __init__(self, fetcher: Fetcher, target_dir: Path, comparator: Optional[FileComparator] = None):
        self.fetcher = fetcher
        self.target_dir = Path(target_dir)
        self.comparator = comparator or FileComparator()

    def _resolve(self, categories: Optional[Sequence[str]],
                 state: Optional[SyncState]) -> List[str]:
        if not categories and state is not None:
            categories = state.categories
        return normalize_categories(categories)

    def _manifest(self, reference: Optional[str], categories: List[str]) -> List[RemoteFileDescriptor]:
        wanted = set(categories)
        return [d for d in self.fetcher.manifest(reference, categories) if d.category in wanted]

    @staticmethod
    def _baseline_descriptors(state: Optional[SyncState], categories: List[str]) -> List[RemoteFileDescriptor]:
        """Stand-in manifest built from the baseline when the remote can't be reached."""
        if state is None:
            return []
        wanted = set(categories)
        descriptors = []
        for path, digest in sorted(state.files.items()):
            category = category_for(path) or CORE_CATEGORY
            if category in wanted:
                descriptors.append(RemoteFileDescriptor(
                    relative_path=path, expected_digest=digest, category=category
                ))
        return descriptors

    def status(self, categories: Optional[Sequence[str]] = None,
               reference: Optional[str] = None) -> StatusReport:
        """
        Classify every file of the requested categories.

        Uses the manifest only (no content is fetched). If the manifest is
        unavailable the baseline stands in for the remote and the report has
        ``remote_checked = False``.
        """
        state = load_state(self.target_dir)
        categories = self._resolve(categories, state)
        reference = reference or (state.reference if state else None)

        remote_checked = True
        try:
            descriptors = self._manifest(reference, categories)
        except FetchError as e:
            logger.warning("Remote unavailable, comparing against last sync only: %s", e)
            descriptors = self._baseline_descriptors(state, categories)
            remote_checked = False

        baseline: Dict[str, str] = state.files if state else {}
        entries = []
        for descriptor, status, record in self.comparator.compare_manifest(
            self.target_dir, descriptors, baseline
        ):
            entries.append(StatusEntry(
                path=descriptor.relative_path,
                category=descriptor.category,
                status=status,
                local_digest=record.observed_digest if record else None,
                remote_digest=descriptor.expected_digest,
                baseline_digest=baseline.get(descriptor.relative_path),
            ))

        return StatusReport(
            reference=reference,
            categories=categories,
            entries=entries,
            remote_checked=remote_checked,
            state_exists=state is not None,
            last_sync=state.timestamp if state else None,
        )

    def diff(self, categories: Optional[Sequence[str]] = None,
             reference: Optional[str] = None) -> DiffReport:
        """
        Unified diffs for files the remote changed (``remote_updated``/``conflict``).

        Remote bytes are fetched for comparison only: they are neither cached
        nor written.
        """
        state = load_state(self.target_dir)
        categories = self._resolve(categories, state)
        reference = reference or (state.reference if state else None)
        report = DiffReport()

        try:
            descriptors = self._manifest(reference, categories)
        except FetchError as e:
            for category in categories:
                report.errors.append(ErrorRecord(
                    kind=ErrorKind.FETCH_FAILED, message=f"Manifest unavailable: {e}", category=category
                ))
            return report

        baseline = state.files if state else {}
        for descriptor, status, _ in self.comparator.compare_manifest(self.target_dir, descriptors, baseline):
            if status not in (FileStatus.REMOTE_UPDATED, FileStatus.CONFLICT):
                continue
            path = descriptor.relative_path
            try:
                remote = self._fetch_verified(descriptor)
            except FetchError as e:
                report.errors.append(ErrorRecord(
                    kind=ErrorKind.FETCH_FAILED, message=str(e), path=path, category=descriptor.category
                ))
                continue
            local = (self.target_dir / path).read_bytes()
            text = self.comparator.unified_diff(local, remote, path)
            report.diffs.append(FileDiff(
                path=path,
                status=status,
                diff=text or "",
                binary=text is None,
            ))
        return report

    def _fetch_verified(self, descriptor: RemoteFileDescriptor) -> bytes:
        data = self.fetcher.fetch(descriptor)
        actual = compute_digest(data)
        if actual != descriptor.expected_digest:
            raise DigestMismatchError(descriptor.relative_path, descriptor.expected_digest, actual)
        return data

    def preview_update(self, categories: Optional[Sequence[str]] = None, force: bool = False,
                       reference: Optional[str] = None) -> UpdatePreview:
        """
        What a sync with the same arguments would do right now.

        Raises:
            FetchError: If the manifest cannot be obtained
        """
        state = load_state(self.target_dir)
        categories = self._resolve(categories, state)
        reference = reference or (state.reference if state else None)
        descriptors = self._manifest(reference, categories)
        baseline = state.files if state else {}

        preview = UpdatePreview(reference=reference, categories=categories, force=force)
        for descriptor, status, _ in self.comparator.compare_manifest(self.target_dir, descriptors, baseline):
            path = descriptor.relative_path
            if status == FileStatus.UNCHANGED:
                preview.unchanged.append(path)
                continue
            if status == FileStatus.CONFLICT:
                preview.conflicts.append(path)
            elif status == FileStatus.LOCALLY_MODIFIED:
                preview.locally_modified.append(path)
            if force or status in (FileStatus.MISSING, FileStatus.REMOTE_UPDATED):
                preview.will_write.append(descriptor)
        return preview


def group_by_status(report: StatusReport) -> List[Tuple[FileStatus, List[str]]]:
    """Non-empty (status, paths) groups in display order."""
    return [(status, report.paths_with(status)) for status in FileStatus if report.paths_with(status)]
