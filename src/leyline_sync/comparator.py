"""Classification of local files against remote and baseline digests."""

import difflib
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .core import FileStatus, LocalFileRecord, RemoteFileDescriptor
from .hashing import compute_file_digest


class FileComparator:
    """
    Compare files on disk with the remote manifest and the last-sync baseline.

    Comparison is content based only: mtime is recorded for display but never
    used to decide a status.
    """

    def observe(self, path: Path, relative_path: Optional[str] = None) -> Optional[LocalFileRecord]:
        """Hash a file on disk; None if it does not exist."""
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        return LocalFileRecord(
            relative_path=relative_path or path.name,
            observed_digest=compute_file_digest(path),
            mtime=st.st_mtime,
            size=st.st_size,
        )

    @staticmethod
    def classify(
        local_digest: Optional[str],
        remote_digest: str,
        baseline_digest: Optional[str],
    ) -> FileStatus:
        """
        Pure three-way classification.

        Args:
            local_digest: Digest on disk, None if missing
            remote_digest: Digest in the remote manifest
            baseline_digest: Digest recorded at the last successful sync

        Returns:
            FileStatus for the file
        """
        if local_digest is None:
            return FileStatus.MISSING
        if local_digest == remote_digest:
            return FileStatus.UNCHANGED
        if baseline_digest is None:
            # No baseline - conservative conflict
            return FileStatus.CONFLICT
        if local_digest == baseline_digest:
            return FileStatus.REMOTE_UPDATED
        if remote_digest == baseline_digest:
            return FileStatus.LOCALLY_MODIFIED
        return FileStatus.CONFLICT

    def compare(
        self,
        local_path: Path,
        remote: RemoteFileDescriptor,
        baseline_digest: Optional[str],
    ) -> Tuple[FileStatus, Optional[LocalFileRecord]]:
        """Classify one file, returning the observation alongside the status."""
        record = self.observe(local_path, remote.relative_path)
        local_digest = record.observed_digest if record else None
        return self.classify(local_digest, remote.expected_digest, baseline_digest), record

    def compare_manifest(
        self,
        target_dir: Path,
        descriptors: Iterable[RemoteFileDescriptor],
        baseline: Dict[str, str],
    ) -> List[Tuple[RemoteFileDescriptor, FileStatus, Optional[LocalFileRecord]]]:
        """Classify every descriptor under ``target_dir``, in manifest order."""
        results = []
        for descriptor in descriptors:
            status, record = self.compare(
                target_dir / descriptor.relative_path,
                descriptor,
                baseline.get(descriptor.relative_path),
            )
            results.append((descriptor, status, record))
        return results

    @staticmethod
    def unified_diff(local: bytes, remote: bytes, path: str) -> Optional[str]:
        """
        Unified diff from the local to the remote version.

        Returns:
            Diff text, or None if either side is not UTF-8 text
        """
        try:
            local_lines = local.decode("utf-8").splitlines(keepends=True)
            remote_lines = remote.decode("utf-8").splitlines(keepends=True)
        except UnicodeDecodeError:
            return None
        return "".join(difflib.unified_diff(
            local_lines,
            remote_lines,
            fromfile=f"local/{path}",
            tofile=f"remote/{path}",
        ))
