"""Remote content retrieval.

The sync engine only depends on the narrow ``Fetcher`` protocol: a manifest of
``RemoteFileDescriptor`` for a reference and category set, and the raw bytes of
any one descriptor on demand.

Corpus layout (relative to the corpus ``docs`` directory):
    tenets/**                       -> category "core"
    bindings/core/**                -> category "core"
    bindings/categories/<name>/**   -> category "<name>"
"""

import logging
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence

from .constants import (
    CATEGORY_BINDINGS_DIR,
    CORE_BINDINGS_DIR,
    CORE_CATEGORY,
    DEFAULT_REFERENCE,
    TENETS_DIR,
)
from .core import RemoteFileDescriptor
from .errors import ConfigError, FetchFailedError, GitCommandError, GitNotAvailableError
from .hashing import compute_digest

logger = logging.getLogger(__name__)

CATEGORY_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


class Fetcher(Protocol):
    """
    Protocol for remote corpus retrieval.

    Implementations must be safe to call ``fetch`` from several threads once
    ``manifest`` has returned.
    """

    def manifest(self, reference: Optional[str], categories: Sequence[str]) -> List[RemoteFileDescriptor]:
        """
        List files (path, digest, category) for a reference and categories.

        Raises:
            FetchError: If the manifest cannot be produced
        """
        ...

    def fetch(self, descriptor: RemoteFileDescriptor) -> bytes:
        """
        Return the raw bytes for one descriptor.

        Note: Digest verification is the caller's responsibility.

        Raises:
            FetchError: If the content cannot be retrieved
        """
        ...

    def available_categories(self, reference: Optional[str] = None) -> List[str]:
        """
        Category names the corpus offers at ``reference``, ``core`` first.

        Raises:
            FetchError: If the corpus cannot be listed
        """
        ...


# ============= Category helpers =============

def normalize_categories(categories: Optional[Iterable[str]]) -> List[str]:
    """Split comma lists, lowercase, dedupe; ``core`` is always included first."""
    names = []
    for raw in categories or []:
        for part in str(raw).split(","):
            name = part.strip().lower()
            if not name:
                continue
            if not CATEGORY_NAME.match(name):
                raise ConfigError(f"Invalid category name: {part.strip()!r}")
            if name not in names:
                names.append(name)
    rest = sorted(n for n in names if n != CORE_CATEGORY)
    return [CORE_CATEGORY] + rest


def category_for(relative_path: str) -> Optional[str]:
    """Category a corpus-relative path belongs to, or None if outside the layout."""
    if relative_path.startswith(f"{TENETS_DIR}/") or relative_path.startswith(f"{CORE_BINDINGS_DIR}/"):
        return CORE_CATEGORY
    prefix = f"{CATEGORY_BINDINGS_DIR}/"
    if relative_path.startswith(prefix):
        parts = relative_path[len(prefix):].split("/", 1)
        if len(parts) == 2 and parts[0]:
            return parts[0]
    return None


def _with_core(names: Iterable[str]) -> List[str]:
    valid = {n for n in names if CATEGORY_NAME.match(n) and n != CORE_CATEGORY}
    return [CORE_CATEGORY] + sorted(valid)


def sparse_paths(categories: Sequence[str]) -> List[str]:
    """Repository paths to check out for ``categories``."""
    paths = [f"docs/{TENETS_DIR}/", f"docs/{CORE_BINDINGS_DIR}/"]
    for category in normalize_categories(categories):
        if category != CORE_CATEGORY:
            paths.append(f"docs/{CATEGORY_BINDINGS_DIR}/{category}/")
    return paths


# ============= Directory fetcher =============

class DirectoryFetcher:
    """
    Serve a corpus tree that is already on local disk.

    Used for local mirrors and in tests, and as the backend of ``GitFetcher``
    once a checkout exists. ``reference`` is informational only: a directory
    holds exactly one version of the corpus.
    """

    def __init__(self, root: Path, reference: Optional[str] = None):
        self.root = Path(root)
        self.reference = reference

    def manifest(self, reference: Optional[str], categories: Sequence[str]) -> List[RemoteFileDescriptor]:
        if not self.root.is_dir():
            raise FetchFailedError(str(self.root), "corpus directory does not exist")

        wanted = set(normalize_categories(categories))
        descriptors = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            rel = path.relative_to(self.root).as_posix()
            if any(part.startswith(".") for part in rel.split("/")):
                continue
            category = category_for(rel)
            if category is None or category not in wanted:
                continue
            try:
                data = path.read_bytes()
            except OSError as e:
                raise FetchFailedError(rel, str(e), category=category) from e
            descriptors.append(RemoteFileDescriptor(
                relative_path=rel,
                expected_digest=compute_digest(data),
                category=category,
                size=len(data),
            ))
        return descriptors

    def fetch(self, descriptor: RemoteFileDescriptor) -> bytes:
        path = self.root / descriptor.relative_path
        try:
            return path.read_bytes()
        except OSError as e:
            raise FetchFailedError(descriptor.relative_path, str(e), category=descriptor.category) from e

    def available_categories(self, reference: Optional[str] = None) -> List[str]:
        if not self.root.is_dir():
            raise FetchFailedError(str(self.root), "corpus directory does not exist")
        categories_dir = self.root / CATEGORY_BINDINGS_DIR
        if not categories_dir.is_dir():
            return [CORE_CATEGORY]
        return _with_core(p.name for p in categories_dir.iterdir() if p.is_dir())


# ============= Git fetcher =============

_REMOTE_URL_PATTERNS = (
    re.compile(r"\A(https?://|git@)[\w\-.]+[\w\-]+([/:][\w\-.]+)*\.git\Z"),
    re.compile(r"\Afile://.+\Z"),
)


def validate_remote_url(url: str) -> str:
    if not any(p.match(url) for p in _REMOTE_URL_PATTERNS):
        raise GitCommandError(f"Invalid remote URL format: {url}")
    return url


def validate_reference(ref: str) -> str:
    if not ref or ".." in ref or " " in ref or ref.startswith("-"):
        raise GitCommandError(f"Invalid version reference: {ref}")
    return ref


def validate_sparse_path(path: str) -> str:
    if " " in path:
        raise GitCommandError(f"Invalid sparse-checkout path '{path}': paths cannot contain spaces")
    if path.startswith("/"):
        raise GitCommandError(f"Invalid sparse-checkout path '{path}': absolute paths not allowed")
    if "../" in path:
        raise GitCommandError(f"Invalid sparse-checkout path '{path}': parent directory traversal not allowed")
    return path


class GitFetcher:
    """
    Fetch the corpus with a shallow sparse checkout of the category paths.

    The checkout lives in a temp directory until ``cleanup`` (or the end of a
    ``with`` block). ``fetch`` serves bytes from the most recent checkout.
    """

    def __init__(self, repository_url: str, git_binary: str = "git", timeout: float = 120.0):
        self.repository_url = validate_remote_url(repository_url)
        self.git_binary = git_binary
        self.timeout = timeout
        self.workdir: Optional[Path] = None
        self._checked_out: Optional[tuple] = None
        self._directory: Optional[DirectoryFetcher] = None

    def __enter__(self) -> "GitFetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    def git_available(self) -> bool:
        return shutil.which(self.git_binary) is not None

    def manifest(self, reference: Optional[str], categories: Sequence[str]) -> List[RemoteFileDescriptor]:
        ref = validate_reference(reference or DEFAULT_REFERENCE)
        wanted = tuple(normalize_categories(categories))
        if self._checked_out != (ref, wanted):
            self._checkout(ref, wanted)
        return self._directory.manifest(ref, wanted)

    def fetch(self, descriptor: RemoteFileDescriptor) -> bytes:
        if self._directory is None:
            raise FetchFailedError(descriptor.relative_path, "no checkout; call manifest() first",
                                   category=descriptor.category)
        return self._directory.fetch(descriptor)

    def available_categories(self, reference: Optional[str] = None) -> List[str]:
        """List category directories at ``reference`` without checking out any files.

        Only trees are needed, so the fetch asks the server to omit blobs.
        """
        if not self.git_available():
            raise GitNotAvailableError()
        ref = validate_reference(reference or DEFAULT_REFERENCE)
        listing_dir = Path(tempfile.mkdtemp(prefix="leyline-sync-"))
        try:
            self._run("init", "--quiet", cwd=listing_dir)
            self._run("remote", "add", "origin", self.repository_url, cwd=listing_dir)
            self._run("fetch", "--quiet", "--depth", "1", "--filter=blob:none", "origin", ref, cwd=listing_dir)
            output = self._run(
                "ls-tree", "-d", "--name-only", "FETCH_HEAD", f"docs/{CATEGORY_BINDINGS_DIR}/", cwd=listing_dir
            )
        finally:
            shutil.rmtree(listing_dir, ignore_errors=True)
        return _with_core(line.rstrip("/").rsplit("/", 1)[-1] for line in output.splitlines() if line.strip())

    def cleanup(self) -> None:
        if self.workdir is not None and self.workdir.exists():
            shutil.rmtree(self.workdir, ignore_errors=True)
        self.workdir = None
        self._checked_out = None
        self._directory = None

    def _checkout(self, ref: str, categories: Sequence[str]) -> None:
        if not self.git_available():
            raise GitNotAvailableError()

        self.cleanup()
        self.workdir = Path(tempfile.mkdtemp(prefix="leyline-sync-"))
        logger.info("Fetching %s@%s (%s)", self.repository_url, ref, ", ".join(categories))

        try:
            self._run("init", "--quiet")
            self._run("config", "core.sparseCheckout", "true")
            info_dir = self.workdir / ".git" / "info"
            info_dir.mkdir(parents=True, exist_ok=True)
            paths = [validate_sparse_path(p) for p in sparse_paths(categories)]
            (info_dir / "sparse-checkout").write_text("".join(f"{p}\n" for p in paths))
            self._run("remote", "add", "origin", self.repository_url)
            self._run("fetch", "--quiet", "--depth", "1", "origin", ref)
            self._run("checkout", "--quiet", "FETCH_HEAD")
        except BaseException:
            self.cleanup()
            raise

        self._checked_out = (ref, tuple(categories))
        self._directory = DirectoryFetcher(self.workdir / "docs", reference=ref)

    def _run(self, *args: str, cwd: Optional[Path] = None) -> str:
        command = [self.git_binary, *args]
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd or self.workdir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise GitNotAvailableError() from e
        except subprocess.TimeoutExpired as e:
            raise GitCommandError(
                f"Git command timed out after {self.timeout}s: {' '.join(command)}", command
            ) from e

        if result.returncode != 0:
            raise GitCommandError(
                f"Git command failed: {' '.join(command)} (exit status: {result.returncode})"
                + (f"\n{result.stderr.strip()}" if result.stderr.strip() else ""),
                command,
                result.returncode,
            )
        return result.stdout
