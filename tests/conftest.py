"""Shared test fixtures and utilities."""

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from leyline_sync.core import RemoteFileDescriptor
from leyline_sync.errors import FetchFailedError
from leyline_sync.fetchers import DirectoryFetcher
from leyline_sync.hashing import compute_digest
from leyline_sync.local_cache import CacheStore

CORPUS_FILES = {
    "tenets/simplicity.md": "# Simplicity\n\nPrefer the simplest solution.\n",
    "tenets/testability.md": "# Testability\n\nDesign for tests.\n",
    "bindings/core/api-design.md": "# API design\n\nExplicit contracts.\n",
    "bindings/categories/python/type-hints.md": "# Type hints\n\nAnnotate public APIs.\n",
    "bindings/categories/go/error-wrapping.md": "# Error wrapping\n\nWrap with context.\n",
}


class MemoryFetcher:
    """In-memory fetcher with call recording and failure injection."""

    def __init__(self, files: Dict[str, bytes], category: str = "core"):
        self.files = dict(files)
        self.category = category
        self.fetch_calls: List[str] = []
        self.manifest_calls = 0
        self.fail_paths = set()
        self.fail_manifest = False
        self.delay: Dict[str, float] = {}
        self.corrupt_paths = set()
        self._lock = threading.Lock()

    def manifest(self, reference: Optional[str], categories: Sequence[str]) -> List[RemoteFileDescriptor]:
        self.manifest_calls += 1
        if self.fail_manifest:
            raise FetchFailedError("manifest", "remote unreachable")
        return [
            RemoteFileDescriptor(
                relative_path=path,
                expected_digest=compute_digest(data),
                category=self.category,
                size=len(data),
            )
            for path, data in sorted(self.files.items())
        ]

    def fetch(self, descriptor: RemoteFileDescriptor) -> bytes:
        path = descriptor.relative_path
        with self._lock:
            self.fetch_calls.append(path)
        if path in self.delay:
            time.sleep(self.delay[path])
        if path in self.fail_paths:
            raise FetchFailedError(path, "connection reset", category=descriptor.category)
        if path in self.corrupt_paths:
            return self.files[path] + b"tampered"
        return self.files[path]

    def available_categories(self, reference: Optional[str] = None) -> List[str]:
        return sorted({"core", self.category}, key=lambda c: (c != "core", c))


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's LEYLINE_* settings out of tests."""
    for name in (
        "LEYLINE_CACHE_DIR",
        "LEYLINE_CACHE_THRESHOLD",
        "LEYLINE_STRUCTURED_LOGGING",
        "LEYLINE_FETCH_WORKERS",
        "LEYLINE_FETCH_TIMEOUT",
        "LEYLINE_REPOSITORY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def corpus(tmp_path):
    """Create a corpus docs tree (tenets, core bindings, two categories)."""
    root = tmp_path / "corpus" / "docs"
    for rel, content in CORPUS_FILES.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def write_corpus_file(corpus):
    """Factory fixture to change a file in the corpus."""
    def _write(rel: str, content: str) -> Path:
        path = corpus / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return _write


@pytest.fixture
def fetcher(corpus):
    return DirectoryFetcher(corpus)


@pytest.fixture
def memory_fetcher():
    """Fetcher serving ``a.md`` and ``b.md`` from memory."""
    return MemoryFetcher({"a.md": b"alpha\n", "b.md": b"beta\n"})


@pytest.fixture
def target(tmp_path):
    return tmp_path / "project" / "docs" / "leyline"


@pytest.fixture
def cache(tmp_path):
    return CacheStore(root=tmp_path / "cache")
