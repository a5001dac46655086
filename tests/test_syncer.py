"""Tests for FileSyncer."""

import json
import logging
import threading
from unittest.mock import patch

import pytest

from leyline_sync.core import ErrorKind, FileStatus, SyncOptions, SyncOutcome
from leyline_sync.errors import CacheUnavailableError, StateWriteFailedError, TargetWriteError
from leyline_sync.hashing import compute_digest
from leyline_sync.local_cache import CacheStore, EvictionPolicy
from leyline_sync.metrics import MetricsCollector
from leyline_sync.state import load_state, state_path
from leyline_sync.syncer import FileSyncer


def outcomes(report):
    return {r.path: r.outcome for r in report.results}


@pytest.fixture
def syncer(memory_fetcher, target, cache):
    return FileSyncer(memory_fetcher, target, cache=cache)


class TestFirstSync:
    """Empty target, empty cache."""

    def test_fetches_and_writes_everything(self, syncer, memory_fetcher, target):
        report = syncer.sync(["core"])

        assert outcomes(report) == {
            "a.md": SyncOutcome.CACHE_MISS_FETCHED,
            "b.md": SyncOutcome.CACHE_MISS_FETCHED,
        }
        assert report.written == 2
        assert report.hit_ratio == 0.0
        assert (target / "a.md").read_bytes() == b"alpha\n"
        assert (target / "b.md").read_bytes() == b"beta\n"
        assert sorted(memory_fetcher.fetch_calls) == ["a.md", "b.md"]

    def test_records_baseline(self, syncer, target):
        report = syncer.sync(["core"], SyncOptions(reference="v2.0.0"))

        assert report.state_persisted
        state = load_state(target)
        assert state.files == {
            "a.md": compute_digest(b"alpha\n"),
            "b.md": compute_digest(b"beta\n"),
        }
        assert state.reference == "v2.0.0"
        assert state.categories == ["core"]
        assert state.metadata["total_files"] == 2
        assert state.metadata["cache_hit_ratio"] == 0.0

    def test_fetched_content_is_cached(self, syncer, cache):
        syncer.sync(["core"])
        assert cache.get(compute_digest(b"alpha\n")) == b"alpha\n"

    def test_results_follow_manifest_order(self, memory_fetcher, target, cache):
        memory_fetcher.files.update({f"doc-{i:02d}.md": f"{i}\n".encode() for i in range(20)})
        report = FileSyncer(memory_fetcher, target, cache=cache).sync(["core"], SyncOptions(max_workers=8))
        assert [r.path for r in report.results] == sorted(memory_fetcher.files)


class TestIdempotence:

    def test_second_sync_writes_nothing(self, syncer, memory_fetcher, target):
        syncer.sync(["core"])
        memory_fetcher.fetch_calls.clear()
        mtime = (target / "a.md").stat().st_mtime_ns

        report = syncer.sync(["core"])

        assert set(outcomes(report).values()) == {SyncOutcome.ALREADY_CURRENT}
        assert report.written == 0
        assert memory_fetcher.fetch_calls == []
        assert (target / "a.md").stat().st_mtime_ns == mtime
        assert report.success


class TestCacheHits:

    def test_second_target_served_from_cache(self, memory_fetcher, tmp_path, cache):
        FileSyncer(memory_fetcher, tmp_path / "one", cache=cache).sync(["core"])
        memory_fetcher.fetch_calls.clear()

        report = FileSyncer(memory_fetcher, tmp_path / "two", cache=cache).sync(["core"])

        assert set(outcomes(report).values()) == {SyncOutcome.CACHE_HIT}
        assert report.hit_ratio == 1.0
        assert memory_fetcher.fetch_calls == []
        assert (tmp_path / "two" / "b.md").read_bytes() == b"beta\n"

    def test_cache_survives_new_store_instance(self, memory_fetcher, tmp_path):
        FileSyncer(memory_fetcher, tmp_path / "one", cache=CacheStore(tmp_path / "cache")).sync(["core"])
        memory_fetcher.fetch_calls.clear()

        report = FileSyncer(memory_fetcher, tmp_path / "two", cache=CacheStore(tmp_path / "cache")).sync(["core"])

        assert report.cache_hits == 2
        assert memory_fetcher.fetch_calls == []

    def test_no_cache(self, memory_fetcher, tmp_path):
        FileSyncer(memory_fetcher, tmp_path / "one").sync(["core"])
        report = FileSyncer(memory_fetcher, tmp_path / "two").sync(["core"])

        assert report.cache_misses == 2
        assert not report.cache_enabled

    def test_low_hit_ratio_warning(self, syncer, caplog):
        with caplog.at_level(logging.WARNING, logger="leyline_sync.syncer"):
            syncer.sync(["core"])
        assert "below threshold" in caplog.text

    def test_no_warning_when_nothing_looked_up(self, syncer, caplog):
        syncer.sync(["core"])
        caplog.clear()
        with caplog.at_level(logging.WARNING, logger="leyline_sync.syncer"):
            syncer.sync(["core"])
        assert "below threshold" not in caplog.text


class TestLocalChanges:

    def test_local_edit_is_kept(self, syncer, target):
        syncer.sync(["core"])
        (target / "a.md").write_text("my notes\n")

        report = syncer.sync(["core"])

        assert outcomes(report)["a.md"] == SyncOutcome.LOCALLY_MODIFIED_SKIPPED
        assert (target / "a.md").read_text() == "my notes\n"
        assert report.success
        assert report.state_persisted

    def test_remote_update_is_applied(self, syncer, memory_fetcher, target):
        syncer.sync(["core"])
        memory_fetcher.files["a.md"] = b"alpha v2\n"

        report = syncer.sync(["core"])

        assert outcomes(report)["a.md"] == SyncOutcome.CACHE_MISS_FETCHED
        assert report.results[0].status == FileStatus.REMOTE_UPDATED
        assert (target / "a.md").read_bytes() == b"alpha v2\n"
        assert load_state(target).files["a.md"] == compute_digest(b"alpha v2\n")

    def test_deleted_local_file_is_restored_from_cache(self, syncer, memory_fetcher, target):
        syncer.sync(["core"])
        (target / "b.md").unlink()
        memory_fetcher.fetch_calls.clear()

        report = syncer.sync(["core"])

        assert outcomes(report)["b.md"] == SyncOutcome.CACHE_HIT
        assert memory_fetcher.fetch_calls == []

    def test_force_overwrites_local_edit(self, syncer, target):
        syncer.sync(["core"])
        (target / "a.md").write_text("my notes\n")

        report = syncer.sync(["core"], SyncOptions(force=True))

        assert outcomes(report)["a.md"] == SyncOutcome.CACHE_HIT
        assert (target / "a.md").read_bytes() == b"alpha\n"


class TestConflicts:

    def test_conflict_is_never_overwritten(self, syncer, memory_fetcher, target):
        syncer.sync(["core"])
        baseline = load_state(target).files
        (target / "a.md").write_text("local change\n")
        memory_fetcher.files["a.md"] = b"remote change\n"

        report = syncer.sync(["core"])

        assert outcomes(report)["a.md"] == SyncOutcome.CONFLICT_SKIPPED
        assert report.conflicts == ["a.md"]
        assert (target / "a.md").read_text() == "local change\n"
        assert not report.success
        assert not report.state_persisted
        assert load_state(target).files == baseline
        assert [e.kind for e in report.errors] == [ErrorKind.CONFLICT]

    def test_unknown_file_without_baseline_is_conflict(self, syncer, target):
        target.mkdir(parents=True)
        (target / "a.md").write_text("pre-existing\n")

        report = syncer.sync(["core"])

        assert outcomes(report)["a.md"] == SyncOutcome.CONFLICT_SKIPPED
        assert (target / "a.md").read_text() == "pre-existing\n"
        assert not state_path(target).exists()

    def test_force_resolves_conflict(self, syncer, memory_fetcher, target):
        syncer.sync(["core"])
        (target / "a.md").write_text("local change\n")
        memory_fetcher.files["a.md"] = b"remote change\n"

        report = syncer.sync(["core"], SyncOptions(force=True))

        assert (target / "a.md").read_bytes() == b"remote change\n"
        assert report.success
        assert report.state_persisted


class TestFetchFailures:

    def test_one_failure_does_not_stop_the_run(self, syncer, memory_fetcher, target):
        memory_fetcher.fail_paths.add("b.md")

        report = syncer.sync(["core"])

        assert outcomes(report) == {
            "a.md": SyncOutcome.CACHE_MISS_FETCHED,
            "b.md": SyncOutcome.FETCH_FAILED,
        }
        assert (target / "a.md").exists()
        assert not (target / "b.md").exists()
        assert report.errors[0].path == "b.md"
        assert report.errors[0].category == "core"

    def test_failure_prevents_state(self, syncer, memory_fetcher, target):
        memory_fetcher.fail_paths.add("b.md")
        report = syncer.sync(["core"])

        assert not report.state_persisted
        assert not state_path(target).exists()

    def test_digest_mismatch(self, syncer, memory_fetcher, target, cache):
        memory_fetcher.corrupt_paths.add("a.md")

        report = syncer.sync(["core"])

        assert outcomes(report)["a.md"] == SyncOutcome.FETCH_FAILED
        assert "Digest verification failed" in report.results[0].error
        assert not (target / "a.md").exists()
        assert cache.stats().file_count == 1

    def test_timeout(self, memory_fetcher, target, cache):
        memory_fetcher.delay["a.md"] = 0.5
        syncer = FileSyncer(memory_fetcher, target, cache=cache)

        report = syncer.sync(["core"], SyncOptions(fetch_timeout=0.05))

        assert outcomes(report)["a.md"] == SyncOutcome.FETCH_FAILED
        assert "timed out" in report.results[0].error
        assert outcomes(report)["b.md"] == SyncOutcome.CACHE_MISS_FETCHED

    def test_hung_fetch_does_not_starve_later_fetches(self, memory_fetcher, target, cache):
        memory_fetcher.delay["a.md"] = 1.5
        syncer = FileSyncer(memory_fetcher, target, cache=cache)

        report = syncer.sync(["core"], SyncOptions(max_workers=1, fetch_timeout=0.3))

        assert outcomes(report) == {
            "a.md": SyncOutcome.FETCH_FAILED,
            "b.md": SyncOutcome.CACHE_MISS_FETCHED,
        }
        assert (target / "b.md").read_bytes() == b"beta\n"
        assert report.elapsed_seconds < 1.5

    def test_manifest_failure(self, syncer, memory_fetcher, target):
        memory_fetcher.fail_manifest = True

        report = syncer.sync(["core", "python"])

        assert report.results == []
        assert [(e.kind, e.category) for e in report.errors] == [
            (ErrorKind.FETCH_FAILED, "core"),
            (ErrorKind.FETCH_FAILED, "python"),
        ]
        assert not report.success
        assert not target.exists()

    def test_recurring_failures_in_metrics(self, memory_fetcher, target):
        metrics = MetricsCollector()
        memory_fetcher.fail_paths.update({"a.md", "b.md"})

        FileSyncer(memory_fetcher, target, metrics=metrics).sync(["core"])

        hint = metrics.remediation_guidance()[0]
        assert hint.pattern == "fetch_failed:core"
        assert hint.severity == "high"


class TestCacheDegradation:

    def test_unavailable_cache_falls_back_to_fetch(self, memory_fetcher, target, cache):
        error = CacheUnavailableError(cache.root, OSError(28, "No space left on device"))
        with patch.object(cache, "get", side_effect=error) as get, patch.object(cache, "put") as put:
            report = FileSyncer(memory_fetcher, target, cache=cache).sync(["core"], SyncOptions(max_workers=1))

        assert report.written == 2
        assert (target / "a.md").read_bytes() == b"alpha\n"
        assert not report.cache_enabled
        assert get.call_count == 1
        put.assert_not_called()
        assert [e.kind for e in report.errors] == [ErrorKind.CACHE_UNAVAILABLE]
        assert report.state_persisted

    def test_failed_put_disables_cache(self, memory_fetcher, target, cache):
        error = CacheUnavailableError(cache.root, OSError("read-only file system"))
        with patch.object(cache, "put", side_effect=error):
            report = FileSyncer(memory_fetcher, target, cache=cache).sync(["core"], SyncOptions(max_workers=1))

        assert report.written == 2
        assert not report.cache_enabled

    def test_corrupt_entry_is_refetched(self, memory_fetcher, tmp_path, cache):
        FileSyncer(memory_fetcher, tmp_path / "one", cache=cache).sync(["core"])
        obj = cache.path_for(compute_digest(b"alpha\n"))
        obj.chmod(0o644)
        obj.write_bytes(b"bit rot\n")
        memory_fetcher.fetch_calls.clear()

        report = FileSyncer(memory_fetcher, tmp_path / "two", cache=cache).sync(["core"])

        assert outcomes(report) == {
            "a.md": SyncOutcome.CACHE_MISS_FETCHED,
            "b.md": SyncOutcome.CACHE_HIT,
        }
        assert (tmp_path / "two" / "a.md").read_bytes() == b"alpha\n"
        assert memory_fetcher.fetch_calls == ["a.md"]
        assert ErrorKind.CACHE_CORRUPTION in [e.kind for e in report.errors]
        assert cache.get(compute_digest(b"alpha\n")) == b"alpha\n"


class TestTargetErrors:

    def test_target_not_creatable(self, memory_fetcher, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")

        with pytest.raises(TargetWriteError) as exc_info:
            FileSyncer(memory_fetcher, blocker / "docs").sync(["core"])

        assert isinstance(exc_info.value.cause, OSError)

    def test_file_write_failure_aborts(self, syncer, target):
        error = PermissionError(13, "Permission denied")
        with patch("leyline_sync.syncer.atomic_write_bytes", side_effect=error):
            with pytest.raises(TargetWriteError) as exc_info:
                syncer.sync(["core"])

        assert exc_info.value.cause is error
        assert "Permission denied" in str(exc_info.value)
        assert not state_path(target).exists()


class TestCancellation:

    def test_cancel_before_start(self, syncer, memory_fetcher, target):
        cancel = threading.Event()
        cancel.set()

        report = syncer.sync(["core"], SyncOptions(cancel_event=cancel))

        assert report.cancelled
        assert report.results == []
        assert memory_fetcher.fetch_calls == []
        assert not state_path(target).exists()

    def test_cancel_mid_run(self, memory_fetcher, target, cache):
        cancel = threading.Event()
        original_fetch = memory_fetcher.fetch

        def fetch_then_cancel(descriptor):
            cancel.set()
            return original_fetch(descriptor)

        memory_fetcher.fetch = fetch_then_cancel
        report = FileSyncer(memory_fetcher, target, cache=cache).sync(
            ["core"], SyncOptions(max_workers=1, cancel_event=cancel)
        )

        assert report.cancelled
        assert [r.path for r in report.results] == ["a.md"]
        assert not report.state_persisted
        assert not state_path(target).exists()


class TestStatePersistence:

    def test_state_write_failure_removes_stale_state(self, syncer, memory_fetcher, target):
        syncer.sync(["core"])
        assert state_path(target).exists()
        memory_fetcher.files["a.md"] = b"alpha v2\n"

        error = StateWriteFailedError(state_path(target), OSError("disk full"))
        with patch("leyline_sync.syncer.save_state", side_effect=error):
            report = syncer.sync(["core"])

        assert not report.state_persisted
        assert [e.kind for e in report.errors] == [ErrorKind.STATE_WRITE_FAILED]
        assert not state_path(target).exists()
        assert (target / "a.md").read_bytes() == b"alpha v2\n"

    def test_state_file_is_json(self, syncer, target):
        syncer.sync(["core"])
        data = json.loads(state_path(target).read_text())
        assert data["schema_version"] == 1
        assert "a.md" in data["files"]


class TestEviction:

    def test_evicts_after_successful_sync(self, memory_fetcher, target, tmp_path):
        cache = CacheStore(tmp_path / "cache", policy=EvictionPolicy(max_bytes=10 ** 6))
        with patch.object(cache, "maybe_evict", return_value=0) as maybe_evict:
            FileSyncer(memory_fetcher, target, cache=cache).sync(["core"])
        maybe_evict.assert_called_once()

    def test_no_eviction_after_failed_sync(self, memory_fetcher, target, tmp_path):
        cache = CacheStore(tmp_path / "cache", policy=EvictionPolicy(max_bytes=10 ** 6))
        memory_fetcher.fail_paths.add("a.md")
        with patch.object(cache, "maybe_evict", return_value=0) as maybe_evict:
            FileSyncer(memory_fetcher, target, cache=cache).sync(["core"])
        maybe_evict.assert_not_called()

    def test_eviction_keeps_current_session(self, memory_fetcher, target, tmp_path):
        cache = CacheStore(tmp_path / "cache", policy=EvictionPolicy(max_bytes=0))
        FileSyncer(memory_fetcher, target, cache=cache).sync(["core"])
        assert cache.stats().file_count == 2


class TestDirectoryCorpus:
    """Sync from an on-disk corpus tree with categories."""

    def test_categories_select_files(self, fetcher, target, cache):
        report = FileSyncer(fetcher, target, cache=cache).sync(["python"])

        written = sorted(r.path for r in report.results)
        assert written == [
            "bindings/categories/python/type-hints.md",
            "bindings/core/api-design.md",
            "tenets/simplicity.md",
            "tenets/testability.md",
        ]
        assert not (target / "bindings/categories/go").exists()
        assert load_state(target).categories == ["core", "python"]

    def test_metrics_counters(self, fetcher, target, cache):
        metrics = MetricsCollector()
        FileSyncer(fetcher, target, cache=cache, metrics=metrics).sync(["core"])

        assert metrics.counter("sync_outcome", {"outcome": "cache_miss_fetched"}) == 3
        assert metrics.counter("cache_misses") == 3
        assert metrics.summary().per_operation_stats["sync_file"].count == 3
        assert "manifest" in metrics.summary().per_operation_stats
