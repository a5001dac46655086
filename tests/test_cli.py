"""CLI tests using in-process CliRunner."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from leyline_sync import cli
from leyline_sync.cli import app
from leyline_sync.state import state_path


@pytest.fixture
def runner():
    """Create a CliRunner for in-process testing."""
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Project directory with an isolated cache."""
    monkeypatch.setenv("LEYLINE_CACHE_DIR", str(tmp_path / "cache"))
    root = tmp_path / "project"
    root.mkdir()
    return root


def invoke(runner, *args):
    return runner.invoke(app, [str(a) for a in args])


class TestSync:

    def test_sync_writes_files(self, runner, project, corpus):
        result = invoke(runner, "sync", project, "--source", corpus, "-c", "python")

        assert result.exit_code == 0, result.output
        docs = project / "docs" / "leyline"
        assert (docs / "tenets" / "simplicity.md").exists()
        assert (docs / "bindings" / "categories" / "python" / "type-hints.md").exists()
        assert not (docs / "bindings" / "categories" / "go").exists()
        assert "4 written" in result.output

    def test_sync_uses_leyline_file(self, runner, project, corpus):
        (project / ".leyline").write_text("categories: [go]\ndocs_path: standards\n")

        result = invoke(runner, "sync", project, "--source", corpus)

        assert result.exit_code == 0, result.output
        assert (project / "standards" / "bindings" / "categories" / "go" / "error-wrapping.md").exists()

    def test_sync_json(self, runner, project, corpus):
        result = invoke(runner, "sync", project, "--source", corpus, "--no-cache", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["written"] == 3
        assert data["success"] is True
        assert data["state_persisted"] is True
        assert data["counts"] == {"cache_miss_fetched": 3}

    def test_second_sync_hits_nothing(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        result = invoke(runner, "sync", project, "--source", corpus, "--no-cache", "--json")
        assert json.loads(result.stdout)["counts"] == {"already_current": 3}

    def test_sync_stats(self, runner, project, corpus):
        result = invoke(runner, "sync", project, "--source", corpus, "--stats")
        assert result.exit_code == 0, result.output
        assert "sync_file" in result.output

    def test_no_cache(self, runner, project, corpus, tmp_path):
        result = invoke(runner, "sync", project, "--source", corpus, "--no-cache")
        assert result.exit_code == 0, result.output
        assert not (tmp_path / "cache" / "objects").exists()

    def test_manifest_failure_exits_nonzero(self, runner, project, tmp_path):
        result = invoke(runner, "sync", project, "--source", tmp_path / "missing")
        assert result.exit_code == 1
        assert not state_path(project / "docs" / "leyline").exists()

    def test_invalid_config(self, runner, project, corpus):
        (project / ".leyline").write_text("unknown_key: 1\n")
        result = invoke(runner, "sync", project, "--source", corpus)
        assert result.exit_code == 1
        assert "unknown_key" in result.output

    def test_invalid_category_option(self, runner, project, corpus):
        result = invoke(runner, "sync", project, "--source", corpus, "-c", "py thon")
        assert result.exit_code == 1
        assert not isinstance(result.exception, ValueError)
        assert "Invalid category name" in result.output
        assert not (project / "docs").exists()

    def test_invalid_category_in_leyline_file(self, runner, project, corpus):
        (project / ".leyline").write_text("categories: ['py thon']\n")
        result = invoke(runner, "sync", project, "--source", corpus)
        assert result.exit_code == 1
        assert "Invalid category name" in result.output

    def test_status_invalid_category(self, runner, project, corpus):
        result = invoke(runner, "status", project, "--source", corpus, "-c", "py thon")
        assert result.exit_code == 1
        assert "Invalid category name" in result.output

    def test_target_write_error(self, runner, project, corpus):
        (project / "docs").write_text("not a directory")
        result = invoke(runner, "sync", project, "--source", corpus)
        assert result.exit_code == 1
        assert "Sync failed" in result.output

    def test_conflict_exits_nonzero(self, runner, project, corpus):
        docs = project / "docs" / "leyline" / "tenets"
        docs.mkdir(parents=True)
        (docs / "simplicity.md").write_text("my own version\n")

        result = invoke(runner, "sync", project, "--source", corpus)

        assert result.exit_code == 1
        assert "tenets/simplicity.md" in result.output
        assert (docs / "simplicity.md").read_text() == "my own version\n"


class TestCategories:

    def test_lists_available(self, runner, project, corpus):
        (project / ".leyline").write_text("categories: [go]\n")

        result = invoke(runner, "categories", project, "--source", corpus)

        assert result.exit_code == 0, result.output
        assert "Available categories (3)" in result.output
        assert "✓ go" in result.output
        assert "python" in result.output

    def test_missing_source(self, runner, project, tmp_path):
        result = invoke(runner, "categories", project, "--source", tmp_path / "missing")
        assert result.exit_code == 1
        assert "Available categories" not in result.output


class TestStatusAndDiff:

    def test_status_clean(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        result = invoke(runner, "status", project, "--source", corpus)
        assert result.exit_code == 0, result.output
        assert "Everything up to date" in result.output

    def test_status_local_edit(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        (project / "docs" / "leyline" / "tenets" / "simplicity.md").write_text("edited\n")

        result = invoke(runner, "status", project, "--source", corpus)

        assert "Modified locally" in result.output
        assert "tenets/simplicity.md" in result.output

    def test_status_json(self, runner, project, corpus, write_corpus_file):
        invoke(runner, "sync", project, "--source", corpus)
        write_corpus_file("tenets/simplicity.md", "# Simplicity\n\nRevised.\n")

        result = invoke(runner, "status", project, "--source", corpus, "--json")

        data = json.loads(result.stdout)
        assert data["summary"] == {"unchanged": 2, "remote_updated": 1}

    def test_diff(self, runner, project, corpus, write_corpus_file):
        invoke(runner, "sync", project, "--source", corpus)
        write_corpus_file("tenets/simplicity.md", "# Simplicity\n\nRevised.\n")

        result = invoke(runner, "diff", project, "--source", corpus)

        assert result.exit_code == 0, result.output
        assert "tenets/simplicity.md" in result.output
        assert "Revised." in result.output


class TestUpdate:

    @pytest.fixture
    def conflicted(self, runner, project, corpus, write_corpus_file):
        invoke(runner, "sync", project, "--source", corpus)
        write_corpus_file("tenets/simplicity.md", "# Simplicity\n\nRemote edit.\n")
        local = project / "docs" / "leyline" / "tenets" / "simplicity.md"
        local.write_text("Local edit.\n")
        return local

    def test_update_blocked_by_conflict(self, runner, project, corpus, conflicted):
        result = invoke(runner, "update", project, "--source", corpus)

        assert result.exit_code == 1
        assert "Update aborted" in result.output
        assert conflicted.read_text() == "Local edit.\n"

    def test_update_force(self, runner, project, corpus, conflicted):
        result = invoke(runner, "update", project, "--source", corpus, "--force")

        assert result.exit_code == 0, result.output
        assert "Remote edit." in conflicted.read_text()

    def test_update_dry_run(self, runner, project, corpus, write_corpus_file):
        invoke(runner, "sync", project, "--source", corpus)
        write_corpus_file("tenets/testability.md", "# Testability\n\nNew text.\n")

        result = invoke(runner, "update", project, "--source", corpus, "--dry-run")

        assert result.exit_code == 0, result.output
        assert "Dry run" in result.output
        assert "New text." not in (project / "docs" / "leyline" / "tenets" / "testability.md").read_text()

    def test_update_uses_one_fetcher(self, runner, project, corpus, write_corpus_file):
        invoke(runner, "sync", project, "--source", corpus)
        write_corpus_file("tenets/testability.md", "# Testability\n\nNew text.\n")

        with patch("leyline_sync.cli._open_fetcher", wraps=cli._open_fetcher) as opened:
            result = invoke(runner, "update", project, "--source", corpus)

        assert result.exit_code == 0, result.output
        assert opened.call_count == 1
        assert "New text." in (project / "docs" / "leyline" / "tenets" / "testability.md").read_text()

    def test_update_up_to_date(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        result = invoke(runner, "update", project, "--source", corpus)
        assert result.exit_code == 0, result.output
        assert "Everything up to date" in result.output


class TestCacheCommands:

    def test_stats(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        result = invoke(runner, "cache", "stats", project)
        assert result.exit_code == 0, result.output
        assert "Objects" in result.output
        assert "Cache healthy" in result.output

    def test_evict_without_bounds(self, runner, project):
        result = invoke(runner, "cache", "evict", project)
        assert result.exit_code == 0, result.output
        assert "No eviction bounds configured" in result.output

    def test_evict_with_bounds(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        result = invoke(runner, "cache", "evict", project, "--max-bytes", "0")
        assert result.exit_code == 0, result.output
        assert "Evicted 3 object(s)" in result.output

    def test_clear(self, runner, project, corpus):
        invoke(runner, "sync", project, "--source", corpus)
        result = invoke(runner, "cache", "clear", project, "--yes")
        assert result.exit_code == 0, result.output
        assert "Removed 3 object(s)" in result.output
