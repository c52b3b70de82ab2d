"""Tests for the attachsync command-line interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from attachsync import __version__
from attachsync.cli import cli
from attachsync.core.types import AttachmentSource, JobType
from attachsync.server.database import Database
from attachsync.sync.engine import SyncEngine

from tests.conftest import FakeTracker


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def db_file(tmp_path: Path) -> Path:
    """A database with one attachment and one queued job."""
    path = tmp_path / "cli.db"
    db = Database(path)
    db.create_attachment("att-1", "a" * 64, "a.txt", 10, "https://t/att-1", AttachmentSource.LOCAL)
    db.enqueue_job(12, JobType.RECONCILE)
    db.close()
    return path


@pytest.fixture
def use_engine(monkeypatch: pytest.MonkeyPatch, engine: SyncEngine) -> SyncEngine:
    """Make remote-backed commands use the engine wired to the fake tracker."""
    monkeypatch.setattr("attachsync.cli._build_engine", lambda db_path, storage_path: engine)
    return engine


class TestCli:
    """Tests for CLI commands."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_stats(self, runner: CliRunner, db_file: Path) -> None:
        result = runner.invoke(cli, ["stats", "--db-path", str(db_file)])

        assert result.exit_code == 0
        assert "Attachments:      1 (10 bytes)" in result.output
        assert "QUEUED" in result.output

    def test_stats_json(self, runner: CliRunner, db_file: Path) -> None:
        result = runner.invoke(cli, ["stats", "--db-path", str(db_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["attachments"]["by_status"] == {"PENDING": 1}
        assert data["jobs"] == {"QUEUED": 1}

    def test_stats_missing_database(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["stats", "--db-path", str(tmp_path / "nope.db")])

        assert result.exit_code == 1
        assert "Database not found" in result.output

    def test_cleanup_sessions(self, runner: CliRunner, db_file: Path) -> None:
        result = runner.invoke(cli, ["cleanup-sessions", "--db-path", str(db_file)])

        assert result.exit_code == 0
        assert "No expired upload sessions." in result.output

    def test_reconcile_requires_remote_settings(
        self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        for name in ("ORG_URL", "PROJECT", "PAT"):
            monkeypatch.delenv(f"ATTACHSYNC_{name}", raising=False)

        result = runner.invoke(
            cli,
            [
                "reconcile", "12",
                "--db-path", str(tmp_path / "x.db"),
                "--storage-path", str(tmp_path / "blobs"),
            ],
        )

        assert result.exit_code == 1
        assert "Missing remote service settings" in result.output

    def test_reconcile(self, runner: CliRunner, use_engine: SyncEngine, tracker: FakeTracker) -> None:
        tracker.add_remote_attachment(12, b"remote", "remote.txt")

        result = runner.invoke(cli, ["reconcile", "12"])

        assert result.exit_code == 0
        assert "Work item 12: 1 added, 0 already synced, 0 removed, 0 failed" in result.output

    def test_reconcile_failure_exit_code(self, runner: CliRunner, use_engine: SyncEngine, tracker: FakeTracker) -> None:
        tracker.fail("GET", "/workitems/12", 404)

        result = runner.invoke(cli, ["reconcile", "12"])

        assert result.exit_code == 1
        assert "Work item 12: error" in result.output

    def test_run_jobs(self, runner: CliRunner, use_engine: SyncEngine, tracker: FakeTracker) -> None:
        tracker.add_remote_attachment(12, b"remote", "remote.txt")
        use_engine.db.enqueue_job(12, JobType.RECONCILE)

        result = runner.invoke(cli, ["run-jobs"])

        assert result.exit_code == 0
        assert "Processed 1 jobs: 1 succeeded, 0 requeued, 0 failed." in result.output
