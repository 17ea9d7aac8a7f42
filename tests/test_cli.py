"""Tests for the command-line interface."""

import json
import logging
import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import git
import pytest
from click.testing import CliRunner

from commit_siphon.__main__ import __version__, cli
from commit_siphon.config import MIN_FILE_SIZE_LIMIT
from commit_siphon.ingest.coordinator import RunSummary
from commit_siphon.ingest.state import RunState, Stage
from commit_siphon.store.loader import PreconditionError


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_process_state():
    """Undo signal handlers and log handlers installed by the ingest command."""
    handlers = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in handlers.items():
        signal.signal(sig, handler)
    root_logger = logging.getLogger("commit_siphon")
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()


def write_config(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
database:
  hostname: localhost
  username: siphon
  dbname: history
state_db: {tmp_path / "state.db"}
log_dir: {tmp_path / "logs"}
{extra}
"""
    )
    return path


class TestVersion:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestExtract:
    """Tests for the extract command."""

    def test_prints_repository_json(self, runner: CliRunner, git_repo: git.Repo) -> None:
        result = runner.invoke(cli, ["extract", git_repo.working_tree_dir])

        assert result.exit_code == 0, result.output
        document = json.loads(result.stdout)
        assert document["name"] == "project"
        assert document["vcs"] == "git"
        assert document["clone_url"] == "https://example.com/project.git"
        assert len(document["commits"]) == 2
        assert "diff_delta" not in document["commits"][0]

    def test_deltas_and_patches(self, runner: CliRunner, git_repo: git.Repo) -> None:
        result = runner.invoke(cli, ["extract", "--deltas", "--patches", git_repo.working_tree_dir])

        assert result.exit_code == 0, result.output
        commit = json.loads(result.stdout)["commits"][0]
        assert all("patch" in delta for delta in commit["diff_delta"])

    def test_patches_require_deltas(self, runner: CliRunner, git_repo: git.Repo) -> None:
        result = runner.invoke(cli, ["extract", "--patches", git_repo.working_tree_dir])
        assert result.exit_code == 2
        assert "--deltas" in result.output

    def test_merge_into_document(self, runner: CliRunner, git_repo: git.Repo, tmp_path: Path) -> None:
        analysis = tmp_path / "analysis.json"
        analysis.write_text(json.dumps({"languages": ["python"]}))

        result = runner.invoke(cli, ["extract", "--merge", str(analysis), git_repo.working_tree_dir])

        assert result.exit_code == 0, result.output
        document = json.loads(result.stdout)
        assert document["languages"] == ["python"]
        assert document["repository"]["name"] == "project"

    def test_merge_from_stdin(self, runner: CliRunner, git_repo: git.Repo) -> None:
        result = runner.invoke(
            cli,
            ["extract", "--merge", "stdin", git_repo.working_tree_dir],
            input=json.dumps({"loc": 12}),
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["loc"] == 12

    def test_not_a_repository(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["extract", str(tmp_path)])
        assert result.exit_code == 1

    def test_file_size_limit_clamped(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch(
            "commit_siphon.__main__.materialize", side_effect=RuntimeError("stop")
        ) as mock_materialize:
            result = runner.invoke(cli, ["extract", "--file-size-limit", "0.0001", str(tmp_path)])

        assert result.exit_code == 1
        assert mock_materialize.call_args.args[2] == MIN_FILE_SIZE_LIMIT


class TestIngest:
    """Tests for the ingest command."""

    def test_database_settings_required(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = tmp_path / "config.yaml"
        config_path.write_text(f"log_dir: {tmp_path / 'logs'}\n")

        result = runner.invoke(cli, ["ingest", "-c", str(config_path), str(tmp_path)])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_bulk_copy_with_deltas_rejected(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path, "data:\n  commit_deltas: true\n")

        result = runner.invoke(cli, ["ingest", "-c", str(config_path), "--bulk-copy", str(tmp_path)])

        assert result.exit_code == 1
        assert "bulk copy" in result.output

    def test_runs_coordinator(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path)
        summary = RunSummary(discovered=3, loaded=2, failed=1, commits=40)

        with (
            patch("commit_siphon.__main__.PostgresPool") as mock_pool,
            patch("commit_siphon.__main__.IngestionCoordinator") as mock_coordinator,
        ):
            mock_coordinator.return_value.run.return_value = summary
            result = runner.invoke(
                cli, ["ingest", "-c", str(config_path), "-d", "1", "-w", "3", str(tmp_path)]
            )

        assert result.exit_code == 0, result.output
        assert "2 loaded, 1 failed" in result.output
        assert "40 inserted" in result.output
        mock_pool.assert_called_once()
        assert mock_pool.call_args.kwargs["max_connections"] == 5
        config = mock_coordinator.call_args.args[0]
        assert config.ingest.workers == 3
        mock_coordinator.return_value.run.assert_called_once_with(tmp_path, 1)

    def test_verbose_logs_at_debug(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path)

        with (
            patch("commit_siphon.__main__.PostgresPool", MagicMock()),
            patch("commit_siphon.__main__.IngestionCoordinator") as mock_coordinator,
        ):
            mock_coordinator.return_value.run.return_value = RunSummary()
            result = runner.invoke(cli, ["ingest", "-c", str(config_path), "-v", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert logging.getLogger("commit_siphon").level == logging.DEBUG
        assert (tmp_path / "logs" / "ingest.log").exists()

    def test_fatal_error_exits_nonzero(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path)

        with (
            patch("commit_siphon.__main__.PostgresPool", MagicMock()),
            patch("commit_siphon.__main__.IngestionCoordinator") as mock_coordinator,
        ):
            mock_coordinator.return_value.run.side_effect = PreconditionError("table commits is not empty")
            result = runner.invoke(cli, ["ingest", "-c", str(config_path), "--bulk-copy", str(tmp_path)])

        assert result.exit_code == 1
        assert "not empty" in result.output


class TestStatus:
    def test_no_state(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path)
        result = runner.invoke(cli, ["status", "-c", str(config_path)])
        assert result.exit_code == 0
        assert "No ingestion state recorded" in result.output

    def test_lists_repositories(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path)
        with RunState(tmp_path / "state.db") as state:
            state.record("/repos/alpha", Stage.LOADED, commits=12)
            state.record("/repos/notes", Stage.FAILED, error="VCS type not found")

        result = runner.invoke(cli, ["status", "-c", str(config_path)])

        assert result.exit_code == 0
        assert "/repos/alpha (12 commits)" in result.output
        assert "VCS type not found" in result.output

    def test_filter_by_stage(self, runner: CliRunner, tmp_path: Path) -> None:
        config_path = write_config(tmp_path)
        with RunState(tmp_path / "state.db") as state:
            state.record("/repos/alpha", Stage.LOADED)
            state.record("/repos/notes", Stage.FAILED, error="boom")

        result = runner.invoke(cli, ["status", "-c", str(config_path), "--stage", "failed"])

        assert "/repos/notes" in result.output
        assert "/repos/alpha" not in result.output
