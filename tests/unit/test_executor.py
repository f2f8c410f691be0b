"""Unit tests for the command executor."""

import subprocess

import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

from pgimg.core.context import ExecutionContext
from pgimg.core.exceptions import ExecutionError
from pgimg.core.executor import CommandExecutor


@pytest.fixture
def executor() -> CommandExecutor:
    return CommandExecutor(ExecutionContext())


class TestRun:
    """Tests for CommandExecutor.run."""

    @patch("pgimg.core.executor.subprocess.run")
    def test_success(self, mock_run: MagicMock, executor: CommandExecutor):
        mock_run.return_value = subprocess.CompletedProcess(["docker"], 0, "ok\n", "")
        result = executor.run(["docker", "info"])
        assert result.success
        assert result.stdout == "ok\n"

    @patch("pgimg.core.executor.subprocess.run")
    def test_failure_raises(self, mock_run: MagicMock, executor: CommandExecutor):
        mock_run.return_value = subprocess.CompletedProcess(["psql"], 2, "", "could not connect")
        with pytest.raises(ExecutionError) as exc:
            executor.run(["psql", "-c", "SELECT 1"])
        assert exc.value.return_code == 2
        assert exc.value.stderr == "could not connect"

    @patch("pgimg.core.executor.subprocess.run")
    def test_failure_unchecked(self, mock_run: MagicMock, executor: CommandExecutor):
        mock_run.return_value = subprocess.CompletedProcess(["psql"], 1, "", "boom")
        assert executor.run(["psql"], check=False).return_code == 1

    @patch("pgimg.core.executor.subprocess.run")
    def test_stdin_passed(self, mock_run: MagicMock, executor: CommandExecutor):
        mock_run.return_value = subprocess.CompletedProcess(["psql"], 0, "", "")
        executor.run(["psql"], input="SELECT 1;")
        assert mock_run.call_args.kwargs["input"] == "SELECT 1;"

    @patch("pgimg.core.executor.subprocess.run")
    def test_timeout(self, mock_run: MagicMock, executor: CommandExecutor):
        mock_run.side_effect = subprocess.TimeoutExpired(["docker"], 5)
        with pytest.raises(ExecutionError) as exc:
            executor.run(["docker", "logs", "c1"], timeout=5)
        assert "timed out" in str(exc.value)

    @patch("pgimg.core.executor.subprocess.run", side_effect=FileNotFoundError)
    def test_command_not_found(self, mock_run: MagicMock, executor: CommandExecutor):
        with pytest.raises(ExecutionError) as exc:
            executor.run(["pg_isready"])
        assert "Command not found: pg_isready" in str(exc.value)

    @patch("pgimg.core.executor.subprocess.run")
    def test_dry_run(self, mock_run: MagicMock):
        executor = CommandExecutor(ExecutionContext(dry_run=True))
        assert executor.run(["docker", "rm", "-f", "c1"]).success
        mock_run.assert_not_called()


class TestFiles:
    """Tests for atomic writes and backups."""

    def test_write_file(self, executor: CommandExecutor, tmp_path: Path):
        path = tmp_path / "conf.d" / "autoconfig.conf"
        executor.write_file(path, "work_mem = '4MB'\n")
        assert path.read_text() == "work_mem = '4MB'\n"
        assert [p.name for p in path.parent.iterdir()] == ["autoconfig.conf"]

    def test_write_file_dry_run(self, tmp_path: Path):
        executor = CommandExecutor(ExecutionContext(dry_run=True))
        path = tmp_path / "autoconfig.conf"
        executor.write_file(path, "x")
        assert not path.exists()

    def test_backup_file(self, executor: CommandExecutor, tmp_path: Path):
        path = tmp_path / "autoconfig.conf"
        path.write_text("old")
        backup = executor.backup_file(path)
        assert backup is not None
        assert backup.read_text() == "old"
        assert backup.name.startswith("autoconfig.conf.")
        assert backup.name.endswith(".bak")

    def test_backup_file_keeps_latest(self, executor: CommandExecutor, tmp_path: Path):
        path = tmp_path / "autoconfig.conf"
        path.write_text("current")
        (tmp_path / "autoconfig.conf.20200101_000000.bak").write_text("older")
        (tmp_path / "autoconfig.conf.20200102_000000.bak").write_text("old")
        (tmp_path / "other.conf.20200101_000000.bak").write_text("unrelated")

        backup = executor.backup_file(path, keep=1)

        remaining = sorted(p.name for p in tmp_path.glob("*.bak"))
        assert remaining == sorted([backup.name, "other.conf.20200101_000000.bak"])
        assert backup.read_text() == "current"

    def test_backup_missing(self, executor: CommandExecutor, tmp_path: Path):
        assert executor.backup_file(tmp_path / "missing.conf") is None
