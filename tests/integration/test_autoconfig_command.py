"""Integration tests for the autoconfig commands.

Runs the CLI against fixture cgroup and meminfo files, with os.execvp
mocked so nothing is actually exec'd.
"""

import json

import pytest
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from pgimg.cli import app
from pgimg.core.config import AutoConfigEnv


runner = CliRunner()

GIB = 1024 ** 3


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    """Keep POSTGRES_* variables from the host out of the tests."""
    for field in AutoConfigEnv.model_fields.values():
        monkeypatch.delenv(field.alias, raising=False)


@pytest.fixture
def cgroup(tmp_path: Path) -> Path:
    root = tmp_path / "cgroup"
    root.mkdir()
    (root / "memory.max").write_text(f"{2 * GIB}\n")
    (root / "cpu.max").write_text("max 100000\n")
    return root


@pytest.fixture
def meminfo(tmp_path: Path) -> Path:
    path = tmp_path / "meminfo"
    path.write_text("MemTotal:       8192000 kB\n")
    return path


@pytest.fixture
def mock_execvp() -> Generator[MagicMock, None, None]:
    with patch("pgimg.commands.autoconfig.os.execvp") as mock:
        yield mock


def _run(cgroup: Path, meminfo: Path, *args: str, env: dict | None = None):
    return runner.invoke(
        app,
        [
            "autoconfig", "run",
            "--upstream", "/usr/local/bin/docker-entrypoint.sh",
            "--cgroup-root", str(cgroup),
            "--meminfo", str(meminfo),
            *args,
        ],
        env=env,
    )


def _exec_argv(mock_execvp: MagicMock) -> list[str]:
    mock_execvp.assert_called_once()
    file, argv = mock_execvp.call_args[0]
    assert file == argv[0]
    return argv


class TestAutoconfigRun:
    """Tests for the container entrypoint wrapper."""

    def test_manual_memory(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x", "POSTGRES_MEMORY": "1536"})

        assert result.exit_code == 0, result.output
        assert "[AUTO-CONFIG] RAM: 1536MB (manual)" in result.output
        argv = _exec_argv(mock_execvp)
        assert argv[:2] == ["/usr/local/bin/docker-entrypoint.sh", "postgres"]
        assert "shared_buffers=384MB" in argv
        assert "max_connections=120" in argv

    def test_cgroup_memory(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x"})

        assert result.exit_code == 0, result.output
        assert "RAM: 2048MB (cgroup-v2)" in result.output
        assert "shared_buffers=512MB" in _exec_argv(mock_execvp)

    def test_cpu_quota(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        (cgroup / "cpu.max").write_text("200000 100000\n")
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x"})

        assert "CPU: 2 cores (cgroup-v2)" in result.output
        argv = _exec_argv(mock_execvp)
        assert "max_worker_processes=4" in argv
        assert "max_parallel_workers=2" in argv

    def test_meminfo_fallback(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        (cgroup / "memory.max").write_text("max\n")
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x"})
        assert "RAM: 8000MB (meminfo)" in result.output

    def test_invalid_memory_override(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        """A bad POSTGRES_MEMORY is reported and cgroup detection takes over."""
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x", "POSTGRES_MEMORY": "2GB"})

        assert result.exit_code == 0, result.output
        assert "[AUTO-CONFIG] ERROR: POSTGRES_MEMORY" in result.output
        assert "RAM: 2048MB (cgroup-v2)" in result.output

    def test_below_minimum(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        (cgroup / "memory.max").write_text(f"{256 * 1024 * 1024}\n")
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x"})

        assert result.exit_code == 1
        assert "FATAL" in result.output
        assert "minimum 512MB" in result.output
        mock_execvp.assert_not_called()

    def test_missing_password(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo)

        assert result.exit_code == 1
        assert "POSTGRES_PASSWORD is required" in result.output
        mock_execvp.assert_not_called()

    def test_invalid_bind_ip(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x", "POSTGRES_BIND_IP": "nope"})
        assert result.exit_code == 1
        assert "Invalid POSTGRES_BIND_IP" in result.output

    def test_skip_autoconfig(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, env={"POSTGRES_SKIP_AUTOCONFIG": "true"})

        assert result.exit_code == 0, result.output
        assert "[AUTO-CONFIG] Skipped (POSTGRES_SKIP_AUTOCONFIG=true)" in result.output
        assert _exec_argv(mock_execvp) == ["/usr/local/bin/docker-entrypoint.sh", "postgres"]

    def test_other_command_passed_through(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, "bash")

        assert result.exit_code == 0, result.output
        assert "[AUTO-CONFIG]" not in result.output
        assert _exec_argv(mock_execvp) == ["/usr/local/bin/docker-entrypoint.sh", "bash"]

    def test_postgres_flags_passed_through(
        self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock, tmp_path: Path
    ):
        """Options after the container command belong to postgres, not pgimg."""
        conf = tmp_path / "postgresql.conf"
        result = _run(
            cgroup, meminfo,
            "postgres", "-c", "fsync=off", f"--config-file={conf}", "--dry-run", "-v",
            env={"POSTGRES_PASSWORD": "x"},
        )

        assert result.exit_code == 0, result.output
        argv = _exec_argv(mock_execvp)
        assert argv[:7] == [
            "/usr/local/bin/docker-entrypoint.sh", "postgres",
            "-c", "fsync=off", f"--config-file={conf}", "--dry-run", "-v",
        ]
        assert "shared_buffers=512MB" in argv
        assert not conf.exists()
        assert not list(tmp_path.glob("postgresql.conf*"))

    def test_leading_postgres_flag(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, "-c", "fsync=off", env={"POSTGRES_PASSWORD": "x"})

        assert result.exit_code == 0, result.output
        argv = _exec_argv(mock_execvp)
        assert argv[:4] == ["/usr/local/bin/docker-entrypoint.sh", "postgres", "-c", "fsync=off"]

    def test_help_after_command_goes_to_command(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(cgroup, meminfo, "postgres", "--help", env={"POSTGRES_PASSWORD": "x"})

        assert result.exit_code == 0, result.output
        assert _exec_argv(mock_execvp)[:3] == ["/usr/local/bin/docker-entrypoint.sh", "postgres", "--help"]

    def test_config_file(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock, tmp_path: Path):
        target = tmp_path / "conf.d" / "autoconfig.conf"
        result = _run(cgroup, meminfo, "--config-file", str(target), env={"POSTGRES_PASSWORD": "x"})

        assert result.exit_code == 0, result.output
        assert "shared_buffers = '512MB'" in target.read_text()

    def test_dry_run(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        result = _run(
            cgroup, meminfo, "--dry-run",
            env={"POSTGRES_PASSWORD": "x", "DISABLE_DATA_CHECKSUMS": "true"},
        )

        assert result.exit_code == 0, result.output
        assert "[DRY-RUN]" in result.output
        assert "POSTGRES_INITDB_ARGS=--no-data-checksums" in result.output
        mock_execvp.assert_not_called()

    def test_exec_failure(self, cgroup: Path, meminfo: Path, mock_execvp: MagicMock):
        mock_execvp.side_effect = FileNotFoundError(2, "No such file or directory")
        result = _run(cgroup, meminfo, env={"POSTGRES_PASSWORD": "x"})

        assert result.exit_code == 1
        assert "cannot exec" in result.output


class TestAutoconfigShow:
    """Tests for previewing the sizing decision."""

    def _show(self, cgroup: Path, meminfo: Path, *args: str):
        return runner.invoke(
            app,
            ["autoconfig", "show", "--cgroup-root", str(cgroup), "--meminfo", str(meminfo), *args],
        )

    def test_table(self, cgroup: Path, meminfo: Path):
        result = self._show(cgroup, meminfo, "--memory", "1536")

        assert result.exit_code == 0, result.output
        assert "1536 MB (manual)" in result.output
        assert "shared_buffers" in result.output
        assert "384MB" in result.output

    def test_detected(self, cgroup: Path, meminfo: Path):
        result = self._show(cgroup, meminfo)
        assert "2048 MB (cgroup-v2)" in result.output

    def test_json(self, cgroup: Path, meminfo: Path):
        result = self._show(cgroup, meminfo, "--memory", "4g", "--cpus", "2", "--format", "json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["ram_mb"] == 4096
        assert data["ram_source"] == "manual"
        assert data["cpu_cores"] == 2
        assert data["cpu_source"] == "manual"
        assert data["settings"]["shared_buffers"] == "1GB"
        assert data["settings"]["max_connections"] == "200"
        assert data["settings"]["max_worker_processes"] == "4"

    def test_conf(self, cgroup: Path, meminfo: Path):
        result = self._show(cgroup, meminfo, "--format", "conf", "--preload", "pg_stat_statements")

        assert result.exit_code == 0, result.output
        assert "shared_buffers = '512MB'" in result.output
        assert "shared_preload_libraries = 'pg_stat_statements'" in result.output

    def test_below_minimum(self, cgroup: Path, meminfo: Path):
        result = self._show(cgroup, meminfo, "--memory", "256m")
        assert result.exit_code == 9
        assert "minimum 512MB" in result.output

    def test_invalid_memory(self, cgroup: Path, meminfo: Path):
        result = self._show(cgroup, meminfo, "--memory", "lots")
        assert result.exit_code == 3
        assert "Invalid memory size" in result.output
