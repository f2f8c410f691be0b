"""Integration tests for the root CLI and config commands."""

import pytest
from pathlib import Path

from typer.testing import CliRunner

from pgimg import __version__
from pgimg.cli import app


runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("POSTGRES_IMAGE", raising=False)
    monkeypatch.delenv("TEST_POSTGRES_PASSWORD", raising=False)


class TestRoot:
    """Tests for the root application."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"pgimg version {__version__}" in result.output

    def test_command_groups(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for group in ("autoconfig", "manifest", "test", "config"):
            assert group in result.output

    def test_test_suites_registered(self):
        result = runner.invoke(app, ["test", "--help"])
        assert result.exit_code == 0
        for suite in ("auto-config", "extensions", "hook-extensions", "regression", "wait", "aggregate"):
            assert suite in result.output


class TestConfigCommands:
    """Tests for pgimg config."""

    def test_init_and_validate(self, tmp_path: Path):
        path = tmp_path / "pgimg.yaml"
        result = runner.invoke(app, ["config", "init", "--config", str(path)])
        assert result.exit_code == 0, result.output
        assert path.exists()

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])
        assert result.exit_code == 0, result.output
        assert "Configuration is valid" in result.output

    def test_init_refuses_overwrite(self, tmp_path: Path):
        path = tmp_path / "pgimg.yaml"
        path.write_text("harness: {}\n")
        result = runner.invoke(app, ["config", "init", "--config", str(path)])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_validate_invalid(self, tmp_path: Path):
        path = tmp_path / "pgimg.yaml"
        path.write_text("harness:\n  ready_timeout: 0\n")
        result = runner.invoke(app, ["config", "validate", "--config", str(path)])
        assert result.exit_code == 2

    def test_validate_missing(self, tmp_path: Path):
        result = runner.invoke(app, ["config", "validate", "--config", str(tmp_path / "none.yaml")])
        assert result.exit_code == 1

    def test_show(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_IMAGE", "custom:tag")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0, result.output
        assert "custom:tag" in result.output

    def test_example(self):
        result = runner.invoke(app, ["config", "example"])
        assert result.exit_code == 0
        assert "harness:" in result.output
