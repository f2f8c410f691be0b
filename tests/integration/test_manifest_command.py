"""Integration tests for the manifest commands."""

import json

import pytest
from pathlib import Path

from typer.testing import CliRunner

from pgimg.cli import app


runner = CliRunner()

MANIFEST = Path(__file__).parents[2] / "docker" / "postgres" / "extensions.manifest.json"


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch) -> None:
    """Run without a pgimg.yaml from the working directory."""
    monkeypatch.chdir(tmp_path)


def _invoke(*args: str):
    return runner.invoke(app, ["manifest", *args, "--manifest", str(MANIFEST)])


class TestManifestList:
    """Tests for pgimg manifest list."""

    def test_list(self):
        result = _invoke("list")
        assert result.exit_code == 0, result.output
        assert "vector" in result.output
        assert "supautils" not in result.output

    def test_list_all(self):
        result = _invoke("list", "--all")
        assert result.exit_code == 0, result.output
        assert "supautils" in result.output

    def test_list_kind(self):
        result = _invoke("list", "--kind", "tool")
        assert result.exit_code == 0, result.output
        assert "pg_safeupdate" in result.output
        assert "pgbackrest" in result.output
        assert "vector" not in result.output


class TestManifestOrder:
    """Tests for pgimg manifest order."""

    def test_order(self):
        result = _invoke("order")
        assert result.exit_code == 0, result.output
        names = result.output.split()
        assert names.index("hypopg") < names.index("index_advisor")
        assert names.index("plpgsql") < names.index("plpgsql_check")
        assert names.index("pg_stat_statements") < names.index("wrappers")
        assert "supautils" not in names

    def test_order_creatable(self):
        result = _invoke("order", "--creatable")
        names = result.output.split()
        assert "vector" in names
        assert "pg_trgm" not in names
        assert "auto_explain" not in names
        assert "pg_plan_filter" not in names
        assert "wal2json" not in names
        assert names.index("postgis") < names.index("pgrouting")
        assert names[-1] == "vectorscale"


class TestManifestValidate:
    """Tests for pgimg manifest validate."""

    def test_shipped_manifest(self):
        result = _invoke("validate")
        assert result.exit_code == 0, result.output
        assert "Manifest is valid: 38 entries" in result.output

    def test_problems(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"entries": [
            {"name": "a", "kind": "extension", "source": {"type": "builtin"}, "dependencies": ["b"]},
            {"name": "b", "kind": "extension", "source": {"type": "builtin"}, "dependencies": ["a"]},
            {"name": "c", "kind": "extension", "source": {"type": "builtin"}, "dependencies": ["zzz"]},
        ]}))
        result = runner.invoke(app, ["manifest", "validate", "--manifest", str(path)])
        assert result.exit_code == 8
        assert "c: unknown dependency 'zzz'" in result.output
        assert "Dependency cycle" in result.output

    def test_missing_manifest(self, tmp_path: Path):
        result = runner.invoke(app, ["manifest", "validate", "--manifest", str(tmp_path / "nope.json")])
        assert result.exit_code == 8
        assert "Manifest not found" in result.output


class TestManifestPreload:
    """Tests for pgimg manifest preload."""

    def test_defaults(self):
        result = _invoke("preload")
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "pg_cron,pgaudit,pg_stat_statements,auto_explain"

    def test_all(self):
        result = _invoke("preload", "--all")
        libraries = result.output.strip().split(",")
        assert "pg_plan_filter" in libraries
        assert "timescaledb" in libraries
        assert "set_user" in libraries
        assert "pg_partman_bgw" in libraries
        assert "pg_partman" not in libraries
        assert "supautils" not in libraries
