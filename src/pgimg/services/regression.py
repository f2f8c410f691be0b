"""pg_regress-style extension regression tests.

Each test is a pair of files under the regression directory:
``sql/<name>.sql`` is fed to psql inside the container and the output is
compared with ``expected/<name>.out`` after both are normalized.
"""

import difflib
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from pgimg.core.exceptions import ConfigurationError, ExecutionError
from pgimg.services.docker import DEFAULT_DATABASE, DockerService


DIFFS_FILENAME = "regression.diffs"

_CRLF = re.compile(r"\r\n")
_PSQL_BANNER = re.compile(r"^psql \([^)]+\)\n", re.MULTILINE)
_PROMPT = re.compile(r"^postgres[=-][#>]\s*", re.MULTILINE)
_CONNECTED = re.compile(r"^You are now connected to database.*\n", re.MULTILINE)
_SSL = re.compile(r"^SSL connection.*\n", re.MULTILINE)
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")
_TRAILING_NEWLINES = re.compile(r"\n+$")
_FLOAT_EXPONENT = re.compile(r"(\d+(?:\.\d+)?)E([+-]?\d+)")
_FLOAT_TRAILING_ZEROS = re.compile(r"(\d+\.\d*[1-9])0+(?!\d)")
_COLUMN_SEPARATOR = re.compile(r"[ \t]+\|[ \t]+")
_LEADING_WS = re.compile(r"^[ \t]+", re.MULTILINE)
_PSQL_FILE_PREFIX = re.compile(r"^psql:[^:]+:\d+:\s+(ERROR|FATAL|WARNING|NOTICE):", re.MULTILINE)
_TIMING = re.compile(r"^Time: \d+\.\d+ ms\n", re.MULTILINE)
_ERROR_LINE = re.compile(r"^(?:ERROR|FATAL):  (.+)$", re.MULTILINE)


def normalize_output(output: str) -> str:
    """Normalize psql output so cosmetic differences don't fail a test."""
    text = _CRLF.sub("\n", output)
    text = _PSQL_BANNER.sub("", text)
    text = _PROMPT.sub("", text)
    text = _CONNECTED.sub("", text)
    text = _SSL.sub("", text)
    text = _TRAILING_WS.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    text = _TRAILING_NEWLINES.sub("\n", text)

    # 1.5E+10 and 1.5e+10 are the same number; so are 1.50 and 1.5
    text = _FLOAT_EXPONENT.sub(r"\1e\2", text)
    text = _FLOAT_TRAILING_ZEROS.sub(r"\1", text)

    text = _COLUMN_SEPARATOR.sub(" | ", text)
    text = _LEADING_WS.sub("", text)
    return text


def clean_psql_output(output: str) -> str:
    """Strip psql file prefixes and timing lines, then normalize."""
    text = _CRLF.sub("\n", output)
    text = _PSQL_FILE_PREFIX.sub(r"\1:", text)
    text = _TIMING.sub("", text)
    return normalize_output(text)


def extract_error_message(output: str) -> Optional[str]:
    """First ERROR/FATAL message in psql output."""
    match = _ERROR_LINE.search(output)
    return match.group(1) if match else None


@dataclass
class RegressionTest:
    name: str
    sql_file: Path
    expected_file: Path


@dataclass
class RegressionResult:
    """Outcome of one regression test."""
    name: str
    passed: bool
    actual: str = ""
    expected: str = ""
    diff: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


def discover_tests(
    regression_dir: Path,
    names: Optional[list[str]] = None,
) -> list[RegressionTest]:
    """Find sql/<name>.sql files that have a matching expected/<name>.out.

    Args:
        regression_dir: Directory holding sql/ and expected/
        names: Only these tests (default: all, sorted by name)

    Raises:
        ConfigurationError: If the directory or a requested test is missing
    """
    sql_dir = regression_dir / "sql"
    expected_dir = regression_dir / "expected"
    if not sql_dir.is_dir():
        raise ConfigurationError(
            f"Regression SQL directory not found: {sql_dir}",
            hint="Pass --regression-dir or set harness.regression_dir in pgimg.yaml",
        )

    if names:
        candidates = [sql_dir / f"{name}.sql" for name in names]
        missing = [p.stem for p in candidates if not p.exists()]
        if missing:
            raise ConfigurationError(
                "Unknown regression tests",
                details=[f"Missing: {sql_dir / (name + '.sql')}" for name in missing],
            )
    else:
        candidates = sorted(sql_dir.glob("*.sql"))

    return [
        RegressionTest(
            name=path.stem,
            sql_file=path,
            expected_file=expected_dir / f"{path.stem}.out",
        )
        for path in candidates
    ]


def unified_diff(expected: str, actual: str, name: str) -> str:
    return "".join(
        difflib.unified_diff(
            expected.splitlines(keepends=True),
            actual.splitlines(keepends=True),
            fromfile=f"expected/{name}.out",
            tofile=f"results/{name}.out",
        )
    )


class RegressionRunner:
    """Runs regression tests through psql inside a container."""

    def __init__(self, docker: DockerService, container: str, database: str = DEFAULT_DATABASE) -> None:
        self.docker = docker
        self.container = container
        self.database = database

    def run_test(self, test: RegressionTest) -> RegressionResult:
        start = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            expected = test.expected_file.read_text()
        except OSError as e:
            return RegressionResult(
                name=test.name,
                passed=False,
                error=f"Failed to read expected output file: {e}",
                duration_ms=elapsed(),
            )

        try:
            result = self.docker.psql_script(
                self.container,
                test.sql_file.read_text(),
                database=self.database,
            )
        except (OSError, ExecutionError) as e:
            return RegressionResult(
                name=test.name,
                passed=False,
                expected=normalize_output(expected),
                error=f"Failed to execute psql: {e}",
                duration_ms=elapsed(),
            )

        if not result.success:
            return RegressionResult(
                name=test.name,
                passed=False,
                actual=result.stdout,
                expected=normalize_output(expected),
                error=result.stderr.strip() or f"psql exited with code {result.return_code}",
                duration_ms=elapsed(),
            )

        actual = clean_psql_output(result.stdout)
        normalized_expected = normalize_output(expected)
        passed = actual == normalized_expected

        return RegressionResult(
            name=test.name,
            passed=passed,
            actual=actual,
            expected=normalized_expected,
            diff=None if passed else unified_diff(normalized_expected, actual, test.name),
            duration_ms=elapsed(),
        )

    def run(
        self,
        tests: list[RegressionTest],
        on_progress: Optional[Callable[[RegressionTest, int, int], None]] = None,
    ) -> list[RegressionResult]:
        results = []
        for index, test in enumerate(tests, start=1):
            if on_progress:
                on_progress(test, index, len(tests))
            results.append(self.run_test(test))
        return results


def format_diffs(results: list[RegressionResult]) -> str:
    """Combined report for failing tests, empty when all passed."""
    sections = []
    for result in results:
        if result.passed:
            continue
        header = (
            "==============================================\n"
            f"REGRESSION: {result.name}\n"
            "==============================================\n\n"
        )
        if result.error:
            body = f"ERROR: {result.error}\n\n"
        elif result.diff:
            body = result.diff + "\n\n"
        else:
            body = "Output mismatch (diff not available)\n\n"
        sections.append(header + body)
    return "".join(sections)


def write_diffs(results: list[RegressionResult], path: Path) -> Optional[Path]:
    """Write regression.diffs when something failed; returns the path written.

    A diffs file left over from an earlier run is removed when everything
    passed.
    """
    content = format_diffs(results)
    if not content:
        path.unlink(missing_ok=True)
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path
