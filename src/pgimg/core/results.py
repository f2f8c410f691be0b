"""Test result recording and aggregation.

Provides:
- One JSON line per test case, appended to <results-dir>/<suite>.jsonl
- File locking so parallel suites can share a directory
- Aggregation of every .jsonl file in a directory into one summary
- JUnit XML export for CI systems
"""

import fcntl
import json
import os
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Optional

from pgimg.core.exceptions import ConfigurationError
from pgimg.core.output import console


AGGREGATED_JSONL = "aggregated-results.jsonl"
AGGREGATED_JUNIT = "aggregated-results.xml"


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp, including the trailing Z JavaScript writes."""
    if not value:
        return datetime.now(timezone.utc)
    value = str(value)
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass
class CaseResult:
    """Outcome of a single test case."""
    suite: str
    name: str
    passed: bool
    duration_ms: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "suite": self.suite,
            "name": self.name,
            "passed": self.passed,
            "duration": self.duration_ms,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any], suite: str = "unknown") -> "CaseResult":
        """Build a result from a parsed JSON line."""
        timestamp = data.get("timestamp")
        return cls(
            suite=data.get("suite") or suite,
            name=str(data.get("name", "")),
            passed=bool(data.get("passed", False)),
            duration_ms=int(data.get("duration") or 0),
            error=data.get("error"),
            timestamp=_parse_timestamp(timestamp),
        )


class ResultRecorder:
    """Append-only JSON Lines recorder for one suite.

    A recorder without a directory keeps results in memory only.
    """

    def __init__(self, suite: str, results_dir: Optional[Path] = None) -> None:
        self.suite = suite
        self.results_dir = results_dir
        self.results: list[CaseResult] = []

    @property
    def path(self) -> Optional[Path]:
        if self.results_dir is None:
            return None
        return self.results_dir / f"{self.suite}.jsonl"

    def record(
        self,
        name: str,
        passed: bool,
        duration_ms: int = 0,
        error: Optional[str] = None,
    ) -> CaseResult:
        """Record a case result and append it to the suite file."""
        result = CaseResult(
            suite=self.suite,
            name=name,
            passed=passed,
            duration_ms=duration_ms,
            error=error,
        )
        self.results.append(result)

        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self._locked_append() as f:
                    f.write(result.to_json() + "\n")
            except OSError as e:
                console.warn(f"Failed to write results to {self.path}: {e}")

        return result

    @contextmanager
    def _locked_append(self) -> Generator:
        """Open the suite file for appending under an exclusive lock."""
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            with os.fdopen(fd, "a") as f:
                yield f
                f.flush()
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            raise

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.passed)

    @property
    def all_passed(self) -> bool:
        return self.failed == 0


@dataclass
class SuiteSummary:
    """Pass/fail counts for one suite."""
    name: str
    total: int = 0
    passed: int = 0
    failed: int = 0
    duration_ms: int = 0


@dataclass
class AggregateSummary:
    """Combined statistics across suites."""
    results: list[CaseResult]
    suites: dict[str, SuiteSummary]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def duration_ms(self) -> int:
        return sum(r.duration_ms for r in self.results)

    def pass_rate(self) -> float:
        """Percentage of passing cases (0.0 when there are none)."""
        if not self.total:
            return 0.0
        return self.passed / self.total * 100


def load_results(results_dir: Path) -> list[CaseResult]:
    """Read every .jsonl file in a directory.

    Aggregate output files are skipped so repeated runs don't double count.
    Malformed lines are reported and skipped.

    Raises:
        ConfigurationError: If the directory is missing or holds no results
    """
    if not results_dir.is_dir():
        raise ConfigurationError(f"Results directory not found: {results_dir}")

    files = sorted(
        p for p in results_dir.glob("*.jsonl") if p.name != AGGREGATED_JSONL
    )
    if not files:
        raise ConfigurationError(
            f"No .jsonl files found in directory: {results_dir}",
            hint="Run a test suite with --results-dir first",
        )

    results: list[CaseResult] = []
    for path in files:
        console.debug(f"Reading: {path.name}")
        for lineno, line in enumerate(path.read_text().splitlines(), start=1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise TypeError(f"expected a JSON object, got {type(data).__name__}")
                results.append(CaseResult.from_dict(data, suite=path.stem))
            except (ValueError, TypeError) as e:
                console.warn(f"Failed to parse {path.name}:{lineno}: {e}")
    return results


def aggregate(results: list[CaseResult]) -> AggregateSummary:
    """Group results by suite, preserving first-seen suite order."""
    suites: dict[str, SuiteSummary] = {}
    for result in results:
        summary = suites.setdefault(result.suite, SuiteSummary(name=result.suite))
        summary.total += 1
        summary.duration_ms += result.duration_ms
        if result.passed:
            summary.passed += 1
        else:
            summary.failed += 1
    return AggregateSummary(results=results, suites=suites)


def export_jsonl(summary: AggregateSummary, path: Path) -> None:
    """Write the combined results as JSON Lines, names prefixed by suite."""
    lines = []
    for result in summary.results:
        data = result.to_dict()
        data["name"] = f"[{result.suite}] {result.name}"
        data["suite"] = "aggregated"
        lines.append(json.dumps(data, default=str))
    path.write_text("\n".join(lines) + ("\n" if lines else ""))


def export_junit(summary: AggregateSummary, path: Path) -> None:
    """Write the combined results as JUnit XML, one testsuite per suite."""
    root = ET.Element(
        "testsuites",
        tests=str(summary.total),
        failures=str(summary.failed),
        time=f"{summary.duration_ms / 1000:.3f}",
    )
    for suite in summary.suites.values():
        suite_el = ET.SubElement(
            root,
            "testsuite",
            name=suite.name,
            tests=str(suite.total),
            failures=str(suite.failed),
            time=f"{suite.duration_ms / 1000:.3f}",
        )
        for result in summary.results:
            if result.suite != suite.name:
                continue
            case_el = ET.SubElement(
                suite_el,
                "testcase",
                name=result.name,
                classname=suite.name,
                time=f"{result.duration_ms / 1000:.3f}",
            )
            if not result.passed:
                failure = ET.SubElement(case_el, "failure", message=result.error or "failed")
                failure.text = result.error or ""

    tree = ET.ElementTree(root)
    ET.indent(tree)
    tree.write(path, encoding="utf-8", xml_declaration=True)
