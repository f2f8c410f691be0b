"""Merge per-suite JSON Lines results into one report."""

from enum import Enum
from pathlib import Path
from typing import Annotated

import typer
from rich import box
from rich.table import Table

from pgimg.commands import NoColorOption, VerboseOption, handle_error
from pgimg.core import PgImgError, console, create_context
from pgimg.core.results import (
    AGGREGATED_JSONL,
    AGGREGATED_JUNIT,
    aggregate as aggregate_results,
    export_jsonl,
    export_junit,
    load_results,
)


class ReportFormat(str, Enum):
    JSON = "json"
    JUNIT = "junit"


def aggregate(
    results_dir: Annotated[
        Path,
        typer.Argument(help="Directory holding <suite>.jsonl files.", file_okay=False),
    ],
    report_format: Annotated[
        ReportFormat,
        typer.Option(
            "--format",
            "-f",
            help="json writes aggregated-results.jsonl, junit writes aggregated-results.xml.",
            case_sensitive=False,
        ),
    ] = ReportFormat.JSON,
    fail_on_failures: Annotated[
        bool,
        typer.Option(
            "--fail-on-failures",
            help="Exit 1 when any aggregated case failed.",
            is_flag=True,
        ),
    ] = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Aggregate suite results and print statistics.

    Examples:

        pgimg test aggregate test-results

        pgimg test aggregate test-results --format junit
    """
    create_context(verbose=verbose, no_color=no_color)

    try:
        results = load_results(results_dir)
    except PgImgError as e:
        handle_error(e)

    summary = aggregate_results(results)
    console.success(f"Loaded {summary.total} test result(s) from {results_dir}")

    table = Table(
        title="Results by Suite",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
    )
    table.add_column("Suite", style="cyan", no_wrap=True)
    table.add_column("Tests", justify="right")
    table.add_column("Passed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Duration", justify="right", style="dim")
    for suite in summary.suites.values():
        table.add_row(
            suite.name,
            str(suite.total),
            str(suite.passed),
            str(suite.failed),
            f"{suite.duration_ms / 1000:.2f}s",
        )
    console.print(table)

    console.summary("Aggregate Statistics", {
        "Total tests": summary.total,
        "Passed": f"{summary.passed} ({summary.pass_rate():.1f}%)",
        "Failed": f"{summary.failed} ({100 - summary.pass_rate() if summary.total else 0:.1f}%)",
        "Total duration": f"{summary.duration_ms / 1000:.2f}s",
    })

    if report_format == ReportFormat.JUNIT:
        output = results_dir / AGGREGATED_JUNIT
        writer = export_junit
    else:
        output = results_dir / AGGREGATED_JSONL
        writer = export_jsonl

    try:
        writer(summary, output)
    except OSError as e:
        console.error(f"Failed to export results: {e}")
        raise typer.Exit(1)
    console.success(f"Exported {summary.total} test result(s) to {output}")

    if fail_on_failures and summary.failed:
        raise typer.Exit(1)
