"""Options and setup shared by the image test suites."""

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer

from pgimg.commands import handle_error
from pgimg.core import (
    CommandExecutor,
    ExecutionContext,
    PgImgError,
    ResultRecorder,
    console,
    create_context,
)
from pgimg.core.validation import validate_container_name
from pgimg.services.docker import DockerService
from pgimg.services.harness import TestHarness


ImageArgument = Annotated[
    Optional[str],
    typer.Argument(help="Image tag to test (default: POSTGRES_IMAGE or harness.image)."),
]

ImageOption = Annotated[
    Optional[str],
    typer.Option("--image", "-i", help="Image tag to test (same as the positional argument)."),
]

ContainerOption = Annotated[
    Optional[str],
    typer.Option(
        "--container",
        help="Run against an existing container instead of starting a new one.",
    ),
]

ResultsDirOption = Annotated[
    Optional[Path],
    typer.Option(
        "--results-dir",
        help="Append JSON Lines results to <dir>/<suite>.jsonl (default: harness.results_dir).",
        file_okay=False,
    ),
]

NoResultsOption = Annotated[
    bool,
    typer.Option("--no-results", help="Do not write a results file.", is_flag=True),
]


@dataclass
class SuiteSession:
    """Everything a suite command needs to run cases."""

    ctx: ExecutionContext
    docker: DockerService
    harness: TestHarness
    recorder: ResultRecorder
    image: str


def start_session(
    suite: str,
    *,
    image: Optional[str],
    image_option: Optional[str],
    container: Optional[str],
    results_dir: Optional[Path],
    no_results: bool,
    config: Optional[Path],
    verbose: int,
    no_color: bool,
    require_image: bool = True,
) -> SuiteSession:
    """Create the context, check docker and build a harness for a suite.

    Exits with the error's exit code when prerequisites are missing.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config
        resolved_image = app_config.resolve_image(image_option or image)
        if container:
            validate_container_name(container)

        executor = CommandExecutor(ctx)
        docker = DockerService(ctx, executor)
        docker.check_available()
        if require_image and not container:
            docker.require_image(resolved_image)
    except PgImgError as e:
        handle_error(e)

    if no_results:
        target_dir = None
    else:
        target_dir = results_dir or app_config.harness.results_dir
    recorder = ResultRecorder(suite, target_dir)

    harness = TestHarness(
        ctx,
        docker,
        resolved_image,
        config=app_config.harness,
        recorder=recorder,
        reuse_container=container,
        prefix=f"pgimg-{suite}",
    )

    console.rule(f"{suite} tests")
    console.print(f"  Image:     {resolved_image}")
    if container:
        console.print(f"  Container: {container} (reused)")
    if recorder.path is not None:
        console.print(f"  Results:   {recorder.path}")
    console.print()

    return SuiteSession(
        ctx=ctx,
        docker=docker,
        harness=harness,
        recorder=recorder,
        image=resolved_image,
    )


def finish(session: SuiteSession) -> None:
    """Print the suite summary and exit 0 when every case passed, 1 otherwise."""
    recorder = session.recorder
    console.print()
    console.operation_summary(
        f"{recorder.suite} tests",
        recorder.all_passed,
        {
            "Passed": recorder.passed,
            "Failed": recorder.failed,
            "Total": len(recorder.results),
        },
    )
    if not recorder.all_passed:
        raise typer.Exit(1)
