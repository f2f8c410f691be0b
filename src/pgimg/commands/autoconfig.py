"""Auto-configuration commands.

Commands:
- pgimg autoconfig run [ARGS...]   (container entrypoint)
- pgimg autoconfig show            (preview the sizing decision)
"""

import json
import os
import shlex
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich import box
from rich.table import Table

from pgimg.commands import DryRunOption, VerboseOption, handle_error
from pgimg.core import (
    AutoConfigEnv,
    AutoConfigError,
    CommandExecutor,
    PgImgError,
    console,
    create_context,
)
from pgimg.core.config import UPSTREAM_ENTRYPOINT
from pgimg.core.validation import parse_memory_size
from pgimg.services.autoconfig import (
    DEFAULT_CGROUP_ROOT,
    DEFAULT_MEMINFO_PATH,
    LOG_TAG,
    AutoConfigDecision,
    AutoConfigService,
    ResourceDetector,
)


class OutputFormat(str, Enum):
    TABLE = "table"
    JSON = "json"
    CONF = "conf"


app = typer.Typer(
    name="autoconfig",
    help="Container resource detection and PostgreSQL sizing.",
    no_args_is_help=True,
)


def _get_service(
    ctx,
    cgroup_root: Path,
    meminfo: Path,
    upstream: str = UPSTREAM_ENTRYPOINT,
) -> AutoConfigService:
    executor = CommandExecutor(ctx)
    service = AutoConfigService(ctx, executor, upstream_entrypoint=upstream)
    service.detector = ResourceDetector(
        cgroup_root=cgroup_root,
        meminfo_path=meminfo,
        log=service.log,
    )
    return service


def _fatal(error: AutoConfigError) -> None:
    """Report a startup failure in the container log and exit 1."""
    console.tagged(LOG_TAG, error.message, stderr=True)
    for detail in error.details:
        console.tagged(LOG_TAG, detail, stderr=True)
    if error.hint:
        console.tagged(LOG_TAG, error.hint, stderr=True)
    raise typer.Exit(1)


@app.command(
    "run",
    # Everything from the container command on belongs to postgres
    context_settings={
        "allow_extra_args": True,
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
    },
)
def run_cmd(
    args: Annotated[
        Optional[list[str]],
        typer.Argument(help="Container command (default: postgres)."),
    ] = None,
    config_file: Annotated[
        Optional[Path],
        typer.Option(
            "--config-file",
            help="Also write the computed settings to this postgresql.conf fragment.",
            dir_okay=False,
        ),
    ] = None,
    upstream: Annotated[
        str,
        typer.Option("--upstream", help="Entrypoint to exec after configuring."),
    ] = UPSTREAM_ENTRYPOINT,
    cgroup_root: Annotated[
        Path,
        typer.Option("--cgroup-root", hidden=True),
    ] = DEFAULT_CGROUP_ROOT,
    meminfo: Annotated[
        Path,
        typer.Option("--meminfo", hidden=True),
    ] = DEFAULT_MEMINFO_PATH,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
) -> None:
    """Configure PostgreSQL for the container's resources, then exec the entrypoint.

    Detects RAM (POSTGRES_MEMORY, cgroup v2, /proc/meminfo) and CPU (cgroup
    v2 cpu.max, nproc), sizes memory and parallelism settings and passes
    them to postgres as -c arguments.

    Examples:

        # Dockerfile
        ENTRYPOINT ["pgimg", "autoconfig", "run"]
        CMD ["postgres"]

        # Preview what would be exec'd
        POSTGRES_PASSWORD=x pgimg autoconfig run --dry-run
    """
    ctx = create_context(dry_run=dry_run, verbose=verbose)
    service = _get_service(ctx, cgroup_root, meminfo, upstream)

    try:
        plan = service.plan(list(args or []), AutoConfigEnv(), config_file=config_file)
    except AutoConfigError as e:
        _fatal(e)
    except PgImgError as e:
        handle_error(e)

    if ctx.dry_run:
        for key, value in plan.env.items():
            console.dry_run_msg(f"set {key}={value}")
        console.dry_run_msg(f"exec {shlex.join(plan.argv)}")
        return

    os.environ.update(plan.env)
    try:
        os.execvp(plan.argv[0], plan.argv)
    except OSError as e:
        console.tagged(LOG_TAG, f"FATAL: cannot exec {plan.argv[0]}: {e}", stderr=True)
        raise typer.Exit(1)


def _display_decision(decision: AutoConfigDecision) -> None:
    console.print()
    console.print("[bold]Detected Resources[/bold]")
    console.print(f"  RAM:  {decision.ram_mb} MB ({decision.ram_source.value})")
    console.print(f"  CPU:  {decision.cpu_cores} cores ({decision.cpu_source.value})")
    console.print()

    table = Table(
        title="PostgreSQL Settings",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
    )
    table.add_column("Parameter", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    for name, value in decision.settings().items():
        table.add_row(name, value)
    console.print(table)


@app.command("show")
def show_cmd(
    memory: Annotated[
        Optional[str],
        typer.Option(
            "--memory",
            "-m",
            help="Memory to size for (e.g. 2048, 512m, 4g). Default: detect.",
        ),
    ] = None,
    cpus: Annotated[
        Optional[int],
        typer.Option("--cpus", help="CPU cores to size for. Default: detect.", min=1),
    ] = None,
    preload: Annotated[
        Optional[str],
        typer.Option("--preload", help="shared_preload_libraries override."),
    ] = None,
    output_format: Annotated[
        OutputFormat,
        typer.Option("--format", "-o", help="Output format.", case_sensitive=False),
    ] = OutputFormat.TABLE,
    cgroup_root: Annotated[
        Path,
        typer.Option("--cgroup-root", hidden=True),
    ] = DEFAULT_CGROUP_ROOT,
    meminfo: Annotated[
        Path,
        typer.Option("--meminfo", hidden=True),
    ] = DEFAULT_MEMINFO_PATH,
    verbose: VerboseOption = 0,
) -> None:
    """Show the settings auto-config would apply, without starting anything.

    Examples:

        # Size for the current machine or container
        pgimg autoconfig show

        # What would a 4GB / 2 CPU container get?
        pgimg autoconfig show --memory 4g --cpus 2

        # Render the postgresql.conf fragment
        pgimg autoconfig show --memory 8g --format conf
    """
    ctx = create_context(verbose=verbose)
    service = _get_service(ctx, cgroup_root, meminfo)

    try:
        overrides = {}
        if memory is not None:
            overrides["POSTGRES_MEMORY"] = str(parse_memory_size(memory))
        if preload is not None:
            overrides["POSTGRES_SHARED_PRELOAD_LIBRARIES"] = preload
        env = AutoConfigEnv(**overrides)
        decision = service.decide(env, cpu_override=cpus)
    except PgImgError as e:
        handle_error(e)

    if output_format == OutputFormat.JSON:
        payload = {
            "ram_mb": decision.ram_mb,
            "ram_source": decision.ram_source.value,
            "cpu_cores": decision.cpu_cores,
            "cpu_source": decision.cpu_source.value,
            "settings": decision.settings(),
        }
        console.print(json.dumps(payload, indent=2), markup=False, soft_wrap=True)
    elif output_format == OutputFormat.CONF:
        console.print(service.render_config(decision), markup=False, soft_wrap=True, end="")
    else:
        _display_decision(decision)
