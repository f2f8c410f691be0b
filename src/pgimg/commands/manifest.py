"""Extension manifest commands.

Commands:
- pgimg manifest list
- pgimg manifest order
- pgimg manifest validate
- pgimg manifest preload
"""

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich import box
from rich.markup import escape
from rich.table import Table

from pgimg.commands import ConfigOption, ManifestOption, NoColorOption, VerboseOption, handle_error
from pgimg.core import ExecutionContext, PgImgError, console, create_context
from pgimg.services.manifest import EntryKind, Manifest


app = typer.Typer(
    name="manifest",
    help="Inspect and validate the extension manifest.",
    no_args_is_help=True,
)


def _load_manifest(ctx: ExecutionContext, manifest: Optional[Path]) -> Manifest:
    path = manifest or ctx.config.harness.manifest_path
    console.verbose(f"Loading manifest: {path}")
    return Manifest.load(path)


@app.command("list")
def list_cmd(
    manifest: ManifestOption = None,
    kind: Annotated[
        Optional[EntryKind],
        typer.Option("--kind", "-k", help="Only entries of this kind.", case_sensitive=False),
    ] = None,
    show_disabled: Annotated[
        bool,
        typer.Option("--all", "-a", help="Include disabled entries.", is_flag=True),
    ] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """List manifest entries.

    Examples:

        pgimg manifest list

        pgimg manifest list --kind extension

        pgimg manifest list --all
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        loaded = _load_manifest(ctx, manifest)
    except PgImgError as e:
        handle_error(e)

    entries = loaded.entries if show_disabled else loaded.enabled_entries()
    if kind is not None:
        entries = [e for e in entries if e.kind == kind]

    if not entries:
        console.info("No matching manifest entries")
        return

    table = Table(
        title=f"Manifest Entries ({len(entries)})",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
    )
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Category", style="dim")
    table.add_column("Preload")
    table.add_column("Dependencies", style="dim")
    table.add_column("Status")

    for entry in entries:
        if entry.runtime.preload_only:
            preload = "only"
        elif entry.runtime.shared_preload:
            preload = "default" if entry.runtime.default_enable else "optional"
        else:
            preload = ""
        if entry.enabled:
            status = "[green]enabled[/green]"
        else:
            status = f"[red]disabled[/red] {escape(entry.disabled_reason or '')}"
        table.add_row(
            entry.name,
            entry.kind.value,
            entry.category,
            preload,
            ", ".join(entry.dependencies),
            status,
        )

    console.print(table)


@app.command("order")
def order_cmd(
    manifest: ManifestOption = None,
    creatable_only: Annotated[
        bool,
        typer.Option(
            "--creatable",
            help="Only entries that CREATE EXTENSION can install.",
            is_flag=True,
        ),
    ] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Print entries in dependency order, one name per line.

    Every entry comes after the entries it depends on; ties keep
    manifest order.

    Examples:

        pgimg manifest order

        pgimg manifest order --creatable
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        loaded = _load_manifest(ctx, manifest)
        selected = loaded.creatable_entries() if creatable_only else loaded.enabled_entries()
        ordered = loaded.install_order(selected)
    except PgImgError as e:
        handle_error(e)

    for entry in ordered:
        console.print(entry.name, markup=False, soft_wrap=True)


@app.command("validate")
def validate_cmd(
    manifest: ManifestOption = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Check manifest integrity.

    Checks unique names, known and enabled dependencies, pinned git
    sources, disabled reasons and an acyclic dependency graph.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        loaded = _load_manifest(ctx, manifest)
    except PgImgError as e:
        handle_error(e)

    problems = loaded.validate()
    if problems:
        console.error(f"Manifest has {len(problems)} problem(s): {loaded.path}")
        for problem in problems:
            console.print(f"  - {problem}", markup=False, soft_wrap=True)
        raise typer.Exit(8)

    console.success(
        f"Manifest is valid: {len(loaded)} entries, "
        f"{len(loaded.creatable_entries())} creatable extensions"
    )


@app.command("preload")
def preload_cmd(
    manifest: ManifestOption = None,
    all_entries: Annotated[
        bool,
        typer.Option(
            "--all",
            "-a",
            help="Every entry needing shared_preload_libraries, not just defaults.",
            is_flag=True,
        ),
    ] = False,
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Print the shared_preload_libraries value for the manifest.

    By default only libraries enabled by default are listed, which is the
    value the image ships with.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        loaded = _load_manifest(ctx, manifest)
    except PgImgError as e:
        handle_error(e)

    if all_entries:
        names = [e.library for e in loaded.preload_entries()]
    else:
        names = loaded.default_preload_libraries()
    console.print(",".join(names), markup=False, soft_wrap=True)
