"""CLI command groups and the options they share."""

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.markup import escape

from pgimg.core.config import DEFAULT_CONFIG_PATH
from pgimg.core.exceptions import PgImgError
from pgimg.core.output import console


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

ForceOption = Annotated[
    bool,
    typer.Option(
        "--force",
        "-f",
        help="Overwrite existing files.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

ManifestOption = Annotated[
    Optional[Path],
    typer.Option(
        "--manifest",
        "-m",
        help="Path to extensions.manifest.json (default: harness.manifest_path).",
        dir_okay=False,
    ),
]


def handle_error(error: PgImgError) -> None:
    """Handle a PgImgError by printing formatted error and exiting."""
    console.error(error.message)

    if error.details:
        for detail in error.details:
            console.print(f"  [dim]{escape(detail)}[/dim]")

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)
