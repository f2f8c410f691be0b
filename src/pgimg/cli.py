"""Main CLI entry point using Typer.

This module defines the root CLI application and global options.
Command groups are registered from submodules.
"""

from typing import Annotated

import typer
from rich.console import Console

from pgimg import __version__
from pgimg.commands import ConfigOption, ForceOption, NoColorOption, VerboseOption, handle_error
from pgimg.core.config import AppConfig, get_example_config, init_config
from pgimg.core.context import create_context
from pgimg.core.exceptions import PgImgError


# Create the main Typer app
app = typer.Typer(
    name="pgimg",
    help="PostgreSQL image tooling - auto-config entrypoint, extension manifest and test harness.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

# Import sub-commands
from pgimg.commands.autoconfig import app as autoconfig_app
from pgimg.commands.manifest import app as manifest_app
from pgimg.commands.test import app as test_app

# Register command groups
app.add_typer(autoconfig_app, name="autoconfig")
app.add_typer(manifest_app, name="manifest")
app.add_typer(test_app, name="test")
app.add_typer(config_app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"pgimg version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """PostgreSQL image tooling.

    Sizes PostgreSQL from container limits at startup, resolves the
    extension manifest, and runs the image test suites in Docker.

    [bold]Examples:[/bold]
        pgimg autoconfig show --memory 4g
        pgimg manifest order --creatable
        pgimg test auto-config aza-pg:pg18
        pgimg test aggregate test-results --format junit
        pgimg config show
    """
    pass


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration.

    Displays the loaded harness configuration and which environment
    overrides are set. The test password is not shown.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

        ctx.console.summary("Overrides (from environment)", {
            "POSTGRES_IMAGE": app_config.secrets.postgres_image or "Not set",
            "TEST_POSTGRES_PASSWORD": (
                "Set" if app_config.secrets.test_postgres_password else "Not set (generated per run)"
            ),
            "Effective image": app_config.resolve_image(),
        })

    except PgImgError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize a new configuration file.

    Creates pgimg.yaml with the harness defaults and comments.
    """
    ctx = create_context(no_color=no_color, config=config)
    config_path = ctx.config_path

    try:
        if config_path.exists() and not force:
            ctx.console.error(f"Configuration file already exists: {config_path}")
            ctx.console.hint("Use --force to overwrite")
            raise typer.Exit(1)

        init_config(config_path, force=force)
        ctx.console.success(f"Configuration file created: {config_path}")
        ctx.console.info("Edit the file to customize settings, then run commands.")
        ctx.console.hint("Override per run via environment (POSTGRES_IMAGE, TEST_POSTGRES_PASSWORD)")

    except PgImgError as e:
        handle_error(e)


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate configuration file.

    Checks that the configuration file exists, is valid YAML,
    and all values pass validation.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        if not ctx.config_path.exists():
            ctx.console.error(f"Configuration file not found: {ctx.config_path}")
            ctx.console.hint("Create it with: pgimg config init")
            raise typer.Exit(1)

        # Raises ConfigurationError if invalid
        app_config = AppConfig(config_path=ctx.config_path)

        ctx.console.success(f"Configuration is valid: {ctx.config_path}")

        if ctx.is_verbose:
            ctx.console.yaml(app_config.config.to_yaml())

        warnings = []
        harness = app_config.harness
        if not harness.manifest_path.exists():
            warnings.append(f"Manifest not found: {harness.manifest_path}")
        if not harness.regression_dir.is_dir():
            warnings.append(f"Regression directory not found: {harness.regression_dir}")

        if warnings:
            ctx.console.print()
            for warning in warnings:
                ctx.console.warn(warning)

    except PgImgError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file.

    Outputs a complete example configuration with comments.
    """
    ctx = create_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False)


if __name__ == "__main__":
    app()
