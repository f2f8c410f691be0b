"""Image test suites.

Each suite starts (or reuses) PostgreSQL containers, runs named cases and
appends one JSON line per case to <results-dir>/<suite>.jsonl:

- auto-config      sizing across memory and CPU limits
- extensions       CREATE EXTENSION for every manifest entry
- hook-extensions  preload-only libraries
- regression       SQL files compared with expected output
- wait             block until PostgreSQL accepts connections
- aggregate        merge suite results into one report
"""

import typer

from pgimg.commands.test.aggregate import aggregate as aggregate_command
from pgimg.commands.test.auto_config import auto_config as auto_config_command
from pgimg.commands.test.extensions import extensions as extensions_command
from pgimg.commands.test.hook_extensions import hook_extensions as hook_extensions_command
from pgimg.commands.test.regression import regression as regression_command
from pgimg.commands.test.wait import wait as wait_command


app = typer.Typer(
    name="test",
    help="Run image test suites against Docker containers.",
    no_args_is_help=True,
)

app.command("auto-config")(auto_config_command)
app.command("extensions")(extensions_command)
app.command("hook-extensions")(hook_extensions_command)
app.command("regression")(regression_command)
app.command("wait")(wait_command)
app.command("aggregate")(aggregate_command)
