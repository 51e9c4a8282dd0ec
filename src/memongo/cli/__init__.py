"""memongo CLI: run queries and updates against a fixture database."""

from __future__ import annotations

from typing import Optional

import typer

from memongo.cli import index, query

app = typer.Typer(
    name="memongo",
    help="memongo CLI: query an in-memory database loaded from a fixture file.",
    no_args_is_help=True,
)


class _State:
    """Global CLI state shared across subcommands."""

    fixture: str | None = None
    json_output: bool = False


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        from memongo import __version__

        print(f"memongo {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    fixture: Optional[str] = typer.Option(
        None,
        "--fixture",
        "-f",
        envvar="MEMONGO_FIXTURE",
        help="YAML or JSON fixture file holding the database",
    ),
    json_output: bool = typer.Option(False, "--json", help="Extended JSON output"),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all memongo commands."""
    state.fixture = fixture
    state.json_output = json_output
    if ctx.invoked_subcommand is None and not version:
        print(ctx.get_help())
        raise typer.Exit()


app.command(name="find")(query.find_cmd)
app.command(name="count")(query.count_cmd)
app.command(name="distinct")(query.distinct_cmd)
app.command(name="explain")(query.explain_cmd)
app.command(name="update")(query.update_cmd)
app.command(name="indexes")(index.indexes_cmd)


def main() -> None:
    """Entry point for the memongo CLI."""
    app()
