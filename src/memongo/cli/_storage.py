"""CLI helpers for building the in-memory database from the selected fixture."""

from __future__ import annotations

import typer

from memongo.cli import _exitcodes as ec
from memongo.cli._fixtures import load_database
from memongo.cli._output import print_error
from memongo.collection import Collection, Database


def open_database() -> Database:
    """Load the fixture named by --fixture / MEMONGO_FIXTURE."""
    from memongo.cli import state

    if not state.fixture:
        print_error("No fixture given; pass --fixture or set MEMONGO_FIXTURE")
        raise typer.Exit(ec.USAGE_ERROR)
    try:
        return load_database(state.fixture)
    except Exception as e:
        print_error(f"Failed to load fixture {state.fixture}: {e}")
        raise typer.Exit(ec.FIXTURE_ERROR)


def open_collection(name: str) -> Collection:
    db = open_database()
    if name not in db:
        print_error(f"Collection '{name}' not found in fixture")
        raise typer.Exit(ec.USAGE_ERROR)
    return db[name]
