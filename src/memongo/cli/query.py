"""memongo find/count/distinct/explain/update: run queries against a fixture."""

from __future__ import annotations

from typing import Any, Optional

import typer

from memongo.cli import _exitcodes as ec
from memongo.cli._fixtures import parse_json
from memongo.cli._output import print_error, print_object
from memongo.cli._storage import open_collection
from memongo.errors import MemongoError


def _arguments(**texts: str | None) -> dict[str, Any]:
    try:
        return {name: parse_json(text, name) for name, text in texts.items()}
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(ec.USAGE_ERROR)


def find_cmd(
    collection: str = typer.Argument(..., help="Collection name"),
    query: Optional[str] = typer.Argument(None, help="Query document (extended JSON)"),
    projection: Optional[str] = typer.Option(None, "--projection", "-p", help="Projection document"),
    sort: Optional[str] = typer.Option(None, "--sort", help='Sort document, e.g. {"age": -1}'),
    skip: int = typer.Option(0, "--skip", help="Skip first N results"),
    limit: int = typer.Option(0, "--limit", help="Max results (0 for all)"),
) -> None:
    """Find documents matching a query."""
    from memongo.cli import state

    args = _arguments(query=query, projection=projection, sort=sort)
    coll = open_collection(collection)
    try:
        docs = coll.find(args["query"], args["projection"], sort=args["sort"], skip=skip, limit=limit)
    except MemongoError as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    print_object(docs, json_mode=state.json_output)


def count_cmd(
    collection: str = typer.Argument(..., help="Collection name"),
    query: Optional[str] = typer.Argument(None, help="Query document (extended JSON)"),
) -> None:
    """Count documents matching a query."""
    from memongo.cli import state

    args = _arguments(query=query)
    coll = open_collection(collection)
    try:
        n = coll.count(args["query"])
    except MemongoError as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    if state.json_output:
        print_object({"count": n}, json_mode=True)
    else:
        print(n)


def distinct_cmd(
    collection: str = typer.Argument(..., help="Collection name"),
    key: str = typer.Argument(..., help="Field path"),
    query: Optional[str] = typer.Argument(None, help="Query document (extended JSON)"),
) -> None:
    """List the distinct values of a field."""
    from memongo.cli import state

    args = _arguments(query=query)
    coll = open_collection(collection)
    try:
        values = coll.distinct(key, args["query"])
    except MemongoError as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    print_object(values, json_mode=state.json_output)


def explain_cmd(
    collection: str = typer.Argument(..., help="Collection name"),
    query: Optional[str] = typer.Argument(None, help="Query document (extended JSON)"),
) -> None:
    """Show which index a query would use and how many candidates it scans."""
    from memongo.cli import state

    args = _arguments(query=query)
    coll = open_collection(collection)
    try:
        plan = coll.explain(args["query"])
    except MemongoError as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    print_object(plan, json_mode=state.json_output)


def update_cmd(
    collection: str = typer.Argument(..., help="Collection name"),
    query: str = typer.Argument(..., help="Query document (extended JSON)"),
    update: str = typer.Argument(..., help="Update or replacement document"),
    upsert: bool = typer.Option(False, "--upsert", help="Insert when nothing matches"),
    multi: bool = typer.Option(False, "--multi", help="Update every match"),
    show: bool = typer.Option(False, "--show", help="Print the collection after the update"),
) -> None:
    """Apply an update to the fixture in memory and report the outcome.

    Fixtures are never written back; use --show to see the resulting documents.
    """
    from memongo.cli import state

    args = _arguments(query=query, update=update)
    coll = open_collection(collection)
    try:
        result = coll.update(args["query"], args["update"], upsert=upsert, multi=multi)
    except MemongoError as e:
        print_error(f"{type(e).__name__}: {e}")
        raise typer.Exit(ec.EXECUTION_FAILURE)
    summary: dict[str, Any] = {
        "matched": result.matched_count,
        "modified": result.modified_count,
        "upserted_id": result.upserted_id,
    }
    if show:
        summary["documents"] = coll.find()
    print_object(summary, json_mode=state.json_output)
