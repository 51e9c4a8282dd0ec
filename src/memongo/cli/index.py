"""memongo indexes: inspect a collection's indexes."""

from __future__ import annotations

import typer

from memongo.cli._output import print_table
from memongo.cli._storage import open_collection


def indexes_cmd(
    collection: str = typer.Argument(..., help="Collection name"),
) -> None:
    """List a collection's indexes with their sizes."""
    from memongo.cli import state

    coll = open_collection(collection)
    rows = [
        [index.name, ", ".join(f"{field}:{direction}" for field, direction in index.spec.key), index.unique, index.size()]
        for index in coll.indexes()
    ]
    print_table(["name", "key", "unique", "entries"], rows, json_mode=state.json_output)
