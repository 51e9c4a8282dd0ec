"""Output formatting helpers for the CLI."""

from __future__ import annotations

import sys
from typing import Any

from bson import json_util


def _text(value: Any) -> str:
    """Plain-text cell: nested values as compact extended JSON."""
    if isinstance(value, (dict, list)):
        return json_util.dumps(value)
    return str(value)


def print_table(headers: list[str], rows: list[list[Any]], *, json_mode: bool = False) -> None:
    """Print rows under aligned headers, or as a JSON array of objects."""
    if json_mode:
        print(json_util.dumps([dict(zip(headers, row)) for row in rows], indent=2))
        return
    if not rows:
        return
    cells = [[_text(value) for value in row] for row in rows]
    widths = [max(len(column) for column in columns) for columns in zip(headers, *cells)]

    def line(values: list[str]) -> str:
        return "  ".join(value.ljust(width) for value, width in zip(values, widths)).rstrip()

    print(line(headers))
    print(line(["-" * width for width in widths]))
    for row in cells:
        print(line(row))


def print_object(data: dict[str, Any] | list[Any], *, json_mode: bool = False) -> None:
    """Print a document, or a list of documents, as extended JSON or ``key: value`` lines."""
    if json_mode:
        print(json_util.dumps(data, indent=2))
        return
    if isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {_text(value)}")
        return
    for item in data:
        if isinstance(item, dict):
            for key, value in item.items():
                print(f"  {key}: {_text(value)}")
            print()
        else:
            print(f"  {_text(item)}")


def print_error(msg: str) -> None:
    print(f"Error: {msg}", file=sys.stderr)
