"""Dotted field-path helpers shared by filters, sorting, projections and indexes."""

from __future__ import annotations

from typing import Any

from bson.dbref import DBRef

DBREF_FIELDS = ("$id", "$ref", "$db")


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


def split_path(path: str | list[str] | tuple[str, ...]) -> list[str]:
    """Split a dotted path into segments. Lists pass through unchanged."""
    if isinstance(path, str):
        return path.split(".")
    return list(path)


def is_positive_int(segment: str) -> bool:
    """True if a path segment addresses an array index."""
    return segment.isdigit()


def dbref_field(ref: DBRef, segment: str) -> list[Any]:
    """Resolve the $id/$ref/$db pseudo-fields of a DBRef."""
    if segment == "$id":
        return [ref.id]
    if segment == "$ref":
        return [ref.collection]
    if segment == "$db":
        return [ref.database]
    return []


def get_field(container: Any, segment: str, default: Any = None) -> Any:
    """Read one segment from a document or (numeric segment) an array."""
    if isinstance(container, dict):
        return container.get(segment, default)
    if isinstance(container, list) and is_positive_int(segment):
        idx = int(segment)
        if idx < len(container):
            return container[idx]
    return default


def has_field(container: Any, segment: str) -> bool:
    if isinstance(container, dict):
        return segment in container
    if isinstance(container, list) and is_positive_int(segment):
        return int(segment) < len(container)
    return False


def get_embedded_values(doc: Any, path: str | list[str], start: int = 0) -> list[Any]:
    """Resolve a path against a document, fanning out over arrays.

    Returns the list of values found at the path. An empty list means the
    path is missing. When an intermediate value is an array and the next
    segment is not numeric, the rest of the path is resolved in every
    document element (and DBRef element) and the results are concatenated.
    """
    parts = split_path(path)
    current = doc
    for i in range(start, len(parts) - 1):
        value = get_field(current, parts[i], MISSING)
        nxt = parts[i + 1]
        if isinstance(value, dict):
            current = value
        elif isinstance(value, list) and is_positive_int(nxt):
            current = value
        elif isinstance(value, list):
            results: list[Any] = []
            for item in value:
                if isinstance(item, dict):
                    results.extend(get_embedded_values(item, parts, i + 1))
                elif isinstance(item, DBRef):
                    results.extend(dbref_field(item, nxt))
            return results
        elif isinstance(value, DBRef):
            if i + 1 == len(parts) - 1:
                return dbref_field(value, nxt)
            return []
        else:
            return []
    last = parts[-1]
    if has_field(current, last):
        return [get_field(current, last)]
    return []

