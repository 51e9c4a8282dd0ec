"""Result projections: field inclusion/exclusion plus ``$slice`` and ``$elemMatch``."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from memongo.errors import QueryCompilationError
from memongo.filters import ELEMENT_FIELD, wrap_element
from memongo.paths import split_path
from memongo.query import FilterCompiler, is_operator_document
from memongo.values import Kind, kind_of

ID_KEY = "_id"


def id_first(doc: Mapping[str, Any]) -> dict[str, Any]:
    """Deep copy of ``doc`` with ``_id`` as its first key."""
    result: dict[str, Any] = {}
    if ID_KEY in doc:
        result[ID_KEY] = copy.deepcopy(doc[ID_KEY])
    for key, value in doc.items():
        if key != ID_KEY:
            result[key] = copy.deepcopy(value)
    return result


@dataclass
class Projection:
    """A parsed projection document."""

    included: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    slices: dict[str, tuple[int, int | None]] = field(default_factory=dict)
    elem_matches: dict[str, Any] = field(default_factory=dict)
    exclude_id: bool = False

    @property
    def inclusive(self) -> bool:
        return bool(self.included or self.elem_matches)


def _is_flag(value: Any) -> bool:
    return kind_of(value) in (Kind.BOOLEAN, Kind.INT32, Kind.INT64, Kind.DOUBLE)


def _parse_slice(key: str, spec: Any) -> tuple[int, int | None]:
    if kind_of(spec) in (Kind.INT32, Kind.INT64):
        return (0, spec) if spec >= 0 else (spec, None)
    if isinstance(spec, list):
        if len(spec) != 2 or any(kind_of(v) not in (Kind.INT32, Kind.INT64) for v in spec):
            raise QueryCompilationError(f"$slice on '{key}' with an array must hold [skip, limit]")
        if spec[1] <= 0:
            raise QueryCompilationError("$slice limit must be positive")
        return spec[0], spec[1]
    raise QueryCompilationError(f"$slice on '{key}' needs a number or [skip, limit], got {spec!r}")


def parse_projection(projection: Mapping[str, Any]) -> Projection:
    parsed = Projection()
    for key, value in projection.items():
        if isinstance(value, Mapping):
            if "$slice" in value:
                parsed.slices[key] = _parse_slice(key, value["$slice"])
            elif "$elemMatch" in value:
                if not isinstance(value["$elemMatch"], Mapping):
                    raise QueryCompilationError(f"$elemMatch projection on '{key}' needs a document")
                parsed.elem_matches[key] = value["$elemMatch"]
            else:
                raise QueryCompilationError(f"Unsupported projection operator on '{key}': {value!r}")
        elif _is_flag(value):
            if key == ID_KEY:
                parsed.exclude_id = not value
            elif value:
                parsed.included.append(key)
            else:
                parsed.excluded.append(key)
        else:
            raise QueryCompilationError(f"Projection '{key}' has an unsupported value: {value!r}")
    if parsed.included and parsed.excluded:
        raise QueryCompilationError(
            "Cannot combine inclusion and exclusion in a single projection, except for the _id field"
        )
    return parsed


def _include(target: dict[str, Any], source: Mapping[str, Any], parts: list[str]) -> None:
    key = parts[0]
    if key not in source:
        return
    value = source[key]
    if len(parts) == 1:
        target[key] = copy.deepcopy(value)
        return
    if isinstance(value, dict):
        sub = target.setdefault(key, {})
        if isinstance(sub, dict):
            _include(sub, value, parts[1:])
    elif isinstance(value, list):
        elements = [item for item in value if isinstance(item, dict)]
        existing = target.get(key)
        if not isinstance(existing, list) or len(existing) != len(elements):
            existing = target[key] = [{} for _ in elements]
        for out, item in zip(existing, elements):
            if isinstance(out, dict):
                _include(out, item, parts[1:])


def _exclude(target: Any, parts: list[str]) -> None:
    if isinstance(target, list):
        for item in target:
            _exclude(item, parts)
        return
    if not isinstance(target, dict):
        return
    if len(parts) == 1:
        target.pop(parts[0], None)
    elif parts[0] in target:
        _exclude(target[parts[0]], parts[1:])


def _slice(items: list[Any], skip: int, limit: int | None) -> list[Any]:
    start = max(len(items) + skip, 0) if skip < 0 else min(skip, len(items))
    return items[start:] if limit is None else items[start : start + limit]


def _first_match(items: list[Any], spec: Mapping[str, Any], compiler: FilterCompiler) -> list[Any] | None:
    if is_operator_document(spec):
        value_filter = compiler.compile_field(ELEMENT_FIELD, spec)
        for item in items:
            if value_filter.matches(wrap_element(item)):
                return [item]
        return None
    doc_filter = compiler.compile(spec)
    for item in items:
        if isinstance(item, dict) and doc_filter.matches(item):
            return [item]
    return None


def _nested_value(doc: Mapping[str, Any], parts: list[str]) -> Any:
    value: Any = doc
    for part in parts:
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _set_nested(target: dict[str, Any], parts: list[str], value: Any) -> None:
    for part in parts[:-1]:
        sub = target.get(part)
        if not isinstance(sub, dict):
            sub = target[part] = {}
        target = sub
    target[parts[-1]] = value


def apply_projection(
    doc: Mapping[str, Any],
    projection: Mapping[str, Any] | None,
    compiler: FilterCompiler | None = None,
) -> dict[str, Any]:
    """Project ``doc`` into a new document. The input is never modified."""
    if not projection:
        return id_first(doc)
    parsed = parse_projection(projection)
    compiler = compiler or FilterCompiler()
    if parsed.inclusive:
        result: dict[str, Any] = {}
        if not parsed.exclude_id and ID_KEY in doc:
            result[ID_KEY] = copy.deepcopy(doc[ID_KEY])
        for path in parsed.included:
            _include(result, doc, split_path(path))
    else:
        result = id_first(doc)
        if parsed.exclude_id:
            result.pop(ID_KEY, None)
        for path in parsed.excluded:
            _exclude(result, split_path(path))

    for key, (skip, limit) in parsed.slices.items():
        parts = split_path(key)
        value = _nested_value(doc, parts)
        if isinstance(value, list):
            _set_nested(result, parts, copy.deepcopy(_slice(value, skip, limit)))
    for key, spec in parsed.elem_matches.items():
        parts = split_path(key)
        value = _nested_value(doc, parts)
        match = _first_match(value, spec, compiler) if isinstance(value, list) else None
        if match is None:
            _exclude(result, parts)
        else:
            _set_nested(result, parts, copy.deepcopy(match))
    return result
