"""Query documents compiled into filters.

``compile_filter`` turns a MongoDB-style query document into a tree of
``memongo.filters`` nodes. The tree is built once and may be evaluated
against any number of documents.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol, TypeVar

from memongo import geo
from memongo.errors import QueryCompilationError
from memongo.filters import (
    ALL,
    ELEMENT_FIELD,
    TYPE_ALIASES,
    TYPE_CODES,
    AllFilter,
    AndFilter,
    ComparisonFilter,
    ElemMatchFilter,
    EqualsFilter,
    ExistsFilter,
    Filter,
    GeoWithinFilter,
    InFilter,
    ModFilter,
    NearFilter,
    NorFilter,
    NotEqualsFilter,
    NotFilter,
    NotInFilter,
    OrFilter,
    RegexFilter,
    SizeFilter,
    TypeFilter,
    WhereFilter,
)
from memongo.values import Kind, kind_of, regex_parts

log = logging.getLogger(__name__)

T = TypeVar("T")


class ScriptEvaluator(Protocol):
    """Evaluates a ``$where`` script body against a document."""

    def evaluate(self, script: str, doc: Mapping[str, Any]) -> bool: ...


# Operators recognized inside a field's operator document.
FIELD_OPERATORS = frozenset(
    {
        "$eq",
        "$lt",
        "$lte",
        "$gt",
        "$gte",
        "$ne",
        "$in",
        "$nin",
        "$all",
        "$exists",
        "$mod",
        "$size",
        "$elemMatch",
        "$regex",
        "$type",
        "$not",
        "$near",
        "$nearSphere",
        "$geoWithin",
    }
)

# Keys that modify a sibling operator rather than stand on their own.
MODIFIERS = frozenset({"$options", "$maxDistance"})

NEAR_OPERATORS = frozenset({"$near", "$nearSphere"})

LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def is_operator_document(value: Any) -> bool:
    """True if ``value`` is a document carrying at least one recognized field operator."""
    return isinstance(value, Mapping) and any(key in FIELD_OPERATORS for key in value)


def _check_literal(value: Any, context: str) -> Any:
    kind = kind_of(value)
    if kind is None:
        raise QueryCompilationError(f"{context}: unsupported value of type {type(value).__name__}")
    if kind is Kind.ARRAY:
        return [_check_literal(item, context) for item in value]
    if kind is Kind.DOCUMENT:
        for item in value.values():
            _check_literal(item, context)
    return value


def _require_list(operator: str, operand: Any) -> list[Any]:
    if not isinstance(operand, (list, tuple)):
        raise QueryCompilationError(f"{operator} needs an array, got {operand!r}")
    return [_check_literal(item, operator) for item in operand]


def _integral(operator: str, operand: Any) -> int:
    if kind_of(operand) not in (Kind.INT32, Kind.INT64, Kind.DOUBLE):
        raise QueryCompilationError(f"{operator} needs a number, got {operand!r}")
    if operand != int(operand):
        raise QueryCompilationError(f"{operator} needs an integral number, got {operand!r}")
    return int(operand)


def _regex(operand: Any, options: Any) -> Any:
    if options is None:
        if isinstance(operand, str):
            return re.compile(operand)
        if kind_of(operand) is Kind.REGEX:
            return operand
        raise QueryCompilationError(f"$regex has to be a string or a regular expression, got {operand!r}")
    if not isinstance(options, str):
        raise QueryCompilationError(f"$options has to be a string, got {options!r}")
    flags = 0
    for option in options:
        if option not in _REGEX_FLAGS:
            raise QueryCompilationError(f"invalid flag in regex options: {option}")
        flags |= _REGEX_FLAGS[option]
    if isinstance(operand, str):
        return re.compile(operand, flags)
    if kind_of(operand) is Kind.REGEX:
        pattern, base_flags = regex_parts(operand)
        return re.compile(pattern, base_flags | flags)
    raise QueryCompilationError(f"$regex has to be a string or a regular expression, got {operand!r}")


def _type_kinds(operand: Any) -> frozenset[Kind]:
    items = operand if isinstance(operand, list) else [operand]
    kinds: set[Kind] = set()
    for item in items:
        if isinstance(item, str):
            found = TYPE_ALIASES.get(item)
        elif kind_of(item) in (Kind.INT32, Kind.INT64, Kind.DOUBLE) and item == int(item):
            found = TYPE_CODES.get(int(item))
        else:
            found = None
        if found is None:
            raise QueryCompilationError(f"Unknown $type: {item!r}")
        kinds |= found
    return frozenset(kinds)


class FilterCompiler:
    """Compiles query documents. One instance carries the compilation options."""

    def __init__(
        self,
        script_evaluator: ScriptEvaluator | None = None,
        max_operators: int | None = 2,
        near_limit: int = 100,
    ) -> None:
        self.script_evaluator = script_evaluator
        self.max_operators = max_operators
        self.near_limit = near_limit

    def compile(self, query: Mapping[str, Any] | None) -> Filter:
        if query is None:
            return ALL
        if not isinstance(query, Mapping):
            raise QueryCompilationError(f"Query must be a document, got {type(query).__name__}")
        clauses: list[Filter] = []
        for key, value in query.items():
            if not isinstance(key, str):
                raise QueryCompilationError(f"Query keys must be strings, got {key!r}")
            if key in LOGICAL_OPERATORS:
                clauses.append(self._logical(key, value))
            elif key == "$where":
                clauses.append(self._where(value))
            elif key == "$comment":
                continue
            elif key.startswith("$"):
                raise QueryCompilationError(f"unknown top level operator: {key}")
            else:
                clauses.append(self.compile_field(key, value))
        return _conjunction(clauses)

    def _logical(self, operator: str, operand: Any) -> Filter:
        if not isinstance(operand, (list, tuple)) or not operand:
            raise QueryCompilationError(f"{operator} argument must be a non-empty array")
        children = []
        for item in operand:
            if not isinstance(item, Mapping):
                raise QueryCompilationError(f"{operator} entries need to be full objects")
            children.append(self.compile(item))
        if operator == "$and":
            return AndFilter(children)
        if operator == "$or":
            return OrFilter(children)
        return NorFilter(children)

    def _where(self, operand: Any) -> Filter:
        if callable(operand):
            return WhereFilter(operand)
        if isinstance(operand, str):
            evaluator = self.script_evaluator
            if evaluator is None:
                raise QueryCompilationError("$where with a script body needs a script evaluator")
            return WhereFilter(lambda doc: evaluator.evaluate(operand, doc))
        raise QueryCompilationError(f"$where got bad type: {type(operand).__name__}")

    def compile_field(self, path: str, value: Any) -> Filter:
        """Compile the clause ``{path: value}``."""
        if is_operator_document(value):
            operators = [key for key in value if key in FIELD_OPERATORS]
            if self.max_operators is not None and len(operators) > self.max_operators:
                raise QueryCompilationError(
                    f"Too many operators on '{path}': {operators} (limit {self.max_operators})"
                )
            return _conjunction([self._operator(path, op, value) for op in operators])
        if kind_of(value) is Kind.REGEX:
            return RegexFilter(path, value)
        return EqualsFilter(path, _check_literal(value, path))

    def _operator(self, path: str, operator: str, spec: Mapping[str, Any]) -> Filter:
        operand = spec[operator]
        if operator == "$eq":
            return EqualsFilter(path, _check_literal(operand, operator))
        if operator in ("$lt", "$lte", "$gt", "$gte"):
            return ComparisonFilter(path, operator, _check_literal(operand, operator))
        if operator == "$ne":
            return NotEqualsFilter(path, _check_literal(operand, operator))
        if operator == "$in":
            return InFilter(path, _require_list(operator, operand))
        if operator == "$nin":
            return NotInFilter(path, _require_list(operator, operand))
        if operator == "$all":
            return self._all(path, operand)
        if operator == "$exists":
            return ExistsFilter(path, bool(operand))
        if operator == "$mod":
            return self._mod(path, operand)
        if operator == "$size":
            size = _integral(operator, operand)
            if size < 0:
                raise QueryCompilationError(f"$size may not be negative: {operand!r}")
            return SizeFilter(path, size)
        if operator == "$elemMatch":
            return self.elem_match(path, operand)
        if operator == "$regex":
            return RegexFilter(path, _regex(operand, spec.get("$options")))
        if operator == "$type":
            return TypeFilter(path, _type_kinds(operand))
        if operator == "$not":
            return self._not(path, operand)
        if operator in NEAR_OPERATORS:
            return self._near(path, operator, operand, spec.get("$maxDistance"))
        if operator == "$geoWithin":
            return GeoWithinFilter(path, geo.parse_shape(operand))
        raise QueryCompilationError(f"unknown operator: {operator}")

    def _all(self, path: str, operand: Any) -> Filter:
        if not isinstance(operand, (list, tuple)):
            raise QueryCompilationError(f"$all needs an array, got {operand!r}")
        plain: list[Any] = []
        element_filters: list[Filter] = []
        for item in operand:
            if isinstance(item, Mapping) and "$elemMatch" in item:
                element_filters.append(self.elem_match(path, item["$elemMatch"]))
            else:
                plain.append(_check_literal(item, "$all"))
        return AllFilter(path, plain, element_filters)

    def _mod(self, path: str, operand: Any) -> Filter:
        if not isinstance(operand, (list, tuple)) or len(operand) != 2:
            raise QueryCompilationError("malformed mod, needs to be an array of [divisor, remainder]")
        divisor = _integral("$mod", operand[0])
        if divisor == 0:
            raise QueryCompilationError("divisor cannot be 0")
        return ModFilter(path, divisor, _integral("$mod", operand[1]))

    def elem_match(self, path: str, operand: Any) -> ElemMatchFilter:
        if not isinstance(operand, Mapping):
            raise QueryCompilationError(f"$elemMatch needs an Object, got {operand!r}")
        if operand and all(key in FIELD_OPERATORS or key in MODIFIERS for key in operand):
            return ElemMatchFilter(path, self.compile_field(ELEMENT_FIELD, operand), value_mode=True)
        return ElemMatchFilter(path, self.compile(operand))

    def _not(self, path: str, operand: Any) -> Filter:
        if kind_of(operand) is Kind.REGEX:
            return NotFilter(RegexFilter(path, operand))
        if not is_operator_document(operand):
            raise QueryCompilationError(f"$not needs a regex or a document of operators, got {operand!r}")
        return NotFilter(self.compile_field(path, operand))

    def _near(self, path: str, operator: str, operand: Any, max_distance: Any) -> Filter:
        spherical = operator == "$nearSphere"
        if isinstance(operand, Mapping) and "$geometry" in operand:
            geometry = operand["$geometry"]
            if not isinstance(geometry, Mapping) or geometry.get("type") != "Point":
                raise QueryCompilationError(f"{operator} $geometry must be a GeoJSON Point")
            point = geo.to_point(geometry)
            max_distance = operand.get("$maxDistance", max_distance)
            mode = geo.METERS
        else:
            point = geo.to_point(operand)
            mode = geo.SPHERICAL if spherical else geo.PLANAR
        if point is None:
            raise QueryCompilationError(f"{operator} needs a coordinate pair, got {operand!r}")
        if max_distance is not None:
            if kind_of(max_distance) not in (Kind.INT32, Kind.INT64, Kind.DOUBLE) or max_distance < 0:
                raise QueryCompilationError(f"$maxDistance must be a non-negative number, got {max_distance!r}")
            max_distance = float(max_distance)
        return NearFilter(path, point, max_distance, mode, self.near_limit)


def _conjunction(clauses: list[Filter]) -> Filter:
    if not clauses:
        return ALL
    if len(clauses) == 1:
        return clauses[0]
    return AndFilter(clauses)


def compile_filter(
    query: Mapping[str, Any] | None,
    *,
    script_evaluator: ScriptEvaluator | None = None,
    max_operators: int | None = 2,
    near_limit: int = 100,
) -> Filter:
    """Compile a query document into a Filter.

    Raises QueryCompilationError for malformed operators. An empty or
    missing query matches every document.
    """
    return FilterCompiler(script_evaluator, max_operators, near_limit).compile(query)


def is_literal_document(value: Any) -> bool:
    """True for a plain document value matched by equality, with no ``$`` keys at all."""
    return isinstance(value, dict) and all(isinstance(key, str) and not key.startswith("$") for key in value)


def _embedded_fields(prefix: str, value: dict[str, Any]) -> Iterable[str]:
    for key, item in value.items():
        path = f"{prefix}.{key}"
        yield path
        if is_literal_document(item):
            yield from _embedded_fields(path, item)


def query_fields(query: Mapping[str, Any] | None) -> set[str]:
    """Field keys the query constrains at top level.

    Equality against a plain document also constrains its embedded fields,
    so ``{"a": {"b": 1}}`` yields both ``a`` and ``a.b``.
    """
    if not query:
        return set()
    fields: set[str] = set()
    for key, value in query.items():
        if not isinstance(key, str) or key.startswith("$"):
            continue
        fields.add(key)
        if is_literal_document(value):
            fields.update(_embedded_fields(key, value))
    return fields


def restrict_query(query: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    """The query's clauses on ``fields``, minus ``$near`` operators."""
    restricted: dict[str, Any] = {}
    for name in fields:
        if name not in query:
            continue
        value = query[name]
        if is_operator_document(value) and any(op in value for op in NEAR_OPERATORS):
            value = {k: v for k, v in value.items() if k not in NEAR_OPERATORS and k != "$maxDistance"}
            if not value:
                continue
        restricted[name] = value
    return restricted


def near_filter_of(filt: Filter) -> NearFilter | None:
    """The ``$near`` clause of a filter's top-level conjunction, if any."""
    if isinstance(filt, NearFilter):
        return filt
    if isinstance(filt, AndFilter):
        for child in filt.children:
            found = near_filter_of(child)
            if found is not None:
                return found
    return None


def _identity(item: Any) -> Any:
    return item


def filter_documents(
    filt: Filter,
    items: Iterable[T],
    document: Callable[[T], Mapping[str, Any]] = _identity,
) -> list[T]:
    """Evaluate a filter over items, in order.

    A ``$near`` clause makes this one evaluation pass: matches come back
    nearest first and stop once the clause's match budget is spent.
    """
    near = near_filter_of(filt)
    if near is None:
        return [item for item in items if filt.matches(document(item))]
    matched = [(near.distance_to(document(item)), n, item) for n, item in enumerate(items) if filt.matches(document(item))]
    matched.sort(key=lambda entry: (entry[0], entry[1]))
    if len(matched) > near.limit:
        log.debug("$near on '%s' matched %d documents, keeping the nearest %d", near.path, len(matched), near.limit)
    return [item for _, _, item in matched[: near.limit]]
