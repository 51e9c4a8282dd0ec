"""Compiled filter nodes.

A filter is an immutable predicate over a document. Nodes compose with
``&``, ``|`` and ``~``. Field filters resolve their path with
``get_embedded_values`` and match if any resolved value (or, for array
values, any element) satisfies the operator.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.regex import Regex

from memongo import geo
from memongo.paths import get_embedded_values
from memongo.values import (
    Kind,
    NUMERIC_KINDS,
    compare,
    freeze,
    is_number,
    kind_of,
    regex_parts,
    values_equal,
    weight_of,
)

# Field name under which a bare array element is wrapped when a filter
# compiled for a path has to be applied to the element itself.
ELEMENT_FIELD = "__elem"


def wrap_element(value: Any) -> dict[str, Any]:
    return {ELEMENT_FIELD: value}


class Filter:
    """Base class for compiled filters."""

    def matches(self, doc: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def __call__(self, doc: Mapping[str, Any]) -> bool:
        return self.matches(doc)

    def __and__(self, other: Filter) -> Filter:
        return AndFilter([self, other])

    def __or__(self, other: Filter) -> Filter:
        return OrFilter([self, other])

    def __invert__(self) -> Filter:
        return NotFilter(self)

    def walk(self) -> Iterator[Filter]:
        """This node and, for composite nodes, every descendant."""
        yield self


class _AllFilter(Filter):
    def matches(self, doc: Mapping[str, Any]) -> bool:
        return True

    def __and__(self, other: Filter) -> Filter:
        return other

    def __repr__(self) -> str:
        return "ALL"


ALL: Filter = _AllFilter()


@dataclass(frozen=True)
class AndFilter(Filter):
    children: list[Filter] = field(default_factory=list)

    def matches(self, doc: Mapping[str, Any]) -> bool:
        return all(child.matches(doc) for child in self.children)

    def walk(self) -> Iterator[Filter]:
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class OrFilter(Filter):
    children: list[Filter] = field(default_factory=list)

    def matches(self, doc: Mapping[str, Any]) -> bool:
        return any(child.matches(doc) for child in self.children)

    def walk(self) -> Iterator[Filter]:
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class NorFilter(Filter):
    children: list[Filter] = field(default_factory=list)

    def matches(self, doc: Mapping[str, Any]) -> bool:
        return not any(child.matches(doc) for child in self.children)

    def walk(self) -> Iterator[Filter]:
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class NotFilter(Filter):
    child: Filter

    def matches(self, doc: Mapping[str, Any]) -> bool:
        return not self.child.matches(doc)

    def walk(self) -> Iterator[Filter]:
        yield self
        yield from self.child.walk()


@dataclass(frozen=True)
class WhereFilter(Filter):
    """``$where``: delegates to a predicate over the whole document."""

    predicate: Callable[[Mapping[str, Any]], Any]

    def matches(self, doc: Mapping[str, Any]) -> bool:
        return bool(self.predicate(doc))


def expand(values: list[Any]) -> list[Any]:
    """Resolved values plus the elements of any array value."""
    result: list[Any] = []
    for value in values:
        result.append(value)
        if isinstance(value, list):
            result.extend(value)
    return result


@dataclass(frozen=True)
class FieldFilter(Filter):
    """A filter on the values resolved at one field path."""

    path: str

    def matches(self, doc: Mapping[str, Any]) -> bool:
        return self.test(get_embedded_values(doc, self.path))

    def test(self, values: list[Any]) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class EqualsFilter(FieldFilter):
    """Literal equality, or membership when the stored value is an array."""

    value: Any = None

    def test(self, values: list[Any]) -> bool:
        if not values:
            return self.value is None
        return any(values_equal(candidate, self.value) for candidate in expand(values))


@dataclass(frozen=True)
class NotEqualsFilter(FieldFilter):
    value: Any = None

    def test(self, values: list[Any]) -> bool:
        return not EqualsFilter(self.path, self.value).test(values)


_RELATIONS: dict[str, Callable[[int], bool]] = {
    "$lt": lambda c: c < 0,
    "$lte": lambda c: c <= 0,
    "$gt": lambda c: c > 0,
    "$gte": lambda c: c >= 0,
}


def _bracketed(candidate: Any, bound: Any) -> bool:
    if isinstance(bound, (MinKey, MaxKey)):
        return True
    return weight_of(candidate) == weight_of(bound)


@dataclass(frozen=True)
class ComparisonFilter(FieldFilter):
    """``$lt``/``$lte``/``$gt``/``$gte`` within the bound's kind bracket."""

    operator: str = "$lt"
    bound: Any = None

    def test(self, values: list[Any]) -> bool:
        if not values:
            return self.bound is None and self.operator in ("$lte", "$gte")
        relation = _RELATIONS[self.operator]
        for candidate in expand(values):
            if _bracketed(candidate, self.bound) and relation(compare(candidate, self.bound)):
                return True
        return False


def _compile_regex(value: Any) -> re.Pattern[str]:
    if isinstance(value, Regex):
        return value.try_compile()
    return value


def _is_regex(value: Any) -> bool:
    return kind_of(value) is Kind.REGEX


@dataclass(frozen=True)
class RegexFilter(FieldFilter):
    """Pattern match against string values (``re.search`` semantics)."""

    pattern: Any = None

    def test(self, values: list[Any]) -> bool:
        compiled = _compile_regex(self.pattern)
        for candidate in expand(values):
            if isinstance(candidate, str) and compiled.search(candidate):
                return True
            if _is_regex(candidate) and regex_parts(candidate) == regex_parts(self.pattern):
                return True
        return False


def _member_test(operand: list[Any], candidates: list[Any]) -> bool:
    keys = set()
    patterns = []
    for item in operand:
        if _is_regex(item):
            patterns.append(_compile_regex(item))
        else:
            keys.add(freeze(item))
    for candidate in candidates:
        if freeze(candidate) in keys:
            return True
        if isinstance(candidate, str) and any(p.search(candidate) for p in patterns):
            return True
    return False


@dataclass(frozen=True)
class InFilter(FieldFilter):
    """``$in``: any candidate equals (or, for regex elements, matches) an operand element."""

    operand: list[Any] = field(default_factory=list)

    def test(self, values: list[Any]) -> bool:
        if not values:
            return any(item is None for item in self.operand)
        return _member_test(self.operand, expand(values))


@dataclass(frozen=True)
class NotInFilter(FieldFilter):
    operand: list[Any] = field(default_factory=list)

    def test(self, values: list[Any]) -> bool:
        return not InFilter(self.path, self.operand).test(values)


@dataclass(frozen=True)
class AllFilter(FieldFilter):
    """``$all``: every operand element is contained in the stored value."""

    operand: list[Any] = field(default_factory=list)
    element_filters: list[Filter] = field(default_factory=list)

    def test(self, values: list[Any]) -> bool:
        if not self.operand and not self.element_filters:
            return False
        candidates = expand(values)
        for item in self.operand:
            if not _member_test([item], candidates):
                return False
        for elem_filter in self.element_filters:
            if not isinstance(elem_filter, FieldFilter) or not elem_filter.test(values):
                return False
        return True


@dataclass(frozen=True)
class ExistsFilter(FieldFilter):
    exists: bool = True

    def test(self, values: list[Any]) -> bool:
        return bool(values) == self.exists


def truncated_mod(value: Any, divisor: int) -> int:
    """Remainder with the sign of the dividend."""
    dividend = int(value)
    remainder = abs(dividend) % abs(divisor)
    return -remainder if dividend < 0 else remainder


@dataclass(frozen=True)
class ModFilter(FieldFilter):
    divisor: int = 1
    remainder: int = 0

    def test(self, values: list[Any]) -> bool:
        for candidate in expand(values):
            if not is_number(candidate):
                continue
            if isinstance(candidate, float) and not math.isfinite(candidate):
                continue
            if truncated_mod(candidate, self.divisor) == self.remainder:
                return True
        return False


@dataclass(frozen=True)
class SizeFilter(FieldFilter):
    size: int = 0

    def test(self, values: list[Any]) -> bool:
        return any(isinstance(v, list) and len(v) == self.size for v in values)


@dataclass(frozen=True)
class ElemMatchFilter(FieldFilter):
    """``$elemMatch``: some array element satisfies the nested filter.

    With ``value_mode`` the nested filter was compiled for the element
    itself (operators only); otherwise it is a query against document
    elements.
    """

    inner: Filter = ALL
    value_mode: bool = False

    def test(self, values: list[Any]) -> bool:
        for value in values:
            if not isinstance(value, list):
                continue
            for element in value:
                if self.value_mode:
                    if self.inner.matches(wrap_element(element)):
                        return True
                elif isinstance(element, dict) and self.inner.matches(element):
                    return True
        return False


# $type codes and aliases.
TYPE_CODES: dict[Any, frozenset[Kind]] = {
    1: frozenset({Kind.DOUBLE}),
    2: frozenset({Kind.STRING}),
    3: frozenset({Kind.DOCUMENT, Kind.DBREF}),
    4: frozenset({Kind.ARRAY}),
    5: frozenset({Kind.BINARY}),
    7: frozenset({Kind.OBJECT_ID}),
    8: frozenset({Kind.BOOLEAN}),
    9: frozenset({Kind.DATE}),
    10: frozenset({Kind.NULL}),
    11: frozenset({Kind.REGEX}),
    16: frozenset({Kind.INT32}),
    18: frozenset({Kind.INT64}),
    -1: frozenset({Kind.MIN_KEY}),
    255: frozenset({Kind.MIN_KEY}),
    127: frozenset({Kind.MAX_KEY}),
}
TYPE_ALIASES: dict[str, frozenset[Kind]] = {
    "double": TYPE_CODES[1],
    "string": TYPE_CODES[2],
    "object": TYPE_CODES[3],
    "array": TYPE_CODES[4],
    "binData": TYPE_CODES[5],
    "objectId": TYPE_CODES[7],
    "bool": TYPE_CODES[8],
    "date": TYPE_CODES[9],
    "null": TYPE_CODES[10],
    "regex": TYPE_CODES[11],
    "int": TYPE_CODES[16],
    "long": TYPE_CODES[18],
    "minKey": TYPE_CODES[-1],
    "maxKey": TYPE_CODES[127],
    "number": frozenset(NUMERIC_KINDS),
}


@dataclass(frozen=True)
class TypeFilter(FieldFilter):
    kinds: frozenset[Kind] = frozenset()

    def test(self, values: list[Any]) -> bool:
        return any(kind_of(candidate) in self.kinds for candidate in expand(values))


@dataclass(frozen=True)
class NearFilter(FieldFilter):
    """``$near``/``$nearSphere``.

    ``matches`` is a pure distance test; ``limit`` is the number of matches
    a single evaluation pass may return, nearest first (see
    ``memongo.query.filter_documents``).
    """

    point: geo.Point
    max_distance: float | None = None
    mode: str = geo.PLANAR
    limit: int = 100

    def distance_to(self, doc: Mapping[str, Any]) -> float | None:
        return self._nearest(get_embedded_values(doc, self.path))

    def _nearest(self, values: list[Any]) -> float | None:
        points = geo.points_in(values)
        if not points:
            return None
        return min(geo.distance(p, self.point, self.mode) for p in points)

    def test(self, values: list[Any]) -> bool:
        nearest = self._nearest(values)
        if nearest is None:
            return False
        return self.max_distance is None or nearest < self.max_distance

    def bbox(self) -> geo.BBox | None:
        if self.max_distance is None:
            return None
        return geo.radius_bbox(self.point, self.max_distance, self.mode)


@dataclass(frozen=True)
class GeoWithinFilter(FieldFilter):
    shape: geo.Shape

    def test(self, values: list[Any]) -> bool:
        return any(geo.within(p, self.shape) for p in geo.points_in(values))

    def bbox(self) -> geo.BBox | None:
        return self.shape.bbox()
