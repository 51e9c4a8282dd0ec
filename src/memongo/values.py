"""Value kinds and the total order across them.

Sort order follows the server's type bracketing:

    MinKey < Null < numbers < String < Document < Array < Binary
           < ObjectId < Boolean < Date < Regex < MaxKey
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from functools import cmp_to_key
from itertools import zip_longest
from typing import Any

from bson.binary import Binary
from bson.dbref import DBRef
from bson.int64 import Int64
from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.objectid import ObjectId
from bson.regex import Regex

from memongo.errors import IncomparableValuesError, QueryCompilationError
from memongo.paths import get_embedded_values

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

_PATTERN_TYPE = type(re.compile(""))


class Kind(Enum):
    """The closed set of value kinds a document may hold."""

    MIN_KEY = "minKey"
    NULL = "null"
    INT32 = "int"
    INT64 = "long"
    DOUBLE = "double"
    STRING = "string"
    DOCUMENT = "object"
    DBREF = "dbPointer"
    ARRAY = "array"
    BINARY = "binData"
    OBJECT_ID = "objectId"
    BOOLEAN = "bool"
    DATE = "date"
    REGEX = "regex"
    MAX_KEY = "maxKey"


# Comparison weight per kind. Kinds sharing a weight compare by value.
WEIGHTS: dict[Kind, int] = {
    Kind.MIN_KEY: -1,
    Kind.NULL: 0,
    Kind.INT32: 1,
    Kind.INT64: 1,
    Kind.DOUBLE: 1,
    Kind.STRING: 2,
    Kind.DOCUMENT: 4,
    Kind.DBREF: 4,
    Kind.ARRAY: 5,
    Kind.BINARY: 6,
    Kind.OBJECT_ID: 7,
    Kind.BOOLEAN: 8,
    Kind.DATE: 9,
    Kind.REGEX: 10,
    Kind.MAX_KEY: 127,
}

NUMERIC_KINDS = frozenset({Kind.INT32, Kind.INT64, Kind.DOUBLE})


def kind_of(value: Any) -> Kind | None:
    """Classify a Python value into its Kind, or None if it is outside the union."""
    if value is None:
        return Kind.NULL
    if isinstance(value, bool):
        return Kind.BOOLEAN
    if isinstance(value, Int64):
        return Kind.INT64
    if isinstance(value, int):
        return Kind.INT32 if INT32_MIN <= value <= INT32_MAX else Kind.INT64
    if isinstance(value, float):
        return Kind.DOUBLE
    if isinstance(value, str):
        return Kind.STRING
    if isinstance(value, Mapping):
        return Kind.DOCUMENT
    if isinstance(value, (list, tuple)):
        return Kind.ARRAY
    if isinstance(value, DBRef):
        return Kind.DBREF
    if isinstance(value, (bytes, bytearray)):
        return Kind.BINARY
    if isinstance(value, ObjectId):
        return Kind.OBJECT_ID
    if isinstance(value, datetime):
        return Kind.DATE
    if isinstance(value, (_PATTERN_TYPE, Regex)):
        return Kind.REGEX
    if isinstance(value, MinKey):
        return Kind.MIN_KEY
    if isinstance(value, MaxKey):
        return Kind.MAX_KEY
    return None


def kind_name(value: Any) -> str:
    kind = kind_of(value)
    return kind.value if kind is not None else type(value).__name__


def weight_of(value: Any) -> int | None:
    kind = kind_of(value)
    return WEIGHTS[kind] if kind is not None else None


def is_number(value: Any) -> bool:
    return kind_of(value) in NUMERIC_KINDS


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def _compare_numbers(a: Any, b: Any) -> int:
    a_nan = isinstance(a, float) and math.isnan(a)
    b_nan = isinstance(b, float) and math.isnan(b)
    if a_nan or b_nan:
        return _cmp(not a_nan, not b_nan)
    # int/float comparison in Python is exact, no precision is lost.
    return _cmp(a, b)


def _as_document(value: Any) -> Mapping[str, Any]:
    if isinstance(value, DBRef):
        return value.as_doc()
    return value


def _compare_documents(a: Any, b: Any) -> int:
    left = _as_document(a)
    right = _as_document(b)
    for (k0, v0), (k1, v1) in zip_longest(left.items(), right.items(), fillvalue=(None, None)):
        if k0 is None or k1 is None:
            return -1 if k0 is None else 1
        key_cmp = _cmp(k0, k1)
        if key_cmp:
            return key_cmp
        value_cmp = compare(v0, v1)
        if value_cmp:
            return value_cmp
    return 0


def compare_lists(left: list[Any] | tuple[Any, ...], right: list[Any] | tuple[Any, ...]) -> int:
    """Compare two arrays: length first, then element-wise.

    A longer array whose first extra element is MinKey sorts before the
    shorter one.
    """
    size_diff = len(left) - len(right)
    if size_diff:
        if size_diff > 0 and isinstance(left[len(right)], MinKey):
            return -1
        if size_diff < 0 and isinstance(right[len(left)], MinKey):
            return 1
        return -1 if size_diff < 0 else 1
    for a, b in zip(left, right):
        result = compare(a, b)
        if result:
            return result
    return 0


def _binary_parts(value: bytes) -> tuple[bytes, int]:
    subtype = value.subtype if isinstance(value, Binary) else 0
    return bytes(value), subtype


def _compare_binary(a: bytes, b: bytes) -> int:
    return _cmp(_binary_parts(a), _binary_parts(b))


def normalize_datetime(value: datetime) -> datetime:
    """Aware datetimes become naive UTC so they order against naive ones."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def regex_parts(value: Any) -> tuple[str, int]:
    pattern = value.pattern
    if isinstance(pattern, bytes):
        pattern = pattern.decode("utf-8")
    flags = value.flags
    if isinstance(value, _PATTERN_TYPE):
        flags &= ~re.UNICODE
    return pattern, int(flags)


def _compare_equal(a: Any, b: Any) -> int:
    return 0


_COMPARATORS: dict[int, Callable[[Any, Any], int]] = {
    WEIGHTS[Kind.MIN_KEY]: _compare_equal,
    WEIGHTS[Kind.NULL]: _compare_equal,
    WEIGHTS[Kind.DOUBLE]: _compare_numbers,
    WEIGHTS[Kind.STRING]: _cmp,
    WEIGHTS[Kind.DOCUMENT]: _compare_documents,
    WEIGHTS[Kind.ARRAY]: compare_lists,
    WEIGHTS[Kind.BINARY]: _compare_binary,
    WEIGHTS[Kind.OBJECT_ID]: lambda a, b: _cmp(a.binary, b.binary),
    WEIGHTS[Kind.BOOLEAN]: _cmp,
    WEIGHTS[Kind.DATE]: lambda a, b: _cmp(normalize_datetime(a), normalize_datetime(b)),
    WEIGHTS[Kind.REGEX]: lambda a, b: _cmp(regex_parts(a), regex_parts(b)),
    WEIGHTS[Kind.MAX_KEY]: _compare_equal,
}


def compare(a: Any, b: Any) -> int:
    """Total order over values. Returns -1, 0 or 1."""
    wa = weight_of(a)
    wb = weight_of(b)
    if wa is None or wb is None:
        raise IncomparableValuesError(a, b)
    if wa != wb:
        return -1 if wa < wb else 1
    return _COMPARATORS[wa](a, b)


def values_equal(a: Any, b: Any) -> bool:
    """Deep structural equality under the comparator (1 == 1.0, True != 1)."""
    return compare(a, b) == 0


def identical(a: Any, b: Any) -> bool:
    """Equality that also requires matching kinds all the way down.

    Unlike ``values_equal``, ``5``, ``5.0`` and ``Int64(5)`` are all different,
    and documents must list their keys in the same order.
    """
    kind = kind_of(a)
    if kind is not kind_of(b):
        return False
    if kind is Kind.DOCUMENT:
        return list(a) == list(b) and all(identical(a[k], b[k]) for k in a)
    if kind is Kind.ARRAY:
        return len(a) == len(b) and all(identical(x, y) for x, y in zip(a, b))
    return values_equal(a, b)


def contains_value(values: Iterable[Any], value: Any) -> bool:
    return any(values_equal(item, value) for item in values)


def freeze(value: Any) -> Any:
    """Hashable form of a value; equal values (per ``compare``) freeze equally."""
    kind = kind_of(value)
    if kind is None:
        raise IncomparableValuesError(value, value)
    if kind in NUMERIC_KINDS:
        if isinstance(value, float) and math.isnan(value):
            return ("num", "nan")
        return ("num", value)
    if kind is Kind.DOCUMENT or kind is Kind.DBREF:
        doc = _as_document(value)
        return ("doc", tuple((k, freeze(v)) for k, v in doc.items()))
    if kind is Kind.ARRAY:
        return ("arr", tuple(freeze(v) for v in value))
    if kind is Kind.BINARY:
        return ("bin", *_binary_parts(value))
    if kind is Kind.DATE:
        return ("date", normalize_datetime(value))
    if kind is Kind.REGEX:
        return ("regex", *regex_parts(value))
    if kind in (Kind.NULL, Kind.MIN_KEY, Kind.MAX_KEY):
        return (kind.value,)
    return (kind.value, value)


def check_direction(direction: Any, context: str = "$sort") -> int:
    if isinstance(direction, bool) or not isinstance(direction, (int, float)):
        raise QueryCompilationError(
            f"The {context} element value must be either 1 or -1. Actual: {direction!r}"
        )
    if direction not in (1, -1):
        raise QueryCompilationError(
            f"The {context} element value must be either 1 or -1. Actual: {direction!r}"
        )
    return int(direction)


def object_comparator(direction: int) -> Callable[[Any, Any], int]:
    """Comparator over plain values in the given direction (1 or -1)."""
    sign = check_direction(direction)

    def comparator(a: Any, b: Any) -> int:
        return sign * compare(a, b)

    return comparator


SortSpec = Mapping[str, Any] | Iterable[tuple[str, Any]]


def normalize_sort(spec: SortSpec) -> list[tuple[str, int]]:
    """Turn ``{field: dir}`` or ``[(field, dir), ...]`` into a checked list of pairs."""
    items = list(spec.items()) if isinstance(spec, Mapping) else [tuple(p) for p in spec]
    if not items:
        raise QueryCompilationError("The $sort pattern is empty when it should be a set of fields.")
    result: list[tuple[str, int]] = []
    for pair in items:
        if len(pair) != 2 or not isinstance(pair[0], str):
            raise QueryCompilationError(f"Invalid sort specification entry: {pair!r}")
        result.append((pair[0], check_direction(pair[1])))
    return result


def sort_comparator(spec: SortSpec) -> Callable[[Any, Any], int]:
    """Multi-key comparator built from a sort specification.

    Each key compares the values resolved at its path with ``compare_lists``
    times its direction; the first non-zero key decides.
    """
    keys = normalize_sort(spec)

    def comparator(a: Any, b: Any) -> int:
        a_doc = isinstance(a, Mapping)
        b_doc = isinstance(b, Mapping)
        if a_doc and b_doc:
            for path, direction in keys:
                result = compare_lists(get_embedded_values(a, path), get_embedded_values(b, path))
                if result:
                    return result * direction
            return 0
        if a_doc or b_doc:
            doc = a if a_doc else b
            for path, direction in keys:
                if get_embedded_values(doc, path):
                    return direction if a_doc else -direction
        return compare(a, b)

    return comparator


def sort_key(spec: SortSpec) -> Callable[[Any], Any]:
    """``key=`` adapter of ``sort_comparator`` for ``sorted``."""
    return cmp_to_key(sort_comparator(spec))
