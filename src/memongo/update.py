"""The update engine: applies update documents to a document in place.

An update document is either a set of operators (``{"$set": {...}, ...}``)
or a replacement document. Callers hand in a working copy; on any error the
copy is discarded, so a failed update never leaves a half-applied document
in the store.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, NamedTuple

from bson.int64 import Int64

from memongo.errors import (
    ImmutableFieldError,
    PositionalOperatorError,
    UnsupportedOperatorError,
    UpdateConflictError,
    UpdateTypeError,
)
from memongo.filters import ELEMENT_FIELD, Filter, wrap_element
from memongo.paths import MISSING, get_field, has_field, is_positive_int, split_path
from memongo.query import FilterCompiler, is_operator_document
from memongo.values import (
    INT32_MAX,
    INT32_MIN,
    Kind,
    compare,
    contains_value,
    freeze,
    kind_name,
    kind_of,
    object_comparator,
    sort_comparator,
    values_equal,
)

log = logging.getLogger(__name__)

POSITIONAL = "$"


def is_operator_update(update: Mapping[str, Any]) -> bool:
    """True for an operator update, False for a replacement document.

    Mixing operator and plain keys raises UnsupportedOperatorError naming
    the first plain key.
    """
    keys = list(update)
    operators = [key for key in keys if isinstance(key, str) and key.startswith("$")]
    if not operators:
        return False
    if len(operators) != len(keys):
        plain = next(key for key in keys if key not in operators)
        raise UnsupportedOperatorError(str(plain))
    return True


# --- Container access. A container is a document or an array. ---


def _put(container: Any, key: str, value: Any) -> None:
    if isinstance(container, dict):
        container[key] = value
        return
    idx = int(key)
    if idx >= len(container):
        container.extend([None] * (idx + 1 - len(container)))
    container[idx] = value


def _delete(container: Any, key: str) -> None:
    if isinstance(container, dict):
        container.pop(key, None)
    elif has_field(container, key):
        # Unsetting an array element leaves a null hole, the array keeps its length.
        container[int(key)] = None


def _is_number(value: Any) -> bool:
    return kind_of(value) in (Kind.INT32, Kind.INT64, Kind.DOUBLE)


def _widen(result: Any, *operands: Any) -> Any:
    """Numeric result in the widest kind of its operands."""
    kinds = {kind_of(operand) for operand in operands}
    if Kind.DOUBLE in kinds:
        return float(result)
    if Kind.INT64 in kinds or not INT32_MIN <= result <= INT32_MAX:
        return Int64(result)
    return int(result)


@dataclass
class _Step:
    """One ``operator: {path: operand}`` entry being applied."""

    operator: str
    path: str
    operand: Any
    root: dict[str, Any]
    query: Mapping[str, Any] | None
    compiler: FilterCompiler

    def type_error(self, value: Any, expected: str | None = None) -> UpdateTypeError:
        return UpdateTypeError(self.operator, self.path, kind_name(value), expected)

    def number_operand(self) -> Any:
        if not _is_number(self.operand):
            raise UpdateTypeError(self.operator, self.path, kind_name(self.operand), "number")
        return self.operand

    def array_at(self, container: Any, key: str) -> list[Any] | None:
        value = get_field(container, key, MISSING)
        if value is MISSING:
            return None
        if not isinstance(value, list):
            raise self.type_error(value, "array")
        return value


def _set(step: _Step, container: Any, key: str) -> None:
    _put(container, key, copy.deepcopy(step.operand))


def _unset(step: _Step, container: Any, key: str) -> None:
    _delete(container, key)


def _inc(step: _Step, container: Any, key: str) -> None:
    delta = step.number_operand()
    current = get_field(container, key, MISSING)
    if current is MISSING:
        _put(container, key, delta)
        return
    if not _is_number(current):
        raise step.type_error(current, "number")
    _put(container, key, _widen(current + delta, current, delta))


def _mul(step: _Step, container: Any, key: str) -> None:
    factor = step.number_operand()
    current = get_field(container, key, MISSING)
    if current is MISSING:
        _put(container, key, _widen(0, factor))
        return
    if not _is_number(current):
        raise step.type_error(current, "number")
    _put(container, key, _widen(current * factor, current, factor))


def _min(step: _Step, container: Any, key: str) -> None:
    current = get_field(container, key, MISSING)
    if current is MISSING or compare(step.operand, current) < 0:
        _put(container, key, copy.deepcopy(step.operand))


def _max(step: _Step, container: Any, key: str) -> None:
    current = get_field(container, key, MISSING)
    if current is MISSING or compare(step.operand, current) > 0:
        _put(container, key, copy.deepcopy(step.operand))


def _rename(step: _Step, container: Any, key: str) -> None:
    if not isinstance(container, dict) or key not in container:
        return
    value = container.pop(key)
    target = _Step("$rename", step.operand, value, step.root, step.query, step.compiler)
    _walk(target, _OPERATORS["$set"], step.root, split_path(step.operand))


def _sorted(items: list[Any], spec: Any, step: _Step) -> list[Any]:
    if isinstance(spec, Mapping):
        comparator = sort_comparator(spec)
    elif _is_number(spec):
        comparator = object_comparator(spec)
    else:
        raise UpdateTypeError(step.operator, step.path, kind_name(spec), "1, -1 or a sort document")
    return sorted(items, key=cmp_to_key(comparator))


def _slice(items: list[Any], size: int) -> list[Any]:
    if size == 0:
        return []
    if size > 0:
        return items[:size]
    return items[size:]


def _push(step: _Step, container: Any, key: str) -> None:
    current = step.array_at(container, key)
    items = list(current) if current is not None else []
    operand = step.operand
    if not (isinstance(operand, Mapping) and "$each" in operand):
        if isinstance(operand, Mapping) and any(str(k).startswith("$") for k in operand):
            raise UpdateTypeError(step.operator, step.path, "object", "$each alongside push modifiers")
        items.append(copy.deepcopy(operand))
        _put(container, key, items)
        return
    each = operand["$each"]
    if not isinstance(each, list):
        raise UpdateTypeError(step.operator, step.path, kind_name(each), "array for $each")
    position = operand.get("$position")
    if position is None:
        items.extend(copy.deepcopy(each))
    else:
        if kind_of(position) not in (Kind.INT32, Kind.INT64):
            raise UpdateTypeError(step.operator, step.path, kind_name(position), "integer $position")
        pos = max(len(items) + position, 0) if position < 0 else min(position, len(items))
        items[pos:pos] = copy.deepcopy(each)
    if "$sort" in operand:
        items = _sorted(items, operand["$sort"], step)
    if "$slice" in operand:
        size = operand["$slice"]
        if kind_of(size) not in (Kind.INT32, Kind.INT64):
            raise UpdateTypeError(step.operator, step.path, kind_name(size), "integer $slice")
        items = _slice(items, size)
    _put(container, key, items)


def _push_all(step: _Step, container: Any, key: str) -> None:
    if not isinstance(step.operand, list):
        raise UpdateTypeError(step.operator, step.path, kind_name(step.operand), "array")
    current = step.array_at(container, key)
    _put(container, key, (list(current) if current is not None else []) + copy.deepcopy(step.operand))


def _add_to_set(step: _Step, container: Any, key: str) -> None:
    current = step.array_at(container, key)
    items = list(current) if current is not None else []
    operand = step.operand
    if isinstance(operand, Mapping) and "$each" in operand:
        candidates = operand["$each"]
        if not isinstance(candidates, list):
            raise UpdateTypeError(step.operator, step.path, kind_name(candidates), "array for $each")
    else:
        candidates = [operand]
    for candidate in candidates:
        if not contains_value(items, candidate):
            items.append(copy.deepcopy(candidate))
    _put(container, key, items)


def _pop(step: _Step, container: Any, key: str) -> None:
    current = step.array_at(container, key)
    direction = step.number_operand()
    if not current:
        return
    if direction > 0:
        current.pop()
    else:
        current.pop(0)


def _element_predicate(step: _Step, operand: Any) -> Callable[[Any], bool]:
    if is_operator_document(operand):
        value_filter = step.compiler.compile_field(ELEMENT_FIELD, operand)
        return lambda item: value_filter.matches(wrap_element(item))
    if kind_of(operand) is Kind.DOCUMENT:
        doc_filter = step.compiler.compile(operand)
        return lambda item: isinstance(item, dict) and doc_filter.matches(item)
    if kind_of(operand) is Kind.REGEX:
        regex_filter = step.compiler.compile_field(ELEMENT_FIELD, operand)
        return lambda item: regex_filter.matches(wrap_element(item))
    return lambda item: values_equal(item, operand)


def _pull(step: _Step, container: Any, key: str) -> None:
    current = step.array_at(container, key)
    if current is None:
        return
    pulled = _element_predicate(step, step.operand)
    _put(container, key, [item for item in current if not pulled(item)])


def _pull_all(step: _Step, container: Any, key: str) -> None:
    if not isinstance(step.operand, list):
        raise UpdateTypeError(step.operator, step.path, kind_name(step.operand), "array")
    current = step.array_at(container, key)
    if current is None:
        return
    pulled = {freeze(item) for item in step.operand}
    _put(container, key, [item for item in current if freeze(item) not in pulled])


_BIT_OPS: dict[str, Callable[[int, int], int]] = {
    "and": lambda a, b: a & b,
    "or": lambda a, b: a | b,
    "xor": lambda a, b: a ^ b,
}


def _bit(step: _Step, container: Any, key: str) -> None:
    current = get_field(container, key, MISSING)
    if current is MISSING:
        return
    if kind_of(current) not in (Kind.INT32, Kind.INT64):
        raise step.type_error(current, "integer")
    if not isinstance(step.operand, Mapping) or not step.operand:
        raise UpdateTypeError(step.operator, step.path, kind_name(step.operand), "document of and/or/xor")
    result = current
    for op, value in step.operand.items():
        if op not in _BIT_OPS:
            raise UnsupportedOperatorError(f"$bit.{op}")
        if kind_of(value) not in (Kind.INT32, Kind.INT64):
            raise UpdateTypeError(step.operator, step.path, kind_name(value), "integer operand")
        result = _widen(_BIT_OPS[op](int(result), int(value)), result, value)
    _put(container, key, result)


class _Operator(NamedTuple):
    handler: Callable[[_Step, Any, str], None]
    # Whether missing intermediate documents are created on the way to the field.
    create_missing: bool


_OPERATORS: dict[str, _Operator] = {
    "$set": _Operator(_set, True),
    "$setOnInsert": _Operator(_set, True),
    "$unset": _Operator(_unset, False),
    "$inc": _Operator(_inc, True),
    "$mul": _Operator(_mul, True),
    "$min": _Operator(_min, True),
    "$max": _Operator(_max, True),
    "$rename": _Operator(_rename, False),
    "$push": _Operator(_push, True),
    "$pushAll": _Operator(_push_all, True),
    "$addToSet": _Operator(_add_to_set, True),
    "$pop": _Operator(_pop, False),
    "$pull": _Operator(_pull, False),
    "$pullAll": _Operator(_pull_all, False),
    "$bit": _Operator(_bit, False),
}

UPDATE_OPERATORS = frozenset(_OPERATORS)


def _walk(step: _Step, operator: _Operator, container: Any, parts: list[str]) -> None:
    """Descend to the parent of the last path segment and run the handler there."""
    for i, segment in enumerate(parts[:-1]):
        nxt = parts[i + 1]
        if not has_field(container, segment):
            if nxt == POSITIONAL:
                raise PositionalOperatorError(step.path)
            if not operator.create_missing:
                return
            if isinstance(container, list) and not is_positive_int(segment):
                raise step.type_error(container, "document")
            _put(container, segment, {})
        value = get_field(container, segment)
        if nxt == POSITIONAL:
            if not isinstance(value, list):
                raise PositionalOperatorError(
                    step.path, f"The positional operator in '{step.path}' needs an array, found {kind_name(value)}"
                )
            _positional(step, operator, container, segment, value, parts, i)
            return
        if not isinstance(value, (dict, list)):
            raise UpdateTypeError(
                step.operator, step.path, kind_name(value), f"document at '{'.'.join(parts[: i + 1])}'"
            )
        container = value
    last = parts[-1]
    if isinstance(container, list) and not is_positive_int(last):
        raise step.type_error(container, "document")
    operator.handler(step, container, last)


def _element_filters(step: _Step, array_path: str) -> list[tuple[Filter, bool]]:
    """Filters the originating query places on elements of ``array_path``.

    Each entry is ``(filter, wrapped)``: wrapped filters test the element as
    a value, the others test document elements directly.
    """
    filters: list[tuple[Filter, bool]] = []
    prefix = array_path + "."
    for key, value in (step.query or {}).items():
        if key == array_path:
            if is_operator_document(value) and "$elemMatch" in value:
                elem = step.compiler.elem_match(array_path, value["$elemMatch"])
                filters.append((elem.inner, elem.value_mode))
                rest = {k: v for k, v in value.items() if k != "$elemMatch"}
                if is_operator_document(rest):
                    filters.append((step.compiler.compile_field(ELEMENT_FIELD, rest), True))
            else:
                filters.append((step.compiler.compile_field(ELEMENT_FIELD, value), True))
        elif key.startswith(prefix):
            filters.append((step.compiler.compile_field(key[len(prefix):], value), False))
    return filters


def _positional(
    step: _Step, operator: _Operator, owner: Any, segment: str, items: list[Any], parts: list[str], i: int
) -> None:
    array_path = ".".join(parts[: i + 1])
    filters = _element_filters(step, array_path)
    if not filters:
        raise PositionalOperatorError(step.path)

    def element_matches(item: Any) -> bool:
        for filt, wrapped in filters:
            if wrapped:
                if not filt.matches(wrap_element(item)):
                    return False
            elif not (isinstance(item, dict) and filt.matches(item)):
                return False
        return True

    for idx, item in enumerate(items):
        if element_matches(item):
            break
    else:
        raise PositionalOperatorError(step.path)
    log.debug("positional path '%s' resolved to element %d", step.path, idx)
    rest = parts[i + 2 :]
    if not rest:
        fresh = list(items)
        _put(owner, segment, fresh)
        operator.handler(step, fresh, str(idx))
        return
    if not isinstance(items[idx], dict):
        raise PositionalOperatorError(
            step.path, f"can not update '{'.'.join(rest)}' of non-document element {items[idx]!r}"
        )
    _walk(step, operator, items[idx], rest)


def _conflicts(path: str, other: str) -> bool:
    a, b = split_path(path), split_path(other)
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


def _claim(path: str, seen: list[str]) -> None:
    for earlier in seen:
        if _conflicts(path, earlier):
            raise UpdateConflictError(path, earlier)
    seen.append(path)


def _replace(doc: dict[str, Any], replacement: Mapping[str, Any]) -> dict[str, Any]:
    if "_id" in replacement and "_id" in doc and not values_equal(replacement["_id"], doc["_id"]):
        log.warning("replacement document tried to change _id %r", doc["_id"])
        raise ImmutableFieldError("_id")
    for key in [k for k in doc if k != "_id"]:
        del doc[key]
    for key, value in replacement.items():
        if key != "_id" or "_id" not in doc:
            doc[key] = copy.deepcopy(value)
    return doc


def apply_update(
    doc: dict[str, Any],
    update: Mapping[str, Any],
    query: Mapping[str, Any] | None = None,
    is_upsert: bool = False,
    *,
    compiler: FilterCompiler | None = None,
) -> dict[str, Any]:
    """Apply ``update`` to ``doc`` in place and return it.

    ``query`` is the query that selected ``doc``; positional (``$``) paths
    are resolved against it. ``$setOnInsert`` only applies when
    ``is_upsert`` is true, i.e. the update produced an insert.
    """
    if not isinstance(update, Mapping):
        raise UpdateTypeError("update", "", kind_name(update), "document")
    if not is_operator_update(update):
        return _replace(doc, update)
    compiler = compiler or FilterCompiler()
    original_id = doc.get("_id", MISSING)
    seen: list[str] = []
    for name, fields in update.items():
        operator = _OPERATORS.get(name)
        if operator is None:
            raise UnsupportedOperatorError(name)
        if not isinstance(fields, Mapping):
            raise UpdateTypeError(name, "", kind_name(fields), "document")
        if name == "$setOnInsert" and not is_upsert:
            continue
        log.debug("applying %s to %d field(s)", name, len(fields))
        for path, operand in fields.items():
            _claim(path, seen)
            if name == "$rename":
                if not isinstance(operand, str):
                    raise UpdateTypeError(name, path, kind_name(operand), "string")
                _claim(operand, seen)
            step = _Step(name, path, operand, doc, query, compiler)
            _walk(step, operator, doc, split_path(path))
    if original_id is not MISSING and ("_id" not in doc or not values_equal(doc["_id"], original_id)):
        log.warning("update tried to change _id %r", original_id)
        raise ImmutableFieldError("_id")
    return doc


def upsert_seed(query: Mapping[str, Any] | None) -> dict[str, Any]:
    """Document an upsert starts from: the query's equality clauses.

    Operator clauses and regex values are skipped (``$eq`` contributes its
    operand, ``$and`` its children's equalities); dotted keys materialize
    nested documents.
    """
    seed: dict[str, Any] = {}
    _merge_equalities(seed, query or {})
    return seed


def _merge_equalities(seed: dict[str, Any], query: Mapping[str, Any]) -> None:
    for key, value in query.items():
        if key == "$and" and isinstance(value, list):
            for clause in value:
                if isinstance(clause, Mapping):
                    _merge_equalities(seed, clause)
            continue
        if key.startswith("$") or kind_of(value) is Kind.REGEX:
            continue
        if is_operator_document(value):
            if "$eq" not in value:
                continue
            value = value["$eq"]
        _seed_path(seed, split_path(key), value)


def _seed_path(seed: dict[str, Any], parts: list[str], value: Any) -> None:
    container = seed
    for segment in parts[:-1]:
        child = container.setdefault(segment, {})
        if not isinstance(child, dict):
            return
        container = child
    container[parts[-1]] = copy.deepcopy(value)
