"""Secondary indexes over a collection's document arena.

An index buckets document handles under the frozen key tuple obtained by
resolving each key field with ``get_embedded_values``, the same path
resolution the filter engine uses. Indexes never hold documents, only
handles into the collection's arena.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Union

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from memongo import geo
from memongo.errors import IndexDefinitionError
from memongo.filters import AndFilter, Filter, GeoWithinFilter, NearFilter
from memongo.paths import get_embedded_values, split_path
from memongo.query import FilterCompiler, is_literal_document, is_operator_document, restrict_query
from memongo.values import Kind, freeze, kind_of

log = logging.getLogger(__name__)

ID_INDEX_NAME = "_id_"
GEO_TYPES = ("2d", "2dsphere")

KeyDirection = Union[int, str]


class IndexSpec(BaseModel):
    """Definition of an index: ordered key fields, name and uniqueness."""

    key: list[tuple[str, KeyDirection]]
    name: str = ""
    unique: bool = False

    @field_validator("key", mode="before")
    @classmethod
    def _normalize_key(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [(value, 1)]
        if isinstance(value, Mapping):
            value = list(value.items())
        if isinstance(value, list):
            for pair in value:
                # Checked before validation, the int coercion would turn True into 1.
                if isinstance(pair, (list, tuple)) and len(pair) == 2 and isinstance(pair[1], bool):
                    raise ValueError(f"bad index key pattern {{{pair[0]}: {pair[1]!r}}}")
        return value

    @field_validator("key")
    @classmethod
    def _check_key(cls, value: list[tuple[str, KeyDirection]]) -> list[tuple[str, KeyDirection]]:
        if not value:
            raise ValueError("index key pattern must not be empty")
        seen = set()
        for name, direction in value:
            if not name or name.startswith("$"):
                raise ValueError(f"bad index key field: {name!r}")
            if name in seen:
                raise ValueError(f"duplicate index key field: {name!r}")
            seen.add(name)
            if isinstance(direction, bool) or (direction not in (1, -1) and direction not in GEO_TYPES):
                raise ValueError(f"bad index key pattern {{{name}: {direction!r}}}")
        if sum(1 for _, direction in value if direction in GEO_TYPES) > 1:
            raise ValueError("only one geo field per index")
        return value

    @model_validator(mode="after")
    def _default_name(self) -> IndexSpec:
        if not self.name:
            self.name = "_".join(f"{field}_{direction}" for field, direction in self.key)
        return self

    @classmethod
    def parse(cls, key: Any, name: str | None = None, unique: bool = False) -> IndexSpec:
        """Build a spec, raising IndexDefinitionError for a bad key pattern."""
        try:
            return cls(key=key, name=name or "", unique=unique)
        except ValidationError as e:
            raise IndexDefinitionError(f"bad index key pattern {key!r}: {e.errors()[0]['msg']}") from e

    @property
    def fields(self) -> list[str]:
        return [field for field, _ in self.key]

    @property
    def geo_field(self) -> str | None:
        for field, direction in self.key:
            if direction in GEO_TYPES:
                return field
        return None

    def info(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"key": list(self.key)}
        if self.unique:
            entry["unique"] = True
        return entry


ID_INDEX_SPEC = IndexSpec(key=[("_id", 1)], name=ID_INDEX_NAME, unique=True)


def _mentions(value: Any, operator: str) -> bool:
    if isinstance(value, Mapping):
        return any(key == operator or _mentions(item, operator) for key, item in value.items())
    if isinstance(value, list):
        return any(_mentions(item, operator) for item in value)
    return False


def _is_scalar_key(value: Any) -> bool:
    return kind_of(value) not in (
        None,
        Kind.DOCUMENT,
        Kind.DBREF,
        Kind.ARRAY,
        Kind.BINARY,
        Kind.REGEX,
    )


def _embedded_clause(query: Mapping[str, Any], field: str) -> Any:
    """Equality operand for ``field`` implied by a plain document on one of its parents, or None."""
    parts = split_path(field)
    for i in range(len(parts) - 1, 0, -1):
        value = query.get(".".join(parts[:i]))
        if not is_literal_document(value):
            continue
        found = get_embedded_values(value, parts[i:])
        if len(found) != 1:
            return None
        embedded = found[0]
        if kind_of(embedded) is Kind.REGEX or (isinstance(embedded, Mapping) and not is_literal_document(embedded)):
            return None
        return embedded
    return None


class Index:
    """Buckets of handles keyed by the frozen values of the key fields.

    Every handle in the arena is in exactly one bucket, documents missing the
    key fields included (their key component is the empty value list).
    """

    def __init__(self, spec: IndexSpec) -> None:
        self.spec = spec
        self.name = spec.name
        self.fields = spec.fields
        self.unique = spec.unique
        self.lookup_count = 0
        self._buckets: dict[Any, list[int]] = {}
        self._keys: dict[int, Any] = {}

    def __repr__(self) -> str:
        return f"Index(name={self.name!r}, unique={self.unique})"

    @property
    def is_geo(self) -> bool:
        return False

    def key_values(self, doc: Mapping[str, Any]) -> list[list[Any]]:
        return [get_embedded_values(doc, field) for field in self.fields]

    def key_for(self, doc: Mapping[str, Any]) -> Any:
        return tuple(tuple(freeze(v) for v in values) for values in self.key_values(doc))

    def size(self) -> int:
        return len(self._keys)

    def handles(self) -> list[int]:
        return sorted(self._keys)

    def bucket_count(self) -> int:
        return len(self._buckets)

    def key_of(self, handle: int) -> Any:
        return self._keys.get(handle)

    def check(self, doc: Mapping[str, Any], handle: int | None = None) -> list[list[Any]] | None:
        """Offending key values if ``doc`` would break uniqueness, else None.

        ``handle`` is the document's own handle on update, so it does not
        collide with itself.
        """
        if not self.unique:
            return None
        bucket = self._buckets.get(self.key_for(doc))
        if bucket and any(other != handle for other in bucket):
            return self.key_values(doc)
        return None

    def add_or_update(self, handle: int, doc: Mapping[str, Any]) -> list[list[Any]] | None:
        """Index ``doc`` under ``handle``, replacing its previous entry.

        On a uniqueness violation nothing changes and the offending key
        values are returned.
        """
        offending = self.check(doc, handle)
        if offending is not None:
            return offending
        self.remove(handle)
        key = self.key_for(doc)
        self._buckets.setdefault(key, []).append(handle)
        self._keys[handle] = key
        return None

    def remove(self, handle: int) -> None:
        key = self._keys.pop(handle, None)
        if key is None:
            return
        bucket = self._buckets[key]
        bucket.remove(handle)
        if not bucket:
            del self._buckets[key]

    def clear(self) -> None:
        self._buckets.clear()
        self._keys.clear()

    def backfill(self, documents: Mapping[int, Mapping[str, Any]]) -> list[list[Any]] | None:
        for handle, doc in documents.items():
            offending = self.add_or_update(handle, doc)
            if offending is not None:
                return offending
        return None

    def can_handle(self, query_fields: Iterable[str]) -> bool:
        """True if every key field is constrained by the query.

        ``query_fields`` includes the embedded fields of plain document values
        (see ``query_fields``), so ``{"a": {"b": 1}}`` covers key field ``a.b``.
        """
        fields = set(query_fields)
        return all(field in fields for field in self.fields)

    def _key_query(self, query: Mapping[str, Any]) -> dict[str, Any]:
        """The part of ``query`` decided by key values alone.

        A clause on a parent of a key field also looks at sibling fields, so
        it is replaced by equality on the embedded value it fixes.
        """
        related = [
            key
            for key in query
            if any(field == key or key.startswith(field + ".") for field in self.fields)
        ]
        restricted = restrict_query(query, related)
        for field in self.fields:
            if field not in restricted:
                clause = _embedded_clause(query, field)
                if clause is not None:
                    restricted[field] = clause
        # Numbers of different kinds share a bucket; $type tells them apart.
        return {key: value for key, value in restricted.items() if not _mentions(value, "$type")}

    def retrieve(
        self,
        query: Mapping[str, Any],
        documents: Mapping[int, Mapping[str, Any]],
        compiler: FilterCompiler | None = None,
    ) -> list[int]:
        """Candidate handles for ``query``, in store order.

        The result is a superset of the matching documents; the caller still
        evaluates the full filter.
        """
        self.lookup_count += 1
        if self.fields == ["_id"] and "_id" in query and _is_scalar_key(query["_id"]):
            bucket = self._buckets.get(self.key_for({"_id": query["_id"]}), [])
            return list(bucket)
        key_filter = (compiler or FilterCompiler()).compile(self._key_query(query))
        candidates: list[int] = []
        for bucket in self._buckets.values():
            # Documents in one bucket share their key values.
            if key_filter.matches(documents[bucket[0]]):
                candidates.extend(bucket)
        candidates.sort()
        log.debug("index %s narrowed %d documents to %d candidates", self.name, self.size(), len(candidates))
        return candidates


def _spatial_bbox(filt: Filter) -> tuple[bool, geo.BBox | None]:
    """Whether the clause carries a geo operator, and the bounding box it implies."""
    clauses = filt.children if isinstance(filt, AndFilter) else [filt]
    for clause in clauses:
        if isinstance(clause, (NearFilter, GeoWithinFilter)):
            return True, clause.bbox()
    return False, None


class GeoIndex(Index):
    """An index with a ``2d``/``2dsphere`` field.

    Besides the key buckets it files handles under the geohash cells of their
    coordinates, to prune candidates of ``$near``/``$geoWithin`` queries.
    Matching itself is always done by the exact filter.
    """

    def __init__(self, spec: IndexSpec, precision: int = geo.GEOHASH_PRECISION) -> None:
        super().__init__(spec)
        self.geo_field = spec.geo_field or self.fields[0]
        self.precision = precision
        self._cells: dict[str, set[int]] = {}
        self._cells_of: dict[int, set[str]] = {}

    @property
    def is_geo(self) -> bool:
        return True

    def add_or_update(self, handle: int, doc: Mapping[str, Any]) -> list[list[Any]] | None:
        offending = super().add_or_update(handle, doc)
        if offending is not None:
            return offending
        self._uncell(handle)
        cells = {geo.encode_geohash(p, self.precision) for p in geo.points_at(doc, self.geo_field)}
        for cell in cells:
            self._cells.setdefault(cell, set()).add(handle)
        self._cells_of[handle] = cells
        return None

    def remove(self, handle: int) -> None:
        super().remove(handle)
        self._uncell(handle)

    def _uncell(self, handle: int) -> None:
        for cell in self._cells_of.pop(handle, set()):
            members = self._cells[cell]
            members.discard(handle)
            if not members:
                del self._cells[cell]

    def clear(self) -> None:
        super().clear()
        self._cells.clear()
        self._cells_of.clear()

    def cells(self) -> list[str]:
        return sorted(self._cells)

    def retrieve(
        self,
        query: Mapping[str, Any],
        documents: Mapping[int, Mapping[str, Any]],
        compiler: FilterCompiler | None = None,
    ) -> list[int]:
        compiler = compiler or FilterCompiler()
        candidates = super().retrieve(query, documents, compiler)
        clause = query.get(self.geo_field)
        if not is_operator_document(clause):
            return candidates
        spatial, bbox = _spatial_bbox(compiler.compile_field(self.geo_field, clause))
        if not spatial:
            return candidates
        allowed: set[int] = set()
        for cell, members in self._cells.items():
            # The empty cell holds points off the globe, it has no usable bounds.
            if bbox is None or cell == "" or geo.bboxes_intersect(geo.geohash_bounds(cell), bbox):
                allowed |= members
        pruned = [handle for handle in candidates if handle in allowed]
        log.debug("geo index %s kept %d of %d candidates", self.name, len(pruned), len(candidates))
        return pruned


def create_index_from_spec(spec: IndexSpec, geohash_precision: int = geo.GEOHASH_PRECISION) -> Index:
    if spec.geo_field is not None:
        return GeoIndex(spec, geohash_precision)
    return Index(spec)


def select_index(indexes: Iterable[Index], query_fields: Iterable[str]) -> Index | None:
    """Greedy pick: the index covering the most key fields, unique winning ties.

    Returns None when no index covers the query, meaning a full scan.
    """
    fields = set(query_fields)
    best: Index | None = None
    for index in indexes:
        if not index.can_handle(fields):
            continue
        if best is None or (len(index.fields), index.unique) > (len(best.fields), best.unique):
            best = index
    log.debug("index selected for fields %s: %s", sorted(fields), best.name if best else "none (full scan)")
    return best
