"""Collections and databases: the document arena, its indexes and the lock around them."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterable, Mapping, MutableMapping
from typing import Any

from memongo.config import EngineConfig, WriteConcern
from memongo.errors import (
    BulkWriteError,
    CapacityError,
    DuplicateKeyError,
    IndexDefinitionError,
    InvalidDocumentError,
    MemongoError,
    QueryCompilationError,
    UpdateError,
)
from memongo.index import (
    ID_INDEX_NAME,
    ID_INDEX_SPEC,
    Index,
    IndexSpec,
    create_index_from_spec,
    select_index,
)
from memongo.paths import get_embedded_values
from memongo.projection import apply_projection
from memongo.query import FilterCompiler, filter_documents, query_fields
from memongo.results import (
    BulkWriteResult,
    DeleteMany,
    DeleteOne,
    DeleteResult,
    InsertOne,
    InsertResult,
    ReplaceOne,
    UpdateMany,
    UpdateOne,
    UpdateResult,
    WriteRequest,
)
from memongo.update import apply_update, is_operator_update, upsert_seed
from memongo.values import Kind, freeze, identical, kind_of, sort_key

log = logging.getLogger(__name__)

ID_KEY = "_id"


def _check_key(key: Any, path: str) -> None:
    if not isinstance(key, str):
        raise InvalidDocumentError(f"field names must be strings, got {key!r} in '{path}'")
    if key.startswith("$"):
        raise InvalidDocumentError(f"field names cannot start with '$': '{key}'")
    if "." in key:
        raise InvalidDocumentError(f"field names cannot contain '.': '{key}'")


def _prepare_value(value: Any, path: str) -> Any:
    kind = kind_of(value)
    if kind is None:
        raise InvalidDocumentError(f"cannot store value of type {type(value).__name__} at '{path}'")
    if kind is Kind.DOCUMENT:
        prepared: dict[str, Any] = {}
        for key, item in value.items():
            _check_key(key, path)
            prepared[key] = _prepare_value(item, f"{path}.{key}" if path else key)
        return prepared
    if kind is Kind.ARRAY:
        return [_prepare_value(item, f"{path}.{i}") for i, item in enumerate(value)]
    if isinstance(value, bytearray):
        return bytes(value)
    return copy.copy(value)


def prepare_document(doc: Mapping[str, Any]) -> dict[str, Any]:
    """Validated deep copy of ``doc`` with ``_id`` first.

    Tuples become lists; unsupported values, bad field names and array
    ``_id`` values raise InvalidDocumentError.
    """
    if not isinstance(doc, Mapping):
        raise InvalidDocumentError(f"documents must be mappings, got {type(doc).__name__}")
    if ID_KEY in doc and kind_of(doc[ID_KEY]) in (Kind.ARRAY, Kind.REGEX):
        raise InvalidDocumentError(f"_id cannot be of kind {kind_of(doc[ID_KEY]).value}")
    prepared = _prepare_value(doc, "")
    if ID_KEY in prepared:
        prepared = {ID_KEY: prepared.pop(ID_KEY), **prepared}
    return prepared


class Collection:
    """An in-memory collection.

    Documents live in an arena keyed by monotonically increasing handles, so
    the arena's order is insertion order. Every index, the ``_id_`` index
    included, buckets handles. All operations run under one re-entrant lock,
    so readers never see a document updated in only some indexes.
    """

    def __init__(self, name: str, config: EngineConfig | None = None, database: Database | None = None) -> None:
        self.name = name
        self.config = config or EngineConfig()
        self.database = database
        self._lock = threading.RLock()
        self._documents: dict[int, dict[str, Any]] = {}
        self._next_handle = 1
        self._indexes: dict[str, Index] = {ID_INDEX_NAME: Index(ID_INDEX_SPEC)}
        self._compiler = FilterCompiler(
            self.config.script_evaluator,
            self.config.max_operators_per_field,
            self.config.near_match_limit,
        )

    def __repr__(self) -> str:
        return f"Collection({self.full_name!r})"

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def full_name(self) -> str:
        return f"{self.database.name}.{self.name}" if self.database else self.name

    def _write_concern(self, write_concern: WriteConcern | None) -> WriteConcern:
        return write_concern or self.config.write_concern

    # --- Arena and index maintenance ---

    def _check_indexes(self, doc: Mapping[str, Any], handle: int | None) -> DuplicateKeyError | None:
        for index in self._indexes.values():
            offending = index.check(doc, handle)
            if offending is not None:
                return DuplicateKeyError(index.name, offending)
        return None

    def _store(self, doc: dict[str, Any], handle: int | None, concern: WriteConcern) -> int | None:
        """Put ``doc`` in the arena (new when ``handle`` is None) and in every index.

        Returns the handle, or None when an unacknowledged write hit a
        duplicate key and was dropped.
        """
        error = self._check_indexes(doc, handle)
        if error is not None:
            if concern.acknowledged:
                raise error
            log.debug("unacknowledged write dropped on %s: %s", self.full_name, error)
            return None
        if handle is None:
            if len(self._documents) >= self.config.max_documents:
                raise CapacityError(self.config.max_documents)
            handle = self._next_handle
            self._next_handle += 1
        for index in self._indexes.values():
            index.add_or_update(handle, doc)
        self._documents[handle] = doc
        return handle

    def _unstore(self, handle: int) -> None:
        for index in self._indexes.values():
            index.remove(handle)
        del self._documents[handle]

    def _insert_one(self, doc: MutableMapping[str, Any], concern: WriteConcern) -> bool:
        """Store a new document. False means an unacknowledged duplicate was dropped."""
        if not isinstance(doc, Mapping):
            raise InvalidDocumentError(f"documents must be mappings, got {type(doc).__name__}")
        if ID_KEY not in doc:
            doc[ID_KEY] = self.config.id_factory()
        return self._store(prepare_document(doc), None, concern) is not None

    # --- Reads ---

    def _select(self, query: Mapping[str, Any] | None) -> list[int]:
        filt = self._compiler.compile(query)
        index = select_index(self._indexes.values(), query_fields(query))
        if index is None:
            candidates = list(self._documents)
        else:
            candidates = index.retrieve(query or {}, self._documents, self._compiler)
        handles = filter_documents(filt, candidates, self._documents.__getitem__)
        log.debug(
            "%s: %d candidate(s) via %s, %d match(es)",
            self.full_name,
            len(candidates),
            index.name if index else "full scan",
            len(handles),
        )
        return handles

    def _ordered(
        self, handles: list[int], query: Mapping[str, Any] | None, sort: Any
    ) -> list[dict[str, Any]]:
        docs = [self._documents[h] for h in handles]
        if sort:
            return sorted(docs, key=sort_key(sort))
        id_clause = (query or {}).get(ID_KEY)
        if isinstance(id_clause, Mapping) and "$in" in id_clause:
            return sorted(docs, key=sort_key([(ID_KEY, 1)]))
        return docs

    def find(
        self,
        query: Mapping[str, Any] | None = None,
        projection: Mapping[str, Any] | None = None,
        *,
        sort: Any = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[dict[str, Any]]:
        """Matching documents, as copies, after sort, skip, limit and projection.

        ``limit=0`` means no limit; a negative limit counts as its absolute value.
        """
        if skip < 0:
            raise QueryCompilationError(f"skip must be non-negative, got {skip}")
        with self._lock:
            docs = self._ordered(self._select(query), query, sort)
            docs = docs[skip:]
            if limit:
                docs = docs[: abs(limit)]
            return [apply_projection(doc, projection, self._compiler) for doc in docs]

    def find_one(
        self,
        query: Any = None,
        projection: Mapping[str, Any] | None = None,
        *,
        sort: Any = None,
    ) -> dict[str, Any] | None:
        """First match or None. A non-document ``query`` is shorthand for ``{"_id": query}``."""
        if query is not None and not isinstance(query, Mapping):
            query = {ID_KEY: query}
        found = self.find(query, projection, sort=sort, limit=1)
        return found[0] if found else None

    def count(self, query: Mapping[str, Any] | None = None, *, skip: int = 0, limit: int = 0) -> int:
        with self._lock:
            total = max(len(self._select(query)) - skip, 0)
        return min(total, abs(limit)) if limit else total

    def distinct(self, key: str, query: Mapping[str, Any] | None = None) -> list[Any]:
        """Distinct values at ``key`` among matching documents; array values are unwound."""
        with self._lock:
            seen: set[Any] = set()
            values: list[Any] = []
            for handle in self._select(query):
                for value in get_embedded_values(self._documents[handle], key):
                    for item in value if isinstance(value, list) else [value]:
                        frozen = freeze(item)
                        if frozen not in seen:
                            seen.add(frozen)
                            values.append(copy.deepcopy(item))
            return values

    def explain(self, query: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """How a query would run: the chosen index and the candidate set size."""
        with self._lock:
            self._compiler.compile(query)
            index = select_index(self._indexes.values(), query_fields(query))
            if index is None:
                candidates = len(self._documents)
            else:
                candidates = len(index.retrieve(query or {}, self._documents, self._compiler))
            return {
                "cursor": f"BtreeCursor {index.name}" if index else "BasicCursor",
                "index": index.name if index else None,
                "candidates": candidates,
                "matched": len(self._select(query)),
                "total": len(self._documents),
            }

    # --- Writes ---

    def insert(
        self,
        documents: MutableMapping[str, Any] | Iterable[MutableMapping[str, Any]],
        *,
        write_concern: WriteConcern | None = None,
    ) -> InsertResult:
        """Insert one document or a sequence of them, in order.

        Missing ``_id`` values are generated and written back into the
        caller's documents. A failure stops the sequence; documents inserted
        before it stay.
        """
        concern = self._write_concern(write_concern)
        batch = [documents] if isinstance(documents, Mapping) else list(documents)
        with self._lock:
            ids = [doc[ID_KEY] for doc in batch if self._insert_one(doc, concern)]
        return InsertResult(ids, concern.acknowledged)

    def _apply(self, handle: int, update: Mapping[str, Any], query: Mapping[str, Any] | None, concern: WriteConcern) -> bool:
        """Update one stored document through a working copy. Returns whether it changed."""
        current = self._documents[handle]
        working = copy.deepcopy(current)
        apply_update(working, update, query, False, compiler=self._compiler)
        updated = prepare_document(working)
        if identical(current, updated):
            return False
        return self._store(updated, handle, concern) is not None

    def _upsert(
        self, query: Mapping[str, Any] | None, update: Mapping[str, Any], concern: WriteConcern
    ) -> dict[str, Any] | None:
        """Insert the document an upsert builds. Returns it, or None when the write was dropped."""
        seed = upsert_seed(query)
        if is_operator_update(update):
            apply_update(seed, update, query, True, compiler=self._compiler)
        else:
            seed = {**({ID_KEY: seed[ID_KEY]} if ID_KEY in seed else {}), **copy.deepcopy(dict(update))}
        log.debug("upsert into %s inserting a new document", self.full_name)
        return seed if self._insert_one(seed, concern) else None

    def update(
        self,
        query: Mapping[str, Any] | None,
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        multi: bool = False,
        write_concern: WriteConcern | None = None,
    ) -> UpdateResult:
        concern = self._write_concern(write_concern)
        if not isinstance(update, Mapping):
            raise UpdateError(f"update must be a document, got {type(update).__name__}")
        if multi and not is_operator_update(update):
            raise UpdateError("multi update only works with $ operators")
        with self._lock:
            handles = self._select(query)
            if not multi:
                handles = handles[:1]
            if not handles:
                if not upsert:
                    return UpdateResult(acknowledged=concern.acknowledged)
                seed = self._upsert(query, update, concern)
                if seed is None:
                    return UpdateResult(acknowledged=concern.acknowledged)
                return UpdateResult(0, 0, seed[ID_KEY], concern.acknowledged)
            modified = sum(1 for handle in handles if self._apply(handle, update, query, concern))
            return UpdateResult(len(handles), modified, None, concern.acknowledged)

    def remove(
        self,
        query: Mapping[str, Any] | None = None,
        *,
        multi: bool = True,
        write_concern: WriteConcern | None = None,
    ) -> DeleteResult:
        concern = self._write_concern(write_concern)
        with self._lock:
            handles = self._select(query)
            if not multi:
                handles = handles[:1]
            for handle in handles:
                self._unstore(handle)
            return DeleteResult(len(handles), concern.acknowledged)

    def find_and_modify(
        self,
        query: Mapping[str, Any] | None = None,
        *,
        update: Mapping[str, Any] | None = None,
        remove: bool = False,
        new: bool = False,
        upsert: bool = False,
        sort: Any = None,
        fields: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Atomically update or remove the first match and return it.

        Returns the document before the change, or after it with ``new=True``.
        """
        if remove == (update is not None):
            raise QueryCompilationError("find_and_modify needs exactly one of update or remove")
        if remove and upsert:
            raise QueryCompilationError("find_and_modify cannot combine remove and upsert")
        concern = self.config.write_concern
        with self._lock:
            handles = self._select(query)
            if sort and handles:
                key = sort_key(sort)
                handles = [min(handles, key=lambda h: key(self._documents[h]))]
            if not handles:
                if not upsert:
                    return None
                seed = self._upsert(query, update or {}, concern)
                if seed is None or not new:
                    return None
                return self.find_one({ID_KEY: seed[ID_KEY]}, fields)
            handle = handles[0]
            before = apply_projection(self._documents[handle], fields, self._compiler)
            if remove:
                self._unstore(handle)
                return before
            self._apply(handle, update or {}, query, concern)
            if new and handle in self._documents:
                return apply_projection(self._documents[handle], fields, self._compiler)
            return before

    # --- Indexes ---

    def create_index(self, keys: Any, *, name: str | None = None, unique: bool = False) -> str:
        """Create an index by backfilling every stored document; returns its name.

        A uniqueness violation during the backfill raises DuplicateKeyError
        and the index is never registered.
        """
        spec = IndexSpec.parse(keys, name, unique)
        with self._lock:
            for existing in self._indexes.values():
                if existing.spec.key == spec.key:
                    return existing.name
            if spec.name in self._indexes:
                raise IndexDefinitionError(f"index '{spec.name}' already exists with a different key")
            index = create_index_from_spec(spec, self.config.geohash_precision)
            offending = index.backfill(self._documents)
            if offending is not None:
                raise DuplicateKeyError(spec.name, offending)
            self._indexes[spec.name] = index
            log.debug("created index %s on %s over %d document(s)", spec.name, self.full_name, index.size())
            return spec.name

    def drop_index(self, index: Any) -> None:
        """Drop an index by name or by key pattern. The ``_id_`` index cannot be dropped."""
        with self._lock:
            if isinstance(index, str):
                name = index
            else:
                key = IndexSpec.parse(index).key
                name = next((ix.name for ix in self._indexes.values() if ix.spec.key == key), "")
            if name == ID_INDEX_NAME:
                raise IndexDefinitionError("cannot drop _id index")
            if name not in self._indexes:
                raise IndexDefinitionError(f"index not found with name [{index}]")
            del self._indexes[name]

    def drop_indexes(self) -> None:
        with self._lock:
            for name in [n for n in self._indexes if n != ID_INDEX_NAME]:
                del self._indexes[name]

    def index_information(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: index.spec.info() for name, index in self._indexes.items()}

    def indexes(self) -> list[Index]:
        with self._lock:
            return list(self._indexes.values())

    # --- Bulk and lifecycle ---

    def _execute(self, request: WriteRequest, position: int, result: BulkWriteResult, concern: WriteConcern) -> None:
        if isinstance(request, InsertOne):
            if self._insert_one(request.document, concern):
                result.inserted_count += 1
        elif isinstance(request, (UpdateOne, UpdateMany, ReplaceOne)):
            if isinstance(request, ReplaceOne):
                if is_operator_update(request.replacement):
                    raise UpdateError("replacement document cannot contain $ operators")
                update = request.replacement
            else:
                update = request.update
                if not is_operator_update(update):
                    raise UpdateError("update document requires $ operators")
            outcome = self.update(
                request.filter,
                update,
                upsert=request.upsert,
                multi=isinstance(request, UpdateMany),
                write_concern=concern,
            )
            result.matched_count += outcome.matched_count
            result.modified_count += outcome.modified_count
            if outcome.upserted_id is not None:
                result.upserted_ids[position] = outcome.upserted_id
        elif isinstance(request, (DeleteOne, DeleteMany)):
            outcome = self.remove(request.filter, multi=isinstance(request, DeleteMany), write_concern=concern)
            result.deleted_count += outcome.deleted_count
        else:
            raise InvalidDocumentError(f"unknown bulk request: {request!r}")

    def bulk_write(
        self,
        requests: Iterable[WriteRequest],
        *,
        ordered: bool = True,
        write_concern: WriteConcern | None = None,
    ) -> BulkWriteResult:
        """Run write requests in sequence.

        Ordered batches stop at the first failure, unordered ones carry on.
        Either way completed writes stay and a BulkWriteError carries the
        partial result together with each failure.
        """
        concern = self._write_concern(write_concern)
        result = BulkWriteResult()
        errors: list[tuple[int, MemongoError]] = []
        with self._lock:
            for position, request in enumerate(requests):
                try:
                    self._execute(request, position, result, concern)
                except MemongoError as e:
                    errors.append((position, e))
                    if ordered:
                        break
        if errors:
            raise BulkWriteError(result, errors)
        return result

    def drop(self) -> None:
        """Remove every document and every index but ``_id_``."""
        with self._lock:
            self._documents.clear()
            self.drop_indexes()
            self._indexes[ID_INDEX_NAME].clear()
        if self.database is not None:
            self.database._forget(self.name)


class Database:
    """Named collections sharing one EngineConfig. Collections are created on first use."""

    def __init__(self, name: str = "test", config: EngineConfig | None = None) -> None:
        self.name = name
        self.config = config or EngineConfig()
        self._lock = threading.RLock()
        self._collections: dict[str, Collection] = {}

    def __repr__(self) -> str:
        return f"Database({self.name!r})"

    def __getitem__(self, name: str) -> Collection:
        return self.get_collection(name)

    def __contains__(self, name: str) -> bool:
        return name in self._collections

    def get_collection(self, name: str) -> Collection:
        if not name or "$" in name:
            raise InvalidDocumentError(f"invalid collection name: {name!r}")
        with self._lock:
            collection = self._collections.get(name)
            if collection is None:
                collection = self._collections[name] = Collection(name, self.config, self)
            return collection

    def collection_names(self) -> list[str]:
        with self._lock:
            return sorted(self._collections)

    def drop_collection(self, name: str) -> None:
        with self._lock:
            collection = self._collections.get(name)
        if collection is not None:
            collection.drop()

    def _forget(self, name: str) -> None:
        with self._lock:
            self._collections.pop(name, None)
