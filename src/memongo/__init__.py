"""memongo: an embeddable in-memory document store with MongoDB query semantics."""

__version__ = "0.1.0"

from memongo.collection import Collection, Database
from memongo.config import EngineConfig, WriteConcern
from memongo.errors import (
    BulkWriteError,
    CapacityError,
    DuplicateKeyError,
    ImmutableFieldError,
    IncomparableValuesError,
    IndexDefinitionError,
    InvalidDocumentError,
    MemongoError,
    PositionalOperatorError,
    QueryCompilationError,
    UnsupportedOperatorError,
    UpdateConflictError,
    UpdateError,
    UpdateTypeError,
)
from memongo.filters import ALL, Filter
from memongo.index import IndexSpec
from memongo.query import compile_filter
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
)
from memongo.update import apply_update
from memongo.values import compare, sort_comparator

__all__ = [
    "__version__",
    "Collection",
    "Database",
    "EngineConfig",
    "WriteConcern",
    "Filter",
    "ALL",
    "IndexSpec",
    "compile_filter",
    "apply_update",
    "compare",
    "sort_comparator",
    "InsertResult",
    "UpdateResult",
    "DeleteResult",
    "BulkWriteResult",
    "InsertOne",
    "UpdateOne",
    "UpdateMany",
    "ReplaceOne",
    "DeleteOne",
    "DeleteMany",
    "MemongoError",
    "QueryCompilationError",
    "IncomparableValuesError",
    "InvalidDocumentError",
    "IndexDefinitionError",
    "CapacityError",
    "DuplicateKeyError",
    "UpdateError",
    "UpdateConflictError",
    "UpdateTypeError",
    "UnsupportedOperatorError",
    "ImmutableFieldError",
    "PositionalOperatorError",
    "BulkWriteError",
]
