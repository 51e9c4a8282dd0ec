"""Structured error types for memongo."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from memongo.results import BulkWriteResult


class MemongoError(Exception):
    """Base error for all memongo errors."""


class QueryCompilationError(MemongoError):
    """Raised when a query, sort or projection document is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class IncomparableValuesError(MemongoError):
    """Raised when two values fall outside the supported value kinds.

    This signals a broken invariant: every value accepted by a write has a
    kind with a comparison weight.
    """

    def __init__(self, left: Any, right: Any) -> None:
        self.left_type = type(left).__name__
        self.right_type = type(right).__name__
        super().__init__(
            f"Don't know how to compare {self.left_type} and {self.right_type} "
            f"(values: {left!r} vs {right!r})"
        )


class InvalidDocumentError(MemongoError):
    """Raised when a document cannot be stored (bad field name, bad value, array _id)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class IndexDefinitionError(MemongoError):
    """Raised for bad index key patterns, name clashes or unknown indexes."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class CapacityError(MemongoError):
    """Raised when an insert would exceed the per-collection document ceiling."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(
            f"Collection is limited to {limit} documents; memongo is designed for test-scale data"
        )


class DuplicateKeyError(MemongoError):
    """Raised when a write violates a unique index."""

    def __init__(self, index_name: str, key_values: list[list[Any]]) -> None:
        self.index_name = index_name
        self.key_values = key_values
        super().__init__(f"E11000 duplicate key error index: {index_name} dup key: {key_values!r}")


class UpdateError(MemongoError):
    """Base error for update documents that cannot be applied."""


class UpdateConflictError(UpdateError):
    """Raised when two update operators target the same (or an overlapping) path."""

    def __init__(self, path: str, conflicting_path: str) -> None:
        self.path = path
        self.conflicting_path = conflicting_path
        if path == conflicting_path:
            message = f"Attempting more than one atomic update on '{path}'"
        else:
            message = f"Updating the path '{path}' would create a conflict at '{conflicting_path}'"
        super().__init__(message)


class UpdateTypeError(UpdateError):
    """Raised when an operator meets an operand or stored value of the wrong kind."""

    def __init__(self, operator: str, path: str, kind: str, expected: str | None = None) -> None:
        self.operator = operator
        self.path = path
        self.kind = kind
        self.expected = expected
        detail = f" (expected {expected})" if expected else ""
        super().__init__(f"{operator} cannot be applied to '{path}' of kind {kind}{detail}")


class UnsupportedOperatorError(UpdateError):
    """Raised for an unknown '$' key, or a plain key mixed into an operator update."""

    def __init__(self, operator: str) -> None:
        self.operator = operator
        super().__init__(f"Unknown modifier: {operator}")


class ImmutableFieldError(UpdateError):
    """Raised when an update would change a document's _id."""

    def __init__(self, field: str = "_id") -> None:
        self.field = field
        super().__init__(f"Performing an update would modify the immutable field '{field}'")


class PositionalOperatorError(UpdateError):
    """Raised when a positional ($) update has no matching constraint in the query."""

    def __init__(self, path: str, detail: str | None = None) -> None:
        self.path = path
        super().__init__(
            detail or f"The positional operator in '{path}' did not find the match needed from the query"
        )


class BulkWriteError(MemongoError):
    """Raised when one or more requests of a bulk write failed.

    Requests that completed before (or, when unordered, around) the failures
    are not rolled back.
    """

    def __init__(self, result: BulkWriteResult, errors: list[tuple[int, MemongoError]]) -> None:
        self.result = result
        self.errors = errors
        indexes = [i for i, _ in errors]
        super().__init__(f"Bulk write failed for {len(errors)} request(s) at index {indexes}")
