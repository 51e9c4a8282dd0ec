"""Write results and bulk write requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class InsertResult:
    inserted_ids: list[Any] = field(default_factory=list)
    acknowledged: bool = True

    @property
    def inserted_id(self) -> Any:
        return self.inserted_ids[0] if self.inserted_ids else None


@dataclass
class UpdateResult:
    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None
    acknowledged: bool = True

    @property
    def updated_existing(self) -> bool:
        return self.matched_count > 0


@dataclass
class DeleteResult:
    deleted_count: int = 0
    acknowledged: bool = True


@dataclass
class BulkWriteResult:
    inserted_count: int = 0
    matched_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    # Request index -> _id of the upserted document.
    upserted_ids: dict[int, Any] = field(default_factory=dict)

    @property
    def upserted_count(self) -> int:
        return len(self.upserted_ids)


# --- Bulk requests ---


@dataclass
class InsertOne:
    document: dict[str, Any]


@dataclass
class UpdateOne:
    filter: dict[str, Any]
    update: dict[str, Any]
    upsert: bool = False


@dataclass
class UpdateMany:
    filter: dict[str, Any]
    update: dict[str, Any]
    upsert: bool = False


@dataclass
class ReplaceOne:
    filter: dict[str, Any]
    replacement: dict[str, Any]
    upsert: bool = False


@dataclass
class DeleteOne:
    filter: dict[str, Any]


@dataclass
class DeleteMany:
    filter: dict[str, Any]


WriteRequest = InsertOne | UpdateOne | UpdateMany | ReplaceOne | DeleteOne | DeleteMany
