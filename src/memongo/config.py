"""Configuration for the memongo engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from bson import ObjectId

if TYPE_CHECKING:
    from memongo.query import ScriptEvaluator


@dataclass(frozen=True)
class WriteConcern:
    """Acknowledgement level for writes. ``w=0`` silently drops duplicate-key writes."""

    w: int = 1

    @property
    def acknowledged(self) -> bool:
        return self.w > 0


@dataclass
class EngineConfig:
    """Configuration shared by every collection of a Database."""

    max_documents: int = 100_000
    max_operators_per_field: int | None = 2
    near_match_limit: int = 100
    geohash_precision: int = 5
    script_evaluator: ScriptEvaluator | None = None
    id_factory: Callable[[], Any] = ObjectId
    write_concern: WriteConcern = field(default_factory=WriteConcern)
