"""Fixture files: a database snapshot the CLI loads before each command.

A fixture is YAML (or JSON, which YAML reads too)::

    database: shop
    collections:
      users:
        indexes:
          - key: {email: 1}
            unique: true
        documents:
          - {_id: 1, email: a@example.com}

Values may use MongoDB extended JSON such as ``{"$oid": ...}`` or
``{"$date": ...}``.
"""

from __future__ import annotations

from datetime import date, datetime, time
from pathlib import Path
from typing import Any

import yaml
from bson import json_util
from pydantic import BaseModel, Field

from memongo.collection import Database
from memongo.index import IndexSpec


class CollectionFixture(BaseModel):
    indexes: list[IndexSpec] = Field(default_factory=list)
    documents: list[dict[str, Any]] = Field(default_factory=list)


class Fixture(BaseModel):
    database: str = "test"
    collections: dict[str, CollectionFixture] = Field(default_factory=dict)


def parse_json(text: str | None, what: str = "document") -> Any:
    """Decode an extended-JSON command argument."""
    if text is None:
        return None
    try:
        return json_util.loads(text)
    except ValueError as e:
        raise ValueError(f"invalid JSON for {what}: {e}") from e


def _yaml_dates(raw: Any) -> Any:
    """YAML reads unquoted dates as ``date``; BSON only knows datetimes."""
    if isinstance(raw, dict):
        return {key: _yaml_dates(value) for key, value in raw.items()}
    if isinstance(raw, list):
        return [_yaml_dates(item) for item in raw]
    if isinstance(raw, date) and not isinstance(raw, datetime):
        return datetime.combine(raw, time())
    return raw


def decode_extended(raw: Any) -> Any:
    """Turn extended-JSON wrappers in plain YAML/JSON data into BSON values.

    YAML timestamps stay dates rather than turning into strings.
    """
    return json_util.loads(json_util.dumps(_yaml_dates(raw)))


def read_fixture(path: str | Path) -> Fixture:
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return Fixture.model_validate(decode_extended(raw))


def build_database(fixture: Fixture) -> Database:
    db = Database(fixture.database)
    for name, spec in fixture.collections.items():
        collection = db[name]
        for index in spec.indexes:
            collection.create_index(index.key, name=index.name, unique=index.unique)
        if spec.documents:
            collection.insert(spec.documents)
    return db


def load_database(path: str | Path) -> Database:
    """Read a fixture file and materialize it as a Database."""
    return build_database(read_fixture(path))
