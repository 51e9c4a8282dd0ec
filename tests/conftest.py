"""Shared test fixtures for memongo tests."""

from __future__ import annotations

import pytest

from memongo import Database, EngineConfig

PEOPLE = [
    {"_id": 1, "name": "Alice", "age": 30, "tier": "Gold", "tags": ["a", "b"]},
    {"_id": 2, "name": "Bob", "age": 25, "tier": "Silver", "tags": ["b"]},
    {"_id": 3, "name": "Carol", "age": 35, "tier": "Gold", "address": {"city": "Oslo"}},
    {"_id": 4, "name": "Dave", "age": 25.0, "tier": "Bronze", "tags": []},
]


@pytest.fixture
def db():
    """A fresh database with the default configuration."""
    return Database("test")


@pytest.fixture
def coll(db):
    """An empty collection."""
    return db["things"]


@pytest.fixture
def people(db):
    """A collection seeded with four people."""
    collection = db["people"]
    collection.insert([dict(p) for p in PEOPLE])
    return collection


@pytest.fixture
def small_db():
    """A database whose collections hold at most three documents."""
    return Database("small", EngineConfig(max_documents=3))
