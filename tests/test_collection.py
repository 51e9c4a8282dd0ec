"""Tests for collections and databases: reads, writes, indexes and bulk writes."""

from __future__ import annotations

import threading

import pytest
from bson.int64 import Int64
from bson.objectid import ObjectId

from memongo import (
    BulkWriteError,
    CapacityError,
    DeleteMany,
    DeleteOne,
    DuplicateKeyError,
    ImmutableFieldError,
    IndexDefinitionError,
    InsertOne,
    InvalidDocumentError,
    QueryCompilationError,
    ReplaceOne,
    UpdateError,
    UpdateMany,
    UpdateOne,
    UpdateTypeError,
    WriteConcern,
)


def assert_indexes_consistent(collection):
    documents = collection._documents
    for index in collection.indexes():
        assert index.handles() == sorted(documents), index.name
        for handle, doc in documents.items():
            assert index.key_of(handle) == index.key_for(doc), index.name


def ids(docs):
    return [d["_id"] for d in docs]


class TestInsert:
    def test_generates_and_echoes_id(self, coll):
        doc = {"a": 1}
        result = coll.insert(doc)
        assert isinstance(doc["_id"], ObjectId)
        assert result.inserted_id == doc["_id"]
        assert coll.find_one(doc["_id"]) == {"_id": doc["_id"], "a": 1}

    def test_id_stored_first(self, coll):
        coll.insert({"a": 1, "_id": 5})
        assert list(coll.find_one(5)) == ["_id", "a"]

    def test_many(self, coll):
        result = coll.insert([{"_id": 1}, {"_id": 2}])
        assert result.inserted_ids == [1, 2]
        assert coll.count() == 2

    def test_stored_copy_is_independent(self, coll):
        doc = {"_id": 1, "tags": ["a"]}
        coll.insert(doc)
        doc["tags"].append("b")
        assert coll.find_one(1)["tags"] == ["a"]

    def test_tuples_become_lists(self, coll):
        coll.insert({"_id": 1, "t": (1, 2)})
        assert coll.find_one(1)["t"] == [1, 2]

    @pytest.mark.parametrize(
        "doc",
        [
            {"$a": 1},
            {"a.b": 1},
            {"_id": [1, 2]},
            {"a": object()},
            {1: "x"},
            {"nested": {"$bad": 1}},
        ],
    )
    def test_invalid_documents(self, coll, doc):
        with pytest.raises(InvalidDocumentError):
            coll.insert(doc)
        assert coll.count() == 0

    def test_duplicate_id(self, coll):
        coll.insert({"_id": 1})
        with pytest.raises(DuplicateKeyError) as exc_info:
            coll.insert({"_id": 1})
        assert exc_info.value.index_name == "_id_"

    def test_batch_stops_at_failure(self, coll):
        with pytest.raises(DuplicateKeyError):
            coll.insert([{"_id": 1}, {"_id": 1}, {"_id": 2}])
        assert ids(coll.find()) == [1]

    def test_capacity(self, small_db):
        coll = small_db["c"]
        coll.insert([{"_id": i} for i in range(3)])
        with pytest.raises(CapacityError) as exc_info:
            coll.insert({"_id": 3})
        assert exc_info.value.limit == 3
        assert coll.count() == 3


class TestUniqueIndex:
    def test_duplicate_rejected(self, coll):
        coll.create_index("email", unique=True)
        coll.insert({"email": "x"})
        with pytest.raises(DuplicateKeyError) as exc_info:
            coll.insert({"email": "x"})
        assert exc_info.value.index_name == "email_1"
        assert exc_info.value.key_values == [["x"]]
        assert coll.count() == 1
        assert_indexes_consistent(coll)

    def test_unacknowledged_write_skips_duplicate(self, coll):
        coll.create_index("email", unique=True)
        coll.insert({"email": "x"})
        result = coll.insert({"email": "x"}, write_concern=WriteConcern(w=0))
        assert not result.acknowledged
        assert coll.count() == 1
        assert_indexes_consistent(coll)

    def test_dropped_unacknowledged_writes_are_not_reported(self, coll):
        coll.create_index("email", unique=True)
        coll.insert({"_id": 1, "email": "x"})
        quiet = WriteConcern(w=0)
        assert coll.insert({"email": "x"}, write_concern=quiet).inserted_ids == []
        result = coll.update({"name": "n"}, {"$set": {"email": "x"}}, upsert=True, write_concern=quiet)
        assert result.upserted_id is None
        bulk = coll.bulk_write([InsertOne({"email": "x"}), InsertOne({"email": "y"})], write_concern=quiet)
        assert bulk.inserted_count == 1
        assert sorted(d["email"] for d in coll.find()) == ["x", "y"]
        assert_indexes_consistent(coll)

    def test_update_into_duplicate(self, people):
        people.create_index("name", unique=True)
        with pytest.raises(DuplicateKeyError):
            people.update({"_id": 2}, {"$set": {"name": "Alice"}})
        assert people.find_one(2)["name"] == "Bob"
        assert_indexes_consistent(people)

    def test_backfill_violation_discards_index(self, people):
        with pytest.raises(DuplicateKeyError):
            people.create_index("tier", unique=True)
        assert "tier_1" not in people.index_information()


class TestFind:
    def test_scenario_gte_and_sort(self, coll):
        coll.insert([{"_id": 1, "a": 2}, {"_id": 2, "a": 2}, {"_id": 3, "a": 1}])
        assert ids(coll.find({"a": {"$gte": 2}})) == [1, 2]
        ordered = ids(coll.find(sort={"a": 1}))
        assert ordered[0] == 3
        assert set(ordered[1:]) == {1, 2}

    def test_array_fan_out(self, coll):
        coll.insert({"_id": 1, "arr": [{"x": 1}, {"x": 2}]})
        assert ids(coll.find({"arr.x": 2})) == [1]

    def test_store_order(self, people):
        assert ids(people.find()) == [1, 2, 3, 4]

    def test_in_on_id_returns_id_order(self, coll):
        coll.insert([{"_id": 3}, {"_id": 1}, {"_id": 2}])
        assert ids(coll.find({"_id": {"$in": [2, 3, 1]}})) == [1, 2, 3]

    def test_skip_limit(self, people):
        assert ids(people.find(sort={"_id": -1}, skip=1, limit=2)) == [3, 2]
        assert ids(people.find(limit=-1)) == [1]
        with pytest.raises(QueryCompilationError):
            people.find(skip=-1)

    def test_projection(self, people):
        assert people.find({"_id": 1}, {"name": 1}) == [{"_id": 1, "name": "Alice"}]

    def test_results_are_copies(self, people):
        found = people.find_one(1)
        found["tags"].append("z")
        assert people.find_one(1)["tags"] == ["a", "b"]

    def test_find_one(self, people):
        assert people.find_one({"tier": "Gold"}, sort={"age": -1})["name"] == "Carol"
        assert people.find_one({"tier": "Platinum"}) is None
        assert people.find_one(2)["name"] == "Bob"

    def test_bad_query(self, people):
        with pytest.raises(QueryCompilationError):
            people.find({"age": {"$in": 5}})

    def test_count(self, people):
        assert people.count() == 4
        assert people.count({"age": 25}) == 2
        assert people.count({"age": 25}, limit=1) == 1
        assert people.count(skip=3) == 1

    def test_distinct(self, people):
        assert people.distinct("tags") == ["a", "b"]
        assert people.distinct("age") == [30, 25, 35]
        assert people.distinct("tier", {"age": 25}) == ["Silver", "Bronze"]
        assert people.distinct("address.city") == ["Oslo"]


class TestUpdate:
    def test_single(self, people):
        result = people.update({"name": "Bob"}, {"$set": {"age": 26}})
        assert (result.matched_count, result.modified_count) == (1, 1)
        assert result.updated_existing
        assert people.find_one(2)["age"] == 26

    def test_noop_is_not_modified(self, people):
        result = people.update({"_id": 1}, {"$set": {"age": 30}})
        assert (result.matched_count, result.modified_count) == (1, 0)

    def test_numeric_promotion_is_stored(self, coll):
        coll.insert([{"_id": 1, "n": 5}, {"_id": 2, "n": 5}])
        result = coll.update({"_id": 1}, {"$inc": {"n": 0.0}})
        assert (result.matched_count, result.modified_count) == (1, 1)
        assert type(coll.find_one(1)["n"]) is float
        assert coll.update({"_id": 2}, {"$set": {"n": Int64(5)}}).modified_count == 1
        assert ids(coll.find({"n": {"$type": "long"}})) == [2]
        assert ids(coll.find({"n": {"$type": "double"}})) == [1]
        assert_indexes_consistent(coll)

    def test_multi(self, people):
        result = people.update({"tier": "Gold"}, {"$inc": {"age": 1}}, multi=True)
        assert result.matched_count == 2
        assert [d["age"] for d in people.find({"tier": "Gold"})] == [31, 36]

    def test_only_first_without_multi(self, people):
        people.update({"tier": "Gold"}, {"$set": {"seen": True}})
        assert ids(people.find({"seen": True})) == [1]

    def test_replacement(self, people):
        people.update({"_id": 2}, {"name": "Robert"})
        assert people.find_one(2) == {"_id": 2, "name": "Robert"}

    def test_multi_replacement_rejected(self, people):
        with pytest.raises(UpdateError):
            people.update({}, {"name": "x"}, multi=True)

    def test_no_match(self, people):
        result = people.update({"_id": 99}, {"$set": {"a": 1}})
        assert (result.matched_count, result.upserted_id) == (0, None)

    def test_failed_update_leaves_document_untouched(self, people):
        with pytest.raises(UpdateTypeError):
            people.update({"_id": 1}, {"$set": {"x": 1}, "$inc": {"name": 1}})
        assert "x" not in people.find_one(1)

    def test_id_change_rejected(self, people):
        with pytest.raises(ImmutableFieldError):
            people.update({"_id": 1}, {"$set": {"_id": 10}})
        assert people.find_one(1) is not None

    def test_positional(self, coll):
        coll.insert({"_id": 1, "items": [{"k": "a", "v": 1}, {"k": "b", "v": 2}]})
        coll.update({"items.k": "b"}, {"$set": {"items.$.v": 9}})
        assert coll.find_one(1)["items"] == [{"k": "a", "v": 1}, {"k": "b", "v": 9}]

    def test_indexes_follow_updates(self, people):
        people.create_index("age")
        people.create_index({"tier": 1, "name": 1})
        people.update({"tier": "Gold"}, {"$inc": {"age": 5}}, multi=True)
        people.update({"_id": 2}, {"$unset": {"tier": ""}})
        people.remove({"_id": 4})
        people.insert({"_id": 5, "age": 25})
        assert_indexes_consistent(people)
        assert ids(people.find({"age": 35})) == [1]


class TestUpsert:
    def test_round_trip(self, coll):
        result = coll.update({"_id": "X"}, {"$set": {"v": 1}}, upsert=True)
        assert result.upserted_id == "X"
        assert coll.find_one("X") == {"_id": "X", "v": 1}

    def test_generated_id(self, coll):
        result = coll.update({"name": "Zed", "age": {"$gt": 3}}, {"$set": {"age": 5}}, upsert=True)
        assert isinstance(result.upserted_id, ObjectId)
        doc = coll.find_one(result.upserted_id)
        assert doc == {"_id": result.upserted_id, "name": "Zed", "age": 5}
        assert list(doc)[0] == "_id"

    def test_set_on_insert(self, coll):
        coll.update({"_id": 1}, {"$set": {"a": 1}, "$setOnInsert": {"created": True}}, upsert=True)
        coll.update({"_id": 1}, {"$set": {"a": 2}, "$setOnInsert": {"created": False}}, upsert=True)
        assert coll.find_one(1) == {"_id": 1, "a": 2, "created": True}

    def test_replacement(self, coll):
        coll.update({"_id": 9}, {"x": 1}, upsert=True)
        assert coll.find_one(9) == {"_id": 9, "x": 1}


class TestRemove:
    def test_remove_many(self, people):
        assert people.remove({"tier": "Gold"}).deleted_count == 2
        assert ids(people.find()) == [2, 4]
        assert_indexes_consistent(people)

    def test_remove_one(self, people):
        assert people.remove({"tier": "Gold"}, multi=False).deleted_count == 1
        assert ids(people.find({"tier": "Gold"})) == [3]

    def test_remove_all(self, people):
        people.remove()
        assert people.count() == 0


class TestFindAndModify:
    def test_returns_new(self, people):
        doc = people.find_and_modify({"tier": "Gold"}, update={"$inc": {"age": 1}}, sort={"age": -1}, new=True)
        assert (doc["name"], doc["age"]) == ("Carol", 36)

    def test_returns_old(self, people):
        doc = people.find_and_modify({"_id": 1}, update={"$set": {"age": 99}}, fields={"age": 1})
        assert doc == {"_id": 1, "age": 30}
        assert people.find_one(1)["age"] == 99

    def test_remove(self, people):
        doc = people.find_and_modify({"_id": 2}, remove=True)
        assert doc["name"] == "Bob"
        assert people.find_one(2) is None

    def test_upsert(self, coll):
        doc = coll.find_and_modify({"_id": 1}, update={"$set": {"a": 1}}, upsert=True, new=True)
        assert doc == {"_id": 1, "a": 1}

    def test_no_match(self, people):
        assert people.find_and_modify({"_id": 99}, update={"$set": {"a": 1}}) is None

    def test_needs_update_or_remove(self, people):
        with pytest.raises(QueryCompilationError):
            people.find_and_modify({"_id": 1})
        with pytest.raises(QueryCompilationError):
            people.find_and_modify({"_id": 1}, update={"$set": {"a": 1}}, remove=True)


class TestIndexes:
    def test_index_does_not_change_results(self, coll):
        coll.insert(
            [
                {"_id": 1, "a": {"b": 1, "c": 3}},
                {"_id": 2, "a": {"b": 1, "c": 2}},
                {"_id": 3, "a": [{"b": 1, "c": 2}]},
                {"_id": 4, "a": 5},
                {"_id": 5, "a": 6},
            ]
        )
        queries = [
            {"a": {"b": 1, "c": 2}},
            {"a": {"b": 1, "c": 3}},
            {"a": {"$elemMatch": {"b": 1, "c": 2}}},
            {"a": 5},
            {"a.b": 1},
        ]
        before = [ids(coll.find(q)) for q in queries]
        assert before == [[2, 3], [1], [3], [4], [1, 2, 3]]
        coll.create_index("a.b")
        assert [ids(coll.find(q)) for q in queries] == before
        assert coll.explain({"a": {"b": 1, "c": 2}})["index"] == "a.b_1"

    def test_index_information(self, people):
        people.create_index("age")
        info = people.index_information()
        assert info == {"_id_": {"key": [("_id", 1)], "unique": True}, "age_1": {"key": [("age", 1)]}}

    def test_create_is_idempotent(self, people):
        assert people.create_index("age") == "age_1"
        assert people.create_index({"age": 1}) == "age_1"
        assert people.create_index("_id") == "_id_"

    def test_name_clash(self, people):
        people.create_index("age", name="x")
        with pytest.raises(IndexDefinitionError):
            people.create_index("name", name="x")

    def test_drop_index(self, people):
        people.create_index("age")
        people.create_index("name")
        people.drop_index("age_1")
        people.drop_index({"name": 1})
        assert list(people.index_information()) == ["_id_"]

    def test_drop_index_errors(self, people):
        with pytest.raises(IndexDefinitionError):
            people.drop_index("_id_")
        with pytest.raises(IndexDefinitionError):
            people.drop_index("nope")

    def test_drop_indexes(self, people):
        people.create_index("age")
        people.create_index("tier")
        people.drop_indexes()
        assert list(people.index_information()) == ["_id_"]

    def test_index_is_used(self, people):
        people.create_index("age")
        index = next(ix for ix in people.indexes() if ix.name == "age_1")
        assert ids(people.find({"age": 25})) == [2, 4]
        assert index.lookup_count == 1
        people.find({"name": "Bob"})
        assert index.lookup_count == 1

    def test_explain(self, people):
        people.create_index("age")
        plan = people.explain({"age": 25})
        assert plan["index"] == "age_1"
        assert plan["cursor"] == "BtreeCursor age_1"
        assert (plan["candidates"], plan["matched"], plan["total"]) == (2, 2, 4)
        plan = people.explain({"name": "Bob"})
        assert plan["index"] is None
        assert plan["candidates"] == 4

    def test_geo_index(self, coll):
        coll.create_index({"loc": "2d"})
        coll.insert([{"_id": i, "loc": [i, i]} for i in range(5)])
        coll.insert({"_id": 99, "loc": [60, 60]})
        found = coll.find({"loc": {"$near": [2.2, 2.2], "$maxDistance": 2}})
        assert ids(found) == [2, 3, 1]
        assert coll.explain({"loc": {"$near": [0, 0], "$maxDistance": 1}})["candidates"] < 6


class TestBulkWrite:
    def test_mixed_requests(self, people):
        result = people.bulk_write(
            [
                InsertOne({"_id": 10, "name": "Eve"}),
                UpdateOne({"_id": 11}, {"$set": {"name": "Frank"}}, upsert=True),
                UpdateMany({"tier": "Gold"}, {"$set": {"vip": True}}),
                ReplaceOne({"_id": 2}, {"name": "Bobby"}),
                DeleteOne({"_id": 4}),
                DeleteMany({"vip": True}),
            ]
        )
        assert result.inserted_count == 1
        assert result.upserted_ids == {1: 11}
        assert result.upserted_count == 1
        assert result.matched_count == 3
        assert result.modified_count == 3
        assert result.deleted_count == 3
        assert ids(people.find()) == [2, 10, 11]

    def test_ordered_stops_at_first_error(self, coll):
        with pytest.raises(BulkWriteError) as exc_info:
            coll.bulk_write([InsertOne({"_id": 1}), InsertOne({"_id": 1}), InsertOne({"_id": 2})])
        error = exc_info.value
        assert error.result.inserted_count == 1
        assert [position for position, _ in error.errors] == [1]
        assert isinstance(error.errors[0][1], DuplicateKeyError)
        assert ids(coll.find()) == [1]

    def test_unordered_continues(self, coll):
        with pytest.raises(BulkWriteError) as exc_info:
            coll.bulk_write(
                [InsertOne({"_id": 1}), InsertOne({"_id": 1}), UpdateOne({}, {"a": 1}), InsertOne({"_id": 2})],
                ordered=False,
            )
        assert [position for position, _ in exc_info.value.errors] == [1, 2]
        assert isinstance(exc_info.value.errors[1][1], UpdateError)
        assert ids(coll.find()) == [1, 2]


class TestDatabase:
    def test_collections_are_created_once(self, db):
        assert db["a"] is db.get_collection("a")
        assert "a" in db
        assert db.collection_names() == ["a"]

    def test_shared_config(self, small_db):
        assert small_db["a"].config is small_db["b"].config

    def test_full_name(self, db):
        assert db["users"].full_name == "test.users"

    def test_invalid_name(self, db):
        with pytest.raises(InvalidDocumentError):
            db.get_collection("")

    def test_drop(self, db, people):
        people.create_index("age")
        db.drop_collection("people")
        assert "people" not in db
        assert people.count() == 0
        assert list(people.index_information()) == ["_id_"]
        assert_indexes_consistent(people)


class TestConcurrency:
    def test_parallel_writers(self, coll):
        coll.create_index("worker")

        def work(worker):
            for n in range(50):
                coll.insert({"worker": worker, "n": n})
                coll.update({"worker": worker, "n": n}, {"$inc": {"n": 1000}})

        threads = [threading.Thread(target=work, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert coll.count() == 200
        assert coll.count({"n": {"$lt": 1000}}) == 0
        assert_indexes_consistent(coll)
