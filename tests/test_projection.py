"""Tests for result projections."""

from __future__ import annotations

import pytest

from memongo.errors import QueryCompilationError
from memongo.projection import apply_projection, id_first, parse_projection

DOC = {
    "name": "Alice",
    "_id": 1,
    "age": 30,
    "address": {"city": "Oslo", "zip": "0150"},
    "scores": [1, 2, 3, 4, 5],
    "items": [{"k": "a", "v": 1}, {"k": "b", "v": 2}],
}


class TestIdFirst:
    def test_moves_id_and_copies(self):
        result = id_first(DOC)
        assert list(result)[0] == "_id"
        result["address"]["city"] = "Bergen"
        assert DOC["address"]["city"] == "Oslo"


class TestInclusion:
    def test_include_keeps_id(self):
        assert apply_projection(DOC, {"name": 1}) == {"_id": 1, "name": "Alice"}

    def test_include_without_id(self):
        assert apply_projection(DOC, {"name": 1, "_id": 0}) == {"name": "Alice"}

    def test_dotted_include(self):
        assert apply_projection(DOC, {"address.city": 1}) == {"_id": 1, "address": {"city": "Oslo"}}

    def test_include_through_array(self):
        result = apply_projection(DOC, {"items.k": 1, "_id": 0})
        assert result == {"items": [{"k": "a"}, {"k": "b"}]}

    def test_missing_field(self):
        assert apply_projection(DOC, {"nope": 1}) == {"_id": 1}


class TestExclusion:
    def test_exclude(self):
        result = apply_projection(DOC, {"scores": 0, "items": 0, "address": 0})
        assert result == {"_id": 1, "name": "Alice", "age": 30}

    def test_exclude_dotted(self):
        assert apply_projection(DOC, {"address.zip": 0})["address"] == {"city": "Oslo"}

    def test_exclude_id_only(self):
        assert "_id" not in apply_projection(DOC, {"_id": 0})

    def test_mixing_rejected(self):
        with pytest.raises(QueryCompilationError):
            parse_projection({"name": 1, "age": 0})


class TestSlice:
    def test_slice_keeps_other_fields(self):
        result = apply_projection(DOC, {"scores": {"$slice": 2}})
        assert result["scores"] == [1, 2]
        assert result["name"] == "Alice"

    def test_negative_slice(self):
        assert apply_projection(DOC, {"scores": {"$slice": -2}})["scores"] == [4, 5]

    def test_skip_limit(self):
        assert apply_projection(DOC, {"scores": {"$slice": [1, 2]}})["scores"] == [2, 3]
        assert apply_projection(DOC, {"scores": {"$slice": [-2, 5]}})["scores"] == [4, 5]

    def test_dotted_slice(self):
        doc = {"_id": 1, "order": {"lines": [1, 2, 3], "total": 6}}
        result = apply_projection(doc, {"order.lines": {"$slice": -1}})
        assert result == {"_id": 1, "order": {"lines": [3], "total": 6}}

    def test_bad_slice(self):
        with pytest.raises(QueryCompilationError):
            apply_projection(DOC, {"scores": {"$slice": [1]}})
        with pytest.raises(QueryCompilationError):
            apply_projection(DOC, {"scores": {"$slice": [1, 0]}})


class TestElemMatch:
    def test_first_matching_element(self):
        result = apply_projection(DOC, {"items": {"$elemMatch": {"v": {"$gte": 1}}}})
        assert result == {"_id": 1, "items": [{"k": "a", "v": 1}]}

    def test_no_match_drops_field(self):
        result = apply_projection(DOC, {"items": {"$elemMatch": {"k": "z"}}, "name": 1})
        assert result == {"_id": 1, "name": "Alice"}

    def test_dotted_elem_match(self):
        doc = {"_id": 1, "order": {"lines": [{"sku": "a"}, {"sku": "b"}]}}
        result = apply_projection(doc, {"order.lines": {"$elemMatch": {"sku": "b"}}})
        assert result == {"_id": 1, "order": {"lines": [{"sku": "b"}]}}

    def test_value_elements(self):
        result = apply_projection(DOC, {"scores": {"$elemMatch": {"$gt": 3}}, "_id": 0})
        assert result == {"scores": [4]}


def test_input_is_never_modified():
    before = id_first(DOC)
    apply_projection(DOC, {"address.zip": 0})
    apply_projection(DOC, {"items.k": 1})
    assert id_first(DOC) == before
