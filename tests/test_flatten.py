"""Tests for flatten_document()."""

from __future__ import annotations

import json
from datetime import datetime

import pytest
from bson import ObjectId

from mongo_backup.flatten import MAX_IDENT_LEN, column_name, flatten_document


class TestFlattenDocument:
    def test_nested_object_and_boolean(self) -> None:
        doc = {"_id": "A1", "name": "x", "meta": {"a": 1, "b": 2}, "active": True}
        assert flatten_document(doc) == {
            "mongo_id": "A1",
            "name": "x",
            "meta_a": 1,
            "meta_b": 2,
            "active": 1,
        }

    def test_object_id_becomes_string_id(self) -> None:
        oid = ObjectId("507f1f77bcf86cd799439011")
        assert flatten_document({"_id": oid})["mongo_id"] == "507f1f77bcf86cd799439011"

    def test_deep_nesting_fully_flattened(self) -> None:
        row = flatten_document({"_id": 1, "a": {"b": {"c": {"d": "deep"}}}})
        assert row["a_b_c_d"] == "deep"

    def test_arrays_not_descended(self) -> None:
        row = flatten_document({"_id": 1, "items": [{"sku": "X", "qty": 2}]})
        assert json.loads(row["items"]) == [{"sku": "X", "qty": 2}]
        assert "items_sku" not in row

    def test_nested_dates_coerced(self) -> None:
        row = flatten_document({"_id": 1, "audit": {"at": datetime(2024, 5, 6, 7, 8, 9)}})
        assert row["audit_at"] == "2024-05-06 07:08:09"

    def test_nested_id_is_not_the_source_id(self) -> None:
        row = flatten_document({"_id": "A1", "owner": {"_id": "U9"}})
        assert row["mongo_id"] == "A1"
        assert row["owner__id"] == "U9"

    def test_dotted_keys_normalized(self) -> None:
        assert flatten_document({"_id": 1, "geo.lat": 1.5})["geo_lat"] == 1.5

    def test_empty_nested_object_produces_no_columns(self) -> None:
        assert flatten_document({"_id": 1, "extra": {}}) == {"mongo_id": "1"}

    def test_missing_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="missing _id"):
            flatten_document({"name": "x"})


class TestColumnName:
    def test_short_names_unchanged(self) -> None:
        assert column_name("createdAt") == "createdAt"

    def test_long_names_shortened_deterministically(self) -> None:
        key = "section_" * 12
        name = column_name(key)
        assert len(name) == MAX_IDENT_LEN
        assert name == column_name(key)
        assert name != column_name(key + "x")

    def test_limit_counts_utf8_bytes(self) -> None:
        key = "żółć_" * 10
        assert len(key) < MAX_IDENT_LEN < len(key.encode("utf-8"))
        name = column_name(key)
        assert len(name.encode("utf-8")) <= MAX_IDENT_LEN
        assert name != column_name(key + "x")
        assert name.startswith("żółć_")
