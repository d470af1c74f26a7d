"""Tests for coerce()."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from bson import Binary, Decimal128, ObjectId, Regex

from mongo_backup.coerce import coerce, to_json_compatible


class TestScalars:
    def test_none_stays_none(self) -> None:
        assert coerce(None) is None

    def test_naive_datetime_formatted_to_seconds(self) -> None:
        assert coerce(datetime(2024, 3, 5, 14, 7, 9, 123456)) == "2024-03-05 14:07:09"

    def test_aware_datetime_converted_to_utc(self) -> None:
        value = datetime(2024, 3, 5, 16, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert coerce(value) == "2024-03-05 14:00:00"

    def test_booleans_become_integers(self) -> None:
        assert coerce(True) == 1
        assert coerce(False) == 0
        assert type(coerce(True)) is int

    def test_object_id_becomes_string(self) -> None:
        oid = ObjectId("507f1f77bcf86cd799439011")
        assert coerce(oid) == "507f1f77bcf86cd799439011"

    def test_decimal128_becomes_decimal(self) -> None:
        assert coerce(Decimal128("12.50")) == Decimal("12.50")

    def test_plain_values_pass_through(self) -> None:
        assert coerce(42) == 42
        assert coerce(2.5) == 2.5
        assert coerce("hello") == "hello"


class TestOtherBsonValues:
    def test_binary_hex_encoded(self) -> None:
        assert coerce(Binary(b"\x01\x02")) == "0102"

    def test_uuid_as_canonical_text(self) -> None:
        token = UUID("12345678-1234-5678-1234-567812345678")
        assert coerce(token) == "12345678-1234-5678-1234-567812345678"

    def test_regex_as_text(self) -> None:
        text = coerce(Regex("^a"))
        assert isinstance(text, str)
        assert "^a" in text

    def test_inside_composites(self) -> None:
        token = UUID("12345678-1234-5678-1234-567812345678")
        text = coerce({"token": token, "blob": Binary(b"\xff")})
        assert json.loads(text) == {"token": str(token), "blob": "ff"}


class TestComposites:
    def test_dict_serialized_compactly(self) -> None:
        assert coerce({"a": 1, "b": "x"}) == '{"a":1,"b":"x"}'

    def test_list_serialized(self) -> None:
        assert coerce([1, "two", None]) == '[1,"two",null]'

    def test_embedded_object_ids_survive_serialization(self) -> None:
        oid = ObjectId("507f1f77bcf86cd799439011")
        text = coerce({"_id": oid, "refs": [oid]})
        assert json.loads(text) == {
            "_id": "507f1f77bcf86cd799439011",
            "refs": ["507f1f77bcf86cd799439011"],
        }

    def test_nested_datetimes_and_non_finite_floats(self) -> None:
        text = coerce([{"when": datetime(2024, 1, 2, 3, 4, 5), "score": float("nan")}])
        assert json.loads(text) == [{"when": "2024-01-02T03:04:05", "score": None}]

    def test_non_ascii_text_kept_readable(self) -> None:
        assert coerce({"city": "Łódź"}) == '{"city":"Łódź"}'


class TestToJsonCompatible:
    def test_bytes_hex_encoded(self) -> None:
        assert to_json_compatible(b"\x01\xff") == "01ff"

    def test_decimal_to_string(self) -> None:
        assert to_json_compatible(Decimal("1.10")) == "1.10"
