"""Shared fixtures: in-memory stand-ins for the PostgreSQL mirror and MongoDB."""

from __future__ import annotations

import re
from typing import Any

import psycopg2
import pytest
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from mongo_backup.coerce import utcnow
from mongo_backup.config import BackupSettings
from mongo_backup.ledger import ensure_ledger_tables
from mongo_backup.stores import DuplicateRow

_STRING_DEFAULT = re.compile(r"DEFAULT '([^']*)'")


class FakeMirrorStore:
    """Implements the MirrorStore operations over plain dicts.

    Column DDL is interpreted just enough to fill serial ids, literal defaults,
    ``now()`` defaults and UNIQUE checks.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, Any]] = {}
        self.rejected: dict[str, set[str]] = {}
        self.broken_tables: set[str] = set()
        self.commits = 0
        self.rollbacks = 0

    def create_table(self, name, columns, if_not_exists=False) -> None:
        if name in self.broken_tables:
            raise psycopg2.ProgrammingError(f'cannot create "{name}"')
        if name in self.tables:
            if if_not_exists:
                return
            raise psycopg2.ProgrammingError(f'relation "{name}" already exists')
        self.tables[name] = {"columns": list(columns), "rows": [], "next_id": 1}

    def drop_table(self, name) -> None:
        self.tables.pop(name, None)

    def list_tables(self, prefix="") -> list[str]:
        return sorted(name for name in self.tables if name.startswith(prefix))

    def table_exists(self, name) -> bool:
        return name in self.tables

    def has_column(self, table, column) -> bool:
        return any(name == column for name, _ in self.tables[table]["columns"])

    def insert_row(self, table, row, returning=None):
        state = self.tables[table]
        known = {name for name, _ in state["columns"]}
        for column in row:
            if column not in known:
                raise psycopg2.ProgrammingError(f'column "{column}" does not exist')
        if row.get("mongo_id") in self.rejected.get(table, set()):
            raise psycopg2.DataError("invalid input syntax")

        full: dict[str, Any] = {}
        for name, ddl in state["columns"]:
            if name in row:
                full[name] = row[name]
            elif "BIGSERIAL" in ddl:
                full[name] = state["next_id"]
                state["next_id"] += 1
            elif _STRING_DEFAULT.search(ddl):
                full[name] = _STRING_DEFAULT.search(ddl).group(1)
            elif "DEFAULT 0" in ddl:
                full[name] = 0
            elif "now()" in ddl:
                full[name] = utcnow()
            else:
                full[name] = None

        for name, ddl in state["columns"]:
            if "UNIQUE" in ddl and any(r[name] == full[name] for r in state["rows"]):
                raise DuplicateRow(f'duplicate key value violates unique constraint on "{name}"')

        state["rows"].append(full)
        return full[returning] if returning else None

    def _matching(self, table, where):
        rows = self.tables[table]["rows"]
        if not where:
            return list(rows)
        return [r for r in rows if all(r.get(k) == v for k, v in where.items())]

    def select_rows(
        self, table, where=None, columns=None, order_by=None, descending=False, limit=None
    ) -> list[dict[str, Any]]:
        rows = self._matching(table, where)
        if order_by:
            rows.sort(key=lambda r: (r[order_by] is None, r[order_by]), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns:
            return [{c: r[c] for c in columns} for r in rows]
        return [dict(r) for r in rows]

    def update_rows(self, table, values, where) -> int:
        rows = self._matching(table, where)
        for row in rows:
            row.update(values)
        return len(rows)

    def count_rows(self, table, where=None) -> int:
        return len(self._matching(table, where))

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        pass

    def rows(self, table) -> list[dict[str, Any]]:
        return [dict(r) for r in self.tables[table]["rows"]]


class FakeDocumentStore:
    def __init__(self, collections: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.collections = {
            name: [dict(doc) for doc in docs] for name, docs in (collections or {}).items()
        }
        self.fail_inserts: set[Any] = set()
        self.unreachable = False

    def list_all(self, collection):
        if self.unreachable:
            raise ServerSelectionTimeoutError("localhost:27017: connection refused")
        return [dict(doc) for doc in self.collections.get(collection, [])]

    def find_one_by_id(self, collection, doc_id):
        for doc in self.collections.get(collection, []):
            if doc["_id"] == doc_id:
                return dict(doc)
        return None

    def insert_one(self, collection, document):
        if document["_id"] in self.fail_inserts:
            raise PyMongoError("insert rejected")
        self.collections.setdefault(collection, []).append(dict(document))
        return document["_id"]

    def remove(self, collection, doc_id) -> None:
        self.collections[collection] = [
            doc for doc in self.collections.get(collection, []) if doc["_id"] != doc_id
        ]


@pytest.fixture
def mirror() -> FakeMirrorStore:
    store = FakeMirrorStore()
    ensure_ledger_tables(store)
    return store


@pytest.fixture
def documents() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def settings() -> BackupSettings:
    return BackupSettings(collections=["widgets"], batch_size=100, sample_size=100)


@pytest.fixture
def flag_deleted(mirror: FakeMirrorStore):
    """Mark a mirror row deleted the way the external deletion tracker would."""

    def _flag(table: str, mongo_id: str, deleted_at=None) -> None:
        mirror.update_rows(
            table,
            {"is_deleted": 1, "deleted_at": deleted_at or utcnow()},
            where={"mongo_id": mongo_id},
        )

    return _flag
