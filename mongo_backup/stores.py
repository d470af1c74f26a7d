"""Explicit sessions for the two stores.

``MirrorStore`` wraps one PostgreSQL connection and exposes the handful of
generic DDL/DML operations the sync and recovery code need; identifiers are
always composed with ``psycopg2.sql`` so collection-derived names are quoted.
``DocumentStore`` wraps one MongoDB database. Both are opened at command start
by the context managers below and closed when the command ends.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import extras, sql
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure

# Losing either store ends the current command.
FATAL_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, ConnectionFailure)


class DuplicateRow(Exception):
    pass


def _where_clause(where: Optional[Mapping[str, Any]]) -> Tuple[sql.Composable, List[Any]]:
    if not where:
        return sql.SQL(""), []
    parts = []
    params: List[Any] = []
    for column, value in where.items():
        if value is None:
            parts.append(sql.SQL("{} IS NULL").format(sql.Identifier(column)))
        else:
            parts.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            params.append(value)
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


class MirrorStore:
    def __init__(self, conn) -> None:
        self.conn = conn

    def create_table(
        self, name: str, columns: Sequence[Tuple[str, str]], if_not_exists: bool = False
    ) -> None:
        column_defs = sql.SQL(", ").join(
            sql.SQL("{} {}").format(sql.Identifier(column), sql.SQL(ddl))
            for column, ddl in columns
        )
        query = sql.SQL("CREATE TABLE {exists}{table} ({columns})").format(
            exists=sql.SQL("IF NOT EXISTS " if if_not_exists else ""),
            table=sql.Identifier(name),
            columns=column_defs,
        )
        with self.conn.cursor() as cur:
            cur.execute(query)

    def drop_table(self, name: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(name)))

    def list_tables(self, prefix: str = "") -> List[str]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = current_schema() AND table_type = 'BASE TABLE'
                ORDER BY table_name
                """
            )
            names = [row[0] for row in cur.fetchall()]
        return [name for name in names if name.startswith(prefix)]

    def table_exists(self, name: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT 1
                FROM information_schema.tables
                WHERE table_schema = current_schema() AND table_name = %s
                """,
                (name,),
            )
            return cur.fetchone() is not None

    def has_column(self, table: str, column: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT 1
                FROM information_schema.columns
                WHERE table_schema = current_schema() AND table_name = %s AND column_name = %s
                """,
                (table, column),
            )
            return cur.fetchone() is not None

    def insert_row(
        self, table: str, row: Mapping[str, Any], returning: Optional[str] = None
    ) -> Any:
        """Insert one row inside its own savepoint.

        A failed row is rolled back to the savepoint so the surrounding
        transaction stays usable; duplicate keys raise ``DuplicateRow``.
        """
        if row:
            query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values})").format(
                table=sql.Identifier(table),
                columns=sql.SQL(", ").join(sql.Identifier(c) for c in row),
                values=sql.SQL(", ").join(sql.Placeholder() for _ in row),
            )
        else:
            query = sql.SQL("INSERT INTO {table} DEFAULT VALUES").format(
                table=sql.Identifier(table)
            )
        if returning:
            query = query + sql.SQL(" RETURNING {}").format(sql.Identifier(returning))

        with self.conn.cursor() as cur:
            cur.execute("SAVEPOINT mirror_row")
            try:
                cur.execute(query, list(row.values()))
            except pg_errors.UniqueViolation as exc:
                cur.execute("ROLLBACK TO SAVEPOINT mirror_row")
                raise DuplicateRow(str(exc).strip()) from exc
            except psycopg2.Error:
                if not self.conn.closed:
                    cur.execute("ROLLBACK TO SAVEPOINT mirror_row")
                raise
            result = cur.fetchone()[0] if returning else None
            cur.execute("RELEASE SAVEPOINT mirror_row")
        return result

    def select_rows(
        self,
        table: str,
        where: Optional[Mapping[str, Any]] = None,
        columns: Optional[Sequence[str]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        selected = (
            sql.SQL(", ").join(sql.Identifier(c) for c in columns) if columns else sql.SQL("*")
        )
        where_sql, params = _where_clause(where)
        query = sql.SQL("SELECT {columns} FROM {table}").format(
            columns=selected, table=sql.Identifier(table)
        ) + where_sql
        if order_by:
            query = query + sql.SQL(" ORDER BY {} {}").format(
                sql.Identifier(order_by), sql.SQL("DESC" if descending else "ASC")
            )
        if limit is not None:
            query = query + sql.SQL(" LIMIT %s")
            params.append(limit)
        with self.conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
            cur.execute(query, params)
            return [dict(row) for row in cur.fetchall()]

    def update_rows(
        self, table: str, values: Mapping[str, Any], where: Mapping[str, Any]
    ) -> int:
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
        )
        where_sql, where_params = _where_clause(where)
        query = sql.SQL("UPDATE {table} SET {assignments}").format(
            table=sql.Identifier(table), assignments=assignments
        ) + where_sql
        with self.conn.cursor() as cur:
            cur.execute(query, list(values.values()) + where_params)
            return cur.rowcount

    def count_rows(self, table: str, where: Optional[Mapping[str, Any]] = None) -> int:
        where_sql, params = _where_clause(where)
        query = sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(table)) + where_sql
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return int(cur.fetchone()[0])

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        if not self.conn.closed:
            self.conn.rollback()

    def close(self) -> None:
        if not self.conn.closed:
            self.conn.close()


class DocumentStore:
    def __init__(self, client: MongoClient, db) -> None:
        self.client = client
        self.db = db

    def list_all(self, collection: str) -> List[Dict[str, Any]]:
        return list(self.db[collection].find({}))

    def find_one_by_id(self, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one({"_id": doc_id})

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        return self.db[collection].insert_one(dict(document)).inserted_id


@contextmanager
def open_mirror_store(dsn: str) -> Iterator[MirrorStore]:
    conn = psycopg2.connect(dsn)
    store = MirrorStore(conn)
    try:
        yield store
    finally:
        store.rollback()
        store.close()


@contextmanager
def open_document_store(
    uri: str, db_name: Optional[str] = None, timeout_ms: int = 10000
) -> Iterator[DocumentStore]:
    client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)
    try:
        # Surface an unreachable server now rather than mid-command.
        client.admin.command("ping")
        db = client[db_name] if db_name else client.get_default_database()
        logging.debug("Connected to MongoDB database %s", db.name)
        store = DocumentStore(client, db)
        yield store
    finally:
        client.close()
