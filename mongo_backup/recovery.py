"""Restore soft-deleted documents from the PostgreSQL mirror back into MongoDB.

A mirror row is recoverable while ``is_deleted = 1``; the retention window
runs for ``RETENTION_DAYS`` from ``deleted_at``. Recovery rebuilds the
document from the row, inserts it if MongoDB does not already hold that
``_id``, then clears the flags and writes a ``recovery_log`` entry. The two
stores are written without a shared transaction.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from bson import Decimal128, ObjectId

from .coerce import utcnow
from .config import RETENTION_DAYS
from .flatten import SOURCE_ID_FIELD, UNIQUE_ID_COLUMN
from .ledger import BackupRun, log_recovery, recent_runs, recovery_count
from .schema import (
    DEFAULT_TABLE_PREFIX,
    DELETED_AT_COLUMN,
    IS_DELETED_COLUMN,
    RESERVED_COLUMNS,
    mirror_table_name,
)


class RecoveryStatus(str, Enum):
    RECOVERED = "recovered"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"


@dataclass
class RecoveryResult:
    collection: str
    mongo_id: str
    status: RecoveryStatus
    error: Optional[str] = None

    @property
    def recovered(self) -> bool:
        return self.status == RecoveryStatus.RECOVERED


@dataclass
class RecoveryBatch:
    collection: str
    results: List[RecoveryResult] = field(default_factory=list)

    @property
    def recovered(self) -> int:
        return sum(1 for r in self.results if r.recovered)

    @property
    def failed(self) -> int:
        return len(self.results) - self.recovered


@dataclass
class DeletedRecord:
    collection: str
    mongo_id: str
    deleted_at: Optional[datetime]
    days_remaining: Optional[int]


@dataclass
class CollectionStats:
    collection: str
    total: int
    deleted: int

    @property
    def active(self) -> int:
        return self.total - self.deleted


@dataclass
class BackupStats:
    runs: List[BackupRun]
    collections: List[CollectionStats]
    recoveries: int


def days_remaining(deleted_at: Optional[datetime], today: Optional[date] = None) -> Optional[int]:
    """Whole days left in the retention window, by calendar date."""
    if deleted_at is None:
        return None
    if today is None:
        today = utcnow().date()
    return RETENTION_DAYS - (today - deleted_at.date()).days


def source_id(mongo_id: str) -> Any:
    """MongoDB ``_id`` for a mirrored id string.

    The mirror keeps ids as text only, so the original type is guessed: a
    24-hex string becomes an ObjectId, anything else stays a string. Integer
    ids and hex-string ids do not round-trip, and the existence check before
    re-insert can then miss the live document.
    """
    if ObjectId.is_valid(mongo_id):
        return ObjectId(mongo_id)
    return mongo_id


def _restore_value(value: Any) -> Any:
    if isinstance(value, str) and value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            return value
    if isinstance(value, Decimal):
        return Decimal128(value)
    return value


def rebuild_document(row: Dict[str, Any]) -> Dict[str, Any]:
    document: Dict[str, Any] = {SOURCE_ID_FIELD: source_id(row[UNIQUE_ID_COLUMN])}
    for column, value in row.items():
        if column in RESERVED_COLUMNS:
            continue
        document[column] = _restore_value(value)
    return document


def list_deleted(
    mirror,
    collection: Optional[str] = None,
    table_prefix: str = DEFAULT_TABLE_PREFIX,
    today: Optional[date] = None,
) -> List[DeletedRecord]:
    records: List[DeletedRecord] = []
    for table in mirror.list_tables(table_prefix):
        name = table[len(table_prefix):]
        if collection and name != collection:
            continue
        if not mirror.has_column(table, IS_DELETED_COLUMN):
            continue
        rows = mirror.select_rows(
            table,
            where={IS_DELETED_COLUMN: 1},
            columns=[UNIQUE_ID_COLUMN, DELETED_AT_COLUMN],
            order_by=DELETED_AT_COLUMN,
            descending=True,
        )
        for row in rows:
            deleted_at = row[DELETED_AT_COLUMN]
            records.append(
                DeletedRecord(
                    collection=name,
                    mongo_id=row[UNIQUE_ID_COLUMN],
                    deleted_at=deleted_at,
                    days_remaining=days_remaining(deleted_at, today),
                )
            )
    return records


def recover_one(
    mirror,
    documents,
    collection: str,
    mongo_id: str,
    table_prefix: str = DEFAULT_TABLE_PREFIX,
    recovered_by: Optional[str] = None,
) -> RecoveryResult:
    """Put one flagged-deleted document back into MongoDB.

    Returns ``not_found`` when there is no flagged mirror row for the id and
    ``already_exists`` when MongoDB still holds the document. Store errors
    propagate to the caller.
    """
    table = mirror_table_name(collection, table_prefix)
    if not mirror.table_exists(table):
        logging.warning("No mirror table %s for collection %s", table, collection)
        return RecoveryResult(collection, mongo_id, RecoveryStatus.NOT_FOUND)

    rows = mirror.select_rows(table, where={UNIQUE_ID_COLUMN: mongo_id}, limit=1)
    if not rows:
        logging.warning("%s %s is not in the mirror", collection, mongo_id)
        return RecoveryResult(collection, mongo_id, RecoveryStatus.NOT_FOUND)
    row = rows[0]

    document = rebuild_document(row)
    if documents.find_one_by_id(collection, document[SOURCE_ID_FIELD]) is not None:
        logging.warning("%s %s already exists in MongoDB; skipping", collection, mongo_id)
        return RecoveryResult(collection, mongo_id, RecoveryStatus.ALREADY_EXISTS)

    if not row.get(IS_DELETED_COLUMN):
        logging.warning("%s %s is not flagged deleted", collection, mongo_id)
        return RecoveryResult(collection, mongo_id, RecoveryStatus.NOT_FOUND)

    documents.insert_one(collection, document)
    mirror.update_rows(
        table,
        {IS_DELETED_COLUMN: 0, DELETED_AT_COLUMN: None},
        where={UNIQUE_ID_COLUMN: mongo_id},
    )
    log_recovery(mirror, collection, mongo_id, recovered_by=recovered_by)
    mirror.commit()
    logging.info("Recovered %s %s", collection, mongo_id)
    return RecoveryResult(collection, mongo_id, RecoveryStatus.RECOVERED)


def recover_all(
    mirror,
    documents,
    collection: str,
    table_prefix: str = DEFAULT_TABLE_PREFIX,
    recovered_by: Optional[str] = None,
) -> RecoveryBatch:
    batch = RecoveryBatch(collection=collection)
    table = mirror_table_name(collection, table_prefix)
    if not mirror.table_exists(table):
        logging.warning("No mirror table %s for collection %s", table, collection)
        return batch

    rows = mirror.select_rows(
        table, where={IS_DELETED_COLUMN: 1}, columns=[UNIQUE_ID_COLUMN]
    )
    logging.info("Found %d deleted %s records to recover", len(rows), collection)
    for row in rows:
        mongo_id = row[UNIQUE_ID_COLUMN]
        try:
            result = recover_one(
                mirror,
                documents,
                collection,
                mongo_id,
                table_prefix=table_prefix,
                recovered_by=recovered_by,
            )
        except Exception as exc:
            logging.exception("Recovery of %s %s failed", collection, mongo_id)
            mirror.rollback()
            result = RecoveryResult(collection, mongo_id, RecoveryStatus.FAILED, error=str(exc))
        batch.results.append(result)
    return batch


def collect_stats(
    mirror, table_prefix: str = DEFAULT_TABLE_PREFIX, run_limit: int = 10
) -> BackupStats:
    collections = []
    for table in mirror.list_tables(table_prefix):
        collections.append(
            CollectionStats(
                collection=table[len(table_prefix):],
                total=mirror.count_rows(table),
                deleted=(
                    mirror.count_rows(table, where={IS_DELETED_COLUMN: 1})
                    if mirror.has_column(table, IS_DELETED_COLUMN)
                    else 0
                ),
            )
        )
    return BackupStats(
        runs=recent_runs(mirror, limit=run_limit),
        collections=collections,
        recoveries=recovery_count(mirror),
    )
