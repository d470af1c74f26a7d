import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .coerce import utcnow

BACKUP_RUNS_TABLE = "backup_metadata"
RECOVERY_LOG_TABLE = "recovery_log"

RECOVERED = "recovered"

BACKUP_RUNS_COLUMNS = [
    ("id", "BIGSERIAL PRIMARY KEY"),
    ("backup_date", "TIMESTAMP NOT NULL"),
    ("collections_synced", "INTEGER NOT NULL DEFAULT 0"),
    ("total_documents", "INTEGER NOT NULL DEFAULT 0"),
    ("status", "VARCHAR(50) NOT NULL DEFAULT 'running'"),
    ("error_message", "TEXT"),
    ("completed_at", "TIMESTAMP"),
]

RECOVERY_LOG_COLUMNS = [
    ("id", "BIGSERIAL PRIMARY KEY"),
    ("collection_name", "VARCHAR(100) NOT NULL"),
    ("mongo_id", "TEXT NOT NULL"),
    ("recovered_at", "TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')"),
    ("recovered_by", "VARCHAR(255)"),
    ("status", "VARCHAR(50) NOT NULL DEFAULT 'recovered'"),
]


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BackupRun:
    id: int
    backup_date: datetime
    status: str
    collections_synced: int = 0
    total_documents: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BackupRun":
        return cls(
            id=row["id"],
            backup_date=row["backup_date"],
            status=row["status"],
            collections_synced=row.get("collections_synced") or 0,
            total_documents=row.get("total_documents") or 0,
            error_message=row.get("error_message"),
            completed_at=row.get("completed_at"),
        )


def ensure_ledger_tables(mirror) -> None:
    mirror.create_table(BACKUP_RUNS_TABLE, BACKUP_RUNS_COLUMNS, if_not_exists=True)
    mirror.create_table(RECOVERY_LOG_TABLE, RECOVERY_LOG_COLUMNS, if_not_exists=True)
    mirror.commit()


def start_run(mirror) -> int:
    run_id = mirror.insert_row(
        BACKUP_RUNS_TABLE,
        {"backup_date": utcnow(), "status": RunStatus.RUNNING.value},
        returning="id",
    )
    mirror.commit()
    logging.info("Started backup run %s", run_id)
    return run_id


def complete_run(mirror, run_id: int, collections_synced: int, total_documents: int) -> None:
    mirror.update_rows(
        BACKUP_RUNS_TABLE,
        {
            "status": RunStatus.COMPLETED.value,
            "collections_synced": collections_synced,
            "total_documents": total_documents,
            "completed_at": utcnow(),
        },
        where={"id": run_id},
    )
    mirror.commit()


def fail_run(mirror, run_id: int, error_message: str) -> None:
    # The failed statement may have left the transaction aborted.
    mirror.rollback()
    mirror.update_rows(
        BACKUP_RUNS_TABLE,
        {
            "status": RunStatus.FAILED.value,
            "error_message": error_message,
            "completed_at": utcnow(),
        },
        where={"id": run_id},
    )
    mirror.commit()


def recent_runs(mirror, limit: int = 10) -> List[BackupRun]:
    rows = mirror.select_rows(
        BACKUP_RUNS_TABLE, order_by="backup_date", descending=True, limit=limit
    )
    return [BackupRun.from_row(row) for row in rows]


def log_recovery(
    mirror,
    collection_name: str,
    mongo_id: str,
    recovered_by: Optional[str] = None,
    status: str = RECOVERED,
) -> None:
    """Append a recovery log entry; the caller commits."""
    mirror.insert_row(
        RECOVERY_LOG_TABLE,
        {
            "collection_name": collection_name,
            "mongo_id": mongo_id,
            "recovered_by": recovered_by,
            "status": status,
        },
    )


def recovery_count(mirror) -> int:
    return mirror.count_rows(RECOVERY_LOG_TABLE)
