"""Snapshot every configured MongoDB collection into its PostgreSQL mirror table.

- One collection -> one table named ``<prefix><collection>``
- Schema inferred from a leading sample on every run; the table is dropped
  and recreated, so the mirror always has the current document set's shape
- Rows inserted one at a time inside per-row savepoints, committed per batch
- ``is_deleted`` / ``deleted_at`` are never written here
- An empty collection is skipped, so a collection emptied since the last run
  keeps its previous snapshot in the mirror
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .config import BackupSettings
from .flatten import SOURCE_ID_FIELD, flatten_document
from .ledger import complete_run, ensure_ledger_tables, fail_run, start_run
from .schema import infer_schema
from .stores import FATAL_ERRORS, DuplicateRow


@dataclass
class CollectionResult:
    collection: str
    total: int = 0
    synced: int = 0
    duplicates: int = 0
    failed_rows: int = 0
    skipped: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncSummary:
    run_id: int
    results: List[CollectionResult] = field(default_factory=list)

    @property
    def synced_collections(self) -> List[CollectionResult]:
        return [r for r in self.results if r.ok and not r.skipped]

    @property
    def skipped_collections(self) -> List[CollectionResult]:
        return [r for r in self.results if r.skipped]

    @property
    def failed_collections(self) -> List[CollectionResult]:
        return [r for r in self.results if not r.ok]

    @property
    def total_documents(self) -> int:
        return sum(r.synced for r in self.synced_collections)

    @property
    def failed_rows(self) -> int:
        return sum(r.failed_rows for r in self.results)


def sync_collection(
    mirror, documents, collection_name: str, settings: BackupSettings
) -> CollectionResult:
    result = CollectionResult(collection=collection_name)
    logging.info("Syncing collection %s", collection_name)
    try:
        docs = documents.list_all(collection_name)
        result.total = len(docs)
        logging.info("Found %d documents in %s", len(docs), collection_name)
        if not docs:
            logging.info("Skipping empty collection %s", collection_name)
            result.skipped = True
            return result

        schema = infer_schema(collection_name, docs[: settings.sample_size], settings.table_prefix)
        table = schema.table_name
        mirror.drop_table(table)
        mirror.create_table(table, schema.column_definitions())
        mirror.commit()
        logging.info("Created table %s with %d columns", table, len(schema.columns))

        batch_size = settings.batch_size
        for start in range(0, len(docs), batch_size):
            for doc in docs[start : start + batch_size]:
                try:
                    mirror.insert_row(table, schema.project(flatten_document(doc)))
                    result.synced += 1
                except DuplicateRow:
                    result.duplicates += 1
                except FATAL_ERRORS:
                    raise
                except Exception as exc:
                    result.failed_rows += 1
                    logging.warning(
                        "Failed to insert %s %s into %s: %s",
                        collection_name,
                        doc.get(SOURCE_ID_FIELD),
                        table,
                        exc,
                    )
            mirror.commit()
            logging.info(
                "Processed %d/%d documents for %s",
                min(start + batch_size, len(docs)),
                len(docs),
                collection_name,
            )
    except FATAL_ERRORS:
        raise
    except Exception as exc:
        logging.exception("Error syncing %s", collection_name)
        mirror.rollback()
        result.error = str(exc)
        return result

    logging.info(
        "Synced %s: %d inserted, %d duplicates, %d failed",
        collection_name,
        result.synced,
        result.duplicates,
        result.failed_rows,
    )
    return result


def run_sync(
    mirror,
    documents,
    collections: Sequence[str],
    settings: BackupSettings,
) -> SyncSummary:
    """Run one backup over ``collections`` and record it in the run ledger.

    Per-row and per-collection failures are counted in the summary. A lost
    connection to either store marks the run failed and is re-raised.
    """
    ensure_ledger_tables(mirror)
    summary = SyncSummary(run_id=start_run(mirror))
    try:
        for collection_name in collections:
            summary.results.append(
                sync_collection(mirror, documents, collection_name, settings)
            )
        complete_run(
            mirror,
            summary.run_id,
            collections_synced=len(summary.synced_collections),
            total_documents=summary.total_documents,
        )
    except Exception as exc:
        logging.exception("Backup run %s failed", summary.run_id)
        try:
            fail_run(mirror, summary.run_id, str(exc))
        except Exception:
            logging.exception("Could not mark backup run %s as failed", summary.run_id)
        raise
    logging.info(
        "Backup run %s completed: %d collections, %d documents",
        summary.run_id,
        len(summary.synced_collections),
        summary.total_documents,
    )
    return summary
