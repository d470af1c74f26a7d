import argparse
import logging
import sys
from contextlib import ExitStack
from typing import List, Optional, Sequence

from .config import RETENTION_DAYS, BackupSettings, ConfigError, default_operator, load_dotenv
from .ledger import ensure_ledger_tables
from .recovery import (
    BackupStats,
    DeletedRecord,
    RecoveryBatch,
    RecoveryResult,
    RecoveryStatus,
    collect_stats,
    list_deleted,
    recover_all,
    recover_one,
)
from .stores import open_document_store, open_mirror_store
from .sync import SyncSummary, run_sync

RULE = "-" * 60


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mongo-backup",
        description="Mirror MongoDB collections into PostgreSQL and recover deleted documents",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("sync", help="Snapshot the configured collections into PostgreSQL")

    list_parser = subparsers.add_parser("list", help="List recoverable deleted records")
    list_parser.add_argument("collection", nargs="?", help="Only list this collection")

    recover_parser = subparsers.add_parser("recover", help="Recover one record by MongoDB id")
    recover_parser.add_argument("collection")
    recover_parser.add_argument("mongo_id")
    recover_parser.add_argument("--by", help="Operator name for the recovery log")

    recover_all_parser = subparsers.add_parser(
        "recover-all", help="Recover every deleted record in a collection"
    )
    recover_all_parser.add_argument("collection")
    recover_all_parser.add_argument("--by", help="Operator name for the recovery log")

    subparsers.add_parser("stats", help="Show backup statistics")
    subparsers.add_parser("help", help="Show this help message")
    return parser


def print_sync_summary(summary: SyncSummary) -> None:
    print("SYNC SUMMARY")
    print(RULE)
    print(f"Backup run: {summary.run_id}")
    print(f"Collections synced: {len(summary.synced_collections)}")
    print(f"Collections skipped: {len(summary.skipped_collections)}")
    print(f"Collections failed: {len(summary.failed_collections)}")
    print(f"Total documents synced: {summary.total_documents}")
    print(f"Rows failed: {summary.failed_rows}")
    if summary.failed_collections:
        print("Errors:")
        for result in summary.failed_collections:
            print(f"  - {result.collection}: {result.error}")


def print_deleted(records: List[DeletedRecord]) -> None:
    print("DELETED RECORDS (recoverable)")
    print(RULE)
    if not records:
        print("No deleted records found.")
        return
    current = None
    for record in records:
        if record.collection != current:
            current = record.collection
            count = sum(1 for r in records if r.collection == current)
            print(f"{current} ({count} deleted)")
        deleted = record.deleted_at.strftime("%Y-%m-%d") if record.deleted_at else "unknown"
        print(
            f"  ID: {record.mongo_id} | Deleted: {deleted} | "
            f"Days to recover: {record.days_remaining}"
        )
    print(RULE)
    print(f"Total recoverable records: {len(records)}")


def print_recovery(result: RecoveryResult) -> None:
    messages = {
        RecoveryStatus.RECOVERED: "Record recovered",
        RecoveryStatus.NOT_FOUND: "Record not found or not deleted",
        RecoveryStatus.ALREADY_EXISTS: "Record already exists in MongoDB; skipped",
        RecoveryStatus.FAILED: "Recovery failed",
    }
    print(f"{messages[result.status]}: {result.collection} {result.mongo_id}")
    print(f"Status: {result.status.value}")


def print_batch(batch: RecoveryBatch) -> None:
    if not batch.results:
        print(f"No deleted records to recover in {batch.collection}.")
        return
    for result in batch.results:
        line = f"  {result.mongo_id}: {result.status.value}"
        if result.error:
            line += f" ({result.error})"
        print(line)
    print(RULE)
    print(f"Recovery complete: {batch.recovered} recovered, {batch.failed} failed")


def print_stats(stats: BackupStats) -> None:
    print("BACKUP STATISTICS")
    print(RULE)
    print("Recent backups:")
    for run in stats.runs:
        started = run.backup_date.strftime("%Y-%m-%d %H:%M:%S") if run.backup_date else "unknown"
        print(f"  {started} - {run.status}")
        print(f"    Collections: {run.collections_synced}, Docs: {run.total_documents}")
        if run.error_message:
            print(f"    Error: {run.error_message}")
    print("Collections:")
    for item in stats.collections:
        print(f"  {item.collection}: {item.active} active, {item.deleted} deleted ({item.total} total)")
    print(f"Total recoveries performed: {stats.recoveries}")
    print(f"Retention period: {RETENTION_DAYS} days")


def run_command(args: argparse.Namespace, settings: BackupSettings) -> int:
    recovered_by = getattr(args, "by", None) or settings.recovered_by or default_operator()
    with ExitStack() as stack:
        mirror = stack.enter_context(open_mirror_store(settings.pg_dsn))
        ensure_ledger_tables(mirror)

        if args.command == "list":
            print_deleted(list_deleted(mirror, args.collection, table_prefix=settings.table_prefix))
            return 0
        if args.command == "stats":
            print_stats(collect_stats(mirror, table_prefix=settings.table_prefix))
            return 0

        documents = stack.enter_context(
            open_document_store(settings.mongo_uri, settings.mongo_db, settings.mongo_timeout_ms)
        )
        if args.command == "sync":
            print_sync_summary(run_sync(mirror, documents, settings.collections, settings))
        elif args.command == "recover":
            result = recover_one(
                mirror,
                documents,
                args.collection,
                args.mongo_id,
                table_prefix=settings.table_prefix,
                recovered_by=recovered_by,
            )
            print_recovery(result)
        elif args.command == "recover-all":
            batch = recover_all(
                mirror,
                documents,
                args.collection,
                table_prefix=settings.table_prefix,
                recovered_by=recovered_by,
            )
            print_batch(batch)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.command in (None, "help"):
        parser.print_help()
        return 0

    try:
        settings = BackupSettings.from_env()
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level)

    try:
        return run_command(args, settings)
    except Exception as exc:
        logging.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
