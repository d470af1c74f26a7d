from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from bson import Decimal128, ObjectId

from .flatten import UNIQUE_ID_COLUMN, iter_fields

DEFAULT_TABLE_PREFIX = "mongo_"
DEFAULT_SAMPLE_SIZE = 100

SHORT_TEXT_MAX = 255
LONG_TEXT_MAX = 65535

ID_COLUMN = "id"
IS_DELETED_COLUMN = "is_deleted"
DELETED_AT_COLUMN = "deleted_at"
SYNCED_AT_COLUMN = "synced_at"

RESERVED_COLUMNS = (
    ID_COLUMN,
    UNIQUE_ID_COLUMN,
    IS_DELETED_COLUMN,
    DELETED_AT_COLUMN,
    SYNCED_AT_COLUMN,
)

# Filled by the database or the deletion tracker, never by the sync job.
GENERATED_COLUMNS = (ID_COLUMN, IS_DELETED_COLUMN, DELETED_AT_COLUMN, SYNCED_AT_COLUMN)

FORCED_TIMESTAMP_COLUMNS = ("createdAt", "updatedAt")


class ColumnType(str, Enum):
    IDENTITY = "identity"
    UNIQUE_ID = "unique_id"
    INTEGER = "integer"
    DECIMAL = "decimal"
    SHORT_TEXT = "short_text"
    LONG_TEXT = "long_text"
    VERY_LONG_TEXT = "very_long_text"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    STRUCTURED = "structured"


PG_TYPES = {
    ColumnType.IDENTITY: "BIGSERIAL PRIMARY KEY",
    ColumnType.UNIQUE_ID: "TEXT UNIQUE NOT NULL",
    ColumnType.INTEGER: "BIGINT",
    ColumnType.DECIMAL: "NUMERIC",
    ColumnType.SHORT_TEXT: "VARCHAR(255)",
    ColumnType.LONG_TEXT: "TEXT",
    ColumnType.VERY_LONG_TEXT: "TEXT",
    # coerce() turns booleans into 1/0
    ColumnType.BOOLEAN: "SMALLINT",
    ColumnType.TIMESTAMP: "TIMESTAMP",
    ColumnType.STRUCTURED: "JSONB",
}

COLUMN_CONSTRAINTS = {
    IS_DELETED_COLUMN: "NOT NULL DEFAULT 0",
    SYNCED_AT_COLUMN: "NOT NULL DEFAULT (now() AT TIME ZONE 'utc')",
}


@dataclass
class CollectionSchema:
    collection_name: str
    table_name: str
    columns: Dict[str, ColumnType] = field(default_factory=dict)

    def column_definitions(self) -> List[Tuple[str, str]]:
        definitions = []
        for name, column_type in self.columns.items():
            ddl = PG_TYPES[column_type]
            constraint = COLUMN_CONSTRAINTS.get(name)
            if constraint:
                ddl = f"{ddl} {constraint}"
            definitions.append((name, ddl))
        return definitions

    def project(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Keep only the columns the sync job writes; unknown keys are dropped."""
        return {
            key: value
            for key, value in row.items()
            if key in self.columns and key not in GENERATED_COLUMNS
        }


def mirror_table_name(collection_name: str, prefix: str = DEFAULT_TABLE_PREFIX) -> str:
    return f"{prefix}{collection_name}"


def infer_column_type(value: Any) -> Optional[ColumnType]:
    if value is None:
        return None
    if isinstance(value, bool):
        return ColumnType.BOOLEAN
    if isinstance(value, int):
        return ColumnType.INTEGER
    if isinstance(value, float):
        return ColumnType.INTEGER if value.is_integer() else ColumnType.DECIMAL
    if isinstance(value, (Decimal, Decimal128)):
        return ColumnType.DECIMAL
    if isinstance(value, datetime):
        return ColumnType.TIMESTAMP
    if isinstance(value, ObjectId):
        return ColumnType.SHORT_TEXT
    if isinstance(value, str):
        if len(value) <= SHORT_TEXT_MAX:
            return ColumnType.SHORT_TEXT
        if len(value) <= LONG_TEXT_MAX:
            return ColumnType.LONG_TEXT
        return ColumnType.VERY_LONG_TEXT
    if isinstance(value, (list, dict)):
        return ColumnType.STRUCTURED
    return ColumnType.LONG_TEXT


def infer_schema(
    collection_name: str,
    sample: Iterable[Mapping[str, Any]],
    table_prefix: str = DEFAULT_TABLE_PREFIX,
) -> CollectionSchema:
    """Derive the mirror table layout for a collection from sampled documents.

    Each column is typed by the first non-null value seen for it, in sample
    order; columns only ever seen as null fall back to long text. Fields whose
    type changes later in the collection are not detected.
    """
    columns: Dict[str, ColumnType] = {
        ID_COLUMN: ColumnType.IDENTITY,
        UNIQUE_ID_COLUMN: ColumnType.UNIQUE_ID,
        IS_DELETED_COLUMN: ColumnType.BOOLEAN,
        DELETED_AT_COLUMN: ColumnType.TIMESTAMP,
    }

    inferred: Dict[str, Optional[ColumnType]] = {}
    for doc in sample:
        for column, value in iter_fields(doc):
            if column in RESERVED_COLUMNS:
                continue
            if inferred.get(column) is not None:
                continue
            inferred[column] = infer_column_type(value)

    for column, column_type in inferred.items():
        columns[column] = column_type or ColumnType.LONG_TEXT
    for column in FORCED_TIMESTAMP_COLUMNS:
        columns.setdefault(column, ColumnType.TIMESTAMP)
    columns[SYNCED_AT_COLUMN] = ColumnType.TIMESTAMP

    return CollectionSchema(
        collection_name=collection_name,
        table_name=mirror_table_name(collection_name, table_prefix),
        columns=columns,
    )
