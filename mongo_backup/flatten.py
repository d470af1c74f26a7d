import hashlib
from typing import Any, Dict, Iterator, Mapping, Tuple

from .coerce import coerce

MAX_IDENT_LEN = 63

SOURCE_ID_FIELD = "_id"
UNIQUE_ID_COLUMN = "mongo_id"


def short_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:8]


def column_name(key: str) -> str:
    """Mirror column for a flattened document key.

    Dots become underscores; keys longer than the PostgreSQL identifier limit
    (in UTF-8 bytes) keep a readable prefix and a hash of the full key.
    """
    name = key.replace(".", "_")
    encoded = name.encode("utf-8")
    if len(encoded) > MAX_IDENT_LEN:
        h = short_hash(key)
        head = encoded[: MAX_IDENT_LEN - len(h) - 1].decode("utf-8", errors="ignore")
        name = head + "_" + h
    return name


def iter_fields(doc: Mapping[str, Any], prefix: str = "") -> Iterator[Tuple[str, Any]]:
    """Yield ``(column, raw_value)`` for every leaf of ``doc``.

    Plain nested objects are walked with ``parent_child`` keys at any depth.
    Lists and timestamps are leaves. The top-level source id is not yielded.
    """
    for key, value in doc.items():
        if not prefix and key == SOURCE_ID_FIELD:
            continue
        path = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            yield from iter_fields(value, path)
        else:
            yield column_name(path), value


def flatten_document(doc: Mapping[str, Any]) -> Dict[str, Any]:
    if SOURCE_ID_FIELD not in doc:
        raise ValueError("document missing _id")
    row: Dict[str, Any] = {UNIQUE_ID_COLUMN: str(doc[SOURCE_ID_FIELD])}
    for column, value in iter_fields(doc):
        if column == UNIQUE_ID_COLUMN:
            continue
        row[column] = coerce(value)
    return row
