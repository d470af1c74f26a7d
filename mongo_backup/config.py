import getpass
import logging
import os
from typing import List, Optional

from pydantic import BaseModel, field_validator

RETENTION_DAYS = 60

DEFAULT_COLLECTIONS = [
    "users",
    "visits",
    "reports",
    "leads",
    "quotations",
    "machines",
    "facilities",
    "orders",
    "consumables",
    "engineeringrequests",
    "engineeringservices",
    "calllogs",
    "appupdates",
    "manufacturers",
    "documentcategories",
    "machinedocuments",
]


class ConfigError(Exception):
    pass


class BackupSettings(BaseModel):
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: Optional[str] = None
    mongo_timeout_ms: int = 10000
    pg_dsn: str = "postgresql://postgres@localhost:5432/postgres"
    collections: List[str] = list(DEFAULT_COLLECTIONS)
    table_prefix: str = "mongo_"
    batch_size: int = 100
    sample_size: int = 100
    recovered_by: Optional[str] = None
    log_level: str = "INFO"

    @field_validator("batch_size", "sample_size", "mongo_timeout_ms")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("table_prefix")
    @classmethod
    def _prefix(cls, value: str) -> str:
        if not value:
            raise ValueError("mirror table prefix cannot be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @classmethod
    def from_env(cls) -> "BackupSettings":
        collections = parse_collections(os.getenv("COLLECTIONS")) or list(DEFAULT_COLLECTIONS)
        collections = filter_collections(
            collections, parse_collections(os.getenv("EXCLUDE_COLLECTIONS"))
        )
        try:
            return cls(
                mongo_uri=(
                    os.getenv("MONGODB_URI")
                    or os.getenv("MONGO_URI")
                    or os.getenv("MONGO_DETAILS")
                    or "mongodb://localhost:27017"
                ),
                mongo_db=os.getenv("DB_NAME") or os.getenv("MONGO_DB") or None,
                mongo_timeout_ms=env_int("MONGO_TIMEOUT_MS", 10000),
                pg_dsn=build_pg_dsn(),
                collections=collections,
                table_prefix=os.getenv("MIRROR_TABLE_PREFIX", "mongo_"),
                batch_size=env_int("BATCH_SIZE", 100),
                sample_size=env_int("SAMPLE_SIZE", 100),
                recovered_by=os.getenv("RECOVERED_BY") or None,
                log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as exc:
            # pydantic.ValidationError is a ValueError
            raise ConfigError(str(exc)) from exc


def build_pg_dsn() -> str:
    dsn = os.getenv("PG_DSN")
    if dsn:
        return dsn
    host = os.getenv("PGHOST", "localhost")
    port = os.getenv("PGPORT", "5432")
    db = os.getenv("PGDATABASE", "postgres")
    user = os.getenv("PGUSER") or os.getenv("USER") or getpass.getuser() or "postgres"
    password = os.getenv("PGPASSWORD", "")
    if password:
        return f"postgresql://{user}:{password}@{host}:{port}/{db}"
    return f"postgresql://{user}@{host}:{port}/{db}"


def load_dotenv(path: str = ".env") -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip("\"").strip("'")
                if key and key not in os.environ:
                    os.environ[key] = value
    except OSError:
        return


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def parse_collections(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    items = [c.strip() for c in raw.split(",")]
    items = [c for c in items if c]
    return items or None


def filter_collections(
    collections: List[str], exclude: Optional[List[str]]
) -> List[str]:
    if not exclude:
        return collections
    exclude_set = {c for c in exclude if c}
    return [c for c in collections if c not in exclude_set]


def default_operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
