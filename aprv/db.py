"""SQLite store for normalized report records.

Two relations, both scoped by the source file they were imported from:

- access — one row per access event line, keyed (source_file, line_number)
- domain — one row per app/domain contact, keyed
  (source_file, bundle_id, domain, context, initiated_type)

Write operations never commit on their own; wrap them in ``transaction()``
so that a failed import rolls back to the previous contents of the file.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from aprv.config import DB_PATH
from aprv.normalize import AccessRecord, DomainRecord

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_VALID_TABLES = frozenset({"access", "domain"})

_SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('version', '1');

CREATE TABLE IF NOT EXISTS access (
    source_file TEXT NOT NULL,
    line_number INTEGER NOT NULL,
    stream_or_category TEXT NOT NULL,
    stream TEXT,
    tcc_service TEXT,
    category TEXT,
    accessor_id TEXT NOT NULL,
    accessor_id_type TEXT NOT NULL,
    kind TEXT NOT NULL,
    session_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    format_version INTEGER,
    out_of_process INTEGER,
    PRIMARY KEY (source_file, line_number)
) WITHOUT ROWID;
CREATE INDEX IF NOT EXISTS idx_access_session ON access(source_file, session_id);

CREATE TABLE IF NOT EXISTS domain (
    source_file TEXT NOT NULL,
    bundle_id TEXT NOT NULL,
    domain TEXT NOT NULL,
    context TEXT NOT NULL,
    initiated_type TEXT NOT NULL,
    domain_type INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    first_timestamp TEXT NOT NULL,
    hits INTEGER NOT NULL,
    domain_owner TEXT NOT NULL,
    effective_user_id INTEGER,
    has_app_bundle_name TEXT,
    domain_classification INTEGER,
    format_version INTEGER,
    PRIMARY KEY (source_file, bundle_id, domain, context, initiated_type)
) WITHOUT ROWID;
CREATE INDEX IF NOT EXISTS idx_domain_ts ON domain(source_file, timestamp);
"""

_ACCESS_COLS = [
    "source_file", "line_number", "stream_or_category", "stream", "tcc_service",
    "category", "accessor_id", "accessor_id_type", "kind", "session_id",
    "timestamp", "format_version", "out_of_process",
]

_DOMAIN_COLS = [
    "source_file", "bundle_id", "domain", "context", "initiated_type",
    "domain_type", "timestamp", "first_timestamp", "hits", "domain_owner",
    "effective_user_id", "has_app_bundle_name", "domain_classification",
    "format_version",
]


class StoreError(RuntimeError):
    """A write did not affect exactly one row."""


class Database:
    """SQLite wrapper for imported reports.

    Usage:
        with Database(path) as db:
            with db.transaction():
                db.clear_access("report")
                db.insert_access(record)
    """

    def __init__(self, path: Path | None = None):
        self.path = path or DB_PATH
        self._conn: sqlite3.Connection | None = None
        # reentrant: transaction() holds it while the write methods take it again
        self._lock = threading.RLock()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ── lifecycle ───────────────────────────────────────────────────────

    def open(self) -> None:
        """Open the database, apply pragmas, and ensure schema exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), timeout=10.0)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        log.debug("database opened at %s (schema v%d)", self.path, SCHEMA_VERSION)

    def close(self) -> None:
        """Close the database connection safely."""
        with self._lock:
            if self._conn:
                try:
                    self._conn.execute("PRAGMA optimize")
                    self._conn.close()
                except sqlite3.Error:
                    log.exception("error during database close")
                finally:
                    self._conn = None
                    log.debug("database closed")

    def _ensure_conn(self) -> sqlite3.Connection:
        """Return the active connection, raising if closed."""
        if self._conn is None:
            raise RuntimeError("database is not open, call .open() first")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit everything written inside the block, or roll it all back."""
        conn = self._ensure_conn()
        with self._lock:
            with conn:
                yield conn

    # ── writes ──────────────────────────────────────────────────────────

    def clear_access(self, source_file: str) -> int:
        return self._delete("access", source_file)

    def clear_domain(self, source_file: str) -> int:
        return self._delete("domain", source_file)

    def insert_access(self, record: AccessRecord) -> None:
        out_of_process = None if record.out_of_process is None else int(record.out_of_process)
        values = (
            record.source_file, record.line_number, record.stream_or_category,
            record.stream, record.tcc_service, record.category,
            record.accessor_id, record.accessor_id_type, record.kind,
            record.session_id, record.timestamp, record.format_version,
            out_of_process,
        )
        self._insert_exactly_one("access", _ACCESS_COLS, values)

    def insert_domain(self, record: DomainRecord) -> None:
        values = (
            record.source_file, record.bundle_id, record.domain, record.context,
            record.initiated_type, record.domain_type, record.timestamp,
            record.first_timestamp, record.hits, record.domain_owner,
            record.effective_user_id, record.has_app_bundle_name,
            record.domain_classification, record.format_version,
        )
        self._insert_exactly_one("domain", _DOMAIN_COLS, values)

    def _delete(self, table: str, source_file: str) -> int:
        if table not in _VALID_TABLES:
            raise ValueError(f"unknown table: {table!r}")
        conn = self._ensure_conn()
        with self._lock:
            cur = conn.execute(f"DELETE FROM {table} WHERE source_file = ?", (source_file,))
        return cur.rowcount

    def _insert_exactly_one(self, table: str, columns: list[str], values: tuple) -> None:
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        conn = self._ensure_conn()
        with self._lock:
            try:
                cur = conn.execute(sql, values)
            except sqlite3.IntegrityError as e:
                raise StoreError(f"failed to insert {table} record {values[:3]!r}: {e}") from e
        if cur.rowcount != 1:
            raise StoreError(f"failed to insert {table} record {values[:3]!r}: "
                             f"{cur.rowcount} rows affected")

    # ── reads ───────────────────────────────────────────────────────────

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._ensure_conn()
        with self._lock:
            return conn.execute(sql, params).fetchall()

    def list_files(self) -> list[str]:
        rows = self._query(
            "SELECT source_file FROM access UNION SELECT source_file FROM domain "
            "ORDER BY source_file"
        )
        return [r[0] for r in rows]

    def list_dates(self, source_file: str) -> list[str]:
        """UTC days with any activity, most recent first."""
        rows = self._query(
            "SELECT substr(timestamp, 1, 10) AS date FROM access WHERE source_file = ? "
            "UNION SELECT substr(timestamp, 1, 10) FROM domain WHERE source_file = ? "
            "ORDER BY date DESC",
            (source_file, source_file),
        )
        return [r[0] for r in rows]

    def list_bundle_ids(self, source_file: str) -> list[str]:
        rows = self._query(
            "SELECT accessor_id AS bundle_id FROM access WHERE source_file = ? "
            "UNION SELECT bundle_id FROM domain WHERE source_file = ? "
            "ORDER BY bundle_id",
            (source_file, source_file),
        )
        return [r[0] for r in rows]

    def list_access_types(self, source_file: str) -> list[str]:
        rows = self._query(
            "SELECT DISTINCT stream_or_category FROM access WHERE source_file = ? "
            "ORDER BY stream_or_category",
            (source_file,),
        )
        return [r[0] for r in rows]

    def scan_access(self, source_file: str) -> list[AccessRecord]:
        """All access rows of a file, in file line order."""
        rows = self._query(
            f"SELECT {', '.join(_ACCESS_COLS)} FROM access WHERE source_file = ? "
            "ORDER BY line_number",
            (source_file,),
        )
        records = []
        for row in rows:
            d = dict(zip(_ACCESS_COLS, row))
            if d["out_of_process"] is not None:
                d["out_of_process"] = bool(d["out_of_process"])
            records.append(AccessRecord(**d))
        return records

    def scan_domain(self, source_file: str) -> list[DomainRecord]:
        rows = self._query(
            f"SELECT {', '.join(_DOMAIN_COLS)} FROM domain WHERE source_file = ? "
            "ORDER BY bundle_id, domain, context, initiated_type",
            (source_file,),
        )
        return [DomainRecord(**dict(zip(_DOMAIN_COLS, row))) for row in rows]

    def count(self, table: str, source_file: str | None = None) -> int:
        """Return the row count for a table, optionally for one file."""
        if table not in _VALID_TABLES:
            raise ValueError(f"unknown table: {table!r}")
        if source_file is None:
            return self._query(f"SELECT COUNT(*) FROM {table}")[0][0]
        return self._query(
            f"SELECT COUNT(*) FROM {table} WHERE source_file = ?", (source_file,)
        )[0][0]
