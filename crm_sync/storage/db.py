"""
SQLite database module for the local contact store and sync bookkeeping.

Provides persistent storage for:
- Contacts mirrored from the CRM, partitioned by owner scope
- The sync job ledger (one row per run)
- Operators, whose ids are the owner scopes
"""

import json
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Optional

from crm_sync.sync.contact import LOCAL_ONLY_COLUMNS, MIRRORED_COLUMNS
from crm_sync.utils.timing import format_iso, utc_now

# Page size used when bulk-loading existing contacts
DEFAULT_LOAD_PAGE_SIZE = 1000

# SQL Schema for contacts, sync jobs and operators
SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    crm_contact_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,

    -- Mirrored from the CRM
    hs_object_id TEXT,
    email TEXT,
    first_name TEXT,
    last_name TEXT,
    phone TEXT,
    mobile_phone TEXT,
    company TEXT,
    address TEXT,
    city TEXT,
    state TEXT,
    zip TEXT,
    country TEXT,
    website TEXT,
    lifecycle_stage TEXT,
    crm_created_at TEXT,
    crm_modified_at TEXT,

    -- Locally owned. Seeded on insert, never updated by sync
    crm_company_id TEXT,
    business_type TEXT,
    business_category_type TEXT,
    business_hours TEXT,
    locations TEXT,
    active_customer INTEGER,
    gbp_ready INTEGER,
    published_status TEXT,
    publishing_fee_paid INTEGER,
    completeness_score REAL,
    current_website TEXT,
    website_status TEXT,

    synced_at TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(crm_contact_id, owner_id)
);

CREATE INDEX IF NOT EXISTS idx_contacts_owner ON contacts(owner_id);
CREATE INDEX IF NOT EXISTS idx_contacts_modified ON contacts(owner_id, crm_modified_at);

CREATE TABLE IF NOT EXISTS sync_jobs (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    records_fetched INTEGER DEFAULT 0,
    records_created INTEGER DEFAULT 0,
    records_updated INTEGER DEFAULT 0,
    records_skipped INTEGER DEFAULT 0,
    errors INTEGER DEFAULT 0,
    error_message TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_type_started
    ON sync_jobs(job_type, started_at);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_status ON sync_jobs(status);

CREATE TABLE IF NOT EXISTS operators (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    salt TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(email)
);
"""

# Columns written by the contact upsert, in statement order
UPSERT_COLUMNS: list[str] = [
    "id",
    "crm_contact_id",
    "owner_id",
    *MIRRORED_COLUMNS,
    *LOCAL_ONLY_COLUMNS,
    "synced_at",
]

# On conflict only mirrored columns are refreshed, and a NULL payload value
# keeps the stored one. Local-only columns are written for new rows only.
_UPSERT_SQL = (
    f"INSERT INTO contacts ({', '.join(UPSERT_COLUMNS)}, created_at, updated_at) "
    f"VALUES ({', '.join('?' for _ in UPSERT_COLUMNS)}, ?, ?) "
    "ON CONFLICT(crm_contact_id, owner_id) DO UPDATE SET "
    + ", ".join(
        f"{col} = COALESCE(excluded.{col}, contacts.{col})"
        for col in MIRRORED_COLUMNS
    )
    + ", synced_at = excluded.synced_at, updated_at = excluded.updated_at"
)

# Orders ISO strings and epoch-millisecond strings on one time axis
_MODIFIED_AT_ORDER = (
    "CASE WHEN crm_modified_at NOT GLOB '*[^0-9]*' "
    "THEN crm_modified_at / 86400000.0 + 2440587.5 "
    "ELSE julianday(crm_modified_at) END"
)

_SYNC_JOB_COLUMNS = """
    id,
    job_type,
    status,
    records_fetched,
    records_created,
    records_updated,
    records_skipped,
    errors,
    error_message,
    started_at,
    completed_at,
    duration_ms,
    metadata
"""


def _job_from_row(row: sqlite3.Row) -> dict[str, Any]:
    job = dict(row)
    job["metadata"] = json.loads(job["metadata"]) if job.get("metadata") else {}
    return job


class SyncDatabase:
    """
    SQLite database manager for the local contact store and sync ledger.

    Provides methods for:
    - Bulk-loading existing contacts for an owner scope
    - Upserting merged contacts keyed by (crm_contact_id, owner_id)
    - Recording sync job lifecycles
    - Storing operator credentials

    Usage:
        db = SyncDatabase('/path/to/crm_sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(":memory:")
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_jobs")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create the tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # =========================================================================
    # Contact Operations
    # =========================================================================

    def load_existing_contacts(
        self,
        owner_id: str,
        full: bool = True,
        page_size: int = DEFAULT_LOAD_PAGE_SIZE,
    ) -> dict[str, Optional[dict[str, Any]]]:
        """
        Load all contacts of an owner scope, keyed by CRM contact id.

        Reads in pages of page_size until a short page comes back.

        Args:
            owner_id: Owner scope to load
            full: If True, load complete rows (needed for merging). If False,
                load only ids and map each to None (existence check only).
            page_size: Rows per query

        Returns:
            Dict of crm_contact_id -> row dict (or None for light loads)
        """
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")

        columns = "*" if full else "crm_contact_id"
        contacts: dict[str, Optional[dict[str, Any]]] = {}
        offset = 0

        with self.connection() as conn:
            while True:
                rows = conn.execute(
                    f"SELECT {columns} FROM contacts WHERE owner_id = ? "  # nosec B608
                    "ORDER BY id LIMIT ? OFFSET ?",
                    (owner_id, page_size, offset),
                ).fetchall()

                for row in rows:
                    contact_id = row["crm_contact_id"]
                    if contact_id:
                        contacts[contact_id] = dict(row) if full else None

                offset += page_size
                if len(rows) < page_size:
                    break

        return contacts

    def get_contact(
        self, crm_contact_id: str, owner_id: str
    ) -> Optional[dict[str, Any]]:
        """
        Get a single contact by its business key.

        Returns:
            Row dict, or None if not found
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE crm_contact_id = ? AND owner_id = ?",
                (crm_contact_id, owner_id),
            ).fetchone()
            return dict(row) if row else None

    def upsert_contacts(self, records: Iterable[dict[str, Any]]) -> int:
        """
        Insert or update contacts in one transaction.

        Conflicts are resolved on (crm_contact_id, owner_id), never on the
        primary key. On conflict only mirrored columns are rewritten, NULL
        payload values leave stored values in place, and local-only columns
        and the stored primary key are kept.

        Args:
            records: Merged payloads

        Returns:
            Number of records written

        Raises:
            sqlite3.Error: If the write fails (the whole batch is rolled back)
        """
        now = format_iso(utc_now())
        params = [
            tuple(record.get(col) for col in UPSERT_COLUMNS) + (now, now)
            for record in records
        ]
        if not params:
            return 0

        with self.connection() as conn:
            conn.executemany(_UPSERT_SQL, params)
        return len(params)

    def get_max_crm_modified_at(self, owner_id: str) -> Optional[str]:
        """
        Get the most recent CRM modification timestamp stored for an owner.

        Returns:
            The raw stored timestamp, or None if no row has one
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT crm_modified_at FROM contacts "  # nosec B608
                "WHERE owner_id = ? AND crm_modified_at IS NOT NULL "
                "AND crm_modified_at != '' "
                f"ORDER BY {_MODIFIED_AT_ORDER} DESC LIMIT 1",
                (owner_id,),
            ).fetchone()
            return row["crm_modified_at"] if row else None

    def get_contact_count(self, owner_id: Optional[str] = None) -> int:
        """Count stored contacts, optionally for a single owner."""
        with self.connection() as conn:
            if owner_id is None:
                cursor = conn.execute("SELECT COUNT(*) FROM contacts")
            else:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM contacts WHERE owner_id = ?", (owner_id,)
                )
            result: int = cursor.fetchone()[0]
            return result

    # =========================================================================
    # Sync Job Operations
    # =========================================================================

    def create_sync_job(
        self,
        job_id: str,
        job_type: str,
        status: str,
        metadata: Optional[dict[str, Any]] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        """
        Insert a new sync job row.

        Args:
            job_id: Unique job identifier
            job_type: Job type, e.g. 'crm_contacts_sync'
            status: Initial status (normally 'running')
            metadata: Free-form JSON-serializable details
            started_at: Start time (defaults to now)
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_jobs (id, job_type, status, started_at, metadata)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    job_type,
                    status,
                    format_iso(started_at or utc_now()),
                    json.dumps(metadata or {}),
                ),
            )

    def finish_sync_job(
        self,
        job_id: str,
        status: str,
        records_fetched: int = 0,
        records_created: int = 0,
        records_updated: int = 0,
        records_skipped: int = 0,
        errors: int = 0,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record the terminal state of a sync job.

        Metadata is merged into the metadata stored at job creation.

        Returns:
            True if the job was found and updated
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT metadata FROM sync_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                return False

            merged_metadata = json.loads(row["metadata"]) if row["metadata"] else {}
            merged_metadata.update(metadata or {})

            conn.execute(
                """
                UPDATE sync_jobs SET
                    status = ?,
                    records_fetched = ?,
                    records_created = ?,
                    records_updated = ?,
                    records_skipped = ?,
                    errors = ?,
                    error_message = ?,
                    completed_at = ?,
                    duration_ms = ?,
                    metadata = ?
                WHERE id = ?
                """,
                (
                    status,
                    records_fetched,
                    records_created,
                    records_updated,
                    records_skipped,
                    errors,
                    error_message,
                    format_iso(completed_at or utc_now()),
                    duration_ms,
                    json.dumps(merged_metadata),
                    job_id,
                ),
            )
            return True

    def get_sync_job(self, job_id: str) -> Optional[dict[str, Any]]:
        """Get a sync job by id, with metadata decoded."""
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {_SYNC_JOB_COLUMNS} FROM sync_jobs WHERE id = ?",  # nosec B608
                (job_id,),
            ).fetchone()
            return _job_from_row(row) if row else None

    def get_sync_jobs(
        self,
        job_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        List sync jobs, most recently started first.

        Args:
            job_type: Only jobs of this type
            since: Only jobs started at or after this time
            limit: Maximum number of rows

        Returns:
            List of job dicts with metadata decoded
        """
        clauses: list[str] = []
        params: list[Any] = []
        if job_type:
            clauses.append("job_type = ?")
            params.append(job_type)
        if since is not None:
            clauses.append("started_at >= ?")
            params.append(format_iso(since))

        sql = f"SELECT {_SYNC_JOB_COLUMNS} FROM sync_jobs"  # nosec B608
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY started_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self.connection() as conn:
            return [_job_from_row(row) for row in conn.execute(sql, params).fetchall()]

    def get_latest_completed_job(self, job_type: str) -> Optional[dict[str, Any]]:
        """Get the most recently completed job of a type, regardless of age."""
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {_SYNC_JOB_COLUMNS} FROM sync_jobs "  # nosec B608
                "WHERE job_type = ? AND status = 'completed' "
                "ORDER BY completed_at DESC LIMIT 1",
                (job_type,),
            ).fetchone()
            return _job_from_row(row) if row else None

    def mark_stale_jobs_failed(self, older_than_minutes: int = 60) -> int:
        """
        Fail jobs left in 'running' by a crashed process.

        Args:
            older_than_minutes: Jobs started longer ago than this are marked failed

        Returns:
            Number of jobs updated
        """
        now = utc_now()
        cutoff = now - timedelta(minutes=older_than_minutes)
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_jobs
                SET status = 'failed',
                    error_message = 'Marked failed: job was left running',
                    completed_at = ?
                WHERE status = 'running' AND started_at < ?
                """,
                (format_iso(now), format_iso(cutoff)),
            )
            return cursor.rowcount

    # =========================================================================
    # Operator Operations
    # =========================================================================

    def create_operator(
        self, operator_id: str, email: str, password_hash: str, salt: str
    ) -> None:
        """
        Store a new operator.

        Raises:
            sqlite3.IntegrityError: If the email is already registered
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO operators (id, email, password_hash, salt, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (operator_id, email, password_hash, salt, format_iso(utc_now())),
            )

    def get_operator_by_email(self, email: str) -> Optional[dict[str, Any]]:
        """Get an operator row by (already normalized) email."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id, email, password_hash, salt, created_at "
                "FROM operators WHERE email = ?",
                (email,),
            ).fetchone()
            return dict(row) if row else None
