"""SQLite connection and schema for jobs, steps, artifacts and links."""

import aiosqlite
from datetime import datetime
from pathlib import Path
from typing import Optional
import json
import logging

logger = logging.getLogger(__name__)


# SQL schema for jobs table
JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    type TEXT NOT NULL,
    inputs TEXT DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'queued',
    depends_on TEXT DEFAULT '[]',
    tags TEXT DEFAULT '{}',
    last_error TEXT,
    run_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);
"""

# SQL schema for steps table
STEPS_SCHEMA = """
CREATE TABLE IF NOT EXISTS steps (
    job_id TEXT NOT NULL,
    key TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    parent_key TEXT,
    result_json TEXT,
    tags TEXT DEFAULT '{}',
    duration_ms INTEGER,
    prompt TEXT,
    error TEXT,
    llm_tokens INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (job_id, key),
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_steps_status ON steps(job_id, status);
"""

# SQL schema for artifacts table
ARTIFACTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    title TEXT NOT NULL,
    content TEXT,
    tags TEXT DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_artifacts_job_kind ON artifacts(job_id, kind);
"""

# SQL schema for links table
LINKS_SCHEMA = """
CREATE TABLE IF NOT EXISTS links (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    from_type TEXT NOT NULL,
    from_id TEXT NOT NULL,
    to_type TEXT NOT NULL,
    to_id TEXT NOT NULL,
    role TEXT NOT NULL,
    tags TEXT DEFAULT '{}',
    created_at TEXT NOT NULL,
    UNIQUE (job_id, from_type, from_id, to_type, to_id, role),
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_links_job_id ON links(job_id);
"""

# Appended to upserts of job-owned rows: the write only lands while the job
# exists and (when an epoch is given) is still on that epoch.
EPOCH_GUARD = "WHERE EXISTS (SELECT 1 FROM jobs WHERE id = ? AND (? IS NULL OR run_count = ?))"


class Database:
    """
    Async SQLite database connection manager.

    Runs in autocommit mode; each statement is atomic on its own, which is
    what the compare-and-set and epoch-guarded writes rely on.
    """

    def __init__(self, db_path: Path | str = "docgen.db"):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open the connection (idempotent) and create missing tables."""
        if self._connection is not None:
            return

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Connecting to database: {self.db_path}")
        self._connection = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,  # Autocommit mode
        )
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()

        logger.info("Database connected and schema initialized")

    async def _init_schema(self) -> None:
        for schema in (JOBS_SCHEMA, STEPS_SCHEMA, ARTIFACTS_SCHEMA, LINKS_SCHEMA):
            await self._connection.executescript(schema)

    async def close(self) -> None:
        """Close database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @property
    def connection(self) -> aiosqlite.Connection:
        """Open connection; RuntimeError before connect()."""
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.connection.execute(sql, params)

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        async with self.connection.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self.connection.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]


# JSON columns

def serialize_json(data) -> str:
    return json.dumps(data, default=str)


def deserialize_json(data: Optional[str], default=None):
    """Parse a JSON column, falling back to `default` on NULL or bad JSON."""
    if data is None:
        return default
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        return default


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value:
        return datetime.fromisoformat(value)
    return None


def epoch_params(job_id: str, epoch: Optional[int]) -> tuple:
    """Parameters for EPOCH_GUARD."""
    return (job_id, epoch, epoch)
