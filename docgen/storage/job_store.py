"""Job storage layer."""

from typing import Iterable, Optional

from .database import Database, serialize_json, deserialize_json, parse_datetime
from ..models import Job, JobStatus, utcnow


def _status_value(status) -> str:
    return status.value if isinstance(status, JobStatus) else status


class JobStore:
    """
    Persistent storage for jobs.

    Status changes that must not race (starting a job, unblocking a job) go
    through `transition`, a single conditional UPDATE.
    """

    def __init__(self, database: Database):
        self.db = database

    async def create(self, job: Job) -> None:
        """Insert a new job."""
        await self.db.execute(
            """
            INSERT INTO jobs (
                id, title, type, inputs, status, depends_on, tags,
                last_error, run_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.title,
                job.type,
                serialize_json(job.inputs),
                _status_value(job.status),
                serialize_json(job.depends_on),
                serialize_json(job.tags),
                job.last_error,
                job.run_count,
                job.created_at.isoformat(),
                job.updated_at.isoformat(),
            ),
        )

    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        row = await self.db.fetch_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if row:
            return self._row_to_job(row)
        return None

    async def delete(self, job_id: str) -> bool:
        """Delete a job (and, by cascade, its steps, artifacts and links)."""
        cursor = await self.db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        return cursor.rowcount > 0

    async def list_all(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs, newest first."""
        sql = "SELECT * FROM jobs"
        params: list = []
        if status:
            sql += " WHERE status = ?"
            params.append(_status_value(status))
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        rows = await self.db.fetch_all(sql, tuple(params))
        return [self._row_to_job(row) for row in rows]

    async def list_by_status(self, status: JobStatus, limit: int = 100) -> list[Job]:
        """List jobs with a status, oldest first."""
        rows = await self.db.fetch_all(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (_status_value(status), limit),
        )
        return [self._row_to_job(row) for row in rows]

    async def list_by_depends_on(self, job_id: str) -> list[Job]:
        """List jobs that name `job_id` among their dependencies."""
        rows = await self.db.fetch_all(
            """
            SELECT * FROM jobs
            WHERE EXISTS (SELECT 1 FROM json_each(jobs.depends_on) WHERE value = ?)
            ORDER BY created_at ASC
            """,
            (job_id,),
        )
        return [self._row_to_job(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        """Get count of jobs by status."""
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) as count FROM jobs GROUP BY status"
        )
        return {(row["status"] or "unknown"): row["count"] for row in rows}

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        last_error: Optional[str] = None,
        epoch: Optional[int] = None,
    ) -> bool:
        """
        Set a job's status.

        Args:
            job_id: Job to update
            status: New status
            last_error: Error message to record (cleared when None)
            epoch: If given, only update while the job is still on this epoch

        Returns:
            True if a row was updated
        """
        cursor = await self.db.execute(
            """
            UPDATE jobs SET status = ?, last_error = ?, updated_at = ?
            WHERE id = ? AND (? IS NULL OR run_count = ?)
            """,
            (_status_value(status), last_error, utcnow().isoformat(), job_id, epoch, epoch),
        )
        return cursor.rowcount > 0

    async def transition(
        self,
        job_id: str,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
    ) -> bool:
        """
        Atomically move a job to `to_status` if it is in one of `from_statuses`.

        Returns:
            True if this call performed the transition
        """
        allowed = [_status_value(s) for s in from_statuses]
        placeholders = ", ".join("?" for _ in allowed)
        cursor = await self.db.execute(
            f"""
            UPDATE jobs SET status = ?, updated_at = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            (_status_value(to_status), utcnow().isoformat(), job_id, *allowed),
        )
        return cursor.rowcount > 0

    async def increment_run_count(self, job_id: str) -> Optional[int]:
        """Start a new execution epoch. Returns the new run count."""
        await self.db.execute(
            "UPDATE jobs SET run_count = run_count + 1, updated_at = ? WHERE id = ?",
            (utcnow().isoformat(), job_id),
        )
        row = await self.db.fetch_one("SELECT run_count FROM jobs WHERE id = ?", (job_id,))
        return row["run_count"] if row else None

    async def mark_interrupted(self) -> int:
        """Mark every running job as paused. Returns the number of jobs marked."""
        cursor = await self.db.execute(
            "UPDATE jobs SET status = ?, updated_at = ? WHERE status = ?",
            (JobStatus.PAUSED.value, utcnow().isoformat(), JobStatus.RUNNING.value),
        )
        return cursor.rowcount

    def _row_to_job(self, row: dict) -> Job:
        """Convert a database row to a Job object."""
        return Job(
            id=row["id"],
            title=row["title"],
            type=row["type"],
            inputs=deserialize_json(row.get("inputs"), {}),
            status=row["status"],
            depends_on=deserialize_json(row.get("depends_on"), []),
            tags=deserialize_json(row.get("tags"), {}),
            last_error=row.get("last_error"),
            run_count=row.get("run_count") or 0,
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")) or utcnow(),
        )
