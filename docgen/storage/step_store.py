"""Step storage layer."""

from typing import Iterable, Optional

from .database import (
    Database,
    EPOCH_GUARD,
    serialize_json,
    deserialize_json,
    parse_datetime,
    epoch_params,
)
from ..models import Step, StepStatus, utcnow


class StepStore:
    """Persistent storage for memoized steps, keyed by (job_id, key)."""

    def __init__(self, database: Database):
        self.db = database

    async def get(self, job_id: str, key: str) -> Optional[Step]:
        row = await self.db.fetch_one(
            "SELECT * FROM steps WHERE job_id = ? AND key = ?",
            (job_id, key),
        )
        if row:
            return self._row_to_step(row)
        return None

    async def upsert(self, step: Step, epoch: Optional[int] = None) -> bool:
        """
        Insert or replace a step record.

        The write only lands while the owning job exists and, when `epoch` is
        given, is still on that epoch.

        Returns:
            True if the record was written
        """
        sql = f"""
        INSERT INTO steps (
            job_id, key, title, status, parent_key, result_json, tags,
            duration_ms, prompt, error, llm_tokens, created_at, updated_at
        )
        SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
        {EPOCH_GUARD}
        ON CONFLICT(job_id, key) DO UPDATE SET
            title = excluded.title,
            status = excluded.status,
            parent_key = excluded.parent_key,
            result_json = excluded.result_json,
            tags = excluded.tags,
            duration_ms = excluded.duration_ms,
            prompt = excluded.prompt,
            error = excluded.error,
            llm_tokens = excluded.llm_tokens,
            updated_at = excluded.updated_at
        """
        cursor = await self.db.execute(sql, (
            step.job_id,
            step.key,
            step.title,
            step.status,
            step.parent_key,
            step.result_json,
            serialize_json(step.tags),
            step.duration_ms,
            step.prompt,
            step.error,
            step.llm_tokens,
            step.created_at.isoformat(),
            step.updated_at.isoformat(),
            *epoch_params(step.job_id, epoch),
        ))
        return cursor.rowcount > 0

    async def list_by_job(self, job_id: str, prefix: Optional[str] = None) -> list[Step]:
        """List a job's steps in creation order, optionally by key prefix."""
        if prefix is None:
            rows = await self.db.fetch_all(
                "SELECT * FROM steps WHERE job_id = ? ORDER BY created_at ASC, rowid ASC",
                (job_id,),
            )
        else:
            rows = await self.db.fetch_all(
                """
                SELECT * FROM steps WHERE job_id = ? AND substr(key, 1, ?) = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (job_id, len(prefix), prefix),
            )
        return [self._row_to_step(row) for row in rows]

    async def reset(
        self,
        job_id: str,
        keys: Optional[Iterable[str]] = None,
        statuses: Optional[Iterable[StepStatus]] = None,
    ) -> int:
        """
        Reset steps to pending so they recompute on the next run.

        Args:
            job_id: Owning job
            keys: Only reset these keys (all keys when None)
            statuses: Only reset steps currently in one of these statuses

        Returns:
            Number of steps reset
        """
        sql = "UPDATE steps SET status = ?, updated_at = ? WHERE job_id = ?"
        params: list = [StepStatus.PENDING.value, utcnow().isoformat(), job_id]

        if statuses is not None:
            values = [s.value if isinstance(s, StepStatus) else s for s in statuses]
            if not values:
                return 0
            sql += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)

        if keys is None:
            cursor = await self.db.execute(sql, tuple(params))
            return cursor.rowcount

        count = 0
        for key in keys:
            cursor = await self.db.execute(sql + " AND key = ?", (*params, key))
            count += cursor.rowcount
        return count

    async def delete_by_job(self, job_id: str) -> int:
        cursor = await self.db.execute("DELETE FROM steps WHERE job_id = ?", (job_id,))
        return cursor.rowcount

    def _row_to_step(self, row: dict) -> Step:
        return Step(
            job_id=row["job_id"],
            key=row["key"],
            title=row.get("title") or "",
            status=row["status"],
            parent_key=row.get("parent_key"),
            result_json=row.get("result_json"),
            tags=deserialize_json(row.get("tags"), {}),
            duration_ms=row.get("duration_ms"),
            prompt=row.get("prompt"),
            error=row.get("error"),
            llm_tokens=row.get("llm_tokens"),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")) or utcnow(),
        )
