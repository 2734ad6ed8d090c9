"""Artifact and link storage layer."""

from typing import Any, Optional

from .database import (
    Database,
    EPOCH_GUARD,
    serialize_json,
    deserialize_json,
    parse_datetime,
    epoch_params,
)
from ..models import Artifact, Link, utcnow


class ArtifactStore:
    """Persistent storage for versioned artifacts."""

    def __init__(self, database: Database):
        self.db = database

    async def upsert(self, artifact: Artifact, epoch: Optional[int] = None) -> bool:
        """
        Insert or replace an artifact.

        Returns:
            True if written; False if the job is gone or on another epoch
        """
        sql = f"""
        INSERT INTO artifacts (
            id, job_id, kind, version, title, content, tags, created_at, updated_at
        )
        SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
        {EPOCH_GUARD}
        ON CONFLICT(id) DO UPDATE SET
            content = excluded.content,
            tags = excluded.tags,
            updated_at = excluded.updated_at
        """
        cursor = await self.db.execute(sql, (
            artifact.id,
            artifact.job_id,
            artifact.kind,
            artifact.version,
            artifact.title,
            artifact.content,
            serialize_json(artifact.tags),
            artifact.created_at.isoformat(),
            artifact.updated_at.isoformat(),
            *epoch_params(artifact.job_id, epoch),
        ))
        return cursor.rowcount > 0

    async def get(self, artifact_id: str) -> Optional[Artifact]:
        row = await self.db.fetch_one("SELECT * FROM artifacts WHERE id = ?", (artifact_id,))
        if row:
            return self._row_to_artifact(row)
        return None

    async def list_by_job(
        self,
        job_id: str,
        kind: Optional[str] = None,
        **tags: Any,
    ) -> list[Artifact]:
        """
        List a job's artifacts in creation order.

        Args:
            job_id: Owning job
            kind: Only artifacts of this kind
            **tags: Only artifacts whose tags contain these values
        """
        if kind is None:
            rows = await self.db.fetch_all(
                "SELECT * FROM artifacts WHERE job_id = ? ORDER BY created_at ASC, rowid ASC",
                (job_id,),
            )
        else:
            rows = await self.db.fetch_all(
                """
                SELECT * FROM artifacts WHERE job_id = ? AND kind = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (job_id, kind),
            )
        artifacts = [self._row_to_artifact(row) for row in rows]
        if tags:
            artifacts = [a for a in artifacts if a.matches_tags(**tags)]
        return artifacts

    async def latest(self, job_id: str, kind: str, **tags: Any) -> Optional[Artifact]:
        """Highest-version artifact of a kind (ties go to the most recent)."""
        artifacts = await self.list_by_job(job_id, kind, **tags)
        if not artifacts:
            return None
        return max(enumerate(artifacts), key=lambda pair: (pair[1].version, pair[0]))[1]

    async def delete_by_job(self, job_id: str) -> int:
        cursor = await self.db.execute("DELETE FROM artifacts WHERE job_id = ?", (job_id,))
        return cursor.rowcount

    def _row_to_artifact(self, row: dict) -> Artifact:
        return Artifact(
            id=row["id"],
            job_id=row["job_id"],
            kind=row["kind"],
            version=row.get("version") or 1,
            title=row["title"],
            content=row.get("content") or "",
            tags=deserialize_json(row.get("tags"), {}),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")) or utcnow(),
        )


class LinkStore:
    """Persistent storage for links between jobs, steps and artifacts."""

    def __init__(self, database: Database):
        self.db = database

    async def upsert(self, link: Link, epoch: Optional[int] = None) -> bool:
        """
        Insert a link, replacing any link with the same (job, from, to, role).

        Returns:
            True if written; False if the job is gone or on another epoch
        """
        sql = f"""
        INSERT INTO links (
            id, job_id, from_type, from_id, to_type, to_id, role, tags, created_at
        )
        SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
        {EPOCH_GUARD}
        ON CONFLICT(job_id, from_type, from_id, to_type, to_id, role) DO UPDATE SET
            tags = excluded.tags
        """
        cursor = await self.db.execute(sql, (
            link.id,
            link.job_id,
            link.from_type,
            link.from_id,
            link.to_type,
            link.to_id,
            link.role,
            serialize_json(link.tags),
            link.created_at.isoformat(),
            *epoch_params(link.job_id, epoch),
        ))
        return cursor.rowcount > 0

    async def list_by_job(self, job_id: str, role: Optional[str] = None) -> list[Link]:
        sql = "SELECT * FROM links WHERE job_id = ?"
        params: list = [job_id]
        if role is not None:
            sql += " AND role = ?"
            params.append(role)
        sql += " ORDER BY created_at ASC, rowid ASC"
        rows = await self.db.fetch_all(sql, tuple(params))
        return [self._row_to_link(row) for row in rows]

    async def delete_by_job(self, job_id: str) -> int:
        cursor = await self.db.execute("DELETE FROM links WHERE job_id = ?", (job_id,))
        return cursor.rowcount

    def _row_to_link(self, row: dict) -> Link:
        return Link(
            id=row["id"],
            job_id=row["job_id"],
            from_type=row["from_type"],
            from_id=row["from_id"],
            to_type=row["to_type"],
            to_id=row["to_id"],
            role=row["role"],
            tags=deserialize_json(row.get("tags"), {}),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
        )
