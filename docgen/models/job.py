"""Job model - the top-level unit of work producing one document."""

from datetime import datetime, timezone
from typing import Optional, Any
from pydantic import BaseModel, Field

from .enums import JobStatus, DocumentType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    """
    A request to produce one document of a given type.

    Jobs move through queued -> running -> done|failed. A job created with
    dependencies starts blocked and is queued once every dependency is done.
    `run_count` is the execution epoch: rerunning a job increments it so any
    still-running execution of the previous epoch can no longer write.
    """

    id: str
    """Unique identifier (``job:<sha256>``)."""

    title: str
    """Human-readable title."""

    type: DocumentType
    """Document type tag, used to look up the phase pipeline."""

    inputs: dict[str, Any] = Field(default_factory=dict)
    """Type-specific inputs, validated by the document type registry."""

    status: JobStatus = JobStatus.QUEUED
    """Current lifecycle status."""

    depends_on: list[str] = Field(default_factory=list)
    """Job ids that must reach done before this job may run."""

    tags: dict[str, Any] = Field(default_factory=dict)
    """Free-form labels (e.g. the trajectory a job was spawned by)."""

    last_error: Optional[str] = None
    """Message of the exception that failed the most recent run."""

    run_count: int = 0
    """Execution epoch."""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @property
    def is_blocked(self) -> bool:
        return self.status == JobStatus.BLOCKED

    @property
    def is_terminal(self) -> bool:
        """Check if the job finished (successfully or not)."""
        return self.status in (JobStatus.DONE, JobStatus.FAILED)
