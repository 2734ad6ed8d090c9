"""Artifact and link models - versioned outputs and the edges between entities."""

from datetime import datetime
from typing import Optional, Any
from pydantic import BaseModel, Field
import json

from .enums import EntityType
from .job import utcnow


class Artifact(BaseModel):
    """
    A versioned output recorded for a job.

    The id is derived from (job, kind, version, title) plus a few identifying
    tags, so re-emitting the same output replaces it instead of duplicating it.
    """

    id: str
    job_id: str
    kind: str
    version: int = 1
    title: str
    content: str = ""
    """Text content, or JSON text for structured artifacts."""

    tags: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def json_content(self, default: Any = None) -> Any:
        """Parse content as JSON."""
        try:
            return json.loads(self.content)
        except (TypeError, ValueError):
            return default

    def matches_tags(self, **tags: Any) -> bool:
        """Check that every given tag is present with the same value."""
        return all(self.tags.get(k) == v for k, v in tags.items())


class EntityRef(BaseModel):
    """Reference to a job, step or artifact."""

    type: EntityType
    id: str

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @classmethod
    def job(cls, job_id: str) -> "EntityRef":
        return cls(type=EntityType.JOB, id=job_id)

    @classmethod
    def step(cls, key: str) -> "EntityRef":
        return cls(type=EntityType.STEP, id=key)

    @classmethod
    def artifact(cls, artifact_id: str) -> "EntityRef":
        return cls(type=EntityType.ARTIFACT, id=artifact_id)


class Link(BaseModel):
    """Typed directed edge between two entities, scoped to a job."""

    id: str
    job_id: str
    from_type: EntityType
    from_id: str
    to_type: EntityType
    to_id: str
    role: str
    tags: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @property
    def source(self) -> EntityRef:
        return EntityRef(type=self.from_type, id=self.from_id)

    @property
    def target(self) -> EntityRef:
        return EntityRef(type=self.to_type, id=self.to_id)
