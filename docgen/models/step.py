"""Step model - a memoized unit of work within a job."""

from datetime import datetime
from typing import Optional, Any
from pydantic import BaseModel, Field
import json

from .enums import StepStatus
from .job import utcnow


class Step(BaseModel):
    """
    Persisted record of one memoized step.

    Steps are keyed by (job_id, key). Generative steps embed a hash of their
    prompt in the key, so an identical prompt replays the stored result.
    Keys starting with ``phase:<name>:`` mark the tasks of a phase.
    """

    job_id: str
    key: str
    title: str = ""
    status: StepStatus = StepStatus.PENDING
    parent_key: Optional[str] = None

    result_json: Optional[str] = None
    """Serialized result (or failure payload for failed steps)."""

    tags: dict[str, Any] = Field(default_factory=dict)
    """Provenance: model task, attempts, raw response, token usage."""

    duration_ms: Optional[int] = None
    prompt: Optional[str] = None
    error: Optional[str] = None
    llm_tokens: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @property
    def result(self) -> Any:
        """Deserialized result (None when nothing was stored)."""
        if self.result_json is None:
            return None
        return json.loads(self.result_json)

    @property
    def is_done(self) -> bool:
        return self.status == StepStatus.DONE
