"""Enumerations for the document generation engine."""

from enum import Enum


class JobStatus(str, Enum):
    """Status of a job."""

    QUEUED = "queued"
    """Job is ready to run."""

    RUNNING = "running"
    """Job's phase pipeline is executing."""

    DONE = "done"
    """Every phase finished successfully."""

    FAILED = "failed"
    """The pipeline raised; see last_error."""

    BLOCKED = "blocked"
    """Job is waiting for its dependencies to reach done."""

    PAUSED = "paused"
    """Job was running when the process stopped. Never resumed automatically."""


class StepStatus(str, Enum):
    """Status of a memoized step."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class DocumentType(str, Enum):
    """Kinds of document a job can produce."""

    NARRATIVE = "narrative"
    FHIR = "fhir"
    TRAJECTORY = "trajectory"


class EntityType(str, Enum):
    """Entity kinds that links can connect."""

    ARTIFACT = "artifact"
    STEP = "step"
    JOB = "job"


class CodingStatus(str, Enum):
    """Resolution status of an embedded coding."""

    OK = "ok"
    """Code exists and its display matches the canonical display."""

    RECODING = "recoding"
    """Code needs attention."""

    RECODED = "recoded"
    """Code needed attention and was fixed by the refine loop."""

    UNRESOLVED = "unresolved"
    """Code still needed attention when the refine loop ended."""


class CodingReason(str, Enum):
    """Why a coding needs attention."""

    NOT_FOUND = "not_found"
    DISPLAY_MISMATCH = "display_mismatch"
