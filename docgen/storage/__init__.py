"""Storage layer for persistence."""

from .database import Database
from .job_store import JobStore
from .step_store import StepStore
from .artifact_store import ArtifactStore, LinkStore
from .stores import Stores

__all__ = ["Database", "JobStore", "StepStore", "ArtifactStore", "LinkStore", "Stores"]
