"""Bundle of the per-entity stores sharing one database."""

from dataclasses import dataclass

from .database import Database
from .job_store import JobStore
from .step_store import StepStore
from .artifact_store import ArtifactStore, LinkStore


@dataclass
class Stores:
    """All stores the engine needs, over a single connection."""

    db: Database
    jobs: JobStore
    steps: StepStore
    artifacts: ArtifactStore
    links: LinkStore

    @classmethod
    def from_database(cls, db: Database) -> "Stores":
        return cls(
            db=db,
            jobs=JobStore(db),
            steps=StepStore(db),
            artifacts=ArtifactStore(db),
            links=LinkStore(db),
        )
