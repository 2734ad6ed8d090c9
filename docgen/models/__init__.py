"""Core data models."""

from .enums import JobStatus, StepStatus, DocumentType, EntityType, CodingStatus, CodingReason
from .job import Job, utcnow
from .step import Step
from .artifact import Artifact, EntityRef, Link
from .coding import (
    Coding,
    CodingEntry,
    CodingReportItem,
    CodeExistence,
    SearchHit,
    QueryHits,
    SearchResult,
    SearchNotebookEntry,
    ValidationIssue,
    ValidationResult,
)

__all__ = [
    "JobStatus",
    "StepStatus",
    "DocumentType",
    "EntityType",
    "CodingStatus",
    "CodingReason",
    "Job",
    "utcnow",
    "Step",
    "Artifact",
    "EntityRef",
    "Link",
    "Coding",
    "CodingEntry",
    "CodingReportItem",
    "CodeExistence",
    "SearchHit",
    "QueryHits",
    "SearchResult",
    "SearchNotebookEntry",
    "ValidationIssue",
    "ValidationResult",
]
