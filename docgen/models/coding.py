"""Models used while checking and repairing codings in generated resources."""

from typing import Optional, Any
from pydantic import BaseModel, Field

from .enums import CodingStatus, CodingReason


class Coding(BaseModel):
    """A {system, code, display} triple."""

    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodingEntry(Coding):
    """A coding found in a resource, with the pointer it was found at."""

    pointer: str


class CodingReportItem(BaseModel):
    """Resolution status of one embedded coding."""

    pointer: str
    original: Coding
    status: CodingStatus
    reason: Optional[CodingReason] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    resource_ref: Optional[str] = None

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @property
    def is_ok(self) -> bool:
        return self.status in (CodingStatus.OK, CodingStatus.RECODED)


class CodeExistence(BaseModel):
    """Terminology answer for one (system, code) pair."""

    system: Optional[str] = None
    code: Optional[str] = None
    exists: bool = False
    display: Optional[str] = None
    normalized_system: Optional[str] = Field(default=None, alias="normalizedSystem")

    model_config = {"populate_by_name": True}


class SearchHit(BaseModel):
    system: str = ""
    code: str = ""
    display: str = ""


class QueryHits(BaseModel):
    """Hits returned for one query term."""

    query: str
    hits: list[SearchHit] = Field(default_factory=list)
    count: Optional[int] = None


class SearchResult(BaseModel):
    """Terminology search response for a batch of query terms."""

    results: list[QueryHits] = Field(default_factory=list)
    guidance: Optional[str] = None
    full_system: bool = False

    @property
    def count(self) -> int:
        return sum(len(r.hits) for r in self.results)


class SearchNotebookEntry(BaseModel):
    """One terminology search recorded for a pointer."""

    queries: list[str]
    systems: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
    results_by_query: list[QueryHits] = Field(default_factory=list)

    def hits(self) -> list[SearchHit]:
        return [h for q in self.results_by_query for h in q.hits]


class ValidationIssue(BaseModel):
    severity: str = "error"
    code: str = "invalid"
    details: str = ""
    location: str = ""


class ValidationResult(BaseModel):
    """Schema validator verdict for one resource."""

    valid: bool = False
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def error_count(self) -> int:
        return len(self.errors)
