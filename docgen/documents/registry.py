"""Registry of document types: inputs model, pipeline builder and default title."""

from dataclasses import dataclass
from typing import Any, Callable, Optional
import logging

from pydantic import BaseModel, Field, ValidationError, model_validator

from .phases import Phase

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Inputs
# -----------------------------------------------------------------------------

class NarrativeInputs(BaseModel):
    """Inputs for a narrative clinical note."""

    sketch: str = Field(min_length=1)
    """Short free-text description of the patient and encounter."""

    extra_context: Optional[str] = None
    """Extra background (e.g. earlier episodes of a trajectory)."""


class FhirInputs(BaseModel):
    """Inputs for a FHIR document bundle."""

    note_text: Optional[str] = None
    source_job_id: Optional[str] = None
    source_artifact_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_source(self) -> "FhirInputs":
        if not (self.note_text or self.source_job_id or self.source_artifact_id):
            raise ValueError("one of note_text, source_job_id or source_artifact_id is required")
        return self


class TrajectoryInputs(BaseModel):
    """Inputs for a multi-episode patient trajectory."""

    trajectory_sketch: str = Field(min_length=1)


def _first_line(text: str, limit: int = 60) -> str:
    line = next((l.strip() for l in text.splitlines() if l.strip()), "")
    return line if len(line) <= limit else line[: limit - 3].rstrip() + "..."


def narrative_title(inputs: NarrativeInputs) -> str:
    return f"Narrative: {_first_line(inputs.sketch)}"


def fhir_title(inputs: FhirInputs) -> str:
    if inputs.source_job_id:
        return f"FHIR from {inputs.source_job_id[:16]}"
    if inputs.source_artifact_id:
        return f"FHIR from {inputs.source_artifact_id[:20]}"
    return f"FHIR: {_first_line(inputs.note_text or '')}"


def trajectory_title(inputs: TrajectoryInputs) -> str:
    return f"Trajectory: {_first_line(inputs.trajectory_sketch, 48)}"


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

@dataclass
class DocumentTypeDefinition:
    """How to validate inputs for, title and run one document type."""

    type: str
    inputs_model: type[BaseModel]
    build_pipeline: Callable[[], list[Phase]]
    title: Callable[[Any], str]

    def parse_inputs(self, inputs: dict[str, Any]) -> BaseModel:
        return self.inputs_model.model_validate(inputs)

    def default_title(self, inputs: dict[str, Any]) -> str:
        return self.title(self.parse_inputs(inputs))


class DocumentTypeRegistry:
    """Closed set of document types known to the scheduler."""

    def __init__(self):
        self._definitions: dict[str, DocumentTypeDefinition] = {}

    def register(self, definition: DocumentTypeDefinition) -> None:
        if definition.type in self._definitions:
            raise ValueError(f"Document type already registered: {definition.type}")
        self._definitions[definition.type] = definition
        logger.debug(f"Registered document type: {definition.type}")

    def get(self, type: str) -> DocumentTypeDefinition:
        """
        Look up a document type.

        Raises:
            ValueError: If the type is unknown
        """
        definition = self._definitions.get(type)
        if definition is None:
            raise ValueError(f"Unknown document type: {type}")
        return definition

    def validate_inputs(self, type: str, inputs: dict[str, Any]) -> dict[str, Any]:
        """
        Validate and normalize inputs for a document type.

        Raises:
            ValueError: If the type is unknown or the inputs are invalid
        """
        definition = self.get(type)
        try:
            parsed = definition.parse_inputs(inputs or {})
        except ValidationError as e:
            messages = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'inputs'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValueError(f"Invalid inputs for {type}: {messages}") from e
        return parsed.model_dump(exclude_none=True)

    def types(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, type: str) -> bool:
        return type in self._definitions
