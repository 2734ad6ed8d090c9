"""Document types and their phase pipelines."""

from ..models import DocumentType
from . import fhir, narrative, trajectory
from .phases import ArtifactSpec, Phase, define_phase, revision_loop, run_llm_task
from .registry import (
    DocumentTypeDefinition,
    DocumentTypeRegistry,
    FhirInputs,
    NarrativeInputs,
    TrajectoryInputs,
    fhir_title,
    narrative_title,
    trajectory_title,
)


def build_registry() -> DocumentTypeRegistry:
    """Registry with the built-in narrative, fhir and trajectory types."""
    registry = DocumentTypeRegistry()
    registry.register(DocumentTypeDefinition(
        type=DocumentType.NARRATIVE.value,
        inputs_model=NarrativeInputs,
        build_pipeline=narrative.build_pipeline,
        title=narrative_title,
    ))
    registry.register(DocumentTypeDefinition(
        type=DocumentType.FHIR.value,
        inputs_model=FhirInputs,
        build_pipeline=fhir.build_pipeline,
        title=fhir_title,
    ))
    registry.register(DocumentTypeDefinition(
        type=DocumentType.TRAJECTORY.value,
        inputs_model=TrajectoryInputs,
        build_pipeline=trajectory.build_pipeline,
        title=trajectory_title,
    ))
    return registry


__all__ = [
    "ArtifactSpec",
    "Phase",
    "define_phase",
    "revision_loop",
    "run_llm_task",
    "DocumentTypeDefinition",
    "DocumentTypeRegistry",
    "FhirInputs",
    "NarrativeInputs",
    "TrajectoryInputs",
    "build_registry",
]
