"""
FHIR document bundle pipeline.

Phases:
    composition  plan a Composition from the source note and stitch section narratives
    resources    generate every referenced resource and run the validate-refine loop on it
    bundle       assemble and validate the document Bundle
"""

import copy
import re
from typing import Any, Optional
import logging

from ..engine.context import ExecutionContext
from ..engine.hashing import content_hash, short_hash
from ..engine.pool import fan_out
from ..models import Artifact, CodingReportItem, EntityRef, ValidationResult
from ..refine import RefineLoop, analyze_codings
from . import prompts
from .phases import ArtifactSpec, Phase, define_phase, run_llm_task
from .registry import FhirInputs
from .sections import missing_section_div, render_section_narrative, section_titles

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*(?:##\s*)?(.*?)\s*\}\}")
SUBSECTION_RE = re.compile(r"^#+\s+")
MAX_ID_LENGTH = 64


# -----------------------------------------------------------------------------
# Source note
# -----------------------------------------------------------------------------

async def load_source_note(ctx: ExecutionContext) -> str:
    """
    Note text to encode: the inline note, a given artifact, or the latest
    ReleaseCandidate of the source job.

    Raises:
        ValueError: If no source note can be found
    """
    inputs = FhirInputs.model_validate(ctx.inputs)
    if inputs.note_text and inputs.note_text.strip():
        return inputs.note_text

    if inputs.source_artifact_id:
        artifact = await ctx.stores.artifacts.get(inputs.source_artifact_id)
        if artifact is None:
            raise ValueError(f"Source artifact not found: {inputs.source_artifact_id}")
        return artifact.content

    if inputs.source_job_id:
        artifact = await ctx.stores.artifacts.latest(inputs.source_job_id, "ReleaseCandidate")
        if artifact is None or not artifact.content.strip():
            raise ValueError(f"No ReleaseCandidate found for source job {inputs.source_job_id}")
        return artifact.content

    raise ValueError("No source note: provide note_text or a source job")


# -----------------------------------------------------------------------------
# Composition plan
# -----------------------------------------------------------------------------

def stitch_section_narratives(plan: dict[str, Any], note_text: str) -> dict[str, Any]:
    """
    Merge subsection entries into their parent section and replace each
    ``{{Title}}`` placeholder with the rendered narrative of that section.
    """
    plan = copy.deepcopy(plan)
    sections = plan.get("section")
    if isinstance(sections, list):
        kept: list[dict[str, Any]] = []
        for section in sections:
            if not isinstance(section, dict):
                continue
            title = str(section.get("title") or "").strip()
            if SUBSECTION_RE.match(title):
                entries = section.get("entry")
                if kept and isinstance(entries, list) and entries:
                    parent = kept[-1]
                    parent["entry"] = (parent.get("entry") if isinstance(parent.get("entry"), list) else []) + entries
                logger.warning(f"Dropping subsection '{title}' and merging its entries into the parent")
                continue
            kept.append(section)
        plan["section"] = kept

        for section in kept:
            text = section.get("text")
            if not isinstance(text, dict) or not text.get("div"):
                continue
            match = PLACEHOLDER_RE.search(str(text["div"]))
            if not match or not match.group(1).strip():
                continue
            title = match.group(1).strip()
            rendered = render_section_narrative(note_text, title)
            text["div"] = rendered if rendered is not None else missing_section_div(title)
            text["status"] = "additional"

    composition_id = plan.get("id").strip() if isinstance(plan.get("id"), str) else ""
    if composition_id and not isinstance(plan.get("identifier"), dict):
        plan["identifier"] = {"value": composition_id}
    return plan


async def plan_composition(ctx: ExecutionContext) -> dict[str, Any]:
    note_text = await load_source_note(ctx)
    plan, meta, _ = await run_llm_task(
        ctx,
        "fhir_composition_plan",
        prompts.fhir_composition_plan(note_text, section_titles(note_text)),
        expect="json",
        tags={"phase": "fhir"},
    )
    if not isinstance(plan, dict):
        raise ValueError("Composition plan is not a JSON object")

    plan = stitch_section_narratives(plan, note_text)
    await ctx.create_artifact(
        "FhirCompositionPlan",
        "FHIR Composition Plan",
        plan,
        tags={"phase": "fhir", "llm_step_key": meta.step_key},
        links=[("produced", EntityRef.step(meta.step_key))],
        auto_produced=False,
    )
    return plan


async def read_plan(ctx: ExecutionContext) -> dict[str, Any]:
    artifact = await ctx.latest_artifact("FhirCompositionPlan")
    plan = artifact.json_content() if artifact else None
    if not isinstance(plan, dict):
        raise ValueError("Composition plan missing")
    return plan


def _ref_of(value: Any) -> tuple[Optional[str], Optional[str]]:
    if isinstance(value, str):
        return value, None
    if isinstance(value, dict) and value.get("reference"):
        return str(value["reference"]), value.get("display")
    return None, None


def collect_references(plan: dict[str, Any]) -> list[dict[str, str]]:
    """
    Resources to generate: every section entry with a reference and a
    display, plus the subject, encounter and authors when not listed.
    """
    references: list[dict[str, str]] = []
    for section in plan.get("section") or []:
        for entry in (section.get("entry") or []) if isinstance(section, dict) else []:
            if isinstance(entry, dict) and entry.get("reference") and entry.get("display"):
                references.append({"reference": str(entry["reference"]), "display": str(entry["display"])})

    def ensure(reference: Optional[str], display: Optional[str]) -> None:
        if not reference or any(r["reference"] == reference for r in references):
            return
        entry = {"reference": reference}
        if display and str(display).strip():
            entry["display"] = str(display)
        references.append(entry)

    ensure(*_ref_of(plan.get("subject")))
    ensure(*_ref_of(plan.get("encounter")))
    authors = plan.get("author")
    for author in authors if isinstance(authors, list) else [authors]:
        reference, display = _ref_of(author)
        ensure(reference, display or "Author")
    return references


# -----------------------------------------------------------------------------
# Resources
# -----------------------------------------------------------------------------

async def generate_resource(
    ctx: ExecutionContext,
    note_text: str,
    ref: dict[str, str],
    subject_ref: Optional[str],
    encounter_ref: Optional[str],
    author_ref: Optional[str],
) -> tuple[dict[str, Any], Artifact]:
    reference = ref["reference"]
    resource, _, artifact = await run_llm_task(
        ctx,
        "fhir_generate_resource",
        prompts.fhir_generate_resource(
            note_text,
            reference,
            ref.get("display") or reference,
            subject_ref=subject_ref,
            encounter_ref=encounter_ref,
            author_ref=author_ref,
        ),
        expect="json",
        tags={"phase": "fhir", "reference": reference},
        artifact=ArtifactSpec(
            kind="FhirResource",
            title=f"{reference} (generated)",
            tags={"phase": "fhir", "stage": "generated", "reference": reference, "from": ref.get("display")},
        ),
    )
    if not isinstance(resource, dict):
        raise ValueError(f"Generated {reference} is not a JSON object")

    resource_type, _, resource_id = reference.partition("/")
    resource.setdefault("resourceType", resource_type)
    if resource_id:
        resource.setdefault("id", resource_id)
    return resource, artifact


async def refine_resource(
    ctx: ExecutionContext,
    ref: dict[str, str],
    resource: dict[str, Any],
) -> dict[str, Any]:
    """Run the validate-refine loop and record its artifacts and provenance."""
    reference = ref["reference"]
    outcome = await RefineLoop(ctx, reference=reference).run(resource)

    if outcome.accepted_steps:
        produced = outcome.accepted_steps
    else:
        produced = outcome.contributed_steps[-1:]
    links: list[tuple[str, EntityRef]] = [("produced", EntityRef.step(k)) for k in produced]
    links += [("contributed", EntityRef.step(k)) for k in outcome.contributed_steps if k not in produced]
    if outcome.trace_artifact is not None:
        links.append(("uses", EntityRef.artifact(outcome.trace_artifact.id)))

    tags = {
        "phase": "fhir",
        "stage": "refined",
        "reference": reference,
        "clean": outcome.clean,
        "turns_used": outcome.turns_used,
        "budget": outcome.budget,
    }
    await ctx.create_artifact(
        "FhirResource",
        f"{reference} (refined)",
        outcome.resource,
        tags=tags,
        links=links,
        auto_produced=False,
    )
    await ctx.create_artifact(
        "ValidationReport",
        f"Validation Report for {reference}",
        outcome.validation.model_dump(),
        tags={
            "phase": "fhir",
            "reference": reference,
            "valid": outcome.validation.valid,
            "errors": outcome.validation.error_count,
        },
    )
    return {
        "reference": reference,
        "display": ref.get("display"),
        "resource": outcome.resource,
        "working": outcome.working,
        "clean": outcome.clean,
    }


async def coding_report(
    ctx: ExecutionContext, key_prefix: str, stage: str, resources: list[dict[str, Any]]
) -> list[CodingReportItem]:
    digest = content_hash(resources)

    async def analyze() -> list[dict]:
        report = await analyze_codings(resources, ctx.terminology)
        return [item.model_dump() for item in report]

    items = await ctx.step(
        f"{key_prefix}:{digest}",
        analyze,
        title=f"Analyze Codings ({stage})",
        tags={"phase": "fhir", "content_hash": digest},
    )
    report = [CodingReportItem.model_validate(item) for item in items]
    await ctx.create_artifact(
        "CodingReport",
        f"Coding Report ({stage})",
        {"items": items},
        tags={
            "phase": "fhir",
            "stage": stage,
            "unresolved": sum(1 for item in report if not item.is_ok),
        },
    )
    return report


async def build_resources(ctx: ExecutionContext) -> None:
    note_text = await load_source_note(ctx)
    plan = await read_plan(ctx)
    references = collect_references(plan)
    subject_ref, _ = _ref_of(plan.get("subject"))
    encounter_ref, _ = _ref_of(plan.get("encounter"))
    authors = plan.get("author")
    author_ref, _ = _ref_of(authors[0] if isinstance(authors, list) and authors else authors)
    logger.info(f"Job {ctx.job_id}: generating {len(references)} resource(s)")

    generated: list[dict[str, Any]] = [{}] * len(references)

    async def process(ref: dict[str, str], index: int) -> dict[str, Any]:
        resource, _ = await generate_resource(
            ctx, note_text, ref, subject_ref, encounter_ref, author_ref
        )
        generated[index] = copy.deepcopy(resource)
        return await refine_resource(ctx, ref, resource)

    results = await fan_out(references, process, limit=ctx.settings.refine.resource_concurrency)

    await coding_report(ctx, "analyze_codings", "pre", generated)
    await coding_report(ctx, "analyze_codings_post", "post", [r["working"] for r in results])

    for result in results:
        resource = result["resource"]
        await ctx.create_artifact(
            "FhirResource",
            result["reference"],
            resource,
            tags={
                "phase": "fhir",
                "stage": "final",
                "reference": result["reference"],
                "resource_type": resource.get("resourceType"),
                "coded": True,
                "clean": result["clean"],
                "from": result["display"],
            },
        )


# -----------------------------------------------------------------------------
# Bundle
# -----------------------------------------------------------------------------

def prune_empty(node: Any) -> bool:
    """Remove None values and empty containers in place; True if `node` is itself empty."""
    if node is None:
        return True
    if isinstance(node, list):
        node[:] = [item for item in node if not prune_empty(item)]
        return not node
    if isinstance(node, dict):
        for key in [k for k, v in node.items() if prune_empty(v)]:
            del node[key]
        return not node
    return False


def finalize_composition(plan: dict[str, Any], job_id: str, base_url: str) -> dict[str, Any]:
    composition = copy.deepcopy(plan)
    composition.setdefault("resourceType", "Composition")
    for field in ("subject", "encounter"):
        if isinstance(composition.get(field), str):
            composition[field] = {"reference": composition[field]}

    if not composition.get("id"):
        composition["id"] = f"composition-{short_hash(job_id)}"
    else:
        composition["id"] = str(composition["id"])[:MAX_ID_LENGTH]

    for section in composition.get("section") or []:
        for entry in (section.get("entry") or []) if isinstance(section, dict) else []:
            if isinstance(entry, dict):
                entry.pop("display", None)

    identifier = composition.get("identifier")
    if not isinstance(identifier, dict):
        identifier = composition["identifier"] = {"value": composition["id"]}
    identifier.setdefault("value", composition["id"])
    if re.search(r"fhir\.example\.org$", base_url, re.IGNORECASE):
        identifier.pop("system", None)
    else:
        identifier["system"] = f"{base_url}/Composition"
    return composition


def build_bundle(
    composition: dict[str, Any],
    resources: list[dict[str, Any]],
    job_id: str,
    base_url: str,
    timestamp: str,
) -> dict[str, Any]:
    bundle = {
        "resourceType": "Bundle",
        "type": "document",
        "id": f"bundle-{short_hash(job_id)}",
        "timestamp": timestamp,
        "identifier": {
            "value": (composition.get("identifier") or {}).get("value") or composition["id"],
            "system": f"{base_url}/Bundle",
        },
        "entry": [
            {
                "fullUrl": f"{base_url}/{composition['resourceType']}/{composition['id']}",
                "resource": composition,
            },
            *(
                {
                    "fullUrl": f"{base_url}/{r.get('resourceType')}/{r.get('id') or ''}",
                    "resource": r,
                }
                for r in resources
            ),
        ],
    }
    prune_empty(bundle)
    return bundle


async def assemble_bundle(ctx: ExecutionContext) -> None:
    base_url = ctx.settings.fhir_base_url.rstrip("/")
    plan = await read_plan(ctx)
    finals = await ctx.list_artifacts("FhirResource", stage="final")
    resources = [a.json_content() for a in finals]
    resources = [r for r in resources if isinstance(r, dict)]

    composition = finalize_composition(plan, ctx.job_id, base_url)
    bundle = build_bundle(
        composition, resources, ctx.job_id, base_url, ctx.job.created_at.isoformat()
    )
    bundle_artifact = await ctx.create_artifact(
        "FhirBundle",
        "FHIR Document Bundle",
        bundle,
        tags={"phase": "fhir", "entries": len(bundle.get("entry", []))},
        links=[("uses", EntityRef.artifact(a.id)) for a in finals],
    )

    digest = content_hash(bundle)

    async def validate() -> dict:
        result = await ctx.validator.validate(bundle)
        return result.model_dump()

    raw = await ctx.step(
        f"validate_bundle:{digest}",
        validate,
        title="Validate Bundle",
        tags={"phase": "fhir", "content_hash": digest},
    )
    validation = ValidationResult.model_validate(raw)
    await ctx.create_artifact(
        "ValidationReport",
        "FHIR Bundle Validation Report",
        validation.model_dump(),
        tags={"phase": "fhir", "valid": validation.valid, "errors": validation.error_count},
        links=[("validates", EntityRef.artifact(bundle_artifact.id))],
    )
    logger.info(
        f"Job {ctx.job_id}: bundle with {len(resources)} resource(s), "
        f"{'valid' if validation.valid else f'{validation.error_count} error(s)'}"
    )


COMPOSITION = define_phase("composition", ("plan_composition", plan_composition))
RESOURCES = define_phase("resources", ("build_resources", build_resources))
BUNDLE = define_phase("bundle", ("assemble_bundle", assemble_bundle))


def build_pipeline() -> list[Phase]:
    return [COMPOSITION, RESOURCES, BUNDLE]
