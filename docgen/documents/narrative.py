"""
Narrative clinical note pipeline.

Phases:
    planning     outline the note and record one brief per section
    sections     draft/critique revision loop per section
    assembly     stitch the sections into a note draft
    note_review  critique/redraft loop over the whole note
    finalized    polish the reviewed note into a release candidate
"""

from typing import Any, Optional
import logging

from ..engine.context import ExecutionContext
from ..models import Artifact, EntityRef
from . import prompts
from .phases import (
    ArtifactSpec,
    Phase,
    define_phase,
    parse_score,
    retag_artifact,
    revision_loop,
    run_llm_task,
)
from .registry import NarrativeInputs

logger = logging.getLogger(__name__)

OUTLINE_STEP = "phase:planning:plan_outline"


def _inputs(ctx: ExecutionContext) -> NarrativeInputs:
    return NarrativeInputs.model_validate(ctx.inputs)


# -----------------------------------------------------------------------------
# Artifact lookups
# -----------------------------------------------------------------------------

def _valid_outline(outline: Any) -> bool:
    return isinstance(outline, dict) and isinstance(outline.get("sections"), list) and bool(
        outline["sections"]
    )


async def read_outline(ctx: ExecutionContext) -> Optional[dict[str, Any]]:
    """Latest NarrativeOutline content, else the stored plan_outline result."""
    artifact = await ctx.latest_artifact("NarrativeOutline")
    if artifact is not None:
        outline = artifact.json_content()
        if _valid_outline(outline):
            return outline
    outline = await ctx.get_step_result(OUTLINE_STEP)
    return outline if _valid_outline(outline) else None


async def require_outline(ctx: ExecutionContext) -> dict[str, Any]:
    outline = await read_outline(ctx)
    if outline is None:
        raise ValueError("Outline missing or invalid (no sections)")
    return outline


def _section_title(section: Any, index: int) -> str:
    if isinstance(section, dict) and str(section.get("title") or "").strip():
        return str(section["title"]).strip()
    return f"Section {index + 1}"


async def read_brief(ctx: ExecutionContext, section: str) -> Optional[Artifact]:
    return await ctx.latest_artifact("SectionBrief", section=section)


async def read_draft(ctx: ExecutionContext, section: str, version: int) -> Optional[Artifact]:
    drafts = await ctx.list_artifacts("SectionDraft", section=section)
    return next((a for a in drafts if a.version == version), None)


async def chosen_draft(ctx: ExecutionContext, section: str) -> Optional[Artifact]:
    """The approved draft of a section, else its latest draft."""
    approved = await ctx.latest_artifact("SectionDraft", section=section, action="approve")
    return approved or await ctx.latest_artifact("SectionDraft", section=section)


async def prior_sections_summary(
    ctx: ExecutionContext, outline: dict[str, Any], index: int
) -> str:
    parts = []
    for i, section in enumerate(outline["sections"][:index]):
        title = _section_title(section, i)
        draft = await ctx.latest_artifact("SectionDraft", section=title, action="approve")
        if draft is not None:
            parts.append(f'<section name="{title}">{draft.content[:200]}...</section>')
    return "\n".join(parts)


async def read_note(ctx: ExecutionContext, version: Optional[int] = None) -> Optional[Artifact]:
    if version is None:
        return await ctx.latest_artifact("NoteDraft")
    notes = await ctx.list_artifacts("NoteDraft")
    return next((a for a in notes if a.version == version), None)


# -----------------------------------------------------------------------------
# planning
# -----------------------------------------------------------------------------

async def plan_outline(ctx: ExecutionContext) -> dict[str, Any]:
    inputs = _inputs(ctx)
    outline, _, _ = await run_llm_task(
        ctx,
        "plan_outline",
        prompts.plan_outline(inputs.sketch, inputs.extra_context),
        expect="json",
        tags={"phase": "planning"},
        artifact=ArtifactSpec(kind="NarrativeOutline", title="Outline v1", tags={"phase": "planning"}),
    )
    if not _valid_outline(outline):
        raise ValueError("Outline missing or invalid (no sections)")
    return outline


async def realize_outline(ctx: ExecutionContext) -> None:
    outline = await require_outline(ctx)
    outline_artifact = await ctx.latest_artifact("NarrativeOutline")
    links = [("uses", EntityRef.artifact(outline_artifact.id))] if outline_artifact else []
    for i, section in enumerate(outline["sections"]):
        title = _section_title(section, i)
        brief = section.get("brief", "") if isinstance(section, dict) else str(section)
        await ctx.create_artifact(
            "SectionBrief",
            f"Brief: {title}",
            str(brief or ""),
            tags={"section": title, "phase": "planning"},
            links=links,
        )


PLANNING = define_phase(
    "planning",
    ("plan_outline", plan_outline),
    ("realize_outline", realize_outline),
)


async def ensure_planning(ctx: ExecutionContext) -> dict[str, Any]:
    """Outline for later phases, re-running planning when it never finished."""
    if not await ctx.is_phase_complete("planning") or await read_outline(ctx) is None:
        logger.info(f"Job {ctx.job_id}: planning incomplete, running it first")
        await PLANNING.run(ctx)
    return await require_outline(ctx)


# -----------------------------------------------------------------------------
# sections
# -----------------------------------------------------------------------------

async def write_section(
    ctx: ExecutionContext, outline: dict[str, Any], index: int
) -> None:
    """Run the draft/critique loop for one outline section."""
    inputs = _inputs(ctx)
    settings = ctx.settings.narrative
    section = _section_title(outline["sections"][index], index)
    guidance = str(outline.get("guidance") or "")

    async def draft(version: int, feedback: Optional[str]) -> None:
        brief = await read_brief(ctx, section)
        previous = await read_draft(ctx, section, version - 1) if feedback else None
        prior = await prior_sections_summary(ctx, outline, index)
        links = [("uses", EntityRef.artifact(brief.id))] if brief else []
        await run_llm_task(
            ctx,
            "draft_section",
            prompts.draft_section(
                section,
                brief.content if brief else "",
                inputs.sketch,
                guidance,
                prior,
                feedback=feedback,
                previous_draft=previous.content if previous else None,
            ),
            tags={"phase": "sections", "section": section, "version": version},
            artifact=ArtifactSpec(
                kind="SectionDraft",
                title=f"Draft {section} v{version}",
                version=version,
                tags={"section": section, "verb": "draft"},
                links=links,
            ),
        )

    async def critique(version: int) -> tuple[float, str]:
        draft_artifact = await read_draft(ctx, section, version)
        brief = await read_brief(ctx, section)
        prior = await prior_sections_summary(ctx, outline, index)
        result, _, stored = await run_llm_task(
            ctx,
            "critique_section",
            prompts.critique_section(
                section,
                draft_artifact.content if draft_artifact else "",
                brief.content if brief else "",
                inputs.sketch,
                guidance,
                prior,
            ),
            expect="json",
            tags={"phase": "sections", "section": section, "version": version},
            artifact=ArtifactSpec(
                kind="SectionCritique",
                title=f"Critique {section} for v{version}",
                tags={
                    "section": section,
                    "draft_version": version,
                    "threshold": settings.section_target,
                    "verb": "critique",
                },
                links=[("critiques", EntityRef.artifact(draft_artifact.id))] if draft_artifact else [],
            ),
        )
        result = result if isinstance(result, dict) else {}
        score = parse_score(result.get("score"))
        if stored is not None:
            await retag_artifact(ctx, stored, score=score)
        return score, str(result.get("critique") or "")

    async def decide(version: int, score: float, approved: bool) -> None:
        action = "approve" if approved else "rewrite"
        critiques = await ctx.list_artifacts("SectionCritique", section=section, draft_version=version)
        links = [("decides", EntityRef.artifact(critiques[-1].id))] if critiques else []
        await ctx.create_artifact(
            "Decision",
            f"Decision {section} v{version}",
            f"{action} {section} v{version}",
            tags={"section": section, "draft_version": version, "action": action, "score": score},
            links=links,
        )
        draft_artifact = await read_draft(ctx, section, version)
        if approved and draft_artifact is not None:
            await retag_artifact(ctx, draft_artifact, action="approve")

    await revision_loop(
        label=f"Job {ctx.job_id} section '{section}'",
        target=settings.section_target,
        max_revisions=settings.section_max_revisions,
        draft=draft,
        critique=critique,
        decide=decide,
    )


async def draft_sections(ctx: ExecutionContext) -> None:
    outline = await ensure_planning(ctx)
    for index in range(len(outline["sections"])):
        await write_section(ctx, outline, index)


SECTIONS = define_phase("sections", ("draft_sections", draft_sections))


# -----------------------------------------------------------------------------
# assembly
# -----------------------------------------------------------------------------

async def assemble_note(ctx: ExecutionContext) -> None:
    inputs = _inputs(ctx)
    outline = await ensure_planning(ctx)
    parts: list[tuple[str, str]] = []
    links = []
    for i, section in enumerate(outline["sections"]):
        title = _section_title(section, i)
        draft = await chosen_draft(ctx, title)
        if draft is None:
            logger.warning(f"Job {ctx.job_id}: no draft for section '{title}', skipping")
            continue
        parts.append((title, draft.content))
        links.append(("uses", EntityRef.artifact(draft.id)))
    if not parts:
        raise ValueError("No section drafts to assemble")

    await run_llm_task(
        ctx,
        "assemble_note",
        prompts.assemble_note(inputs.sketch, str(outline.get("guidance") or ""), parts),
        tags={"phase": "assembly"},
        artifact=ArtifactSpec(
            kind="NoteDraft",
            title="Note Draft v1",
            tags={"phase": "assembly", "verb": "draft"},
            links=links,
        ),
    )


ASSEMBLY = define_phase("assembly", ("assemble_note", assemble_note))


# -----------------------------------------------------------------------------
# note_review
# -----------------------------------------------------------------------------

async def review_note(ctx: ExecutionContext) -> None:
    inputs = _inputs(ctx)
    settings = ctx.settings.narrative
    outline = await ensure_planning(ctx)
    guidance = str(outline.get("guidance") or "")
    if await read_note(ctx, 1) is None:
        await assemble_note(ctx)

    async def draft(version: int, feedback: Optional[str]) -> None:
        if feedback is None:
            # The first version is the assembled note
            return
        previous = await read_note(ctx, version - 1)
        await run_llm_task(
            ctx,
            "revise_note",
            prompts.revise_note(previous.content if previous else "", feedback, inputs.sketch, guidance),
            tags={"phase": "note_review", "version": version},
            artifact=ArtifactSpec(
                kind="NoteDraft",
                title=f"Note Draft v{version}",
                version=version,
                tags={"phase": "note_review", "verb": "draft"},
                links=[("revises", EntityRef.artifact(previous.id))] if previous else [],
            ),
        )

    async def critique(version: int) -> tuple[float, str]:
        note = await read_note(ctx, version)
        result, _, stored = await run_llm_task(
            ctx,
            "critique_note",
            prompts.critique_note(note.content if note else "", inputs.sketch, guidance),
            expect="json",
            tags={"phase": "note_review", "version": version},
            artifact=ArtifactSpec(
                kind="NoteCritique",
                title=f"Note Critique for v{version}",
                tags={
                    "draft_version": version,
                    "threshold": settings.note_target,
                    "verb": "critique",
                },
                links=[("critiques", EntityRef.artifact(note.id))] if note else [],
            ),
        )
        result = result if isinstance(result, dict) else {}
        score = parse_score(result.get("score"))
        if stored is not None:
            await retag_artifact(ctx, stored, score=score)
        return score, str(result.get("critique") or "")

    async def decide(version: int, score: float, approved: bool) -> None:
        action = "approve" if approved else "rewrite"
        await ctx.create_artifact(
            "NoteDecision",
            f"Note Decision v{version}",
            f"{action} note v{version}",
            tags={"draft_version": version, "action": action, "score": score},
        )
        note = await read_note(ctx, version)
        if approved and note is not None:
            await retag_artifact(ctx, note, action="approve")

    await revision_loop(
        label=f"Job {ctx.job_id} note",
        target=settings.note_target,
        max_revisions=settings.note_max_revisions,
        draft=draft,
        critique=critique,
        decide=decide,
    )


NOTE_REVIEW = define_phase("note_review", ("review_note", review_note))


# -----------------------------------------------------------------------------
# finalized
# -----------------------------------------------------------------------------

async def finalize_note(ctx: ExecutionContext) -> None:
    inputs = _inputs(ctx)
    outline = await read_outline(ctx) or {}
    note = await ctx.latest_artifact("NoteDraft", action="approve") or await read_note(ctx)
    if note is None:
        raise ValueError("No note draft to finalize")

    await run_llm_task(
        ctx,
        "finalize_note",
        prompts.finalize_note(note.content, inputs.sketch, str(outline.get("guidance") or "")),
        tags={"phase": "finalized"},
        artifact=ArtifactSpec(
            kind="ReleaseCandidate",
            title="Release Candidate v1",
            tags={"phase": "finalized", "source_version": note.version},
            links=[("uses", EntityRef.artifact(note.id))],
        ),
    )


FINALIZED = define_phase("finalized", ("finalize_note", finalize_note))


def build_pipeline() -> list[Phase]:
    return [PLANNING, SECTIONS, ASSEMBLY, NOTE_REVIEW, FINALIZED]
