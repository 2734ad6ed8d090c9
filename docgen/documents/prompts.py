"""Prompt builders for the narrative, FHIR and trajectory pipelines."""

import json
from typing import Any, Optional

HEADING_RULES = """Formatting rules:
- Section titles are Markdown H2 headings: "## Title".
- Do not use bold or other styling for section titles."""


# -----------------------------------------------------------------------------
# Narrative
# -----------------------------------------------------------------------------

def _context_block(extra_context: Optional[str]) -> str:
    if not extra_context:
        return ""
    return f"\n<context>{extra_context}</context>\n(Stay consistent with this context.)\n"


def plan_outline(sketch: str, extra_context: Optional[str] = None) -> str:
    return f"""You are a clinical note planner. Turn the patient sketch below into an outline for a complete, realistic clinical note.

<sketch>{sketch}</sketch>
{_context_block(extra_context)}
Infer plausible demographics, history, findings and risks that fit the sketch; add nothing unrelated.
Use 4-8 sections in a conventional order (e.g. Chief Complaint, History of Present Illness, Past Medical History, Physical Examination, Assessment, Plan).
For each section write a one-paragraph brief describing what the section should say.

Return JSON only:
{{"sections": [{{"title": "...", "brief": "..."}}], "guidance": "1-2 paragraphs on tone and key themes"}}"""


def draft_section(
    section: str,
    brief: str,
    sketch: str,
    guidance: str,
    prior_summary: str,
    feedback: Optional[str] = None,
    previous_draft: Optional[str] = None,
) -> str:
    revision = ""
    if feedback:
        revision = f"""
This is a revision. Address the editor's feedback.
<previousDraft>{previous_draft or ''}</previousDraft>
<feedback>{feedback}</feedback>
"""
    return f"""You are a clinical writer. Draft the "{section}" section of a clinical note.

<sketch>{sketch}</sketch>
<guidance>{guidance or 'None; infer a standard evaluation from the sketch.'}</guidance>
<priorSections>{prior_summary or 'None; this is the first section.'}</priorSections>
<brief>{brief}</brief>
{revision}
Write 200-400 words of professional prose that expands the brief with plausible detail.
Refer to earlier sections where useful but do not repeat them.

Return only the section text, without a heading."""


def critique_section(
    section: str,
    draft: str,
    brief: str,
    sketch: str,
    guidance: str,
    prior_summary: str,
) -> str:
    return f"""You are a clinical editor. Review the "{section}" draft below.

<sketch>{sketch}</sketch>
<guidance>{guidance or 'Standard clinical note.'}</guidance>
<priorSections>{prior_summary or 'None.'}</priorSections>
<brief>{brief}</brief>
<draft>{draft}</draft>

Score it from 0.0 to 1.0 for realism, consistency with the sketch and earlier sections, and how well it develops the brief.
Give concrete suggestions for improvement.

Return JSON only: {{"critique": "...", "score": 0.0}}"""


def assemble_note(sketch: str, guidance: str, sections: list[tuple[str, str]]) -> str:
    body = "\n\n".join(f"## {title}\n{text}" for title, text in sections)
    return f"""You are assembling a clinical note from approved sections.

<sketch>{sketch}</sketch>
<guidance>{guidance or 'N/A'}</guidance>
<sections>
{body}
</sections>

Combine the sections into one coherent note in the given order. Smooth transitions and remove duplication without dropping clinical content.

{HEADING_RULES}

Return only the full note text."""


def critique_note(note: str, sketch: str, guidance: str) -> str:
    return f"""You are a senior clinical reviewer. Review the complete note below.

<sketch>{sketch}</sketch>
<guidance>{guidance or 'N/A'}</guidance>
<note>{note}</note>

Score it from 0.0 to 1.0 for coherence, realism and internal consistency, and explain what to improve.

Return JSON only: {{"critique": "...", "score": 0.0}}"""


def revise_note(note: str, feedback: str, sketch: str, guidance: str) -> str:
    return f"""You are revising a clinical note after review.

<sketch>{sketch}</sketch>
<guidance>{guidance or 'N/A'}</guidance>
<note>{note}</note>
<feedback>{feedback}</feedback>

Apply the feedback while keeping all section headings and clinical facts that are not contradicted.

{HEADING_RULES}

Return only the revised note text."""


def finalize_note(note: str, sketch: str, guidance: str) -> str:
    return f"""You are preparing a clinical note for release.

<sketch>{sketch}</sketch>
<guidance>{guidance or 'N/A'}</guidance>
<draft>{note}</draft>

Make minimal edits for consistency and completeness.

{HEADING_RULES}

Return only the final note text."""


# -----------------------------------------------------------------------------
# FHIR
# -----------------------------------------------------------------------------

def fhir_composition_plan(note_text: str, section_titles: list[str]) -> str:
    titles = "\n".join(f"- {t}" for t in section_titles)
    required = f"\nRequired section titles, exactly and in this order:\n{titles}\n" if titles else ""
    return f"""You are a FHIR document architect. Plan a FHIR R4 Composition for the clinical note below.

<note>
{note_text}
</note>
{required}
Rules:
1. Set subject (Patient), encounter (Encounter) and author[0] (Practitioner) as References, each with a "display" summarizing who or what it is.
2. One section per top-level note section. Do not create sections for "###" subsections.
3. For each section set "text": {{"div": "<div>{{{{<section title>}}}}</div>"}}.
4. For each clinical entity in a section add an entry Reference "<ResourceType>/<id>" whose "display" is an instruction for generating that resource:
   conditions as Condition, prescriptions as MedicationRequest, current medications as MedicationStatement,
   orders as ServiceRequest, performed procedures as Procedure, results as DiagnosticReport plus one Observation per analyte.
5. Keep Observations single-facet; keep general exam findings as narrative.

Return only the Composition as one JSON object."""


def fhir_generate_resource(
    note_text: str,
    reference: str,
    description: str,
    subject_ref: Optional[str] = None,
    encounter_ref: Optional[str] = None,
    author_ref: Optional[str] = None,
) -> str:
    refs = []
    if subject_ref:
        refs.append(f"- Subject reference: {subject_ref}")
    if encounter_ref:
        refs.append(f"- Encounter reference: {encounter_ref}")
    if author_ref:
        refs.append(f"- Author reference: {author_ref}")
    ref_block = "\n".join(refs)
    return f"""You are a FHIR resource author. Generate one FHIR R4 resource.

<note>
{note_text}
</note>

Target: {reference}
Instruction: {description}
{ref_block}

Requirements:
- resourceType and id must match the target reference.
- Use the subject and encounter references above wherever the resource supports them.
- Every CodeableConcept carries exactly one Coding with system, code and display from a standard system
  (SNOMED CT for findings and problems, LOINC for observations and tests, RxNorm for medications).
- Quantities use UCUM (system "http://unitsofmeasure.org").

Return only the resource as one JSON object."""


# -----------------------------------------------------------------------------
# Trajectory
# -----------------------------------------------------------------------------

def trajectory_outline(trajectory_sketch: str) -> str:
    return f"""You are a clinician laying out a patient's care over time. Split the sketch below into distinct clinical encounters.

<trajectorySketch>{trajectory_sketch}</trajectorySketch>

Produce 3-8 episodes in chronological order. For each give an episodeNumber, a dateOffset label (e.g. "Baseline", "+3 months"),
a 1-2 sentence sketch of the visit and 3-5 keyThemes that must stay consistent across episodes.
Copy the user's sketch verbatim into fullSketch.

Return JSON only:
{{"fullSketch": "...", "episodes": [{{"episodeNumber": 1, "dateOffset": "...", "sketch": "...", "keyThemes": ["..."]}}], "overallGuidance": "..."}}"""


def episode_context(outline: dict[str, Any], episode: dict[str, Any]) -> str:
    """Background handed to the narrative job of one episode."""
    previous = [
        f"- Episode {e['episodeNumber']} ({e.get('dateOffset', '')}): {e.get('sketch', '')}"
        for e in outline.get("episodes", [])
        if e["episodeNumber"] < episode["episodeNumber"]
    ]
    themes = ", ".join(episode.get("keyThemes") or [])
    lines = [
        f"Longitudinal case: {outline.get('fullSketch', '')}",
        f"This is episode {episode['episodeNumber']} of {len(outline.get('episodes', []))} "
        f"({episode.get('dateOffset', '')}).",
    ]
    if outline.get("overallGuidance"):
        lines.append(f"Overall guidance: {outline['overallGuidance']}")
    if themes:
        lines.append(f"Key themes: {themes}")
    if previous:
        lines.append("Earlier episodes:\n" + "\n".join(previous))
    return "\n".join(lines)


def dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)
