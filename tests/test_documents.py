"""Tests for the narrative, fhir and trajectory document pipelines."""

import itertools
import re

import pytest

from docgen.documents import (
    FhirInputs,
    NarrativeInputs,
    TrajectoryInputs,
    build_registry,
    revision_loop,
)
from docgen.documents.fhir import (
    build_bundle,
    collect_references,
    finalize_composition,
    prune_empty,
    stitch_section_narratives,
)
from docgen.documents.phases import parse_score
from docgen.documents.sections import (
    extract_sections,
    missing_section_div,
    render_markdown_xhtml,
    render_section_narrative,
    section_titles,
)
from docgen.documents.trajectory import normalize_outline, spawn_episodes
from docgen.engine import ExecutionContext, StaleRunError
from docgen.models import JobStatus
from docgen.refine.prompts import REFINE_TASK

from fakes import SNOMED


NOTE = (
    "## Chief Complaint\n"
    "Fever for two days.\n"
    "\n"
    "## Assessment\n"
    "- Fever, likely viral\n"
    "- **Monitor** temperature\n"
)

FEVER = {"system": SNOMED, "code": "386661006", "display": "Fever"}


def narrative_handlers(llm, section_scores=None):
    """Answer every narrative task; `section_scores` are used before defaulting to 0.9."""
    drafts = itertools.count(1)
    scores = list(section_scores or [])

    def draft(prompt):
        section = re.search(r'Draft the "(.+?)" section', prompt).group(1)
        return f"{section} draft {next(drafts)}"

    def critique(prompt):
        score = scores.pop(0) if scores else 0.9
        return {"critique": "Too vague" if score < 0.75 else "Good", "score": score}

    llm.on("plan_outline", lambda prompt: {
        "sections": [
            {"title": "Chief Complaint", "brief": "Why the patient came in"},
            {"title": "Assessment", "brief": "Working diagnosis"},
        ],
        "guidance": "Concise and clinical",
    })
    llm.on("draft_section", draft)
    llm.on("critique_section", critique)
    llm.on("assemble_note", lambda prompt: NOTE)
    llm.on("critique_note", lambda prompt: {"critique": "Reads well", "score": 0.9})
    llm.on("finalize_note", lambda prompt: NOTE + "\nSigned.")
    return llm


COMPOSITION_PLAN = {
    "resourceType": "Composition",
    "id": "comp-1",
    "status": "final",
    "title": "Clinical note",
    "subject": {"reference": "Patient/pat-1", "display": "45 year old man"},
    "section": [{
        "title": "Assessment",
        "text": {"status": "generated", "div": "<div>{{Assessment}}</div>"},
        "entry": [{"reference": "Condition/cond-1", "display": "Fever, likely viral"}],
    }],
}


def fhir_handlers(llm, condition_code=FEVER):
    resources = {
        "Condition/cond-1": {
            "resourceType": "Condition",
            "id": "cond-1",
            "code": {"coding": [condition_code]},
            "subject": {"reference": "Patient/pat-1"},
        },
        "Patient/pat-1": {"resourceType": "Patient", "id": "pat-1", "name": [{"family": "Doe"}]},
    }

    def generate(prompt):
        reference = re.search(r"^Target: (\S+)$", prompt, re.MULTILINE).group(1)
        return resources[reference]

    llm.on("fhir_composition_plan", lambda prompt: COMPOSITION_PLAN)
    llm.on("fhir_generate_resource", generate)
    return llm


async def artifact_content(scheduler, job_id, kind, title=None):
    artifacts = await scheduler.list_artifacts(job_id, kind)
    if title is not None:
        artifacts = [a for a in artifacts if a.title == title]
    assert artifacts, f"no {kind} artifact"
    return artifacts[-1]


# -------------------------------------------------------------------------
# Narrative
# -------------------------------------------------------------------------

class TestNarrativePipeline:
    """End-to-end narrative runs through the scheduler."""

    async def test_runs_to_release_candidate(self, scheduler, llm):
        narrative_handlers(llm)
        job = await scheduler.create_job("narrative", {"sketch": "45M with fever"})

        done = await scheduler.start_job(job.id)

        assert done.status == JobStatus.DONE
        candidate = await artifact_content(scheduler, job.id, "ReleaseCandidate")
        assert candidate.title == "Release Candidate v1"
        assert candidate.content.endswith("Signed.")

        briefs = await scheduler.list_artifacts(job.id, "SectionBrief")
        assert [b.title for b in briefs] == ["Brief: Chief Complaint", "Brief: Assessment"]

        drafts = await scheduler.list_artifacts(job.id, "SectionDraft")
        assert [d.title for d in drafts] == ["Draft Chief Complaint v1", "Draft Assessment v1"]
        assert all(d.tags["action"] == "approve" for d in drafts)

        decisions = await scheduler.list_artifacts(job.id, "Decision")
        assert [d.content for d in decisions] == [
            "approve Chief Complaint v1",
            "approve Assessment v1",
        ]
        assert await scheduler.list_artifacts(job.id, "NoteDraft")
        assert llm.count("revise_note") == 0

    async def test_low_score_triggers_redraft(self, scheduler, llm):
        narrative_handlers(llm, section_scores=[0.5, 0.9])
        job = await scheduler.create_job("narrative", {"sketch": "45M with fever"})

        await scheduler.start_job(job.id)

        drafts = await scheduler.list_artifacts(job.id, "SectionDraft")
        chief = [d for d in drafts if d.tags["section"] == "Chief Complaint"]
        assert [d.version for d in chief] == [1, 2]
        assert chief[1].tags.get("action") == "approve"
        assert "action" not in chief[0].tags

        redraft_prompt = [p for p in llm.prompts("draft_section") if "<feedback>" in p][0]
        assert "<feedback>Too vague</feedback>" in redraft_prompt
        assert "Chief Complaint draft 1" in redraft_prompt

        decisions = await scheduler.list_artifacts(job.id, "Decision")
        assert [d.tags["action"] for d in decisions] == ["rewrite", "approve", "approve"]

        # The assembled note uses the approved second draft
        assemble_prompt = llm.prompts("assemble_note")[0]
        assert "Chief Complaint draft 2" in assemble_prompt
        assert "Chief Complaint draft 1" not in assemble_prompt

    async def test_rerun_replays_without_model_calls(self, scheduler, llm):
        narrative_handlers(llm)
        job = await scheduler.create_job("narrative", {"sketch": "45M with fever"})
        await scheduler.start_job(job.id)
        calls = llm.count()
        first = await artifact_content(scheduler, job.id, "ReleaseCandidate")

        rerun = await scheduler.rerun_job(job.id)

        assert rerun.status == JobStatus.DONE
        assert rerun.run_count == 1
        assert llm.count() == calls
        second = await artifact_content(scheduler, job.id, "ReleaseCandidate")
        assert second.id == first.id
        assert second.content == first.content

    async def test_invalid_outline_fails_job(self, scheduler, llm):
        llm.on("plan_outline", lambda prompt: {"sections": []})
        job = await scheduler.create_job("narrative", {"sketch": "45M with fever"})

        failed = await scheduler.start_job(job.id)

        assert failed.status == JobStatus.FAILED
        assert "no sections" in failed.last_error


# -------------------------------------------------------------------------
# FHIR
# -------------------------------------------------------------------------

class TestFhirPipeline:
    """End-to-end FHIR runs through the scheduler."""

    async def test_builds_document_bundle(self, scheduler, llm):
        fhir_handlers(llm)
        job = await scheduler.create_job("fhir", {"note_text": NOTE})

        done = await scheduler.start_job(job.id)

        assert done.status == JobStatus.DONE
        bundle = (await artifact_content(scheduler, job.id, "FhirBundle")).json_content()
        assert bundle["type"] == "document"
        assert bundle["timestamp"] == done.created_at.isoformat()
        assert bundle["identifier"] == {"value": "comp-1", "system": "https://fhir.example.org/Bundle"}

        composition = bundle["entry"][0]["resource"]
        assert bundle["entry"][0]["fullUrl"] == "https://fhir.example.org/Composition/comp-1"
        assert composition["identifier"] == {"value": "comp-1"}
        section = composition["section"][0]
        assert section["entry"] == [{"reference": "Condition/cond-1"}]
        assert section["text"]["status"] == "additional"
        assert "<li>Fever, likely viral</li>" in section["text"]["div"]
        assert "<b>Monitor</b>" in section["text"]["div"]

        types = sorted(e["resource"]["resourceType"] for e in bundle["entry"][1:])
        assert types == ["Condition", "Patient"]

        finals = await scheduler.list_artifacts(job.id, "FhirResource")
        assert sorted(a.tags["stage"] for a in finals) == [
            "final", "final", "generated", "generated", "refined", "refined",
        ]
        assert await artifact_content(scheduler, job.id, "CodingReport", "Coding Report (pre)")
        assert await artifact_content(scheduler, job.id, "CodingReport", "Coding Report (post)")
        report = await artifact_content(scheduler, job.id, "ValidationReport", "FHIR Bundle Validation Report")
        assert report.tags["valid"] is True
        assert llm.count(REFINE_TASK) == 0

    async def test_refines_bad_coding(self, scheduler, llm):
        fhir_handlers(llm, condition_code={"system": SNOMED, "code": "999999", "display": "Fevr"})
        llm.script(
            REFINE_TASK,
            {"action": "search_for_coding", "pointer": "/code/coding/0", "terms": ["fever"], "systems": [SNOMED]},
            {"action": "update", "patch": [{"op": "replace", "path": "/code/coding/0", "value": FEVER}]},
        )
        job = await scheduler.create_job("fhir", {"note_text": NOTE})

        await scheduler.start_job(job.id)

        final = await artifact_content(scheduler, job.id, "FhirResource", "Condition/cond-1")
        assert final.json_content()["code"]["coding"][0] == FEVER
        assert final.tags["clean"] is True
        pre = await artifact_content(scheduler, job.id, "CodingReport", "Coding Report (pre)")
        post = await artifact_content(scheduler, job.id, "CodingReport", "Coding Report (post)")
        assert pre.tags["unresolved"] == 1
        assert post.tags["unresolved"] == 0
        trace = await artifact_content(
            scheduler, job.id, "FhirResourceValidationTrace", "Validation Trace for Condition/cond-1"
        )
        assert [e["result"] for e in trace.json_content()["trace"]] == ["searched", "accepted"]

    async def test_uses_release_candidate_of_source_job(self, scheduler, llm):
        narrative_handlers(llm)
        fhir_handlers(llm)
        source = await scheduler.create_job("narrative", {"sketch": "45M with fever"})
        await scheduler.start_job(source.id)

        job = await scheduler.create_job("fhir", {"source_job_id": source.id})
        done = await scheduler.start_job(job.id)

        assert done.status == JobStatus.DONE
        assert "Signed." in llm.prompts("fhir_composition_plan")[0]

    async def test_missing_release_candidate_fails(self, scheduler, llm):
        source = await scheduler.create_job("narrative", {"sketch": "45M with fever"})
        job = await scheduler.create_job("fhir", {"source_job_id": source.id})

        failed = await scheduler.start_job(job.id)

        assert failed.status == JobStatus.FAILED
        assert "No ReleaseCandidate found for source job" in failed.last_error

    async def test_non_object_plan_fails(self, scheduler, llm):
        llm.on("fhir_composition_plan", lambda prompt: ["not", "a", "plan"])
        job = await scheduler.create_job("fhir", {"note_text": NOTE})

        failed = await scheduler.start_job(job.id)

        assert failed.status == JobStatus.FAILED
        assert "not a JSON object" in failed.last_error


class TestCompositionHelpers:
    """Tests for the composition and bundle helpers."""

    def test_stitch_merges_subsections(self):
        plan = {
            "id": "c1",
            "section": [
                {"title": "Assessment", "text": {"div": "<div>{{ ## Assessment }}</div>"}, "entry": [{"reference": "Condition/a"}]},
                {"title": "### Differential", "entry": [{"reference": "Condition/b"}]},
                {"title": "Plan", "text": {"div": "<div>{{Plan}}</div>"}},
            ],
        }

        stitched = stitch_section_narratives(plan, NOTE)

        assert [s["title"] for s in stitched["section"]] == ["Assessment", "Plan"]
        assert stitched["section"][0]["entry"] == [{"reference": "Condition/a"}, {"reference": "Condition/b"}]
        assert "Fever, likely viral" in stitched["section"][0]["text"]["div"]
        assert stitched["section"][1]["text"]["div"] == missing_section_div("Plan")
        assert stitched["identifier"] == {"value": "c1"}
        assert len(plan["section"]) == 3

    def test_collect_references(self):
        plan = {
            "subject": {"reference": "Patient/p1", "display": "The patient"},
            "encounter": "Encounter/e1",
            "author": [{"reference": "Practitioner/dr"}],
            "section": [{"entry": [
                {"reference": "Condition/c1", "display": "Fever"},
                {"reference": "Observation/o1"},
                {"reference": "Patient/p1", "display": "Again"},
            ]}],
        }

        assert collect_references(plan) == [
            {"reference": "Condition/c1", "display": "Fever"},
            {"reference": "Patient/p1", "display": "Again"},
            {"reference": "Encounter/e1"},
            {"reference": "Practitioner/dr", "display": "Author"},
        ]

    def test_finalize_composition(self):
        plan = {"subject": "Patient/p1", "section": [{"entry": [{"reference": "Condition/c1", "display": "x"}]}]}

        example = finalize_composition(plan, "job:1", "https://fhir.example.org")
        assert example["resourceType"] == "Composition"
        assert example["id"].startswith("composition-")
        assert example["subject"] == {"reference": "Patient/p1"}
        assert example["section"][0]["entry"] == [{"reference": "Condition/c1"}]
        assert example["identifier"] == {"value": example["id"]}

        hosted = finalize_composition({"id": "c" * 80}, "job:1", "https://fhir.hospital.test")
        assert len(hosted["id"]) == 64
        assert hosted["identifier"]["system"] == "https://fhir.hospital.test/Composition"

    def test_bundle_ids_are_stable(self):
        composition = finalize_composition({}, "job:1", "https://fhir.example.org")
        first = build_bundle(composition, [], "job:1", "https://fhir.example.org", "2024-01-01T00:00:00")
        second = build_bundle(composition, [], "job:1", "https://fhir.example.org", "2024-01-01T00:00:00")

        assert first == second
        assert first["id"].startswith("bundle-")

    def test_prune_empty(self):
        node = {"a": None, "b": [], "c": {"d": {}}, "e": [None, {"f": ""}, 0], "g": False}

        assert prune_empty(node) is False
        assert node == {"e": [{"f": ""}, 0], "g": False}
        assert prune_empty({"x": [None]}) is True


class TestSections:
    """Tests for note section extraction and rendering."""

    def test_extract_sections(self):
        sections = extract_sections(NOTE)

        assert sections == {
            "chief complaint": "Fever for two days.",
            "assessment": "- Fever, likely viral\n- **Monitor** temperature",
        }
        assert section_titles(NOTE) == ["Chief Complaint", "Assessment"]

    def test_crlf_notes(self):
        sections = extract_sections(NOTE.replace("\n", "\r\n"))
        assert sections["chief complaint"] == "Fever for two days."
        assert list(sections) == ["chief complaint", "assessment"]

    def test_subsections_stay_in_parent(self):
        note = "## Plan\nRest.\n### Follow-up\nIn 1 week.\n## Signature\nDr X"
        assert extract_sections(note)["plan"] == "Rest.\n### Follow-up\nIn 1 week."

    def test_render_markdown(self):
        div = render_markdown_xhtml("First line\nsecond <line>\n\n### Sub\n- a\n- b")

        assert div.startswith('<div xmlns="http://www.w3.org/1999/xhtml">')
        assert "<p>First line<br/>second &lt;line&gt;</p>" in div
        assert "<h3>Sub</h3><ul><li>a</li><li>b</li></ul>" in div

    def test_render_section_narrative(self):
        assert render_section_narrative(NOTE, "chief complaint!") is not None
        assert render_section_narrative(NOTE, "Plan") is None


# -------------------------------------------------------------------------
# Trajectory
# -------------------------------------------------------------------------

def trajectory_outline(count: int) -> dict:
    return {
        "fullSketch": "58F with diabetes over a year",
        "episodes": [
            {
                "episodeNumber": n,
                "dateOffset": "Baseline" if n == 1 else f"+{n * 3} months",
                "sketch": f"Visit {n}",
                "keyThemes": ["glycemic control"],
            }
            for n in range(1, count + 1)
        ],
        "overallGuidance": "Keep the medication list consistent",
    }


class TestTrajectoryPipeline:
    """End-to-end trajectory runs through the scheduler."""

    async def test_spawns_chained_episode_jobs(self, scheduler, llm):
        narrative_handlers(llm)
        llm.on("generate_trajectory_outline", lambda prompt: trajectory_outline(3))
        parent = await scheduler.create_job("trajectory", {"trajectory_sketch": "58F with diabetes over a year"})

        done = await scheduler.start_job(parent.id)
        await scheduler.wait_idle()

        assert done.status == JobStatus.DONE
        index = (await artifact_content(scheduler, parent.id, "TrajectoryEpisodeIndex")).json_content()
        child_ids = [e["narrativeJobId"] for e in index["episodes"]]
        assert len(set(child_ids)) == 3

        children = [await scheduler.get_job(child_id) for child_id in child_ids]
        assert [c.title for c in children] == [
            "Episode 1: Baseline", "Episode 2: +6 months", "Episode 3: +9 months",
        ]
        assert [c.depends_on for c in children] == [[parent.id], [child_ids[0]], [child_ids[1]]]
        assert all(c.status == JobStatus.DONE for c in children)
        assert all(c.tags["trajectory_parent_id"] == parent.id for c in children)
        assert "Earlier episodes" in children[2].inputs["extra_context"]

        links = await scheduler.list_links(parent.id, "spawns")
        assert sorted(link.to_id for link in links) == sorted(child_ids)
        plans = await scheduler.list_artifacts(parent.id, "TrajectoryEpisodePlan")
        assert [p.version for p in plans] == [1, 2, 3]

    async def test_rerun_reuses_episode_jobs(self, scheduler, llm):
        narrative_handlers(llm)
        llm.on("generate_trajectory_outline", lambda prompt: trajectory_outline(3))
        parent = await scheduler.create_job("trajectory", {"trajectory_sketch": "58F with diabetes over a year"})
        await scheduler.start_job(parent.id)
        await scheduler.wait_idle()
        before = (await artifact_content(scheduler, parent.id, "TrajectoryEpisodeIndex")).json_content()

        await scheduler.rerun_job(parent.id)
        await scheduler.wait_idle()

        after = (await artifact_content(scheduler, parent.id, "TrajectoryEpisodeIndex")).json_content()
        assert [e["narrativeJobId"] for e in after["episodes"]] == [
            e["narrativeJobId"] for e in before["episodes"]
        ]
        assert llm.count("generate_trajectory_outline") == 1
        assert len(await scheduler.list_jobs()) == 4

    async def test_too_few_episodes_fail(self, scheduler, llm):
        llm.on("generate_trajectory_outline", lambda prompt: trajectory_outline(2))
        parent = await scheduler.create_job("trajectory", {"trajectory_sketch": "58F with diabetes"})

        failed = await scheduler.start_job(parent.id)

        assert failed.status == JobStatus.FAILED
        assert "expected between 3 and 8" in failed.last_error
        assert len(await scheduler.list_jobs()) == 1

    async def test_stale_spawn_removes_its_episode_job(self, scheduler, llm, monkeypatch):
        llm.on("generate_trajectory_outline", lambda prompt: trajectory_outline(3))
        parent = await scheduler.create_job("trajectory", {"trajectory_sketch": "58F with diabetes"})
        ctx = ExecutionContext(
            scheduler.stores, parent, llm, settings=scheduler.settings, scheduler=scheduler,
        )
        create_job = scheduler.create_job

        async def create_then_rerun(*args, **kwargs):
            job = await create_job(*args, **kwargs)
            await scheduler.stores.jobs.increment_run_count(parent.id)
            return job

        monkeypatch.setattr(scheduler, "create_job", create_then_rerun)

        with pytest.raises(StaleRunError):
            await spawn_episodes(ctx)

        assert [job.id for job in await scheduler.list_jobs()] == [parent.id]
        assert await scheduler.list_links(parent.id, "spawns") == []


class TestNormalizeOutline:
    """Tests for normalize_outline."""

    def test_sorts_and_renumbers(self):
        outline = normalize_outline({"episodes": [
            {"episodeNumber": 5, "sketch": "later", "dateOffset": "+1y"},
            {"episodeNumber": "2", "sketch": "early"},
            {"episodeNumber": 9, "sketch": "  "},
            {"sketch": "middle", "keyThemes": ["a", " ", 3]},
        ], "fullSketch": ""}, "fallback sketch")

        assert outline["fullSketch"] == "fallback sketch"
        assert [e["sketch"] for e in outline["episodes"]] == ["early", "middle", "later"]
        assert [e["episodeNumber"] for e in outline["episodes"]] == [1, 2, 3]
        assert outline["episodes"][0]["dateOffset"] == "Episode 2"
        assert outline["episodes"][1]["keyThemes"] == ["a", "3"]
        assert outline["overallGuidance"] == ""

    def test_episode_count_bounds(self):
        with pytest.raises(ValueError, match="expected between 3 and 8"):
            normalize_outline(trajectory_outline(2), "x")
        with pytest.raises(ValueError, match="expected between 3 and 8"):
            normalize_outline(trajectory_outline(9), "x")
        with pytest.raises(ValueError):
            normalize_outline("not an outline", "x")
        assert len(normalize_outline(trajectory_outline(8), "x")["episodes"]) == 8


# -------------------------------------------------------------------------
# Registry and helpers
# -------------------------------------------------------------------------

class TestRegistry:
    """Tests for the document type registry."""

    def test_builtin_types(self):
        registry = build_registry()

        assert registry.types() == ["fhir", "narrative", "trajectory"]
        assert "narrative" in registry
        assert registry.get("fhir").inputs_model is FhirInputs
        assert registry.get("narrative").inputs_model is NarrativeInputs
        assert registry.get("trajectory").inputs_model is TrajectoryInputs

    def test_validate_inputs(self):
        registry = build_registry()

        assert registry.validate_inputs("narrative", {"sketch": "45M"}) == {"sketch": "45M"}
        with pytest.raises(ValueError, match="Invalid inputs for narrative"):
            registry.validate_inputs("narrative", {})
        with pytest.raises(ValueError, match="Invalid inputs for fhir"):
            registry.validate_inputs("fhir", {})
        with pytest.raises(ValueError, match="Unknown document type"):
            registry.validate_inputs("letter", {"sketch": "x"})

    def test_default_titles(self):
        registry = build_registry()

        assert registry.get("narrative").default_title({"sketch": "45M with fever\nmore"}) == "Narrative: 45M with fever"
        assert registry.get("fhir").default_title({"source_job_id": "job:abc"}) == "FHIR from job:abc"
        title = registry.get("trajectory").default_title({"trajectory_sketch": "x" * 100})
        assert title.endswith("...")


class TestRevisionLoop:
    """Tests for parse_score and revision_loop."""

    def test_parse_score(self):
        assert parse_score(0.8) == 0.8
        assert parse_score("0.5") == 0.5
        assert parse_score(85) == 0.85
        assert parse_score(-1) == 0.0
        assert parse_score(500) == 1.0
        assert parse_score("great") == 0.0
        assert parse_score(None) == 0.0

    async def test_stops_when_target_reached(self):
        events = []
        scores = iter([0.4, 0.6, 0.8])

        async def draft(version, feedback):
            events.append(("draft", version, feedback))

        async def critique(version):
            return next(scores), f"feedback {version}"

        async def decide(version, score, approved):
            events.append(("decide", version, approved))

        result = await revision_loop(
            label="test", target=0.75, max_revisions=5, draft=draft, critique=critique, decide=decide,
        )

        assert result.version == 3
        assert result.approved
        assert result.revisions == 3
        assert events[:3] == [("draft", 1, None), ("decide", 1, False), ("draft", 2, "feedback 1")]

    async def test_stops_at_revision_limit(self):
        async def draft(version, feedback):
            pass

        async def critique(version):
            return 0.1, "bad"

        decisions = []

        async def decide(version, score, approved):
            decisions.append(approved)

        result = await revision_loop(
            label="test", target=0.75, max_revisions=2, draft=draft, critique=critique, decide=decide,
        )

        assert result.version == 2
        assert not result.approved
        assert decisions == [False, False]
