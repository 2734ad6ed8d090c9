"""Tests for the memoized step executor."""

import asyncio

import pytest

from docgen.engine import JobDeletedError, LLMCallError, StaleRunError
from docgen.engine.hashing import sha256_hex
from docgen.models import EntityRef, StepStatus


class TestStep:
    """Tests for ExecutionContext.step."""

    async def test_result_is_memoized(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            return {"sections": ["A", "B"]}

        first = await ctx.step("plan", work, title="Plan")
        second = await ctx.step("plan", work)

        assert first == second == {"sections": ["A", "B"]}
        assert calls == 1
        record = await stores.steps.get(job.id, "plan")
        assert record.status == StepStatus.DONE
        assert record.title == "Plan"
        assert record.duration_ms is not None

    async def test_force_recompute(self, make_job, make_context):
        job = await make_job()
        ctx = make_context(job)
        values = iter([1, 2])

        async def work():
            return next(values)

        assert await ctx.step("count", work) == 1
        assert await ctx.step("count", work, force_recompute=True) == 2
        assert await ctx.step("count", work) == 2

    async def test_nested_steps_record_parent(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def inner():
            assert ctx.current_step_key == "outer"
            return "x"

        async def outer():
            return await ctx.step("inner", inner)

        await ctx.step("outer", outer)

        record = await stores.steps.get(job.id, "inner")
        assert record.parent_key == "outer"
        assert ctx.current_step_key is None

    async def test_explicit_parent_qualifies_key(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def work():
            return 1

        await ctx.step("child", work, parent_key="group:abc")
        assert await stores.steps.get(job.id, "group:abc:child") is not None

    async def test_failure_is_recorded_and_rerun(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ValueError("first try fails")
            return "ok"

        with pytest.raises(ValueError):
            await ctx.step("flaky", flaky)
        record = await stores.steps.get(job.id, "flaky")
        assert record.status == StepStatus.FAILED
        assert record.error == "first try fails"

        assert await ctx.step("flaky", flaky) == "ok"
        assert attempts == 2

    async def test_concurrent_steps_keep_separate_parents(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def leaf():
            await asyncio.sleep(0)
            return ctx.current_step_key

        def branch(name):
            async def run():
                await asyncio.sleep(0)
                return await ctx.step(f"{name}:leaf", leaf)
            return run

        results = await asyncio.gather(ctx.step("a", branch("a")), ctx.step("b", branch("b")))

        assert results == ["a:leaf", "b:leaf"]
        assert (await stores.steps.get(job.id, "a:leaf")).parent_key == "a"
        assert (await stores.steps.get(job.id, "b:leaf")).parent_key == "b"

    async def test_group_replays_and_span_always_runs(self, make_job, make_context):
        job = await make_job()
        ctx = make_context(job)
        counts = {"group": 0, "span": 0}

        async def in_group():
            counts["group"] += 1
            return "g"

        async def in_span():
            counts["span"] += 1
            return "s"

        for _ in range(2):
            assert await ctx.group("Sections", in_group) == "g"
            assert await ctx.span("Timing", in_span) == "s"

        assert counts == {"group": 1, "span": 2}

    async def test_is_phase_complete(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def ok():
            return None

        async def boom():
            raise RuntimeError("no")

        assert not await ctx.is_phase_complete("planning")
        await ctx.step("phase:planning:plan_outline", ok)
        assert await ctx.is_phase_complete("planning")

        with pytest.raises(RuntimeError):
            await ctx.step("phase:planning:realize_outline", boom)
        assert not await ctx.is_phase_complete("planning")

    async def test_annotate_step(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def work():
            return 1

        await ctx.step("s", work, tags={"phase": "x"})
        await ctx.annotate_step("s", reviewed=True)
        await ctx.annotate_step("missing", reviewed=True)

        record = await stores.steps.get(job.id, "s")
        assert record.tags == {"phase": "x", "reviewed": True}


class TestEpochGuard:
    """Tests for stale and deleted runs."""

    async def test_stale_run_cannot_write(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)
        await stores.jobs.increment_run_count(job.id)

        async def work():
            return 1

        with pytest.raises(StaleRunError):
            await ctx.step("s", work)
        assert await stores.steps.get(job.id, "s") is None

    async def test_rerun_during_step_aborts_the_write(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def work():
            await stores.jobs.increment_run_count(job.id)
            return "late"

        with pytest.raises(StaleRunError):
            await ctx.step("s", work)
        record = await stores.steps.get(job.id, "s")
        assert record is None or record.status != StepStatus.DONE

        with pytest.raises(StaleRunError):
            await ctx.create_artifact("NoteDraft", "Note Draft v1", "text")
        assert await stores.artifacts.list_by_job(job.id) == []

    async def test_deleted_job(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)
        await stores.jobs.delete(job.id)

        async def work():
            return 1

        with pytest.raises(JobDeletedError):
            await ctx.step("s", work)


class TestCallLLM:
    """Tests for memoized generative calls."""

    async def test_content_addressed_cache(self, make_job, make_context, llm, stores):
        job = await make_job()
        ctx = make_context(job)
        llm.script("draft_section", "first", "second")

        assert await ctx.call_llm("draft_section", "prompt A") == "first"
        assert await ctx.call_llm("draft_section", "prompt A") == "first"
        assert await ctx.call_llm("draft_section", "prompt B") == "second"
        assert llm.count("draft_section") == 2

        key = f"llm:draft_section:{sha256_hex('prompt A')}"
        record = await stores.steps.get(job.id, key)
        assert record.prompt == "prompt A"
        assert record.llm_tokens == 15
        assert record.tags["model_task"] == "draft_section"
        assert record.tags["llm_raw"] == "first"
        assert record.tags["attempts"] == 1

    async def test_meta(self, make_job, make_context, llm):
        job = await make_job()
        ctx = make_context(job)
        llm.script("critique_section", {"score": 0.9})

        result, meta = await ctx.call_llm_ex("critique_section", "p", expect="json")

        assert result == {"score": 0.9}
        assert meta.step_key == f"llm:critique_section:{sha256_hex('p')}"
        assert meta.raw == '{"score": 0.9}'
        assert meta.tokens_used == 15
        assert meta.status == 200

    async def test_failure_keeps_raw_content(self, make_job, make_context, llm, stores):
        job = await make_job()
        ctx = make_context(job)
        llm.script("plan_outline", LLMCallError("bad json", raw_content="{oops", status=200, attempts=3))

        with pytest.raises(LLMCallError):
            await ctx.call_llm("plan_outline", "p", expect="json")

        record = await stores.steps.get(job.id, f"llm:plan_outline:{sha256_hex('p')}")
        assert record.status == StepStatus.FAILED
        assert record.result["raw"] == "{oops"
        assert record.result["error"] == "bad json"
        assert "Traceback" in record.result["traceback"]

    async def test_requires_client(self, make_job, make_context):
        job = await make_job()
        ctx = make_context(job, llm=None)

        with pytest.raises(RuntimeError):
            await ctx.call_llm("draft_section", "p")


class TestArtifacts:
    """Tests for artifacts and links."""

    async def test_identity_and_replacement(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        first = await ctx.create_artifact("SectionDraft", "Draft Plan v1", "one", tags={"section": "Plan"})
        again = await ctx.create_artifact(
            "SectionDraft", "Draft Plan v1", "two", tags={"section": "Plan", "action": "approve"}
        )
        other = await ctx.create_artifact("SectionDraft", "Draft Plan v1", "x", tags={"section": "Assessment"})

        assert first.id == again.id
        assert other.id != first.id
        stored = await stores.artifacts.get(first.id)
        assert stored.content == "two"
        assert stored.tags["action"] == "approve"
        assert stored.created_at == first.created_at

    async def test_json_content_and_latest(self, make_job, make_context):
        job = await make_job()
        ctx = make_context(job)

        await ctx.create_artifact("NoteDraft", "Note Draft v1", "v1", version=1)
        await ctx.create_artifact("NoteDraft", "Note Draft v2", "v2", version=2)
        plan = await ctx.create_artifact("FhirCompositionPlan", "Plan", {"section": []})

        assert plan.json_content() == {"section": []}
        assert (await ctx.latest_artifact("NoteDraft")).content == "v2"
        assert await ctx.latest_version("NoteDraft") == 2
        assert await ctx.latest_version("ReleaseCandidate") == 0

    async def test_produced_link_from_enclosing_step(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)

        async def work():
            artifact = await ctx.create_artifact("NarrativeOutline", "Outline v1", {"sections": []})
            return artifact.id

        artifact_id = await ctx.step("plan", work)

        links = await stores.links.list_by_job(job.id, "produced")
        assert len(links) == 1
        assert links[0].source == EntityRef.step("plan")
        assert links[0].target == EntityRef.artifact(artifact_id)

    async def test_links_are_idempotent(self, make_job, make_context, stores):
        job = await make_job()
        ctx = make_context(job)
        source = EntityRef.artifact("artifact:a")
        target = EntityRef.artifact("artifact:b")

        await ctx.link(source, "uses", target)
        await ctx.link(source, "uses", target, {"note": "again"})

        links = await stores.links.list_by_job(job.id)
        assert len(links) == 1
        assert links[0].tags == {"note": "again"}
