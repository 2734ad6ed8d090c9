"""Phase runner and helpers shared by the document pipelines."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
import logging

from ..engine.context import ExecutionContext, LLMCallMeta
from ..engine.llm import Expect
from ..models import Artifact, EntityRef

logger = logging.getLogger(__name__)

TaskFn = Callable[[ExecutionContext], Awaitable[Any]]


@dataclass
class Phase:
    """
    A named, ordered list of tasks.

    Each task runs inside the forced step ``phase:<name>:<task>``: the
    wrapper always re-executes, so the phase shows up as done for this run,
    while the nested LLM steps replay from cache.
    """

    name: str
    tasks: list[tuple[str, TaskFn]] = field(default_factory=list)

    def step_key(self, task_name: str) -> str:
        return f"phase:{self.name}:{task_name}"

    async def run(self, ctx: ExecutionContext) -> None:
        for task_name, fn in self.tasks:
            async def call(fn: TaskFn = fn) -> Any:
                return await fn(ctx)

            await ctx.step(
                self.step_key(task_name),
                call,
                title=f"{self.name}: {task_name}",
                tags={"phase": self.name, "task": task_name},
                force_recompute=True,
            )


def define_phase(name: str, *tasks: tuple[str, TaskFn]) -> Phase:
    return Phase(name=name, tasks=list(tasks))


# -----------------------------------------------------------------------------
# LLM tasks
# -----------------------------------------------------------------------------

@dataclass
class ArtifactSpec:
    """Where to store the output of an LLM task."""

    kind: str
    title: str
    version: int = 1
    tags: dict[str, Any] = field(default_factory=dict)
    links: list[tuple[str, EntityRef]] = field(default_factory=list)


async def run_llm_task(
    ctx: ExecutionContext,
    task: str,
    prompt: str,
    *,
    expect: Expect = "text",
    tags: Optional[dict[str, Any]] = None,
    artifact: Optional[ArtifactSpec] = None,
) -> tuple[Any, LLMCallMeta, Optional[Artifact]]:
    """
    Memoized LLM call that optionally stores its output as an artifact.

    The artifact is linked from the LLM step that produced it (not from the
    enclosing phase step) and records that step's key in its tags.
    """
    result, meta = await ctx.call_llm_ex(task, prompt, expect=expect, tags=tags)
    stored = None
    if artifact is not None:
        stored = await ctx.create_artifact(
            artifact.kind,
            artifact.title,
            result,
            version=artifact.version,
            tags={**artifact.tags, "llm_step_key": meta.step_key, "model_task": task},
            links=[*artifact.links, ("produced", EntityRef.step(meta.step_key))],
            auto_produced=False,
        )
    return result, meta, stored


async def retag_artifact(ctx: ExecutionContext, artifact: Artifact, **tags: Any) -> Artifact:
    """Store `artifact` again with extra non-identifying tags."""
    return await ctx.create_artifact(
        artifact.kind,
        artifact.title,
        artifact.content,
        version=artifact.version,
        tags={**artifact.tags, **tags},
        auto_produced=False,
    )


def parse_score(raw: Any) -> float:
    """Critic score as a float in [0, 1]; anything unparseable is 0."""
    try:
        score = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if score > 1.0 and score <= 100.0:
        # Some critics answer on a percentage scale
        score = score / 100.0
    return max(0.0, min(1.0, score))


# -----------------------------------------------------------------------------
# Revision loops
# -----------------------------------------------------------------------------

@dataclass
class Revision:
    """Outcome of a draft/critique revision loop."""

    version: int
    score: float
    feedback: Optional[str]
    approved: bool
    revisions: int


async def revision_loop(
    *,
    label: str,
    target: float,
    max_revisions: int,
    draft: Callable[[int, Optional[str]], Awaitable[None]],
    critique: Callable[[int], Awaitable[tuple[float, str]]],
    decide: Callable[[int, float, bool], Awaitable[None]],
    start_version: int = 1,
) -> Revision:
    """
    Draft, critique and decide until the score reaches `target` or the
    revision limit is hit.

    `draft(version, feedback)` writes version `version` (feedback is the
    previous critique, None for the first draft). `critique(version)`
    returns (score, feedback). `decide(version, score, approved)` records
    the decision. Versions increase by one per revision.
    """
    version = start_version
    feedback: Optional[str] = None
    max_revisions = max(1, max_revisions)

    for attempt in range(1, max_revisions + 1):
        await draft(version, feedback)
        score, feedback = await critique(version)
        approved = score >= target
        last = approved or attempt >= max_revisions
        await decide(version, score, approved)
        logger.info(
            f"{label}: v{version} scored {score:.2f} "
            f"({'approve' if approved else 'rewrite' if not last else 'limit reached'})"
        )
        if last:
            return Revision(
                version=version, score=score, feedback=feedback,
                approved=approved, revisions=attempt,
            )
        version += 1

    raise AssertionError("unreachable")
