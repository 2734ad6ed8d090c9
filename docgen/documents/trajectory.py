"""
Patient trajectory pipeline.

Splits a longitudinal sketch into 3-8 episodes and spawns one narrative job
per episode. Each episode job depends on the previous one (the first on the
trajectory job itself), so notes are written in chronological order.
"""

from typing import Any
import logging

from ..engine.context import ExecutionContext, RunAborted
from ..models import DocumentType, EntityRef
from . import prompts
from .phases import ArtifactSpec, Phase, define_phase, run_llm_task
from .registry import TrajectoryInputs

logger = logging.getLogger(__name__)

MIN_EPISODES = 3
MAX_EPISODES = 8


def _episode_number(raw: Any, fallback: int) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float(fallback)


def normalize_outline(result: Any, fallback_sketch: str) -> dict[str, Any]:
    """
    Clean up a generated trajectory outline.

    Episodes without a sketch are dropped, the rest are sorted and
    renumbered from 1.

    Raises:
        ValueError: If fewer than 3 or more than 8 episodes remain
    """
    result = result if isinstance(result, dict) else {}
    full_sketch = result.get("fullSketch")
    if not isinstance(full_sketch, str) or not full_sketch.strip():
        full_sketch = fallback_sketch

    episodes = []
    for index, raw in enumerate(result.get("episodes") if isinstance(result.get("episodes"), list) else []):
        raw = raw if isinstance(raw, dict) else {}
        sketch = raw.get("sketch").strip() if isinstance(raw.get("sketch"), str) else ""
        if not sketch:
            continue
        date_offset = raw.get("dateOffset")
        themes = raw.get("keyThemes") if isinstance(raw.get("keyThemes"), list) else []
        episodes.append({
            "episodeNumber": _episode_number(raw.get("episodeNumber"), index + 1),
            "dateOffset": date_offset.strip()
            if isinstance(date_offset, str) and date_offset.strip()
            else f"Episode {index + 1}",
            "sketch": sketch,
            "keyThemes": [str(t) for t in themes if str(t).strip()],
        })

    if not MIN_EPISODES <= len(episodes) <= MAX_EPISODES:
        raise ValueError(
            f"Trajectory outline returned {len(episodes)} episodes; "
            f"expected between {MIN_EPISODES} and {MAX_EPISODES}."
        )

    episodes.sort(key=lambda e: e["episodeNumber"])
    for number, episode in enumerate(episodes, start=1):
        episode["episodeNumber"] = number

    guidance = result.get("overallGuidance")
    return {
        "fullSketch": full_sketch,
        "episodes": episodes,
        "overallGuidance": guidance.strip() if isinstance(guidance, str) else "",
    }


async def plan_trajectory(ctx: ExecutionContext) -> dict[str, Any]:
    inputs = TrajectoryInputs.model_validate(ctx.inputs)
    result, _, artifact = await run_llm_task(
        ctx,
        "generate_trajectory_outline",
        prompts.trajectory_outline(inputs.trajectory_sketch),
        expect="json",
        tags={"phase": "trajectory"},
        artifact=ArtifactSpec(
            kind="TrajectoryOutline", title="Trajectory Outline", tags={"phase": "trajectory"}
        ),
    )
    outline = normalize_outline(result, inputs.trajectory_sketch)
    await ctx.create_artifact(
        artifact.kind,
        artifact.title,
        outline,
        version=artifact.version,
        tags={**artifact.tags, "episodes": len(outline["episodes"])},
        auto_produced=False,
    )
    return outline


async def spawn_episodes(ctx: ExecutionContext) -> None:
    if ctx.scheduler is None:
        raise RuntimeError("Trajectory jobs need a scheduler to spawn episode jobs")

    outline = await ctx.get_step_result("phase:planning:plan_trajectory")
    if outline is None:
        outline = await plan_trajectory(ctx)

    spawned: list[dict[str, Any]] = []
    previous_job_id = None
    for episode in outline["episodes"]:
        number = episode["episodeNumber"]
        title = f"Episode {number}: {episode['dateOffset']}"
        depends_on = [previous_job_id or ctx.job_id]

        async def spawn(episode: dict[str, Any] = episode, depends_on: list[str] = depends_on) -> str:
            await ctx.ensure_current()
            job = await ctx.scheduler.create_job(
                DocumentType.NARRATIVE.value,
                {"sketch": episode["sketch"], "extra_context": prompts.episode_context(outline, episode)},
                title=f"Episode {episode['episodeNumber']}: {episode['dateOffset']}",
                depends_on=depends_on,
                tags={
                    "trajectory_parent_id": ctx.job_id,
                    "episode_number": episode["episodeNumber"],
                    "date_offset": episode["dateOffset"],
                },
            )
            try:
                await ctx.ensure_current()
            except RunAborted:
                await ctx.scheduler.delete_job(job.id)
                raise
            return job.id

        key = f"spawn:episode:{number}"
        child_id = await ctx.step(key, spawn, title=f"Spawn {title}", tags={"episode_number": number})
        if await ctx.scheduler.get_job(child_id) is None:
            logger.warning(f"Job {ctx.job_id}: episode {number} job {child_id} is gone, spawning again")
            child_id = await ctx.step(
                key, spawn, title=f"Spawn {title}", tags={"episode_number": number}, force_recompute=True
            )

        await ctx.link(
            EntityRef.job(ctx.job_id), "spawns", EntityRef.job(child_id), {"episode_number": number}
        )
        await ctx.create_artifact(
            "TrajectoryEpisodePlan",
            title,
            {**episode, "narrativeJobId": child_id},
            version=number,
            tags={"phase": "trajectory", "episode_number": number, "narrative_job_id": child_id},
        )
        spawned.append({**episode, "narrativeJobId": child_id})
        previous_job_id = child_id

    await ctx.create_artifact(
        "TrajectoryEpisodeIndex",
        "Trajectory Episodes",
        {"outline": outline, "episodes": spawned},
        tags={"phase": "trajectory"},
    )
    logger.info(f"Job {ctx.job_id}: {len(spawned)} episode job(s) ready")


PLANNING = define_phase("planning", ("plan_trajectory", plan_trajectory))
EPISODES = define_phase("episodes", ("spawn_episodes", spawn_episodes))


def build_pipeline() -> list[Phase]:
    return [PLANNING, EPISODES]
