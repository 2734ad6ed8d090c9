"""Execution context - the per-run memoized step runner.

A fresh ExecutionContext is built for every run of a job. It carries the
run's epoch (the job's run_count when the run started) and every write it
makes is conditioned on the job still existing on that epoch. A rejected
write raises a RunAborted subclass, which callers let propagate and the
scheduler swallows.
"""

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING
import json
import logging
import time
import traceback
import uuid

from ..config import Settings
from ..models import Artifact, EntityRef, Job, Link, Step, StepStatus, utcnow
from ..storage import Stores
from ..storage.database import serialize_json
from .hashing import sha256_hex, stable_json
from .llm import Expect, LLMClient

if TYPE_CHECKING:
    from ..services import TerminologyClient, ValidatorClient
    from .scheduler import JobScheduler

logger = logging.getLogger(__name__)

StepFn = Callable[[], Awaitable[Any]]

# Tags that take part in an artifact's identity, besides kind/version/title
IDENTITY_TAGS = ("section", "reference", "stage", "episode_number")


class RunAborted(Exception):
    """The run may no longer write. Not a failure; abort silently."""


class JobDeletedError(RunAborted):
    """The job was deleted while this run was in flight."""


class StaleRunError(RunAborted):
    """The job was rerun; this run belongs to a superseded epoch."""


@dataclass
class LLMCallMeta:
    """Provenance of a (possibly replayed) generative call."""

    step_key: str
    prompt: str
    raw: Optional[str] = None
    tokens_used: Optional[int] = None
    attempts: Optional[int] = None
    status: Optional[int] = None


def artifact_id(job_id: str, kind: str, version: int, title: str, tags: dict[str, Any]) -> str:
    identity = {k: tags[k] for k in IDENTITY_TAGS if k in tags}
    return "artifact:" + sha256_hex(f"{job_id}:{kind}:{version}:{title}:{stable_json(identity)}")


def link_id(job_id: str, source: EntityRef, role: str, target: EntityRef) -> str:
    return "link:" + sha256_hex(
        f"{job_id}|{source.type}|{source.id}|{target.type}|{target.id}|{role}"
    )


class ExecutionContext:
    """
    Memoized task runner for one run of one job.

    Usage:
        ctx = ExecutionContext(stores, job, llm=llm)
        outline = await ctx.step("plan", make_outline)
        text = await ctx.call_llm("draft_section", prompt)
        await ctx.create_artifact("SectionDraft", "Draft v1", text)
    """

    def __init__(
        self,
        stores: Stores,
        job: Job,
        llm: Optional[LLMClient] = None,
        *,
        terminology: Optional["TerminologyClient"] = None,
        validator: Optional["ValidatorClient"] = None,
        settings: Optional[Settings] = None,
        scheduler: Optional["JobScheduler"] = None,
        epoch: Optional[int] = None,
    ):
        self.stores = stores
        self.job = job
        self.llm = llm
        self.terminology = terminology
        self.validator = validator
        self.settings = settings or Settings()
        self.scheduler = scheduler
        self.epoch = job.run_count if epoch is None else epoch
        # Nesting stack of step keys; each asyncio task sees its own copy
        self._stack: ContextVar[tuple[str, ...]] = ContextVar(
            f"step_stack:{job.id}:{self.epoch}", default=()
        )

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def inputs(self) -> dict[str, Any]:
        return self.job.inputs

    @property
    def current_step_key(self) -> Optional[str]:
        stack = self._stack.get()
        return stack[-1] if stack else None

    # -------------------------------------------------------------------------
    # Epoch checks
    # -------------------------------------------------------------------------

    async def ensure_current(self) -> None:
        """Raise RunAborted if the job is gone or was rerun."""
        job = await self.stores.jobs.get(self.job_id)
        if job is None:
            raise JobDeletedError(f"Job {self.job_id} was deleted")
        if job.run_count != self.epoch:
            raise StaleRunError(
                f"Job {self.job_id} run {self.epoch} superseded by run {job.run_count}"
            )

    async def _abort_signal(self) -> RunAborted:
        job = await self.stores.jobs.get(self.job_id)
        if job is None:
            return JobDeletedError(f"Job {self.job_id} was deleted")
        return StaleRunError(
            f"Job {self.job_id} run {self.epoch} superseded by run {job.run_count}"
        )

    async def _write_step(self, step: Step) -> None:
        if not await self.stores.steps.upsert(step, epoch=self.epoch):
            raise await self._abort_signal()

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def step(
        self,
        key: str,
        fn: StepFn,
        *,
        title: Optional[str] = None,
        tags: Optional[dict[str, Any]] = None,
        parent_key: Optional[str] = None,
        force_recompute: bool = False,
        prompt: Optional[str] = None,
    ) -> Any:
        """
        Run `fn` once per (job, key) and memoize its JSON-serializable result.

        Args:
            key: Step key; qualified as ``<parent_key>:<key>`` when parent_key is given
            fn: Zero-argument coroutine function producing the result
            title: Display title
            tags: Provenance tags stored on the record
            parent_key: Explicit parent (otherwise the enclosing step)
            force_recompute: Run `fn` even if a done record exists
            prompt: Prompt text to store for audit

        Returns:
            The stored result on replay, otherwise the result of `fn`

        Raises:
            RunAborted: The job was deleted or rerun
        """
        full_key = f"{parent_key}:{key}" if parent_key else key
        await self.ensure_current()

        existing = await self.stores.steps.get(self.job_id, full_key)
        if existing is not None and existing.is_done and not force_recompute:
            logger.debug(f"Replaying step {full_key} for job {self.job_id}")
            return existing.result

        record = Step(
            job_id=self.job_id,
            key=full_key,
            title=title or key,
            status=StepStatus.RUNNING,
            parent_key=parent_key or self.current_step_key,
            tags=dict(tags or {}),
            prompt=prompt,
            created_at=existing.created_at if existing else utcnow(),
        )
        await self._write_step(record)

        token = self._stack.set(self._stack.get() + (full_key,))
        started = time.monotonic()
        try:
            result = await fn()
        except RunAborted:
            raise
        except Exception as e:
            failed = await self.stores.steps.get(self.job_id, full_key) or record
            failed.status = StepStatus.FAILED
            failed.error = str(e)
            failed.duration_ms = int((time.monotonic() - started) * 1000)
            failed.updated_at = utcnow()
            raw = getattr(e, "raw_content", None)
            if raw is not None:
                failed.result_json = serialize_json({
                    "error": str(e),
                    "raw": raw,
                    "status": getattr(e, "status", None),
                    "traceback": traceback.format_exc(),
                })
            logger.error(f"Step {full_key} failed for job {self.job_id}: {e}")
            await self._write_step(failed)
            raise
        finally:
            self._stack.reset(token)

        # Nested calls may have annotated the record while fn ran
        done = await self.stores.steps.get(self.job_id, full_key) or record
        done.status = StepStatus.DONE
        done.error = None
        done.result_json = serialize_json(result)
        done.duration_ms = int((time.monotonic() - started) * 1000)
        done.updated_at = utcnow()
        await self._write_step(done)
        return result

    async def group(
        self,
        title: str,
        fn: StepFn,
        tags: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Memoized labelled container for nested steps."""
        key = "group:" + sha256_hex(f"{title}:{self.current_step_key or ''}")[:16]
        return await self.step(key, fn, title=title, tags={**(tags or {}), "kind": "group"})

    async def span(
        self,
        title: str,
        fn: StepFn,
        tags: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Labelled container that always runs (never replayed)."""
        key = f"span:{uuid.uuid4().hex[:16]}"
        return await self.step(
            key, fn, title=title, tags={**(tags or {}), "kind": "span"}, force_recompute=True
        )

    async def get_step_result(self, key: str) -> Any:
        """Stored result of a done step, else None."""
        step = await self.stores.steps.get(self.job_id, key)
        if step is not None and step.is_done:
            return step.result
        return None

    async def annotate_step(self, key: str, **tags: Any) -> None:
        """Merge `tags` into an existing step record (no-op if missing)."""
        record = await self.stores.steps.get(self.job_id, key)
        if record is None:
            return
        record.tags = {**record.tags, **tags}
        await self._write_step(record)

    async def is_phase_complete(self, name: str) -> bool:
        """True iff some ``phase:<name>:`` step exists and all of them are done."""
        steps = await self.stores.steps.list_by_job(self.job_id, prefix=f"phase:{name}:")
        return bool(steps) and all(s.is_done for s in steps)

    # -------------------------------------------------------------------------
    # Generative calls
    # -------------------------------------------------------------------------

    async def call_llm(
        self,
        task: str,
        prompt: str,
        *,
        expect: Expect = "text",
        temperature: Optional[float] = None,
        tags: Optional[dict[str, Any]] = None,
    ) -> Any:
        result, _ = await self.call_llm_ex(
            task, prompt, expect=expect, temperature=temperature, tags=tags
        )
        return result

    async def call_llm_ex(
        self,
        task: str,
        prompt: str,
        *,
        expect: Expect = "text",
        temperature: Optional[float] = None,
        tags: Optional[dict[str, Any]] = None,
    ) -> tuple[Any, LLMCallMeta]:
        """
        Memoized generative call keyed by ``llm:<task>:<sha256(prompt)>``.

        Identical prompts share one cached step regardless of call site.

        Returns:
            (result, meta) where meta is read back from the step record
        """
        if self.llm is None:
            raise RuntimeError("ExecutionContext has no LLM client")
        key = f"llm:{task}:{sha256_hex(prompt)}"

        async def run() -> Any:
            response = await self.llm.complete(task, prompt, expect=expect, temperature=temperature)
            record = await self.stores.steps.get(self.job_id, key)
            if record is not None:
                record.tags = {
                    **record.tags,
                    "model_task": task,
                    "model": response.model,
                    "attempts": response.attempts,
                    "status": response.status,
                    "llm_raw": response.raw,
                    "usage": response.usage.as_dict(),
                }
                record.llm_tokens = response.usage.total_tokens
                record.prompt = prompt
                await self._write_step(record)
            return response.result

        result = await self.step(
            key,
            run,
            title=f"LLM: {task}",
            tags={**(tags or {}), "model_task": task},
            prompt=prompt,
        )

        record = await self.stores.steps.get(self.job_id, key)
        record_tags = record.tags if record else {}
        meta = LLMCallMeta(
            step_key=key,
            prompt=prompt,
            raw=record_tags.get("llm_raw"),
            tokens_used=record.llm_tokens if record else None,
            attempts=record_tags.get("attempts"),
            status=record_tags.get("status"),
        )
        return result, meta

    # -------------------------------------------------------------------------
    # Artifacts and links
    # -------------------------------------------------------------------------

    async def create_artifact(
        self,
        kind: str,
        title: str,
        content: Any,
        *,
        version: int = 1,
        tags: Optional[dict[str, Any]] = None,
        links: Optional[list[tuple[str, EntityRef]]] = None,
        auto_produced: bool = True,
    ) -> Artifact:
        """
        Create or replace an artifact.

        Args:
            kind: Artifact kind (e.g. "SectionDraft")
            title: Display title (part of the identity)
            content: Text, or any JSON value (stored as indented JSON)
            version: Version number within (kind, identifying tags)
            tags: Tags; section/reference/stage/episode_number are identifying
            links: Extra (role, source) pairs linked source --role--> artifact
            auto_produced: Link the enclosing step --produced--> artifact

        Returns:
            The stored artifact
        """
        tags = dict(tags or {})
        text = content if isinstance(content, str) else json.dumps(content, indent=2, default=str)
        art_id = artifact_id(self.job_id, kind, version, title, tags)
        existing = await self.stores.artifacts.get(art_id)
        now = utcnow()
        artifact = Artifact(
            id=art_id,
            job_id=self.job_id,
            kind=kind,
            version=version,
            title=title,
            content=text,
            tags=tags,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if not await self.stores.artifacts.upsert(artifact, epoch=self.epoch):
            raise await self._abort_signal()
        logger.debug(f"Artifact {kind} v{version} '{title}' stored for job {self.job_id}")

        target = EntityRef.artifact(artifact.id)
        if auto_produced and self.current_step_key:
            await self.link(EntityRef.step(self.current_step_key), "produced", target)
        for role, source in links or []:
            await self.link(source, role, target)
        return artifact

    async def link(
        self,
        source: EntityRef,
        role: str,
        target: EntityRef,
        tags: Optional[dict[str, Any]] = None,
    ) -> Link:
        """Create (or refresh) the edge source --role--> target."""
        link = Link(
            id=link_id(self.job_id, source, role, target),
            job_id=self.job_id,
            from_type=source.type,
            from_id=source.id,
            to_type=target.type,
            to_id=target.id,
            role=role,
            tags=dict(tags or {}),
        )
        if not await self.stores.links.upsert(link, epoch=self.epoch):
            raise await self._abort_signal()
        return link

    async def list_artifacts(self, kind: Optional[str] = None, **tags: Any) -> list[Artifact]:
        return await self.stores.artifacts.list_by_job(self.job_id, kind, **tags)

    async def latest_artifact(self, kind: str, **tags: Any) -> Optional[Artifact]:
        return await self.stores.artifacts.latest(self.job_id, kind, **tags)

    async def latest_version(self, kind: str, **tags: Any) -> int:
        """Highest version of `kind` matching `tags` (0 if none)."""
        latest = await self.latest_artifact(kind, **tags)
        return latest.version if latest else 0
