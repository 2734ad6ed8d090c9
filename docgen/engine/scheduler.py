"""Job scheduler - job lifecycle and dependency-gated triggering."""

import asyncio
import secrets
import time
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING
import logging

from ..config import Settings
from ..models import Artifact, Job, JobStatus, Link, Step, StepStatus
from ..storage import Database, Stores
from .context import ExecutionContext, RunAborted
from .hashing import sha256_hex, stable_json
from .llm import LLMClient
from .pool import ConcurrencyPool

if TYPE_CHECKING:
    from ..documents.registry import DocumentTypeRegistry
    from ..services import TerminologyClient, ValidatorClient

logger = logging.getLogger(__name__)


class JobNotFoundError(ValueError):
    """No job with the given id."""


class JobBlockedError(ValueError):
    """The job is waiting on dependencies and cannot start."""


class JobScheduler:
    """
    Owns the store, the shared concurrency pool and the service clients,
    and drives jobs through their lifecycle.

    Lifecycle:
        created --(depends_on)--> blocked --(deps done)--> queued
        queued --> running --> done | failed
        running --(process restart)--> paused

    Usage:
        scheduler = JobScheduler(load_settings())
        await scheduler.start()

        job = await scheduler.create_job("narrative", {"sketch": "..."})
        await scheduler.start_job(job.id)

        await scheduler.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional["DocumentTypeRegistry"] = None,
        *,
        llm: Optional[LLMClient] = None,
        terminology: Optional["TerminologyClient"] = None,
        validator: Optional["ValidatorClient"] = None,
    ):
        self.settings = settings or Settings()
        if registry is None:
            from ..documents import build_registry
            registry = build_registry()
        self.registry = registry

        self.database = Database(self.settings.db_path)
        self.stores: Optional[Stores] = None
        self.pool = ConcurrencyPool(self.settings.llm.max_concurrency)
        self.llm = llm
        self.terminology = terminology
        self.validator = validator
        self._owned_clients: list[Any] = []

        # State
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._active_jobs: set[tuple[str, int]] = set()
        self._lock = asyncio.Lock()

        # Callbacks
        self._callbacks: dict[str, list[Callable]] = {
            "job_created": [],
            "job_started": [],
            "job_completed": [],
            "job_failed": [],
            "job_unblocked": [],
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Open the store, build service clients and recover interrupted jobs."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting scheduler...")
        await self.database.connect()
        self.stores = Stores.from_database(self.database)

        from ..services import TerminologyClient, ValidatorClient

        services = self.settings.services
        if self.llm is None:
            self.llm = LLMClient(self.settings.llm, pool=self.pool)
            self._owned_clients.append(self.llm)
        if self.terminology is None:
            self.terminology = TerminologyClient(
                services.validation_services_url, timeout=services.terminology_timeout
            )
            self._owned_clients.append(self.terminology)
        if self.validator is None:
            self.validator = ValidatorClient(
                services.validation_services_url, timeout=services.validator_timeout
            )
            self._owned_clients.append(self.validator)

        interrupted = await self.stores.jobs.mark_interrupted()
        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted job(s) as paused")

        self._running = True
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the worker, wait for in-flight runs and close everything."""
        if not self._running:
            return

        logger.info("Stopping scheduler...")
        self._running = False
        await self.stop_background_worker()
        await self.wait_idle()

        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients.clear()

        await self.database.close()
        logger.info("Scheduler stopped")

    async def start_background_worker(self) -> None:
        """Start the worker that picks up queued jobs."""
        if self._worker_task and not self._worker_task.done():
            logger.warning("Background worker already running")
            return

        self._worker_task = asyncio.create_task(self._worker_loop())
        logger.info("Background worker started")

    async def stop_background_worker(self) -> None:
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
            logger.info("Background worker stopped")

    async def _worker_loop(self) -> None:
        while self._running:
            try:
                await self._process_queued_jobs()
                await asyncio.sleep(self.settings.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}")
                await asyncio.sleep(5)

    async def _process_queued_jobs(self) -> None:
        """Start queued jobs up to the concurrency limit."""
        free = self.settings.max_concurrent_jobs - len(self._active_jobs)
        if free <= 0:
            return

        active_ids = {job_id for job_id, _ in self._active_jobs}
        for job in await self.stores.jobs.list_by_status(JobStatus.QUEUED, limit=free):
            if job.id not in active_ids:
                self._spawn(self.start_job(job.id))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run `coro` as a tracked background task."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background job task failed: {task.exception()}")

    async def wait_idle(self) -> None:
        """Wait until every spawned job run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Job management
    # -------------------------------------------------------------------------

    async def create_job(
        self,
        type: str,
        inputs: dict[str, Any],
        title: Optional[str] = None,
        depends_on: Optional[list[str]] = None,
        tags: Optional[dict[str, Any]] = None,
    ) -> Job:
        """
        Create a job and trigger any jobs that became ready.

        Args:
            type: Document type tag (must be registered)
            inputs: Type-specific inputs, validated by the registry
            title: Display title (derived from the inputs if omitted)
            depends_on: Jobs that must be done before this one may start
            tags: Free-form tags

        Returns:
            The created job (blocked when it has dependencies, else queued)

        Raises:
            ValueError: Unknown type or invalid inputs
            JobNotFoundError: A dependency does not exist
        """
        definition = self.registry.get(type)
        validated = self.registry.validate_inputs(type, inputs)
        depends_on = list(depends_on or [])
        for dep_id in depends_on:
            if await self.stores.jobs.get(dep_id) is None:
                raise JobNotFoundError(f"Dependency {dep_id} not found")

        title = title or definition.default_title(validated)
        nonce = f"{time.time_ns()}:{secrets.token_hex(8)}"
        job = Job(
            id="job:" + sha256_hex(f"{type}:{title}:{stable_json(validated)}:{nonce}"),
            title=title,
            type=type,
            inputs=validated,
            status=JobStatus.BLOCKED if depends_on else JobStatus.QUEUED,
            depends_on=depends_on,
            tags=dict(tags or {}),
        )
        await self.stores.jobs.create(job)
        await self._emit("job_created", job)
        logger.info(f"Created {type} job {job.id}: {title} ({job.status})")

        await self.trigger_ready_jobs()
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.stores.jobs.get(job_id)

    async def require_job(self, job_id: str) -> Job:
        job = await self.stores.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        return await self.stores.jobs.list_all(status=status, limit=limit, offset=offset)

    async def list_steps(self, job_id: str, prefix: Optional[str] = None) -> list[Step]:
        return await self.stores.steps.list_by_job(job_id, prefix=prefix)

    async def list_artifacts(self, job_id: str, kind: Optional[str] = None) -> list[Artifact]:
        return await self.stores.artifacts.list_by_job(job_id, kind)

    async def list_links(self, job_id: str, role: Optional[str] = None) -> list[Link]:
        return await self.stores.links.list_by_job(job_id, role)

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job with its steps, artifacts and links."""
        job = await self.stores.jobs.get(job_id)
        if not job:
            return False

        await self.stores.links.delete_by_job(job_id)
        await self.stores.artifacts.delete_by_job(job_id)
        await self.stores.steps.delete_by_job(job_id)
        await self.stores.jobs.delete(job_id)

        logger.info(f"Deleted job {job_id}")
        return True

    async def start_job(self, job_id: str) -> Job:
        """
        Run a job's pipeline to completion.

        No-op for running or done jobs.

        Raises:
            JobNotFoundError: No such job
            JobBlockedError: The job is waiting on dependencies
        """
        job = await self.require_job(job_id)
        if job.status == JobStatus.BLOCKED:
            raise JobBlockedError(f"Job {job_id} is blocked on {job.depends_on}")
        if job.status in (JobStatus.RUNNING, JobStatus.DONE):
            logger.debug(f"Job {job_id} is {job.status}, not starting")
            return job

        started = await self.stores.jobs.transition(
            job_id,
            [JobStatus.QUEUED, JobStatus.FAILED, JobStatus.PAUSED],
            JobStatus.RUNNING,
        )
        if not started:
            # Someone else started (or deleted) it in the meantime
            return await self.stores.jobs.get(job_id) or job

        job = await self.require_job(job_id)
        await self._run_pipeline(job)
        return await self.stores.jobs.get(job_id) or job

    async def resume_job(self, job_id: str) -> Job:
        """Explicitly restart a paused or failed job; cached steps replay."""
        job = await self.require_job(job_id)
        if job.status not in (JobStatus.PAUSED, JobStatus.FAILED):
            raise ValueError(f"Job {job_id} is {job.status}, only paused or failed jobs resume")
        return await self.start_job(job_id)

    async def rerun_job(self, job_id: str) -> Job:
        """
        Start a new epoch of a job.

        Any in-flight execution of the previous epoch loses its right to
        write. Artifacts and links are deleted; completed steps stay cached,
        so unchanged work replays instantly.
        """
        job = await self.require_job(job_id)
        if job.status == JobStatus.BLOCKED:
            raise JobBlockedError(f"Job {job_id} is blocked on {job.depends_on}")

        epoch = await self.stores.jobs.increment_run_count(job_id)
        await self.stores.artifacts.delete_by_job(job_id)
        await self.stores.links.delete_by_job(job_id)
        await self.stores.steps.reset(
            job_id,
            statuses=[StepStatus.FAILED, StepStatus.PENDING, StepStatus.RUNNING],
        )
        await self.stores.jobs.update_status(job_id, JobStatus.QUEUED)
        logger.info(f"Rerunning job {job_id} as run {epoch}")

        return await self.start_job(job_id)

    async def clear_cache(
        self,
        job_id: str,
        predicate: Optional[Callable[[Step], bool]] = None,
    ) -> int:
        """
        Reset matching steps to pending so the next start recomputes them.

        Artifacts are left alone.

        Returns:
            Number of steps reset
        """
        await self.require_job(job_id)
        steps = await self.stores.steps.list_by_job(job_id)
        keys = [s.key for s in steps if predicate is None or predicate(s)]
        if not keys:
            return 0
        count = await self.stores.steps.reset(job_id, keys=keys)
        logger.info(f"Cleared {count} cached step(s) of job {job_id}")
        return count

    async def trigger_ready_jobs(self) -> list[str]:
        """
        Start every blocked job whose dependencies are all done.

        The blocked -> queued move is a compare-and-set, so concurrent
        callers start each job at most once.

        Returns:
            Ids of the jobs this call unblocked
        """
        unblocked = []
        for job in await self.stores.jobs.list_by_status(JobStatus.BLOCKED, limit=1000):
            if not await self._dependencies_done(job):
                continue
            if not await self.stores.jobs.transition(job.id, [JobStatus.BLOCKED], JobStatus.QUEUED):
                continue

            logger.info(f"Dependencies of job {job.id} are done, starting it")
            unblocked.append(job.id)
            await self._emit("job_unblocked", job)
            self._spawn(self.start_job(job.id))
        return unblocked

    async def _dependencies_done(self, job: Job) -> bool:
        for dep_id in job.depends_on:
            dep = await self.stores.jobs.get(dep_id)
            if dep is None or dep.status != JobStatus.DONE:
                return False
        return True

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def build_context(self, job: Job) -> ExecutionContext:
        return ExecutionContext(
            self.stores,
            job,
            self.llm,
            terminology=self.terminology,
            validator=self.validator,
            settings=self.settings,
            scheduler=self,
        )

    async def _run_pipeline(self, job: Job) -> None:
        definition = self.registry.get(job.type)
        ctx = self.build_context(job)
        run_id = (job.id, ctx.epoch)

        async with self._lock:
            self._active_jobs.add(run_id)

        try:
            await self._emit("job_started", job)
            logger.info(f"Job {job.id} run {ctx.epoch} started")

            for phase in definition.build_pipeline():
                logger.debug(f"Job {job.id}: phase {phase.name}")
                await phase.run(ctx)

        except RunAborted as e:
            logger.info(f"Job {job.id} run {ctx.epoch} aborted: {e}")
            return

        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}", exc_info=True)
            failed = await self.stores.jobs.update_status(
                job.id, JobStatus.FAILED, last_error=str(e), epoch=ctx.epoch
            )
            if failed:
                await self._emit("job_failed", job)
            return

        finally:
            async with self._lock:
                self._active_jobs.discard(run_id)

        if await self.stores.jobs.update_status(job.id, JobStatus.DONE, epoch=ctx.epoch):
            logger.info(f"Job {job.id} run {ctx.epoch} done")
            await self._emit("job_completed", job)
            await self.trigger_ready_jobs()

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "active_jobs": len(self._active_jobs),
            "max_concurrent": self.settings.max_concurrent_jobs,
            "jobs_by_status": await self.stores.jobs.count_by_status(),
            "document_types": self.registry.types(),
            "pool": {
                "limit": self.pool.limit,
                "active": self.pool.active,
                "waiting": self.pool.waiting,
            },
        }

    # -------------------------------------------------------------------------
    # Event System
    # -------------------------------------------------------------------------

    def on(self, event: str, callback: Callable) -> None:
        """
        Register a callback for an event.

        Events:
            - job_created: (job: Job)
            - job_started: (job: Job)
            - job_completed: (job: Job)
            - job_failed: (job: Job)
            - job_unblocked: (job: Job)
        """
        if event in self._callbacks:
            self._callbacks[event].append(callback)
        else:
            logger.warning(f"Unknown event: {event}")

    def off(self, event: str, callback: Callable) -> None:
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} callback: {e}")
