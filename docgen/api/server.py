"""FastAPI server for driving and inspecting document jobs."""

from typing import Optional, Any
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import uvicorn
import json

from ..config import load_settings
from ..engine.scheduler import JobBlockedError, JobNotFoundError, JobScheduler
from ..models import Job, JobStatus

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[JobScheduler] = None


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    """Request to create a new job."""
    type: str
    inputs: dict[str, Any] = {}
    title: Optional[str] = None
    depends_on: list[str] = []
    tags: dict[str, Any] = {}


class ClearCacheRequest(BaseModel):
    """Request to drop memoized steps of a job."""
    prefix: Optional[str] = None
    """Only steps whose key starts with this prefix (all steps if omitted)."""


class JobResponse(BaseModel):
    """Job response model."""
    id: str
    title: str
    type: str
    inputs: dict
    status: str
    depends_on: list[str]
    tags: dict
    last_error: Optional[str]
    run_count: int
    created_at: str
    updated_at: str


class StatsResponse(BaseModel):
    """Scheduler statistics response."""
    running: bool
    active_jobs: int
    max_concurrent: int
    jobs_by_status: dict[str, int]
    document_types: list[str]
    pool: dict[str, int]


# -------------------------------------------------------------------------
# WebSocket Connection Manager
# -------------------------------------------------------------------------

class ConnectionManager:
    """Fans job lifecycle events out to WebSocket clients."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        if not self.active_connections:
            return

        message_json = json.dumps(message, default=str)
        for connection in self.active_connections.copy():
            try:
                await connection.send_text(message_json)
            except Exception as e:
                logger.warning(f"Error sending WebSocket message: {e}")
                self.disconnect(connection)


manager = ConnectionManager()


def _job_event(event: str):
    async def callback(job: Job):
        await manager.broadcast({
            "event": event,
            "job_id": job.id,
            "status": job.status,
            "error": job.last_error,
        })
    return callback


JOB_EVENTS = ("job_created", "job_started", "job_completed", "job_failed", "job_unblocked")


# -------------------------------------------------------------------------
# App Lifecycle
# -------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the scheduler and its worker; stop both on shutdown."""
    global scheduler

    logger.info("Starting docgen API server...")
    if scheduler is None:
        scheduler = JobScheduler(load_settings())
    await scheduler.start()

    for event in JOB_EVENTS:
        scheduler.on(event, _job_event(event))

    await scheduler.start_background_worker()
    logger.info("docgen API server started")

    yield

    logger.info("Shutting down docgen API server...")
    await scheduler.stop()
    scheduler = None
    logger.info("docgen API server stopped")


def _require_scheduler() -> JobScheduler:
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler


def _http_error(e: ValueError) -> HTTPException:
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, JobBlockedError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=422, detail=str(e))


# -------------------------------------------------------------------------
# App Factory
# -------------------------------------------------------------------------

def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Clinical docgen API",
        description="Jobs, steps and artifacts of the clinical document generator",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Health and stats
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/api/stats", response_model=StatsResponse)
    async def get_stats():
        """Get scheduler statistics."""
        return await _require_scheduler().get_stats()

    @app.get("/api/document-types")
    async def list_document_types():
        return _require_scheduler().registry.types()

    # -------------------------------------------------------------------------
    # Job Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/jobs", response_model=list[JobResponse])
    async def list_jobs(
        status: Optional[str] = Query(None, description="Filter by status"),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        """List jobs, newest first."""
        try:
            status_enum = JobStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status: {status}")
        jobs = await _require_scheduler().list_jobs(status=status_enum, limit=limit, offset=offset)
        return [_job_to_response(j) for j in jobs]

    @app.post("/api/jobs", response_model=JobResponse, status_code=201)
    async def create_job(request: CreateJobRequest):
        """Create a job; it is queued, or blocked until its dependencies are done."""
        try:
            job = await _require_scheduler().create_job(
                request.type,
                request.inputs,
                title=request.title,
                depends_on=request.depends_on,
                tags=request.tags,
            )
        except ValueError as e:
            raise _http_error(e)
        return _job_to_response(job)

    @app.get("/api/jobs/{job_id}", response_model=JobResponse)
    async def get_job(job_id: str):
        job = await _require_scheduler().get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job_to_response(job)

    @app.delete("/api/jobs/{job_id}")
    async def delete_job(job_id: str):
        """Delete a job with its steps, artifacts and links."""
        success = await _require_scheduler().delete_job(job_id)
        if not success:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"deleted": True}

    @app.post("/api/jobs/{job_id}/start", response_model=JobResponse)
    async def start_job(job_id: str):
        """Run a job now and return it once the run ends."""
        try:
            job = await _require_scheduler().start_job(job_id)
        except ValueError as e:
            raise _http_error(e)
        return _job_to_response(job)

    @app.post("/api/jobs/{job_id}/rerun", response_model=JobResponse)
    async def rerun_job(job_id: str):
        """Start a new epoch, keeping completed steps as cache."""
        try:
            job = await _require_scheduler().rerun_job(job_id)
        except ValueError as e:
            raise _http_error(e)
        return _job_to_response(job)

    @app.post("/api/jobs/{job_id}/resume", response_model=JobResponse)
    async def resume_job(job_id: str):
        """Continue a paused or failed job."""
        try:
            job = await _require_scheduler().resume_job(job_id)
        except ValueError as e:
            raise _http_error(e)
        return _job_to_response(job)

    @app.post("/api/jobs/{job_id}/clear-cache")
    async def clear_cache(job_id: str, request: ClearCacheRequest):
        """Drop memoized steps so the next run recomputes them."""
        s = _require_scheduler()
        try:
            await s.require_job(job_id)
        except ValueError as e:
            raise _http_error(e)
        prefix = request.prefix
        cleared = await s.clear_cache(
            job_id, (lambda step: step.key.startswith(prefix)) if prefix else None
        )
        return {"cleared": cleared}

    @app.post("/api/jobs/trigger")
    async def trigger_ready_jobs():
        """Queue and start blocked jobs whose dependencies are done."""
        started = await _require_scheduler().trigger_ready_jobs()
        return {"triggered": started}

    # -------------------------------------------------------------------------
    # Provenance Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/jobs/{job_id}/steps")
    async def list_job_steps(job_id: str, prefix: Optional[str] = Query(None)):
        steps = await _require_scheduler().list_steps(job_id, prefix=prefix)
        return [s.model_dump(mode="json") for s in steps]

    @app.get("/api/jobs/{job_id}/artifacts")
    async def list_job_artifacts(job_id: str, kind: Optional[str] = Query(None)):
        artifacts = await _require_scheduler().list_artifacts(job_id, kind=kind)
        return [a.model_dump(mode="json") for a in artifacts]

    @app.get("/api/jobs/{job_id}/links")
    async def list_job_links(job_id: str, role: Optional[str] = Query(None)):
        links = await _require_scheduler().list_links(job_id, role=role)
        return [l.model_dump(mode="json") for l in links]

    # -------------------------------------------------------------------------
    # WebSocket
    # -------------------------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Push job lifecycle events to the client."""
        await manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                logger.debug(f"Received WebSocket message: {data}")
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


def _job_to_response(job: Job) -> dict:
    """Convert a Job to a response dict."""
    return {
        "id": job.id,
        "title": job.title,
        "type": job.type,
        "inputs": job.inputs,
        "status": job.status,
        "depends_on": job.depends_on,
        "tags": job.tags,
        "last_error": job.last_error,
        "run_count": job.run_count,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


# -------------------------------------------------------------------------
# Main Entry Point
# -------------------------------------------------------------------------

def main():
    """Run the API server."""
    import argparse
    import os

    parser = argparse.ArgumentParser(description="Clinical docgen API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--config", default=None, help="Settings YAML file")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--log-level", default="info", help="Log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if args.config:
        # Read by load_settings() inside the server process
        os.environ["DOCGEN_CONFIG"] = args.config

    uvicorn.run(
        "docgen.api.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
