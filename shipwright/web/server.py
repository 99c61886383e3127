"""Shipwright Web Server - FastAPI backend for workflows and memories."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..config.loader import load_config
from ..config.models import ShipwrightConfig
from ..core.exceptions import ConfigurationError, NotFoundError, RepositoryBusyError
from ..core.plan import ImplementationPlan
from ..core.workflow_state import Workflow
from ..memory.models import (
    MemoryFilter,
    MemoryRecord,
    MemoryStatistics,
    MemoryUpdate,
)
from ..memory.pruning import MemoryPruneJob
from ..memory.service import MemoryService, repository_identity
from ..memory.validator import RepositoryValidationReport, ValidationResult
from ..orchestrator.controller import OrchestrationController
from ..services import Services, build_services

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


# Request models
class StartWorkflowRequest(BaseModel):
    """Start a workflow for a repository."""

    requirements: str
    repository_path: str
    max_iterations: Optional[int] = Field(default=None, ge=1)
    use_memory: bool = True
    store_new_memories: bool = True


class CreateMemoryRequest(BaseModel):
    """Record a fact about a repository."""

    repository_path: str
    subject: str
    fact: str
    citations: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    created_by_user_id: Optional[str] = None


# Response models
class PruneResult(BaseModel):
    repository_id: Optional[str] = None
    pruned: int


def _controller(request: Request) -> OrchestrationController:
    return request.app.state.services.controller


def _memory(request: Request) -> MemoryService:
    return request.app.state.services.memory_service


def create_app(
    services: Optional[Services] = None,
    config: Optional[ShipwrightConfig] = None,
    run_prune_job: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        services: Pre-built services (default: built from ``config``)
        config: Configuration (default: loaded from disk)
        run_prune_job: Prune expired memories in the background while serving

    Returns:
        Configured FastAPI app
    """
    if services is None:
        services = build_services(config or load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        prune_job = None
        if run_prune_job:
            prune_job = MemoryPruneJob(services.memory_service)
            prune_job.start()
            logger.info("Memory prune job running every %ss", prune_job.interval_seconds)
        try:
            yield
        finally:
            if prune_job is not None:
                prune_job.stop()
            services.controller.shutdown()

    app = FastAPI(
        title="Shipwright",
        description="Phased, memory-assisted code changes driven by a generation assistant",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RepositoryBusyError)
    async def busy_handler(request: Request, exc: RepositoryBusyError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def config_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    _register_workflow_routes(app)
    _register_memory_routes(app)
    return app


def _register_workflow_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.post("/api/workflows", response_model=Workflow, status_code=201)
    def start_workflow(body: StartWorkflowRequest, request: Request) -> Workflow:
        """Start a workflow; it runs in the background."""
        return _controller(request).start(
            body.requirements,
            body.repository_path,
            max_iterations=body.max_iterations,
            use_memory=body.use_memory,
            store_new_memories=body.store_new_memories,
        )

    @app.get("/api/workflows", response_model=List[Workflow])
    def list_workflows(request: Request, active: bool = False) -> List[Workflow]:
        controller = _controller(request)
        return controller.list_active() if active else controller.list_all()

    @app.get("/api/workflows/{workflow_id}", response_model=Workflow)
    def get_workflow(workflow_id: str, request: Request) -> Workflow:
        return _controller(request).get(workflow_id)

    @app.get("/api/workflows/{workflow_id}/plan", response_model=ImplementationPlan)
    def get_plan(workflow_id: str, request: Request) -> ImplementationPlan:
        plan = _controller(request).get_plan(workflow_id)
        if plan is None:
            raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} has no plan yet")
        return plan

    @app.get("/api/workflows/{workflow_id}/events")
    def stream_events(workflow_id: str, request: Request) -> StreamingResponse:
        """Stream workflow events using Server-Sent Events.

        The first event describes the current state; the stream ends after
        the workflow reaches a final state.
        """
        subscription = _controller(request).stream_events(workflow_id)

        def event_generator() -> Iterator[str]:
            try:
                while not subscription.finished:
                    event = subscription.next_event(timeout=KEEPALIVE_SECONDS)
                    if event is None:
                        yield ": heartbeat\n\n"
                        continue
                    payload = json.dumps(event.model_dump(mode="json"))
                    yield f"event: {event.type.value}\ndata: {payload}\n\n"
            finally:
                subscription.close()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/api/workflows/{workflow_id}/abort", response_model=Workflow)
    def abort_workflow(workflow_id: str, request: Request) -> Workflow:
        return _controller(request).abort(workflow_id)

    @app.post("/api/workflows/{workflow_id}/retry", response_model=Workflow)
    def retry_workflow(workflow_id: str, request: Request) -> Workflow:
        return _controller(request).retry(workflow_id)

    @app.post("/api/workflows/{workflow_id}/skip", response_model=Workflow)
    def skip_workflow(workflow_id: str, request: Request) -> Workflow:
        return _controller(request).skip(workflow_id)


def _register_memory_routes(app: FastAPI) -> None:
    @app.get("/api/memories", response_model=List[MemoryRecord])
    def list_memories(
        request: Request,
        repository: str,
        query: Optional[str] = None,
        subject: Optional[str] = None,
        file: Optional[str] = None,
        include_expired: bool = False,
        limit: int = Query(default=20, ge=1),
    ) -> List[MemoryRecord]:
        """List memories of a repository, most recently relevant first."""
        service = _memory(request)
        repository_id = repository_identity(repository)
        if query:
            return service.search(repository_id, query, limit=limit)
        return service.list(
            repository_id,
            MemoryFilter(
                subject_contains=subject,
                affects_file=file,
                include_expired=include_expired,
                max_results=limit,
            ),
        )

    @app.post("/api/memories", response_model=MemoryRecord, status_code=201)
    def create_memory(body: CreateMemoryRequest, request: Request) -> MemoryRecord:
        return _memory(request).create(
            repository_identity(body.repository_path),
            subject=body.subject,
            fact=body.fact,
            citations=body.citations,
            reason=body.reason,
            created_by_user_id=body.created_by_user_id,
        )

    @app.get("/api/memories/statistics", response_model=MemoryStatistics)
    def memory_statistics(request: Request, repository: str) -> MemoryStatistics:
        return _memory(request).statistics(repository_identity(repository))

    @app.post("/api/memories/validate", response_model=RepositoryValidationReport)
    def validate_repository(
        request: Request, repository: str, delete_invalid: bool = False
    ) -> RepositoryValidationReport:
        return _memory(request).validate_repository(
            repository_identity(repository), delete_invalid=delete_invalid
        )

    @app.post("/api/memories/prune", response_model=PruneResult)
    def prune_memories(request: Request, repository: Optional[str] = None) -> PruneResult:
        repository_id = repository_identity(repository) if repository else None
        return PruneResult(
            repository_id=repository_id, pruned=_memory(request).prune(repository_id)
        )

    @app.get("/api/memories/{memory_id}", response_model=MemoryRecord)
    def get_memory(memory_id: str, request: Request) -> MemoryRecord:
        return _memory(request).get(memory_id)

    @app.patch("/api/memories/{memory_id}", response_model=MemoryRecord)
    def update_memory(memory_id: str, body: MemoryUpdate, request: Request) -> MemoryRecord:
        return _memory(request).update(memory_id, body)

    @app.delete("/api/memories/{memory_id}", status_code=204)
    def delete_memory(memory_id: str, request: Request) -> None:
        _memory(request).delete(memory_id)

    @app.post("/api/memories/{memory_id}/validate", response_model=ValidationResult)
    def validate_memory(memory_id: str, request: Request) -> ValidationResult:
        return _memory(request).validate(memory_id)

    @app.post("/api/memories/{memory_id}/refresh", response_model=MemoryRecord)
    def refresh_memory(memory_id: str, request: Request) -> MemoryRecord:
        return _memory(request).refresh(memory_id)


def run_server(
    host: str = "127.0.0.1",
    port: int = 8000,
    reload: bool = False,
    config: Optional[ShipwrightConfig] = None,
) -> None:
    """Run the web server.

    With ``reload`` the app is rebuilt from on-disk configuration by the
    reloader, so ``config`` only applies without it.
    """
    import uvicorn

    if not reload:
        uvicorn.run(create_app(config=config), host=host, port=port, log_level="info")
        return

    uvicorn.run(
        "shipwright.web.server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )
