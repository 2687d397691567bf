"""Sandbox Orchestrator HTTP API."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from sandbox_orchestrator.config import Settings, get_settings
from sandbox_orchestrator.errors import (
    InvalidIdentityError,
    SandboxNotFoundError,
    UnauthorizedError,
    UpstreamError,
)
from sandbox_orchestrator.k8s.client import get_k8s_client
from sandbox_orchestrator.models import (
    CleanupResponse,
    SandboxListResponse,
    SandboxRequest,
    SandboxResponse,
    SandboxStatusResponse,
)
from sandbox_orchestrator.orchestrator import SandboxOrchestrator
from sandbox_orchestrator.sweeper import ExpirySweeper

logger = structlog.get_logger(__name__)


def _orchestrator(request: Request) -> SandboxOrchestrator:
    return request.app.state.orchestrator


def _sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper


def require_api_key(
    request: Request,
    x_api_key: str = Header(default="", alias="X-API-KEY"),
) -> None:
    """Shared-key check for /v1 routes (disabled when no key is configured)."""
    expected = request.app.state.settings.api_key
    if not expected:
        return
    if not x_api_key:
        raise HTTPException(status_code=401, detail="API key is required")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


router = APIRouter(prefix="/v1", dependencies=[Depends(require_api_key)])


# =============================================================================
# Sandbox Endpoints
# =============================================================================


@router.post("/sandbox/{user_id}", status_code=201, response_model=SandboxResponse)
def create_sandbox(
    user_id: str,
    body: Optional[SandboxRequest] = None,
    orchestrator: SandboxOrchestrator = Depends(_orchestrator),
):
    """Create a sandbox for a user."""
    body = body or SandboxRequest()
    try:
        orchestrator.create_sandbox(
            user_id, env_vars=body.env_vars, runtime_env_vars=body.node_env_vars
        )
    except InvalidIdentityError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return SandboxResponse(
        message="Sandbox created successfully",
        user_id=user_id,
        vnc_url=orchestrator.entrypoints.display_url(user_id),
        api_url=orchestrator.entrypoints.api_url(user_id),
    )


@router.delete("/sandbox/{user_id}", response_model=SandboxResponse)
def delete_sandbox(
    user_id: str,
    orchestrator: SandboxOrchestrator = Depends(_orchestrator),
):
    """Delete a user's sandbox (the data volume is kept)."""
    orchestrator.delete_sandbox(user_id)
    return SandboxResponse(message="Sandbox deleted successfully", user_id=user_id)


@router.get("/sandbox/{user_id}/status", response_model=SandboxStatusResponse)
def get_sandbox_status(
    user_id: str,
    orchestrator: SandboxOrchestrator = Depends(_orchestrator),
):
    """Get detailed status of a user's sandbox."""
    try:
        view = orchestrator.get_sandbox_status(user_id)
    except SandboxNotFoundError:
        raise HTTPException(
            status_code=404, detail=f"No sandbox found for user ID: {user_id}"
        )
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return SandboxStatusResponse(
        **view.model_dump(),
        vnc_url=orchestrator.entrypoints.display_url(user_id),
        api_url=orchestrator.entrypoints.api_url(user_id),
    )


@router.get("/sandboxes", response_model=SandboxListResponse)
def list_sandboxes(orchestrator: SandboxOrchestrator = Depends(_orchestrator)):
    """List all sandboxes with their coarse status."""
    try:
        sandboxes = orchestrator.list_sandboxes()
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return SandboxListResponse(count=len(sandboxes), sandboxes=sandboxes)


# =============================================================================
# Admin Endpoints
# =============================================================================


@router.post("/admin/cleanup", response_model=CleanupResponse)
def trigger_cleanup(
    minutes: Optional[str] = None,
    auth: Optional[str] = None,
    sweeper: ExpirySweeper = Depends(_sweeper),
):
    """Delete every sandbox older than ``minutes`` (requires the cleanup token)."""
    if not minutes:
        raise HTTPException(status_code=400, detail="Minutes parameter is required")
    try:
        minutes_value = int(minutes)
    except ValueError:
        minutes_value = 0
    if minutes_value <= 0:
        raise HTTPException(
            status_code=400, detail="Minutes must be a positive integer"
        )
    if not auth:
        raise HTTPException(status_code=400, detail="Auth token is required")

    try:
        count = sweeper.sweep_on_demand(timedelta(minutes=minutes_value), auth)
    except UnauthorizedError:
        raise HTTPException(
            status_code=401, detail="Unauthorized: Invalid auth token"
        )
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return CleanupResponse(
        message="Cleanup triggered successfully",
        duration=f"{minutes_value} minutes",
        count=count,
    )


# =============================================================================
# App Factory
# =============================================================================


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[SandboxOrchestrator] = None,
    sweeper: Optional[ExpirySweeper] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        orch = orchestrator or SandboxOrchestrator(get_k8s_client(settings), settings)
        app_.state.orchestrator = orch
        app_.state.sweeper = sweeper or ExpirySweeper(orch, settings)

        stop_event = asyncio.Event()
        task = None
        if settings.auto_cleanup_enabled:
            task = app_.state.sweeper.start(stop_event)

        logger.info(
            "sandbox_orchestrator_starting",
            namespace=orch.namespace,
            entrypoint_style=settings.entrypoint_style,
        )
        yield

        stop_event.set()
        if task is not None:
            await task
        logger.info("sandbox_orchestrator_stopping")

    app = FastAPI(
        title="Sandbox Orchestrator",
        description="Provision, inspect and reclaim per-user sandboxes on Kubernetes",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics():
        """Prometheus metrics endpoint."""
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router)
    return app
