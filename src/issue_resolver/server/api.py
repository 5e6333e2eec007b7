"""FastAPI app exposing the session orchestrator."""

from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ..config import ResolverConfig
from ..docker_runtime import DockerCLIRuntime
from ..errors import ContextError, SessionConflictError, StaleRequestError, UnknownSessionError
from ..git_utils import GitCLI
from ..models import Session
from ..orchestrator import SessionOrchestrator
from .models import RespondRequest, SessionInfo, StartSessionRequest, StatusUpdateInfo, UpdatesResponse

TIMEOUT_TICK_SECONDS = 1.0


def _session_info(session: Session) -> SessionInfo:
    with session.lock:
        return SessionInfo(**session.to_dict())


def _start_ticker(orchestrator: SessionOrchestrator, stop: threading.Event, interval: float) -> threading.Thread:
    def _loop() -> None:
        while not stop.wait(interval):
            try:
                orchestrator.check_timeouts()
            except Exception:
                logger.exception("Timeout check failed")

    thread = threading.Thread(target=_loop, daemon=True, name="issue-resolver-ticker")
    thread.start()
    return thread


def create_app(
    orchestrator: Optional[SessionOrchestrator] = None,
    config: Optional[ResolverConfig] = None,
    enable_cors: bool = True,
    tick_seconds: float = TIMEOUT_TICK_SECONDS,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        orchestrator: Orchestrator to expose; built with the Docker and git CLIs when omitted.
        config: Resolver configuration (defaults when omitted).
        enable_cors: Whether to enable CORS.
        tick_seconds: Interval of the approval-timeout checker.

    Returns:
        Configured FastAPI app.
    """
    config = config or (orchestrator.config if orchestrator else ResolverConfig())
    if orchestrator is None:
        orchestrator = SessionOrchestrator(DockerCLIRuntime(), GitCLI(), config=config, background=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = threading.Event()
        thread = _start_ticker(orchestrator, stop, tick_seconds)
        try:
            yield
        finally:
            stop.set()
            thread.join(timeout=tick_seconds * 2)
            orchestrator.shutdown(wait=False)

    app = FastAPI(
        title="GitHub Issue Resolver",
        description="Resolve GitHub issues through an approved plan, a container workspace and a pull request",
        version="1.0.0",
        lifespan=lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.orchestrator = orchestrator
    app.state.config = config

    def _get(session_id: str) -> Session:
        try:
            return orchestrator.get_session(session_id)
        except UnknownSessionError as exc:
            raise HTTPException(status_code=404, detail=str(exc))

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"name": "GitHub Issue Resolver", "version": "1.0.0", "status": "running"}

    @app.post("/api/sessions", response_model=SessionInfo, status_code=201)
    def start_session(body: StartSessionRequest) -> SessionInfo:
        try:
            session = orchestrator.start_session(
                body.issue_url,
                credentials=body.github_token,
                workspace_root=Path(body.development_path) if body.development_path else None,
                approval_timeout_seconds=body.approval_timeout_seconds,
            )
        except ContextError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except SessionConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return _session_info(session)

    @app.get("/api/sessions", response_model=list[SessionInfo])
    def list_sessions() -> list[SessionInfo]:
        return [_session_info(session) for session in orchestrator.list_sessions()]

    @app.get("/api/sessions/{session_id}", response_model=SessionInfo)
    def get_session(session_id: str) -> SessionInfo:
        return _session_info(_get(session_id))

    @app.get("/api/sessions/{session_id}/updates", response_model=UpdatesResponse)
    def get_updates(session_id: str, since: int = Query(0, ge=0)) -> UpdatesResponse:
        session = _get(session_id)
        updates = orchestrator.updates(session_id, since=since)
        return UpdatesResponse(
            session_id=session.id,
            status=session.status.value,
            updates=[StatusUpdateInfo(**update.to_dict()) for update in updates],
        )

    @app.post("/api/sessions/{session_id}/responses", response_model=SessionInfo)
    def respond(session_id: str, body: RespondRequest) -> SessionInfo:
        _get(session_id)
        try:
            session = orchestrator.respond(session_id, body.request_id, body.value)
        except StaleRequestError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return _session_info(session)

    @app.post("/api/sessions/{session_id}/cancel", response_model=SessionInfo)
    def cancel(session_id: str) -> SessionInfo:
        _get(session_id)
        return _session_info(orchestrator.cancel(session_id))

    return app
