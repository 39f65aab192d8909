"""
Session management API endpoints.

This module exposes the generation pipeline over HTTP: creating a session
schedules its pipeline in the background, clients then poll the session or
its event buffer until it becomes active, and send player turns once it is.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from questforge.config import settings
from questforge.db.manager import DatabaseManager
from questforge.engine.orchestrator import PipelineOrchestrator
from questforge.engine.transport import EventBuffer
from questforge.errors import (
    QuestForgeError,
    SessionNotActive,
    SessionNotFound,
    SessionNotResumable,
)
from questforge.providers import ProviderGateway, create_provider
from questforge.schemas.session import GameSession, SessionPreferences, SessionStatus
from questforge.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Recent events per session, read by GET /{session_id}/events
events = EventBuffer(
    max_events=settings.event_buffer_size, max_sessions=settings.event_buffer_sessions
)


@lru_cache(maxsize=1)
def get_orchestrator() -> PipelineOrchestrator:
    """Build the shared orchestrator on first use"""
    store = DatabaseManager(settings.database_path)
    gateway = ProviderGateway.from_settings(create_provider(settings), settings)
    logger.info(
        f"Pipeline ready: provider={settings.model_provider} model={settings.model_name}"
    )
    return PipelineOrchestrator.from_settings(store, gateway, settings, transport=events)


class SessionCreateRequest(BaseModel):
    """Request to create a new session"""

    preferences: SessionPreferences = Field(default_factory=SessionPreferences)


class SessionResponse(BaseModel):
    """Public view of a session; artifacts are listed by kind only"""

    id: str
    status: str
    artifacts: List[str]
    failure_stage: Optional[str] = None
    turns: int = 0
    running: bool = False

    @classmethod
    def from_session(
        cls, session: GameSession, running: bool = False
    ) -> "SessionResponse":
        return cls(
            id=session.id,
            status=session.status.value,
            artifacts=sorted(session.artifacts),
            failure_stage=session.failure_stage,
            turns=len(session.conversation),
            running=running,
        )


class SessionTurnRequest(BaseModel):
    """A player turn"""

    text: str = Field(..., min_length=1)


def _http_error(error: QuestForgeError) -> HTTPException:
    if isinstance(error, SessionNotFound):
        return HTTPException(status_code=404, detail="Session not found")
    if isinstance(error, (SessionNotResumable, SessionNotActive)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=500, detail="Internal error")


async def _run_pipeline(orchestrator: PipelineOrchestrator, session_id: str) -> None:
    """Background task body; failures are recorded on the session itself"""
    try:
        await orchestrator.resume(session_id)
    except SessionNotResumable as e:
        logger.warning(f"[API] Pipeline for {session_id} not started: {e}")
    except QuestForgeError as e:
        logger.error(
            f"[API] Pipeline for {session_id} aborted: {e}",
            extra={"component": "API", "session_id": session_id},
            exc_info=True,
        )


@router.post("/", response_model=SessionResponse, status_code=202)
async def create_session(
    request: SessionCreateRequest,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Create a new session and start generating its content.

    The response returns immediately with status `initializing`; poll
    GET /sessions/{id} or its events to follow progress.
    """
    session = await orchestrator.create_session(
        request.preferences.model_dump(exclude_none=True)
    )
    background_tasks.add_task(_run_pipeline, orchestrator, session.id)
    logger.info(f"[API] Session {session.id} created, pipeline scheduled")
    return SessionResponse.from_session(session)


@router.get("/")
async def list_sessions(
    limit: int = 50,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """List recent sessions"""
    return {"sessions": orchestrator.store.list_sessions(limit=limit)}


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Get a session's status and the artifact kinds generated so far"""
    try:
        session = orchestrator.store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    return SessionResponse.from_session(
        session, running=orchestrator.is_running(session_id)
    )


@router.get("/{session_id}/artifacts")
async def get_artifacts(
    session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Get the generated content of a session"""
    try:
        session = orchestrator.store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    return {"id": session.id, "artifacts": session.artifacts}


@router.get("/{session_id}/events")
async def get_events(
    session_id: str,
    after: int = 0,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Get buffered progress events newer than `after`"""
    try:
        orchestrator.store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    return {"events": events.events(session_id, after=after)}


@router.post("/{session_id}/resume", response_model=SessionResponse, status_code=202)
async def resume_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Resume an interrupted or cancelled pipeline"""
    try:
        session = orchestrator.store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    if session.status == SessionStatus.FAILED:
        raise _http_error(
            SessionNotResumable(f"Session {session_id} failed; retry it instead")
        )
    if orchestrator.is_running(session_id):
        raise _http_error(
            SessionNotResumable(f"Session {session_id} pipeline is already running")
        )
    background_tasks.add_task(_run_pipeline, orchestrator, session_id)
    return SessionResponse.from_session(session)


@router.post("/{session_id}/retry", response_model=SessionResponse, status_code=202)
async def retry_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Retry a failed session from the stage that failed"""
    try:
        session = orchestrator.store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    if session.status != SessionStatus.FAILED:
        raise _http_error(
            SessionNotResumable(
                f"Only failed sessions can be retried (status: {session.status.value})"
            )
        )

    async def _retry() -> None:
        try:
            await orchestrator.retry(session_id)
        except QuestForgeError as e:
            logger.error(f"[API] Retry of {session_id} aborted: {e}", exc_info=True)

    background_tasks.add_task(_retry)
    return SessionResponse.from_session(session)


@router.post("/{session_id}/cancel")
async def cancel_session(
    session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Ask a running pipeline to stop at the next stage boundary"""
    try:
        orchestrator.store.get_session(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    return {"id": session_id, "cancelled": orchestrator.cancel(session_id)}


@router.post("/{session_id}/turns", response_model=SessionResponse)
async def player_turn(
    session_id: str,
    request: SessionTurnRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Record a player turn in an active session"""
    try:
        session = await orchestrator.handle_player_turn(session_id, request.text)
    except (SessionNotFound, SessionNotActive) as e:
        raise _http_error(e)
    return SessionResponse.from_session(session)


@router.post("/{session_id}/end", response_model=SessionResponse)
async def end_session(
    session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Mark an active session as completed"""
    try:
        session = await orchestrator.end_session(session_id)
    except (SessionNotFound, SessionNotActive) as e:
        raise _http_error(e)
    return SessionResponse.from_session(session)
