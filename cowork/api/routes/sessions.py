"""
Session management endpoints for Cowork API.

Provides endpoints for:
- POST /sessions - Create session, optionally queueing a first prompt
- GET /sessions - List sessions
- GET /sessions/{id} - Get session details
- DELETE /sessions/{id} - Stop and delete a session
- POST /sessions/{id}/prompts - Queue a prompt
- POST /sessions/{id}/stop - Stop the active run and drop queued prompts
- PUT /sessions/{id}/working-directory - Change the working directory
- PUT /sessions/{id}/allowed-tools - Change the tool allow-list
- GET /sessions/{id}/messages - Conversation messages
- GET /sessions/{id}/trace - Trace steps
- GET /sessions/{id}/events - SSE event stream
"""
import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from ...core.constants import SSE_HEARTBEAT_SECONDS
from ...services.event_stream import STREAM_CLOSED_EVENT_TYPE, EventHub
from ...services.session_runner import SessionRunner
from ..deps import get_hub, get_runner
from ..models import (
    AllowedToolsRequest,
    CreateSessionRequest,
    MessageListResponse,
    PromptAcceptedResponse,
    PromptRequest,
    SessionListResponse,
    SessionResponse,
    StopResponse,
    TraceResponse,
    WorkingDirectoryRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def session_to_response(runner: SessionRunner, session) -> SessionResponse:
    """Convert a Session to SessionResponse with its live queue length."""
    return SessionResponse.from_session(session, runner.queued_count(session.id))


# =============================================================================
# Session CRUD
# =============================================================================

@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    runner: SessionRunner = Depends(get_runner),
) -> SessionResponse:
    """
    Create a new session.

    If a prompt is given it is queued right away and starts running in
    the background.
    """
    session = await runner.create_session(
        title=request.title,
        working_directory=request.working_directory,
        allowed_tool_names=request.allowed_tool_names,
        provider=request.provider,
        prompt=request.prompt,
    )
    logger.info(f"Created session {session.id} (provider={session.provider})")
    return session_to_response(runner, session)


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    runner: SessionRunner = Depends(get_runner),
) -> SessionListResponse:
    """List sessions, newest first."""
    sessions, total = await runner.list_sessions(limit=limit, offset=offset)
    return SessionListResponse(
        sessions=[session_to_response(runner, s) for s in sessions],
        total=total,
    )


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    runner: SessionRunner = Depends(get_runner),
) -> SessionResponse:
    """Get session details."""
    session = await runner.get_session(session_id)
    return session_to_response(runner, session)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    runner: SessionRunner = Depends(get_runner),
    hub: EventHub = Depends(get_hub),
) -> None:
    """Stop any active run and delete the session with its history."""
    deleted = await runner.delete_session(session_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session not found: {session_id}",
        )
    hub.close_session(session_id)
    logger.info(f"Deleted session {session_id}")


# =============================================================================
# Prompts and run control
# =============================================================================

@router.post(
    "/{session_id}/prompts",
    response_model=PromptAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_prompt(
    session_id: str,
    request: PromptRequest,
    runner: SessionRunner = Depends(get_runner),
) -> PromptAcceptedResponse:
    """
    Queue a prompt for the session.

    Prompts run one at a time in submission order. Progress arrives on
    GET /sessions/{id}/events.
    """
    if not request.prompt.strip() and not request.content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Prompt must not be empty",
        )
    await runner.get_session(session_id)
    queued = runner.enqueue(session_id, request.prompt, request.content)
    return PromptAcceptedResponse(
        session_id=session_id,
        queued=queued,
        running=runner.is_running(session_id),
    )


@router.post("/{session_id}/stop", response_model=StopResponse)
async def stop_session(
    session_id: str,
    runner: SessionRunner = Depends(get_runner),
) -> StopResponse:
    """Cancel the active run, deny pending approvals and drop queued prompts."""
    await runner.get_session(session_id)
    stopped = await runner.stop(session_id)
    session = await runner.get_session(session_id)
    return StopResponse(session_id=session_id, stopped=stopped, status=session.status)


@router.put("/{session_id}/working-directory", response_model=SessionResponse)
async def update_working_directory(
    session_id: str,
    request: WorkingDirectoryRequest,
    runner: SessionRunner = Depends(get_runner),
) -> SessionResponse:
    """
    Change the working directory.

    The backend session is not resumed afterwards. Returns 409 while a
    run is active.
    """
    session = await runner.update_working_directory(session_id, request.path)
    return session_to_response(runner, session)


@router.put("/{session_id}/allowed-tools", response_model=SessionResponse)
async def update_allowed_tools(
    session_id: str,
    request: AllowedToolsRequest,
    runner: SessionRunner = Depends(get_runner),
) -> SessionResponse:
    """Replace the list of tools that run without an approval request."""
    session = await runner.update_allowed_tools(session_id, request.allowed_tool_names)
    return session_to_response(runner, session)


# =============================================================================
# History
# =============================================================================

@router.get("/{session_id}/messages", response_model=MessageListResponse)
async def get_messages(
    session_id: str,
    runner: SessionRunner = Depends(get_runner),
) -> MessageListResponse:
    """Messages in conversation order."""
    return MessageListResponse(messages=await runner.get_messages(session_id))


@router.get("/{session_id}/trace", response_model=TraceResponse)
async def get_trace(
    session_id: str,
    runner: SessionRunner = Depends(get_runner),
) -> TraceResponse:
    """Trace steps in creation order."""
    return TraceResponse(steps=await runner.get_trace_steps(session_id))


# =============================================================================
# GET /sessions/{id}/events - SSE event stream
# =============================================================================

@router.get("/{session_id}/events")
async def stream_events(
    session_id: str,
    runner: SessionRunner = Depends(get_runner),
    hub: EventHub = Depends(get_hub),
) -> StreamingResponse:
    """
    Stream live session events (SSE).

    Events carry a per-session sequence number as the SSE id. A comment
    heartbeat is sent after SSE_HEARTBEAT_SECONDS without events. The
    stream ends when the session is deleted.
    """
    await runner.get_session(session_id)
    queue = hub.subscribe(session_id)

    async def event_generator():
        """
        Generate SSE events for a session.

        Handles:
        - Normal event streaming from the hub
        - Heartbeats during idle periods
        - Graceful end when the session is deleted
        """
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue

                payload = json.dumps(event, default=str)
                yield f"id: {event.get('sequence')}\n"
                yield f"data: {payload}\n\n"

                if event.get("type") == STREAM_CLOSED_EVENT_TYPE:
                    break

        except Exception as e:
            logger.exception(f"SSE streaming error for session {session_id}")
            error_event = {
                "type": "error",
                "data": {
                    "message": f"Streaming error: {str(e)}",
                    "error_type": "streaming_error",
                },
                "session_id": session_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            yield f"data: {json.dumps(error_event, default=str)}\n\n"

        finally:
            hub.unsubscribe(session_id, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            "Content-Type": "text/event-stream; charset=utf-8",
        },
    )
