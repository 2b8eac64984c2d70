"""
Human-in-the-loop endpoints for Cowork API.

Answers to the approval and clarification requests that backends raise
mid-run. Requests are announced on the session's SSE stream as
``approval_request`` and ``clarification_request`` events.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ...services.session_runner import SessionRunner
from ..deps import get_runner
from ..models import ApprovalRequest, ClarificationRequest, ResolutionResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["permissions"])


@router.post("/permissions/{tool_use_id}", response_model=ResolutionResponse)
async def answer_approval(
    tool_use_id: str,
    request: ApprovalRequest,
    runner: SessionRunner = Depends(get_runner),
) -> ResolutionResponse:
    """Resolve a pending tool-use approval. Unknown or answered ids give 404."""
    if not runner.answer_approval(tool_use_id, request.result):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending approval: {tool_use_id}",
        )
    return ResolutionResponse(id=tool_use_id, resolved=True)


@router.post("/questions/{question_id}", response_model=ResolutionResponse)
async def answer_clarification(
    question_id: str,
    request: ClarificationRequest,
    runner: SessionRunner = Depends(get_runner),
) -> ResolutionResponse:
    """Resolve a pending clarification. Unknown or answered ids give 404."""
    if not runner.answer_clarification(question_id, request.answer):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending question: {question_id}",
        )
    return ResolutionResponse(id=question_id, resolved=True)
