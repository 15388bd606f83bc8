from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from api.models import ConversationRef, NavigateRequest, SubmitAnswerRequest
from api.sessions import ConversationRegistry
from flowform.conversation.state import ConversationSession

router = APIRouter(prefix="/v1/api/conversations", tags=["conversations"])


def _registry(request: Request) -> ConversationRegistry:
    return request.app.state.conversations


def _payload(registry: ConversationRegistry, session: ConversationSession) -> Dict[str, Any]:
    report = registry.flush(session)
    out = {"ok": True, **session.snapshot(), "saved": report.ok}
    if session.queue is not None and len(session.queue):
        out["pendingWrites"] = len(session.queue)
    return out


@router.post("/answer")
async def submit_answer(body: SubmitAnswerRequest, request: Request) -> Dict[str, Any]:
    registry = _registry(request)
    session = registry.get(body.response_id, body.block_id)
    result = await session.submit_answer(body.turn_index, body.answer)
    out = _payload(registry, session)
    out.update(
        {
            "edited": result.edited,
            "advance": result.advance,
            "usedFallback": result.used_fallback,
        }
    )
    return out


@router.post("/navigate")
async def navigate(body: NavigateRequest, request: Request) -> Dict[str, Any]:
    registry = _registry(request)
    session = registry.get(body.response_id, body.block_id)
    session.navigate_to(body.turn_index)
    return _payload(registry, session)


@router.post("/leave")
async def leave(body: ConversationRef, request: Request) -> Dict[str, Any]:
    """Respondent moved to another block; any in-flight question is dropped."""
    registry = _registry(request)
    session = registry.get(body.response_id, body.block_id)
    session.leave_block()
    return _payload(registry, session)


@router.get("/{responseId}/{blockId}")
async def get_conversation(responseId: str, blockId: str, request: Request) -> Dict[str, Any]:
    """
    Load (or resume) a conversation for display.

    Coming back after `leave` marks the visit as a revisit, which never auto-advances.
    A frontier question lost to an abandoned generation is regenerated here.
    """
    registry = _registry(request)
    session = registry.get(responseId, blockId)
    session.return_to_block()
    if not session.busy:
        await session.ensure_pending_question()
    return _payload(registry, session)
