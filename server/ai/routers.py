import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from ai.config import AISettings, get_ai_settings
from ai.explanations import generate_explanation, get_openai_client
from ai.tutor import chat
from api.schemas import ChatRequest, ChatResponse, ExplanationRequest, ExplanationResponse
from core.auth import get_current_user
from core.content_models import ChatMessage
from core.db import get_session
from core.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["ai"])


def _require_client(client: Optional[Any]) -> Any:
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI service is not configured",
        )
    return client


@router.post("/explanation", response_model=ExplanationResponse)
def explain_answer(
    payload: ExplanationRequest,
    current_user: User = Depends(get_current_user),
    settings: AISettings = Depends(get_ai_settings),
    client: Optional[Any] = Depends(get_openai_client),
) -> ExplanationResponse:
    """문제 해설 생성 (200단어 제한, 마크다운 제거)"""
    client = _require_client(client)
    result = generate_explanation(
        client,
        settings,
        question=payload.question,
        options=payload.options,
        correct_answer=payload.correct_answer,
        user_answer=payload.user_answer,
        is_correct=payload.is_correct,
    )
    logger.info(f"[AI] ✅ explanation for user={current_user.id} ({result.word_count} words)")
    return ExplanationResponse(explanation=result.text, truncated=result.truncated, word_count=result.word_count)


@router.post("/chat", response_model=ChatResponse)
def tutor_chat(
    payload: ChatRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    settings: AISettings = Depends(get_ai_settings),
    client: Optional[Any] = Depends(get_openai_client),
) -> ChatResponse:
    client = _require_client(client)
    answer, conversation_id = chat(
        session,
        client,
        settings,
        current_user,
        payload.message,
        conversation_id=payload.conversation_id,
    )
    return ChatResponse(answer=answer, conversation_id=conversation_id)


@router.get("/chat/history")
def chat_history(
    conversation_id: Optional[str] = None,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(ChatMessage).where(ChatMessage.user_id == current_user.id)
    if conversation_id:
        query = query.where(ChatMessage.conversation_id == conversation_id)
    rows = session.exec(query.order_by(ChatMessage.created_at.desc()).limit(max(1, min(limit, 200)))).all()
    return [
        {
            "id": m.id,
            "role": m.role.value,
            "content": m.content,
            "conversation_id": m.conversation_id,
            "created_at": m.created_at.isoformat(),
        }
        for m in reversed(rows)
    ]
