"""
AI 튜터 채팅
- 사용자 컨텍스트 (기관, 등록 시험, 최근 응시 5건)
- 최근 10개 메시지 히스토리
- 대화 내용은 ChatMessage로 저장
"""
import logging
from typing import Any, Optional

from sqlmodel import Session, select

from ai.config import AISettings
from ai.explanations import complete_chat
from core.content_models import ChatMessage, ChatRole
from core.errors import ValidationFailed
from core.exam_models import Exam, ExamAttempt, ExamEnrollment
from core.guardrails import guardrails
from core.models import Institution, User, new_id

logger = logging.getLogger(__name__)

RECENT_ATTEMPTS = 5


def build_user_context(session: Session, user: User) -> dict[str, Any]:
    institution = session.get(Institution, user.institution_id) if user.institution_id else None

    enrolled = session.exec(
        select(Exam.title)
        .join(ExamEnrollment, ExamEnrollment.exam_id == Exam.id)
        .where(ExamEnrollment.user_id == user.id)
    ).all()

    attempts = session.exec(
        select(ExamAttempt, Exam.title)
        .join(Exam, Exam.id == ExamAttempt.exam_id)
        .where(ExamAttempt.user_id == user.id, ExamAttempt.is_completed == True)  # noqa: E712
        .order_by(ExamAttempt.completed_at.desc())
        .limit(RECENT_ATTEMPTS)
    ).all()

    return {
        "name": user.name,
        "institution": institution.name if institution else None,
        "enrolled_exams": [t for t in enrolled if t],
        "recent_attempts": [
            {"exam": title, "percentage": attempt.percentage, "passed": attempt.passed}
            for attempt, title in attempts
        ],
    }


def build_system_prompt(context: dict[str, Any]) -> str:
    lines = [
        "You are O'Prep's study tutor for nursing and midwifery licensing exams.",
        "Answer clearly and briefly, in plain text without markdown.",
        "Only help with exam preparation and related health-science topics.",
        f"Student name: {context['name']}",
    ]
    if context.get("institution"):
        lines.append(f"Institution: {context['institution']}")
    if context.get("enrolled_exams"):
        lines.append("Enrolled exams: " + ", ".join(context["enrolled_exams"]))
    if context.get("recent_attempts"):
        summary = "; ".join(
            f"{a['exam']}: {a['percentage']}% ({'passed' if a['passed'] else 'not passed'})"
            for a in context["recent_attempts"]
        )
        lines.append(f"Recent results: {summary}")
    return "\n".join(lines)


def load_history(session: Session, user_id: str, conversation_id: str, limit: int) -> list[ChatMessage]:
    rows = session.exec(
        select(ChatMessage)
        .where(ChatMessage.user_id == user_id, ChatMessage.conversation_id == conversation_id)
        .order_by(ChatMessage.created_at.desc())
        .limit(limit)
    ).all()
    return list(reversed(rows))


def chat(
    session: Session,
    client: Any,
    settings: AISettings,
    user: User,
    message: str,
    conversation_id: Optional[str] = None,
) -> tuple[str, str]:
    """Answer ``message`` and persist both turns. Returns ``(answer, conversation_id)``."""
    is_valid, error = guardrails.validate_question(message)
    if not is_valid:
        logger.warning(f"[Tutor] ⚠️ rejected message from user={user.id}: {error}")
        raise ValidationFailed(error or "Invalid message", code="rejected_message")

    conversation_id = conversation_id or new_id()
    history = load_history(session, user.id, conversation_id, settings.chat_history_limit)
    context = build_user_context(session, user)

    messages = [{"role": "system", "content": build_system_prompt(context)}]
    messages += [{"role": m.role.value, "content": m.content} for m in history]
    messages.append({"role": "user", "content": message})

    raw = complete_chat(client, settings, messages, settings.chat_max_tokens)
    answer = guardrails.filter_response(raw, max_words=None).text or "Sorry, I could not generate an answer."

    session.add(ChatMessage(user_id=user.id, role=ChatRole.user, content=message, conversation_id=conversation_id))
    session.add(
        ChatMessage(
            user_id=user.id,
            role=ChatRole.assistant,
            content=answer,
            conversation_id=conversation_id,
            model=settings.llm_model,
        )
    )
    session.commit()
    logger.info(f"[Tutor] ✅ answered user={user.id} conversation={conversation_id}")
    return answer, conversation_id
