"""
시험 / 응시 API (학생용)
- 시험 목록, 상세, 문제 조회
- 시험 단위 등록
- 응시 시작/재개, 진행 저장, 제출
- 공유 링크 시험
"""
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlmodel import Session, select

from api.schemas import ExamEnrollRequest, SaveProgressRequest, SubmitAttemptRequest
from core import attempts as attempt_service
from core.auth import get_current_user, get_optional_user, get_settings
from core.config import AppSettings
from core.db import get_session
from core.enrollment import check_exam_access
from core.errors import AttemptDenied, ForbiddenError
from core.exam_models import Exam, ExamAttempt, ExamEnrollment, ExamStatus, Question
from core.models import ADMIN_ROLES, User
from core.payments import PaystackClient, create_exam_enrollment, get_paystack_client, initialize_gateway_payment
from core.scoring import ScoreResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["exams"])

PREVIEW_QUESTION_COUNT = 3


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def exam_dict(exam: Exam, question_count: Optional[int] = None) -> dict[str, Any]:
    data = {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "subject": exam.subject,
        "type": exam.type.value,
        "duration": exam.duration,
        "total_marks": exam.total_marks,
        "passing_marks": exam.passing_marks,
        "price": exam.price,
        "currency": exam.currency,
        "institution_id": exam.institution_id,
        "program_id": exam.program_id,
        "is_global": exam.is_global,
        "status": exam.status.value,
        "start_at": _iso(exam.start_at),
        "end_at": _iso(exam.end_at),
        "max_attempts": exam.max_attempts,
        "allow_preview": exam.allow_preview,
        "is_shareable": exam.is_shareable,
        "share_slug": exam.share_slug,
        "is_active": exam.is_active,
        "created_at": _iso(exam.created_at),
        "updated_at": _iso(exam.updated_at),
    }
    if question_count is not None:
        data["question_count"] = question_count
    return data


def question_dict(question: Question, include_answer: bool) -> dict[str, Any]:
    data = {
        "id": question.id,
        "exam_id": question.exam_id,
        "question": question.question,
        "type": question.type.value,
        "options": question.options or [],
        "marks": question.marks,
        "order": question.order,
    }
    if include_answer:
        data["correct_answer"] = question.correct_answer
        data["explanation"] = question.explanation
    return data


def attempt_dict(attempt: ExamAttempt, result: Optional[ScoreResult] = None) -> dict[str, Any]:
    data = {
        "id": attempt.id,
        "exam_id": attempt.exam_id,
        "user_id": attempt.user_id,
        "enrollment_id": attempt.enrollment_id,
        "attempt_number": attempt.attempt_number,
        "answers": attempt.answers or {},
        "score": attempt.score,
        "total_marks": attempt.total_marks,
        "percentage": attempt.percentage,
        "passed": attempt.passed,
        "time_taken": attempt.time_taken,
        "started_at": _iso(attempt.started_at),
        "completed_at": _iso(attempt.completed_at),
        "is_completed": attempt.is_completed,
    }
    if result is not None:
        data["results"] = [
            {
                "question_id": r.question_id,
                "answered": r.answered,
                "correct": r.correct,
                "marks_awarded": r.marks_awarded,
                "marks": r.marks,
            }
            for r in result.results
        ]
    return data


def exam_enrollment_dict(enrollment: ExamEnrollment) -> dict[str, Any]:
    return {
        "id": enrollment.id,
        "exam_id": enrollment.exam_id,
        "status": enrollment.status.value,
        "payment_status": enrollment.payment_status,
        "amount_paid": enrollment.amount_paid,
        "currency": enrollment.currency,
        "attempts_used": enrollment.attempts_used,
        "max_attempts": enrollment.max_attempts,
        "enrolled_at": _iso(enrollment.enrolled_at),
        "completed_at": _iso(enrollment.completed_at),
    }


# ==================== 시험 목록/상세 ====================

@router.get("/exams")
def list_exams(
    institution_id: Optional[str] = None,
    program_id: Optional[str] = None,
    subject: Optional[str] = None,
    session: Session = Depends(get_session),
) -> list[dict]:
    """공개된 시험 목록 (soft delete된 시험 제외)"""
    query = select(Exam).where(Exam.status == ExamStatus.published, Exam.is_active == True)  # noqa: E712
    if institution_id:
        query = query.where(Exam.institution_id == institution_id)
    if program_id:
        query = query.where(Exam.program_id == program_id)
    if subject:
        query = query.where(Exam.subject == subject)
    exams = session.exec(query.order_by(Exam.created_at.desc())).all()
    return [exam_dict(e) for e in exams]


@router.get("/exams/enrollments")
def my_exam_enrollments(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> list[dict]:
    rows = session.exec(
        select(ExamEnrollment, Exam)
        .join(Exam, Exam.id == ExamEnrollment.exam_id)
        .where(ExamEnrollment.user_id == current_user.id)
        .order_by(ExamEnrollment.created_at.desc())
    ).all()
    return [{**exam_enrollment_dict(enrollment), "exam": exam_dict(exam)} for enrollment, exam in rows]


@router.post("/exams/enroll", status_code=status.HTTP_201_CREATED)
def enroll_in_exam(
    payload: ExamEnrollRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    paystack: PaystackClient = Depends(get_paystack_client),
) -> dict:
    """시험 단위 등록 - 유료 시험은 Paystack 결제 초기화"""
    exam = attempt_service.get_available_exam(session, payload.exam_id)
    enrollment, payment = create_exam_enrollment(session, current_user, exam)

    response: dict[str, Any] = {"enrollment": exam_enrollment_dict(enrollment), "payment": None}
    if payment is not None:
        gateway = initialize_gateway_payment(
            session,
            paystack,
            payment,
            current_user,
            callback_url=f"{settings.site_url.rstrip('/')}/payments/callback",
        )
        response["payment"] = {
            "id": payment.id,
            "reference": payment.reference,
            "amount": payment.amount,
            "currency": payment.currency,
            "authorization_url": gateway.get("authorization_url"),
            "access_code": gateway.get("access_code"),
        }
    return response


# ==================== 공유 링크 시험 ====================

@router.get("/exams/share/{slug}")
def get_shared_exam(slug: str, session: Session = Depends(get_session)) -> dict:
    exam = attempt_service.get_shared_exam(session, slug)
    questions = attempt_service.get_active_questions(session, exam.id)
    return exam_dict(exam, question_count=len(questions))


@router.post("/exams/share/{slug}/start")
def start_shared_exam(
    slug: str,
    response: Response,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    attempt, resumed = attempt_service.start_shared_attempt(session, current_user, slug)
    exam = session.get(Exam, attempt.exam_id)
    questions = attempt_service.get_active_questions(session, attempt.exam_id)
    response.status_code = status.HTTP_200_OK if resumed else status.HTTP_201_CREATED
    return {
        "attempt": attempt_dict(attempt),
        "resumed": resumed,
        "exam": exam_dict(exam),
        "questions": [question_dict(q, include_answer=False) for q in questions],
    }


# ==================== 시험 상세/문제 ====================

@router.get("/exams/{exam_id}")
def get_exam(
    exam_id: str,
    session: Session = Depends(get_session),
    current_user: Optional[User] = Depends(get_optional_user),
) -> dict:
    exam = attempt_service.get_available_exam(session, exam_id)
    questions = attempt_service.get_active_questions(session, exam.id)
    data = exam_dict(exam, question_count=len(questions))
    if current_user is not None:
        decision = check_exam_access(session, current_user, exam)
        data["access"] = {
            "granted": decision.granted,
            "required_program_id": decision.required_program_id,
            "reason": decision.reason,
        }
        enrollment = attempt_service.get_exam_enrollment(session, current_user.id, exam.id)
        data["enrollment"] = exam_enrollment_dict(enrollment) if enrollment else None
    return data


@router.get("/exams/{exam_id}/preview")
def preview_exam(
    exam_id: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    """등록 없이 앞부분 문제만 미리보기 (정답 제외)"""
    exam = attempt_service.get_available_exam(session, exam_id)
    if not exam.allow_preview:
        raise ForbiddenError("Preview is not available for this exam", code="preview_not_allowed")
    questions = attempt_service.get_active_questions(session, exam.id)[:PREVIEW_QUESTION_COUNT]
    return {
        "exam": exam_dict(exam),
        "questions": [question_dict(q, include_answer=False) for q in questions],
    }


@router.get("/exams/{exam_id}/questions")
def get_exam_questions(
    exam_id: str,
    include_answers: bool = False,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> list[dict]:
    """
    문제 조회

    correct_answer는 관리자이거나, include_answers=true 이면서 완료된 응시가
    있는 경우에만 포함
    """
    is_admin = current_user.role in ADMIN_ROLES
    if is_admin:
        exam = session.get(Exam, exam_id)
        if not exam:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")
    else:
        exam = attempt_service.get_available_exam(session, exam_id)
        # 미리보기는 /preview 로만
        decision = check_exam_access(session, current_user, exam)
        if not decision.granted:
            raise AttemptDenied(
                "program_enrollment_required",
                "An active program enrollment is required to view this exam",
                required_program_id=decision.required_program_id,
            )

    show_answers = is_admin
    if include_answers and not is_admin:
        completed = session.exec(
            select(ExamAttempt.id).where(
                ExamAttempt.user_id == current_user.id,
                ExamAttempt.exam_id == exam.id,
                ExamAttempt.is_completed == True,  # noqa: E712
            )
        ).first()
        show_answers = completed is not None

    questions = attempt_service.get_active_questions(session, exam.id)
    return [question_dict(q, include_answer=show_answers) for q in questions]


# ==================== 응시 ====================

@router.post("/exams/{exam_id}/attempt")
def start_exam_attempt(
    exam_id: str,
    response: Response,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    """응시 시작 (진행 중인 응시가 있으면 그대로 반환)"""
    attempt, resumed = attempt_service.start_attempt(session, current_user, exam_id)
    questions = attempt_service.get_active_questions(session, exam_id)
    response.status_code = status.HTTP_200_OK if resumed else status.HTTP_201_CREATED
    return {
        "attempt": attempt_dict(attempt),
        "resumed": resumed,
        "questions": [question_dict(q, include_answer=False) for q in questions],
    }


@router.get("/exams/{exam_id}/attempts")
def my_exam_attempts(
    exam_id: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> list[dict]:
    return [attempt_dict(a) for a in attempt_service.list_user_attempts(session, current_user.id, exam_id)]


@router.get("/attempts/{attempt_id}")
def get_attempt(
    attempt_id: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    attempt = attempt_service.get_owned_attempt(session, current_user, attempt_id)
    return attempt_dict(attempt)


@router.patch("/attempts/{attempt_id}")
def save_attempt_progress(
    attempt_id: str,
    payload: SaveProgressRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    attempt = attempt_service.save_progress(
        session, current_user, attempt_id, payload.answers, time_taken=payload.time_taken
    )
    return attempt_dict(attempt)


@router.post("/attempts/{attempt_id}")
def submit_attempt(
    attempt_id: str,
    payload: Optional[SubmitAttemptRequest] = None,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    """제출 및 채점 (두 번째 제출은 409)"""
    payload = payload or SubmitAttemptRequest()
    attempt, result = attempt_service.submit_attempt(
        session,
        current_user,
        attempt_id,
        answers=payload.answers,
        time_taken=payload.time_taken,
    )
    return attempt_dict(attempt, result)
