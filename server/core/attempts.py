"""
시험 응시(Attempt) 라이프사이클
not_started -> in_progress -> completed

- start: 게이트/등록/결제/기간/재개/횟수 순서로 검사 후 한 트랜잭션에서 생성
- save_progress: answers 전체 교체 (last write wins)
- submit: 조건부 UPDATE로 한 번만 완료 처리
"""
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.enrollment import check_exam_access
from core.errors import (
    AttemptClosedError,
    AttemptDenied,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from core.exam_models import (
    Exam,
    ExamAttempt,
    ExamEnrollment,
    ExamEnrollmentStatus,
    Question,
)
from core.models import User, utcnow
from core.scoring import ScoreResult, score_answers

logger = logging.getLogger(__name__)


def get_available_exam(session: Session, exam_id: str) -> Exam:
    exam = session.get(Exam, exam_id)
    if not exam or not exam.is_available():
        raise NotFoundError("Exam not found")
    return exam


def get_active_questions(session: Session, exam_id: str) -> list[Question]:
    return list(
        session.exec(
            select(Question)
            .where(Question.exam_id == exam_id, Question.is_active == True)  # noqa: E712
            .order_by(Question.order, Question.created_at)
        ).all()
    )


def get_exam_enrollment(session: Session, user_id: str, exam_id: str) -> Optional[ExamEnrollment]:
    return session.exec(
        select(ExamEnrollment).where(
            ExamEnrollment.user_id == user_id,
            ExamEnrollment.exam_id == exam_id,
            ExamEnrollment.status != ExamEnrollmentStatus.cancelled,
        )
    ).first()


def find_in_progress_attempt(session: Session, user_id: str, exam_id: str) -> Optional[ExamAttempt]:
    return session.exec(
        select(ExamAttempt).where(
            ExamAttempt.user_id == user_id,
            ExamAttempt.exam_id == exam_id,
            ExamAttempt.is_completed == False,  # noqa: E712
        )
    ).first()


def check_window(exam: Exam, now: datetime) -> None:
    if exam.start_at and now < exam.start_at:
        raise AttemptDenied("window_not_open", "This exam has not started yet")
    if exam.end_at and now > exam.end_at:
        raise AttemptDenied("window_closed", "This exam has ended")


def attempts_remaining(used: int, max_attempts: Optional[int]) -> bool:
    # None = unlimited
    return max_attempts is None or used < max_attempts


def _insert_attempt(
    session: Session,
    attempt: ExamAttempt,
    enrollment: Optional[ExamEnrollment],
    now: datetime,
) -> tuple[ExamAttempt, bool]:
    """Insert ``attempt`` (and bump the enrollment counter) in one transaction."""
    user_id, exam_id = attempt.user_id, attempt.exam_id
    try:
        session.add(attempt)
        if enrollment is not None:
            # 조건부 증가: 동시 시작이 max_attempts 를 넘지 못하게
            bumped = session.execute(
                update(ExamEnrollment)
                .where(
                    ExamEnrollment.id == enrollment.id,
                    or_(
                        ExamEnrollment.max_attempts.is_(None),
                        ExamEnrollment.attempts_used < ExamEnrollment.max_attempts,
                    ),
                )
                .values(
                    attempts_used=ExamEnrollment.attempts_used + 1,
                    status=ExamEnrollmentStatus.in_progress,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount == 0:
                session.rollback()
                logger.warning(f"[Attempt] ⚠️ attempts exhausted during start user={user_id} exam={exam_id}")
                raise AttemptDenied("attempts_exhausted", "Maximum attempts reached for this exam")
        session.commit()
    except IntegrityError:
        # concurrent start won the partial unique index
        session.rollback()
        existing = find_in_progress_attempt(session, user_id, exam_id)
        if existing is None:
            raise ConflictError("Could not start attempt, please retry")
        logger.info(f"[Attempt] ↩️ concurrent start, resuming attempt={existing.id}")
        return existing, True

    session.refresh(attempt)
    return attempt, False


def start_attempt(
    session: Session,
    user: User,
    exam_id: str,
    now: Optional[datetime] = None,
) -> tuple[ExamAttempt, bool]:
    """
    Start or resume the user's attempt on an exam.

    Returns ``(attempt, resumed)``. Raises ``NotFoundError`` for a missing or
    unpublished exam and ``AttemptDenied`` with the failing reason otherwise.
    """
    now = now or utcnow()
    exam = get_available_exam(session, exam_id)

    decision = check_exam_access(session, user, exam, now)
    if not decision.granted:
        raise AttemptDenied(
            "program_enrollment_required",
            "An active program enrollment is required to take this exam",
            required_program_id=decision.required_program_id,
        )

    enrollment = get_exam_enrollment(session, user.id, exam.id)
    if enrollment is None:
        raise AttemptDenied("not_enrolled", "You are not enrolled in this exam")
    if enrollment.payment_status != "completed":
        raise AttemptDenied("payment_pending", "Payment for this exam has not been completed")

    check_window(exam, now)

    existing = find_in_progress_attempt(session, user.id, exam.id)
    if existing is not None:
        logger.info(f"[Attempt] ↩️ resumed attempt={existing.id} user={user.id} exam={exam.id}")
        return existing, True

    if not attempts_remaining(enrollment.attempts_used, enrollment.max_attempts):
        logger.warning(f"[Attempt] ⚠️ attempts exhausted user={user.id} exam={exam.id}")
        raise AttemptDenied("attempts_exhausted", "Maximum attempts reached for this exam")

    attempt = ExamAttempt(
        user_id=user.id,
        exam_id=exam.id,
        enrollment_id=enrollment.id,
        answers={},
        started_at=now,
        attempt_number=enrollment.attempts_used + 1,
        created_at=now,
        updated_at=now,
    )
    attempt, resumed = _insert_attempt(session, attempt, enrollment, now)
    if not resumed:
        logger.info(
            f"[Attempt] ✅ started attempt={attempt.id} #{attempt.attempt_number} "
            f"user={user.id} exam={exam.id}"
        )
    return attempt, resumed


def get_shared_exam(session: Session, slug: str) -> Exam:
    exam = session.exec(select(Exam).where(Exam.share_slug == slug)).first()
    if not exam or not exam.is_shareable or not exam.is_available():
        raise NotFoundError("Shared exam not found")
    return exam


def start_shared_attempt(
    session: Session,
    user: User,
    slug: str,
    now: Optional[datetime] = None,
) -> tuple[ExamAttempt, bool]:
    """Shareable exams skip the enrollment gate; window and attempt limits still apply."""
    now = now or utcnow()
    exam = get_shared_exam(session, slug)
    check_window(exam, now)

    existing = find_in_progress_attempt(session, user.id, exam.id)
    if existing is not None:
        logger.info(f"[Attempt] ↩️ resumed shared attempt={existing.id} user={user.id}")
        return existing, True

    prior = session.exec(
        select(func.count())
        .select_from(ExamAttempt)
        .where(ExamAttempt.user_id == user.id, ExamAttempt.exam_id == exam.id)
    ).one()
    if not attempts_remaining(prior, exam.max_attempts):
        raise AttemptDenied("attempts_exhausted", "Maximum attempts reached for this exam")

    attempt = ExamAttempt(
        user_id=user.id,
        exam_id=exam.id,
        answers={},
        started_at=now,
        attempt_number=prior + 1,
        created_at=now,
        updated_at=now,
    )
    attempt, resumed = _insert_attempt(session, attempt, None, now)
    if not resumed:
        logger.info(f"[Attempt] ✅ started shared attempt={attempt.id} user={user.id} exam={exam.id}")
    return attempt, resumed


def get_owned_attempt(session: Session, user: User, attempt_id: str) -> ExamAttempt:
    attempt = session.get(ExamAttempt, attempt_id)
    if not attempt:
        raise NotFoundError("Attempt not found")
    if attempt.user_id != user.id:
        logger.warning(f"[Attempt] ⚠️ user={user.id} tried to access attempt={attempt_id}")
        raise ForbiddenError("You do not have access to this attempt")
    return attempt


def save_progress(
    session: Session,
    user: User,
    attempt_id: str,
    answers: dict[str, Any],
    time_taken: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ExamAttempt:
    """Replace the answer map of an in-progress attempt."""
    now = now or utcnow()
    attempt = get_owned_attempt(session, user, attempt_id)
    if attempt.is_completed:
        raise AttemptClosedError("Attempt already submitted")

    values: dict[str, Any] = {"answers": dict(answers), "updated_at": now}
    if time_taken is not None:
        values["time_taken"] = time_taken

    result = session.execute(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt.id, ExamAttempt.is_completed == False)  # noqa: E712
        .values(**values)
    )
    if result.rowcount == 0:
        session.rollback()
        raise AttemptClosedError("Attempt already submitted")
    session.commit()
    session.refresh(attempt)
    return attempt


def submit_attempt(
    session: Session,
    user: User,
    attempt_id: str,
    answers: Optional[dict[str, Any]] = None,
    time_taken: Optional[int] = None,
    now: Optional[datetime] = None,
) -> tuple[ExamAttempt, ScoreResult]:
    """
    Score and close an attempt.

    ``answers``, when given, replaces the stored map before scoring. The
    closing UPDATE only matches an open attempt, so a second submit raises
    ``AttemptClosedError`` without touching the first result.
    """
    now = now or utcnow()
    attempt = get_owned_attempt(session, user, attempt_id)
    if attempt.is_completed:
        raise AttemptClosedError("Attempt already submitted")

    exam = session.get(Exam, attempt.exam_id)
    if exam is None:
        raise NotFoundError("Exam not found")

    final_answers = dict(answers) if answers is not None else dict(attempt.answers or {})
    questions = get_active_questions(session, exam.id)
    result = score_answers(final_answers, questions, exam.passing_marks)

    if time_taken is None:
        time_taken = max(0, int((now - attempt.started_at).total_seconds()))

    closed = session.execute(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt.id, ExamAttempt.is_completed == False)  # noqa: E712
        .values(
            answers=final_answers,
            score=result.score,
            total_marks=result.total_marks,
            percentage=result.percentage,
            passed=result.passed,
            time_taken=time_taken,
            completed_at=now,
            is_completed=True,
            updated_at=now,
        )
    )
    if closed.rowcount == 0:
        session.rollback()
        raise AttemptClosedError("Attempt already submitted")

    if attempt.enrollment_id:
        enrollment = session.get(ExamEnrollment, attempt.enrollment_id)
        if enrollment is not None:
            enrollment.status = ExamEnrollmentStatus.completed
            enrollment.completed_at = now
            enrollment.updated_at = now
            session.add(enrollment)

    # leaderboard points
    owner = session.get(User, attempt.user_id)
    if owner is not None and result.score:
        owner.points = (owner.points or 0) + result.score
        session.add(owner)

    session.commit()
    session.refresh(attempt)
    logger.info(
        f"[Attempt] ✅ submitted attempt={attempt.id} user={user.id} "
        f"score={result.score}/{result.total_marks} passed={result.passed}"
    )
    return attempt, result


def list_user_attempts(session: Session, user_id: str, exam_id: Optional[str] = None) -> list[ExamAttempt]:
    query = select(ExamAttempt).where(ExamAttempt.user_id == user_id)
    if exam_id:
        query = query.where(ExamAttempt.exam_id == exam_id)
    return list(session.exec(query.order_by(ExamAttempt.started_at.desc())).all())
