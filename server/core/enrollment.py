"""
프로그램 등록 게이트
- 활성 등록(만료 전) 조회
- 시험/프로그램 접근 권한 판단 (예외 대신 AccessDecision 반환)
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlmodel import Session, or_, select

from core.exam_models import Exam
from core.models import EnrollmentStatus, User, UserProgramEnrollment, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AccessDecision:
    granted: bool
    required_program_id: Optional[str] = None
    reason: Optional[str] = None


def enrollment_expiry(months: int, now: Optional[datetime] = None) -> datetime:
    """``now`` plus ``months`` calendar months, clamped to the end of the target month."""
    now = now or utcnow()
    month_index = now.month - 1 + months
    year = now.year + month_index // 12
    month = month_index % 12 + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def get_active_enrollments(
    session: Session, user_id: str, now: Optional[datetime] = None
) -> list[UserProgramEnrollment]:
    now = now or utcnow()
    return list(
        session.exec(
            select(UserProgramEnrollment).where(
                UserProgramEnrollment.user_id == user_id,
                UserProgramEnrollment.status == EnrollmentStatus.active,
                or_(
                    UserProgramEnrollment.expires_at.is_(None),
                    UserProgramEnrollment.expires_at > now,
                ),
            )
        ).all()
    )


def get_active_program_ids(session: Session, user_id: str, now: Optional[datetime] = None) -> set[str]:
    return {e.program_id for e in get_active_enrollments(session, user_id, now)}


def find_active_enrollment(
    session: Session, user_id: str, program_id: str, now: Optional[datetime] = None
) -> Optional[UserProgramEnrollment]:
    for enrollment in get_active_enrollments(session, user_id, now):
        if enrollment.program_id == program_id:
            return enrollment
    return None


def has_legacy_premium(user: User, now: Optional[datetime] = None) -> bool:
    if not user.is_premium:
        return False
    now = now or utcnow()
    return user.premium_expires_at is None or user.premium_expires_at > now


def check_program_access(
    session: Session, user: User, program_id: str, now: Optional[datetime] = None
) -> AccessDecision:
    if has_legacy_premium(user, now):
        return AccessDecision(granted=True, reason="premium")
    if program_id in get_active_program_ids(session, user.id, now):
        return AccessDecision(granted=True)
    return AccessDecision(
        granted=False,
        required_program_id=program_id,
        reason="program_enrollment_required",
    )


def check_exam_access(
    session: Session, user: User, exam: Exam, now: Optional[datetime] = None
) -> AccessDecision:
    """
    Decide whether ``user`` may take ``exam``.

    Legacy premium grants everything. A global exam needs any active
    enrollment. A program exam needs an active enrollment in that program.
    Exams tied to neither are not program-gated.
    """
    if has_legacy_premium(user, now):
        return AccessDecision(granted=True, reason="premium")

    if exam.is_global:
        if get_active_enrollments(session, user.id, now):
            return AccessDecision(granted=True)
        return AccessDecision(granted=False, reason="program_enrollment_required")

    if exam.program_id is None:
        return AccessDecision(granted=True)

    decision = check_program_access(session, user, exam.program_id, now)
    if not decision.granted:
        logger.warning(f"[Gate] ⚠️ user={user.id} denied exam={exam.id} (needs program {exam.program_id})")
    return decision
