"""
학습 계획 생성
- 시험일까지 하루 단위 일정, 세션 = 2시간
- 과목 목록은 시험 종류별 고정
"""
import math
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta

from core.errors import ValidationFailed

SESSION_HOURS = 2
MAX_PLAN_DAYS = 365

EXAM_TOPICS: dict[str, list[str]] = {
    "RN Pathway": [
        "Anatomy and Physiology",
        "Medical-Surgical Nursing",
        "Pediatric Nursing",
        "Maternal and Child Health",
        "Mental Health Nursing",
        "Community Health Nursing",
        "Pharmacology",
        "Pathophysiology",
        "Nursing Ethics and Jurisprudence",
    ],
    "RM Pathway": [
        "Midwifery Theory",
        "Obstetrics",
        "Gynecology",
        "Neonatal Care",
        "Family Planning",
        "Reproductive Health",
        "Midwifery Practice",
        "Emergency Obstetrics",
    ],
    "RPHN Pathway": [
        "Public Health Nursing",
        "Epidemiology",
        "Health Education",
        "Community Assessment",
        "Health Policy",
        "Environmental Health",
        "Occupational Health",
    ],
    "NCLEX": [
        "Management of Care",
        "Safety and Infection Control",
        "Health Promotion",
        "Psychosocial Integrity",
        "Physiological Integrity",
    ],
    "O'Level": [
        "English Language",
        "Mathematics",
        "Biology",
        "Chemistry",
        "Physics",
        "Geography",
        "Economics",
    ],
    "JAMB": [
        "English Language",
        "Mathematics",
        "Biology",
        "Chemistry",
        "Physics",
        "Government",
        "Literature",
        "Economics",
    ],
}

# 화면에서 보내는 짧은 코드
EXAM_TYPE_ALIASES = {
    "rn": "RN Pathway",
    "rm": "RM Pathway",
    "rphn": "RPHN Pathway",
    "nclex": "NCLEX",
    "olevel": "O'Level",
    "jamb": "JAMB",
}


@dataclass
class StudySession:
    session: int
    topics: list[str]
    duration: int = SESSION_HOURS


@dataclass
class StudyDay:
    date: str
    day: int
    sessions: list[StudySession] = field(default_factory=list)


def resolve_exam_type(exam_type: str) -> str:
    return EXAM_TYPE_ALIASES.get(exam_type.strip().lower(), exam_type.strip())


def days_until(exam_date: date, today: date) -> int:
    return (exam_date - today).days


def generate_study_plan(exam_type: str, exam_date: date, study_hours: int, today: date) -> list[dict]:
    """
    Spread the exam's topics over the days left, ``study_hours // 2`` sessions a day.

    Topics run out before the exam on long plans; the remaining days are
    returned with no sessions (revision days).
    """
    topics = EXAM_TOPICS.get(resolve_exam_type(exam_type))
    if topics is None:
        raise ValidationFailed(
            f"Unknown exam type: {exam_type}",
            extra={"exam_types": sorted(EXAM_TOPICS)},
        )

    total_days = days_until(exam_date, today)
    if total_days < 1:
        raise ValidationFailed("Exam date must be in the future")
    if total_days > MAX_PLAN_DAYS:
        raise ValidationFailed(f"Exam date must be within {MAX_PLAN_DAYS} days")

    sessions_per_day = max(1, study_hours // SESSION_HOURS)
    per_session = math.ceil(len(topics) / (total_days * sessions_per_day))

    plan: list[StudyDay] = []
    cursor = 0
    for day in range(1, total_days + 1):
        study_day = StudyDay(date=(today + timedelta(days=day)).isoformat(), day=day)
        for number in range(1, sessions_per_day + 1):
            if cursor >= len(topics):
                break
            study_day.sessions.append(StudySession(session=number, topics=topics[cursor:cursor + per_session]))
            cursor += per_session
        plan.append(study_day)
    return [asdict(d) for d in plan]
