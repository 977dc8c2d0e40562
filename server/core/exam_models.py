"""
시험 관련 DB 모델
- Exam / Question / ExamVersion
- ExamEnrollment (시험 단위 등록) / ExamAttempt
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, Relationship, SQLModel

from core.models import new_id, utcnow


class ExamStatus(str, Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


class ExamType(str, Enum):
    quiz = "quiz"
    midterm = "midterm"
    final = "final"
    practice = "practice"
    certification = "certification"
    licensing = "licensing"
    professional = "professional"


class QuestionType(str, Enum):
    multiple_choice = "multiple_choice"
    true_false = "true_false"
    essay = "essay"
    short_answer = "short_answer"
    fill_blanks = "fill_blanks"


class ExamEnrollmentStatus(str, Enum):
    enrolled = "enrolled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class Exam(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    type: ExamType = Field(default=ExamType.quiz)
    duration: Optional[int] = Field(default=None, description="Duration in minutes")
    total_marks: Optional[int] = None
    passing_marks: int = Field(default=0)
    price: Optional[float] = None
    currency: str = Field(default="NGN")
    institution_id: Optional[str] = Field(default=None, foreign_key="institution.id", index=True)
    program_id: Optional[str] = Field(default=None, foreign_key="program.id", index=True)
    # global exams are open to anyone with any active program enrollment
    is_global: bool = Field(default=False)
    status: ExamStatus = Field(default=ExamStatus.draft, index=True)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    # None = unlimited, 0 = no attempts allowed
    max_attempts: Optional[int] = Field(default=None)
    allow_preview: bool = Field(default=False)
    is_shareable: bool = Field(default=False)
    share_slug: Optional[str] = Field(default=None, index=True, unique=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    questions: list["Question"] = Relationship(back_populates="exam")

    def is_available(self) -> bool:
        return self.is_active and self.status == ExamStatus.published

    def snapshot(self, questions: list["Question"]) -> dict[str, Any]:
        """Content captured into ExamVersion at publish time."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "subject": self.subject,
            "duration": self.duration,
            "passing_marks": self.passing_marks,
            "max_attempts": self.max_attempts,
            "allow_preview": self.allow_preview,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "questions": [q.snapshot() for q in questions],
        }


class Question(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    exam_id: str = Field(foreign_key="exam.id", index=True)
    question: str
    type: QuestionType = Field(default=QuestionType.multiple_choice)
    options: Optional[list[str]] = Field(default=None, sa_column=Column(JSON))
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    marks: int = Field(default=1)
    order: int = Field(default=0)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    exam: Optional[Exam] = Relationship(back_populates="questions")

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "type": self.type.value,
            "options": list(self.options or []),
            "correct_answer": self.correct_answer,
            "explanation": self.explanation,
            "marks": self.marks,
            "order": self.order,
        }


class ExamVersion(SQLModel, table=True):
    """Immutable snapshot of an exam taken at publish time."""
    __tablename__ = "exam_version"

    id: str = Field(default_factory=new_id, primary_key=True)
    exam_id: str = Field(foreign_key="exam.id", index=True)
    snapshot: dict = Field(default_factory=dict, sa_column=Column(JSON))
    note: Optional[str] = None
    published_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ExamEnrollment(SQLModel, table=True):
    """Per-exam enrollment (older model, runs beside program enrollments)."""
    __tablename__ = "exam_enrollment"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    exam_id: str = Field(foreign_key="exam.id", index=True)
    status: ExamEnrollmentStatus = Field(default=ExamEnrollmentStatus.enrolled)
    payment_status: str = Field(default="pending", description="pending | completed | failed | refunded")
    amount_paid: Optional[float] = None
    currency: str = Field(default="NGN")
    enrolled_at: Optional[datetime] = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    attempts_used: int = Field(default=0)
    max_attempts: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ExamAttempt(SQLModel, table=True):
    __tablename__ = "exam_attempt"
    __table_args__ = (
        # at most one in-progress attempt per (user, exam)
        Index(
            "uq_exam_attempt_in_progress",
            "user_id",
            "exam_id",
            unique=True,
            sqlite_where=text("is_completed = 0"),
            postgresql_where=text("is_completed = false"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    exam_id: str = Field(foreign_key="exam.id", index=True)
    enrollment_id: Optional[str] = Field(default=None, foreign_key="exam_enrollment.id")
    answers: dict = Field(default_factory=dict, sa_column=Column(JSON))
    score: Optional[int] = None
    total_marks: Optional[int] = None
    percentage: Optional[int] = None
    passed: Optional[bool] = None
    time_taken: Optional[int] = Field(default=None, description="seconds")
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    is_completed: bool = Field(default=False)
    attempt_number: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
