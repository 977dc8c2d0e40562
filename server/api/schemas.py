"""
API 스키마
- 인증 / 사용자
- 시험 응시
- 결제
- 관리자 CRUD
"""
import re
from datetime import date, datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from core.content_models import AutomationTrigger
from core.exam_models import ExamStatus, ExamType, QuestionType

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _check_email(v: str) -> str:
    v = (v or "").strip().lower()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email address")
    return v


# ==================== 인증 ====================

class RegisterRequest(BaseModel):
    """회원가입 요청"""
    name: str = Field(..., min_length=1, description="이름")
    email: str = Field(..., description="이메일")
    password: str = Field(..., min_length=8, description="비밀번호 (최소 8자)")
    institution_id: Optional[str] = Field(default=None, description="소속 기관")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)


class LoginRequest(BaseModel):
    """로그인 요청"""
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return (v or "").strip().lower()


class TokenResponse(BaseModel):
    """토큰 응답"""
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: str
    expires_in: int = 86400


class UpdateInstitutionRequest(BaseModel):
    institution_id: str


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=8)


class FeedbackRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)
    name: Optional[str] = None
    email: Optional[str] = None


class StudyPlanRequest(BaseModel):
    exam_type: str = Field(..., min_length=1)
    exam_date: date
    study_hours: int = Field(default=2, ge=1, le=16, description="하루 공부 시간")
    knowledge_level: Literal["beginner", "intermediate", "advanced"] = "intermediate"


# ==================== 시험 응시 ====================

AnswerValue = Union[int, str, None]


class ExamEnrollRequest(BaseModel):
    exam_id: str


class SaveProgressRequest(BaseModel):
    """진행 상황 저장 (answers 전체 교체)"""
    answers: dict[str, AnswerValue] = Field(default_factory=dict, description="question_id -> answer")
    time_taken: Optional[int] = Field(default=None, ge=0, description="seconds")


class SubmitAttemptRequest(BaseModel):
    answers: Optional[dict[str, AnswerValue]] = Field(default=None, description="생략 시 저장된 answers로 채점")
    time_taken: Optional[int] = Field(default=None, ge=0)


# ==================== 결제 ====================

class EnrollProgramsRequest(BaseModel):
    """프로그램 등록 결제 요청"""
    program_codes: list[str] = Field(..., min_length=1)
    duration_months: int = Field(default=12, description="3 | 6 | 12")
    callback_url: Optional[str] = None


class ManualPaymentRequest(EnrollProgramsRequest):
    payment_proof: Optional[str] = Field(default=None, description="입금 증빙 URL")
    transaction_reference: Optional[str] = None
    method: Literal["bank_transfer", "other"] = "bank_transfer"


class VerifyPaymentRequest(BaseModel):
    reference: str


class RejectPaymentRequest(BaseModel):
    reason: Optional[str] = None


# ==================== AI ====================

class ExplanationRequest(BaseModel):
    question: str
    options: list[str] = Field(default_factory=list)
    correct_answer: AnswerValue = None
    user_answer: AnswerValue = None
    is_correct: bool = False


class ExplanationResponse(BaseModel):
    explanation: str
    truncated: bool
    word_count: int


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None


class ChatResponse(BaseModel):
    answer: str
    conversation_id: str


# ==================== 관리자 ====================

class InstitutionCreate(BaseModel):
    name: str
    code: str
    state: str
    city: str
    type: str


class InstitutionUpdate(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    type: Optional[str] = None
    is_active: Optional[bool] = None


class ExamCreate(BaseModel):
    title: str
    description: Optional[str] = None
    subject: Optional[str] = None
    type: ExamType = ExamType.quiz
    duration: Optional[int] = Field(default=None, ge=1)
    passing_marks: int = Field(default=0, ge=0)
    price: Optional[float] = Field(default=None, ge=0)
    currency: str = "NGN"
    institution_id: Optional[str] = None
    program_id: Optional[str] = None
    is_global: bool = False
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=0, description="생략 시 기본값, null = 무제한")
    allow_preview: bool = False
    is_shareable: bool = False


class ExamUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    type: Optional[ExamType] = None
    duration: Optional[int] = Field(default=None, ge=1)
    passing_marks: Optional[int] = Field(default=None, ge=0)
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = None
    institution_id: Optional[str] = None
    program_id: Optional[str] = None
    is_global: Optional[bool] = None
    status: Optional[ExamStatus] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=0)
    allow_preview: Optional[bool] = None
    is_shareable: Optional[bool] = None
    is_active: Optional[bool] = None


class PublishRequest(BaseModel):
    note: Optional[str] = None


class QuestionCreate(BaseModel):
    exam_id: str
    question: str = Field(..., min_length=1)
    type: QuestionType = QuestionType.multiple_choice
    options: Optional[list[str]] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    marks: int = Field(default=1, ge=0)
    order: Optional[int] = None


class QuestionUpdate(BaseModel):
    question: Optional[str] = None
    type: Optional[QuestionType] = None
    options: Optional[list[str]] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    marks: Optional[int] = Field(default=None, ge=0)
    order: Optional[int] = None
    is_active: Optional[bool] = None


class ProgramCreate(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    price: float = Field(default=0, ge=0)
    currency: str = "NGN"
    duration_months: int = Field(default=12, ge=1)
    metadata: Optional[dict[str, Any]] = None


class ProgramUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = None
    duration_months: Optional[int] = Field(default=None, ge=1)
    metadata: Optional[dict[str, Any]] = None


class ProgramAdminAssign(BaseModel):
    user_id: str
    program_id: str


class ManualEnrollRequest(BaseModel):
    user_id: str
    program_id: str
    duration_months: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class RoleChangeRequest(BaseModel):
    role: Literal["admin", "super_admin"] = "admin"


class PremiumUpdateRequest(BaseModel):
    is_premium: bool = True
    premium_expires_at: Optional[datetime] = None
    duration_months: Optional[int] = Field(default=None, ge=1, le=36, description="premium_expires_at 대신 기간 지정")


class AutomationRuleCreate(BaseModel):
    name: str
    trigger: AutomationTrigger
    conditions: dict[str, Any] = Field(default_factory=dict)
    template: dict[str, str] = Field(default_factory=dict, description='{"subject": ..., "body": ...}')
    is_active: bool = True


class AutomationRuleUpdate(BaseModel):
    name: Optional[str] = None
    trigger: Optional[AutomationTrigger] = None
    conditions: Optional[dict[str, Any]] = None
    template: Optional[dict[str, str]] = None
    is_active: Optional[bool] = None


class BlogPostCreate(BaseModel):
    title: str
    content: str
    excerpt: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    is_published: bool = False


class BlogPostUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    excerpt: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    image_url: Optional[str] = None
    is_published: Optional[bool] = None


class TestimonialCreate(BaseModel):
    name: str
    content: str
    program: Optional[str] = None
    institution: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True


class TestimonialUpdate(BaseModel):
    name: Optional[str] = None
    content: Optional[str] = None
    program: Optional[str] = None
    institution: Optional[str] = None
    image_url: Optional[str] = None
    is_active: Optional[bool] = None


class FeedbackResponseRequest(BaseModel):
    response: str = Field(..., min_length=1)
