import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class UserRole(str, Enum):
    user = "user"
    admin = "admin"
    super_admin = "super_admin"


ADMIN_ROLES = (UserRole.admin, UserRole.super_admin)


class EnrollmentStatus(str, Enum):
    """Program enrollment status"""
    pending_approval = "pending_approval"
    active = "active"
    in_progress = "in_progress"
    completed = "completed"
    expired = "expired"
    revoked = "revoked"


class EnrollmentPaymentMethod(str, Enum):
    online = "online"
    manual = "manual"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class PaymentMethod(str, Enum):
    card = "card"
    bank_transfer = "bank_transfer"
    other = "other"


class PaymentType(str, Enum):
    program_enrollment = "program_enrollment"
    exam_enrollment = "exam_enrollment"


class ApprovalStatus(str, Enum):
    not_required = "not_required"
    pending_approval = "pending_approval"
    approved = "approved"
    rejected = "rejected"


class Institution(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True, unique=True)
    code: str = Field(index=True, unique=True, description="기관 약어")
    state: str
    city: str
    type: str = Field(description="University, College of Nursing, Polytechnic ...")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    password_hash: Optional[str] = None
    role: UserRole = Field(default=UserRole.user)
    is_active: bool = Field(default=True)
    # legacy entitlement, predates program enrollments
    is_premium: bool = Field(default=False)
    premium_expires_at: Optional[datetime] = None
    institution_id: Optional[str] = Field(default=None, foreign_key="institution.id")
    points: int = Field(default=0)
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Program(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    code: str = Field(index=True, unique=True, description="RM, RN, RPHN ...")
    name: str
    description: Optional[str] = None
    price: float = Field(default=0)
    currency: str = Field(default="NGN")
    duration_months: int = Field(default=12)
    is_active: bool = Field(default=True)
    metadata_: Optional[dict] = Field(default=None, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    enrollments: list["UserProgramEnrollment"] = Relationship(back_populates="program")


class ProgramAdmin(SQLModel, table=True):
    """Assignment of a (non-super) admin to a program they may manage."""
    __tablename__ = "program_admin"
    __table_args__ = (UniqueConstraint("user_id", "program_id", name="uq_program_admin_user_program"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    program_id: str = Field(foreign_key="program.id", index=True)
    assigned_by: Optional[str] = None
    is_active: bool = Field(default=True)
    assigned_at: datetime = Field(default_factory=utcnow)


class UserProgramEnrollment(SQLModel, table=True):
    __tablename__ = "user_program_enrollment"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    program_id: str = Field(foreign_key="program.id", index=True)
    payment_method: EnrollmentPaymentMethod = Field(default=EnrollmentPaymentMethod.online)
    status: EnrollmentStatus = Field(default=EnrollmentStatus.active, index=True)
    expires_at: Optional[datetime] = Field(default=None, index=True)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    payment_id: Optional[str] = Field(default=None, foreign_key="payment.id", index=True)
    notes: Optional[str] = None
    enrollment_date: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    program: Optional[Program] = Relationship(back_populates="enrollments")


class Payment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    amount: float = Field(default=0)
    currency: str = Field(default="NGN")
    status: PaymentStatus = Field(default=PaymentStatus.pending)
    method: PaymentMethod = Field(default=PaymentMethod.card)
    payment_type: PaymentType = Field(default=PaymentType.program_enrollment)
    approval_status: ApprovalStatus = Field(default=ApprovalStatus.not_required)
    program_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    exam_id: Optional[str] = None
    duration_months: int = Field(default=12)
    reference: Optional[str] = Field(default=None, index=True, unique=True)
    transaction_id: Optional[str] = None
    payment_proof: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
