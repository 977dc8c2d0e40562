"""
운영/콘텐츠 DB 모델
- 자동화 규칙 / 알림
- 수신 이메일 / 피드백
- 블로그 / 수강생 후기
- AI 튜터 대화 기록
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from core.models import new_id, utcnow


class AutomationTrigger(str, Enum):
    user_registration = "user_registration"
    feedback_submitted = "feedback_submitted"
    study_plan_created = "study_plan_created"
    custom = "custom"


class NotificationType(str, Enum):
    email = "email"
    automation = "automation"


class NotificationStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class FeedbackStatus(str, Enum):
    unread = "unread"
    read = "read"
    responded = "responded"


class ChatRole(str, Enum):
    user = "user"
    assistant = "assistant"


class AutomationRule(SQLModel, table=True):
    __tablename__ = "automation_rule"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    trigger: AutomationTrigger = Field(index=True)
    conditions: dict = Field(default_factory=dict, sa_column=Column(JSON))
    # {"subject": "...", "body": "..."} with {{key}} placeholders
    template: dict = Field(default_factory=dict, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Notification(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    type: NotificationType = Field(default=NotificationType.automation)
    title: str
    content: str
    recipient_email: Optional[str] = Field(default=None, index=True)
    recipient_role: Optional[str] = None
    rule_id: Optional[str] = Field(default=None, foreign_key="automation_rule.id")
    status: NotificationStatus = Field(default=NotificationStatus.pending, index=True)
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class InboundEmail(SQLModel, table=True):
    __tablename__ = "inbound_email"

    id: str = Field(default_factory=new_id, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    sender: str
    recipients: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    subject: Optional[str] = None
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    attachments: list[dict] = Field(default_factory=list, sa_column=Column(JSON))
    received_at: datetime = Field(default_factory=utcnow)
    is_read: bool = Field(default=False)
    is_archived: bool = Field(default=False)
    folder: str = Field(default="inbox")


class Feedback(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: Optional[str] = Field(default=None, foreign_key="user.id", index=True)
    name: Optional[str] = None
    email: Optional[str] = None
    message: str
    status: FeedbackStatus = Field(default=FeedbackStatus.unread)
    response: Optional[str] = None
    responded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class BlogPost(SQLModel, table=True):
    __tablename__ = "blog_post"

    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    content: str
    excerpt: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    image_url: Optional[str] = None
    is_published: bool = Field(default=False)
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LearnerTestimonial(SQLModel, table=True):
    __tablename__ = "learner_testimonial"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    program: Optional[str] = None
    institution: Optional[str] = None
    content: str
    image_url: Optional[str] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_message"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    role: ChatRole
    content: str
    conversation_id: Optional[str] = Field(default=None, index=True)
    model: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
