"""
관리자 운영/콘텐츠 API
- 자동화 규칙, 알림 큐
- 블로그 / 수강생 후기
- 수신 이메일 / 피드백
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from api.schemas import (
    AutomationRuleCreate,
    AutomationRuleUpdate,
    BlogPostCreate,
    BlogPostUpdate,
    FeedbackResponseRequest,
    TestimonialCreate,
    TestimonialUpdate,
)
from core.auth import require_admin, require_super_admin
from core.content_models import (
    AutomationRule,
    AutomationTrigger,
    BlogPost,
    Feedback,
    FeedbackStatus,
    InboundEmail,
    LearnerTestimonial,
    Notification,
    NotificationStatus,
)
from core.db import get_session
from core.models import User, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-content"])


def _get_or_404(session: Session, model, obj_id: str, label: str):
    obj = session.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return obj


def _save(session: Session, obj):
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return obj.model_dump(mode="json")


# ==================== 자동화 규칙 ====================

@router.get("/automation-rules")
def list_automation_rules(
    trigger: Optional[AutomationTrigger] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(AutomationRule)
    if trigger:
        query = query.where(AutomationRule.trigger == trigger)
    return [r.model_dump(mode="json") for r in session.exec(query.order_by(AutomationRule.created_at)).all()]


@router.post("/automation-rules", status_code=status.HTTP_201_CREATED)
def create_automation_rule(
    payload: AutomationRuleCreate,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    rule = AutomationRule(**payload.model_dump())
    logger.info(f"[Automation] rule '{payload.name}' ({payload.trigger.value}) created by {current_user.id}")
    return _save(session, rule)


@router.patch("/automation-rules/{rule_id}")
def update_automation_rule(
    rule_id: str,
    payload: AutomationRuleUpdate,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    rule = _get_or_404(session, AutomationRule, rule_id, "Automation rule")
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(rule, key, value)
    rule.updated_at = utcnow()
    return _save(session, rule)


@router.delete("/automation-rules/{rule_id}")
def delete_automation_rule(
    rule_id: str,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    rule = _get_or_404(session, AutomationRule, rule_id, "Automation rule")
    # 알림 기록이 규칙을 참조하므로 비활성화만
    rule.is_active = False
    rule.updated_at = utcnow()
    session.add(rule)
    session.commit()
    return {"message": "Automation rule disabled", "id": rule.id}


@router.get("/notifications")
def list_notifications(
    status_filter: Optional[NotificationStatus] = None,
    limit: int = 100,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(Notification)
    if status_filter:
        query = query.where(Notification.status == status_filter)
    rows = session.exec(query.order_by(Notification.created_at.desc()).limit(max(1, min(limit, 500)))).all()
    return [n.model_dump(mode="json") for n in rows]


# ==================== 블로그 ====================

@router.get("/blog")
def admin_list_blog_posts(
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    posts = session.exec(select(BlogPost).order_by(BlogPost.created_at.desc())).all()
    return [p.model_dump(mode="json") for p in posts]


@router.post("/blog", status_code=status.HTTP_201_CREATED)
def create_blog_post(
    payload: BlogPostCreate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    post = BlogPost(**payload.model_dump())
    if not post.author:
        post.author = current_user.name
    if post.is_published:
        post.published_at = utcnow()
    return _save(session, post)


@router.patch("/blog/{post_id}")
def update_blog_post(
    post_id: str,
    payload: BlogPostUpdate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    post = _get_or_404(session, BlogPost, post_id, "Post")
    was_published = post.is_published
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(post, key, value)
    if post.is_published and not was_published:
        post.published_at = utcnow()
    post.updated_at = utcnow()
    return _save(session, post)


@router.delete("/blog/{post_id}")
def delete_blog_post(
    post_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    post = _get_or_404(session, BlogPost, post_id, "Post")
    session.delete(post)
    session.commit()
    return {"message": "Post deleted", "id": post_id}


# ==================== 수강생 후기 ====================

@router.get("/testimonials")
def admin_list_testimonials(
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    rows = session.exec(select(LearnerTestimonial).order_by(LearnerTestimonial.created_at.desc())).all()
    return [t.model_dump(mode="json") for t in rows]


@router.post("/testimonials", status_code=status.HTTP_201_CREATED)
def create_testimonial(
    payload: TestimonialCreate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    return _save(session, LearnerTestimonial(**payload.model_dump()))


@router.patch("/testimonials/{testimonial_id}")
def update_testimonial(
    testimonial_id: str,
    payload: TestimonialUpdate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    testimonial = _get_or_404(session, LearnerTestimonial, testimonial_id, "Testimonial")
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(testimonial, key, value)
    testimonial.updated_at = utcnow()
    return _save(session, testimonial)


@router.delete("/testimonials/{testimonial_id}")
def delete_testimonial(
    testimonial_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    testimonial = _get_or_404(session, LearnerTestimonial, testimonial_id, "Testimonial")
    session.delete(testimonial)
    session.commit()
    return {"message": "Testimonial deleted", "id": testimonial_id}


# ==================== 수신 이메일 ====================

@router.get("/emails")
def list_inbound_emails(
    folder: str = "inbox",
    unread_only: bool = False,
    include_archived: bool = False,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(InboundEmail).where(InboundEmail.folder == folder)
    if unread_only:
        query = query.where(InboundEmail.is_read == False)  # noqa: E712
    if not include_archived:
        query = query.where(InboundEmail.is_archived == False)  # noqa: E712
    rows = session.exec(query.order_by(InboundEmail.received_at.desc())).all()
    return [e.model_dump(mode="json") for e in rows]


@router.patch("/emails/{email_id}/read")
def mark_email_read(
    email_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    email = _get_or_404(session, InboundEmail, email_id, "Email")
    email.is_read = True
    return _save(session, email)


@router.patch("/emails/{email_id}/archive")
def archive_email(
    email_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    email = _get_or_404(session, InboundEmail, email_id, "Email")
    email.is_archived = True
    email.folder = "archive"
    return _save(session, email)


# ==================== 피드백 ====================

@router.get("/feedback")
def list_feedback(
    status_filter: Optional[FeedbackStatus] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(Feedback)
    if status_filter:
        query = query.where(Feedback.status == status_filter)
    rows = session.exec(query.order_by(Feedback.created_at.desc())).all()
    return [f.model_dump(mode="json") for f in rows]


@router.patch("/feedback/{feedback_id}/read")
def mark_feedback_read(
    feedback_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    feedback = _get_or_404(session, Feedback, feedback_id, "Feedback")
    if feedback.status == FeedbackStatus.unread:
        feedback.status = FeedbackStatus.read
    return _save(session, feedback)


@router.post("/feedback/{feedback_id}/respond")
def respond_to_feedback(
    feedback_id: str,
    payload: FeedbackResponseRequest,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    feedback = _get_or_404(session, Feedback, feedback_id, "Feedback")
    feedback.response = payload.response
    feedback.status = FeedbackStatus.responded
    feedback.responded_at = utcnow()
    logger.info(f"[Feedback] feedback={feedback.id} answered by {current_user.id}")
    return _save(session, feedback)
