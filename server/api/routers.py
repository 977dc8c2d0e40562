import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy import func
from sqlmodel import Session, select

from api.schemas import (
    FeedbackRequest,
    LoginRequest,
    RegisterRequest,
    StudyPlanRequest,
    TokenResponse,
    UpdateInstitutionRequest,
    UpdateProfileRequest,
)
from core.auth import (
    get_current_user,
    get_optional_user,
    get_password_hash,
    get_settings,
    issue_token_for,
    verify_password,
)
from core.config import AppSettings
from core.content_models import AutomationTrigger, BlogPost, Feedback, LearnerTestimonial
from core.db import Database, get_database, get_session
from core.enrollment import get_active_enrollments
from core.models import Institution, Program, User, utcnow
from core.study_planner import days_until, generate_study_plan
from core.tasks import enqueue_automation_event
from core.webhooks import store_inbound_email, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["api"])


def user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "is_active": user.is_active,
        "is_premium": user.is_premium,
        "premium_expires_at": user.premium_expires_at.isoformat() if user.premium_expires_at else None,
        "institution_id": user.institution_id,
        "points": user.points,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def program_dict(program: Program) -> dict:
    return {
        "id": program.id,
        "code": program.code,
        "name": program.name,
        "description": program.description,
        "price": program.price,
        "currency": program.currency,
        "duration_months": program.duration_months,
        "is_active": program.is_active,
        "metadata": program.metadata_ or {},
    }


@router.get("/health")
def health_check(db: Database = Depends(get_database)) -> dict:
    db_ok = db.health_check()
    if not db_ok:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return {"status": "ok", "service": "O'Prep", "database": "ok"}


# ==================== 인증 엔드포인트 ====================

@router.post("/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_database),
) -> TokenResponse:
    """회원가입 - 일반 사용자(user) 계정 생성"""
    existing = session.exec(select(User).where(User.email == payload.email)).first()
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    if payload.institution_id and not session.get(Institution, payload.institution_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown institution")

    user = User(
        name=payload.name.strip(),
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        institution_id=payload.institution_id,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"✅ registered user={user.id}")

    enqueue_automation_event(
        tasks,
        db,
        AutomationTrigger.user_registration,
        {"userId": user.id, "userName": user.name, "userEmail": user.email},
    )

    return TokenResponse(
        access_token=issue_token_for(user, settings),
        user_id=user.id,
        role=user.role.value,
        expires_in=settings.jwt_expiration_hours * 3600,
    )


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> TokenResponse:
    """로그인 - 이메일과 비밀번호로 인증"""
    user = session.exec(select(User).where(User.email == payload.email)).first()
    if not user or not verify_password(payload.password, user.password_hash):
        logger.warning(f"⚠️ failed login for {payload.email}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")

    return TokenResponse(
        access_token=issue_token_for(user, settings),
        user_id=user.id,
        role=user.role.value,
        expires_in=settings.jwt_expiration_hours * 3600,
    )


# ==================== 사용자 ====================

@router.get("/user/me")
def get_me(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    institution = session.get(Institution, current_user.institution_id) if current_user.institution_id else None
    enrollments = get_active_enrollments(session, current_user.id)
    return {
        **user_dict(current_user),
        "institution": {"id": institution.id, "name": institution.name, "code": institution.code}
        if institution
        else None,
        "active_programs": [
            {
                "enrollment_id": e.id,
                "program_id": e.program_id,
                "program_code": e.program.code if e.program else None,
                "expires_at": e.expires_at.isoformat() if e.expires_at else None,
            }
            for e in enrollments
        ],
    }


@router.put("/user/institution")
def update_my_institution(
    payload: UpdateInstitutionRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    institution = session.get(Institution, payload.institution_id)
    if not institution or not institution.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Institution not found")
    current_user.institution_id = institution.id
    current_user.updated_at = utcnow()
    session.add(current_user)
    session.commit()
    return {"message": "Institution updated", "institution_id": institution.id}


@router.patch("/user/profile")
def update_my_profile(
    payload: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    if payload.name and payload.name.strip():
        current_user.name = payload.name.strip()
    if payload.password:
        current_user.password_hash = get_password_hash(payload.password)
    current_user.updated_at = utcnow()
    session.add(current_user)
    session.commit()
    session.refresh(current_user)
    return user_dict(current_user)


# ==================== 공개 목록 ====================

@router.get("/institutions")
def list_institutions(
    state: Optional[str] = None,
    type: Optional[str] = None,
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(Institution).where(Institution.is_active == True)  # noqa: E712
    if state:
        query = query.where(Institution.state == state)
    if type:
        query = query.where(Institution.type == type)
    institutions = session.exec(query.order_by(Institution.name)).all()
    return [
        {"id": i.id, "name": i.name, "code": i.code, "state": i.state, "city": i.city, "type": i.type}
        for i in institutions
    ]


@router.get("/programs")
def list_programs(session: Session = Depends(get_session)) -> list[dict]:
    programs = session.exec(
        select(Program).where(Program.is_active == True).order_by(Program.code)  # noqa: E712
    ).all()
    return [program_dict(p) for p in programs]


@router.get("/leaderboard")
def leaderboard(session: Session = Depends(get_session)) -> list[dict]:
    """기관별 포인트 합계"""
    rows = session.exec(
        select(Institution.id, Institution.name, func.sum(User.points))
        .join(User, User.institution_id == Institution.id)
        .group_by(Institution.id, Institution.name)
        .order_by(func.sum(User.points).desc())
    ).all()
    return [{"institution_id": i, "institution": name, "points": int(points or 0)} for i, name, points in rows]


@router.post("/feedback", status_code=status.HTTP_201_CREATED)
def submit_feedback(
    payload: FeedbackRequest,
    tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    db: Database = Depends(get_database),
    current_user: Optional[User] = Depends(get_optional_user),
) -> dict:
    feedback = Feedback(
        user_id=current_user.id if current_user else None,
        name=payload.name or (current_user.name if current_user else None),
        email=payload.email or (current_user.email if current_user else None),
        message=payload.message,
    )
    session.add(feedback)
    session.commit()
    session.refresh(feedback)

    enqueue_automation_event(
        tasks,
        db,
        AutomationTrigger.feedback_submitted,
        {"feedbackId": feedback.id, "userName": feedback.name, "userEmail": feedback.email, "message": feedback.message},
    )
    return {"message": "Feedback received", "id": feedback.id}


@router.post("/study-planner")
def create_study_plan(
    payload: StudyPlanRequest,
    tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Database = Depends(get_database),
) -> dict:
    today = utcnow().date()
    plan = generate_study_plan(payload.exam_type, payload.exam_date, payload.study_hours, today)
    logger.info(f"📅 study plan user={current_user.id} exam_type={payload.exam_type} days={len(plan)}")

    enqueue_automation_event(
        tasks,
        db,
        AutomationTrigger.study_plan_created,
        {
            "userId": current_user.id,
            "userName": current_user.name,
            "userEmail": current_user.email,
            "examType": payload.exam_type,
            "examDate": payload.exam_date.isoformat(),
            "studyHours": payload.study_hours,
            "knowledgeLevel": payload.knowledge_level,
            "daysUntilExam": days_until(payload.exam_date, today),
        },
    )
    return {"study_plan": plan}


# ==================== 웹사이트 콘텐츠 ====================

@router.get("/website/blog")
def list_blog_posts(
    category: Optional[str] = None,
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(BlogPost).where(BlogPost.is_published == True)  # noqa: E712
    if category:
        query = query.where(BlogPost.category == category)
    posts = session.exec(query.order_by(BlogPost.published_at.desc())).all()
    return [p.model_dump(mode="json") for p in posts]


@router.get("/website/blog/{post_id}")
def get_blog_post(post_id: str, session: Session = Depends(get_session)) -> dict:
    post = session.get(BlogPost, post_id)
    if not post or not post.is_published:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return post.model_dump(mode="json")


@router.get("/website/testimonials")
def list_testimonials(session: Session = Depends(get_session)) -> list[dict]:
    rows = session.exec(
        select(LearnerTestimonial)
        .where(LearnerTestimonial.is_active == True)  # noqa: E712
        .order_by(LearnerTestimonial.created_at.desc())
    ).all()
    return [t.model_dump(mode="json") for t in rows]


# ==================== 수신 이메일 웹훅 ====================

@router.post("/webhooks/email-received")
async def email_received(
    request: Request,
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> dict:
    """서명 검증 후 수신 이메일 저장 (messageId 멱등)"""
    if not settings.webhook_secret:
        logger.error("❌ WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not configured")

    raw_body = await request.body()
    signature = request.headers.get("X-Webhook-Signature")
    if not verify_signature(raw_body, signature, settings.webhook_secret):
        logger.warning("⚠️ email webhook rejected: invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    email, created = store_inbound_email(session, payload)
    if not created:
        return {"message": "Email already processed", "id": email.id if email else None}
    return {"message": "Email received", "id": email.id}
