"""
관리자 API
- 기관 / 시험 / 문제 / 프로그램 / 프로그램 관리자
- 등록 / 결제 승인 / 사용자 권한 / 통계

super_admin: 전체 권한
admin: 배정된 프로그램 범위 내에서만 관리
"""
import csv
import io
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy import func
from sqlmodel import Session, select

from api.exam_routers import attempt_dict, exam_dict, question_dict
from api.payment_routers import payment_dict
from api.routers import program_dict, user_dict
from api.schemas import (
    ExamCreate,
    ExamUpdate,
    InstitutionCreate,
    InstitutionUpdate,
    ManualEnrollRequest,
    PremiumUpdateRequest,
    ProgramAdminAssign,
    ProgramCreate,
    ProgramUpdate,
    PublishRequest,
    QuestionCreate,
    QuestionUpdate,
    RejectPaymentRequest,
    RoleChangeRequest,
)
from core.auth import get_settings, require_admin, require_super_admin
from core.config import AppSettings
from core.content_models import InboundEmail
from core.db import get_session
from core.enrollment import enrollment_expiry, find_active_enrollment
from core.exam_models import (
    Exam,
    ExamAttempt,
    ExamStatus,
    ExamVersion,
    Question,
    QuestionType,
)
from core.models import (
    ADMIN_ROLES,
    ApprovalStatus,
    EnrollmentPaymentMethod,
    EnrollmentStatus,
    Institution,
    Payment,
    PaymentStatus,
    Program,
    ProgramAdmin,
    User,
    UserProgramEnrollment,
    UserRole,
    utcnow,
)
from core.payments import complete_payment, reject_payment
from core.permissions import can_manage_program, get_managed_program_ids, is_super_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_or_404(session: Session, model, obj_id: str, label: str):
    obj = session.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return obj


def _require_program_scope(session: Session, admin: User, program_id: Optional[str]) -> None:
    """Program-bound resources need a manager of that program; unbound ones any admin."""
    if program_id is None or is_super_admin(admin):
        return
    if not can_manage_program(session, admin, program_id):
        logger.warning(f"[Admin] ⚠️ admin={admin.id} outside scope of program={program_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not manage this program")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _apply_updates(obj, payload, exclude: tuple[str, ...] = ()) -> None:
    for key, value in payload.model_dump(exclude_unset=True).items():
        if key in exclude:
            continue
        if isinstance(value, datetime):
            value = _naive_utc(value)
        setattr(obj, key, value)
    if hasattr(obj, "updated_at"):
        obj.updated_at = utcnow()


# ==================== 기관 ====================

def _ensure_unique_institution(session: Session, name: Optional[str], code: Optional[str], exclude_id: Optional[str] = None) -> None:
    for column, value in ((Institution.name, name), (Institution.code, code)):
        if value is None:
            continue
        clash = session.exec(select(Institution).where(column == value)).first()
        if clash and clash.id != exclude_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Institution with this {column.key} already exists",
            )


@router.get("/institutions")
def admin_list_institutions(
    include_inactive: bool = False,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(Institution)
    if not include_inactive:
        query = query.where(Institution.is_active == True)  # noqa: E712
    return [i.model_dump(mode="json") for i in session.exec(query.order_by(Institution.name)).all()]


@router.post("/institutions", status_code=status.HTTP_201_CREATED)
def admin_create_institution(
    payload: InstitutionCreate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    code = payload.code.strip().upper()
    _ensure_unique_institution(session, payload.name, code)
    institution = Institution(**{**payload.model_dump(), "code": code})
    session.add(institution)
    session.commit()
    session.refresh(institution)
    logger.info(f"[Admin] ✅ institution {institution.code} created by {current_user.id}")
    return institution.model_dump(mode="json")


@router.patch("/institutions/{institution_id}")
def admin_update_institution(
    institution_id: str,
    payload: InstitutionUpdate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    institution = _get_or_404(session, Institution, institution_id, "Institution")
    if payload.code:
        payload.code = payload.code.strip().upper()
    _ensure_unique_institution(session, payload.name, payload.code, exclude_id=institution.id)
    _apply_updates(institution, payload)
    session.add(institution)
    session.commit()
    session.refresh(institution)
    return institution.model_dump(mode="json")


@router.delete("/institutions/{institution_id}")
def admin_delete_institution(
    institution_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    institution = _get_or_404(session, Institution, institution_id, "Institution")
    institution.is_active = False
    institution.updated_at = utcnow()
    session.add(institution)
    session.commit()
    return {"message": "Institution deactivated", "id": institution.id}


# ==================== 시험 ====================

def _refresh_total_marks(session: Session, exam: Exam) -> None:
    total = session.exec(
        select(func.coalesce(func.sum(Question.marks), 0)).where(
            Question.exam_id == exam.id,
            Question.is_active == True,  # noqa: E712
        )
    ).one()
    exam.total_marks = int(total)
    exam.updated_at = utcnow()
    session.add(exam)


@router.get("/exams")
def admin_list_exams(
    include_inactive: bool = False,
    status_filter: Optional[ExamStatus] = None,
    program_id: Optional[str] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    """시험 목록 (soft delete된 시험은 include_inactive=true 일 때만)"""
    query = select(Exam)
    if not include_inactive:
        query = query.where(Exam.is_active == True)  # noqa: E712
    if status_filter:
        query = query.where(Exam.status == status_filter)
    if program_id:
        query = query.where(Exam.program_id == program_id)

    managed = get_managed_program_ids(session, current_user)
    exams = session.exec(query.order_by(Exam.created_at.desc())).all()
    if managed is not None:
        exams = [e for e in exams if e.program_id is None or e.program_id in managed]
    return [exam_dict(e) for e in exams]


@router.get("/exams/{exam_id}")
def admin_get_exam(
    exam_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """ID로 조회 (비활성 시험 포함)"""
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    questions = session.exec(select(Question).where(Question.exam_id == exam.id)).all()
    versions = session.exec(select(func.count()).select_from(ExamVersion).where(ExamVersion.exam_id == exam.id)).one()
    return {
        **exam_dict(exam, question_count=len([q for q in questions if q.is_active])),
        "version_count": versions,
    }


@router.post("/exams", status_code=status.HTTP_201_CREATED)
def admin_create_exam(
    payload: ExamCreate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> dict:
    _require_program_scope(session, current_user, payload.program_id)
    if payload.program_id:
        _get_or_404(session, Program, payload.program_id, "Program")
    if payload.start_at and payload.end_at and payload.end_at <= payload.start_at:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_at must be after start_at")

    data = payload.model_dump()
    if "max_attempts" not in payload.model_fields_set:
        data["max_attempts"] = settings.default_max_attempts
    for key in ("start_at", "end_at"):
        data[key] = _naive_utc(data[key])

    exam = Exam(**data, total_marks=0, status=ExamStatus.draft)
    session.add(exam)
    session.commit()
    session.refresh(exam)
    logger.info(f"[Admin] ✅ exam={exam.id} created by {current_user.id}")
    return exam_dict(exam)


@router.patch("/exams/{exam_id}")
def admin_update_exam(
    exam_id: str,
    payload: ExamUpdate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    if "program_id" in payload.model_fields_set:
        _require_program_scope(session, current_user, payload.program_id)
    # 게시는 스냅샷을 남기는 /publish 로만
    if payload.status == ExamStatus.published and exam.status != ExamStatus.published:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Use POST /api/admin/exams/{exam.id}/publish to publish an exam",
        )
    _apply_updates(exam, payload)
    if exam.start_at and exam.end_at and exam.end_at <= exam.start_at:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_at must be after start_at")
    session.add(exam)
    session.commit()
    session.refresh(exam)
    return exam_dict(exam)


@router.delete("/exams/{exam_id}")
def admin_delete_exam(
    exam_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """Soft delete - 행과 버전 기록은 유지"""
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    exam.is_active = False
    exam.updated_at = utcnow()
    session.add(exam)
    session.commit()
    logger.info(f"[Admin] exam={exam.id} soft-deleted by {current_user.id}")
    return {"message": "Exam deleted", "id": exam.id}


@router.post("/exams/{exam_id}/publish")
def admin_publish_exam(
    exam_id: str,
    payload: Optional[PublishRequest] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """게시 + ExamVersion 스냅샷 생성"""
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    if not exam.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot publish a deleted exam")

    questions = session.exec(
        select(Question)
        .where(Question.exam_id == exam.id, Question.is_active == True)  # noqa: E712
        .order_by(Question.order)
    ).all()
    if not questions:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Exam has no active questions")

    exam.status = ExamStatus.published
    _refresh_total_marks(session, exam)
    version = ExamVersion(
        exam_id=exam.id,
        snapshot={**exam.snapshot(list(questions)), "total_marks": exam.total_marks},
        note=payload.note if payload else None,
        published_by=current_user.id,
    )
    session.add(version)
    session.commit()
    session.refresh(exam)
    session.refresh(version)
    logger.info(f"[Admin] ✅ exam={exam.id} published as version={version.id}")
    return {"exam": exam_dict(exam), "version_id": version.id}


@router.get("/exams/{exam_id}/versions")
def admin_list_versions(
    exam_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    versions = session.exec(
        select(ExamVersion).where(ExamVersion.exam_id == exam.id).order_by(ExamVersion.created_at.desc())
    ).all()
    return [v.model_dump(mode="json") for v in versions]


def diff_snapshots(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    """Field-level changes plus added/removed/changed questions (matched by id)."""
    fields = {}
    for key in sorted((set(old) | set(new)) - {"questions"}):
        if old.get(key) != new.get(key):
            fields[key] = {"from": old.get(key), "to": new.get(key)}

    old_q = {q["id"]: q for q in old.get("questions", [])}
    new_q = {q["id"]: q for q in new.get("questions", [])}
    changed = []
    for qid in sorted(set(old_q) & set(new_q)):
        delta = {k: {"from": old_q[qid].get(k), "to": new_q[qid].get(k)}
                 for k in set(old_q[qid]) | set(new_q[qid])
                 if old_q[qid].get(k) != new_q[qid].get(k)}
        if delta:
            changed.append({"id": qid, "changes": delta})

    return {
        "fields": fields,
        "questions_added": [new_q[q] for q in new_q if q not in old_q],
        "questions_removed": [old_q[q] for q in old_q if q not in new_q],
        "questions_changed": changed,
    }


@router.get("/exams/{exam_id}/versions/diff")
def admin_diff_versions(
    exam_id: str,
    from_version: str,
    to_version: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    old = _get_or_404(session, ExamVersion, from_version, "Version")
    new = _get_or_404(session, ExamVersion, to_version, "Version")
    if old.exam_id != exam.id or new.exam_id != exam.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Versions belong to another exam")
    return {"from": old.id, "to": new.id, **diff_snapshots(old.snapshot or {}, new.snapshot or {})}


@router.post("/exams/{exam_id}/share")
def admin_share_exam(
    exam_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """공유 링크 slug 생성 (이미 있으면 유지)"""
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    if not exam.share_slug:
        slug = secrets.token_urlsafe(8)
        while session.exec(select(Exam.id).where(Exam.share_slug == slug)).first():
            slug = secrets.token_urlsafe(8)
        exam.share_slug = slug
    exam.is_shareable = True
    exam.updated_at = utcnow()
    session.add(exam)
    session.commit()
    return {"share_slug": exam.share_slug, "path": f"/exams/share/{exam.share_slug}"}


@router.get("/exams/{exam_id}/attempts")
def admin_exam_attempts(
    exam_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    attempts = session.exec(
        select(ExamAttempt).where(ExamAttempt.exam_id == exam.id).order_by(ExamAttempt.started_at.desc())
    ).all()
    return [attempt_dict(a) for a in attempts]


# ==================== 문제 ====================

def _next_order(session: Session, exam_id: str) -> int:
    current = session.exec(select(func.max(Question.order)).where(Question.exam_id == exam_id)).one()
    return (current or 0) + 1


@router.get("/exams/{exam_id}/questions")
def admin_list_questions(
    exam_id: str,
    include_inactive: bool = False,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    query = select(Question).where(Question.exam_id == exam.id)
    if not include_inactive:
        query = query.where(Question.is_active == True)  # noqa: E712
    questions = session.exec(query.order_by(Question.order)).all()
    return [{**question_dict(q, include_answer=True), "is_active": q.is_active} for q in questions]


@router.post("/questions", status_code=status.HTTP_201_CREATED)
def admin_create_question(
    payload: QuestionCreate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    exam = _get_or_404(session, Exam, payload.exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    data = payload.model_dump()
    if data["order"] is None:
        data["order"] = _next_order(session, exam.id)
    question = Question(**data)
    session.add(question)
    session.flush()
    _refresh_total_marks(session, exam)
    session.commit()
    session.refresh(question)
    return question_dict(question, include_answer=True)


@router.patch("/questions/{question_id}")
def admin_update_question(
    question_id: str,
    payload: QuestionUpdate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    question = _get_or_404(session, Question, question_id, "Question")
    exam = _get_or_404(session, Exam, question.exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    _apply_updates(question, payload)
    session.add(question)
    session.flush()
    _refresh_total_marks(session, exam)
    session.commit()
    session.refresh(question)
    return {**question_dict(question, include_answer=True), "is_active": question.is_active}


@router.delete("/questions/{question_id}")
def admin_delete_question(
    question_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    question = _get_or_404(session, Question, question_id, "Question")
    exam = _get_or_404(session, Exam, question.exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)
    question.is_active = False
    question.updated_at = utcnow()
    session.add(question)
    session.flush()
    _refresh_total_marks(session, exam)
    session.commit()
    return {"message": "Question deleted", "id": question.id}


def parse_question_row(row: dict[str, str], exam_id: str, order: int) -> Question:
    """One CSV row -> Question. Raises ValueError on missing/invalid fields."""
    text = (row.get("question") or "").strip()
    qtype = (row.get("type") or "").strip()
    correct = (row.get("correct_answer") or "").strip()
    if not text or not qtype or not correct:
        raise ValueError("Missing required fields: question, type, correct_answer")
    try:
        question_type = QuestionType(qtype)
    except ValueError:
        raise ValueError(f"Invalid question type: {qtype}")

    options = None
    raw_options = (row.get("options") or "").strip()
    if question_type == QuestionType.multiple_choice and raw_options:
        try:
            options = json.loads(raw_options)
        except ValueError:
            options = [opt.strip() for opt in raw_options.split(",")]
        if not isinstance(options, list):
            raise ValueError("options must be a list")
        options = [str(opt) for opt in options]

    points = (row.get("points") or row.get("marks") or "").strip()
    row_order = (row.get("order") or "").strip()
    return Question(
        exam_id=exam_id,
        question=text,
        type=question_type,
        options=options,
        correct_answer=correct,
        explanation=(row.get("explanation") or "").strip() or None,
        marks=int(points) if points else 1,
        order=int(row_order) if row_order else order,
    )


@router.post("/questions/upload", status_code=status.HTTP_201_CREATED)
async def admin_upload_questions(
    exam_id: str = Form(...),
    file: UploadFile = File(...),
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """CSV 일괄 업로드 (columns: question,type,options,correct_answer,explanation,points,order)"""
    exam = _get_or_404(session, Exam, exam_id, "Exam")
    _require_program_scope(session, current_user, exam.program_id)

    filename = (file.filename or "").lower()
    if not filename.endswith(".csv") and file.content_type not in ("text/csv", "application/vnd.ms-excel"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only CSV files are allowed")

    content = await file.read()
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be UTF-8 encoded")

    next_order = _next_order(session, exam.id)
    questions: list[Question] = []
    errors: list[dict] = []
    for line_no, row in enumerate(csv.DictReader(io.StringIO(text)), start=2):
        try:
            questions.append(parse_question_row(row, exam.id, next_order))
            next_order += 1
        except ValueError as e:
            errors.append({"line": line_no, "error": str(e)})

    if not questions:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "No valid questions found in the file", "errors": errors},
        )

    session.add_all(questions)
    session.flush()
    _refresh_total_marks(session, exam)
    session.commit()
    logger.info(f"[Admin] ✅ uploaded {len(questions)} questions to exam={exam.id} ({len(errors)} rows skipped)")
    return {
        "message": f"Successfully uploaded {len(questions)} questions",
        "created": len(questions),
        "errors": errors,
    }


# ==================== 프로그램 ====================

@router.get("/programs")
def admin_list_programs(
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    """관리 범위 내 프로그램 목록"""
    programs = session.exec(select(Program).order_by(Program.code)).all()
    managed = get_managed_program_ids(session, current_user)
    if managed is not None:
        programs = [p for p in programs if p.id in managed]
    return [program_dict(p) for p in programs]


@router.post("/programs", status_code=status.HTTP_201_CREATED)
def admin_create_program(
    payload: ProgramCreate,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    code = payload.code.strip().upper()
    if session.exec(select(Program).where(Program.code == code)).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Program code already exists")
    program = Program(
        code=code,
        name=payload.name,
        description=payload.description,
        price=payload.price,
        currency=payload.currency,
        duration_months=payload.duration_months,
        metadata_=payload.metadata,
    )
    session.add(program)
    session.commit()
    session.refresh(program)
    logger.info(f"[Admin] ✅ program {program.code} created by {current_user.id}")
    return program_dict(program)


@router.patch("/programs/{program_id}")
def admin_update_program(
    program_id: str,
    payload: ProgramUpdate,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    program = _get_or_404(session, Program, program_id, "Program")
    _require_program_scope(session, current_user, program.id)
    _apply_updates(program, payload, exclude=("metadata",))
    if "metadata" in payload.model_fields_set:
        program.metadata_ = payload.metadata
    session.add(program)
    session.commit()
    session.refresh(program)
    return program_dict(program)


@router.delete("/programs/{program_id}")
def admin_deactivate_program(
    program_id: str,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """프로그램은 물리 삭제하지 않음 (is_active=False)"""
    program = _get_or_404(session, Program, program_id, "Program")
    program.is_active = False
    program.updated_at = utcnow()
    session.add(program)
    session.commit()
    return {"message": "Program deactivated", "id": program.id}


# ==================== 프로그램 관리자 ====================

@router.get("/program-admins")
def admin_list_program_admins(
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    rows = session.exec(
        select(ProgramAdmin, User, Program)
        .join(User, User.id == ProgramAdmin.user_id)
        .join(Program, Program.id == ProgramAdmin.program_id)
        .where(ProgramAdmin.is_active == True)  # noqa: E712
    ).all()
    return [
        {
            "id": pa.id,
            "user": {"id": u.id, "name": u.name, "email": u.email},
            "program": {"id": p.id, "code": p.code, "name": p.name},
            "assigned_by": pa.assigned_by,
            "assigned_at": pa.assigned_at.isoformat(),
        }
        for pa, u, p in rows
    ]


@router.post("/program-admins", status_code=status.HTTP_201_CREATED)
def admin_assign_program_admin(
    payload: ProgramAdminAssign,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    user = _get_or_404(session, User, payload.user_id, "User")
    _get_or_404(session, Program, payload.program_id, "Program")
    if user.role != UserRole.admin:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only admins can be assigned to programs")

    assignment = session.exec(
        select(ProgramAdmin).where(ProgramAdmin.user_id == user.id, ProgramAdmin.program_id == payload.program_id)
    ).first()
    if assignment and assignment.is_active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Admin already assigned to this program")
    if assignment:
        assignment.is_active = True
        assignment.assigned_by = current_user.id
        assignment.assigned_at = utcnow()
    else:
        assignment = ProgramAdmin(user_id=user.id, program_id=payload.program_id, assigned_by=current_user.id)
    session.add(assignment)
    session.commit()
    session.refresh(assignment)
    return {"id": assignment.id, "user_id": assignment.user_id, "program_id": assignment.program_id}


@router.delete("/program-admins/{assignment_id}")
def admin_remove_program_admin(
    assignment_id: str,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    assignment = _get_or_404(session, ProgramAdmin, assignment_id, "Assignment")
    assignment.is_active = False
    session.add(assignment)
    session.commit()
    return {"message": "Assignment removed", "id": assignment.id}


# ==================== 등록 ====================

def enrollment_dict(enrollment: UserProgramEnrollment) -> dict:
    return {
        "id": enrollment.id,
        "user_id": enrollment.user_id,
        "program_id": enrollment.program_id,
        "program_code": enrollment.program.code if enrollment.program else None,
        "payment_method": enrollment.payment_method.value,
        "status": enrollment.status.value,
        "expires_at": enrollment.expires_at.isoformat() if enrollment.expires_at else None,
        "approved_by": enrollment.approved_by,
        "approved_at": enrollment.approved_at.isoformat() if enrollment.approved_at else None,
        "payment_id": enrollment.payment_id,
        "notes": enrollment.notes,
        "enrollment_date": enrollment.enrollment_date.isoformat(),
    }


@router.get("/enrollments")
def admin_list_enrollments(
    status_filter: Optional[EnrollmentStatus] = None,
    program_id: Optional[str] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(UserProgramEnrollment)
    if status_filter:
        query = query.where(UserProgramEnrollment.status == status_filter)
    if program_id:
        query = query.where(UserProgramEnrollment.program_id == program_id)

    managed = get_managed_program_ids(session, current_user)
    if managed is not None:
        if not managed:
            return []
        query = query.where(UserProgramEnrollment.program_id.in_(managed))
    rows = session.exec(query.order_by(UserProgramEnrollment.enrollment_date.desc())).all()
    return [enrollment_dict(e) for e in rows]


@router.post("/enrollments", status_code=status.HTTP_201_CREATED)
def admin_manual_enroll(
    payload: ManualEnrollRequest,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """수동 등록 (즉시 활성화)"""
    user = _get_or_404(session, User, payload.user_id, "User")
    program = _get_or_404(session, Program, payload.program_id, "Program")
    _require_program_scope(session, current_user, program.id)
    if find_active_enrollment(session, user.id, program.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already has an active enrollment")

    now = utcnow()
    enrollment = UserProgramEnrollment(
        user_id=user.id,
        program_id=program.id,
        payment_method=EnrollmentPaymentMethod.manual,
        status=EnrollmentStatus.active,
        expires_at=enrollment_expiry(payload.duration_months or program.duration_months, now),
        approved_by=current_user.id,
        approved_at=now,
        notes=payload.notes,
    )
    session.add(enrollment)
    session.commit()
    session.refresh(enrollment)
    logger.info(f"[Admin] ✅ manual enrollment user={user.id} program={program.code} by {current_user.id}")
    return enrollment_dict(enrollment)


@router.patch("/enrollments/{enrollment_id}/approve")
def admin_approve_enrollment(
    enrollment_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    enrollment = _get_or_404(session, UserProgramEnrollment, enrollment_id, "Enrollment")
    _require_program_scope(session, current_user, enrollment.program_id)
    if enrollment.status != EnrollmentStatus.pending_approval:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Enrollment is {enrollment.status.value}")

    payment = session.get(Payment, enrollment.payment_id) if enrollment.payment_id else None
    if payment is not None and payment.status != PaymentStatus.completed:
        # approving the enrollment confirms its payment
        complete_payment(session, payment, approved_by=current_user.id)
    else:
        if find_active_enrollment(session, enrollment.user_id, enrollment.program_id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already has an active enrollment")
        now = utcnow()
        months = payment.duration_months if payment else (enrollment.program.duration_months if enrollment.program else 12)
        enrollment.status = EnrollmentStatus.active
        enrollment.expires_at = enrollment_expiry(months, now)
        enrollment.approved_by = current_user.id
        enrollment.approved_at = now
        enrollment.updated_at = now
        session.add(enrollment)
        session.commit()

    session.refresh(enrollment)
    logger.info(f"[Admin] ✅ enrollment={enrollment.id} approved by {current_user.id}")
    return enrollment_dict(enrollment)


@router.patch("/enrollments/{enrollment_id}/revoke")
def admin_revoke_enrollment(
    enrollment_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    enrollment = _get_or_404(session, UserProgramEnrollment, enrollment_id, "Enrollment")
    _require_program_scope(session, current_user, enrollment.program_id)
    enrollment.status = EnrollmentStatus.revoked
    enrollment.updated_at = utcnow()
    session.add(enrollment)
    session.commit()
    session.refresh(enrollment)
    return enrollment_dict(enrollment)


# ==================== 결제 ====================

def _require_payment_scope(session: Session, admin: User, payment: Payment) -> None:
    for program_id in payment.program_ids or []:
        _require_program_scope(session, admin, program_id)


@router.get("/payments")
def admin_list_payments(
    status_filter: Optional[PaymentStatus] = None,
    approval_status: Optional[ApprovalStatus] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(Payment)
    if status_filter:
        query = query.where(Payment.status == status_filter)
    if approval_status:
        query = query.where(Payment.approval_status == approval_status)
    payments = session.exec(query.order_by(Payment.created_at.desc())).all()

    managed = get_managed_program_ids(session, current_user)
    if managed is not None:
        payments = [p for p in payments if p.program_ids and set(p.program_ids) <= managed]
    return [payment_dict(p) for p in payments]


@router.post("/payments/{payment_id}/approve")
def admin_approve_payment(
    payment_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    payment = _get_or_404(session, Payment, payment_id, "Payment")
    _require_payment_scope(session, current_user, payment)
    if payment.approval_status == ApprovalStatus.rejected:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Payment was rejected")
    changed = complete_payment(session, payment, approved_by=current_user.id)
    return {"message": "Payment approved" if changed else "Payment already completed", "payment": payment_dict(payment)}


@router.post("/payments/{payment_id}/reject")
def admin_reject_payment(
    payment_id: str,
    payload: Optional[RejectPaymentRequest] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    payment = _get_or_404(session, Payment, payment_id, "Payment")
    _require_payment_scope(session, current_user, payment)
    reject_payment(session, payment, current_user, payload.reason if payload else None)
    session.refresh(payment)
    return {"message": "Payment rejected", "payment": payment_dict(payment)}


# ==================== 사용자 ====================

@router.get("/users")
def admin_list_users(
    role: Optional[UserRole] = None,
    search: Optional[str] = None,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> list[dict]:
    query = select(User)
    if role:
        query = query.where(User.role == role)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.where((func.lower(User.name).like(pattern)) | (func.lower(User.email).like(pattern)))
    return [user_dict(u) for u in session.exec(query.order_by(User.created_at.desc())).all()]


@router.patch("/users/{user_id}/promote")
def admin_promote_user(
    user_id: str,
    payload: RoleChangeRequest,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    target = _get_or_404(session, User, user_id, "User")
    new_role = UserRole(payload.role)
    if new_role == UserRole.super_admin and not is_super_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only super admins can promote to super_admin")
    if target.role == UserRole.super_admin and not is_super_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot change a super admin")
    target.role = new_role
    target.updated_at = utcnow()
    session.add(target)
    session.commit()
    session.refresh(target)
    logger.info(f"[Admin] user={target.id} promoted to {new_role.value} by {current_user.id}")
    return user_dict(target)


@router.patch("/users/{user_id}/demote")
def admin_demote_user(
    user_id: str,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    target = _get_or_404(session, User, user_id, "User")
    if target.role == UserRole.super_admin and not is_super_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot demote a super admin")
    if target.role not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is not an admin")
    target.role = UserRole.user
    target.updated_at = utcnow()
    for assignment in session.exec(select(ProgramAdmin).where(ProgramAdmin.user_id == target.id)).all():
        assignment.is_active = False
        session.add(assignment)
    session.add(target)
    session.commit()
    session.refresh(target)
    logger.info(f"[Admin] user={target.id} demoted by {current_user.id}")
    return user_dict(target)


@router.patch("/users/{user_id}/premium")
def admin_set_premium(
    user_id: str,
    payload: PremiumUpdateRequest,
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """레거시 프리미엄 부여/해제 (만료일 없음 = 무기한)"""
    target = _get_or_404(session, User, user_id, "User")
    if payload.is_premium:
        if payload.duration_months:
            expires_at = enrollment_expiry(payload.duration_months)
        else:
            expires_at = _naive_utc(payload.premium_expires_at)
        if expires_at is not None and expires_at <= utcnow():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="premium_expires_at must be in the future")
        target.is_premium = True
        target.premium_expires_at = expires_at
    else:
        target.is_premium = False
        target.premium_expires_at = None
    target.updated_at = utcnow()
    session.add(target)
    session.commit()
    session.refresh(target)
    logger.info(f"[Admin] user={target.id} premium={target.is_premium} until={target.premium_expires_at} by {current_user.id}")
    return user_dict(target)


@router.delete("/users/{user_id}")
def admin_delete_user(
    user_id: str,
    current_user: User = Depends(require_super_admin()),
    session: Session = Depends(get_session),
) -> dict:
    """계정 비활성화 (응시/결제 기록 보존)"""
    target = _get_or_404(session, User, user_id, "User")
    if target.id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot delete your own account")
    target.is_active = False
    target.updated_at = utcnow()
    session.add(target)
    session.commit()
    logger.info(f"[Admin] user={target.id} deleted by {current_user.id}")
    return {"message": "User deleted", "id": target.id}


# ==================== 통계 ====================

@router.get("/stats")
def admin_stats(
    current_user: User = Depends(require_admin()),
    session: Session = Depends(get_session),
) -> dict:
    def count(model, *conditions) -> int:
        query = select(func.count()).select_from(model)
        if conditions:
            query = query.where(*conditions)
        return session.exec(query).one()

    revenue = session.exec(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.status == PaymentStatus.completed)
    ).one()
    return {
        "users": count(User, User.is_active == True),  # noqa: E712
        "admins": count(User, User.role.in_(ADMIN_ROLES)),
        "institutions": count(Institution, Institution.is_active == True),  # noqa: E712
        "programs": count(Program, Program.is_active == True),  # noqa: E712
        "exams": count(Exam, Exam.is_active == True),  # noqa: E712
        "published_exams": count(Exam, Exam.is_active == True, Exam.status == ExamStatus.published),  # noqa: E712
        "attempts": count(ExamAttempt),
        "completed_attempts": count(ExamAttempt, ExamAttempt.is_completed == True),  # noqa: E712
        "active_enrollments": count(UserProgramEnrollment, UserProgramEnrollment.status == EnrollmentStatus.active),
        "pending_approvals": count(Payment, Payment.approval_status == ApprovalStatus.pending_approval),
        "unread_emails": count(InboundEmail, InboundEmail.is_read == False, InboundEmail.is_archived == False),  # noqa: E712
        "revenue": float(revenue or 0),
    }
