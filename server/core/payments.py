"""
결제 / 수강 등록 체크아웃
- 가격 계산 (다중 프로그램 할인, 기간 배수)
- Paystack 클라이언트 (httpx)
- 결제 완료 시 등록 활성화, 수동 결제 승인/거절
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

import httpx
from fastapi import Request
from sqlmodel import Session, select

from core.config import AppSettings
from core.enrollment import enrollment_expiry, find_active_enrollment
from core.errors import (
    ConflictError,
    NotFoundError,
    ServiceUnavailable,
    UpstreamError,
    ValidationFailed,
)
from core.exam_models import Exam, ExamEnrollment, ExamEnrollmentStatus
from core.models import (
    ApprovalStatus,
    EnrollmentPaymentMethod,
    EnrollmentStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Program,
    User,
    UserProgramEnrollment,
    utcnow,
)

logger = logging.getLogger(__name__)

# 프로그램 개수별 할인율 (4개 이상은 20%)
MULTI_PROGRAM_DISCOUNTS = {2: 0.10, 3: 0.15}
MAX_MULTI_PROGRAM_DISCOUNT = 0.20

# 기간(개월)별 가격 배수
DURATION_MULTIPLIERS = {3: 0.3, 6: 0.55, 12: 1.0}


@dataclass
class PriceBreakdown:
    subtotal: float
    discount_rate: float
    discount: float
    duration_months: int
    duration_multiplier: float
    total: int


def multi_program_discount(count: int) -> float:
    if count >= 4:
        return MAX_MULTI_PROGRAM_DISCOUNT
    return MULTI_PROGRAM_DISCOUNTS.get(count, 0.0)


def calculate_total_price(programs: Sequence[Program], duration_months: int = 12) -> PriceBreakdown:
    if duration_months not in DURATION_MULTIPLIERS:
        raise ValidationFailed(
            f"Invalid duration: {duration_months}. Allowed: {sorted(DURATION_MULTIPLIERS)}"
        )
    subtotal = float(sum(p.price or 0 for p in programs))
    rate = multi_program_discount(len(programs))
    discount = subtotal * rate
    multiplier = DURATION_MULTIPLIERS[duration_months]
    total = round((subtotal - discount) * multiplier)
    return PriceBreakdown(
        subtotal=subtotal,
        discount_rate=rate,
        discount=round(discount, 2),
        duration_months=duration_months,
        duration_multiplier=multiplier,
        total=total,
    )


def to_kobo(amount: float) -> int:
    return int(round(amount * 100))


def from_kobo(kobo: int) -> float:
    return kobo / 100


def verify_paystack_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """hex HMAC-SHA512 of the raw body, compared in constant time"""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected.encode(), signature.strip().encode("utf-8"))


class PaystackClient:
    """Thin synchronous wrapper over the Paystack transaction API."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        if not self.configured:
            raise ServiceUnavailable("Payment gateway is not configured")

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, path, headers=headers, json=json)
        except httpx.HTTPError as e:
            logger.error(f"[Paystack] ❌ {method} {path} transport error: {e}", exc_info=True)
            raise UpstreamError("Payment gateway unreachable") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error or not body.get("status", False):
            message = body.get("message") or "Payment gateway error"
            logger.error(f"[Paystack] ❌ {method} {path} -> {response.status_code}: {message}")
            raise UpstreamError(message)
        return body.get("data") or {}

    def initialize_transaction(
        self,
        *,
        email: str,
        amount_kobo: int,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount_kobo,
            "reference": reference,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url
        return self._request("POST", "/transaction/initialize", json=payload)

    def verify_transaction(self, reference: str) -> dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{reference}")


def get_paystack_client(request: Request) -> PaystackClient:
    settings: AppSettings = request.app.state.settings
    return PaystackClient(settings.paystack_secret_key, settings.paystack_base_url)


# ==================== 프로그램 체크아웃 ====================

def resolve_programs(session: Session, codes: Iterable[str]) -> list[Program]:
    wanted = list(dict.fromkeys(c.strip().upper() for c in codes if c and c.strip()))
    if not wanted:
        raise ValidationFailed("At least one program is required")

    programs = session.exec(select(Program).where(Program.code.in_(wanted))).all()
    by_code = {p.code.upper(): p for p in programs}
    invalid = [c for c in wanted if c not in by_code or not by_code[c].is_active]
    if invalid:
        raise ValidationFailed(f"Invalid or inactive programs: {', '.join(invalid)}", extra={"invalid": invalid})
    return [by_code[c] for c in wanted]


def ensure_not_enrolled(session: Session, user_id: str, programs: Sequence[Program]) -> None:
    already = [p.code for p in programs if find_active_enrollment(session, user_id, p.id)]
    if already:
        raise ConflictError(
            f"Already enrolled in: {', '.join(already)}",
            code="already_enrolled",
            extra={"programs": already},
        )


def create_program_checkout(
    session: Session,
    user: User,
    programs: Sequence[Program],
    duration_months: int,
    *,
    manual: bool = False,
    payment_proof: Optional[str] = None,
    transaction_id: Optional[str] = None,
    method: PaymentMethod = PaymentMethod.card,
) -> tuple[Payment, list[UserProgramEnrollment], PriceBreakdown]:
    """Create a pending Payment plus one pending_approval enrollment per program, in one transaction."""
    ensure_not_enrolled(session, user.id, programs)
    price = calculate_total_price(programs, duration_months)

    payment = Payment(
        user_id=user.id,
        amount=price.total,
        currency=programs[0].currency if programs else "NGN",
        status=PaymentStatus.pending,
        method=method,
        payment_type=PaymentType.program_enrollment,
        approval_status=ApprovalStatus.pending_approval if manual else ApprovalStatus.not_required,
        program_ids=[p.id for p in programs],
        duration_months=duration_months,
        transaction_id=transaction_id,
        payment_proof=payment_proof,
        description=f"Enrollment: {', '.join(p.code for p in programs)} ({duration_months} months)",
    )
    payment.reference = payment.id
    session.add(payment)

    enrollments = []
    for program in programs:
        enrollment = UserProgramEnrollment(
            user_id=user.id,
            program_id=program.id,
            payment_method=EnrollmentPaymentMethod.manual if manual else EnrollmentPaymentMethod.online,
            status=EnrollmentStatus.pending_approval,
            payment_id=payment.id,
        )
        session.add(enrollment)
        enrollments.append(enrollment)

    try:
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(payment)
    for enrollment in enrollments:
        session.refresh(enrollment)
    logger.info(f"[Payment] 🧾 checkout payment={payment.id} user={user.id} amount={payment.amount} manual={manual}")
    return payment, enrollments, price


def initialize_gateway_payment(
    session: Session,
    client: PaystackClient,
    payment: Payment,
    user: User,
    callback_url: Optional[str] = None,
) -> dict[str, Any]:
    """Start the Paystack transaction; a gateway failure marks the payment failed and re-raises."""
    try:
        return client.initialize_transaction(
            email=user.email,
            amount_kobo=to_kobo(payment.amount),
            reference=payment.reference,
            callback_url=callback_url,
            metadata={"paymentId": payment.id, "userId": user.id, "paymentType": payment.payment_type.value},
        )
    except (UpstreamError, ServiceUnavailable):
        fail_payment(session, payment, "Gateway initialization failed")
        raise


# ==================== 시험 단위 체크아웃 ====================

def create_exam_enrollment(
    session: Session,
    user: User,
    exam: Exam,
) -> tuple[ExamEnrollment, Optional[Payment]]:
    """Free exams are enrolled as paid; priced exams get a pending Payment."""
    existing = session.exec(
        select(ExamEnrollment).where(
            ExamEnrollment.user_id == user.id,
            ExamEnrollment.exam_id == exam.id,
            ExamEnrollment.status != ExamEnrollmentStatus.cancelled,
        )
    ).first()
    if existing and existing.payment_status == "completed":
        raise ConflictError("Already enrolled in this exam", code="already_enrolled")

    price = exam.price or 0
    enrollment = existing or ExamEnrollment(
        user_id=user.id,
        exam_id=exam.id,
        currency=exam.currency,
        max_attempts=exam.max_attempts,
    )

    payment = None
    if price <= 0:
        enrollment.payment_status = "completed"
        enrollment.amount_paid = 0
    else:
        enrollment.payment_status = "pending"
        payment = Payment(
            user_id=user.id,
            amount=price,
            currency=exam.currency,
            payment_type=PaymentType.exam_enrollment,
            exam_id=exam.id,
            description=f"Exam enrollment: {exam.title or exam.id}",
        )
        payment.reference = payment.id
        session.add(payment)

    enrollment.updated_at = utcnow()
    session.add(enrollment)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(enrollment)
    if payment is not None:
        session.refresh(payment)
    logger.info(f"[Payment] ✅ exam enrollment user={user.id} exam={exam.id} paid={payment is None}")
    return enrollment, payment


# ==================== 상태 전이 ====================

def _activate_program_enrollments(
    session: Session,
    payment: Payment,
    now: datetime,
    approved_by: Optional[str] = None,
) -> int:
    enrollments = session.exec(
        select(UserProgramEnrollment).where(
            UserProgramEnrollment.payment_id == payment.id,
            UserProgramEnrollment.status == EnrollmentStatus.pending_approval,
        )
    ).all()
    activated = 0
    for enrollment in enrollments:
        if find_active_enrollment(session, enrollment.user_id, enrollment.program_id, now):
            # one ACTIVE enrollment per (user, program)
            enrollment.status = EnrollmentStatus.revoked
            enrollment.notes = "Superseded by an existing active enrollment"
            logger.warning(f"[Payment] ⚠️ duplicate enrollment={enrollment.id} revoked")
        else:
            enrollment.status = EnrollmentStatus.active
            enrollment.expires_at = enrollment_expiry(payment.duration_months, now)
            enrollment.approved_by = approved_by
            enrollment.approved_at = now
            activated += 1
        enrollment.updated_at = now
        session.add(enrollment)
    return activated


def _complete_exam_enrollment(session: Session, payment: Payment, now: datetime) -> None:
    enrollment = session.exec(
        select(ExamEnrollment).where(
            ExamEnrollment.user_id == payment.user_id,
            ExamEnrollment.exam_id == payment.exam_id,
            ExamEnrollment.status != ExamEnrollmentStatus.cancelled,
        )
    ).first()
    if enrollment is None:
        logger.warning(f"[Payment] ⚠️ no exam enrollment for payment={payment.id}")
        return
    enrollment.payment_status = "completed"
    enrollment.amount_paid = payment.amount
    enrollment.updated_at = now
    session.add(enrollment)


def complete_payment(
    session: Session,
    payment: Payment,
    *,
    transaction_id: Optional[str] = None,
    approved_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Mark the payment completed and activate what it paid for. Returns False if it already was."""
    if payment.status == PaymentStatus.completed:
        return False

    now = now or utcnow()
    payment.status = PaymentStatus.completed
    if transaction_id:
        payment.transaction_id = transaction_id
    if payment.approval_status == ApprovalStatus.pending_approval:
        payment.approval_status = ApprovalStatus.approved
    payment.updated_at = now
    session.add(payment)

    if payment.payment_type == PaymentType.exam_enrollment:
        _complete_exam_enrollment(session, payment, now)
    else:
        _activate_program_enrollments(session, payment, now, approved_by)

    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(payment)
    logger.info(f"[Payment] ✅ completed payment={payment.id} user={payment.user_id}")
    return True


def fail_payment(session: Session, payment: Payment, reason: str) -> None:
    payment.status = PaymentStatus.failed
    payment.description = f"{payment.description or ''} [{reason}]".strip()
    payment.updated_at = utcnow()
    session.add(payment)
    session.commit()
    logger.warning(f"[Payment] ⚠️ payment={payment.id} failed: {reason}")


def reject_payment(session: Session, payment: Payment, admin: User, reason: Optional[str] = None) -> None:
    if payment.status == PaymentStatus.completed:
        raise ConflictError("Payment already completed")

    now = utcnow()
    payment.status = PaymentStatus.failed
    payment.approval_status = ApprovalStatus.rejected
    payment.updated_at = now
    session.add(payment)

    enrollments = session.exec(
        select(UserProgramEnrollment).where(
            UserProgramEnrollment.payment_id == payment.id,
            UserProgramEnrollment.status == EnrollmentStatus.pending_approval,
        )
    ).all()
    for enrollment in enrollments:
        enrollment.status = EnrollmentStatus.revoked
        enrollment.notes = reason or "Payment rejected"
        enrollment.approved_by = admin.id
        enrollment.updated_at = now
        session.add(enrollment)

    session.commit()
    logger.info(f"[Payment] payment={payment.id} rejected by admin={admin.id}")


def find_payment_by_reference(session: Session, reference: str) -> Payment:
    payment = session.exec(select(Payment).where(Payment.reference == reference)).first()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def verify_and_complete(
    session: Session,
    client: PaystackClient,
    payment: Payment,
) -> Payment:
    """Ask the gateway about ``payment`` and apply the outcome (idempotent once completed)."""
    if payment.status == PaymentStatus.completed:
        return payment

    data = client.verify_transaction(payment.reference)
    gateway_status = data.get("status")
    if gateway_status == "success":
        paid_kobo = data.get("amount")
        if paid_kobo is not None and paid_kobo < to_kobo(payment.amount):
            fail_payment(session, payment, "Amount paid is less than amount due")
            return payment
        complete_payment(session, payment, transaction_id=str(data.get("id") or "") or None)
    elif gateway_status in ("failed", "abandoned", "reversed"):
        fail_payment(session, payment, f"Gateway status: {gateway_status}")
    return payment
