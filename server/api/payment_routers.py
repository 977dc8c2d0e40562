"""
결제 API
- 온라인(Paystack) / 수동(계좌이체) 프로그램 등록
- 결제 검증, Paystack 웹훅
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session, select

from api.schemas import EnrollProgramsRequest, ManualPaymentRequest, VerifyPaymentRequest
from core.auth import get_current_user, get_settings
from core.config import AppSettings
from core.db import get_session
from core.errors import ForbiddenError, ValidationFailed
from core.models import ADMIN_ROLES, Payment, PaymentMethod, User
from core.payments import (
    PaystackClient,
    complete_payment,
    create_program_checkout,
    find_payment_by_reference,
    get_paystack_client,
    initialize_gateway_payment,
    resolve_programs,
    to_kobo,
    verify_and_complete,
    verify_paystack_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["payments"])


def payment_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status.value,
        "method": payment.method.value,
        "payment_type": payment.payment_type.value,
        "approval_status": payment.approval_status.value,
        "program_ids": payment.program_ids or [],
        "exam_id": payment.exam_id,
        "duration_months": payment.duration_months,
        "reference": payment.reference,
        "transaction_id": payment.transaction_id,
        "payment_proof": payment.payment_proof,
        "description": payment.description,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


@router.post("/payments/enroll", status_code=status.HTTP_201_CREATED)
def enroll_programs(
    payload: EnrollProgramsRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
    paystack: PaystackClient = Depends(get_paystack_client),
) -> dict:
    """프로그램 등록 결제 시작 (Paystack)"""
    programs = resolve_programs(session, payload.program_codes)
    payment, enrollments, price = create_program_checkout(
        session, current_user, programs, payload.duration_months
    )
    callback_url = payload.callback_url or f"{settings.site_url.rstrip('/')}/payments/callback"
    gateway = initialize_gateway_payment(session, paystack, payment, current_user, callback_url=callback_url)

    return {
        "payment": payment_dict(payment),
        "enrollment_ids": [e.id for e in enrollments],
        "pricing": {
            "subtotal": price.subtotal,
            "discount_rate": price.discount_rate,
            "discount": price.discount,
            "duration_months": price.duration_months,
            "duration_multiplier": price.duration_multiplier,
            "total": price.total,
            "total_kobo": to_kobo(price.total),
        },
        "authorization_url": gateway.get("authorization_url"),
        "access_code": gateway.get("access_code"),
        "reference": payment.reference,
    }


@router.post("/payments/manual", status_code=status.HTTP_201_CREATED)
def manual_payment(
    payload: ManualPaymentRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> dict:
    """수동 결제 (관리자 승인 대기)"""
    if not payload.payment_proof and not payload.transaction_reference:
        raise ValidationFailed("A payment proof or transaction reference is required")

    programs = resolve_programs(session, payload.program_codes)
    payment, enrollments, _ = create_program_checkout(
        session,
        current_user,
        programs,
        payload.duration_months,
        manual=True,
        payment_proof=payload.payment_proof,
        transaction_id=payload.transaction_reference,
        method=PaymentMethod(payload.method),
    )
    return {
        "message": "Payment submitted for approval",
        "payment": payment_dict(payment),
        "enrollment_ids": [e.id for e in enrollments],
    }


@router.post("/payments/verify")
def verify_payment(
    payload: VerifyPaymentRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    paystack: PaystackClient = Depends(get_paystack_client),
) -> dict:
    payment = find_payment_by_reference(session, payload.reference)
    if payment.user_id != current_user.id and current_user.role not in ADMIN_ROLES:
        raise ForbiddenError("You do not have access to this payment")

    payment = verify_and_complete(session, paystack, payment)
    return {"payment": payment_dict(payment), "status": payment.status.value}


@router.get("/payments/history")
def payment_history(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> list[dict]:
    payments = session.exec(
        select(Payment).where(Payment.user_id == current_user.id).order_by(Payment.created_at.desc())
    ).all()
    return [payment_dict(p) for p in payments]


@router.post("/webhooks/paystack")
async def paystack_webhook(
    request: Request,
    session: Session = Depends(get_session),
    settings: AppSettings = Depends(get_settings),
) -> dict:
    """Paystack 웹훅 (HMAC-SHA512 서명 검증)"""
    raw_body = await request.body()
    signature = request.headers.get("X-Paystack-Signature")
    if not verify_paystack_signature(raw_body, signature, settings.paystack_secret_key):
        logger.warning("⚠️ paystack webhook rejected: invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    event_type = event.get("event")
    data = event.get("data") or {}
    if event_type != "charge.success":
        logger.info(f"[Paystack] ignoring event {event_type}")
        return {"received": True}

    reference = data.get("reference")
    payment = session.exec(select(Payment).where(Payment.reference == reference)).first() if reference else None
    if payment is None:
        logger.warning(f"[Paystack] ⚠️ unknown reference {reference}")
        return {"received": True}

    paid_kobo = data.get("amount")
    if paid_kobo is not None and paid_kobo < to_kobo(payment.amount):
        logger.warning(f"[Paystack] ⚠️ underpayment for payment={payment.id}")
        return {"received": True}

    complete_payment(session, payment, transaction_id=str(data.get("id") or "") or None)
    return {"received": True}
