"""
서명된 수신 이메일 웹훅
- X-Webhook-Signature: raw body의 hex HMAC-SHA256
- messageId 기준 멱등 처리
"""
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.content_models import InboundEmail
from core.errors import ValidationFailed
from core.models import utcnow

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    # bytes 비교: non-ASCII 헤더도 TypeError 없이 불일치 처리
    return hmac.compare_digest(compute_signature(raw_body, secret).encode(), signature.strip().encode("utf-8"))


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return utcnow()


def store_inbound_email(session: Session, payload: Mapping[str, Any]) -> tuple[Optional[InboundEmail], bool]:
    """
    Persist an inbound e-mail payload.

    Returns ``(email, created)``; ``created`` is False when ``messageId`` was
    already stored, in which case nothing is written.
    """
    message_id = payload.get("messageId")
    sender = payload.get("from")
    if not message_id or not sender:
        raise ValidationFailed("messageId and from are required")

    existing = session.exec(select(InboundEmail).where(InboundEmail.message_id == message_id)).first()
    if existing is not None:
        logger.info(f"[Webhook] ↩️ email {message_id} already processed")
        return existing, False

    email = InboundEmail(
        message_id=message_id,
        sender=sender,
        recipients=_as_list(payload.get("to")),
        subject=payload.get("subject"),
        text_body=payload.get("text"),
        html_body=payload.get("html"),
        attachments=_as_list(payload.get("attachments")),
        received_at=_parse_timestamp(payload.get("timestamp")),
    )
    session.add(email)
    try:
        session.commit()
    except IntegrityError:
        # duplicate delivery raced us to the unique message_id
        session.rollback()
        return session.exec(select(InboundEmail).where(InboundEmail.message_id == message_id)).first(), False

    session.refresh(email)
    logger.info(f"[Webhook] ✅ stored email {message_id} from {sender}")
    return email, True
