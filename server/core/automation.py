"""
알림 자동화
- 트리거 + 조건(정확한 key/value 부분집합)으로 규칙 매칭
- {{key}} 템플릿 치환
- 수신자별 pending Notification 생성
"""
import logging
import re
from typing import Any, Mapping, Optional

from sqlmodel import Session, select

from core.content_models import (
    AutomationRule,
    AutomationTrigger,
    Notification,
    NotificationStatus,
    NotificationType,
)
from core.db import Database
from core.models import ADMIN_ROLES, User, UserRole

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")

# conditions keys with this prefix are routing hints, not match criteria
ROUTING_PREFIX = "recipient"


def conditions_match(conditions: Optional[Mapping[str, Any]], payload: Mapping[str, Any]) -> bool:
    for key, expected in (conditions or {}).items():
        if key.startswith(ROUTING_PREFIX):
            continue
        if key not in payload or payload[key] != expected:
            return False
    return True


def match_rules(
    session: Session, trigger: AutomationTrigger, payload: Mapping[str, Any]
) -> list[AutomationRule]:
    rules = session.exec(
        select(AutomationRule).where(
            AutomationRule.trigger == trigger,
            AutomationRule.is_active == True,  # noqa: E712
        )
    ).all()
    return [rule for rule in rules if conditions_match(rule.conditions, payload)]


def render_template(template: Optional[str], payload: Mapping[str, Any]) -> str:
    """Replace ``{{key}}`` with payload values; unknown keys are left as written."""
    if not template:
        return ""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key in payload and payload[key] is not None:
            return str(payload[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_sub, template)


def _users_with_roles(session: Session, roles: list[UserRole]) -> list[tuple[str, str]]:
    users = session.exec(
        select(User).where(User.role.in_(roles), User.is_active == True)  # noqa: E712
    ).all()
    return [(u.email, u.role.value) for u in users]


def resolve_recipients(
    session: Session,
    rule: AutomationRule,
    payload: Mapping[str, Any],
) -> list[tuple[str, Optional[str]]]:
    """(email, role) pairs the rule's notification goes to."""
    trigger = rule.trigger
    if trigger == AutomationTrigger.user_registration:
        return _users_with_roles(session, list(ADMIN_ROLES))
    if trigger == AutomationTrigger.feedback_submitted:
        return _users_with_roles(session, [UserRole.super_admin])
    if trigger == AutomationTrigger.study_plan_created:
        email = payload.get("userEmail") or payload.get("email")
        if not email and payload.get("userId"):
            user = session.get(User, payload["userId"])
            email = user.email if user else None
        return [(email, UserRole.user.value)] if email else []

    # custom
    conditions = rule.conditions or {}
    if conditions.get("recipientEmail"):
        return [(conditions["recipientEmail"], None)]
    role = conditions.get("recipientRole")
    if role in {r.value for r in UserRole}:
        return _users_with_roles(session, [UserRole(role)])
    return []


def queue_rule_notifications(
    session: Session, rule: AutomationRule, payload: Mapping[str, Any]
) -> int:
    template = rule.template or {}
    title = render_template(template.get("subject"), payload) or rule.name
    content = render_template(template.get("body"), payload)

    queued = 0
    for email, role in resolve_recipients(session, rule, payload):
        session.add(
            Notification(
                type=NotificationType.automation,
                title=title,
                content=content,
                recipient_email=email,
                recipient_role=role,
                rule_id=rule.id,
                status=NotificationStatus.pending,
            )
        )
        queued += 1
    return queued


def dispatch_event(db: Database, trigger: AutomationTrigger, payload: Mapping[str, Any]) -> int:
    """
    Run every matching rule for ``trigger`` in its own session.

    One rule failing is logged and rolled back; the remaining rules still run.
    Returns the number of notifications queued.
    """
    total = 0
    with db.session() as session:
        rules = match_rules(session, trigger, payload)
        if not rules:
            logger.debug(f"[Automation] no rules for trigger={trigger.value}")
            return 0

        for rule in rules:
            try:
                queued = queue_rule_notifications(session, rule, payload)
                session.commit()
                total += queued
                logger.info(f"[Automation] ✅ rule={rule.name} queued {queued} notification(s)")
            except Exception as e:
                session.rollback()
                logger.error(f"[Automation] ❌ rule={rule.id} failed: {e}", exc_info=True)
    return total
