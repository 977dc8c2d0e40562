"""
관리자 권한 범위
- super_admin: 전체
- admin: ProgramAdmin으로 배정된 프로그램만
"""
from typing import Optional

from sqlmodel import Session, select

from core.models import ProgramAdmin, User, UserRole


def is_super_admin(user: User) -> bool:
    return user.role == UserRole.super_admin


def get_managed_program_ids(session: Session, user: User) -> Optional[set[str]]:
    """Program ids ``user`` may manage; ``None`` means every program."""
    if is_super_admin(user):
        return None
    rows = session.exec(
        select(ProgramAdmin.program_id).where(
            ProgramAdmin.user_id == user.id,
            ProgramAdmin.is_active == True,  # noqa: E712
        )
    ).all()
    return set(rows)


def can_manage_program(session: Session, user: User, program_id: Optional[str]) -> bool:
    if is_super_admin(user):
        return True
    if user.role != UserRole.admin or not program_id:
        return False
    managed = get_managed_program_ids(session, user)
    return program_id in (managed or set())
